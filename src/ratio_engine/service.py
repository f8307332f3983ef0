# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

"""
Facade exposing group, ratio and ranking resolution to callers.
"""

from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple, Union

from .dynamic_ratio import DynamicRatioConfigStore
from .engine import RatioEngine
from .errors import GroupNotUsable
from .group_resolver import (
    group_in_usable_groups,
    resolve_usable_groups,
    user_auto_groups,
)
from .group_settings import GroupSettingsStore
from .ranking import RankingCache

AUTO_GROUP = "auto"
AUTO_GROUP_RATIO = "auto"
AUTO_GROUP_DESCRIPTION = "Automatically routes to the best available group"


@dataclass(frozen=True)
class UsableGroup:
    ratio: Union[float, str]
    desc: str
    is_dynamic: bool = False


class PricingService:
    def __init__(
        self,
        config_store: DynamicRatioConfigStore,
        group_store: GroupSettingsStore,
        engine: RatioEngine,
        ranking_cache: RankingCache,
    ):
        self.config_store = config_store
        self.group_store = group_store
        self.engine = engine
        self.ranking_cache = ranking_cache

    def list_all_group_names(self) -> List[str]:
        return list(self.group_store.get().group_ratio)

    async def resolve_usable_groups(
        self, caller_group: str, user_id: Optional[int] = None
    ) -> Dict[str, UsableGroup]:
        """
        Usable groups for a caller with their effective ratios.

        Groups are taken from the usable-group resolution, not filtered
        through the GroupRatio catalog, so the caller's own group is listed
        even when it has no ratio entry (it is priced at the 1.0 default).
        The "auto" pseudo-group, when usable, is reported with a fixed
        description and is never dynamic.
        """
        usable = resolve_usable_groups(self.group_store.get(), caller_group)
        result: Dict[str, UsableGroup] = {}
        for group, desc in usable.items():
            if group == AUTO_GROUP:
                continue
            ratio, is_dynamic = await self.engine.effective_ratio(
                caller_group, group, user_id
            )
            result[group] = UsableGroup(ratio=ratio, desc=desc, is_dynamic=is_dynamic)

        if AUTO_GROUP in usable:
            result[AUTO_GROUP] = UsableGroup(
                ratio=AUTO_GROUP_RATIO, desc=AUTO_GROUP_DESCRIPTION, is_dynamic=False
            )
        return result

    def user_auto_groups(self, caller_group: str) -> List[str]:
        return user_auto_groups(self.group_store.get(), caller_group)

    async def resolve_group_ratio(
        self, caller_group: str, target_group: str, user_id: Optional[int] = None
    ) -> Tuple[str, float, bool]:
        """
        Ratio for billing a request against target_group.

        "auto" resolves to the first configured auto group the caller may use.

        Args:
            caller_group: The caller's own group
            target_group: The requested group, or "auto"
            user_id: Caller's user id, used as the RPM subject in user mode

        Returns:
            (billed group, ratio, is_dynamic)

        Raises:
            GroupNotUsable: If the caller may not use target_group
        """
        settings = self.group_store.get()
        if not group_in_usable_groups(settings, caller_group, target_group):
            raise GroupNotUsable(f"group '{target_group}' is not available")

        group = target_group
        if target_group == AUTO_GROUP:
            candidates = user_auto_groups(settings, caller_group)
            if not candidates:
                raise GroupNotUsable("no auto group is available")
            group = candidates[0]

        ratio, is_dynamic = await self.engine.effective_ratio(caller_group, group, user_id)
        return group, ratio, is_dynamic

    async def get_ranking_snapshot(self, is_privileged: bool) -> Dict[str, Any]:
        snapshot = await self.ranking_cache.get_snapshot(is_privileged)
        return snapshot.to_dict()

    def invalidate_rankings(self) -> None:
        self.ranking_cache.invalidate()

    def get_dynamic_ratio_config_json(self) -> str:
        return self.config_store.to_json()

    def validate_dynamic_ratio_config_json(self, payload: str) -> None:
        self.config_store.validate(payload)
