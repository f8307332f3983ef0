# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

"""
Effective ratio resolution.

Order of precedence for a (caller group, target group) pair:
1. Dynamic rule for the target group (time of day or request rate)
2. Static override configured for the exact pair
3. The target group's baseline ratio (1.0 when unconfigured)
"""

import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Optional, Set, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .dynamic_ratio import (
    DEFAULT_TIMEZONE,
    DynamicRatioConfigStore,
    DynamicRatioMode,
    GroupRuleSet,
    match_rpm_ranges,
    match_time_ranges,
)
from .group_settings import GroupSettingsStore
from .rate_sampler import RateSource

lib_logger = logging.getLogger("ratio_engine")

SYSTEM_RATE_SUBJECT = "system"


class RateSubject(str, Enum):
    """Whose request rate drives RPM-based ratios."""

    USER = "user"  # The calling user's own rate
    SYSTEM = "system"  # Aggregate rate of the whole deployment


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class RatioEngine:
    """
    Resolves the multiplier applied to a request.

    Pure with respect to its inputs: reads the current config snapshots
    and, in RPM mode, one rate sample.
    """

    def __init__(
        self,
        config_store: DynamicRatioConfigStore,
        group_store: GroupSettingsStore,
        rate_source: RateSource,
        *,
        rpm_subject: RateSubject = RateSubject.USER,
        now: Optional[Callable[[], datetime]] = None,
    ):
        """
        Initialize the engine.

        Args:
            config_store: Source of the dynamic ratio config
            group_store: Source of static group ratios
            rate_source: Rate sampler consulted in RPM mode
            rpm_subject: Whether RPM mode samples the caller or the whole system
            now: Clock returning an aware datetime
        """
        self._config_store = config_store
        self._group_store = group_store
        self._rate_source = rate_source
        self._rpm_subject = rpm_subject
        self._now = now or _utc_now
        self._bad_timezones: Set[str] = set()

    @property
    def rpm_subject(self) -> RateSubject:
        return self._rpm_subject

    async def effective_ratio(
        self,
        caller_group: str,
        target_group: str,
        user_id: Optional[int] = None,
    ) -> Tuple[float, bool]:
        """
        Resolve the ratio for a caller using a target group.

        Args:
            caller_group: The caller's own group
            target_group: The group the request is billed against
            user_id: Caller's user id, used as the RPM subject in user mode

        Returns:
            (ratio, is_dynamic)
        """
        dynamic = await self.dynamic_ratio(target_group, user_id)
        if dynamic is not None:
            return dynamic, True
        return self.static_ratio(caller_group, target_group), False

    def static_ratio(self, caller_group: str, target_group: str) -> float:
        settings = self._group_store.get()
        override = settings.get_group_group_ratio(caller_group, target_group)
        if override is not None:
            return override
        return settings.get_group_ratio(target_group)

    async def dynamic_ratio(
        self, target_group: str, user_id: Optional[int] = None
    ) -> Optional[float]:
        """Ratio from the first matching dynamic rule, or None to fall through."""
        config = self._config_store.get()
        if not config.active:
            return None

        rules = config.rules_for(target_group)
        if rules is None:
            return None

        if config.mode == DynamicRatioMode.TIME:
            if not rules.time_ranges:
                return None
            return match_time_ranges(rules.time_ranges, self.current_hour(config.timezone))

        if config.mode == DynamicRatioMode.RPM:
            return await self._rpm_ratio(rules, config.rpm_window_minutes, user_id)

        return None

    def current_hour(self, tz_name: str) -> int:
        return self._now().astimezone(self._zone(tz_name)).hour

    async def _rpm_ratio(
        self, rules: GroupRuleSet, window_minutes: int, user_id: Optional[int]
    ) -> Optional[float]:
        if not rules.rpm_ranges:
            return None

        subject = self._subject_for(user_id)
        rpm = 0
        if subject is not None:
            rpm = await self._rate_source.current_rate(subject, window_minutes)
        return match_rpm_ranges(rules.rpm_ranges, rpm)

    def _subject_for(self, user_id: Optional[int]) -> Optional[str]:
        if self._rpm_subject == RateSubject.SYSTEM:
            return SYSTEM_RATE_SUBJECT
        if user_id is None:
            return None
        return str(user_id)

    def _zone(self, tz_name: str) -> ZoneInfo:
        try:
            return ZoneInfo(tz_name)
        # Directory names such as "America" surface as IsADirectoryError.
        except (ZoneInfoNotFoundError, ValueError, OSError):
            if tz_name not in self._bad_timezones:
                self._bad_timezones.add(tz_name)
                lib_logger.warning(
                    f"Unknown timezone '{tz_name}', falling back to {DEFAULT_TIMEZONE}"
                )
            return ZoneInfo(DEFAULT_TIMEZONE)
