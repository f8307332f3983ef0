# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

"""
Static group configuration: baseline ratios, per-pair overrides, the
usable group catalog, per-group special rules and the auto group order.

Each field is persisted under its own option key and is replaced from
JSON independently, but every replacement publishes a whole new
GroupSettings snapshot.
"""

import json
import logging
import math
import threading
from dataclasses import dataclass, field, replace
from types import MappingProxyType
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from .errors import RatioConfigValidationError
from .group_resolver import parse_directive

lib_logger = logging.getLogger("ratio_engine")

DEFAULT_GROUP_RATIO = 1.0

OPTION_GROUP_RATIO = "GroupRatio"
OPTION_GROUP_GROUP_RATIO = "GroupGroupRatio"
OPTION_USABLE_GROUPS = "UserUsableGroups"
OPTION_SPECIAL_USABLE_GROUPS = "GroupSpecialUsableGroup"
OPTION_AUTO_GROUPS = "AutoGroups"


def _frozen(mapping: Dict[str, Any]) -> Mapping[str, Any]:
    return MappingProxyType(dict(mapping))


@dataclass(frozen=True)
class GroupSettings:
    group_ratio: Mapping[str, float] = field(
        default_factory=lambda: _frozen({"default": 1.0, "vip": 1.0, "svip": 1.0})
    )
    group_group_ratio: Mapping[str, Mapping[str, float]] = field(
        default_factory=lambda: _frozen({})
    )
    usable_groups: Mapping[str, str] = field(
        default_factory=lambda: _frozen(
            {"default": "Default group", "vip": "VIP group"}
        )
    )
    special_usable_groups: Mapping[str, Tuple[str, ...]] = field(
        default_factory=lambda: _frozen({})
    )
    auto_groups: Tuple[str, ...] = ("default",)

    def get_group_ratio(self, group: str) -> float:
        ratio = self.group_ratio.get(group)
        if ratio is None:
            lib_logger.debug(f"Group '{group}' has no configured ratio, using 1.0")
            return DEFAULT_GROUP_RATIO
        return ratio

    def get_group_group_ratio(
        self, caller_group: str, target_group: str
    ) -> Optional[float]:
        overrides = self.group_group_ratio.get(caller_group)
        if not overrides:
            return None
        return overrides.get(target_group)


# =============================================================================
# FIELD PARSERS
# =============================================================================


def _load_object(payload: str, key: str) -> Any:
    try:
        return json.loads(payload)
    except (TypeError, ValueError) as e:
        raise RatioConfigValidationError(f"{key}: invalid JSON: {e}") from e


def _ratio_value(value: Any, where: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise RatioConfigValidationError(f"{where} must be a number")
    try:
        number = float(value)
    except OverflowError:
        raise RatioConfigValidationError(f"{where} is out of range") from None
    if not math.isfinite(number):
        raise RatioConfigValidationError(f"{where} must be a finite number")
    if number < 0:
        raise RatioConfigValidationError(f"{where} must be >= 0")
    return number


def parse_group_ratio(payload: str) -> Mapping[str, float]:
    raw = _load_object(payload, OPTION_GROUP_RATIO)
    if not isinstance(raw, dict):
        raise RatioConfigValidationError(f"{OPTION_GROUP_RATIO} must be an object")
    return _frozen(
        {name: _ratio_value(v, f"{OPTION_GROUP_RATIO}.{name}") for name, v in raw.items()}
    )


def parse_group_group_ratio(payload: str) -> Mapping[str, Mapping[str, float]]:
    raw = _load_object(payload, OPTION_GROUP_GROUP_RATIO)
    if not isinstance(raw, dict):
        raise RatioConfigValidationError(
            f"{OPTION_GROUP_GROUP_RATIO} must be an object"
        )
    result = {}
    for caller, targets in raw.items():
        if not isinstance(targets, dict):
            raise RatioConfigValidationError(
                f"{OPTION_GROUP_GROUP_RATIO}.{caller} must be an object"
            )
        result[caller] = _frozen(
            {
                target: _ratio_value(v, f"{OPTION_GROUP_GROUP_RATIO}.{caller}.{target}")
                for target, v in targets.items()
            }
        )
    return _frozen(result)


def parse_usable_groups(payload: str) -> Mapping[str, str]:
    raw = _load_object(payload, OPTION_USABLE_GROUPS)
    if not isinstance(raw, dict) or not all(
        isinstance(v, str) for v in raw.values()
    ):
        raise RatioConfigValidationError(
            f"{OPTION_USABLE_GROUPS} must map group names to descriptions"
        )
    return _frozen(raw)


def parse_special_usable_groups(payload: str) -> Mapping[str, Tuple[str, ...]]:
    raw = _load_object(payload, OPTION_SPECIAL_USABLE_GROUPS)
    if not isinstance(raw, dict):
        raise RatioConfigValidationError(
            f"{OPTION_SPECIAL_USABLE_GROUPS} must be an object"
        )
    result = {}
    for caller, directives in raw.items():
        if not isinstance(directives, list) or not all(
            isinstance(d, str) for d in directives
        ):
            raise RatioConfigValidationError(
                f"{OPTION_SPECIAL_USABLE_GROUPS}.{caller} must be a list of strings"
            )
        for d in directives:
            parse_directive(d)
        result[caller] = tuple(directives)
    return _frozen(result)


def parse_auto_groups(payload: str) -> Tuple[str, ...]:
    raw = _load_object(payload, OPTION_AUTO_GROUPS)
    if not isinstance(raw, list) or not all(isinstance(g, str) for g in raw):
        raise RatioConfigValidationError(
            f"{OPTION_AUTO_GROUPS} must be a list of group names"
        )
    return tuple(raw)


# option key -> (GroupSettings attribute, parser)
FIELD_PARSERS: Dict[str, Tuple[str, Callable[[str], Any]]] = {
    OPTION_GROUP_RATIO: ("group_ratio", parse_group_ratio),
    OPTION_GROUP_GROUP_RATIO: ("group_group_ratio", parse_group_group_ratio),
    OPTION_USABLE_GROUPS: ("usable_groups", parse_usable_groups),
    OPTION_SPECIAL_USABLE_GROUPS: (
        "special_usable_groups",
        parse_special_usable_groups,
    ),
    OPTION_AUTO_GROUPS: ("auto_groups", parse_auto_groups),
}


def _dump_value(value: Any) -> Any:
    if isinstance(value, Mapping):
        return {k: _dump_value(v) for k, v in value.items()}
    if isinstance(value, tuple):
        return list(value)
    return value


class GroupSettingsStore:
    """Holds the active GroupSettings and swaps it atomically on update."""

    def __init__(self, initial: Optional[GroupSettings] = None):
        self._settings = initial or GroupSettings()
        self._lock = threading.Lock()

    def get(self) -> GroupSettings:
        with self._lock:
            return self._settings

    def validate_field(self, key: str, payload: str) -> None:
        self._parser_for(key)[1](payload)

    def replace_field(self, key: str, payload: str) -> GroupSettings:
        """
        Parse payload for one option key and publish a new snapshot.

        Args:
            key: One of the OPTION_* keys
            payload: JSON text for that field

        Returns:
            The newly published GroupSettings
        """
        attr, parser = self._parser_for(key)
        value = parser(payload)
        with self._lock:
            self._settings = replace(self._settings, **{attr: value})
            updated = self._settings
        lib_logger.info(f"Group setting '{key}' replaced")
        return updated

    def field_to_json(self, key: str) -> str:
        attr, _ = self._parser_for(key)
        return json.dumps(_dump_value(getattr(self.get(), attr)), ensure_ascii=False)

    def keys(self) -> List[str]:
        return list(FIELD_PARSERS)

    @staticmethod
    def _parser_for(key: str) -> Tuple[str, Callable[[str], Any]]:
        try:
            return FIELD_PARSERS[key]
        except KeyError:
            raise RatioConfigValidationError(f"unknown group setting '{key}'") from None
