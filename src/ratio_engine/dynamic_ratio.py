# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

"""
Dynamic group ratio configuration.

Holds the hot-reloadable rules that let a group's ratio depend on the
time of day or on the caller's recent request rate. Readers always get
an immutable snapshot; administrative updates replace the whole value.

Persisted JSON shape:
{
    "enabled": true,
    "mode": "time",
    "rpm_window_minutes": 1,
    "timezone": "Asia/Shanghai",
    "group_configs": {
        "vip": {
            "time_ranges": [{"start_hour": 22, "end_hour": 6, "ratio": 0.5}],
            "rpm_ranges": [{"min_rpm": 0, "max_rpm": 60, "ratio": 1.0}]
        }
    }
}
"""

import json
import logging
import math
import threading
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional, Sequence, Tuple

from .errors import RatioConfigValidationError

lib_logger = logging.getLogger("ratio_engine")

DEFAULT_TIMEZONE = "Asia/Shanghai"
UNBOUNDED_RPM = -1


class DynamicRatioMode(str, Enum):
    """Which live condition drives the dynamic ratio."""

    NONE = "none"
    TIME = "time"  # Hour of day in the configured timezone
    RPM = "rpm"  # Requests per minute over a sliding window


@dataclass(frozen=True)
class TimeRangeRatio:
    start_hour: int  # 0-23
    end_hour: int  # 0-24, exclusive
    ratio: float

    @property
    def wraps_midnight(self) -> bool:
        return self.start_hour > self.end_hour


@dataclass(frozen=True)
class RPMRangeRatio:
    min_rpm: int  # inclusive
    max_rpm: int  # exclusive, -1 means unbounded
    ratio: float


@dataclass(frozen=True)
class GroupRuleSet:
    time_ranges: Tuple[TimeRangeRatio, ...] = ()
    rpm_ranges: Tuple[RPMRangeRatio, ...] = ()


@dataclass(frozen=True)
class DynamicRatioConfig:
    enabled: bool = False
    mode: DynamicRatioMode = DynamicRatioMode.NONE
    rpm_window_minutes: int = 1
    timezone: str = DEFAULT_TIMEZONE
    group_configs: Mapping[str, GroupRuleSet] = field(
        default_factory=lambda: MappingProxyType({})
    )

    @property
    def active(self) -> bool:
        return self.enabled and self.mode != DynamicRatioMode.NONE

    def rules_for(self, group: str) -> Optional[GroupRuleSet]:
        return self.group_configs.get(group)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "enabled": self.enabled,
            "mode": self.mode.value,
            "rpm_window_minutes": self.rpm_window_minutes,
            "timezone": self.timezone,
            "group_configs": {
                name: {
                    "time_ranges": [
                        {
                            "start_hour": r.start_hour,
                            "end_hour": r.end_hour,
                            "ratio": r.ratio,
                        }
                        for r in rules.time_ranges
                    ],
                    "rpm_ranges": [
                        {"min_rpm": r.min_rpm, "max_rpm": r.max_rpm, "ratio": r.ratio}
                        for r in rules.rpm_ranges
                    ],
                }
                for name, rules in self.group_configs.items()
            },
        }


# =============================================================================
# MATCHING
# =============================================================================


def is_hour_in_range(hour: int, start: int, end: int) -> bool:
    """True when hour falls in [start, end), wrapping past midnight if start > end."""
    if start <= end:
        return start <= hour < end
    return hour >= start or hour < end


def match_time_ranges(
    ranges: Sequence[TimeRangeRatio], hour: int
) -> Optional[float]:
    """Return the ratio of the first range containing hour, or None."""
    for r in ranges:
        if is_hour_in_range(hour, r.start_hour, r.end_hour):
            return r.ratio
    return None


def match_rpm_ranges(ranges: Sequence[RPMRangeRatio], rpm: int) -> Optional[float]:
    """Return the ratio of the first range with min <= rpm < max, or None."""
    for r in ranges:
        if rpm >= r.min_rpm and (r.max_rpm == UNBOUNDED_RPM or rpm < r.max_rpm):
            return r.ratio
    return None


# =============================================================================
# PARSING AND VALIDATION
# =============================================================================


def _require_int(value: Any, where: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        if isinstance(value, float) and value.is_integer():
            return int(value)
        raise RatioConfigValidationError(f"{where} must be an integer")
    return value


def _require_number(value: Any, where: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise RatioConfigValidationError(f"{where} must be a number")
    try:
        number = float(value)
    except OverflowError:
        raise RatioConfigValidationError(f"{where} is out of range") from None
    if not math.isfinite(number):
        raise RatioConfigValidationError(f"{where} must be a finite number")
    return number


def _require_field(item: Mapping[str, Any], key: str, where: str) -> Any:
    if key not in item:
        raise RatioConfigValidationError(f"{where}: missing '{key}'")
    return item[key]


def _parse_time_range(item: Any, where: str) -> TimeRangeRatio:
    if not isinstance(item, dict):
        raise RatioConfigValidationError(f"{where} must be an object")
    return TimeRangeRatio(
        start_hour=_require_int(
            _require_field(item, "start_hour", where), f"{where}.start_hour"
        ),
        end_hour=_require_int(
            _require_field(item, "end_hour", where), f"{where}.end_hour"
        ),
        ratio=_require_number(_require_field(item, "ratio", where), f"{where}.ratio"),
    )


def _parse_rpm_range(item: Any, where: str) -> RPMRangeRatio:
    if not isinstance(item, dict):
        raise RatioConfigValidationError(f"{where} must be an object")
    return RPMRangeRatio(
        min_rpm=_require_int(_require_field(item, "min_rpm", where), f"{where}.min_rpm"),
        max_rpm=_require_int(_require_field(item, "max_rpm", where), f"{where}.max_rpm"),
        ratio=_require_number(_require_field(item, "ratio", where), f"{where}.ratio"),
    )


def _parse_rule_set(group: str, raw: Any) -> GroupRuleSet:
    if not isinstance(raw, dict):
        raise RatioConfigValidationError(f"group {group}: config must be an object")

    time_raw = raw.get("time_ranges") or []
    rpm_raw = raw.get("rpm_ranges") or []
    if not isinstance(time_raw, list):
        raise RatioConfigValidationError(f"group {group}: time_ranges must be a list")
    if not isinstance(rpm_raw, list):
        raise RatioConfigValidationError(f"group {group}: rpm_ranges must be a list")

    return GroupRuleSet(
        time_ranges=tuple(
            _parse_time_range(item, f"group {group} time_ranges[{i}]")
            for i, item in enumerate(time_raw)
        ),
        rpm_ranges=tuple(
            _parse_rpm_range(item, f"group {group} rpm_ranges[{i}]")
            for i, item in enumerate(rpm_raw)
        ),
    )


def _check_ranges(config: DynamicRatioConfig) -> None:
    if config.rpm_window_minutes < 1:
        raise RatioConfigValidationError("rpm_window_minutes must be >= 1")

    for group, rules in config.group_configs.items():
        if config.mode == DynamicRatioMode.TIME:
            for i, tr in enumerate(rules.time_ranges):
                if not (0 <= tr.start_hour <= 23) or not (0 <= tr.end_hour <= 24):
                    raise RatioConfigValidationError(
                        f"group {group} time_ranges[{i}]: hour must be 0-23 for start, "
                        f"0-24 for end"
                    )
                if tr.ratio < 0:
                    raise RatioConfigValidationError(
                        f"group {group} time_ranges[{i}]: ratio must be >= 0"
                    )
        if config.mode == DynamicRatioMode.RPM:
            for i, rr in enumerate(rules.rpm_ranges):
                if rr.min_rpm < 0:
                    raise RatioConfigValidationError(
                        f"group {group} rpm_ranges[{i}]: min_rpm must be >= 0"
                    )
                if rr.max_rpm != UNBOUNDED_RPM and rr.max_rpm <= rr.min_rpm:
                    raise RatioConfigValidationError(
                        f"group {group} rpm_ranges[{i}]: max_rpm must be > min_rpm or -1"
                    )
                if rr.ratio < 0:
                    raise RatioConfigValidationError(
                        f"group {group} rpm_ranges[{i}]: ratio must be >= 0"
                    )


def parse_dynamic_ratio_config(payload: str) -> DynamicRatioConfig:
    """
    Decode and validate a serialized dynamic ratio configuration.

    Missing top-level keys take their defaults. Any malformed value raises
    RatioConfigValidationError naming the offending field.

    Args:
        payload: JSON text in the persisted shape

    Returns:
        A fully validated, immutable DynamicRatioConfig
    """
    try:
        raw = json.loads(payload)
    except (TypeError, ValueError) as e:
        raise RatioConfigValidationError(f"invalid JSON: {e}") from e

    if not isinstance(raw, dict):
        raise RatioConfigValidationError("config must be a JSON object")

    mode_raw = raw.get("mode", DynamicRatioMode.NONE.value)
    try:
        mode = DynamicRatioMode(mode_raw)
    except ValueError:
        raise RatioConfigValidationError("invalid mode, must be none/time/rpm") from None

    enabled = raw.get("enabled", False)
    if not isinstance(enabled, bool):
        raise RatioConfigValidationError("enabled must be a boolean")

    timezone = raw.get("timezone") or DEFAULT_TIMEZONE
    if not isinstance(timezone, str):
        raise RatioConfigValidationError("timezone must be a string")

    groups_raw = raw.get("group_configs") or {}
    if not isinstance(groups_raw, dict):
        raise RatioConfigValidationError("group_configs must be an object")

    config = DynamicRatioConfig(
        enabled=enabled,
        mode=mode,
        rpm_window_minutes=_require_int(
            raw.get("rpm_window_minutes", 1), "rpm_window_minutes"
        ),
        timezone=timezone,
        group_configs=MappingProxyType(
            {name: _parse_rule_set(name, cfg) for name, cfg in groups_raw.items()}
        ),
    )
    _check_ranges(config)
    return config


# =============================================================================
# STORE
# =============================================================================


class DynamicRatioConfigStore:
    """
    Process-wide holder of the active DynamicRatioConfig.

    get() hands out the current snapshot; replacement swaps the whole
    object under the lock so readers see either the old or the new value.
    """

    def __init__(self, initial: Optional[DynamicRatioConfig] = None):
        self._config = initial or DynamicRatioConfig()
        self._lock = threading.Lock()

    def get(self) -> DynamicRatioConfig:
        with self._lock:
            return self._config

    def validate(self, payload: str) -> None:
        """Raise RatioConfigValidationError if payload would be rejected."""
        parse_dynamic_ratio_config(payload)

    def replace(self, config: DynamicRatioConfig) -> None:
        with self._lock:
            self._config = config

    def replace_from_json(self, payload: str) -> DynamicRatioConfig:
        config = parse_dynamic_ratio_config(payload)
        self.replace(config)
        lib_logger.info(
            f"Dynamic ratio config replaced: enabled={config.enabled} "
            f"mode={config.mode.value} groups={len(config.group_configs)}"
        )
        return config

    def to_json(self) -> str:
        return json.dumps(self.get().to_dict(), ensure_ascii=False)
