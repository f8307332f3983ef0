import json
from datetime import datetime, timezone

import pytest

from ratio_engine.dynamic_ratio import DynamicRatioConfigStore
from ratio_engine.engine import RateSubject, RatioEngine
from ratio_engine.group_settings import GroupSettingsStore


class FixedRateSource:
    def __init__(self, rate: int):
        self.rate = rate
        self.calls: list[tuple[str, int]] = []

    async def current_rate(self, subject: str, window_minutes: int) -> int:
        self.calls.append((subject, window_minutes))
        return self.rate


def _clock(hour_utc: int):
    return lambda: datetime(2026, 3, 14, hour_utc, 30, tzinfo=timezone.utc)


def _config_store(payload: dict) -> DynamicRatioConfigStore:
    store = DynamicRatioConfigStore()
    store.replace_from_json(json.dumps(payload))
    return store


def _group_store() -> GroupSettingsStore:
    store = GroupSettingsStore()
    store.replace_field("GroupRatio", '{"default": 1, "vip": 1.2, "svip": 0.8}')
    store.replace_field("GroupGroupRatio", '{"vip": {"svip": 0.6}}')
    return store


TIME_CONFIG = {
    "enabled": True,
    "mode": "time",
    "timezone": "Asia/Shanghai",
    "group_configs": {
        "vip": {"time_ranges": [{"start_hour": 22, "end_hour": 6, "ratio": 0.5}]}
    },
}

RPM_CONFIG = {
    "enabled": True,
    "mode": "rpm",
    "rpm_window_minutes": 2,
    "group_configs": {
        "vip": {
            "rpm_ranges": [
                {"min_rpm": 0, "max_rpm": 10, "ratio": 1.0},
                {"min_rpm": 10, "max_rpm": -1, "ratio": 2.5},
            ]
        }
    },
}


@pytest.mark.asyncio
async def test_time_rule_applies_at_local_night() -> None:
    # 15:30 UTC is 23:30 in Shanghai.
    engine = RatioEngine(
        _config_store(TIME_CONFIG), _group_store(), FixedRateSource(0), now=_clock(15)
    )

    assert await engine.effective_ratio("default", "vip") == (0.5, True)


@pytest.mark.asyncio
async def test_time_rule_falls_through_to_static_ratio_at_noon() -> None:
    # 04:30 UTC is 12:30 in Shanghai.
    engine = RatioEngine(
        _config_store(TIME_CONFIG), _group_store(), FixedRateSource(0), now=_clock(4)
    )

    assert await engine.effective_ratio("default", "vip") == (1.2, False)


@pytest.mark.asyncio
async def test_invalid_timezone_falls_back_to_default_zone() -> None:
    config = dict(TIME_CONFIG, timezone="Mars/Olympus_Mons")
    engine = RatioEngine(
        _config_store(config), _group_store(), FixedRateSource(0), now=_clock(15)
    )

    assert await engine.effective_ratio("default", "vip") == (0.5, True)


@pytest.mark.asyncio
@pytest.mark.parametrize("tz_name", ["America", "Asia", "Etc", "../x"])
async def test_zone_directory_names_fall_back_to_default_zone(tz_name: str) -> None:
    engine = RatioEngine(
        _config_store(dict(TIME_CONFIG, timezone=tz_name)),
        _group_store(),
        FixedRateSource(0),
        now=_clock(15),
    )

    assert engine.current_hour(tz_name) == 23
    assert await engine.effective_ratio("default", "vip") == (0.5, True)


@pytest.mark.asyncio
async def test_disabled_config_uses_static_ratios() -> None:
    engine = RatioEngine(
        _config_store(dict(TIME_CONFIG, enabled=False)),
        _group_store(),
        FixedRateSource(0),
        now=_clock(15),
    )

    assert await engine.effective_ratio("default", "vip") == (1.2, False)


@pytest.mark.asyncio
async def test_group_without_rules_uses_static_ratio() -> None:
    engine = RatioEngine(
        _config_store(TIME_CONFIG), _group_store(), FixedRateSource(0), now=_clock(15)
    )

    assert await engine.effective_ratio("default", "svip") == (0.8, False)


@pytest.mark.asyncio
async def test_pair_override_beats_group_ratio() -> None:
    engine = RatioEngine(DynamicRatioConfigStore(), _group_store(), FixedRateSource(0))

    assert await engine.effective_ratio("vip", "svip") == (0.6, False)
    assert await engine.effective_ratio("default", "svip") == (0.8, False)


@pytest.mark.asyncio
async def test_unknown_group_defaults_to_one() -> None:
    engine = RatioEngine(DynamicRatioConfigStore(), _group_store(), FixedRateSource(0))

    assert await engine.effective_ratio("default", "enterprise") == (1.0, False)


@pytest.mark.asyncio
@pytest.mark.parametrize(("rate", "expected"), [(0, 1.0), (9, 1.0), (10, 2.5), (500, 2.5)])
async def test_rpm_rule_uses_caller_rate(rate: int, expected: float) -> None:
    source = FixedRateSource(rate)
    engine = RatioEngine(_config_store(RPM_CONFIG), _group_store(), source)

    assert await engine.effective_ratio("default", "vip", user_id=42) == (expected, True)
    assert source.calls == [("42", 2)]


@pytest.mark.asyncio
async def test_rpm_rule_without_match_falls_through() -> None:
    config = {
        "enabled": True,
        "mode": "rpm",
        "group_configs": {"vip": {"rpm_ranges": [{"min_rpm": 100, "max_rpm": -1, "ratio": 3}]}},
    }
    engine = RatioEngine(_config_store(config), _group_store(), FixedRateSource(5))

    assert await engine.effective_ratio("default", "vip", user_id=1) == (1.2, False)


@pytest.mark.asyncio
async def test_system_subject_samples_global_rate() -> None:
    source = FixedRateSource(12)
    engine = RatioEngine(
        _config_store(RPM_CONFIG),
        _group_store(),
        source,
        rpm_subject=RateSubject.SYSTEM,
    )

    assert await engine.effective_ratio("default", "vip") == (2.5, True)
    assert source.calls == [("system", 2)]


@pytest.mark.asyncio
async def test_user_subject_without_user_id_skips_sampling() -> None:
    source = FixedRateSource(99)
    engine = RatioEngine(_config_store(RPM_CONFIG), _group_store(), source)

    assert await engine.effective_ratio("default", "vip") == (1.0, True)
    assert source.calls == []
