from datetime import datetime, timedelta

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from ratio_engine.rate_sampler import RedisRateSampler

NOW = datetime(2026, 3, 14, 12, 0, 0)


def _stamp(delta: timedelta) -> str:
    return (NOW - delta).strftime("%Y-%m-%d %H:%M:%S")


class FakeListClient:
    def __init__(self, lists: dict[str, list]):
        self.lists = lists

    async def llen(self, key: str) -> int:
        return len(self.lists.get(key, []))

    async def lrange(self, key: str, start: int, end: int) -> list:
        return self.lists.get(key, [])[start : end + 1]


class BrokenClient:
    async def llen(self, key: str) -> int:
        raise RedisConnectionError("connection refused")

    async def lrange(self, key: str, start: int, end: int) -> list:
        raise AssertionError("unreachable")


@pytest.mark.asyncio
async def test_counts_entries_inside_window() -> None:
    client = FakeListClient(
        {
            "rateLimit:MRRLS:7": [
                _stamp(timedelta(seconds=5)),
                _stamp(timedelta(seconds=59)).encode("utf-8"),
                _stamp(timedelta(minutes=1, seconds=30)),
                _stamp(timedelta(minutes=10)),
            ]
        }
    )
    sampler = RedisRateSampler(client, now=lambda: NOW)

    assert await sampler.current_rate("7", 1) == 2
    assert await sampler.current_rate("7", 2) == 3


@pytest.mark.asyncio
async def test_skips_unparseable_entries() -> None:
    client = FakeListClient(
        {"rateLimit:MRRLS:7": ["garbage", _stamp(timedelta(seconds=1)), "2026-13-99 99:99:99"]}
    )
    sampler = RedisRateSampler(client, now=lambda: NOW)

    assert await sampler.current_rate("7", 1) == 1


@pytest.mark.asyncio
async def test_missing_subject_is_zero() -> None:
    sampler = RedisRateSampler(FakeListClient({}), now=lambda: NOW)

    assert await sampler.current_rate("nobody", 5) == 0


@pytest.mark.asyncio
async def test_store_failure_degrades_to_zero() -> None:
    sampler = RedisRateSampler(BrokenClient(), now=lambda: NOW)

    assert await sampler.current_rate("7", 1) == 0


@pytest.mark.asyncio
async def test_disabled_or_missing_client_is_zero() -> None:
    client = FakeListClient({"rateLimit:MRRLS:7": [_stamp(timedelta(seconds=1))]})

    assert await RedisRateSampler(client, enabled=False, now=lambda: NOW).current_rate("7", 1) == 0
    assert await RedisRateSampler(None, now=lambda: NOW).current_rate("7", 1) == 0


@pytest.mark.asyncio
async def test_custom_key_prefix() -> None:
    client = FakeListClient({"rl:system": [_stamp(timedelta(seconds=1))]})
    sampler = RedisRateSampler(client, key_prefix="rl", now=lambda: NOW)

    assert sampler.key_for("system") == "rl:system"
    assert await sampler.current_rate("system", 1) == 1
