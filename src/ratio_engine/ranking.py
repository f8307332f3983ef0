# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

"""
Usage ranking cache.

Today's per-user aggregate rows are fetched once and fanned out into the
call, token and distinct-IP rankings. Per-IP and per-(user, minute)
rankings come from their own queries, fetched concurrently with the
aggregate. The result is cached as one immutable snapshot that is
replaced wholesale when it is older than the TTL or belongs to a
previous calendar day.
"""

import asyncio
import logging
import time
from dataclasses import asdict, dataclass, replace
from datetime import date, datetime
from typing import Any, Callable, Dict, List, Optional, Protocol, Sequence, Tuple

from .errors import UpstreamUnavailable

lib_logger = logging.getLogger("ratio_engine")

DEFAULT_RANKING_LIMIT = 100
DEFAULT_RANKING_TTL_SECONDS = 300


# =============================================================================
# ROW TYPES
# =============================================================================


@dataclass(frozen=True)
class UserAggregateRow:
    """One user's totals for today, as returned by the log store."""

    username: str
    display_name: str
    ip: str  # comma-joined distinct IPs
    ip_count: int
    count: int
    tokens: int
    quota: int


@dataclass(frozen=True)
class UserCallRanking:
    username: str
    display_name: str
    ip: str
    ip_count: int
    count: int


@dataclass(frozen=True)
class IPCallRanking:
    ip: str
    count: int


@dataclass(frozen=True)
class UserTokenRanking:
    username: str
    display_name: str
    tokens: int
    count: int
    quota: int


@dataclass(frozen=True)
class UserIPCountRanking:
    username: str
    display_name: str
    ip: str
    ip_count: int
    count: int
    tokens: int
    quota: int


@dataclass(frozen=True)
class UserMinuteIPRanking:
    username: str
    display_name: str
    minute: int  # epoch seconds at the start of the minute
    ip: str
    ip_count: int


@dataclass(frozen=True)
class RankingSnapshot:
    user_call_ranking: Tuple[UserCallRanking, ...]
    ip_call_ranking: Tuple[IPCallRanking, ...]
    user_token_ranking: Tuple[UserTokenRanking, ...]
    user_ip_count_ranking: Tuple[UserIPCountRanking, ...]
    user_minute_ip_ranking: Tuple[UserMinuteIPRanking, ...]
    computed_at: float
    day: date

    def to_dict(self) -> Dict[str, List[Dict[str, Any]]]:
        return {
            "user_call_ranking": [asdict(r) for r in self.user_call_ranking],
            "ip_call_ranking": [asdict(r) for r in self.ip_call_ranking],
            "user_token_ranking": [asdict(r) for r in self.user_token_ranking],
            "user_ip_count_ranking": [asdict(r) for r in self.user_ip_count_ranking],
            "user_minute_ip_ranking": [asdict(r) for r in self.user_minute_ip_ranking],
        }


# =============================================================================
# DERIVED RANKINGS
# =============================================================================


def build_user_call_ranking(
    rows: Sequence[UserAggregateRow], limit: int
) -> List[UserCallRanking]:
    ordered = sorted(rows, key=lambda r: r.count, reverse=True)[:limit]
    return [
        UserCallRanking(
            username=r.username,
            display_name=r.display_name,
            ip=r.ip,
            ip_count=r.ip_count,
            count=r.count,
        )
        for r in ordered
    ]


def build_user_token_ranking(
    rows: Sequence[UserAggregateRow], limit: int
) -> List[UserTokenRanking]:
    ordered = sorted(rows, key=lambda r: r.tokens, reverse=True)[:limit]
    return [
        UserTokenRanking(
            username=r.username,
            display_name=r.display_name,
            tokens=r.tokens,
            count=r.count,
            quota=r.quota,
        )
        for r in ordered
    ]


def split_ips(ips: str) -> List[str]:
    return [ip.strip() for ip in (ips or "").split(",") if ip.strip()]


def build_user_ip_count_ranking(
    rows: Sequence[UserAggregateRow], limit: int
) -> List[UserIPCountRanking]:
    """
    Rank users by distinct IP count, recomputed from the IP list itself.

    Blank entries are dropped before counting and users left with no
    valid IP are excluded.
    """
    filtered = []
    for r in rows:
        valid = split_ips(r.ip)
        if not valid:
            continue
        filtered.append(
            UserIPCountRanking(
                username=r.username,
                display_name=r.display_name,
                ip=",".join(valid),
                ip_count=len(valid),
                count=r.count,
                tokens=r.tokens,
                quota=r.quota,
            )
        )
    filtered.sort(key=lambda r: r.ip_count, reverse=True)
    return filtered[:limit]


# =============================================================================
# MASKING
# =============================================================================


def mask_ip(ip: str) -> str:
    """
    Hide the middle of an address.

    "192.168.1.100" -> "192.***.***.100"; other values longer than eight
    characters keep their first and last four; anything shorter is "****".
    """
    parts = ip.split(".")
    if len(parts) == 4:
        return f"{parts[0]}.***.***.{parts[3]}"
    if len(ip) > 8:
        return f"{ip[:4]}****{ip[-4:]}"
    return "****"


def mask_ips(ips: str) -> str:
    return ",".join(mask_ip(part.strip()) for part in ips.split(","))


def mask_snapshot(snapshot: RankingSnapshot) -> RankingSnapshot:
    return replace(
        snapshot,
        user_call_ranking=tuple(
            replace(r, ip=mask_ips(r.ip)) for r in snapshot.user_call_ranking
        ),
        ip_call_ranking=tuple(
            replace(r, ip=mask_ip(r.ip)) for r in snapshot.ip_call_ranking
        ),
        user_ip_count_ranking=tuple(
            replace(r, ip=mask_ips(r.ip)) for r in snapshot.user_ip_count_ranking
        ),
        user_minute_ip_ranking=tuple(
            replace(r, ip=mask_ips(r.ip)) for r in snapshot.user_minute_ip_ranking
        ),
    )


# =============================================================================
# CACHE
# =============================================================================


class RankingSource(Protocol):
    async def fetch_user_aggregates(self) -> List[UserAggregateRow]:
        ...

    async def fetch_ip_call_ranking(self, limit: int) -> List[IPCallRanking]:
        ...

    async def fetch_user_minute_ip_ranking(
        self, limit: int
    ) -> List[UserMinuteIPRanking]:
        ...


class RankingCache:
    """
    Time- and day-bounded cache of today's usage rankings.

    Concurrent misses share a single refresh. A failed refresh leaves
    the previous snapshot untouched and raises UpstreamUnavailable.
    """

    def __init__(
        self,
        source: RankingSource,
        *,
        limit: int = DEFAULT_RANKING_LIMIT,
        ttl_seconds: float = DEFAULT_RANKING_TTL_SECONDS,
        now: Optional[Callable[[], datetime]] = None,
    ):
        """
        Initialize the cache.

        Args:
            source: Log store queries for today's statistics
            limit: Maximum rows kept per ranking
            ttl_seconds: Snapshot lifetime within a single day
            now: Clock returning local time; its date decides the day
        """
        self._source = source
        self._limit = limit
        self._ttl_seconds = ttl_seconds
        self._now = now or datetime.now
        self._snapshot: Optional[RankingSnapshot] = None
        self._refresh_lock = asyncio.Lock()

    def is_fresh(self, snapshot: Optional[RankingSnapshot], now: datetime) -> bool:
        if snapshot is None:
            return False
        return (
            now.timestamp() - snapshot.computed_at < self._ttl_seconds
            and snapshot.day == now.date()
        )

    def invalidate(self) -> None:
        self._snapshot = None

    async def get_snapshot(self, is_privileged: bool) -> RankingSnapshot:
        """
        Return today's rankings, refreshing them if stale.

        Args:
            is_privileged: Admin viewers see unmasked IP addresses

        Returns:
            The cached snapshot, or a masked copy of it
        """
        snapshot = await self._current_snapshot()
        if is_privileged:
            return snapshot
        return mask_snapshot(snapshot)

    async def _current_snapshot(self) -> RankingSnapshot:
        snapshot = self._snapshot
        if self.is_fresh(snapshot, self._now()):
            return snapshot

        async with self._refresh_lock:
            snapshot = self._snapshot
            now = self._now()
            if self.is_fresh(snapshot, now):
                return snapshot
            snapshot = await self._compute(now)
            self._snapshot = snapshot
            return snapshot

    async def _compute(self, now: datetime) -> RankingSnapshot:
        started = time.monotonic()
        results = await asyncio.gather(
            self._source.fetch_user_aggregates(),
            self._source.fetch_ip_call_ranking(self._limit),
            self._source.fetch_user_minute_ip_ranking(self._limit),
            return_exceptions=True,
        )
        for result in results:
            if isinstance(result, Exception):
                lib_logger.error(f"Ranking refresh failed: {result}")
                raise UpstreamUnavailable("failed to load ranking statistics") from result
            if isinstance(result, BaseException):
                raise result

        aggregates, ip_ranking, minute_ranking = results
        snapshot = RankingSnapshot(
            user_call_ranking=tuple(build_user_call_ranking(aggregates, self._limit)),
            ip_call_ranking=tuple(ip_ranking[: self._limit]),
            user_token_ranking=tuple(build_user_token_ranking(aggregates, self._limit)),
            user_ip_count_ranking=tuple(
                build_user_ip_count_ranking(aggregates, self._limit)
            ),
            user_minute_ip_ranking=tuple(minute_ranking[: self._limit]),
            computed_at=now.timestamp(),
            day=now.date(),
        )
        lib_logger.info(
            f"Ranking snapshot refreshed for {snapshot.day.isoformat()}: "
            f"{len(aggregates)} users in {time.monotonic() - started:.2f}s"
        )
        return snapshot
