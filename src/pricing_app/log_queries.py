from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime, time as dt_time
from typing import Any, Callable

from sqlalchemy import delete, distinct, func, literal_column, or_, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from pricing_app.db_models import LOG_TYPE_CONSUME, UsageLog, User
from ratio_engine.ranking import IPCallRanking, UserAggregateRow, UserMinuteIPRanking

logger = logging.getLogger(__name__)

SEARCH_RESULT_LIMIT = 100


@dataclass(slots=True)
class LogFilters:
    log_type: int = 0
    start_timestamp: int = 0
    end_timestamp: int = 0
    model_name: str = ""
    username: str = ""
    token_name: str = ""
    channel: int = 0
    group: str = ""


def _apply_filters(stmt: Any, filters: LogFilters, *, user_id: int | None = None) -> Any:
    if user_id is not None:
        stmt = stmt.where(UsageLog.user_id == user_id)
    elif filters.username:
        stmt = stmt.where(UsageLog.username == filters.username)
    if filters.log_type:
        stmt = stmt.where(UsageLog.type == filters.log_type)
    if filters.start_timestamp:
        stmt = stmt.where(UsageLog.created_at >= filters.start_timestamp)
    if filters.end_timestamp:
        stmt = stmt.where(UsageLog.created_at <= filters.end_timestamp)
    if filters.model_name:
        stmt = stmt.where(UsageLog.model_name.like(f"%{filters.model_name}%"))
    if filters.token_name:
        stmt = stmt.where(UsageLog.token_name == filters.token_name)
    if filters.channel:
        stmt = stmt.where(UsageLog.channel_id == filters.channel)
    if filters.group:
        stmt = stmt.where(UsageLog.group == filters.group)
    return stmt


def serialize_log(row: UsageLog) -> dict[str, Any]:
    return {
        "id": row.id,
        "user_id": row.user_id,
        "created_at": row.created_at,
        "type": row.type,
        "content": row.content,
        "username": row.username,
        "token_name": row.token_name,
        "model_name": row.model_name,
        "quota": row.quota,
        "prompt_tokens": row.prompt_tokens,
        "completion_tokens": row.completion_tokens,
        "channel": row.channel_id,
        "group": row.group,
        "ip": row.ip,
    }


async def fetch_logs(
    session: AsyncSession,
    filters: LogFilters,
    *,
    offset: int,
    limit: int,
    user_id: int | None = None,
) -> tuple[list[dict[str, Any]], int]:
    total = await session.scalar(
        _apply_filters(select(func.count(UsageLog.id)), filters, user_id=user_id)
    )
    rows = await session.scalars(
        _apply_filters(select(UsageLog), filters, user_id=user_id)
        .order_by(UsageLog.id.desc())
        .offset(offset)
        .limit(limit)
    )
    return [serialize_log(row) for row in rows], int(total or 0)


async def search_logs(
    session: AsyncSession,
    keyword: str,
    *,
    user_id: int | None = None,
    limit: int = SEARCH_RESULT_LIMIT,
) -> list[dict[str, Any]]:
    keyword = keyword.strip()
    if not keyword:
        return []

    pattern = f"%{keyword}%"
    stmt = select(UsageLog).where(
        or_(
            UsageLog.content.like(pattern),
            UsageLog.model_name.like(pattern),
            UsageLog.token_name.like(pattern),
            UsageLog.username.like(pattern),
        )
    )
    if user_id is not None:
        stmt = stmt.where(UsageLog.user_id == user_id)
    rows = await session.scalars(stmt.order_by(UsageLog.id.desc()).limit(limit))
    return [serialize_log(row) for row in rows]


async def sum_usage(
    session: AsyncSession,
    filters: LogFilters,
    *,
    user_id: int | None = None,
    now: int | None = None,
) -> dict[str, int]:
    """Quota over the filtered range, plus requests and tokens in the last minute."""
    consume_filters = LogFilters(
        log_type=LOG_TYPE_CONSUME,
        start_timestamp=filters.start_timestamp,
        end_timestamp=filters.end_timestamp,
        model_name=filters.model_name,
        username=filters.username,
        token_name=filters.token_name,
        channel=filters.channel,
        group=filters.group,
    )
    quota = await session.scalar(
        _apply_filters(
            select(func.coalesce(func.sum(UsageLog.quota), 0)),
            consume_filters,
            user_id=user_id,
        )
    )

    minute_ago = (now if now is not None else int(time.time())) - 60
    row = (
        await session.execute(
            _apply_filters(
                select(
                    func.count(UsageLog.id),
                    func.coalesce(
                        func.sum(UsageLog.prompt_tokens + UsageLog.completion_tokens), 0
                    ),
                ),
                consume_filters,
                user_id=user_id,
            ).where(UsageLog.created_at >= minute_ago)
        )
    ).one()

    return {"quota": int(quota or 0), "rpm": int(row[0]), "tpm": int(row[1])}


async def delete_logs_before(
    session_maker: async_sessionmaker[AsyncSession],
    target_timestamp: int,
    *,
    batch_size: int = 100,
) -> int:
    deleted = 0
    while True:
        async with session_maker() as session:
            ids = list(
                await session.scalars(
                    select(UsageLog.id)
                    .where(UsageLog.created_at < target_timestamp)
                    .limit(batch_size)
                )
            )
            if not ids:
                break
            await session.execute(delete(UsageLog).where(UsageLog.id.in_(ids)))
            await session.commit()
        deleted += len(ids)
        if len(ids) < batch_size:
            break

    if deleted > 0:
        logger.info("Deleted %d logs older than %d", deleted, target_timestamp)
    return deleted


# =============================================================================
# TODAY'S RANKING QUERIES
# =============================================================================


def today_start_timestamp(now: datetime) -> int:
    return int(datetime.combine(now.date(), dt_time.min).timestamp())


def _distinct_ip_list(session: AsyncSession) -> Any:
    if session.get_bind().dialect.name == "postgresql":
        return func.string_agg(distinct(UsageLog.ip), literal_column("','"))
    return func.group_concat(distinct(UsageLog.ip))


async def fetch_today_user_aggregates(
    session: AsyncSession, *, since: int
) -> list[UserAggregateRow]:
    rows = await session.execute(
        select(
            UsageLog.username,
            func.max(User.display_name),
            _distinct_ip_list(session),
            func.count(distinct(UsageLog.ip)),
            func.count(UsageLog.id),
            func.coalesce(
                func.sum(UsageLog.prompt_tokens + UsageLog.completion_tokens), 0
            ),
            func.coalesce(func.sum(UsageLog.quota), 0),
        )
        .outerjoin(User, User.id == UsageLog.user_id)
        .where(UsageLog.type == LOG_TYPE_CONSUME, UsageLog.created_at >= since)
        .group_by(UsageLog.username)
        .order_by(UsageLog.username.asc())
    )
    return [
        UserAggregateRow(
            username=row[0],
            display_name=row[1] or "",
            ip=row[2] or "",
            ip_count=int(row[3]),
            count=int(row[4]),
            tokens=int(row[5]),
            quota=int(row[6]),
        )
        for row in rows
    ]


async def fetch_today_ip_call_ranking(
    session: AsyncSession, *, since: int, limit: int
) -> list[IPCallRanking]:
    call_count = func.count(UsageLog.id)
    rows = await session.execute(
        select(UsageLog.ip, call_count)
        .where(
            UsageLog.type == LOG_TYPE_CONSUME,
            UsageLog.created_at >= since,
            UsageLog.ip != "",
        )
        .group_by(UsageLog.ip)
        .order_by(call_count.desc(), UsageLog.ip.asc())
        .limit(limit)
    )
    return [IPCallRanking(ip=row[0], count=int(row[1])) for row in rows]


async def fetch_today_user_minute_ip_ranking(
    session: AsyncSession, *, since: int, limit: int
) -> list[UserMinuteIPRanking]:
    minute = (UsageLog.created_at - UsageLog.created_at % 60).label("minute")
    ip_count = func.count(distinct(UsageLog.ip))
    rows = await session.execute(
        select(
            UsageLog.username,
            func.max(User.display_name),
            minute,
            _distinct_ip_list(session),
            ip_count,
        )
        .outerjoin(User, User.id == UsageLog.user_id)
        .where(
            UsageLog.type == LOG_TYPE_CONSUME,
            UsageLog.created_at >= since,
            UsageLog.ip != "",
        )
        .group_by(UsageLog.username, minute)
        .order_by(ip_count.desc(), minute.desc(), UsageLog.username.asc())
        .limit(limit)
    )
    return [
        UserMinuteIPRanking(
            username=row[0],
            display_name=row[1] or "",
            minute=int(row[2]),
            ip=row[3] or "",
            ip_count=int(row[4]),
        )
        for row in rows
    ]


class LogStoreRankingSource:
    """Ranking queries against the log store, one session per query."""

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        *,
        now: Callable[[], datetime] | None = None,
    ):
        self._session_maker = session_maker
        self._now = now or datetime.now

    def _since(self) -> int:
        return today_start_timestamp(self._now())

    async def fetch_user_aggregates(self) -> list[UserAggregateRow]:
        async with self._session_maker() as session:
            return await fetch_today_user_aggregates(session, since=self._since())

    async def fetch_ip_call_ranking(self, limit: int) -> list[IPCallRanking]:
        async with self._session_maker() as session:
            return await fetch_today_ip_call_ranking(
                session, since=self._since(), limit=limit
            )

    async def fetch_user_minute_ip_ranking(self, limit: int) -> list[UserMinuteIPRanking]:
        async with self._session_maker() as session:
            return await fetch_today_user_minute_ip_ranking(
                session, since=self._since(), limit=limit
            )
