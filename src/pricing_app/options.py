import asyncio
import logging
from dataclasses import dataclass
from typing import Callable

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from pricing_app.db_models import Option
from ratio_engine.dynamic_ratio import DynamicRatioConfigStore
from ratio_engine.errors import RatioConfigValidationError
from ratio_engine.group_settings import GroupSettingsStore

logger = logging.getLogger(__name__)

OPTION_DYNAMIC_GROUP_RATIO = "DynamicGroupRatioSetting"


@dataclass(frozen=True, slots=True)
class OptionHandler:
    dump: Callable[[], str]
    validate: Callable[[str], None]
    apply: Callable[[str], object]


class OptionRegistry:
    """
    Named, persisted, hot-reloadable settings.

    Writes are validated first, stored second and applied last, so a
    rejected or unsaved payload never becomes active.
    """

    def __init__(self) -> None:
        self._handlers: dict[str, OptionHandler] = {}
        self._applied: dict[str, str] = {}

    def register(self, key: str, handler: OptionHandler) -> None:
        self._handlers[key] = handler

    def keys(self) -> list[str]:
        return list(self._handlers)

    def dump(self, key: str) -> str:
        return self._handler(key).dump()

    def _handler(self, key: str) -> OptionHandler:
        handler = self._handlers.get(key)
        if handler is None:
            raise RatioConfigValidationError(f"unknown option '{key}'")
        return handler

    async def load_all(self, session: AsyncSession) -> int:
        """Apply every stored option that differs from what is active."""
        rows = await session.scalars(
            select(Option).where(Option.key.in_(list(self._handlers)))
        )
        applied = 0
        for row in rows:
            if self._applied.get(row.key) == row.value:
                continue
            try:
                self._handlers[row.key].apply(row.value)
            except RatioConfigValidationError as e:
                logger.warning("Ignoring invalid stored option %s: %s", row.key, e)
                continue
            self._applied[row.key] = row.value
            applied += 1
        return applied

    async def save(self, session: AsyncSession, key: str, value: str) -> None:
        handler = self._handler(key)
        handler.validate(value)

        option = await session.get(Option, key)
        if option is None:
            session.add(Option(key=key, value=value))
        else:
            option.value = value
        await session.commit()

        handler.apply(value)
        self._applied[key] = value
        logger.info("Option %s updated", key)


def build_option_registry(
    config_store: DynamicRatioConfigStore,
    group_store: GroupSettingsStore,
) -> OptionRegistry:
    registry = OptionRegistry()
    registry.register(
        OPTION_DYNAMIC_GROUP_RATIO,
        OptionHandler(
            dump=config_store.to_json,
            validate=config_store.validate,
            apply=config_store.replace_from_json,
        ),
    )
    for key in group_store.keys():
        registry.register(
            key,
            OptionHandler(
                dump=lambda key=key: group_store.field_to_json(key),
                validate=lambda value, key=key: group_store.validate_field(key, value),
                apply=lambda value, key=key: group_store.replace_field(key, value),
            ),
        )
    return registry


class OptionSyncer:
    """Periodically reloads options so sibling processes pick up admin edits."""

    def __init__(
        self,
        registry: OptionRegistry,
        session_maker: async_sessionmaker[AsyncSession],
        *,
        interval_seconds: float,
    ):
        self._registry = registry
        self._session_maker = session_maker
        self._interval_seconds = interval_seconds
        self._task: asyncio.Task[None] | None = None
        self._stopping = asyncio.Event()

    async def start(self) -> None:
        if self._task or self._interval_seconds <= 0:
            return
        self._stopping.clear()
        self._task = asyncio.create_task(self._run(), name="option-syncer")

    async def stop(self) -> None:
        if not self._task:
            return
        self._stopping.set()
        await self._task
        self._task = None

    async def sync_once(self) -> int:
        async with self._session_maker() as session:
            return await self._registry.load_all(session)

    async def _run(self) -> None:
        while not self._stopping.is_set():
            try:
                await asyncio.wait_for(
                    self._stopping.wait(), timeout=self._interval_seconds
                )
                return
            except asyncio.TimeoutError:
                pass

            try:
                applied = await self.sync_once()
            except Exception:
                logger.exception("Option sync failed")
                continue
            if applied:
                logger.info("Option sync applied %d changed options", applied)
