import logging
from pathlib import Path

from sqlalchemy import event
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from pricing_app.db_models import Base

logger = logging.getLogger(__name__)

# The log table takes concurrent readers while the gateway appends to it.
SQLITE_PRAGMAS = ("journal_mode=WAL", "synchronous=NORMAL")


def default_database_url(root_dir: Path) -> str:
    data_dir = root_dir / "data"
    data_dir.mkdir(parents=True, exist_ok=True)
    return f"sqlite+aiosqlite:///{data_dir / 'pricing.db'}"


def build_engine(database_url: str, *, sqlite_busy_timeout_ms: int = 5000) -> AsyncEngine:
    url = make_url(database_url)
    if url.get_backend_name() != "sqlite":
        return create_async_engine(url, pool_pre_ping=True)

    engine = create_async_engine(url, connect_args={"timeout": sqlite_busy_timeout_ms / 1000})
    pragmas = (*SQLITE_PRAGMAS, f"busy_timeout={sqlite_busy_timeout_ms}")

    @event.listens_for(engine.sync_engine, "connect")
    def _apply_pragmas(dbapi_connection, _connection_record):
        cursor = dbapi_connection.cursor()
        for pragma in pragmas:
            cursor.execute(f"PRAGMA {pragma}")
        cursor.close()

    return engine


async def init_db_runtime(
    database_url: str,
    *,
    sqlite_busy_timeout_ms: int = 5000,
) -> tuple[AsyncEngine, async_sessionmaker[AsyncSession]]:
    """Create the engine, ensure the users/logs/options tables and return a session factory."""
    engine = build_engine(database_url, sqlite_busy_timeout_ms=sqlite_busy_timeout_ms)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    logger.info("Log store ready on %s", engine.url.render_as_string(hide_password=True))
    return engine, async_sessionmaker(engine, expire_on_commit=False)
