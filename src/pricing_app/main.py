import logging
import os
from contextlib import asynccontextmanager
from pathlib import Path

import redis.asyncio as aioredis
from dotenv import load_dotenv
from fastapi import FastAPI, Request
from sqlalchemy.exc import SQLAlchemyError

from pricing_app.db import default_database_url, init_db_runtime
from pricing_app.log_queries import LogStoreRankingSource
from pricing_app.options import OptionSyncer, build_option_registry
from pricing_app.responses import api_failure
from pricing_app.routers import admin_router, group_router, log_router
from pricing_app.settings import (
    AppSettings,
    load_settings,
    parse_int_env,
    warn_insecure_defaults,
)
from ratio_engine import (
    DynamicRatioConfigStore,
    GroupNotUsable,
    GroupSettingsStore,
    PricingService,
    RankingCache,
    RatioConfigValidationError,
    RatioEngine,
    RedisRateSampler,
    UpstreamUnavailable,
)

# Load environment variables from .env file
load_dotenv()

ROOT_DIR = Path(__file__).resolve().parents[2]

logger = logging.getLogger(__name__)


def create_redis_client(settings: AppSettings) -> aioredis.Redis | None:
    if not settings.redis_enabled:
        logger.info("REDIS_URL not set, RPM-based ratios will see a rate of 0")
        return None
    return aioredis.from_url(
        settings.redis_url,
        decode_responses=True,
        socket_timeout=settings.redis_socket_timeout_seconds,
        socket_connect_timeout=settings.redis_socket_timeout_seconds,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Wire stores, services and background tasks for the app's lifetime."""
    settings = load_settings()
    logging.getLogger().setLevel(settings.log_level)
    warn_insecure_defaults()

    engine, session_maker = await init_db_runtime(
        settings.database_url or default_database_url(ROOT_DIR),
        sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
    )
    redis_client = create_redis_client(settings)

    config_store = DynamicRatioConfigStore()
    group_store = GroupSettingsStore()
    registry = build_option_registry(config_store, group_store)
    async with session_maker() as session:
        loaded = await registry.load_all(session)
    logger.info("Loaded %d stored options", loaded)

    ratio_engine = RatioEngine(
        config_store,
        group_store,
        RedisRateSampler(
            redis_client,
            enabled=settings.redis_enabled,
            key_prefix=settings.rate_limit_key_prefix,
        ),
        rpm_subject=settings.rpm_subject,
    )
    ranking_cache = RankingCache(
        LogStoreRankingSource(session_maker),
        limit=settings.ranking_limit,
        ttl_seconds=settings.ranking_cache_ttl_seconds,
    )

    app.state.db_engine = engine
    app.state.db_session_maker = session_maker
    app.state.option_registry = registry
    app.state.pricing_service = PricingService(
        config_store, group_store, ratio_engine, ranking_cache
    )

    syncer = OptionSyncer(
        registry, session_maker, interval_seconds=settings.option_sync_interval_seconds
    )
    await syncer.start()
    try:
        yield
    finally:
        await syncer.stop()
        if redis_client is not None:
            await redis_client.aclose()
        await engine.dispose()
        logger.info("Pricing service stopped")


def create_app() -> FastAPI:
    app = FastAPI(lifespan=lifespan)
    app.include_router(group_router)
    app.include_router(log_router)
    app.include_router(admin_router)

    @app.exception_handler(RatioConfigValidationError)
    async def _validation_error(_: Request, exc: RatioConfigValidationError):
        return api_failure(400, str(exc))

    @app.exception_handler(GroupNotUsable)
    async def _group_not_usable(_: Request, exc: GroupNotUsable):
        return api_failure(403, str(exc))

    @app.exception_handler(UpstreamUnavailable)
    async def _upstream_unavailable(_: Request, exc: UpstreamUnavailable):
        logger.warning("Upstream unavailable: %s", exc.__cause__ or exc)
        return api_failure(503, "Service temporarily unavailable")

    @app.exception_handler(SQLAlchemyError)
    async def _database_error(_: Request, exc: SQLAlchemyError):
        logger.error("Database error: %s", exc)
        return api_failure(503, "Service temporarily unavailable")

    @app.get("/")
    def read_root():
        return {"Status": "Group pricing service is running"}

    return app


# Configure logging
logging.basicConfig(level=logging.INFO)

app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "pricing_app.main:app",
        host=os.getenv("HOST", "127.0.0.1"),
        port=parse_int_env("PORT", 8000, minimum=1),
    )
