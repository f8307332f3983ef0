import logging
import os
from dataclasses import dataclass

from ratio_engine.engine import RateSubject
from ratio_engine.ranking import DEFAULT_RANKING_LIMIT, DEFAULT_RANKING_TTL_SECONDS
from ratio_engine.rate_sampler import DEFAULT_KEY_PREFIX

logger = logging.getLogger(__name__)

DEFAULT_SESSION_SECRET = "change-me-session-secret"


def parse_bool_env(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def parse_int_env(name: str, default: int, *, minimum: int = 0) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = int(raw)
    except ValueError:
        logger.warning("%s=%r is not an integer, using %d", name, raw, default)
        return default
    return max(minimum, value)


def get_rpm_subject() -> RateSubject:
    raw = (os.getenv("DYNAMIC_RATIO_RPM_SUBJECT") or RateSubject.USER.value).strip().lower()
    try:
        return RateSubject(raw)
    except ValueError:
        logger.warning("Unknown DYNAMIC_RATIO_RPM_SUBJECT %r, using 'user'", raw)
        return RateSubject.USER


def get_session_secret() -> str:
    return (os.getenv("SESSION_SECRET") or "").strip() or DEFAULT_SESSION_SECRET


@dataclass(frozen=True)
class AppSettings:
    database_url: str
    sqlite_busy_timeout_ms: int
    redis_url: str
    redis_enabled: bool
    redis_socket_timeout_seconds: float
    rate_limit_key_prefix: str
    rpm_subject: RateSubject
    ranking_cache_ttl_seconds: int
    ranking_limit: int
    option_sync_interval_seconds: int
    log_level: str


def load_settings() -> AppSettings:
    redis_url = (os.getenv("REDIS_URL") or "").strip()
    return AppSettings(
        database_url=(os.getenv("DATABASE_URL") or "").strip(),
        sqlite_busy_timeout_ms=parse_int_env("SQLITE_BUSY_TIMEOUT_MS", 5000, minimum=1000),
        redis_url=redis_url,
        redis_enabled=bool(redis_url) and parse_bool_env("REDIS_ENABLED", True),
        redis_socket_timeout_seconds=parse_int_env(
            "REDIS_SOCKET_TIMEOUT_MS", 500, minimum=50
        )
        / 1000,
        rate_limit_key_prefix=(
            os.getenv("RATE_LIMIT_KEY_PREFIX") or DEFAULT_KEY_PREFIX
        ).strip(),
        rpm_subject=get_rpm_subject(),
        ranking_cache_ttl_seconds=parse_int_env(
            "RANKING_CACHE_TTL_SECONDS", DEFAULT_RANKING_TTL_SECONDS, minimum=1
        ),
        ranking_limit=parse_int_env("RANKING_LIMIT", DEFAULT_RANKING_LIMIT, minimum=1),
        option_sync_interval_seconds=parse_int_env("OPTION_SYNC_INTERVAL_SECONDS", 60),
        log_level=(os.getenv("LOG_LEVEL") or "INFO").strip().upper(),
    )


def warn_insecure_defaults() -> None:
    if get_session_secret() == DEFAULT_SESSION_SECRET:
        logger.warning(
            "SECURITY WARNING: SESSION_SECRET is using default value. "
            "Set SESSION_SECRET for non-local usage."
        )
