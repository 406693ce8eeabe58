from __future__ import annotations

import os
from dataclasses import dataclass

from dotenv import load_dotenv

load_dotenv()

def _get_env(name: str, default: str | None = None) -> str | None:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    return value


def _get_env_bool(name: str, default: bool) -> bool:
    raw = _get_env(name, None)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


def _get_env_int(name: str, default: int) -> int:
    raw = _get_env(name, None)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _get_env_list(name: str, default: list[str]) -> tuple[str, ...]:
    raw = _get_env(name, None)
    if raw is None:
        return tuple(default)
    values = [item.strip() for item in raw.split(",")]
    clean = [item for item in values if item]
    return tuple(clean) if clean else tuple(default)


@dataclass(frozen=True)
class Settings:
    api_key: str | None
    rate_limit: str
    rate_limit_enabled: bool
    reconcile_batch_rate_limit: str
    log_level: str
    sentry_dsn: str | None
    cors_allowed_origins: tuple[str, ...]
    cors_allow_origin_regex: str | None
    analysis_db_path: str
    reconcile_batch_default_limit: int
    reconcile_batch_max_limit: int
    run_log_enabled: bool
    run_log_retention_days: int


settings = Settings(
    api_key=_get_env("API_KEY"),
    rate_limit=_get_env("RATE_LIMIT", "60/minute") or "60/minute",
    rate_limit_enabled=_get_env_bool("RATE_LIMIT_ENABLED", True),
    reconcile_batch_rate_limit=_get_env("RECONCILE_BATCH_RATE_LIMIT", "10/minute") or "10/minute",
    log_level=_get_env("LOG_LEVEL", "INFO") or "INFO",
    sentry_dsn=_get_env("SENTRY_DSN"),
    cors_allowed_origins=_get_env_list(
        "CORS_ALLOWED_ORIGINS",
        [
            "http://localhost:5173",
            "http://127.0.0.1:5173",
            "http://localhost:3000",
        ],
    ),
    cors_allow_origin_regex=_get_env("CORS_ALLOW_ORIGIN_REGEX"),
    analysis_db_path=_get_env("ANALYSIS_DB_PATH", "data/analysis.db") or "data/analysis.db",
    reconcile_batch_default_limit=_get_env_int("RECONCILE_BATCH_DEFAULT_LIMIT", 50),
    reconcile_batch_max_limit=_get_env_int("RECONCILE_BATCH_MAX_LIMIT", 500),
    run_log_enabled=_get_env_bool("RUN_LOG_ENABLED", True),
    run_log_retention_days=_get_env_int("RUN_LOG_RETENTION_DAYS", 90),
)

if settings.reconcile_batch_default_limit < 1:
    raise RuntimeError("RECONCILE_BATCH_DEFAULT_LIMIT must be at least 1.")

if settings.reconcile_batch_max_limit < settings.reconcile_batch_default_limit:
    raise RuntimeError("RECONCILE_BATCH_MAX_LIMIT must not be lower than RECONCILE_BATCH_DEFAULT_LIMIT.")
