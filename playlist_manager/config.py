"""Configuration management for the playlist manager service.

This module provides centralized configuration loading from environment variables.
Getters read the environment on each call unless cached with lru_cache.

Environment Variables:
    DATABASE_URL: PostgreSQL connection URL (required for production)
    QUOTA_DATABASE_URL: Storage for the quota ledger (defaults to DATABASE_URL)
    DAILY_BUDGET: Provider quota units available per day (default: 10000)
    RETENTION_DAYS: Days of quota history kept by maintenance (default: 35)
    VACUUM_INTERVAL_DAYS: Days between storage compactions (default: 7)
    QUOTA_RECONCILE_INTERVAL_SECONDS: Background quota sweep interval (default: 300)
    FERNET_KEY: Encryption key for stored provider tokens (required for credentials)
    LOG_LEVEL: Root log level (default: INFO)

Usage:
    from playlist_manager.config import get_daily_budget, get_database_url

    budget = get_daily_budget()  # 10000 unless overridden
    db_url = get_database_url()  # Raises if DATABASE_URL not set
"""

import os
from functools import lru_cache

import structlog

log = structlog.get_logger(__name__)

DEFAULT_DAILY_BUDGET = 10_000
DEFAULT_RETENTION_DAYS = 35
DEFAULT_VACUUM_INTERVAL_DAYS = 7
DEFAULT_RECONCILE_INTERVAL_SECONDS = 300


def _normalize_database_url(url: str) -> str:
    # Hosted Postgres hands out postgresql:// but we need postgresql+asyncpg://
    if url.startswith("postgresql://"):
        url = url.replace("postgresql://", "postgresql+asyncpg://", 1)
    return url


def _get_positive_int(name: str, default: int) -> int:
    """Read a positive integer from the environment, falling back on bad input.

    Args:
        name: Environment variable name.
        default: Value used when the variable is unset, non-numeric or < 1.

    Returns:
        Parsed integer or the default.
    """
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        log.warning("invalid_config_value", name=name, value=raw, using_default=default)
        return default
    if value < 1:
        log.warning("invalid_config_value", name=name, value=raw, using_default=default)
        return default
    return value


@lru_cache
def get_database_url() -> str:
    """Get database URL from environment.

    Converts postgresql:// to postgresql+asyncpg:// for async SQLAlchemy.

    Environment Variable:
        DATABASE_URL: PostgreSQL connection URL

    Returns:
        Database URL with asyncpg driver.

    Raises:
        ValueError: If DATABASE_URL not set.
    """
    url = os.getenv("DATABASE_URL")
    if not url:
        raise ValueError("DATABASE_URL environment variable is required")
    return _normalize_database_url(url)


def get_quota_database_url() -> str | None:
    """Get the quota ledger storage URL.

    The ledger lives in a lightweight store that may be separate from the
    action log database. When QUOTA_DATABASE_URL is not set the main
    DATABASE_URL is reused.

    Returns:
        Database URL, or None if neither variable is set.
    """
    url = os.getenv("QUOTA_DATABASE_URL") or os.getenv("DATABASE_URL")
    if not url:
        return None
    return _normalize_database_url(url)


def get_daily_budget() -> int:
    """Get the provider's daily quota budget in units.

    Environment Variable:
        DAILY_BUDGET: Units per day (default: 10000, YouTube Data API v3 default)

    Returns:
        Daily budget in quota units.
    """
    return _get_positive_int("DAILY_BUDGET", DEFAULT_DAILY_BUDGET)


def get_retention_days() -> int:
    """Get how many days of quota usage rows are kept (default: 35)."""
    return _get_positive_int("RETENTION_DAYS", DEFAULT_RETENTION_DAYS)


def get_vacuum_interval_days() -> int:
    """Get the minimum number of days between storage compactions (default: 7)."""
    return _get_positive_int("VACUUM_INTERVAL_DAYS", DEFAULT_VACUUM_INTERVAL_DAYS)


def get_reconcile_interval() -> int:
    """Get the quota reconcile loop interval in seconds.

    Environment Variable:
        QUOTA_RECONCILE_INTERVAL_SECONDS: Sweep interval (default: 300)

    Returns:
        Interval in seconds (minimum 30, maximum 3600).

    Note:
        The sweep re-applies quota costs whose post-commit ledger write
        failed. Values are clamped so the loop neither spins nor leaves
        the ledger stale for more than an hour.
    """
    try:
        interval = int(
            os.getenv("QUOTA_RECONCILE_INTERVAL_SECONDS", str(DEFAULT_RECONCILE_INTERVAL_SECONDS))
        )
        return max(30, min(3600, interval))
    except ValueError:
        log.warning(
            "invalid_reconcile_interval",
            value=os.getenv("QUOTA_RECONCILE_INTERVAL_SECONDS"),
            using_default=DEFAULT_RECONCILE_INTERVAL_SECONDS,
        )
        return DEFAULT_RECONCILE_INTERVAL_SECONDS


@lru_cache
def get_fernet_key() -> str:
    """Get Fernet encryption key from environment.

    Environment Variable:
        FERNET_KEY: Base64-encoded Fernet key for credential encryption

    Returns:
        Fernet key string.

    Raises:
        ValueError: If FERNET_KEY not set.
    """
    key = os.getenv("FERNET_KEY")
    if not key:
        raise ValueError("FERNET_KEY environment variable is required")
    return key


def get_log_level() -> str:
    """Get the root log level name (default: "INFO")."""
    return os.getenv("LOG_LEVEL", "INFO").upper()
