"""Async database engine, session management and the transaction manager.

This module provides the async SQLAlchemy 2.0 engine configuration, the
session factory and `transaction()`, the unit-of-work boundary wrapped
around every action log write.

Usage:
    from playlist_manager.database import transaction

    async with transaction(session_factory) as session:
        log = ActionLog(session)
        action = await log.create_action(ActionType.ADD, user_id)
        ...
    # committed here, or rolled back if the block raised
"""

import os
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool

from playlist_manager.exceptions import ConfigurationError, InternalError
from playlist_manager.utils.logging import get_logger

log = get_logger(__name__)


def _get_database_url() -> str:
    """Get database URL from environment, ensuring asyncpg driver.

    Returns:
        Database URL with postgresql+asyncpg:// protocol.

    Raises:
        ValueError: If DATABASE_URL is not set.
    """
    database_url = os.getenv("DATABASE_URL")
    if not database_url:
        raise ValueError("DATABASE_URL environment variable is required")

    if database_url.startswith("postgresql://"):
        database_url = database_url.replace("postgresql://", "postgresql+asyncpg://", 1)

    return database_url


def create_engine_for_url(database_url: str, **kwargs: Any) -> AsyncEngine:
    """Create an async engine with pool settings suited to the dialect.

    SQLite gets a single shared connection (StaticPool) for in-memory URLs;
    PostgreSQL gets a bounded pool with pre-ping.
    """
    if database_url.startswith("sqlite"):
        if ":memory:" in database_url:
            kwargs.setdefault("poolclass", StaticPool)
        return create_async_engine(database_url, **kwargs)

    kwargs.setdefault("pool_size", 10)
    kwargs.setdefault("max_overflow", 5)
    kwargs.setdefault("pool_pre_ping", True)
    return create_async_engine(
        database_url,
        echo=os.getenv("DATABASE_ECHO", "").lower() == "true",
        **kwargs,
    )


def create_session_factory(bind: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        bind=bind,
        class_=AsyncSession,
        expire_on_commit=False,  # results are read after commit to shape responses
    )


# Check if DATABASE_URL is available (may not be during import in tests)
_database_url = os.getenv("DATABASE_URL")

engine: AsyncEngine | None = create_engine_for_url(_get_database_url()) if _database_url else None

async_session_factory: async_sessionmaker[AsyncSession] | None = (
    create_session_factory(engine) if engine else None
)


@asynccontextmanager
async def transaction(
    session_factory: async_sessionmaker[AsyncSession] | None = None,
) -> AsyncIterator[AsyncSession]:
    """Open one unit of work: BEGIN on entry, COMMIT on clean exit, ROLLBACK on error.

    Args:
        session_factory: Factory to draw the session from. Defaults to the
            module-level factory built from DATABASE_URL.

    Yields:
        AsyncSession inside an active transaction.

    Raises:
        InternalError: If the storage layer fails, including at COMMIT.
            Nothing written inside the block is persisted.
        Exception: Any other exception raised by the block propagates
            unchanged after rollback.
    """
    factory = session_factory or async_session_factory
    if factory is None:
        raise ConfigurationError("Database not configured. Set DATABASE_URL environment variable.")

    async with factory() as session:
        try:
            async with session.begin():
                yield session
        except SQLAlchemyError as e:
            log.error("transaction_failed", error=str(e), error_type=type(e).__name__)
            raise InternalError("Storage transaction failed") from e


def dialect_insert(dialect_name: str, table: Any):
    """Return an INSERT construct supporting ON CONFLICT for the given dialect.

    Both SQLite and PostgreSQL expose on_conflict_do_update / do_nothing with
    the same signature, which the ledger upsert and idempotency claim rely on.

    Raises:
        ConfigurationError: For dialects without ON CONFLICT support.
    """
    if dialect_name == "postgresql":
        return postgresql.insert(table)
    if dialect_name == "sqlite":
        return sqlite.insert(table)
    raise ConfigurationError(f"Unsupported database dialect for upserts: {dialect_name}")


def create_test_engine(
    database_url: str = "sqlite+aiosqlite:///:memory:",
) -> tuple[AsyncEngine, async_sessionmaker[AsyncSession]]:
    """Create an async engine for testing.

    Args:
        database_url: Test database URL (defaults to in-memory SQLite).

    Returns:
        Tuple of (engine, async_session_factory) for testing.
    """
    test_engine = create_engine_for_url(database_url)
    return test_engine, create_session_factory(test_engine)
