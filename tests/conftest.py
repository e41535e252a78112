"""Shared pytest fixtures for async database testing.

This module provides reusable fixtures for testing the action log, the
quota ledger and the bulk orchestrator against in-memory SQLite databases.
The action log and the quota ledger get separate engines, mirroring a
deployment where QUOTA_DATABASE_URL points at its own store.
"""

import pytest
import pytest_asyncio
from cryptography.fernet import Fernet
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from playlist_manager.models import Base, utcnow
from playlist_manager.services.bulk_orchestrator import BulkOrchestrator
from playlist_manager.services.quota_ledger import QuotaLedger
from playlist_manager.utils.encryption import EncryptionService
from tests.support.fake_provider import FakePlaylistProvider, FrozenClock


@pytest.fixture
def valid_fernet_key() -> str:
    """Generate a valid Fernet key for testing.

    Returns a fresh, valid Fernet key string suitable for
    use with EncryptionService tests.
    """
    return Fernet.generate_key().decode()


@pytest.fixture(autouse=False)
def encryption_env(valid_fernet_key: str, monkeypatch: pytest.MonkeyPatch):
    """Set up encryption environment for tests.

    Sets FERNET_KEY environment variable and resets the
    EncryptionService singleton before and after the test.
    """
    EncryptionService.reset_instance()
    monkeypatch.setenv("FERNET_KEY", valid_fernet_key)
    yield valid_fernet_key
    EncryptionService.reset_instance()


@pytest.fixture(autouse=True)
def no_discord_webhook(monkeypatch: pytest.MonkeyPatch):
    """Keep quota alerts off the network unless a test opts in."""
    monkeypatch.delenv("DISCORD_WEBHOOK_URL", raising=False)


@pytest_asyncio.fixture
async def async_engine():
    """Create an async SQLite engine for the action log.

    Uses in-memory SQLite with aiosqlite and a single shared connection so
    every session sees the same database. Creates all tables before
    yielding, disposes after.
    """
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        echo=False,
        poolclass=StaticPool,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(async_engine) -> async_sessionmaker[AsyncSession]:
    """Session factory bound to the action log engine (production settings)."""
    return async_sessionmaker(
        bind=async_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


@pytest_asyncio.fixture
async def async_session(session_factory):
    """Create an async session for testing."""
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture
async def quota_engine():
    """Separate in-memory engine for the quota ledger (tables created by the ledger)."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        echo=False,
        poolclass=StaticPool,
    )
    yield engine
    await engine.dispose()


@pytest.fixture
def clock() -> FrozenClock:
    """Clock starting at the real current instant; tests move it explicitly."""
    return FrozenClock(utcnow())


@pytest_asyncio.fixture
async def ledger(quota_engine, clock) -> QuotaLedger:
    """QuotaLedger with a 10,000 unit budget and a controllable clock."""
    quota_ledger = QuotaLedger(
        quota_engine,
        daily_budget=10_000,
        retention_days=35,
        vacuum_interval_days=7,
        clock=clock,
    )
    await quota_ledger.ensure_schema()
    return quota_ledger


@pytest.fixture
def provider() -> FakePlaylistProvider:
    return FakePlaylistProvider()


@pytest.fixture
def provider_factory(provider: FakePlaylistProvider):
    """ProviderFactory resolving every user to the shared fake provider."""

    async def resolve(user_id: str) -> FakePlaylistProvider:
        return provider

    return resolve


@pytest.fixture
def orchestrator(session_factory, ledger, provider_factory) -> BulkOrchestrator:
    return BulkOrchestrator(session_factory, ledger, provider_factory)
