"""Idempotency guard for bulk submissions.

Maps a client-supplied key to the Action it produced so a retried request
replays the stored summary instead of re-executing remote calls.

Keys are scoped per user: (key, user_id) is the primary key, so two users
sending the same opaque token never see each other's actions.

The claim runs inside the orchestration transaction, after the Action row
is flushed and before any remote call:

    async with transaction(factory) as session:
        action = await ActionLog(session).create_action(...)
        if not await guard.claim(session, key, user_id, action.id):
            ...  # another request holds the key; roll back and replay it
        ...  # remote calls

The key therefore commits or rolls back together with its Action.
"""

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from playlist_manager.database import dialect_insert, transaction
from playlist_manager.models import IdempotencyKey, utcnow
from playlist_manager.utils.logging import get_logger

log = get_logger(__name__)


class IdempotencyGuard:
    """Lookup and atomic claim of idempotency keys.

    Args:
        session_factory: Factory for standalone lookups and registrations.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def check(self, key: str) -> bool:
        """Return True if any user has claimed `key`."""
        async with self.session_factory() as session:
            result = await session.execute(
                select(IdempotencyKey.key).where(IdempotencyKey.key == key).limit(1)
            )
            return result.scalar_one_or_none() is not None

    async def find(
        self, key: str, user_id: str, session: AsyncSession | None = None
    ) -> IdempotencyKey | None:
        """Return the claim for (key, user_id), or None."""
        stmt = select(IdempotencyKey).where(
            IdempotencyKey.key == key,
            IdempotencyKey.user_id == user_id,
        )
        if session is not None:
            return (await session.execute(stmt)).scalar_one_or_none()

        async with self.session_factory() as own_session:
            return (await own_session.execute(stmt)).scalar_one_or_none()

    async def claim(
        self, session: AsyncSession, key: str, user_id: str, action_id: str
    ) -> bool:
        """Atomically claim (key, user_id) for `action_id` in the caller's transaction.

        Uses INSERT ... ON CONFLICT DO NOTHING, so of two concurrent claims
        exactly one inserts a row. The Action row must already be flushed.

        Returns:
            True if this call inserted the claim, False if it was already held.
        """
        table = IdempotencyKey.__table__
        stmt = (
            dialect_insert(session.bind.dialect.name, table)
            .values(key=key, user_id=user_id, action_id=action_id, created_at=utcnow())
            .on_conflict_do_nothing(index_elements=[table.c.key, table.c.user_id])
        )
        result = await session.execute(stmt)
        claimed = result.rowcount == 1

        log.debug(
            "idempotency_claim",
            idempotency_key=key,
            user_id=user_id,
            action_id=action_id,
            claimed=claimed,
        )
        return claimed

    async def rebind(
        self, session: AsyncSession, key: str, user_id: str, action_id: str
    ) -> None:
        """Re-point an existing claim at `action_id`.

        Used when the claimed Action no longer exists, which the foreign key
        prevents except on SQLite with foreign key enforcement off.
        """
        await session.execute(
            update(IdempotencyKey)
            .where(IdempotencyKey.key == key, IdempotencyKey.user_id == user_id)
            .values(action_id=action_id, created_at=utcnow())
        )
        log.warning(
            "idempotency_key_rebound",
            idempotency_key=key,
            user_id=user_id,
            action_id=action_id,
        )

    async def register(self, key: str, user_id: str, action_id: str) -> bool:
        """Claim a key in its own transaction.

        Returns:
            True if the key was newly registered, False if already held.
        """
        async with transaction(self.session_factory) as session:
            return await self.claim(session, key, user_id, action_id)
