"""Bulk playlist mutation orchestrator.

Executes ADD, REMOVE and MOVE submissions against the remote provider with
a persisted per-item outcome log, idempotent replay and after-the-fact
quota reconciliation.

Execution Flow (shared by every kind):
    1. Resolve the user's remote-call handle (NoTokensError if none)
    2. Idempotency key known for this user → replay the stored summary,
       no remote calls, estimated quota = requested_count × unit cost
    3. One transaction:
        a. Create the Action (pending) and flush it
        b. Claim the idempotency key (lost race → roll back, replay winner)
        c. One remote call per target, strictly sequential; every target
           gets an ActionItem, a failure never stops later targets
        d. Finalize status, store the accumulated quota cost, commit
    4. After commit, best-effort: claim the Action's quota outbox entry,
       then record the cost in the quota ledger. A failed ledger write
       releases the claim and flush_pending_quota() retries it later.

Duplicate Targets:
    ADD inserts every occurrence (a playlist may hold a video more than
    once). REMOVE and MOVE address playlist items; a repeated item id is
    appended as skipped with no remote call.

MOVE Semantics:
    delete from source, then insert into target. The item succeeds only if
    both legs succeed. When the delete succeeds and the insert fails the
    entity is left removed from the source; the item is failed, keeps its
    source id and video id, and the event is logged as move_item_orphaned.

Usage:
    orchestrator = BulkOrchestrator(session_factory, ledger, provider_factory)
    result = await orchestrator.bulk_add(
        "user-1", "PL123", ["vid1", "vid2"], idempotency_key="abc"
    )
    result.created  # [{"playlistItemId": "...", "videoId": "vid1"}, ...]
"""

import asyncio
import uuid
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from datetime import timedelta

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from playlist_manager.clients.youtube import PlaylistProvider, ProviderFactory
from playlist_manager.config import get_reconcile_interval
from playlist_manager.constants import DELETE_COST, INSERT_COST, MAX_BULK_ITEMS, MOVE_COST
from playlist_manager.database import transaction
from playlist_manager.exceptions import (
    InternalError,
    InvalidPayloadError,
    NoTokensError,
    PlaylistManagerError,
    ProviderError,
)
from playlist_manager.models import (
    Action,
    ActionItem,
    ActionItemStatus,
    ActionType,
)
from playlist_manager.services.action_log import ActionLog, ActionSummary, NewActionItem
from playlist_manager.services.idempotency import IdempotencyGuard
from playlist_manager.services.quota_ledger import QuotaLedger
from playlist_manager.utils.logging import get_logger

log = get_logger(__name__)

# Fixed per-item cost used for replay estimates
UNIT_COST: dict[ActionType, int] = {
    ActionType.ADD: INSERT_COST,
    ActionType.REMOVE: DELETE_COST,
    ActionType.MOVE: MOVE_COST,
}

# Outbox entries younger than this are still owned by their request
DEFAULT_OUTBOX_GRACE = timedelta(minutes=5)


@dataclass(frozen=True)
class MoveTarget:
    """One entity to move: its item id in the source and its video id."""

    playlist_item_id: str
    video_id: str


@dataclass(frozen=True)
class _Target:
    key: str
    video_id: str | None = None
    playlist_item_id: str | None = None


@dataclass(frozen=True)
class _ItemOutcome:
    item: NewActionItem
    cost: int


@dataclass(frozen=True)
class _Operation:
    kind: ActionType
    perform: Callable[[PlaylistProvider, _Target], Awaitable[_ItemOutcome]]
    # Skip repeated target keys within one payload
    skip_duplicates: bool = False


class _ClaimLost(Exception):
    """Another request claimed the idempotency key first."""

    def __init__(self, action_id: str | None):
        self.action_id = action_id
        super().__init__(action_id or "")


@dataclass
class BulkResult:
    """Outcome of a bulk submission, fresh or replayed.

    Attributes:
        action: The persisted Action.
        items: Its ActionItems in payload order.
        estimated_quota: Actual cost for a fresh run, requested_count × unit
            cost for a replay.
        idempotent: True when replayed from a stored Action.
    """

    action: Action
    items: list[ActionItem]
    estimated_quota: int
    idempotent: bool

    @property
    def created(self) -> list[dict[str, str | None]]:
        """ADD: playlist items created by successful inserts."""
        return [
            {"playlistItemId": item.target_playlist_item_id, "videoId": item.video_id}
            for item in self.items
            if item.status is ActionItemStatus.SUCCESS and item.target_playlist_item_id
        ]

    @property
    def removed(self) -> dict[str, int]:
        """REMOVE: success/failure counts."""
        return {
            "success": sum(1 for item in self.items if item.status is ActionItemStatus.SUCCESS),
            "failed": sum(1 for item in self.items if item.status is ActionItemStatus.FAILED),
        }

    @property
    def moved(self) -> list[dict]:
        """MOVE: items where both the delete and the insert succeeded."""
        return [
            {
                "from": {"playlistItemId": item.source_playlist_item_id},
                "to": {"playlistItemId": item.target_playlist_item_id},
                "videoId": item.video_id,
            }
            for item in self.items
            if item.status is ActionItemStatus.SUCCESS
        ]


def _failed(error: ProviderError, **fields: str | None) -> NewActionItem:
    return NewActionItem(
        status=ActionItemStatus.FAILED,
        error_reason=error.reason.value,
        error_message=error.message,
        **fields,
    )


def _validate_targets(targets: Sequence[object], what: str) -> None:
    if len(targets) > MAX_BULK_ITEMS:
        raise InvalidPayloadError(f"Too many {what}: {len(targets)} (max {MAX_BULK_ITEMS})")


class BulkOrchestrator:
    """Idempotent, transactional executor of bulk playlist mutations.

    Args:
        session_factory: Factory for the action log store.
        ledger: Quota ledger receiving the cost after commit.
        provider_factory: Resolves a user id to a PlaylistProvider, or None.
        guard: Idempotency guard (default: one over session_factory).
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        ledger: QuotaLedger,
        provider_factory: ProviderFactory,
        guard: IdempotencyGuard | None = None,
    ):
        self.session_factory = session_factory
        self.ledger = ledger
        self.provider_factory = provider_factory
        self.guard = guard or IdempotencyGuard(session_factory)

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    async def bulk_add(
        self,
        user_id: str,
        target_playlist_id: str,
        video_ids: Sequence[str],
        idempotency_key: str | None = None,
    ) -> BulkResult:
        """Insert each video into the target playlist (50 units per call)."""
        if not target_playlist_id:
            raise InvalidPayloadError("targetPlaylistId is required")
        _validate_targets(video_ids, "videoIds")

        async def perform(provider: PlaylistProvider, target: _Target) -> _ItemOutcome:
            try:
                new_id = await provider.insert(target_playlist_id, target.video_id)
            except ProviderError as e:
                return _ItemOutcome(_failed(e, video_id=target.video_id), INSERT_COST)
            return _ItemOutcome(
                NewActionItem(
                    status=ActionItemStatus.SUCCESS,
                    video_id=target.video_id,
                    target_playlist_item_id=new_id,
                ),
                INSERT_COST,
            )

        targets = [_Target(key=video_id, video_id=video_id) for video_id in video_ids]
        return await self._execute(
            _Operation(ActionType.ADD, perform), user_id, targets, idempotency_key
        )

    async def bulk_remove(
        self,
        user_id: str,
        playlist_item_ids: Sequence[str],
        idempotency_key: str | None = None,
    ) -> BulkResult:
        """Delete each playlist item (50 units per call)."""
        _validate_targets(playlist_item_ids, "playlistItemIds")

        async def perform(provider: PlaylistProvider, target: _Target) -> _ItemOutcome:
            try:
                await provider.delete(target.playlist_item_id)
            except ProviderError as e:
                return _ItemOutcome(
                    _failed(e, source_playlist_item_id=target.playlist_item_id), DELETE_COST
                )
            return _ItemOutcome(
                NewActionItem(
                    status=ActionItemStatus.SUCCESS,
                    source_playlist_item_id=target.playlist_item_id,
                ),
                DELETE_COST,
            )

        targets = [
            _Target(key=item_id, playlist_item_id=item_id) for item_id in playlist_item_ids
        ]
        return await self._execute(
            _Operation(ActionType.REMOVE, perform, skip_duplicates=True),
            user_id,
            targets,
            idempotency_key,
        )

    async def bulk_move(
        self,
        user_id: str,
        target_playlist_id: str,
        items: Sequence[MoveTarget],
        idempotency_key: str | None = None,
    ) -> BulkResult:
        """Move each item: delete from source, then insert into target.

        Costs 50 units when the delete fails (no insert is issued), 100 otherwise.
        """
        if not target_playlist_id:
            raise InvalidPayloadError("targetPlaylistId is required")
        _validate_targets(items, "items")

        async def perform(provider: PlaylistProvider, target: _Target) -> _ItemOutcome:
            ids = {
                "video_id": target.video_id,
                "source_playlist_item_id": target.playlist_item_id,
            }
            try:
                await provider.delete(target.playlist_item_id)
            except ProviderError as e:
                return _ItemOutcome(_failed(e, **ids), DELETE_COST)

            try:
                new_id = await provider.insert(target_playlist_id, target.video_id)
            except ProviderError as e:
                log.error(
                    "move_item_orphaned",
                    user_id=user_id,
                    video_id=target.video_id,
                    source_playlist_item_id=target.playlist_item_id,
                    target_playlist_id=target_playlist_id,
                    reason=e.reason.value,
                )
                return _ItemOutcome(
                    NewActionItem(
                        status=ActionItemStatus.FAILED,
                        error_reason=e.reason.value,
                        error_message=(
                            "Removed from source playlist but insert into target failed: "
                            f"{e.message}"
                        ),
                        **ids,
                    ),
                    MOVE_COST,
                )

            return _ItemOutcome(
                NewActionItem(
                    status=ActionItemStatus.SUCCESS,
                    target_playlist_item_id=new_id,
                    **ids,
                ),
                MOVE_COST,
            )

        targets = [
            _Target(
                key=item.playlist_item_id,
                video_id=item.video_id,
                playlist_item_id=item.playlist_item_id,
            )
            for item in items
        ]
        return await self._execute(
            _Operation(ActionType.MOVE, perform, skip_duplicates=True),
            user_id,
            targets,
            idempotency_key,
        )

    async def flush_pending_quota(
        self, older_than: timedelta = DEFAULT_OUTBOX_GRACE, limit: int = 100
    ) -> int:
        """Apply quota costs whose post-commit ledger write did not happen.

        Returns:
            Number of actions whose cost was recorded.
        """
        async with self.session_factory() as session:
            pending = await ActionLog(session).pending_quota(older_than=older_than, limit=limit)

        recorded = 0
        for action in pending:
            if await self._record_quota(action):
                recorded += 1

        if pending:
            log.info("quota_outbox_flushed", pending=len(pending), recorded=recorded)
        return recorded

    # ------------------------------------------------------------------
    # Shared skeleton
    # ------------------------------------------------------------------

    async def _execute(
        self,
        operation: _Operation,
        user_id: str,
        targets: list[_Target],
        idempotency_key: str | None,
    ) -> BulkResult:
        provider = await self.provider_factory(user_id)
        if provider is None:
            log.warning("bulk_no_tokens", user_id=user_id, action_type=operation.kind.value)
            raise NoTokensError(user_id)

        try:
            if idempotency_key:
                replay = await self._replay(operation, user_id, idempotency_key)
                if replay is not None:
                    return replay

            try:
                summary = await self._run(operation, provider, user_id, targets, idempotency_key)
            except _ClaimLost as lost:
                log.warning(
                    "idempotency_claim_lost",
                    idempotency_key=idempotency_key,
                    user_id=user_id,
                    winner_action_id=lost.action_id,
                )
                replay = await self._replay(operation, user_id, idempotency_key)
                if replay is None:
                    raise InternalError("Idempotency key is held by an unfinished request") from lost
                return replay
        finally:
            close = getattr(provider, "close", None)
            if close is not None:
                await close()

        await self._record_quota(summary.action)

        return BulkResult(
            action=summary.action,
            items=summary.items,
            estimated_quota=summary.action.quota_cost,
            idempotent=False,
        )

    async def _run(
        self,
        operation: _Operation,
        provider: PlaylistProvider,
        user_id: str,
        targets: list[_Target],
        idempotency_key: str | None,
    ) -> ActionSummary:
        async with transaction(self.session_factory) as session:
            action_log = ActionLog(session)
            action = await action_log.create_action(
                operation.kind, user_id, requested_count=len(targets)
            )

            if idempotency_key:
                await self._claim(session, action_log, idempotency_key, user_id, action.id)

            cost = 0
            seen: set[str] = set()
            for target in targets:
                if operation.skip_duplicates and target.key in seen:
                    await action_log.append_item(
                        action.id,
                        NewActionItem(
                            status=ActionItemStatus.SKIPPED,
                            video_id=target.video_id,
                            source_playlist_item_id=target.playlist_item_id,
                            error_message="Duplicate target in request",
                        ),
                    )
                    continue
                seen.add(target.key)

                outcome = await operation.perform(provider, target)
                cost += outcome.cost
                await action_log.append_item(action.id, outcome.item)

            await action_log.finalize(action.id)
            await action_log.set_quota_cost(action.id, cost)
            summary = await action_log.get_summary(action.id)

        log.info(
            "bulk_action_committed",
            action_id=summary.action.id,
            action_type=operation.kind.value,
            user_id=user_id,
            status=summary.action.status.value,
            requested=len(targets),
            quota_cost=cost,
        )
        return summary

    async def _claim(
        self,
        session: AsyncSession,
        action_log: ActionLog,
        key: str,
        user_id: str,
        action_id: str,
    ) -> None:
        """Claim the key for `action_id` or raise _ClaimLost.

        A held claim whose Action is missing is rebound to `action_id`. That
        only happens on SQLite without PRAGMA foreign_keys: on PostgreSQL the
        ON DELETE CASCADE foreign key removes the claim with its Action.
        """
        if await self.guard.claim(session, key, user_id, action_id):
            return

        existing = await self.guard.find(key, user_id, session=session)
        if existing is not None and not await action_log.exists(existing.action_id):
            await self.guard.rebind(session, key, user_id, action_id)
            return
        raise _ClaimLost(existing.action_id if existing else None)

    async def _replay(
        self, operation: _Operation, user_id: str, key: str
    ) -> BulkResult | None:
        claim = await self.guard.find(key, user_id)
        if claim is None:
            if await self.guard.check(key):
                # Keys are scoped per user: another user's claim never replays here
                log.warning("idempotency_key_owner_mismatch", idempotency_key=key, user_id=user_id)
            return None

        async with self.session_factory() as session:
            action_log = ActionLog(session)
            if not await action_log.exists(claim.action_id):
                log.warning(
                    "idempotency_summary_missing",
                    idempotency_key=key,
                    user_id=user_id,
                    action_id=claim.action_id,
                )
                return None
            summary = await action_log.get_summary(claim.action_id)

        if summary.action.user_id != user_id:
            log.warning("idempotency_key_owner_mismatch", idempotency_key=key, user_id=user_id)
            return None

        if summary.action.type is not operation.kind:
            log.warning(
                "idempotency_key_type_mismatch",
                idempotency_key=key,
                stored_type=summary.action.type.value,
                requested_type=operation.kind.value,
            )

        log.info(
            "idempotent_replay",
            idempotency_key=key,
            user_id=user_id,
            action_id=summary.action.id,
        )
        return BulkResult(
            action=summary.action,
            items=summary.items,
            estimated_quota=summary.action.requested_count * UNIT_COST[summary.action.type],
            idempotent=True,
        )

    async def _record_quota(self, action: Action) -> bool:
        """Claim the action's outbox entry, then write its cost to the ledger.

        The claim commits before the ledger write, so a concurrent sweep
        skips the action. A failed ledger write releases the claim and the
        action returns to the outbox. Never raises.

        Returns:
            True if this call recorded the cost.
        """
        if action.quota_cost <= 0:
            return False

        try:
            async with transaction(self.session_factory) as session:
                claimed = await ActionLog(session).mark_quota_recorded(action.id)
        except InternalError as e:
            log.error("quota_claim_failed", action_id=action.id, error=str(e))
            return False
        if not claimed:
            log.debug("quota_already_claimed", action_id=action.id)
            return False

        try:
            await self.ledger.record_call_cost(
                action.quota_cost,
                user_id=action.user_id,
                day=self.ledger.day_key(action.created_at),
            )
        except Exception as e:
            log.error(
                "quota_record_failed",
                action_id=action.id,
                user_id=action.user_id,
                units=action.quota_cost,
                error=str(e),
                error_type=type(e).__name__,
            )
            await self._release_quota(action)
            return False

        return True

    async def _release_quota(self, action: Action) -> None:
        try:
            async with transaction(self.session_factory) as session:
                await ActionLog(session).release_quota_claim(action.id)
        except InternalError as e:
            # Marked but never written: this cost is not counted
            log.error(
                "quota_release_failed",
                action_id=action.id,
                units=action.quota_cost,
                error=str(e),
            )


async def quota_reconcile_loop(
    orchestrator: BulkOrchestrator,
    interval_seconds: int | None = None,
) -> None:
    """Background task: drain the quota outbox and run ledger maintenance.

    Runs as a FastAPI lifespan task until cancelled. Errors are logged and
    the loop keeps running.

    Args:
        orchestrator: Orchestrator whose outbox is flushed.
        interval_seconds: Sleep between sweeps (default: QUOTA_RECONCILE_INTERVAL_SECONDS).
    """
    interval = interval_seconds or get_reconcile_interval()
    log.info("quota_reconcile_loop_started", interval_seconds=interval)

    while True:
        try:
            await orchestrator.flush_pending_quota()
            await orchestrator.ledger.maintain()
            await asyncio.sleep(interval)
        except asyncio.CancelledError:
            log.info("quota_reconcile_loop_cancelled")
            break
        except (PlaylistManagerError, SQLAlchemyError, OSError) as e:
            log.error(
                "quota_reconcile_loop_error",
                correlation_id=str(uuid.uuid4()),
                error=str(e),
                error_type=type(e).__name__,
                exc_info=True,
            )
            # Avoid a tight error loop
            await asyncio.sleep(10)
