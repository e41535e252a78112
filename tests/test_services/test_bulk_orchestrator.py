"""Tests for the bulk orchestrator.

Tests cover:
    - ADD / REMOVE / MOVE execution, per-item outcomes and quota cost
    - Partial batches (failure reported per item, never thrown)
    - MOVE per-item atomicity (success only when both legs succeed)
    - Idempotent replay, per-user key scope and the lost claim race
    - Storage failure: nothing persisted, nothing recorded
    - Quota outbox: ledger failure after commit, later flush
"""

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy import func, select, update
from sqlalchemy.exc import OperationalError

from playlist_manager.constants import GLOBAL_SCOPE
from playlist_manager.database import transaction
from playlist_manager.exceptions import (
    InternalError,
    InvalidPayloadError,
    NoTokensError,
    ProviderErrorReason,
)
from playlist_manager.models import (
    Action,
    ActionItem,
    ActionItemStatus,
    ActionStatus,
    ActionType,
    IdempotencyKey,
    utcnow,
)
from playlist_manager.services.action_log import ActionLog
from playlist_manager.services.bulk_orchestrator import (
    BulkOrchestrator,
    MoveTarget,
    quota_reconcile_loop,
)
from playlist_manager.services.quota_ledger import QuotaLedger
from tests.support.fake_provider import FakePlaylistProvider


async def _count(session_factory, model) -> int:
    async with session_factory() as session:
        result = await session.execute(select(func.count()).select_from(model))
        return result.scalar_one()


class TestBulkAdd:
    """Tests for bulk_add."""

    async def test_add_three_videos_records_150_units(
        self,
        orchestrator: BulkOrchestrator,
        provider: FakePlaylistProvider,
        ledger: QuotaLedger,
    ):
        """Scenario A: 3 inserts × 50 = 150 units; today's quota 150 used / 9850 left."""
        # GIVEN: Budget 10000 and no prior usage

        # WHEN: Adding three videos
        result = await orchestrator.bulk_add("user-1", "PL-target", ["v1", "v2", "v3"])

        # THEN: Three inserts, all items succeeded
        assert provider.inserts == [
            ("insert", "PL-target", "v1"),
            ("insert", "PL-target", "v2"),
            ("insert", "PL-target", "v3"),
        ]
        assert result.action.status is ActionStatus.SUCCESS
        assert result.action.type is ActionType.ADD
        assert result.estimated_quota == 150
        assert result.idempotent is False
        assert result.created == [
            {"playlistItemId": "PLI1", "videoId": "v1"},
            {"playlistItemId": "PLI2", "videoId": "v2"},
            {"playlistItemId": "PLI3", "videoId": "v3"},
        ]

        # AND: The ledger shows 150 used for the user
        snapshot = await ledger.get_today_quota("user-1")
        assert snapshot.used == 150
        assert snapshot.remain == 9850

    async def test_failed_insert_still_costs_and_continues(
        self, orchestrator: BulkOrchestrator, provider: FakePlaylistProvider
    ):
        """Scenario 2: A failed insert is recorded and later items still run."""
        provider.fail_insert("v2", ProviderErrorReason.QUOTA_EXCEEDED, "Quota exceeded")

        result = await orchestrator.bulk_add("user-1", "PL-target", ["v1", "v2", "v3"])

        assert len(provider.inserts) == 3
        assert [item.status for item in result.items] == [
            ActionItemStatus.SUCCESS,
            ActionItemStatus.FAILED,
            ActionItemStatus.SUCCESS,
        ]
        assert result.items[1].error_reason == "quota_exceeded"
        assert result.items[1].error_message == "Quota exceeded"
        assert result.action.status is ActionStatus.PARTIAL
        assert result.estimated_quota == 150
        assert [entry["videoId"] for entry in result.created] == ["v1", "v3"]

    async def test_all_inserts_failing_is_failed(
        self, orchestrator: BulkOrchestrator, provider: FakePlaylistProvider
    ):
        provider.fail_insert("v1")
        provider.fail_insert("v2")

        result = await orchestrator.bulk_add("user-1", "PL-target", ["v1", "v2"])

        assert result.action.status is ActionStatus.FAILED
        assert result.created == []

    async def test_repeated_video_is_inserted_each_time(
        self, orchestrator: BulkOrchestrator, provider: FakePlaylistProvider, ledger: QuotaLedger
    ):
        """Scenario 3: A playlist may hold a video twice; every occurrence is inserted."""
        result = await orchestrator.bulk_add("user-1", "PL-target", ["v1", "v1", "v1"])

        assert provider.inserts == [("insert", "PL-target", "v1")] * 3
        assert [item.status for item in result.items] == [ActionItemStatus.SUCCESS] * 3
        assert [c["playlistItemId"] for c in result.created] == ["PLI1", "PLI2", "PLI3"]
        assert result.estimated_quota == 150
        assert (await ledger.get_today_quota("user-1")).used == 150

    async def test_empty_batch_succeeds_with_no_cost(
        self, orchestrator: BulkOrchestrator, provider: FakePlaylistProvider
    ):
        result = await orchestrator.bulk_add("user-1", "PL-target", [])

        assert provider.calls == []
        assert result.action.status is ActionStatus.SUCCESS
        assert result.estimated_quota == 0

    async def test_missing_target_playlist_rejected_before_side_effects(
        self, orchestrator: BulkOrchestrator, provider: FakePlaylistProvider, session_factory
    ):
        with pytest.raises(InvalidPayloadError):
            await orchestrator.bulk_add("user-1", "", ["v1"])

        assert provider.calls == []
        assert await _count(session_factory, Action) == 0

    async def test_too_many_targets_rejected(
        self, orchestrator: BulkOrchestrator, provider: FakePlaylistProvider
    ):
        with pytest.raises(InvalidPayloadError):
            await orchestrator.bulk_add("user-1", "PL", [f"v{i}" for i in range(201)])

        assert provider.calls == []

    async def test_no_tokens_is_terminal(
        self, session_factory, ledger: QuotaLedger
    ):
        """Scenario 4: No remote-call handle → NoTokensError, nothing persisted."""
        orchestrator = BulkOrchestrator(session_factory, ledger, AsyncMock(return_value=None))

        with pytest.raises(NoTokensError) as exc_info:
            await orchestrator.bulk_add("user-1", "PL", ["v1"])

        assert exc_info.value.status_code == 401
        assert exc_info.value.code == "no_tokens"
        assert await _count(session_factory, Action) == 0

    async def test_provider_closed_after_run(
        self, orchestrator: BulkOrchestrator, provider: FakePlaylistProvider
    ):
        await orchestrator.bulk_add("user-1", "PL", ["v1"])

        assert provider.close_count == 1

    async def test_items_persisted_in_payload_order(
        self, orchestrator: BulkOrchestrator, session_factory
    ):
        result = await orchestrator.bulk_add("user-1", "PL", ["a", "b", "c"])

        async with session_factory() as session:
            summary = await ActionLog(session).get_summary(result.action.id)

        assert [item.video_id for item in summary.items] == ["a", "b", "c"]
        assert summary.action.quota_cost == 150
        assert summary.action.quota_recorded_at is not None


class TestBulkRemove:
    """Tests for bulk_remove."""

    async def test_second_delete_forbidden_is_partial(
        self, orchestrator: BulkOrchestrator, provider: FakePlaylistProvider, ledger: QuotaLedger
    ):
        """Scenario B: 1 success / 1 failed tagged forbidden; action partial."""
        provider.fail_delete("PLI-b", ProviderErrorReason.FORBIDDEN, "Forbidden")

        result = await orchestrator.bulk_remove("user-1", ["PLI-a", "PLI-b"])

        assert provider.deletes == [("delete", "PLI-a"), ("delete", "PLI-b")]
        assert len(result.items) == 2
        assert result.items[0].status is ActionItemStatus.SUCCESS
        assert result.items[1].status is ActionItemStatus.FAILED
        assert result.items[1].error_reason == "forbidden"
        assert result.items[1].source_playlist_item_id == "PLI-b"
        assert result.action.status is ActionStatus.PARTIAL
        assert result.removed == {"success": 1, "failed": 1}
        assert result.estimated_quota == 100
        assert (await ledger.get_today_quota("user-1")).used == 100

    async def test_partial_batch_has_one_item_per_target(
        self, orchestrator: BulkOrchestrator, provider: FakePlaylistProvider
    ):
        """Scenario 2: N targets with item k failing → N items, N-1 success."""
        targets = [f"PLI-{i}" for i in range(5)]
        provider.fail_delete("PLI-2")

        result = await orchestrator.bulk_remove("user-1", targets)

        assert len(result.items) == 5
        assert result.removed == {"success": 4, "failed": 1}
        assert result.action.status is ActionStatus.PARTIAL

    async def test_repeated_item_id_is_skipped(
        self, orchestrator: BulkOrchestrator, provider: FakePlaylistProvider
    ):
        """Scenario 3: A playlist item can only be deleted once; repeats cost nothing."""
        result = await orchestrator.bulk_remove("user-1", ["PLI-a", "PLI-a"])

        assert provider.deletes == [("delete", "PLI-a")]
        assert [item.status for item in result.items] == [
            ActionItemStatus.SUCCESS,
            ActionItemStatus.SKIPPED,
        ]
        assert result.items[1].error_message == "Duplicate target in request"
        assert result.removed == {"success": 1, "failed": 0}
        assert result.action.status is ActionStatus.SUCCESS
        assert result.estimated_quota == 50


class TestBulkMove:
    """Tests for bulk_move."""

    async def test_move_both_legs_succeed(
        self, orchestrator: BulkOrchestrator, provider: FakePlaylistProvider
    ):
        """Scenario 1: Delete then insert; the item is moved."""
        result = await orchestrator.bulk_move(
            "user-1", "PL-target", [MoveTarget("PLI-src", "v1")]
        )

        assert provider.calls == [("delete", "PLI-src"), ("insert", "PL-target", "v1")]
        assert result.action.status is ActionStatus.SUCCESS
        assert result.estimated_quota == 100
        assert result.moved == [
            {
                "from": {"playlistItemId": "PLI-src"},
                "to": {"playlistItemId": "PLI1"},
                "videoId": "v1",
            }
        ]

    async def test_insert_failure_after_delete_is_failed(
        self, orchestrator: BulkOrchestrator, provider: FakePlaylistProvider
    ):
        """Scenario C: Delete ok, insert fails → item failed, moved empty."""
        provider.fail_insert("v1", ProviderErrorReason.NOT_FOUND, "Playlist not found")

        result = await orchestrator.bulk_move(
            "user-1", "PL-target", [MoveTarget("PLI-src", "v1")]
        )

        # Both legs were issued; the source item is already gone
        assert provider.calls == [("delete", "PLI-src"), ("insert", "PL-target", "v1")]
        item = result.items[0]
        assert item.status is ActionItemStatus.FAILED
        assert item.error_reason == "not_found"
        assert item.source_playlist_item_id == "PLI-src"
        assert item.video_id == "v1"
        assert item.target_playlist_item_id is None
        assert item.error_message.startswith("Removed from source playlist")
        assert result.moved == []
        assert result.action.status is ActionStatus.FAILED
        assert result.estimated_quota == 100

    async def test_delete_failure_skips_insert(
        self, orchestrator: BulkOrchestrator, provider: FakePlaylistProvider
    ):
        """Scenario 3: Delete fails → no insert issued, 50 units."""
        provider.fail_delete("PLI-src")

        result = await orchestrator.bulk_move(
            "user-1", "PL-target", [MoveTarget("PLI-src", "v1")]
        )

        assert provider.inserts == []
        assert result.items[0].status is ActionItemStatus.FAILED
        assert result.moved == []
        assert result.estimated_quota == 50

    async def test_success_never_with_one_leg(
        self, orchestrator: BulkOrchestrator, provider: FakePlaylistProvider
    ):
        """Scenario 4: Every successful MOVE item has both a source and a target id."""
        provider.fail_insert("v2")
        provider.fail_delete("PLI-3")

        result = await orchestrator.bulk_move(
            "user-1",
            "PL-target",
            [MoveTarget("PLI-1", "v1"), MoveTarget("PLI-2", "v2"), MoveTarget("PLI-3", "v3")],
        )

        for item in result.items:
            if item.status is ActionItemStatus.SUCCESS:
                assert item.source_playlist_item_id and item.target_playlist_item_id
        assert len(result.moved) == 1
        assert result.action.status is ActionStatus.PARTIAL
        assert result.estimated_quota == 100 + 100 + 50


class TestIdempotentReplay:
    """Tests for idempotency key handling."""

    async def test_second_submission_replays_without_remote_calls(
        self, orchestrator: BulkOrchestrator, provider: FakePlaylistProvider, ledger: QuotaLedger
    ):
        """Scenario 1: Same key twice → one set of calls; identical items, idempotent=True."""
        first = await orchestrator.bulk_add(
            "user-1", "PL", ["v1", "v2"], idempotency_key="key-1"
        )
        second = await orchestrator.bulk_add(
            "user-1", "PL", ["v1", "v2"], idempotency_key="key-1"
        )

        assert len(provider.inserts) == 2
        assert first.idempotent is False
        assert second.idempotent is True
        assert second.action.id == first.action.id
        assert [
            (i.position, i.status, i.video_id, i.target_playlist_item_id) for i in second.items
        ] == [(i.position, i.status, i.video_id, i.target_playlist_item_id) for i in first.items]
        assert second.created == first.created

        # Quota recorded once
        assert (await ledger.get_today_quota("user-1")).used == 100

    async def test_replay_estimate_is_requested_count_times_unit_cost(
        self, orchestrator: BulkOrchestrator, provider: FakePlaylistProvider
    ):
        """Scenario 2: Replay estimates requested × fixed cost, not the true cost."""
        provider.fail_delete("PLI-src")
        await orchestrator.bulk_move(
            "user-1", "PL", [MoveTarget("PLI-src", "v1")], idempotency_key="key-1"
        )

        replay = await orchestrator.bulk_move(
            "user-1", "PL", [MoveTarget("PLI-src", "v1")], idempotency_key="key-1"
        )

        assert replay.idempotent is True
        assert replay.action.quota_cost == 50
        assert replay.estimated_quota == 100

    async def test_same_key_other_user_reexecutes(
        self,
        orchestrator: BulkOrchestrator,
        provider: FakePlaylistProvider,
        session_factory,
    ):
        """Scenario 3: A key held by another user does not replay their action."""
        mine = await orchestrator.bulk_add("user-1", "PL", ["v1"], idempotency_key="shared")
        theirs = await orchestrator.bulk_add("user-2", "PL", ["v1"], idempotency_key="shared")

        assert theirs.idempotent is False
        assert theirs.action.id != mine.action.id
        assert theirs.action.user_id == "user-2"
        assert len(provider.inserts) == 2
        assert await _count(session_factory, IdempotencyKey) == 2

    async def test_key_registered_with_action(
        self, orchestrator: BulkOrchestrator, session_factory
    ):
        result = await orchestrator.bulk_remove("user-1", ["PLI-a"], idempotency_key="key-1")

        async with session_factory() as session:
            claim = await session.get(IdempotencyKey, {"key": "key-1", "user_id": "user-1"})

        assert claim is not None
        assert claim.action_id == result.action.id

    async def test_no_key_never_replays(
        self, orchestrator: BulkOrchestrator, provider: FakePlaylistProvider
    ):
        await orchestrator.bulk_add("user-1", "PL", ["v1"])
        again = await orchestrator.bulk_add("user-1", "PL", ["v1"])

        assert again.idempotent is False
        assert len(provider.inserts) == 2

    async def test_lost_claim_replays_winner(
        self,
        orchestrator: BulkOrchestrator,
        provider: FakePlaylistProvider,
        session_factory,
    ):
        """Scenario 4: A concurrent request claimed the key first → replay, no calls."""
        # GIVEN: The winner committed between our lookup and our claim
        winner = await orchestrator.bulk_add("user-1", "PL", ["v1"], idempotency_key="race")
        calls_before = len(provider.calls)

        real_replay = orchestrator._replay
        lookups = []

        async def miss_first_lookup(*args):
            lookups.append(args)
            if len(lookups) == 1:
                return None
            return await real_replay(*args)

        # WHEN: Our lookup misses, then the claim conflicts
        with patch.object(orchestrator, "_replay", side_effect=miss_first_lookup):
            result = await orchestrator.bulk_add("user-1", "PL", ["v1"], idempotency_key="race")

        # THEN: The winner's summary is returned and our Action was rolled back
        assert result.idempotent is True
        assert result.action.id == winner.action.id
        assert len(provider.calls) == calls_before
        assert await _count(session_factory, Action) == 1

    async def test_claim_for_missing_action_is_rebound(
        self,
        orchestrator: BulkOrchestrator,
        provider: FakePlaylistProvider,
        session_factory,
    ):
        """Scenario 5: A claim whose Action no longer exists is taken over.

        Reachable on SQLite with foreign key enforcement off, as here.
        """
        async with transaction(session_factory) as session:
            session.add(IdempotencyKey(key="stale", user_id="user-1", action_id="gone"))

        result = await orchestrator.bulk_add("user-1", "PL", ["v1"], idempotency_key="stale")

        assert result.idempotent is False
        assert len(provider.inserts) == 1
        async with session_factory() as session:
            claim = await session.get(IdempotencyKey, {"key": "stale", "user_id": "user-1"})
        assert claim.action_id == result.action.id


class TestStorageFailure:
    """Tests for transaction failure handling."""

    async def test_commit_failure_persists_nothing(
        self,
        orchestrator: BulkOrchestrator,
        provider: FakePlaylistProvider,
        session_factory,
        ledger: QuotaLedger,
    ):
        """Scenario 1: Storage failure → InternalError, no Action rows, zero cost recorded."""
        with patch.object(
            ActionLog,
            "finalize",
            side_effect=OperationalError("UPDATE actions", {}, Exception("disk full")),
        ):
            with pytest.raises(InternalError):
                await orchestrator.bulk_add(
                    "user-1", "PL", ["v1", "v2"], idempotency_key="key-1"
                )

        # Remote calls were issued but nothing was persisted or recorded
        assert len(provider.inserts) == 2
        assert await _count(session_factory, Action) == 0
        assert await _count(session_factory, ActionItem) == 0
        assert await _count(session_factory, IdempotencyKey) == 0
        assert (await ledger.get_today_quota("user-1")).used == 0


class TestQuotaOutbox:
    """Tests for post-commit quota recording and the outbox sweep."""

    async def test_ledger_failure_leaves_cost_pending(
        self,
        orchestrator: BulkOrchestrator,
        ledger: QuotaLedger,
        session_factory,
    ):
        """Scenario 1: The committed result is returned even if the ledger write fails."""
        with patch.object(
            ledger, "record_call_cost", side_effect=OperationalError("INSERT", {}, Exception())
        ):
            result = await orchestrator.bulk_add("user-1", "PL", ["v1", "v2"])

        assert result.action.status is ActionStatus.SUCCESS
        async with session_factory() as session:
            pending = await ActionLog(session).pending_quota()
        assert [action.id for action in pending] == [result.action.id]
        assert await ledger.get_usage(ledger.day_key(), GLOBAL_SCOPE) == 0

    async def test_flush_records_pending_cost_once(
        self,
        orchestrator: BulkOrchestrator,
        ledger: QuotaLedger,
        session_factory,
    ):
        """Scenario 2: The sweep applies the cost on the action's day and marks it."""
        with patch.object(
            ledger, "record_call_cost", side_effect=OperationalError("INSERT", {}, Exception())
        ):
            result = await orchestrator.bulk_add("user-1", "PL", ["v1", "v2"])

        recorded = await orchestrator.flush_pending_quota(older_than=timedelta(0))
        again = await orchestrator.flush_pending_quota(older_than=timedelta(0))

        assert recorded == 1
        assert again == 0
        day = ledger.day_key(result.action.created_at)
        assert await ledger.get_usage(day, GLOBAL_SCOPE) == 100
        assert await ledger.get_usage(day, "user-1") == 100

    async def test_flush_respects_grace_period(
        self,
        orchestrator: BulkOrchestrator,
        ledger: QuotaLedger,
    ):
        with patch.object(
            ledger, "record_call_cost", side_effect=OperationalError("INSERT", {}, Exception())
        ):
            await orchestrator.bulk_add("user-1", "PL", ["v1"])

        assert await orchestrator.flush_pending_quota() == 0

    async def test_sweep_during_request_write_does_not_double_count(
        self,
        orchestrator: BulkOrchestrator,
        ledger: QuotaLedger,
    ):
        """Scenario 3: A reconcile tick inside the request's ledger write finds nothing."""
        real_record = ledger.record_call_cost
        swept = []

        async def record_with_concurrent_sweep(*args, **kwargs):
            if not swept:
                swept.append(await orchestrator.flush_pending_quota(older_than=timedelta(0)))
            await real_record(*args, **kwargs)

        with patch.object(ledger, "record_call_cost", new=record_with_concurrent_sweep):
            await orchestrator.bulk_add("user-1", "PL", ["v1"])

        assert swept == [0]
        assert await ledger.get_usage(ledger.day_key(), GLOBAL_SCOPE) == 50
        assert await ledger.get_usage(ledger.day_key(), "user-1") == 50

    async def test_grace_period_counts_from_finalize(
        self,
        orchestrator: BulkOrchestrator,
        ledger: QuotaLedger,
        session_factory,
    ):
        """Scenario 4: A batch that started long ago but just committed is not swept."""
        with patch.object(
            ledger, "record_call_cost", side_effect=OperationalError("INSERT", {}, Exception())
        ):
            result = await orchestrator.bulk_add("user-1", "PL", ["v1"])

        started = utcnow() - timedelta(minutes=10)
        async with transaction(session_factory) as session:
            await session.execute(
                update(Action).where(Action.id == result.action.id).values(created_at=started)
            )
        assert await orchestrator.flush_pending_quota() == 0

        async with transaction(session_factory) as session:
            await session.execute(
                update(Action)
                .where(Action.id == result.action.id)
                .values(finalized_at=utcnow() - timedelta(minutes=6))
            )
        assert await orchestrator.flush_pending_quota() == 1
        assert await ledger.get_usage(ledger.day_key(started), GLOBAL_SCOPE) == 50

    async def test_recorded_actions_are_not_flushed(
        self,
        orchestrator: BulkOrchestrator,
        ledger: QuotaLedger,
    ):
        await orchestrator.bulk_add("user-1", "PL", ["v1"])

        assert await orchestrator.flush_pending_quota(older_than=timedelta(0)) == 0
        assert await ledger.get_usage(ledger.day_key(), GLOBAL_SCOPE) == 50


class TestQuotaReconcileLoop:
    """Tests for the background reconcile loop."""

    async def test_loop_flushes_and_maintains_until_cancelled(self, orchestrator):
        """Scenario 1: One sweep, then cancellation during sleep ends the loop."""
        with (
            patch.object(orchestrator, "flush_pending_quota", new_callable=AsyncMock) as flush,
            patch.object(orchestrator.ledger, "maintain", new_callable=AsyncMock) as maintain,
            patch(
                "playlist_manager.services.bulk_orchestrator.asyncio.sleep",
                new_callable=AsyncMock,
                side_effect=asyncio.CancelledError,
            ),
        ):
            await quota_reconcile_loop(orchestrator, interval_seconds=60)

        flush.assert_awaited_once()
        maintain.assert_awaited_once()

    async def test_loop_survives_sweep_errors(self, orchestrator):
        """Scenario 2: A storage error is logged and the loop keeps going."""
        sleeps = []

        async def fake_sleep(seconds):
            sleeps.append(seconds)
            if len(sleeps) >= 2:
                raise asyncio.CancelledError

        with (
            patch.object(
                orchestrator,
                "flush_pending_quota",
                new_callable=AsyncMock,
                side_effect=[InternalError("Storage transaction failed"), 0],
            ) as flush,
            patch.object(orchestrator.ledger, "maintain", new_callable=AsyncMock),
            patch(
                "playlist_manager.services.bulk_orchestrator.asyncio.sleep",
                side_effect=fake_sleep,
            ),
        ):
            await quota_reconcile_loop(orchestrator, interval_seconds=60)

        assert sleeps == [10, 60]
        assert flush.await_count == 2
