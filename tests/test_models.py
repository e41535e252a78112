"""Tests for SQLAlchemy models.

Tests cover:
- Action defaults and the pending → terminal status rule
- ActionItem immutability once persisted
- Composite primary keys (idempotency_keys, quota_usage)
- UserCredential repr never exposing tokens
"""

from datetime import date

import pytest
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from playlist_manager.exceptions import ImmutableActionItemError, InvalidStateTransitionError
from playlist_manager.models import (
    Action,
    ActionItem,
    ActionItemStatus,
    ActionStatus,
    ActionType,
    IdempotencyKey,
    QuotaUsage,
    UserCredential,
)


async def _persisted_action(session: AsyncSession, **overrides) -> Action:
    fields = {"type": ActionType.ADD, "user_id": "user-1"}
    fields.update(overrides)
    action = Action(**fields)
    session.add(action)
    await session.commit()
    return action


class TestActionModel:
    """Tests for Action."""

    async def test_defaults(self, async_session: AsyncSession):
        action = await _persisted_action(async_session)

        assert len(action.id) == 36
        assert action.status is ActionStatus.PENDING
        assert action.requested_count == 0
        assert action.quota_cost == 0
        assert action.quota_recorded_at is None
        assert action.created_at is not None

    @pytest.mark.parametrize(
        "terminal", [ActionStatus.SUCCESS, ActionStatus.PARTIAL, ActionStatus.FAILED]
    )
    async def test_pending_to_terminal_allowed(
        self, async_session: AsyncSession, terminal: ActionStatus
    ):
        action = await _persisted_action(async_session)

        action.status = terminal
        await async_session.commit()

        assert action.status is terminal

    async def test_terminal_to_other_rejected(self, async_session: AsyncSession):
        action = await _persisted_action(async_session)
        action.status = ActionStatus.PARTIAL

        with pytest.raises(InvalidStateTransitionError) as exc_info:
            action.status = ActionStatus.SUCCESS

        assert exc_info.value.from_status is ActionStatus.PARTIAL
        assert exc_info.value.to_status is ActionStatus.SUCCESS

    async def test_terminal_back_to_pending_rejected(self, async_session: AsyncSession):
        action = await _persisted_action(async_session)
        action.status = ActionStatus.FAILED

        with pytest.raises(InvalidStateTransitionError):
            action.status = ActionStatus.PENDING

    async def test_negative_quota_cost_rejected(self, async_session: AsyncSession):
        async_session.add(Action(type=ActionType.ADD, user_id="user-1", quota_cost=-1))

        with pytest.raises(IntegrityError):
            await async_session.commit()


class TestActionItemModel:
    """Tests for ActionItem."""

    async def test_item_immutable_after_persist(self, async_session: AsyncSession):
        action = await _persisted_action(async_session)
        item = ActionItem(
            action_id=action.id,
            position=0,
            type=ActionType.ADD,
            status=ActionItemStatus.SUCCESS,
            video_id="v1",
        )
        async_session.add(item)
        await async_session.commit()

        with pytest.raises(ImmutableActionItemError):
            item.error_message = "rewritten"
        with pytest.raises(ImmutableActionItemError):
            item.video_id = "v2"

    def test_transient_item_is_mutable(self):
        item = ActionItem(type=ActionType.ADD, status=ActionItemStatus.FAILED)

        item.error_message = "set before append"

        assert item.error_message == "set before append"


class TestCompositeKeys:
    """Tests for idempotency_keys and quota_usage primary keys."""

    async def test_same_key_different_users(self, async_session: AsyncSession):
        action = await _persisted_action(async_session)
        async_session.add_all(
            [
                IdempotencyKey(key="k", user_id="user-1", action_id=action.id),
                IdempotencyKey(key="k", user_id="user-2", action_id=action.id),
            ]
        )

        await async_session.commit()

    async def test_quota_usage_negative_rejected(self, async_session: AsyncSession):
        async_session.add(QuotaUsage(date_key=date(2026, 10, 16), scope="global", used=-1))

        with pytest.raises(IntegrityError):
            await async_session.commit()


class TestUserCredentialModel:
    """Tests for UserCredential."""

    def test_repr_hides_token(self):
        credential = UserCredential(user_id="user-1", access_token_encrypted=b"secret")

        text = repr(credential)

        assert "secret" not in text
        assert "access_token=set" in text
