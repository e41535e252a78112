"""Action log: persisted record of bulk submissions and their per-item outcomes.

Every write goes through an AsyncSession that belongs to an open
transaction (see playlist_manager.database.transaction). The log never
commits on its own; the enclosing unit of work decides.

Status Derivation (finalize):
    attempted = success + failed items (skipped items count as neither)
    - attempted == 0: failed if targets were requested, else success
    - all attempted succeeded: success
    - all attempted failed: failed
    - otherwise: partial
"""

from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from playlist_manager.exceptions import ActionNotFoundError
from playlist_manager.models import (
    Action,
    ActionItem,
    ActionItemStatus,
    ActionStatus,
    ActionType,
    utcnow,
)
from playlist_manager.utils.logging import get_logger

log = get_logger(__name__)


@dataclass(frozen=True)
class NewActionItem:
    """Outcome of one target, as handed to ActionLog.append_item()."""

    status: ActionItemStatus
    video_id: str | None = None
    source_playlist_item_id: str | None = None
    target_playlist_item_id: str | None = None
    error_reason: str | None = None
    error_message: str | None = None


@dataclass(frozen=True)
class ActionSummary:
    """An Action with its items in payload order."""

    action: Action
    items: list[ActionItem]


def derive_status(requested: int, succeeded: int, failed: int) -> ActionStatus:
    """Terminal status of an action from its item counts."""
    attempted = succeeded + failed
    if attempted == 0:
        return ActionStatus.FAILED if requested > 0 else ActionStatus.SUCCESS
    if failed == 0:
        return ActionStatus.SUCCESS
    if succeeded == 0:
        return ActionStatus.FAILED
    return ActionStatus.PARTIAL


class ActionLog:
    """Action and ActionItem persistence bound to one session."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def create_action(
        self,
        action_type: ActionType,
        user_id: str,
        action_id: str | None = None,
        requested_count: int = 0,
    ) -> Action:
        """Insert a pending Action and flush it so items and claims can reference it."""
        action = Action(
            type=action_type,
            user_id=user_id,
            status=ActionStatus.PENDING,
            requested_count=requested_count,
            quota_cost=0,
            created_at=utcnow(),
        )
        if action_id is not None:
            action.id = action_id

        self.session.add(action)
        await self.session.flush()

        log.info(
            "action_created",
            action_id=action.id,
            action_type=action_type.value,
            user_id=user_id,
            requested_count=requested_count,
        )
        return action

    async def _get_action(self, action_id: str) -> Action:
        action = await self.session.get(Action, action_id)
        if action is None:
            raise ActionNotFoundError(action_id)
        return action

    async def exists(self, action_id: str) -> bool:
        result = await self.session.execute(select(Action.id).where(Action.id == action_id))
        return result.scalar_one_or_none() is not None

    async def append_item(self, action_id: str, item: NewActionItem) -> ActionItem:
        """Append one item outcome to the action.

        Position is the next index within the action. The row is flushed
        immediately and cannot be modified afterwards.

        Raises:
            ActionNotFoundError: If the action does not exist.
        """
        action = await self._get_action(action_id)

        result = await self.session.execute(
            select(func.coalesce(func.max(ActionItem.position) + 1, 0)).where(
                ActionItem.action_id == action_id
            )
        )
        position = result.scalar_one()

        row = ActionItem(
            action_id=action_id,
            position=position,
            type=action.type,
            status=item.status,
            video_id=item.video_id,
            source_playlist_item_id=item.source_playlist_item_id,
            target_playlist_item_id=item.target_playlist_item_id,
            error_reason=item.error_reason,
            error_message=item.error_message,
            created_at=utcnow(),
        )
        self.session.add(row)
        await self.session.flush()
        return row

    async def finalize(self, action_id: str) -> Action:
        """Derive and set the terminal status from the appended items.

        Raises:
            ActionNotFoundError: If the action does not exist.
            InvalidStateTransitionError: If the action is already terminal.
        """
        action = await self._get_action(action_id)

        result = await self.session.execute(
            select(ActionItem.status, func.count())
            .where(ActionItem.action_id == action_id)
            .group_by(ActionItem.status)
        )
        counts = {status: count for status, count in result.all()}
        succeeded = counts.get(ActionItemStatus.SUCCESS, 0)
        failed = counts.get(ActionItemStatus.FAILED, 0)

        action.status = derive_status(action.requested_count, succeeded, failed)
        action.finalized_at = utcnow()
        await self.session.flush()

        log.info(
            "action_finalized",
            action_id=action_id,
            status=action.status.value,
            succeeded=succeeded,
            failed=failed,
            skipped=counts.get(ActionItemStatus.SKIPPED, 0),
        )
        return action

    async def set_quota_cost(self, action_id: str, units: int) -> None:
        action = await self._get_action(action_id)
        action.quota_cost = max(0, int(units))
        if action.quota_cost == 0:
            # Nothing to reconcile
            action.quota_recorded_at = utcnow()
        await self.session.flush()

    async def get_summary(self, action_id: str) -> ActionSummary:
        """Load an action and its items ordered by position.

        Raises:
            ActionNotFoundError: If the action does not exist.
        """
        action = await self._get_action(action_id)
        result = await self.session.execute(
            select(ActionItem)
            .where(ActionItem.action_id == action_id)
            .order_by(ActionItem.position)
        )
        return ActionSummary(action=action, items=list(result.scalars().all()))

    async def pending_quota(
        self, older_than: timedelta = timedelta(0), limit: int = 100
    ) -> list[Action]:
        """Terminal actions whose quota cost has not reached the ledger yet.

        Args:
            older_than: Only actions finalized at least this long ago.
            limit: Maximum number of actions returned, oldest first.
        """
        cutoff = utcnow() - older_than
        result = await self.session.execute(
            select(Action)
            .where(
                Action.quota_recorded_at.is_(None),
                Action.quota_cost > 0,
                Action.status != ActionStatus.PENDING,
                Action.finalized_at <= cutoff,
            )
            .order_by(Action.finalized_at)
            .limit(limit)
        )
        return list(result.scalars().all())

    async def mark_quota_recorded(self, action_id: str, at: datetime | None = None) -> bool:
        """Claim the action's quota cost for a ledger write.

        A conditional UPDATE (WHERE quota_recorded_at IS NULL), so of the
        request path and any number of sweeps exactly one gets True. The
        winner writes the cost to the ledger after committing this mark.

        Returns:
            True if this call marked it, False if it was already marked.
        """
        result = await self.session.execute(
            update(Action)
            .where(Action.id == action_id, Action.quota_recorded_at.is_(None))
            .values(quota_recorded_at=at or utcnow())
        )
        return result.rowcount == 1

    async def release_quota_claim(self, action_id: str) -> bool:
        """Return a claimed cost to the outbox after a failed ledger write.

        Returns:
            True if the action is pending again.
        """
        result = await self.session.execute(
            update(Action)
            .where(Action.id == action_id, Action.quota_recorded_at.is_not(None))
            .values(quota_recorded_at=None)
        )
        return result.rowcount == 1
