"""SQLAlchemy 2.0 ORM models.

This module contains all SQLAlchemy models for the playlist manager.
All models use the Mapped[type] annotation pattern required by SQLAlchemy 2.0.

Two groups of tables share one metadata:
    - Action log (actions, action_items, idempotency_keys, user_credentials):
      transactional store, written only inside an orchestration transaction.
    - Quota ledger (quota_usage, quota_meta): lightweight, read-heavy store
      that may live in a separate database (QUOTA_DATABASE_URL) and is
      periodically pruned and compacted.

Encrypted Fields Pattern:
    Provider access tokens are stored Fernet-encrypted in `*_encrypted`
    LargeBinary columns. NEVER expose encrypted fields in __repr__ or logs.
"""

import enum
import uuid
from datetime import date, datetime, timezone

from sqlalchemy import (
    CheckConstraint,
    Date,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    LargeBinary,
    PrimaryKeyConstraint,
    String,
    Text,
    inspect,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship, validates

from playlist_manager.exceptions import ImmutableActionItemError, InvalidStateTransitionError


def utcnow() -> datetime:
    """Get current UTC datetime (timezone-aware)."""
    return datetime.now(timezone.utc)


def new_action_id() -> str:
    return str(uuid.uuid4())


class ActionType(enum.Enum):
    """Kind of bulk mutation recorded by an Action."""

    ADD = "ADD"
    REMOVE = "REMOVE"
    MOVE = "MOVE"


class ActionStatus(enum.Enum):
    """Outcome of a bulk submission, derived from its items at finalize time.

    Flow:
        pending → success | partial | failed

    Terminal States:
        success (every attempted item succeeded), partial (mixed),
        failed (every attempted item failed, or nothing attempted)
    """

    PENDING = "pending"
    SUCCESS = "success"
    PARTIAL = "partial"
    FAILED = "failed"


class ActionItemStatus(enum.Enum):
    """Outcome of one targeted entity inside an Action."""

    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"


def _enum_column(enum_cls: type[enum.Enum], name: str) -> Enum:
    return Enum(
        enum_cls,
        native_enum=False,
        length=16,
        name=name,
        values_callable=lambda x: [e.value for e in x],
    )


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


class Action(Base):
    """Persisted record of one bulk-mutation submission.

    Attributes:
        id: UUID string primary key (also the replay handle for idempotency keys).
        type: ADD, REMOVE or MOVE.
        user_id: Owner of the submission.
        created_at: Timestamp when orchestration started (UTC).
        status: pending until finalize, then success/partial/failed.
        requested_count: Number of targets in the submitted payload.
        finalized_at: When the terminal status was set. The quota outbox grace
            period counts from here.
        quota_cost: Quota units consumed by remote calls actually issued.
        quota_recorded_at: When quota_cost reached the quota ledger. NULL means
            the post-commit ledger write has not happened yet (quota outbox).

    Indexes:
        - user_id for per-user history
        - (quota_recorded_at, finalized_at) for the reconcile sweep
    """

    __tablename__ = "actions"

    # Only pending actions may change status, and only once
    VALID_TRANSITIONS: dict[ActionStatus, set[ActionStatus]] = {
        ActionStatus.PENDING: {ActionStatus.SUCCESS, ActionStatus.PARTIAL, ActionStatus.FAILED},
        ActionStatus.SUCCESS: set(),
        ActionStatus.PARTIAL: set(),
        ActionStatus.FAILED: set(),
    }

    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=new_action_id,
    )
    type: Mapped[ActionType] = mapped_column(
        _enum_column(ActionType, "actiontype"),
        nullable=False,
    )
    user_id: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        index=True,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
    )
    status: Mapped[ActionStatus] = mapped_column(
        _enum_column(ActionStatus, "actionstatus"),
        nullable=False,
        default=ActionStatus.PENDING,
    )
    requested_count: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
        server_default="0",
    )
    quota_cost: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
        server_default="0",
    )
    finalized_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    quota_recorded_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    # Loaded explicitly through ActionLog.get_summary(), never lazily
    items: Mapped[list["ActionItem"]] = relationship(
        "ActionItem",
        back_populates="action",
        order_by="ActionItem.position",
        lazy="raise",
        passive_deletes=True,
    )

    __table_args__ = (
        CheckConstraint("quota_cost >= 0", name="ck_actions_quota_cost_non_negative"),
        Index("ix_actions_quota_pending", "quota_recorded_at", "finalized_at"),
    )

    @validates("status")
    def validate_status_change(self, key: str, value: ActionStatus) -> ActionStatus:
        """Reject any status change other than pending → terminal.

        Raises:
            InvalidStateTransitionError: If the transition is not allowed.
        """
        current = self.status
        if current is None or current == value:
            return value
        if value not in self.VALID_TRANSITIONS.get(current, set()):
            raise InvalidStateTransitionError(
                f"Invalid action transition: {current.value} → {value.value}",
                from_status=current,
                to_status=value,
            )
        return value

    def __repr__(self) -> str:
        return (
            f"<Action(id={self.id!s:.8}, type={self.type.value if self.type else None}, "
            f"user_id={self.user_id!r}, status={self.status.value if self.status else None})>"
        )


class ActionItem(Base):
    """Outcome of one targeted entity within an Action.

    Appended during orchestration and never mutated afterwards: once the row
    is persistent every attribute change raises ImmutableActionItemError.

    Attributes:
        id: Autoincrement primary key.
        action_id: Owning action.
        position: Order of the target in the submitted payload.
        type: Action type copied from the owning action.
        status: success, failed or skipped.
        video_id: Provider video id of the entity.
        source_playlist_item_id: Playlist item removed (REMOVE, MOVE).
        target_playlist_item_id: Playlist item created (ADD, MOVE).
        error_reason: Classified ProviderErrorReason value on failure.
        error_message: Provider message on failure.
    """

    __tablename__ = "action_items"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    action_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("actions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    type: Mapped[ActionType] = mapped_column(
        _enum_column(ActionType, "actiontype"),
        nullable=False,
    )
    status: Mapped[ActionItemStatus] = mapped_column(
        _enum_column(ActionItemStatus, "actionitemstatus"),
        nullable=False,
    )
    video_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    source_playlist_item_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    target_playlist_item_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    error_reason: Mapped[str | None] = mapped_column(String(32), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
    )

    action: Mapped[Action] = relationship("Action", back_populates="items", lazy="raise")

    @validates(
        "status",
        "video_id",
        "source_playlist_item_id",
        "target_playlist_item_id",
        "error_reason",
        "error_message",
    )
    def validate_immutable(self, key: str, value):
        state = inspect(self)
        if state.persistent or state.detached:
            raise ImmutableActionItemError(
                f"ActionItem {self.id} is immutable once appended (attempted to set {key})"
            )
        return value

    def __repr__(self) -> str:
        return (
            f"<ActionItem(action_id={self.action_id!s:.8}, position={self.position}, "
            f"status={self.status.value if self.status else None}, video_id={self.video_id!r})>"
        )


class IdempotencyKey(Base):
    """Client-supplied idempotency key claimed by one Action.

    Keys are scoped per user: the same opaque key submitted by two users
    resolves to two independent claims. The row is inserted with
    INSERT … ON CONFLICT DO NOTHING inside the orchestration transaction,
    so a key is registered exactly when its Action commits.

    Attributes:
        key: Opaque client token (part of composite PK).
        user_id: Submitting user (part of composite PK).
        action_id: Action executed for this key.
        created_at: Claim timestamp (UTC).
    """

    __tablename__ = "idempotency_keys"

    key: Mapped[str] = mapped_column(String(255), nullable=False)
    user_id: Mapped[str] = mapped_column(String(255), nullable=False)
    action_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("actions.id", ondelete="CASCADE"),
        nullable=False,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
    )

    __table_args__ = (
        PrimaryKeyConstraint("key", "user_id", name="pk_idempotency_keys"),
        Index("ix_idempotency_keys_key", "key"),
    )

    def __repr__(self) -> str:
        return (
            f"<IdempotencyKey(key={self.key!r}, user_id={self.user_id!r}, "
            f"action_id={self.action_id!s:.8})>"
        )


class UserCredential(Base):
    """Stored provider access token for a user.

    Token acquisition and refresh happen outside this service; this table only
    holds the latest access token so the orchestrator can resolve a
    remote-call handle. Use CredentialService, never the column directly.
    """

    __tablename__ = "user_credentials"

    user_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    access_token_encrypted: Mapped[bytes | None] = mapped_column(LargeBinary, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        onupdate=utcnow,
    )

    def __repr__(self) -> str:
        token_info = "set" if self.access_token_encrypted else "not_set"
        return f"<UserCredential(user_id={self.user_id!r}, access_token={token_info})>"


class QuotaUsage(Base):
    """Daily quota consumption per scope.

    Composite Primary Key:
        (date_key, scope) - one row per Pacific-time calendar day per scope.
        scope is "global" for the shared counter or a user id.

    used only grows, through the additive upsert in QuotaLedger.record_usage().
    Rows older than the retention window are pruned by maintenance.
    """

    __tablename__ = "quota_usage"

    date_key: Mapped[date] = mapped_column(Date, nullable=False)
    scope: Mapped[str] = mapped_column(String(255), nullable=False)
    used: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
        server_default="0",
    )

    __table_args__ = (
        PrimaryKeyConstraint("date_key", "scope", name="pk_quota_usage"),
        # Per-scope trend queries
        Index("ix_quota_usage_scope_date", "scope", "date_key"),
        CheckConstraint("used >= 0", name="ck_quota_usage_non_negative"),
    )

    def __repr__(self) -> str:
        return f"<QuotaUsage(date_key={self.date_key!s}, scope={self.scope!r}, used={self.used})>"


class QuotaMeta(Base):
    """Key/value bookkeeping for quota maintenance (last prune, last vacuum)."""

    __tablename__ = "quota_meta"

    key: Mapped[str] = mapped_column(String(64), primary_key=True)
    value: Mapped[str | None] = mapped_column(String(255), nullable=True)

    def __repr__(self) -> str:
        return f"<QuotaMeta(key={self.key!r}, value={self.value!r})>"


QUOTA_TABLES = [QuotaUsage.__table__, QuotaMeta.__table__]
