"""initial action log and quota ledger tables

Revision ID: 20261016_0001
Revises:
Create Date: 2026-10-16

Creates the action log store and the quota ledger tables.

Action Log:
    - actions: one row per bulk submission (status pending → terminal)
    - action_items: one row per targeted entity, immutable once written
    - idempotency_keys: composite PK (key, user_id), claimed in the same
      transaction as the action
    - user_credentials: Fernet-encrypted provider access tokens

Quota Ledger:
    - quota_usage: composite PK (date_key, scope), additive upserts only
    - quota_meta: maintenance bookkeeping (last_prune_date, last_vacuum_date)
"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "20261016_0001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "actions",
        sa.Column("id", sa.String(36), nullable=False),
        sa.Column("type", sa.String(16), nullable=False),
        sa.Column("user_id", sa.String(255), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("status", sa.String(16), nullable=False),
        sa.Column("requested_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("quota_cost", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("finalized_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("quota_recorded_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint("quota_cost >= 0", name="ck_actions_quota_cost_non_negative"),
    )
    op.create_index("ix_actions_user_id", "actions", ["user_id"])
    # Quota outbox sweep: WHERE quota_recorded_at IS NULL ORDER BY finalized_at
    op.create_index("ix_actions_quota_pending", "actions", ["quota_recorded_at", "finalized_at"])

    op.create_table(
        "action_items",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("action_id", sa.String(36), nullable=False),
        sa.Column("position", sa.Integer(), nullable=False),
        sa.Column("type", sa.String(16), nullable=False),
        sa.Column("status", sa.String(16), nullable=False),
        sa.Column("video_id", sa.String(64), nullable=True),
        sa.Column("source_playlist_item_id", sa.String(128), nullable=True),
        sa.Column("target_playlist_item_id", sa.String(128), nullable=True),
        sa.Column("error_reason", sa.String(32), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["action_id"], ["actions.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_action_items_action_id", "action_items", ["action_id"])

    op.create_table(
        "idempotency_keys",
        sa.Column("key", sa.String(255), nullable=False),
        sa.Column("user_id", sa.String(255), nullable=False),
        sa.Column("action_id", sa.String(36), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["action_id"], ["actions.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("key", "user_id", name="pk_idempotency_keys"),
    )
    op.create_index("ix_idempotency_keys_key", "idempotency_keys", ["key"])

    op.create_table(
        "user_credentials",
        sa.Column("user_id", sa.String(255), nullable=False),
        sa.Column("access_token_encrypted", sa.LargeBinary(), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("user_id"),
    )

    op.create_table(
        "quota_usage",
        sa.Column("date_key", sa.Date(), nullable=False),
        sa.Column("scope", sa.String(255), nullable=False),
        sa.Column("used", sa.Integer(), nullable=False, server_default="0"),
        sa.PrimaryKeyConstraint("date_key", "scope", name="pk_quota_usage"),
        sa.CheckConstraint("used >= 0", name="ck_quota_usage_non_negative"),
    )
    op.create_index("ix_quota_usage_scope_date", "quota_usage", ["scope", "date_key"])

    op.create_table(
        "quota_meta",
        sa.Column("key", sa.String(64), nullable=False),
        sa.Column("value", sa.String(255), nullable=True),
        sa.PrimaryKeyConstraint("key"),
    )


def downgrade() -> None:
    op.drop_table("quota_meta")
    op.drop_index("ix_quota_usage_scope_date", table_name="quota_usage")
    op.drop_table("quota_usage")
    op.drop_table("user_credentials")
    op.drop_index("ix_idempotency_keys_key", table_name="idempotency_keys")
    op.drop_table("idempotency_keys")
    op.drop_index("ix_action_items_action_id", table_name="action_items")
    op.drop_table("action_items")
    op.drop_index("ix_actions_quota_pending", table_name="actions")
    op.drop_index("ix_actions_user_id", table_name="actions")
    op.drop_table("actions")
