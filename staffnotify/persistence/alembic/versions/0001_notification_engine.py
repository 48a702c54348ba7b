"""notification engine tables

Revision ID: 0001_notification_engine
Revises:
Create Date: 2026-10-18
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision = "0001_notification_engine"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # Submission records, including duplicates that point at the record they matched.
    op.create_table(
        "notification_records",
        sa.Column("id", sa.String(), primary_key=True, nullable=False),
        sa.Column("fingerprint", sa.String(), nullable=False),
        sa.Column("content_hash", sa.String(), nullable=False),
        sa.Column("recipient_id", sa.String(), nullable=False),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("entity_id", sa.String(), nullable=False),
        sa.Column("source_id", sa.String(), nullable=False),
        sa.Column("priority", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("delivery_attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("duplicate_of", sa.String(), nullable=True),
        sa.Column("channel", sa.String(), nullable=True),
        sa.Column("payload_json", postgresql.JSONB(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index(
        "ix_notification_records_fingerprint_created",
        "notification_records",
        ["fingerprint", "created_at"],
        unique=False,
    )
    op.create_index(
        "ix_notification_records_status_updated",
        "notification_records",
        ["status", "updated_at"],
        unique=False,
    )
    op.create_index(
        "ix_notification_records_recipient_created",
        "notification_records",
        ["recipient_id", "created_at"],
        unique=False,
    )

    op.create_table(
        "notification_attempts",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True, nullable=False),
        sa.Column("record_id", sa.String(), nullable=False),
        sa.Column("queue_item_id", sa.String(), nullable=False),
        sa.Column("attempt_no", sa.Integer(), nullable=False),
        sa.Column("channel", sa.String(), nullable=False),
        sa.Column("outcome", sa.String(), nullable=False),
        sa.Column("detail", sa.Text(), nullable=True),
        sa.Column("latency_ms", sa.Float(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index(
        "ix_notification_attempts_record_created",
        "notification_attempts",
        ["record_id", "created_at"],
        unique=False,
    )

    # Key uniqueness is the cross-replica dedup guard.
    op.create_table(
        "dedup_reservations",
        sa.Column("key", sa.String(), primary_key=True, nullable=False),
        sa.Column("kind", sa.String(), nullable=False),
        sa.Column("holder_id", sa.String(), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_dedup_reservations_expires_at", "dedup_reservations", ["expires_at"], unique=False)

    op.create_table(
        "rate_limit_counters",
        sa.Column("key", sa.String(), nullable=False),
        sa.Column("window", sa.String(), nullable=False),
        sa.Column("count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("window_reset_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("key", "window"),
    )
    op.create_index("ix_rate_limit_counters_reset_at", "rate_limit_counters", ["window_reset_at"], unique=False)

    op.create_table(
        "notification_queue_items",
        sa.Column("id", sa.String(), primary_key=True, nullable=False),
        sa.Column("record_id", sa.String(), nullable=False),
        sa.Column("queue", sa.String(), nullable=False),
        sa.Column("state", sa.String(), nullable=False),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("next_eligible_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("awaiting_rate_limit", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("event_json", postgresql.JSONB(), nullable=False),
        sa.Column("channel_plan_json", postgresql.JSONB(), nullable=False),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("dead_letter_reason", sa.String(), nullable=True),
        sa.Column("claimed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index(
        "ix_notification_queue_items_queue_state_next",
        "notification_queue_items",
        ["queue", "state", "next_eligible_at"],
        unique=False,
    )
    op.create_index(
        "ix_notification_queue_items_record",
        "notification_queue_items",
        ["record_id"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index("ix_notification_queue_items_record", table_name="notification_queue_items")
    op.drop_index("ix_notification_queue_items_queue_state_next", table_name="notification_queue_items")
    op.drop_table("notification_queue_items")
    op.drop_index("ix_rate_limit_counters_reset_at", table_name="rate_limit_counters")
    op.drop_table("rate_limit_counters")
    op.drop_index("ix_dedup_reservations_expires_at", table_name="dedup_reservations")
    op.drop_table("dedup_reservations")
    op.drop_index("ix_notification_attempts_record_created", table_name="notification_attempts")
    op.drop_table("notification_attempts")
    op.drop_index("ix_notification_records_recipient_created", table_name="notification_records")
    op.drop_index("ix_notification_records_status_updated", table_name="notification_records")
    op.drop_index("ix_notification_records_fingerprint_created", table_name="notification_records")
    op.drop_table("notification_records")
