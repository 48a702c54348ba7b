from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    DateTime,
    Float,
    Integer,
    String,
    Text,
    func,
    Index,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


# JSONB on Postgres, plain JSON elsewhere (SQLite in tests).
JsonColumn = JSON().with_variant(JSONB(), "postgresql")
# SQLite only autoincrements INTEGER primary keys.
AutoIncrementId = BigInteger().with_variant(Integer(), "sqlite")


class Base(DeclarativeBase):
    pass


class NotificationRecord(Base):
    __tablename__ = "notification_records"
    __table_args__ = (
        Index("ix_notification_records_fingerprint_created", "fingerprint", "created_at"),
        Index("ix_notification_records_status_updated", "status", "updated_at"),
        Index("ix_notification_records_recipient_created", "recipient_id", "created_at"),
    )

    # One row per submission; duplicates keep a pointer to the record they matched.
    id: Mapped[str] = mapped_column(String, primary_key=True)
    fingerprint: Mapped[str] = mapped_column(String)
    content_hash: Mapped[str] = mapped_column(String)
    recipient_id: Mapped[str] = mapped_column(String)
    event_type: Mapped[str] = mapped_column(String)
    entity_id: Mapped[str] = mapped_column(String)
    source_id: Mapped[str] = mapped_column(String)
    priority: Mapped[str] = mapped_column(String)
    status: Mapped[str] = mapped_column(String)
    delivery_attempts: Mapped[int] = mapped_column(Integer, default=0)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    duplicate_of: Mapped[str | None] = mapped_column(String, nullable=True)
    channel: Mapped[str | None] = mapped_column(String, nullable=True)
    payload_json: Mapped[dict[str, Any]] = mapped_column(JsonColumn)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class NotificationAttempt(Base):
    __tablename__ = "notification_attempts"
    __table_args__ = (Index("ix_notification_attempts_record_created", "record_id", "created_at"),)

    # Immutable per-channel attempt history for operator review.
    id: Mapped[int] = mapped_column(AutoIncrementId, primary_key=True, autoincrement=True)
    record_id: Mapped[str] = mapped_column(String)
    queue_item_id: Mapped[str] = mapped_column(String)
    attempt_no: Mapped[int] = mapped_column(Integer)
    channel: Mapped[str] = mapped_column(String)
    outcome: Mapped[str] = mapped_column(String)
    detail: Mapped[str | None] = mapped_column(Text, nullable=True)
    latency_ms: Mapped[float | None] = mapped_column(Float, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class DedupReservation(Base):
    __tablename__ = "dedup_reservations"
    __table_args__ = (Index("ix_dedup_reservations_expires_at", "expires_at"),)

    # Primary key uniqueness is the atomic insert-if-absent guard.
    key: Mapped[str] = mapped_column(String, primary_key=True)
    kind: Mapped[str] = mapped_column(String)
    holder_id: Mapped[str] = mapped_column(String)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class RateLimitCounter(Base):
    __tablename__ = "rate_limit_counters"
    __table_args__ = (Index("ix_rate_limit_counters_reset_at", "window_reset_at"),)

    # Fixed-window counters keyed by recipient:<id>, event_type:<type> or global.
    key: Mapped[str] = mapped_column(String, primary_key=True)
    window: Mapped[str] = mapped_column(String, primary_key=True)
    count: Mapped[int] = mapped_column(Integer, default=0)
    window_reset_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))


class NotificationQueueItem(Base):
    __tablename__ = "notification_queue_items"
    __table_args__ = (
        Index("ix_notification_queue_items_queue_state_next", "queue", "state", "next_eligible_at"),
        Index("ix_notification_queue_items_record", "record_id"),
    )

    # Durable queue backing; dead-letter rows are retained for inspection and replay.
    id: Mapped[str] = mapped_column(String, primary_key=True)
    record_id: Mapped[str] = mapped_column(String)
    queue: Mapped[str] = mapped_column(String)
    state: Mapped[str] = mapped_column(String)
    attempts: Mapped[int] = mapped_column(Integer, default=0)
    next_eligible_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    awaiting_rate_limit: Mapped[bool] = mapped_column(Boolean, default=False)
    event_json: Mapped[dict[str, Any]] = mapped_column(JsonColumn)
    channel_plan_json: Mapped[list[dict[str, Any]]] = mapped_column(JsonColumn)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    dead_letter_reason: Mapped[str | None] = mapped_column(String, nullable=True)
    claimed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
