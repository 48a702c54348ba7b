from __future__ import annotations

import asyncio
from dataclasses import asdict, dataclass, field, replace
from datetime import datetime
import logging
from typing import Any, Protocol

from sqlalchemy import delete, func, select, update

from staffnotify.domain.models import NotificationAttempt, NotificationRecord
from staffnotify.domain.state import TERMINAL_RECORD_STATUSES
from staffnotify.persistence.db import SessionFactory, coerce_utc


logger = logging.getLogger(__name__)

# Retention pruning never touches dead letters.
PRUNABLE_STATUSES = ("sent", "duplicate")


@dataclass
class RecordSnapshot:
    id: str
    fingerprint: str
    content_hash: str
    recipient_id: str
    event_type: str
    entity_id: str
    source_id: str
    priority: str
    status: str
    created_at: datetime
    updated_at: datetime
    payload: dict[str, Any] = field(default_factory=dict)
    delivery_attempts: int = 0
    last_error: str | None = None
    duplicate_of: str | None = None
    channel: str | None = None
    sent_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_RECORD_STATUSES

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        for key in ("created_at", "updated_at", "sent_at"):
            value = data.get(key)
            data[key] = value.isoformat() if isinstance(value, datetime) else None
        return data


@dataclass(frozen=True)
class AttemptEntry:
    record_id: str
    queue_item_id: str
    attempt_no: int
    channel: str
    outcome: str
    created_at: datetime
    detail: str | None = None
    latency_ms: float | None = None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["created_at"] = self.created_at.isoformat()
        return data


class RecordStore(Protocol):
    async def create(self, record: RecordSnapshot) -> None: ...

    async def get(self, record_id: str) -> RecordSnapshot | None: ...

    async def update_if_open(self, record_id: str, *, now: datetime, **values: Any) -> bool: ...

    async def add_attempts(self, entries: list[AttemptEntry]) -> None: ...

    async def list_attempts(self, record_id: str) -> list[AttemptEntry]: ...

    async def list_records(
        self,
        *,
        status: str | None = None,
        recipient_id: str | None = None,
        limit: int = 100,
    ) -> list[RecordSnapshot]: ...

    async def count_by_status(self) -> dict[str, int]: ...

    async def prune(self, *, older_than: datetime, limit: int) -> int: ...


class InMemoryRecordStore:
    # Test and dev store with the same open-record guard as the SQL store.
    def __init__(self) -> None:
        self._records: dict[str, RecordSnapshot] = {}
        self._attempts: list[AttemptEntry] = []
        self._lock = asyncio.Lock()

    async def create(self, record: RecordSnapshot) -> None:
        async with self._lock:
            if record.id in self._records:
                raise ValueError(f"record {record.id} already exists")
            self._records[record.id] = replace(record)

    async def get(self, record_id: str) -> RecordSnapshot | None:
        record = self._records.get(record_id)
        return replace(record) if record is not None else None

    async def update_if_open(self, record_id: str, *, now: datetime, **values: Any) -> bool:
        async with self._lock:
            record = self._records.get(record_id)
            if record is None or record.is_terminal:
                return False
            self._records[record_id] = replace(record, updated_at=now, **values)
            return True

    async def add_attempts(self, entries: list[AttemptEntry]) -> None:
        self._attempts.extend(entries)

    async def list_attempts(self, record_id: str) -> list[AttemptEntry]:
        return [entry for entry in self._attempts if entry.record_id == record_id]

    async def list_records(
        self,
        *,
        status: str | None = None,
        recipient_id: str | None = None,
        limit: int = 100,
    ) -> list[RecordSnapshot]:
        records = [
            replace(record)
            for record in self._records.values()
            if (status is None or record.status == status)
            and (recipient_id is None or record.recipient_id == recipient_id)
        ]
        records.sort(key=lambda record: record.created_at, reverse=True)
        return records[: max(0, limit)]

    async def count_by_status(self) -> dict[str, int]:
        counts: dict[str, int] = {}
        for record in self._records.values():
            counts[record.status] = counts.get(record.status, 0) + 1
        return counts

    async def prune(self, *, older_than: datetime, limit: int) -> int:
        async with self._lock:
            doomed = [
                record.id
                for record in self._records.values()
                if record.status in PRUNABLE_STATUSES and record.updated_at <= older_than
            ][: max(0, limit)]
            for record_id in doomed:
                del self._records[record_id]
            pruned = set(doomed)
            self._attempts = [entry for entry in self._attempts if entry.record_id not in pruned]
            return len(doomed)


def _row_to_snapshot(row: NotificationRecord) -> RecordSnapshot:
    return RecordSnapshot(
        id=row.id,
        fingerprint=row.fingerprint,
        content_hash=row.content_hash,
        recipient_id=row.recipient_id,
        event_type=row.event_type,
        entity_id=row.entity_id,
        source_id=row.source_id,
        priority=row.priority,
        status=row.status,
        payload=dict(row.payload_json or {}),
        delivery_attempts=int(row.delivery_attempts or 0),
        last_error=row.last_error,
        duplicate_of=row.duplicate_of,
        channel=row.channel,
        created_at=coerce_utc(row.created_at),
        updated_at=coerce_utc(row.updated_at),
        sent_at=coerce_utc(row.sent_at),
    )


class SqlRecordStore:
    def __init__(self, session_factory: SessionFactory) -> None:
        self._session_factory = session_factory

    async def create(self, record: RecordSnapshot) -> None:
        async with self._session_factory() as session:
            session.add(
                NotificationRecord(
                    id=record.id,
                    fingerprint=record.fingerprint,
                    content_hash=record.content_hash,
                    recipient_id=record.recipient_id,
                    event_type=record.event_type,
                    entity_id=record.entity_id,
                    source_id=record.source_id,
                    priority=record.priority,
                    status=record.status,
                    delivery_attempts=record.delivery_attempts,
                    last_error=record.last_error,
                    duplicate_of=record.duplicate_of,
                    channel=record.channel,
                    payload_json=record.payload,
                    created_at=record.created_at,
                    updated_at=record.updated_at,
                    sent_at=record.sent_at,
                )
            )
            await session.commit()

    async def get(self, record_id: str) -> RecordSnapshot | None:
        async with self._session_factory() as session:
            row = await session.get(NotificationRecord, record_id)
            return _row_to_snapshot(row) if row is not None else None

    async def update_if_open(self, record_id: str, *, now: datetime, **values: Any) -> bool:
        # Terminal records never change; a late or repeated outcome becomes a no-op.
        async with self._session_factory() as session:
            result = await session.execute(
                update(NotificationRecord)
                .where(
                    NotificationRecord.id == record_id,
                    NotificationRecord.status.not_in(sorted(TERMINAL_RECORD_STATUSES)),
                )
                .values(updated_at=now, **values)
            )
            await session.commit()
            return result.rowcount == 1

    async def add_attempts(self, entries: list[AttemptEntry]) -> None:
        if not entries:
            return
        async with self._session_factory() as session:
            session.add_all(
                [
                    NotificationAttempt(
                        record_id=entry.record_id,
                        queue_item_id=entry.queue_item_id,
                        attempt_no=entry.attempt_no,
                        channel=entry.channel,
                        outcome=entry.outcome,
                        detail=entry.detail,
                        latency_ms=entry.latency_ms,
                        created_at=entry.created_at,
                    )
                    for entry in entries
                ]
            )
            await session.commit()

    async def list_attempts(self, record_id: str) -> list[AttemptEntry]:
        async with self._session_factory() as session:
            rows = (
                await session.execute(
                    select(NotificationAttempt)
                    .where(NotificationAttempt.record_id == record_id)
                    .order_by(NotificationAttempt.id.asc())
                )
            ).scalars().all()
        return [
            AttemptEntry(
                record_id=row.record_id,
                queue_item_id=row.queue_item_id,
                attempt_no=int(row.attempt_no),
                channel=row.channel,
                outcome=row.outcome,
                detail=row.detail,
                latency_ms=row.latency_ms,
                created_at=coerce_utc(row.created_at),
            )
            for row in rows
        ]

    async def list_records(
        self,
        *,
        status: str | None = None,
        recipient_id: str | None = None,
        limit: int = 100,
    ) -> list[RecordSnapshot]:
        stmt = select(NotificationRecord)
        if status is not None:
            stmt = stmt.where(NotificationRecord.status == status)
        if recipient_id is not None:
            stmt = stmt.where(NotificationRecord.recipient_id == recipient_id)
        stmt = stmt.order_by(NotificationRecord.created_at.desc()).limit(max(0, limit))
        async with self._session_factory() as session:
            rows = (await session.execute(stmt)).scalars().all()
        return [_row_to_snapshot(row) for row in rows]

    async def count_by_status(self) -> dict[str, int]:
        async with self._session_factory() as session:
            rows = (
                await session.execute(
                    select(NotificationRecord.status, func.count()).group_by(NotificationRecord.status)
                )
            ).all()
        return {str(status): int(count) for status, count in rows}

    async def prune(self, *, older_than: datetime, limit: int) -> int:
        async with self._session_factory() as session:
            record_ids = (
                await session.execute(
                    select(NotificationRecord.id)
                    .where(
                        NotificationRecord.status.in_(PRUNABLE_STATUSES),
                        NotificationRecord.updated_at <= older_than,
                    )
                    .order_by(NotificationRecord.updated_at.asc())
                    .limit(max(1, limit))
                )
            ).scalars().all()
            if not record_ids:
                return 0
            await session.execute(delete(NotificationAttempt).where(NotificationAttempt.record_id.in_(record_ids)))
            result = await session.execute(delete(NotificationRecord).where(NotificationRecord.id.in_(record_ids)))
            await session.commit()
        pruned = int(result.rowcount or 0)
        logger.info("notification_records_pruned count=%s", pruned)
        return pruned
