from __future__ import annotations

import asyncio
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
import itertools
import json
import logging
from typing import Any, Callable, Protocol
from uuid import uuid4

from sqlalchemy import delete, func, select, update

from staffnotify.core.config import Settings
from staffnotify.core.errors import NotFoundError
from staffnotify.domain.events import IMMEDIATE_PRIORITIES, NotificationEvent
from staffnotify.domain.models import NotificationQueueItem
from staffnotify.domain.state import QUEUE_NAMES, READY_STATES, assert_transition
from staffnotify.persistence.db import SessionFactory, coerce_utc
from staffnotify.services.notifications.routing import ChannelTarget
from staffnotify.services.resilience import deterministic_fraction
from staffnotify.services.telemetry import increment_counter, set_gauge


logger = logging.getLogger(__name__)

DEAD_LETTER_MAX_ATTEMPTS = "max_attempts_exceeded"
DEAD_LETTER_PERMANENT = "permanent_failure"
DEAD_LETTER_CHANNELS_EXHAUSTED = "channels_exhausted"
DEAD_LETTER_RATE_LIMITED = "rate_limited_dropped"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class RetryConfig:
    base_ms: int = 1000
    multiplier: float = 2.0
    max_ms: int = 300000
    max_attempts: int = 5
    max_attempts_by_event_type: dict[str, int] = field(default_factory=dict)

    @classmethod
    def from_settings(cls, settings: Settings) -> "RetryConfig":
        overrides = json.loads(settings.notify_max_attempts_json or "{}")
        return cls(
            base_ms=settings.notify_backoff_base_ms,
            multiplier=settings.notify_backoff_multiplier,
            max_ms=settings.notify_backoff_max_ms,
            max_attempts=settings.notify_max_attempts,
            max_attempts_by_event_type={str(k): int(v) for k, v in overrides.items()},
        )

    def max_attempts_for(self, event_type: str) -> int:
        return max(1, int(self.max_attempts_by_event_type.get(event_type, self.max_attempts)))


def retry_backoff_ms(item_id: str, attempt_no: int, config: RetryConfig) -> int:
    """Delay before retry number ``attempt_no`` (1-based), capped at ``config.max_ms``.

    Jitter is derived from the item id so it is stable across restarts, and stays below
    ``multiplier - 1`` of the base step so delays strictly grow until the cap.
    """
    base = max(1, int(config.base_ms))
    cap = max(base, int(config.max_ms))
    multiplier = max(1.0, float(config.multiplier))
    step = base * multiplier ** max(0, attempt_no - 1)
    jitter_span = min(0.5, (multiplier - 1.0) / 2.0)
    jitter = deterministic_fraction(f"{item_id}:{attempt_no}") * jitter_span
    return int(min(cap, step * (1.0 + jitter)))


@dataclass
class QueueItem:
    record_id: str
    event: NotificationEvent
    channel_plan: list[ChannelTarget]
    queue: str
    next_eligible_at: datetime
    id: str = field(default_factory=lambda: uuid4().hex)
    state: str = "queued"
    attempts: int = 0
    awaiting_rate_limit: bool = False
    last_error: str | None = None
    dead_letter_reason: str | None = None
    created_at: datetime = field(default_factory=_utc_now)
    claimed_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "record_id": self.record_id,
            "queue": self.queue,
            "state": self.state,
            "attempts": self.attempts,
            "next_eligible_at": self.next_eligible_at.isoformat(),
            "awaiting_rate_limit": self.awaiting_rate_limit,
            "last_error": self.last_error,
            "dead_letter_reason": self.dead_letter_reason,
            "channel_plan": [target.to_dict() for target in self.channel_plan],
            "event": self.event.to_dict(),
            "created_at": self.created_at.isoformat(),
            "claimed_at": self.claimed_at.isoformat() if self.claimed_at else None,
        }


@dataclass(frozen=True)
class RetryOutcome:
    dead_lettered: bool
    attempts: int
    delay_ms: int | None = None
    # False when the item was recovered or removed while this worker held it.
    applied: bool = True


class QueueBackend(Protocol):
    async def put(self, item: QueueItem) -> None: ...

    async def claim(self, queue: str, limit: int, now: datetime) -> list[QueueItem]: ...

    async def transition(self, item: QueueItem, *, from_state: str) -> bool: ...

    async def remove(self, item_id: str) -> None: ...

    async def get(self, item_id: str) -> QueueItem | None: ...

    async def requeue_stale(self, claimed_before: datetime, now: datetime) -> int: ...

    async def list_queue(self, queue: str, limit: int) -> list[QueueItem]: ...

    async def depths(self) -> dict[str, int]: ...


def _copy(item: QueueItem) -> QueueItem:
    return replace(item, channel_plan=list(item.channel_plan))


class InMemoryQueueBackend:
    # Fast and lossy on restart: in-flight and queued items vanish with the process.
    def __init__(self) -> None:
        self._items: dict[str, QueueItem] = {}
        self._order: dict[str, int] = {}
        self._seq = itertools.count()
        self._lock = asyncio.Lock()

    async def put(self, item: QueueItem) -> None:
        async with self._lock:
            self._items[item.id] = _copy(item)
            self._order[item.id] = next(self._seq)

    async def claim(self, queue: str, limit: int, now: datetime) -> list[QueueItem]:
        async with self._lock:
            ready = [
                item
                for item in self._items.values()
                if item.queue == queue and item.state in READY_STATES and item.next_eligible_at <= now
            ]
            ready.sort(key=lambda item: (item.next_eligible_at, self._order[item.id]))
            claimed: list[QueueItem] = []
            for item in ready[: max(0, limit)]:
                if item.state == "retry_scheduled":
                    assert_transition(item.state, "queued")
                    item.state = "queued"
                assert_transition(item.state, "in_flight")
                item.state = "in_flight"
                item.claimed_at = now
                claimed.append(_copy(item))
            return claimed

    async def transition(self, item: QueueItem, *, from_state: str) -> bool:
        async with self._lock:
            stored = self._items.get(item.id)
            if stored is None or stored.state != from_state:
                return False
            self._items[item.id] = _copy(item)
            if item.queue != stored.queue:
                self._order[item.id] = next(self._seq)
            return True

    async def remove(self, item_id: str) -> None:
        async with self._lock:
            self._items.pop(item_id, None)
            self._order.pop(item_id, None)

    async def get(self, item_id: str) -> QueueItem | None:
        stored = self._items.get(item_id)
        return _copy(stored) if stored is not None else None

    async def requeue_stale(self, claimed_before: datetime, now: datetime) -> int:
        async with self._lock:
            recovered = 0
            for item in self._items.values():
                if item.state == "in_flight" and item.claimed_at is not None and item.claimed_at <= claimed_before:
                    item.state = "queued"
                    item.claimed_at = None
                    recovered += 1
            return recovered

    async def list_queue(self, queue: str, limit: int) -> list[QueueItem]:
        items = [item for item in self._items.values() if item.queue == queue]
        items.sort(key=lambda item: self._order[item.id])
        return [_copy(item) for item in items[: max(0, limit)]]

    async def depths(self) -> dict[str, int]:
        depths = {name: 0 for name in QUEUE_NAMES}
        for item in self._items.values():
            depths[item.queue] = depths.get(item.queue, 0) + 1
        return depths


def _row_to_item(row: NotificationQueueItem) -> QueueItem:
    return QueueItem(
        id=row.id,
        record_id=row.record_id,
        event=NotificationEvent.from_dict(row.event_json),
        channel_plan=[ChannelTarget.from_dict(raw) for raw in row.channel_plan_json or []],
        queue=row.queue,
        state=row.state,
        attempts=int(row.attempts or 0),
        next_eligible_at=coerce_utc(row.next_eligible_at),
        awaiting_rate_limit=bool(row.awaiting_rate_limit),
        last_error=row.last_error,
        dead_letter_reason=row.dead_letter_reason,
        created_at=coerce_utc(row.created_at),
        claimed_at=coerce_utc(row.claimed_at),
    )


class SqlQueueBackend:
    # Survives restarts; claims are conditional state updates so two workers never own one item.
    def __init__(self, session_factory: SessionFactory) -> None:
        self._session_factory = session_factory

    async def put(self, item: QueueItem) -> None:
        async with self._session_factory() as session:
            session.add(
                NotificationQueueItem(
                    id=item.id,
                    record_id=item.record_id,
                    queue=item.queue,
                    state=item.state,
                    attempts=item.attempts,
                    next_eligible_at=item.next_eligible_at,
                    awaiting_rate_limit=item.awaiting_rate_limit,
                    event_json=item.event.to_dict(),
                    channel_plan_json=[target.to_dict() for target in item.channel_plan],
                    last_error=item.last_error,
                    dead_letter_reason=item.dead_letter_reason,
                    claimed_at=item.claimed_at,
                    created_at=item.created_at,
                    updated_at=item.created_at,
                )
            )
            await session.commit()

    async def claim(self, queue: str, limit: int, now: datetime) -> list[QueueItem]:
        async with self._session_factory() as session:
            stmt = (
                select(NotificationQueueItem.id)
                .where(
                    NotificationQueueItem.queue == queue,
                    NotificationQueueItem.state.in_(sorted(READY_STATES)),
                    NotificationQueueItem.next_eligible_at <= now,
                )
                .order_by(NotificationQueueItem.next_eligible_at.asc(), NotificationQueueItem.created_at.asc())
                .limit(max(0, limit))
            )
            if session.get_bind().dialect.name == "postgresql":
                # Skip rows another worker already locked instead of queueing behind it.
                stmt = stmt.with_for_update(skip_locked=True)
            candidate_ids = (await session.execute(stmt)).scalars().all()
            claimed_ids: list[str] = []
            for item_id in candidate_ids:
                # retry_scheduled -> queued -> in_flight collapses into one conditional write.
                result = await session.execute(
                    update(NotificationQueueItem)
                    .where(
                        NotificationQueueItem.id == item_id,
                        NotificationQueueItem.state.in_(sorted(READY_STATES)),
                    )
                    .values(state="in_flight", claimed_at=now, updated_at=now)
                )
                if result.rowcount == 1:
                    claimed_ids.append(item_id)
            await session.commit()
            if not claimed_ids:
                return []
            rows = (
                await session.execute(select(NotificationQueueItem).where(NotificationQueueItem.id.in_(claimed_ids)))
            ).scalars().all()
            by_id = {row.id: _row_to_item(row) for row in rows}
            return [by_id[item_id] for item_id in claimed_ids if item_id in by_id]

    async def transition(self, item: QueueItem, *, from_state: str) -> bool:
        async with self._session_factory() as session:
            result = await session.execute(
                update(NotificationQueueItem)
                .where(NotificationQueueItem.id == item.id, NotificationQueueItem.state == from_state)
                .values(
                    queue=item.queue,
                    state=item.state,
                    attempts=item.attempts,
                    next_eligible_at=item.next_eligible_at,
                    awaiting_rate_limit=item.awaiting_rate_limit,
                    last_error=item.last_error,
                    dead_letter_reason=item.dead_letter_reason,
                    claimed_at=item.claimed_at,
                    updated_at=_utc_now(),
                )
            )
            await session.commit()
            return result.rowcount == 1

    async def remove(self, item_id: str) -> None:
        async with self._session_factory() as session:
            await session.execute(delete(NotificationQueueItem).where(NotificationQueueItem.id == item_id))
            await session.commit()

    async def get(self, item_id: str) -> QueueItem | None:
        async with self._session_factory() as session:
            row = await session.get(NotificationQueueItem, item_id)
            return _row_to_item(row) if row is not None else None

    async def requeue_stale(self, claimed_before: datetime, now: datetime) -> int:
        async with self._session_factory() as session:
            result = await session.execute(
                update(NotificationQueueItem)
                .where(
                    NotificationQueueItem.state == "in_flight",
                    NotificationQueueItem.claimed_at <= claimed_before,
                )
                .values(state="queued", claimed_at=None, updated_at=now)
            )
            await session.commit()
            return int(result.rowcount or 0)

    async def list_queue(self, queue: str, limit: int) -> list[QueueItem]:
        async with self._session_factory() as session:
            rows = (
                await session.execute(
                    select(NotificationQueueItem)
                    .where(NotificationQueueItem.queue == queue)
                    .order_by(NotificationQueueItem.updated_at.desc())
                    .limit(max(0, limit))
                )
            ).scalars().all()
            return [_row_to_item(row) for row in rows]

    async def depths(self) -> dict[str, int]:
        async with self._session_factory() as session:
            rows = (
                await session.execute(
                    select(NotificationQueueItem.queue, func.count()).group_by(NotificationQueueItem.queue)
                )
            ).all()
        depths = {name: 0 for name in QUEUE_NAMES}
        for queue, count in rows:
            depths[str(queue)] = int(count)
        return depths


class QueueManager:
    """Owns queue item lifecycle: queued -> in_flight -> {sent | retry_scheduled | dead_letter}."""

    def __init__(
        self,
        backend: QueueBackend,
        retry_config: RetryConfig | None = None,
        *,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._backend = backend
        self._retry_config = retry_config or RetryConfig()
        self._clock = clock
        self._signals: dict[str, asyncio.Event] = {}

    @property
    def retry_config(self) -> RetryConfig:
        return self._retry_config

    def update_retry_config(self, config: RetryConfig) -> None:
        self._retry_config = config

    def signal(self, queue: str) -> asyncio.Event:
        # Drain loops wait on this to wake as soon as work arrives.
        event = self._signals.get(queue)
        if event is None:
            event = asyncio.Event()
            self._signals[queue] = event
        return event

    @staticmethod
    def queue_for_priority(priority: str) -> str:
        return "immediate" if priority in IMMEDIATE_PRIORITIES else "batch"

    async def enqueue(
        self,
        event: NotificationEvent,
        *,
        record_id: str,
        channel_plan: list[ChannelTarget],
    ) -> QueueItem:
        now = self._clock()
        item = QueueItem(
            record_id=record_id,
            event=event,
            channel_plan=list(channel_plan),
            queue=self.queue_for_priority(event.priority),
            next_eligible_at=now,
            created_at=now,
        )
        await self._backend.put(item)
        increment_counter(f"queue_enqueued_total.{item.queue}")
        self.signal(item.queue).set()
        return item

    async def enqueue_deferred(
        self,
        event: NotificationEvent,
        *,
        record_id: str,
        channel_plan: list[ChannelTarget],
        retry_after_s: float,
    ) -> QueueItem:
        # Rate-limited admissions wait in the retry queue and are re-checked before delivery.
        now = self._clock()
        item = QueueItem(
            record_id=record_id,
            event=event,
            channel_plan=list(channel_plan),
            queue="retry",
            state="retry_scheduled",
            next_eligible_at=now + timedelta(seconds=retry_after_s),
            awaiting_rate_limit=True,
            created_at=now,
        )
        await self._backend.put(item)
        increment_counter("queue_deferred_total")
        return item

    async def claim(self, queue: str, limit: int) -> list[QueueItem]:
        if queue not in QUEUE_NAMES or queue == "dead_letter":
            raise ValueError(f"queue {queue} cannot be drained")
        self.signal(queue).clear()
        return await self._backend.claim(queue, limit, self._clock())

    async def complete(self, item: QueueItem) -> bool:
        # Sent items leave the queue store entirely.
        assert_transition(item.state, "sent")
        item.state = "sent"
        moved = await self._backend.transition(item, from_state="in_flight")
        if moved:
            await self._backend.remove(item.id)
        return moved

    async def discard(self, item: QueueItem) -> None:
        # Used when the owning record already reached a terminal status.
        await self._backend.remove(item.id)
        increment_counter("queue_discarded_total")

    async def fail_transient(self, item: QueueItem, error: str) -> RetryOutcome:
        attempts = item.attempts + 1
        max_attempts = self._retry_config.max_attempts_for(item.event.event_type)
        if attempts >= max_attempts:
            item.attempts = attempts
            applied = await self.dead_letter(item, reason=DEAD_LETTER_MAX_ATTEMPTS, error=error)
            return RetryOutcome(True, attempts, applied=applied)
        delay_ms = retry_backoff_ms(item.id, attempts, self._retry_config)
        assert_transition(item.state, "retry_scheduled")
        item.state = "retry_scheduled"
        item.queue = "retry"
        item.attempts = attempts
        item.last_error = error
        item.claimed_at = None
        item.next_eligible_at = self._clock() + timedelta(milliseconds=delay_ms)
        if not await self._backend.transition(item, from_state="in_flight"):
            self._transition_lost(item, "in_flight")
            return RetryOutcome(False, attempts, delay_ms, applied=False)
        increment_counter("notifications_retries_scheduled_total")
        logger.info(
            "notification_retry_scheduled item_id=%s record_id=%s attempt=%s delay_ms=%s",
            item.id,
            item.record_id,
            attempts,
            delay_ms,
        )
        return RetryOutcome(False, attempts, delay_ms)

    async def defer(self, item: QueueItem, retry_after_s: float) -> bool:
        # Rate-limit deferral never consumes the retry budget.
        assert_transition(item.state, "retry_scheduled")
        item.state = "retry_scheduled"
        item.queue = "retry"
        item.awaiting_rate_limit = True
        item.claimed_at = None
        item.next_eligible_at = self._clock() + timedelta(seconds=retry_after_s)
        if not await self._backend.transition(item, from_state="in_flight"):
            self._transition_lost(item, "in_flight")
            return False
        return True

    async def dead_letter(self, item: QueueItem, *, reason: str, error: str | None = None) -> bool:
        from_state = item.state
        if from_state != "dead_letter":
            assert_transition(from_state, "dead_letter")
        item.state = "dead_letter"
        item.queue = "dead_letter"
        item.dead_letter_reason = reason
        item.last_error = error or item.last_error
        item.claimed_at = None
        if not await self._backend.transition(item, from_state=from_state):
            self._transition_lost(item, from_state)
            return False
        increment_counter("notifications_dead_lettered_total")
        increment_counter(f"notifications_dead_lettered_total.{reason}")
        logger.warning(
            "notification_dead_lettered item_id=%s record_id=%s reason=%s attempts=%s error=%s",
            item.id,
            item.record_id,
            reason,
            item.attempts,
            item.last_error,
        )
        return True

    def _transition_lost(self, item: QueueItem, from_state: str) -> None:
        # Stale recovery or a discard moved the item first; the stored copy wins.
        increment_counter("queue_transition_conflicts_total")
        logger.warning(
            "queue_transition_lost item_id=%s record_id=%s from_state=%s to_state=%s",
            item.id,
            item.record_id,
            from_state,
            item.state,
        )

    async def dead_letter_new(
        self,
        event: NotificationEvent,
        *,
        record_id: str,
        channel_plan: list[ChannelTarget],
        reason: str,
        error: str | None = None,
    ) -> QueueItem:
        # Admission-time terminal failures are still retained for review.
        now = self._clock()
        item = QueueItem(
            record_id=record_id,
            event=event,
            channel_plan=list(channel_plan),
            queue="dead_letter",
            state="dead_letter",
            next_eligible_at=now,
            dead_letter_reason=reason,
            last_error=error,
            created_at=now,
        )
        await self._backend.put(item)
        increment_counter("notifications_dead_lettered_total")
        increment_counter(f"notifications_dead_lettered_total.{reason}")
        return item

    async def requeue_stale(self, visibility_timeout_s: float) -> int:
        now = self._clock()
        recovered = await self._backend.requeue_stale(now - timedelta(seconds=visibility_timeout_s), now)
        if recovered:
            increment_counter("queue_stale_recovered_total", recovered)
            logger.warning("queue_stale_items_recovered count=%s", recovered)
        return recovered

    async def get(self, item_id: str) -> QueueItem:
        item = await self._backend.get(item_id)
        if item is None:
            raise NotFoundError(f"queue item {item_id} not found")
        return item

    async def list_dead_letters(self, limit: int = 100) -> list[QueueItem]:
        return await self._backend.list_queue("dead_letter", limit)

    async def replay(self, item_id: str, *, record_id: str) -> QueueItem:
        # Replays copy the dead letter onto its priority queue with a fresh attempt budget.
        dead = await self.get(item_id)
        if dead.state != "dead_letter":
            raise NotFoundError(f"dead letter {item_id} not found")
        return await self.enqueue(dead.event, record_id=record_id, channel_plan=dead.channel_plan)

    async def depths(self) -> dict[str, int]:
        depths = await self._backend.depths()
        for queue, depth in depths.items():
            set_gauge(f"queue_depth.{queue}", depth)
        return depths
