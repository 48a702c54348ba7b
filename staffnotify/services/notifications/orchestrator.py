from __future__ import annotations

import asyncio
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
import json
import logging
from typing import Any, Awaitable, Callable
from uuid import uuid4

from staffnotify.core.config import Settings
from staffnotify.core.errors import DedupStoreUnavailableError, NotFoundError, ValidationError
from staffnotify.domain.events import NotificationEvent, validate_event
from staffnotify.domain.state import DRAINABLE_QUEUES
from staffnotify.services.notifications.channels import RealtimeBroker
from staffnotify.services.notifications.dedup import DeduplicationStore
from staffnotify.services.notifications.delivery import (
    OUTCOME_PERMANENT,
    OUTCOME_SENT,
    OUTCOME_TRANSIENT,
    DeliveryOutcome,
    DeliveryWorker,
    WorkerPool,
)
from staffnotify.services.notifications.hashing import content_hash, fingerprint
from staffnotify.services.notifications.queue import (
    DEAD_LETTER_CHANNELS_EXHAUSTED,
    DEAD_LETTER_PERMANENT,
    DEAD_LETTER_RATE_LIMITED,
    QueueItem,
    QueueManager,
    RetryConfig,
)
from staffnotify.services.notifications.rate_limit import RateLimitConfig, RateLimitDecision, RateLimiter
from staffnotify.services.notifications.records import AttemptEntry, RecordSnapshot, RecordStore
from staffnotify.services.notifications.routing import (
    ChannelRouter,
    ChannelTarget,
    PreferenceProvider,
    RoutingConfig,
)
from staffnotify.services.telemetry import counters_snapshot, increment_counter


logger = logging.getLogger(__name__)

SUBMIT_QUEUED = "queued"
SUBMIT_DEFERRED = "deferred"
SUBMIT_DUPLICATE = "duplicate"
SUBMIT_DROPPED = "dropped"
SUBMIT_REJECTED = "rejected"
SUBMIT_UNAVAILABLE = "unavailable"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class EngineConfig:
    dedup_default_window_s: float = 30.0
    dedup_windows: dict[str, float] = field(default_factory=dict)
    content_window_s: float = 10.0
    rate_limit: RateLimitConfig = field(default_factory=RateLimitConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    routing: RoutingConfig = field(default_factory=RoutingConfig)
    channel_timeout_s: float = 5.0
    immediate_workers: int = 8
    batch_workers: int = 2
    retry_workers: int = 2
    immediate_poll_s: float = 0.1
    batch_interval_s: float = 5.0
    batch_size: int = 50
    retry_poll_s: float = 1.0
    visibility_timeout_s: float = 60.0
    sweep_interval_s: float = 300.0
    sweep_batch_size: int = 100
    record_retention_s: float = 86400.0

    @classmethod
    def from_settings(cls, settings: Settings) -> "EngineConfig":
        windows = json.loads(settings.notify_dedup_windows_json or "{}")
        return cls(
            dedup_default_window_s=float(settings.notify_dedup_default_window_s),
            dedup_windows={str(k): float(v) for k, v in windows.items()},
            content_window_s=float(settings.notify_content_window_s),
            rate_limit=RateLimitConfig.from_settings(settings),
            retry=RetryConfig.from_settings(settings),
            routing=RoutingConfig.from_settings(settings),
            channel_timeout_s=settings.notify_channel_timeout_ms / 1000.0,
            immediate_workers=settings.notify_immediate_workers,
            batch_workers=settings.notify_batch_workers,
            retry_workers=settings.notify_retry_workers,
            immediate_poll_s=settings.notify_immediate_poll_ms / 1000.0,
            batch_interval_s=settings.notify_batch_interval_s,
            batch_size=settings.notify_batch_size,
            retry_poll_s=settings.notify_retry_poll_s,
            visibility_timeout_s=float(settings.notify_visibility_timeout_s),
            sweep_interval_s=float(settings.notify_sweep_interval_s),
            sweep_batch_size=settings.notify_sweep_batch_size,
            record_retention_s=float(settings.notify_record_retention_s),
        )

    def dedup_window_for(self, event_type: str) -> float:
        return float(self.dedup_windows.get(event_type, self.dedup_default_window_s))


@dataclass(frozen=True)
class SubmitResult:
    success: bool
    record_id: str | None
    duplicates_blocked: int = 0
    errors: list[str] = field(default_factory=list)
    status: str = SUBMIT_QUEUED
    queue: str | None = None
    duplicate_of: str | None = None
    retry_after_s: float | None = None
    rate_limit_scope: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class NotificationOrchestrator:
    """Single admission point for every producer.

    ``submit`` answers synchronously (queued, deferred, duplicate, dropped, rejected);
    delivery happens later and is only visible through the notification record.
    """

    def __init__(
        self,
        *,
        dedup: DeduplicationStore,
        rate_limiter: RateLimiter,
        queue: QueueManager,
        router: ChannelRouter,
        preferences: PreferenceProvider,
        records: RecordStore,
        worker: DeliveryWorker,
        config: EngineConfig | None = None,
        clock: Callable[[], datetime] = _utc_now,
        id_factory: Callable[[], str] = lambda: uuid4().hex,
        on_close: Callable[[], Awaitable[None]] | None = None,
        realtime: RealtimeBroker | None = None,
    ) -> None:
        self._dedup = dedup
        self._rate_limiter = rate_limiter
        self._queue = queue
        self._router = router
        self._preferences = preferences
        self._records = records
        self._worker = worker
        self._config = config or EngineConfig()
        self._clock = clock
        self._id_factory = id_factory
        self._on_close = on_close
        self._realtime = realtime
        self._pools = {
            "immediate": WorkerPool("immediate", worker, size=self._config.immediate_workers),
            "batch": WorkerPool("batch", worker, size=self._config.batch_workers),
            "retry": WorkerPool("retry", worker, size=self._config.retry_workers),
        }
        self._outcomes: asyncio.Queue[DeliveryOutcome] = asyncio.Queue()
        self._tasks: list[asyncio.Task[None]] = []
        self._running = False

    @property
    def config(self) -> EngineConfig:
        return self._config

    @property
    def queue(self) -> QueueManager:
        return self._queue

    @property
    def dedup(self) -> DeduplicationStore:
        return self._dedup

    @property
    def rate_limiter(self) -> RateLimiter:
        return self._rate_limiter

    @property
    def realtime(self) -> RealtimeBroker | None:
        # Broker behind the realtime channel; None when the engine was wired without one.
        return self._realtime

    @property
    def running(self) -> bool:
        return self._running

    def reload_config(self, config: EngineConfig) -> None:
        # Worker pool sizes stay fixed until restart; queued items keep their channel plans.
        self._config = config
        self._rate_limiter.update_config(config.rate_limit)
        self._queue.update_retry_config(config.retry)
        self._router.update_config(config.routing)
        logger.info("notification_config_reloaded")

    def _snapshot(
        self,
        *,
        record_id: str,
        event: NotificationEvent,
        fp: str,
        ch: str,
        status: str,
        now: datetime,
        duplicate_of: str | None = None,
        last_error: str | None = None,
    ) -> RecordSnapshot:
        return RecordSnapshot(
            id=record_id,
            fingerprint=fp,
            content_hash=ch,
            recipient_id=event.recipient_id,
            event_type=event.event_type,
            entity_id=event.entity_id,
            source_id=event.source_id,
            priority=event.priority,
            status=status,
            payload=event.payload.to_dict(),
            duplicate_of=duplicate_of,
            last_error=last_error,
            created_at=now,
            updated_at=now,
        )

    async def submit(self, event: NotificationEvent) -> SubmitResult:
        errors = validate_event(event)
        if errors:
            increment_counter("notifications_rejected_total")
            logger.info("notification_rejected errors=%s", "; ".join(errors))
            return SubmitResult(False, None, errors=errors, status=SUBMIT_REJECTED)

        try:
            fp = fingerprint(event)
            ch = content_hash(event.payload)
        except ValidationError as exc:
            increment_counter("notifications_rejected_total")
            logger.info("notification_rejected errors=%s", "; ".join(exc.errors))
            return SubmitResult(False, None, errors=exc.errors, status=SUBMIT_REJECTED)

        increment_counter("notifications_submitted_total")
        record_id = self._id_factory()
        try:
            decision = await self._dedup.check_and_reserve(
                fp,
                ch,
                self._config.dedup_window_for(event.event_type),
                record_id=record_id,
                recipient_id=event.recipient_id,
                entity_id=event.entity_id,
                content_window_s=self._config.content_window_s,
            )
        except DedupStoreUnavailableError as exc:
            return SubmitResult(False, None, errors=[str(exc)], status=SUBMIT_UNAVAILABLE)

        now = self._clock()
        if decision.is_duplicate:
            await self._records.create(
                self._snapshot(
                    record_id=record_id,
                    event=event,
                    fp=fp,
                    ch=ch,
                    status="duplicate",
                    now=now,
                    duplicate_of=decision.record_id,
                )
            )
            logger.info(
                "notification_duplicate record_id=%s duplicate_of=%s reason=%s event_type=%s recipient_id=%s",
                record_id,
                decision.record_id,
                decision.reason,
                event.event_type,
                event.recipient_id,
            )
            return SubmitResult(
                True,
                record_id,
                duplicates_blocked=1,
                status=SUBMIT_DUPLICATE,
                duplicate_of=decision.record_id,
            )

        preferences = await self._preferences.get_preferences(event.recipient_id)
        plan = self._router.resolve_channels(event, preferences)
        limit = await self._rate_limiter.try_consume(event.recipient_id, event.event_type, event.priority)
        await self._records.create(
            self._snapshot(record_id=record_id, event=event, fp=fp, ch=ch, status="pending", now=now)
        )

        if limit.allowed:
            item = await self._queue.enqueue(event, record_id=record_id, channel_plan=plan)
            logger.info(
                "notification_queued record_id=%s queue=%s event_type=%s recipient_id=%s channels=%s",
                record_id,
                item.queue,
                event.event_type,
                event.recipient_id,
                ",".join(target.channel for target in plan),
            )
            return SubmitResult(True, record_id, status=SUBMIT_QUEUED, queue=item.queue)

        if self._rate_limiter.is_droppable(event.priority, limit):
            await self._drop_rate_limited(event, record_id=record_id, fp=fp, ch=ch, plan=plan, limit=limit)
            return SubmitResult(
                False,
                record_id,
                errors=[_rate_limit_error(limit)],
                status=SUBMIT_DROPPED,
                retry_after_s=limit.retry_after_s,
                rate_limit_scope=limit.scope,
            )

        await self._queue.enqueue_deferred(
            event,
            record_id=record_id,
            channel_plan=plan,
            retry_after_s=limit.retry_after_s or 1.0,
        )
        return SubmitResult(
            True,
            record_id,
            status=SUBMIT_DEFERRED,
            queue="retry",
            retry_after_s=limit.retry_after_s,
            rate_limit_scope=limit.scope,
        )

    async def _drop_rate_limited(
        self,
        event: NotificationEvent,
        *,
        record_id: str,
        fp: str,
        ch: str,
        plan: list[ChannelTarget],
        limit: RateLimitDecision,
    ) -> None:
        error = _rate_limit_error(limit)
        await self._queue.dead_letter_new(
            event,
            record_id=record_id,
            channel_plan=plan,
            reason=DEAD_LETTER_RATE_LIMITED,
            error=error,
        )
        await self._records.update_if_open(record_id, now=self._clock(), status="dead_letter", last_error=error)
        await self._release_dropped(event, record_id=record_id, fp=fp, ch=ch)

    async def _release_dropped(self, event: NotificationEvent, *, record_id: str, fp: str, ch: str) -> None:
        # A dropped event was never delivered, so producers may raise it again.
        await self._dedup.release(fp, record_id)
        await self._dedup.release_content(event.recipient_id, event.entity_id, ch, record_id)

    async def apply_outcome(self, outcome: DeliveryOutcome) -> bool:
        """Record one worker outcome; outcomes for terminal records are ignored."""
        item = outcome.item
        now = self._clock()
        record = await self._records.get(item.record_id)
        if record is None or record.is_terminal:
            logger.info(
                "notification_outcome_ignored record_id=%s item_id=%s outcome=%s record_status=%s",
                item.record_id,
                item.id,
                outcome.status,
                record.status if record else None,
            )
            await self._queue.discard(item)
            return False

        await self._records.add_attempts(
            [
                AttemptEntry(
                    record_id=item.record_id,
                    queue_item_id=item.id,
                    attempt_no=outcome.attempt_no,
                    channel=attempt.channel,
                    outcome=attempt.status,
                    detail=attempt.detail,
                    latency_ms=attempt.latency_ms,
                    created_at=attempt.started_at,
                )
                for attempt in outcome.channel_attempts
            ]
        )

        if outcome.status == OUTCOME_SENT:
            await self._queue.complete(item)
            updated = await self._records.update_if_open(
                item.record_id,
                now=now,
                status="sent",
                channel=outcome.channel,
                delivery_attempts=outcome.attempt_no,
                last_error=None,
                sent_at=now,
            )
            increment_counter("notifications_sent_total")
            increment_counter(f"notifications_sent_total.{outcome.channel}")
            logger.info(
                "notification_sent record_id=%s channel=%s attempt=%s",
                item.record_id,
                outcome.channel,
                outcome.attempt_no,
            )
            return updated

        error = f"{outcome.channel or 'none'}: {outcome.detail}" if outcome.detail else outcome.status
        if outcome.status == OUTCOME_TRANSIENT:
            retry = await self._queue.fail_transient(item, error)
            if not retry.applied:
                return False
            return await self._records.update_if_open(
                item.record_id,
                now=now,
                status="dead_letter" if retry.dead_lettered else "failed",
                delivery_attempts=retry.attempts,
                last_error=error,
            )

        reason = DEAD_LETTER_PERMANENT if outcome.status == OUTCOME_PERMANENT else DEAD_LETTER_CHANNELS_EXHAUSTED
        item.attempts = outcome.attempt_no
        if not await self._queue.dead_letter(item, reason=reason, error=error):
            return False
        return await self._records.update_if_open(
            item.record_id,
            now=now,
            status="dead_letter",
            delivery_attempts=outcome.attempt_no,
            last_error=error,
        )

    async def _admit_deferred(self, items: list[QueueItem]) -> list[QueueItem]:
        # Rate-limited admissions get their counters checked again before any delivery.
        ready: list[QueueItem] = []
        for item in items:
            if not item.awaiting_rate_limit:
                ready.append(item)
                continue
            event = item.event
            limit = await self._rate_limiter.try_consume(event.recipient_id, event.event_type, event.priority)
            if limit.allowed:
                item.awaiting_rate_limit = False
                ready.append(item)
                continue
            if self._rate_limiter.is_droppable(event.priority, limit):
                error = _rate_limit_error(limit)
                if not await self._queue.dead_letter(item, reason=DEAD_LETTER_RATE_LIMITED, error=error):
                    continue
                await self._records.update_if_open(
                    item.record_id, now=self._clock(), status="dead_letter", last_error=error
                )
                record = await self._records.get(item.record_id)
                await self._release_dropped(
                    event,
                    record_id=item.record_id,
                    fp=record.fingerprint if record else fingerprint(event),
                    ch=record.content_hash if record else content_hash(event.payload),
                )
                continue
            await self._queue.defer(item, limit.retry_after_s or 1.0)
        return ready

    async def _claim(self, queue_name: str, limit: int) -> list[QueueItem]:
        items = await self._queue.claim(queue_name, limit)
        if queue_name == "retry" and items:
            items = await self._admit_deferred(items)
        return items

    async def process_outcomes(self) -> int:
        # Apply everything already reported on the result channel.
        applied = 0
        while True:
            try:
                outcome = self._outcomes.get_nowait()
            except asyncio.QueueEmpty:
                return applied
            try:
                await self.apply_outcome(outcome)
            finally:
                self._outcomes.task_done()
            applied += 1

    async def drain_once(self, queue_name: str, *, limit: int | None = None) -> int:
        """Claim eligible items from one queue, deliver them and apply the outcomes."""
        pool = self._pools[queue_name]
        if limit is None:
            limit = self._config.batch_size if queue_name == "batch" else pool.size
        items = await self._claim(queue_name, limit)
        pool.dispatch(items, self._outcomes)
        await pool.drain()
        await self.process_outcomes()
        return len(items)

    async def run_until_idle(self, *, max_rounds: int = 100) -> int:
        # Drains every queue until nothing eligible is left at the current clock.
        processed = 0
        for _ in range(max_rounds):
            round_total = 0
            for queue_name in DRAINABLE_QUEUES:
                round_total += await self.drain_once(queue_name)
            processed += round_total
            if round_total == 0:
                break
        return processed

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._tasks = [
            asyncio.create_task(self._outcome_loop(), name="notify-outcomes"),
            asyncio.create_task(
                self._drain_loop("immediate", lambda: self._config.immediate_poll_s, wake_on_signal=True),
                name="notify-immediate",
            ),
            asyncio.create_task(
                self._drain_loop("batch", lambda: self._config.batch_interval_s), name="notify-batch"
            ),
            asyncio.create_task(
                self._drain_loop("retry", lambda: self._config.retry_poll_s), name="notify-retry"
            ),
            asyncio.create_task(self._maintenance_loop(), name="notify-maintenance"),
        ]
        logger.info("notification_engine_started")

    async def stop(self) -> None:
        if not self._running:
            return
        self._running = False
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        for pool in self._pools.values():
            await pool.drain()
        await self.process_outcomes()
        logger.info("notification_engine_stopped")

    async def aclose(self) -> None:
        await self.stop()
        if self._on_close is not None:
            await self._on_close()

    async def _wait(self, queue_name: str, timeout_s: float, wake_on_signal: bool) -> None:
        if not wake_on_signal:
            await asyncio.sleep(timeout_s)
            return
        try:
            await asyncio.wait_for(self._queue.signal(queue_name).wait(), timeout=timeout_s)
        except asyncio.TimeoutError:
            pass

    async def _drain_loop(
        self,
        queue_name: str,
        interval_s: Callable[[], float],
        *,
        wake_on_signal: bool = False,
    ) -> None:
        pool = self._pools[queue_name]
        while self._running:
            try:
                capacity = pool.available
                if queue_name == "batch":
                    capacity = min(capacity * self._config.batch_size, self._config.batch_size)
                if capacity > 0:
                    items = await self._claim(queue_name, capacity)
                    if items:
                        pool.dispatch(items, self._outcomes)
                        if queue_name == "immediate":
                            continue
                await self._wait(queue_name, max(0.01, interval_s()), wake_on_signal)
            except asyncio.CancelledError:
                raise
            except Exception:  # noqa: BLE001 - keep the drain loop alive
                logger.exception("notification_drain_failed queue=%s", queue_name)
                await asyncio.sleep(max(0.1, interval_s()))

    async def _outcome_loop(self) -> None:
        while True:
            outcome = await self._outcomes.get()
            try:
                await self.apply_outcome(outcome)
            except asyncio.CancelledError:
                raise
            except Exception:  # noqa: BLE001 - item stays in_flight and is recovered as stale
                logger.exception("notification_outcome_failed item_id=%s", outcome.item.id)
            finally:
                self._outcomes.task_done()

    async def _maintenance_loop(self) -> None:
        while True:
            await asyncio.sleep(max(1.0, self._config.sweep_interval_s))
            await self.run_maintenance()

    async def run_maintenance(self) -> dict[str, int | None]:
        """Stale recovery, dedup sweep and record pruning; each step fails independently."""
        result: dict[str, int | None] = {"stale_requeued": None, "reservations_swept": None, "records_pruned": None}
        try:
            result["stale_requeued"] = await self._queue.requeue_stale(self._config.visibility_timeout_s)
        except Exception:  # noqa: BLE001 - maintenance must never stop admission
            logger.exception("queue_stale_recovery_failed")
        try:
            result["reservations_swept"] = await self._dedup.sweep(self._config.sweep_batch_size)
        except Exception:  # noqa: BLE001 - store grows until the next sweep; correctness is unaffected
            increment_counter("dedup_sweep_failures_total")
            logger.exception("dedup_sweep_failed")
        try:
            cutoff = self._clock() - timedelta(seconds=self._config.record_retention_s)
            result["records_pruned"] = await self._records.prune(
                older_than=cutoff, limit=self._config.sweep_batch_size
            )
        except Exception:  # noqa: BLE001 - pruning is retried on the next cycle
            logger.exception("notification_record_prune_failed")
        return result

    async def get_record(self, record_id: str) -> RecordSnapshot:
        record = await self._records.get(record_id)
        if record is None:
            raise NotFoundError(f"notification record {record_id} not found")
        return record

    async def list_records(
        self,
        *,
        status: str | None = None,
        recipient_id: str | None = None,
        limit: int = 100,
    ) -> list[RecordSnapshot]:
        return await self._records.list_records(status=status, recipient_id=recipient_id, limit=limit)

    async def list_attempts(self, record_id: str) -> list[AttemptEntry]:
        await self.get_record(record_id)
        return await self._records.list_attempts(record_id)

    async def list_dead_letters(self, limit: int = 100) -> list[QueueItem]:
        return await self._queue.list_dead_letters(limit)

    async def replay_dead_letter(self, item_id: str) -> SubmitResult:
        # Operator replay bypasses dedup and rate limits and starts a fresh record.
        dead = await self._queue.get(item_id)
        if dead.state != "dead_letter":
            raise NotFoundError(f"dead letter {item_id} not found")
        original = await self._records.get(dead.record_id)
        record_id = self._id_factory()
        now = self._clock()
        await self._records.create(
            self._snapshot(
                record_id=record_id,
                event=dead.event,
                fp=original.fingerprint if original else fingerprint(dead.event),
                ch=original.content_hash if original else content_hash(dead.event.payload),
                status="pending",
                now=now,
                last_error=f"replay_of={dead.record_id}",
            )
        )
        item = await self._queue.replay(item_id, record_id=record_id)
        increment_counter("notifications_replayed_total")
        logger.info(
            "notification_dead_letter_replayed item_id=%s record_id=%s replay_record_id=%s",
            item_id,
            dead.record_id,
            record_id,
        )
        return SubmitResult(True, record_id, status=SUBMIT_QUEUED, queue=item.queue)

    async def rate_limit_status(self, recipient_id: str) -> dict[str, object]:
        return await self._rate_limiter.status(recipient_id)

    async def reset_rate_limit(self, recipient_id: str) -> int:
        return await self._rate_limiter.reset(recipient_id)

    async def stats(self) -> dict[str, Any]:
        return {
            "records": await self._records.count_by_status(),
            "queues": await self._queue.depths(),
            "dedup": await self._dedup.stats(),
            "rate_limit": await self._rate_limiter.global_stats(),
            "workers": {
                name: {"size": pool.size, "available": pool.available} for name, pool in self._pools.items()
            },
            "circuit_breakers": await self._worker.breaker_states(),
            "counters": counters_snapshot(),
        }


def _rate_limit_error(limit: RateLimitDecision) -> str:
    return f"rate_limited scope={limit.scope} window={limit.window} retry_after_s={limit.retry_after_s}"
