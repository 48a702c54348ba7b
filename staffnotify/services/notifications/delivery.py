from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timezone
import logging
import time
from typing import Callable

from staffnotify.core.errors import DeliveryError, IntegrationUnavailableError
from staffnotify.services.notifications.channels import (
    STATUS_PERMANENT,
    STATUS_SENT,
    STATUS_TRANSIENT,
    STATUS_UNAVAILABLE,
    ChannelRegistry,
    DeliveryResult,
)
from staffnotify.services.notifications.queue import QueueItem
from staffnotify.services.notifications.routing import ChannelTarget
from staffnotify.services.resilience import Bulkhead, CircuitBreaker
from staffnotify.services.telemetry import increment_counter, record_delivery


logger = logging.getLogger(__name__)

OUTCOME_SENT = "sent"
OUTCOME_TRANSIENT = "transient_failure"
OUTCOME_PERMANENT = "permanent_failure"
OUTCOME_CHANNELS_EXHAUSTED = "channels_exhausted"

OutcomeChannel = asyncio.Queue


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class ChannelAttempt:
    channel: str
    status: str
    started_at: datetime
    detail: str | None = None
    latency_ms: float | None = None


@dataclass(frozen=True)
class DeliveryOutcome:
    # Message from a worker to the orchestrator; the worker never writes records itself.
    item: QueueItem
    status: str
    attempt_no: int
    channel: str | None = None
    detail: str | None = None
    channel_attempts: tuple[ChannelAttempt, ...] = ()


class DeliveryWorker:
    """Walks one item's channel plan and reports a single outcome.

    ``unavailable`` moves on to the next channel inside the same attempt; the first
    ``sent``, ``transient_failure`` or ``permanent_failure`` ends the attempt.
    """

    def __init__(
        self,
        registry: ChannelRegistry,
        *,
        timeout_s: float = 5.0,
        breaker_factory: Callable[[str], CircuitBreaker] | None = None,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._registry = registry
        self._timeout_s = max(0.01, timeout_s)
        self._breaker_factory = breaker_factory
        self._breakers: dict[str, CircuitBreaker] = {}
        self._clock = clock

    def _breaker(self, channel: str) -> CircuitBreaker | None:
        if self._breaker_factory is None:
            return None
        breaker = self._breakers.get(channel)
        if breaker is None:
            breaker = self._breaker_factory(channel)
            self._breakers[channel] = breaker
        return breaker

    async def breaker_states(self) -> dict[str, str]:
        return {name: await breaker.current_state() for name, breaker in self._breakers.items()}

    async def process(self, item: QueueItem) -> DeliveryOutcome:
        attempt_no = item.attempts + 1
        trail: list[ChannelAttempt] = []
        for target in item.channel_plan:
            started_at = self._clock()
            started = time.monotonic()
            result = await self._invoke(target, item, attempt_no)
            latency_ms = (time.monotonic() - started) * 1000.0
            trail.append(
                ChannelAttempt(
                    channel=target.channel,
                    status=result.status,
                    started_at=started_at,
                    detail=result.detail,
                    latency_ms=latency_ms,
                )
            )
            record_delivery(channel=target.channel, latency_ms=latency_ms, outcome=result.status)
            increment_counter(f"channel_results_total.{target.channel}.{result.status}")
            if result.status == STATUS_UNAVAILABLE:
                logger.info(
                    "channel_fallback record_id=%s channel=%s detail=%s",
                    item.record_id,
                    target.channel,
                    result.detail,
                )
                continue
            if result.status == STATUS_SENT:
                return DeliveryOutcome(item, OUTCOME_SENT, attempt_no, target.channel, result.detail, tuple(trail))
            if result.status == STATUS_PERMANENT:
                return DeliveryOutcome(
                    item, OUTCOME_PERMANENT, attempt_no, target.channel, result.detail, tuple(trail)
                )
            return DeliveryOutcome(item, OUTCOME_TRANSIENT, attempt_no, target.channel, result.detail, tuple(trail))
        detail = "empty_channel_plan" if not item.channel_plan else "all_channels_unavailable"
        return DeliveryOutcome(item, OUTCOME_CHANNELS_EXHAUSTED, attempt_no, None, detail, tuple(trail))

    async def _invoke(self, target: ChannelTarget, item: QueueItem, attempt_no: int) -> DeliveryResult:
        adapter = self._registry.get(target.channel)
        if adapter is None:
            return DeliveryResult.unavailable("no_adapter")
        breaker = self._breaker(target.channel)
        if breaker is not None:
            try:
                await breaker.before_call()
            except IntegrationUnavailableError:
                return DeliveryResult.unavailable("circuit_open")
        event = item.event
        channel_config = {
            **target.config,
            "notification_id": item.record_id,
            "attempt": attempt_no,
            "event_type": event.event_type,
            "priority": event.priority,
            "entity_id": event.entity_id,
        }
        try:
            result = await asyncio.wait_for(
                adapter.deliver(event.recipient_id, event.payload, channel_config),
                timeout=self._timeout_s,
            )
        except asyncio.TimeoutError:
            result = DeliveryResult.transient("timeout")
        except DeliveryError as exc:
            result = DeliveryResult.from_exception(exc)
        except Exception as exc:  # noqa: BLE001 - adapter defects must not take the worker down
            logger.exception("channel_adapter_error record_id=%s channel=%s", item.record_id, target.channel)
            result = DeliveryResult.transient(f"adapter_error: {type(exc).__name__}")
        if breaker is not None:
            if result.status == STATUS_TRANSIENT:
                await breaker.record_failure()
            elif result.status == STATUS_SENT:
                await breaker.record_success()
        return result


class WorkerPool:
    """Bounded set of concurrent deliveries for one queue."""

    def __init__(self, name: str, worker: DeliveryWorker, *, size: int) -> None:
        self._name = name
        self._worker = worker
        self._bulkhead = Bulkhead(f"delivery.{name}", size)
        self._tasks: set[asyncio.Task[None]] = set()

    @property
    def name(self) -> str:
        return self._name

    @property
    def size(self) -> int:
        return self._bulkhead.limit

    @property
    def available(self) -> int:
        # Dispatched tasks count against capacity even before they hold a lease.
        return max(0, self._bulkhead.limit - len(self._pending()))

    def _pending(self) -> list[asyncio.Task[None]]:
        return [task for task in self._tasks if not task.done()]

    async def _process(self, item: QueueItem) -> DeliveryOutcome:
        lease = await self._bulkhead.wait()
        try:
            return await self._worker.process(item)
        finally:
            lease.release()

    def dispatch(self, items: list[QueueItem], results: OutcomeChannel) -> None:
        # Fire-and-report: outcomes arrive on the result channel as they complete.
        for item in items:
            task = asyncio.create_task(self._publish(item, results))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

    async def _publish(self, item: QueueItem, results: OutcomeChannel) -> None:
        try:
            outcome = await self._process(item)
        except Exception:  # noqa: BLE001 - the item stays in_flight until stale recovery requeues it
            logger.exception("delivery_worker_failed queue=%s item_id=%s", self._name, item.id)
            return
        await results.put(outcome)

    async def drain(self) -> None:
        pending = self._pending()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
