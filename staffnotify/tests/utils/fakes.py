from __future__ import annotations

import asyncio
from datetime import datetime, timedelta
from typing import Any, Callable, Iterable

from staffnotify.domain.events import NotificationEvent, NotificationPayload
from staffnotify.services.notifications.channels import ChannelRegistry, DeliveryResult, RealtimeBroker
from staffnotify.services.notifications.dedup import DedupCache, DeduplicationStore, InMemoryReservationBackend
from staffnotify.services.notifications.delivery import DeliveryWorker
from staffnotify.services.notifications.orchestrator import EngineConfig, NotificationOrchestrator
from staffnotify.services.notifications.queue import InMemoryQueueBackend, QueueManager, RetryConfig
from staffnotify.services.notifications.rate_limit import InMemoryCounterBackend, RateLimitConfig, RateLimiter
from staffnotify.services.notifications.records import InMemoryRecordStore
from staffnotify.services.notifications.routing import (
    ChannelRouter,
    InMemoryPreferenceProvider,
    RecipientPreferences,
    RoutingConfig,
)
from staffnotify.services.resilience import CircuitBreaker


PUSH_TOKEN = "ExponentPushToken[test-device]"


class FakeClock:
    # Manually advanced UTC clock shared by every component under test.
    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


class ScriptedAdapter:
    """Channel adapter that replays scripted results, then reports ``sent``."""

    def __init__(
        self,
        name: str,
        results: Iterable[DeliveryResult | Exception] = (),
        *,
        delay_s: float = 0.0,
    ) -> None:
        self.name = name
        self._results = list(results)
        self._delay_s = delay_s
        self.calls: list[tuple[str, NotificationPayload, dict[str, Any]]] = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def deliver(
        self,
        recipient_id: str,
        payload: NotificationPayload,
        channel_config: dict[str, Any],
    ) -> DeliveryResult:
        self.calls.append((recipient_id, payload, dict(channel_config)))
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self._delay_s:
                await asyncio.sleep(self._delay_s)
            result = self._results.pop(0) if self._results else DeliveryResult.sent()
            if isinstance(result, Exception):
                raise result
            return result
        finally:
            self.in_flight -= 1


def make_event(
    *,
    event_type: str = "job.assigned",
    entity_id: str = "job-100",
    recipient_id: str = "staff-1",
    source_id: str = "assignment-service",
    priority: str = "normal",
    title: str = "New job assigned",
    body: str = "Job 100 was assigned to you",
    data: dict[str, Any] | None = None,
) -> NotificationEvent:
    return NotificationEvent(
        event_type=event_type,
        entity_id=entity_id,
        recipient_id=recipient_id,
        source_id=source_id,
        priority=priority,
        payload=NotificationPayload(title=title, body=body, data=data or {"job_id": entity_id}),
    )


def default_preferences(recipient_id: str) -> RecipientPreferences:
    return RecipientPreferences(recipient_id, push_tokens=(PUSH_TOKEN,), webhook_url="noop://audit")


def unlimited_rate_config(**overrides: Any) -> RateLimitConfig:
    values: dict[str, Any] = {"recipient_limits": {}, "event_type_limits": {}, "global_limits": {}}
    values.update(overrides)
    return RateLimitConfig(**values)


def build_test_orchestrator(
    clock: Callable[[], datetime],
    *,
    adapters: Iterable[Any] | None = None,
    preferences: InMemoryPreferenceProvider | None = None,
    rate_limit: RateLimitConfig | None = None,
    retry: RetryConfig | None = None,
    routing: RoutingConfig | None = None,
    channel_timeout_s: float = 1.0,
    breaker_factory: Callable[[str], CircuitBreaker] | None = None,
    realtime: RealtimeBroker | None = None,
    **config_overrides: Any,
) -> NotificationOrchestrator:
    # In-memory wiring with an injected clock; mirrors bootstrap.build_orchestrator.
    config = EngineConfig(
        rate_limit=rate_limit or unlimited_rate_config(),
        retry=retry or RetryConfig(base_ms=1000, multiplier=2.0, max_ms=60000, max_attempts=3),
        routing=routing or RoutingConfig(),
        channel_timeout_s=channel_timeout_s,
        **config_overrides,
    )
    registry = ChannelRegistry(adapters if adapters is not None else [ScriptedAdapter("push")])
    return NotificationOrchestrator(
        dedup=DeduplicationStore(InMemoryReservationBackend(), cache=DedupCache(), clock=clock),
        rate_limiter=RateLimiter(InMemoryCounterBackend(), config.rate_limit, clock=clock),
        queue=QueueManager(InMemoryQueueBackend(), config.retry, clock=clock),
        router=ChannelRouter(config.routing),
        preferences=preferences or InMemoryPreferenceProvider(default_factory=default_preferences),
        records=InMemoryRecordStore(),
        worker=DeliveryWorker(registry, timeout_s=channel_timeout_s, breaker_factory=breaker_factory, clock=clock),
        config=config,
        clock=clock,
        realtime=realtime,
    )


class FakeRedis:
    """Subset of redis.asyncio used by dedup reservations and circuit breakers.

    Expiry follows the shared ``FakeClock`` so tests never sleep.
    """

    def __init__(self, clock: FakeClock) -> None:
        self._clock = clock
        self._values: dict[str, tuple[Any, datetime | None]] = {}
        self.closed = False

    def _live(self, key: str) -> bool:
        item = self._values.get(key)
        if item is None:
            return False
        _value, expiry = item
        if expiry is not None and self._clock() >= expiry:
            self._values.pop(key, None)
            return False
        return True

    async def set(self, key: str, value: str, nx: bool = False, px: int | None = None):  # noqa: ANN001
        if nx and self._live(key):
            return None
        expiry = self._clock() + timedelta(milliseconds=px) if px is not None else None
        self._values[key] = (str(value), expiry)
        return True

    async def get(self, key: str):  # noqa: ANN001
        return self._values[key][0] if self._live(key) else None

    async def pttl(self, key: str) -> int:
        if not self._live(key):
            return -2
        expiry = self._values[key][1]
        if expiry is None:
            return -1
        return int((expiry - self._clock()).total_seconds() * 1000)

    async def delete(self, key: str) -> int:
        return 1 if self._values.pop(key, None) is not None else 0

    async def hgetall(self, key: str) -> dict[str, str]:
        return dict(self._values[key][0]) if self._live(key) else {}

    async def hset(self, key: str, mapping: dict[str, str]) -> int:
        current = dict(self._values[key][0]) if self._live(key) else {}
        expiry = self._values[key][1] if key in self._values else None
        current.update(mapping)
        self._values[key] = (current, expiry)
        return len(mapping)

    async def expire(self, key: str, seconds: int) -> bool:
        if not self._live(key):
            return False
        self._values[key] = (self._values[key][0], self._clock() + timedelta(seconds=seconds))
        return True

    async def aclose(self) -> None:
        self.closed = True
