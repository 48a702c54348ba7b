from __future__ import annotations

import logging
from typing import Awaitable, Callable

from redis.asyncio import Redis

from staffnotify.core.config import Settings, get_settings
from staffnotify.persistence.db import SessionFactory, get_session_factory
from staffnotify.services.notifications.channels import (
    ChannelRegistry,
    ExpoPushChannelAdapter,
    RealtimeBroker,
    RealtimeChannelAdapter,
    WebhookChannelAdapter,
)
from staffnotify.services.notifications.dedup import (
    DedupCache,
    DeduplicationStore,
    InMemoryReservationBackend,
    RedisReservationBackend,
    ReservationBackend,
    SqlReservationBackend,
)
from staffnotify.services.notifications.delivery import DeliveryWorker
from staffnotify.services.notifications.orchestrator import EngineConfig, NotificationOrchestrator
from staffnotify.services.notifications.queue import (
    InMemoryQueueBackend,
    QueueBackend,
    QueueManager,
    SqlQueueBackend,
)
from staffnotify.services.notifications.rate_limit import (
    CounterBackend,
    InMemoryCounterBackend,
    RateLimiter,
    SqlCounterBackend,
)
from staffnotify.services.notifications.records import InMemoryRecordStore, RecordStore, SqlRecordStore
from staffnotify.services.notifications.routing import (
    ChannelRouter,
    InMemoryPreferenceProvider,
    PreferenceProvider,
)
from staffnotify.services.resilience import CircuitBreaker, CircuitBreakerConfig


logger = logging.getLogger(__name__)


def _uses_database(settings: Settings) -> bool:
    return "database" in {
        settings.notify_dedup_backend.lower(),
        settings.rl_counter_backend.lower(),
        settings.notify_queue_backend.lower(),
    }


def build_channel_registry(settings: Settings, broker: RealtimeBroker | None = None) -> ChannelRegistry:
    timeout_s = settings.notify_channel_timeout_ms / 1000.0
    return ChannelRegistry(
        [
            ExpoPushChannelAdapter(
                gateway_url=settings.notify_push_gateway_url,
                access_token=settings.notify_push_access_token,
                timeout_s=timeout_s,
            ),
            RealtimeChannelAdapter(broker or RealtimeBroker()),
            WebhookChannelAdapter(secret=settings.notify_webhook_secret, timeout_s=timeout_s),
        ]
    )


def _reservation_backend(
    settings: Settings, session_factory: SessionFactory | None, redis: Redis | None
) -> ReservationBackend:
    kind = settings.notify_dedup_backend.lower()
    if kind == "redis" and redis is not None:
        return RedisReservationBackend(redis)
    if kind == "database" and session_factory is not None:
        return SqlReservationBackend(session_factory)
    return InMemoryReservationBackend()


def _counter_backend(settings: Settings, session_factory: SessionFactory | None) -> CounterBackend:
    if settings.rl_counter_backend.lower() == "database" and session_factory is not None:
        return SqlCounterBackend(session_factory)
    return InMemoryCounterBackend()


def _queue_backend(settings: Settings, session_factory: SessionFactory | None) -> QueueBackend:
    if settings.notify_queue_backend.lower() == "database" and session_factory is not None:
        return SqlQueueBackend(session_factory)
    return InMemoryQueueBackend()


def build_orchestrator(
    settings: Settings | None = None,
    *,
    session_factory: SessionFactory | None = None,
    redis: Redis | None = None,
    preferences: PreferenceProvider | None = None,
    registry: ChannelRegistry | None = None,
    broker: RealtimeBroker | None = None,
) -> NotificationOrchestrator:
    """Wire every engine component from settings.

    Backends default to the process-wide database session factory whenever any store is
    configured as ``database``; pass ``session_factory`` to point them elsewhere. A Redis
    client created here for dedup is closed with the engine; an injected one is not.
    The realtime broker is exposed as ``orchestrator.realtime`` for subscribers.
    """
    settings = settings or get_settings()
    owned_redis: Redis | None = None
    dedup_redis = redis
    if dedup_redis is None and settings.notify_dedup_backend.lower() == "redis":
        owned_redis = dedup_redis = Redis.from_url(settings.redis_url, decode_responses=True)
    if session_factory is None and _uses_database(settings):
        session_factory = get_session_factory()
    config = EngineConfig.from_settings(settings)

    dedup = DeduplicationStore(
        _reservation_backend(settings, session_factory, dedup_redis),
        cache=DedupCache(settings.notify_dedup_cache_size, settings.notify_dedup_cache_ttl_s),
        fail_mode=settings.notify_dedup_fail_mode,
    )
    rate_limiter = RateLimiter(_counter_backend(settings, session_factory), config.rate_limit)
    queue = QueueManager(_queue_backend(settings, session_factory), config.retry)
    records: RecordStore = (
        SqlRecordStore(session_factory) if session_factory is not None else InMemoryRecordStore()
    )
    broker = broker or RealtimeBroker()
    registry = registry or build_channel_registry(settings, broker)
    breaker_config = CircuitBreakerConfig.from_settings(settings)
    worker = DeliveryWorker(
        registry,
        timeout_s=config.channel_timeout_s,
        breaker_factory=lambda channel: CircuitBreaker(f"channel.{channel}", config=breaker_config, redis=redis),
    )
    logger.info(
        "notification_engine_built dedup=%s counters=%s queue=%s channels=%s",
        settings.notify_dedup_backend,
        settings.rl_counter_backend,
        settings.notify_queue_backend,
        ",".join(registry.names()),
    )
    return NotificationOrchestrator(
        dedup=dedup,
        rate_limiter=rate_limiter,
        queue=queue,
        router=ChannelRouter(config.routing),
        preferences=preferences or InMemoryPreferenceProvider(),
        records=records,
        worker=worker,
        config=config,
        on_close=_closer(registry, owned_redis),
        realtime=broker,
    )


def _closer(registry: ChannelRegistry, redis: Redis | None) -> Callable[[], Awaitable[None]]:
    async def close() -> None:
        try:
            await registry.aclose()
        finally:
            if redis is not None:
                await redis.aclose()

    return close
