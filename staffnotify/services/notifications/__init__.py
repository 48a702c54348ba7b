from staffnotify.services.notifications.bootstrap import build_channel_registry, build_orchestrator
from staffnotify.services.notifications.channels import (
    ChannelRegistry,
    DeliveryResult,
    ExpoPushChannelAdapter,
    RealtimeBroker,
    RealtimeChannelAdapter,
    WebhookChannelAdapter,
)
from staffnotify.services.notifications.dedup import (
    DedupCache,
    DedupDecision,
    DeduplicationStore,
    InMemoryReservationBackend,
    RedisReservationBackend,
    SqlReservationBackend,
)
from staffnotify.services.notifications.delivery import DeliveryOutcome, DeliveryWorker, WorkerPool
from staffnotify.services.notifications.hashing import content_hash, fingerprint
from staffnotify.services.notifications.orchestrator import EngineConfig, NotificationOrchestrator, SubmitResult
from staffnotify.services.notifications.queue import (
    InMemoryQueueBackend,
    QueueItem,
    QueueManager,
    RetryConfig,
    SqlQueueBackend,
    retry_backoff_ms,
)
from staffnotify.services.notifications.rate_limit import (
    InMemoryCounterBackend,
    RateLimitConfig,
    RateLimitDecision,
    RateLimiter,
    SqlCounterBackend,
)
from staffnotify.services.notifications.records import InMemoryRecordStore, RecordSnapshot, SqlRecordStore
from staffnotify.services.notifications.routing import (
    ChannelRouter,
    ChannelTarget,
    InMemoryPreferenceProvider,
    RecipientPreferences,
    RoutingConfig,
)

__all__ = [
    "build_orchestrator",
    "build_channel_registry",
    "NotificationOrchestrator",
    "EngineConfig",
    "SubmitResult",
    "fingerprint",
    "content_hash",
    "DeduplicationStore",
    "DedupDecision",
    "DedupCache",
    "InMemoryReservationBackend",
    "SqlReservationBackend",
    "RedisReservationBackend",
    "RateLimiter",
    "RateLimitConfig",
    "RateLimitDecision",
    "InMemoryCounterBackend",
    "SqlCounterBackend",
    "QueueManager",
    "QueueItem",
    "RetryConfig",
    "retry_backoff_ms",
    "InMemoryQueueBackend",
    "SqlQueueBackend",
    "ChannelRouter",
    "ChannelTarget",
    "RoutingConfig",
    "RecipientPreferences",
    "InMemoryPreferenceProvider",
    "ChannelRegistry",
    "DeliveryResult",
    "ExpoPushChannelAdapter",
    "WebhookChannelAdapter",
    "RealtimeBroker",
    "RealtimeChannelAdapter",
    "DeliveryWorker",
    "DeliveryOutcome",
    "WorkerPool",
    "InMemoryRecordStore",
    "SqlRecordStore",
    "RecordSnapshot",
]
