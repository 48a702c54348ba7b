from __future__ import annotations

import asyncio
import hashlib
import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable

from redis.asyncio import Redis

from staffnotify.core.config import Settings
from staffnotify.core.errors import IntegrationUnavailableError
from staffnotify.services.telemetry import increment_counter, set_gauge


logger = logging.getLogger(__name__)


def deterministic_fraction(key: str) -> float:
    # Stable value in [0, 1) derived from the key; replaces random jitter so tests stay deterministic.
    digest = hashlib.sha256(key.encode("utf-8")).hexdigest()
    return int(digest[:8], 16) / float(0x100000000)


@dataclass(frozen=True)
class CircuitBreakerConfig:
    failure_threshold: int
    open_seconds: int
    half_open_trials: int
    redis_prefix: str = "staffnotify:cb"

    @classmethod
    def from_settings(cls, settings: Settings) -> "CircuitBreakerConfig":
        return cls(
            failure_threshold=settings.cb_failure_threshold,
            open_seconds=settings.cb_open_seconds,
            half_open_trials=settings.cb_half_open_trials,
            redis_prefix=settings.cb_redis_prefix,
        )


@dataclass
class CircuitBreakerState:
    # Track failures and transitions across instances via Redis.
    state: str
    failures: int
    opened_at: float | None
    half_open_trials: int


class CircuitBreaker:
    def __init__(
        self,
        name: str,
        *,
        config: CircuitBreakerConfig,
        redis: Redis | None = None,
        time_source: Callable[[], float] | None = None,
        on_transition: Callable[[str, str], Awaitable[None]] | None = None,
    ) -> None:
        self._name = name
        self._redis = redis
        self._config = config
        self._time = time_source or time.monotonic
        self._on_transition = on_transition
        self._local_state = CircuitBreakerState("closed", 0, None, 0)

    @property
    def name(self) -> str:
        return self._name

    def _key(self) -> str:
        return f"{self._config.redis_prefix}:{self._name}"

    async def _load(self) -> CircuitBreakerState:
        # Read breaker state from Redis when available; otherwise fall back to local.
        if self._redis is None:
            return self._local_state
        raw = await self._redis.hgetall(self._key())
        if not raw:
            return self._local_state
        return CircuitBreakerState(
            raw.get("state", "closed"),
            int(raw.get("failures", 0)),
            float(raw["opened_at"]) if raw.get("opened_at") else None,
            int(raw.get("half_open_trials", 0)),
        )

    async def _save(self, state: CircuitBreakerState) -> None:
        if self._redis is None:
            self._local_state = state
            return
        payload = {
            "state": state.state,
            "failures": str(state.failures),
            "opened_at": str(state.opened_at or ""),
            "half_open_trials": str(state.half_open_trials),
        }
        await self._redis.hset(self._key(), mapping=payload)
        await self._redis.expire(self._key(), max(self._config.open_seconds * 4, 60))

    async def _transition(self, state: CircuitBreakerState, target: str) -> CircuitBreakerState:
        if state.state != target:
            logger.warning("circuit_breaker_transition name=%s from=%s to=%s", self._name, state.state, target)
            increment_counter(f"circuit_breaker_transition_total.{self._name}.{target}")
            state_value = {"closed": 0.0, "half_open": 0.5, "open": 1.0}.get(target, 0.0)
            set_gauge(f"circuit_breaker_state.{self._name}", state_value)
            if self._on_transition is not None:
                await self._on_transition(self._name, target)
        return CircuitBreakerState(target, 0, self._time() if target == "open" else None, 0)

    async def current_state(self) -> str:
        return (await self._load()).state

    async def before_call(self) -> CircuitBreakerState:
        # Raise while open; half-open admits a bounded number of trial calls.
        state = await self._load()
        now = self._time()
        if state.state == "open":
            if state.opened_at is not None and (now - state.opened_at) >= self._config.open_seconds:
                state = await self._transition(state, "half_open")
                await self._save(state)
            else:
                raise IntegrationUnavailableError(f"{self._name} is temporarily unavailable")
        if state.state == "half_open":
            if state.half_open_trials >= self._config.half_open_trials:
                raise IntegrationUnavailableError(f"{self._name} is temporarily unavailable")
            state.half_open_trials += 1
            await self._save(state)
        return state

    async def record_success(self) -> None:
        state = await self._load()
        if state.state != "closed":
            state = await self._transition(state, "closed")
        else:
            state.failures = 0
            state.half_open_trials = 0
        await self._save(state)

    async def record_failure(self) -> None:
        state = await self._load()
        if state.state == "half_open":
            state = await self._transition(state, "open")
            await self._save(state)
            return
        failures = state.failures + 1
        if failures >= self._config.failure_threshold:
            state = await self._transition(state, "open")
        else:
            state.failures = failures
        await self._save(state)


@dataclass
class BulkheadLease:
    # Track bulkhead ownership to avoid double-releasing.
    semaphore: asyncio.Semaphore
    released: bool = False
    on_release: Callable[[], None] | None = None

    def release(self) -> None:
        if self.released:
            return
        self.semaphore.release()
        self.released = True
        if self.on_release is not None:
            self.on_release()


class Bulkhead:
    def __init__(self, name: str, limit: int) -> None:
        # Cap concurrent deliveries per queue with an asyncio semaphore.
        self._name = name
        self._limit = max(1, limit)
        self._sem = asyncio.Semaphore(self._limit)
        self._in_use = 0

    @property
    def name(self) -> str:
        return self._name

    @property
    def limit(self) -> int:
        return self._limit

    @property
    def in_use(self) -> int:
        return self._in_use

    async def wait(self) -> BulkheadLease:
        # Block until a slot frees up.
        await self._sem.acquire()
        self._in_use += 1
        set_gauge(f"bulkhead_in_use.{self._name}", self._in_use)
        return BulkheadLease(self._sem, on_release=self._on_release)

    def _on_release(self) -> None:
        self._in_use = max(0, self._in_use - 1)
        set_gauge(f"bulkhead_in_use.{self._name}", self._in_use)
