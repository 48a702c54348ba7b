from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
import json
import logging
import math
from typing import Callable, Protocol

from sqlalchemy import delete, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from staffnotify.core.config import Settings
from staffnotify.domain.models import RateLimitCounter
from staffnotify.persistence.db import SessionFactory, coerce_utc
from staffnotify.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

WINDOW_SECONDS: dict[str, int] = {
    "second": 1,
    "burst": 10,
    "minute": 60,
    "hour": 3600,
    "day": 86400,
}

SCOPE_GLOBAL = "global"
SCOPE_EVENT_TYPE = "event_type"
SCOPE_RECIPIENT = "recipient"
SCOPE_UNAVAILABLE = "unavailable"

# Closed fail mode defers with this hint instead of dropping.
_UNAVAILABLE_RETRY_AFTER_S = 1.0
_MIN_RETRY_AFTER_S = 0.001


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def recipient_key(recipient_id: str) -> str:
    return f"{SCOPE_RECIPIENT}:{recipient_id}"


def event_type_key(event_type: str) -> str:
    return f"{SCOPE_EVENT_TYPE}:{event_type}"


@dataclass(frozen=True)
class Ceiling:
    key: str
    scope: str
    window: str
    limit: int

    @property
    def window_s(self) -> int:
        return WINDOW_SECONDS[self.window]


@dataclass(frozen=True)
class RateLimitConfig:
    # window -> limit maps; a missing or zero limit disables that window.
    recipient_limits: dict[str, int] = field(
        default_factory=lambda: {"minute": 10, "hour": 100, "day": 500}
    )
    event_type_limits: dict[str, dict[str, int]] = field(default_factory=dict)
    global_limits: dict[str, int] = field(default_factory=lambda: {"second": 50})
    urgent_multiplier: float = 2.0
    drop_priorities: frozenset[str] = frozenset()
    fail_mode: str = "open"

    @classmethod
    def from_settings(cls, settings: Settings) -> "RateLimitConfig":
        event_type_limits: dict[str, dict[str, int]] = {}
        for event_type, raw in json.loads(settings.rl_event_type_limits_json or "{}").items():
            event_type_limits[event_type] = {
                "minute": int(raw.get("per_minute", 0) or 0),
                "burst": int(raw.get("burst", 0) or 0),
            }
        drop = {item.strip() for item in settings.rl_drop_priorities.split(",") if item.strip()}
        return cls(
            recipient_limits={
                "minute": settings.rl_recipient_per_minute,
                "hour": settings.rl_recipient_per_hour,
                "day": settings.rl_recipient_per_day,
            },
            event_type_limits=event_type_limits,
            global_limits={
                "second": settings.rl_global_per_second,
                "minute": settings.rl_global_per_minute,
            },
            urgent_multiplier=settings.rl_urgent_multiplier,
            drop_priorities=frozenset(drop),
            fail_mode=settings.rl_fail_mode,
        )


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    scope: str | None = None
    window: str | None = None
    retry_after_s: float | None = None
    degraded: bool = False


@dataclass(frozen=True)
class ConsumeResult:
    allowed: bool
    failed: Ceiling | None = None
    reset_at: datetime | None = None


@dataclass(frozen=True)
class CounterState:
    key: str
    window: str
    count: int
    window_reset_at: datetime


class CounterBackend(Protocol):
    # All ceilings pass and are counted together, or nothing is counted.
    async def consume(self, ceilings: list[Ceiling], now: datetime, cost: int = 1) -> ConsumeResult: ...

    async def snapshot(self, key: str) -> list[CounterState]: ...

    async def delete(self, key: str) -> int: ...


class InMemoryCounterBackend:
    def __init__(self) -> None:
        self._counters: dict[tuple[str, str], CounterState] = {}
        self._lock = asyncio.Lock()

    async def consume(self, ceilings: list[Ceiling], now: datetime, cost: int = 1) -> ConsumeResult:
        async with self._lock:
            pending: list[CounterState] = []
            for ceiling in ceilings:
                state = self._counters.get((ceiling.key, ceiling.window))
                if state is None or state.window_reset_at <= now:
                    state = CounterState(
                        ceiling.key,
                        ceiling.window,
                        0,
                        now + timedelta(seconds=ceiling.window_s),
                    )
                if state.count + cost > ceiling.limit:
                    return ConsumeResult(False, ceiling, state.window_reset_at)
                pending.append(
                    CounterState(state.key, state.window, state.count + cost, state.window_reset_at)
                )
            for state in pending:
                self._counters[(state.key, state.window)] = state
            return ConsumeResult(True)

    async def snapshot(self, key: str) -> list[CounterState]:
        return [state for (counter_key, _), state in self._counters.items() if counter_key == key]

    async def delete(self, key: str) -> int:
        async with self._lock:
            doomed = [pair for pair in self._counters if pair[0] == key]
            for pair in doomed:
                del self._counters[pair]
            return len(doomed)


class _CeilingExceeded(Exception):
    def __init__(self, ceiling: Ceiling, reset_at: datetime) -> None:
        self.ceiling = ceiling
        self.reset_at = reset_at
        super().__init__(ceiling.key)


class SqlCounterBackend:
    # Conditional UPDATEs inside one transaction; any failed ceiling rolls every increment back.
    def __init__(self, session_factory: SessionFactory) -> None:
        self._session_factory = session_factory

    async def _ensure_row(self, session: AsyncSession, ceiling: Ceiling, now: datetime) -> None:
        insert_fn = pg_insert if session.get_bind().dialect.name == "postgresql" else sqlite_insert
        stmt = insert_fn(RateLimitCounter).values(
            key=ceiling.key,
            window=ceiling.window,
            count=0,
            window_reset_at=now + timedelta(seconds=ceiling.window_s),
        )
        await session.execute(stmt.on_conflict_do_nothing(index_elements=["key", "window"]))

    async def consume(self, ceilings: list[Ceiling], now: datetime, cost: int = 1) -> ConsumeResult:
        async with self._session_factory() as session:
            try:
                async with session.begin():
                    for ceiling in ceilings:
                        await self._ensure_row(session, ceiling, now)
                        where = (
                            RateLimitCounter.key == ceiling.key,
                            RateLimitCounter.window == ceiling.window,
                        )
                        # Window boundary: reset to zero, never below.
                        await session.execute(
                            update(RateLimitCounter)
                            .where(*where, RateLimitCounter.window_reset_at <= now)
                            .values(count=0, window_reset_at=now + timedelta(seconds=ceiling.window_s))
                        )
                        bumped = await session.execute(
                            update(RateLimitCounter)
                            .where(*where, RateLimitCounter.count + cost <= ceiling.limit)
                            .values(count=RateLimitCounter.count + cost)
                        )
                        if bumped.rowcount != 1:
                            reset_at = (
                                await session.execute(select(RateLimitCounter.window_reset_at).where(*where))
                            ).scalar_one()
                            raise _CeilingExceeded(ceiling, coerce_utc(reset_at) or now)
            except _CeilingExceeded as exceeded:
                return ConsumeResult(False, exceeded.ceiling, exceeded.reset_at)
        return ConsumeResult(True)

    async def snapshot(self, key: str) -> list[CounterState]:
        async with self._session_factory() as session:
            rows = (
                await session.execute(select(RateLimitCounter).where(RateLimitCounter.key == key))
            ).scalars().all()
            return [
                CounterState(row.key, row.window, int(row.count), coerce_utc(row.window_reset_at))
                for row in rows
            ]

    async def delete(self, key: str) -> int:
        async with self._session_factory() as session:
            result = await session.execute(delete(RateLimitCounter).where(RateLimitCounter.key == key))
            await session.commit()
            return int(result.rowcount or 0)


class RateLimiter:
    def __init__(
        self,
        backend: CounterBackend,
        config: RateLimitConfig | None = None,
        *,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._backend = backend
        self._config = config or RateLimitConfig()
        self._clock = clock

    @property
    def config(self) -> RateLimitConfig:
        return self._config

    def update_config(self, config: RateLimitConfig) -> None:
        self._config = config

    def _scaled(self, limit: int, priority: str) -> int:
        if priority != "urgent":
            return limit
        return max(limit, int(math.floor(limit * self._config.urgent_multiplier)))

    def ceilings_for(self, recipient_id: str, event_type: str, priority: str) -> list[Ceiling]:
        # Check order is global, event type, recipient; the first failure names the scope.
        ceilings: list[Ceiling] = []
        for window, limit in self._config.global_limits.items():
            if limit and limit > 0:
                ceilings.append(Ceiling(SCOPE_GLOBAL, SCOPE_GLOBAL, window, int(limit)))
        for window, limit in self._config.event_type_limits.get(event_type, {}).items():
            if limit and limit > 0:
                ceilings.append(
                    Ceiling(event_type_key(event_type), SCOPE_EVENT_TYPE, window, self._scaled(int(limit), priority))
                )
        for window, limit in self._config.recipient_limits.items():
            if limit and limit > 0:
                ceilings.append(
                    Ceiling(recipient_key(recipient_id), SCOPE_RECIPIENT, window, self._scaled(int(limit), priority))
                )
        return ceilings

    async def try_consume(
        self,
        recipient_id: str,
        event_type: str,
        priority: str,
        *,
        cost: int = 1,
    ) -> RateLimitDecision:
        now = self._clock()
        ceilings = self.ceilings_for(recipient_id, event_type, priority)
        if not ceilings:
            return RateLimitDecision(True)
        try:
            result = await self._backend.consume(ceilings, now, cost)
        except Exception as exc:  # noqa: BLE001 - guard against counter store failures
            increment_counter("rate_limit_store_errors_total")
            if self._config.fail_mode.lower() == "closed":
                logger.error("rate_limit_unavailable recipient_id=%s error=%s", recipient_id, exc)
                return RateLimitDecision(
                    False,
                    scope=SCOPE_UNAVAILABLE,
                    retry_after_s=_UNAVAILABLE_RETRY_AFTER_S,
                    degraded=True,
                )
            logger.warning("rate_limit_degraded recipient_id=%s error=%s", recipient_id, exc)
            return RateLimitDecision(True, degraded=True)
        if result.allowed:
            return RateLimitDecision(True)

        failed = result.failed
        reset_at = result.reset_at or now
        retry_after_s = max((reset_at - now).total_seconds(), _MIN_RETRY_AFTER_S)
        increment_counter("notifications_rate_limited_total")
        if failed is not None:
            increment_counter(f"notifications_rate_limited_total.{failed.scope}")
        logger.info(
            "rate_limited recipient_id=%s event_type=%s priority=%s scope=%s window=%s retry_after_s=%.3f",
            recipient_id,
            event_type,
            priority,
            failed.scope if failed else None,
            failed.window if failed else None,
            retry_after_s,
        )
        return RateLimitDecision(
            False,
            scope=failed.scope if failed else None,
            window=failed.window if failed else None,
            retry_after_s=retry_after_s,
        )

    def is_droppable(self, priority: str, decision: RateLimitDecision) -> bool:
        # Global and store-outage rejections always defer.
        if decision.allowed or decision.scope in {SCOPE_GLOBAL, SCOPE_UNAVAILABLE}:
            return False
        return priority in self._config.drop_priorities

    async def _windows(self, key: str, limits: dict[str, int]) -> list[dict[str, object]]:
        now = self._clock()
        states = {state.window: state for state in await self._backend.snapshot(key)}
        windows: list[dict[str, object]] = []
        for window, limit in limits.items():
            if not limit or limit <= 0:
                continue
            state = states.get(window)
            live = state is not None and state.window_reset_at > now
            windows.append(
                {
                    "window": window,
                    "limit": int(limit),
                    "count": state.count if live and state else 0,
                    "remaining": max(0, int(limit) - (state.count if live and state else 0)),
                    "reset_at": state.window_reset_at.isoformat() if live and state else None,
                }
            )
        return windows

    async def status(self, recipient_id: str) -> dict[str, object]:
        return {
            "recipient_id": recipient_id,
            "windows": await self._windows(recipient_key(recipient_id), self._config.recipient_limits),
        }

    async def reset(self, recipient_id: str) -> int:
        removed = await self._backend.delete(recipient_key(recipient_id))
        logger.info("rate_limit_reset recipient_id=%s removed=%s", recipient_id, removed)
        return removed

    async def global_stats(self) -> dict[str, object]:
        return {
            "windows": await self._windows(SCOPE_GLOBAL, self._config.global_limits),
            "urgent_multiplier": self._config.urgent_multiplier,
            "fail_mode": self._config.fail_mode,
        }
