from __future__ import annotations

import asyncio
from collections import OrderedDict
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
import logging
from typing import Callable, Protocol
import zlib

from redis.asyncio import Redis
from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from staffnotify.core.errors import DedupStoreUnavailableError
from staffnotify.domain.models import DedupReservation
from staffnotify.persistence.db import SessionFactory, coerce_utc
from staffnotify.services.telemetry import increment_counter, set_gauge


logger = logging.getLogger(__name__)

KIND_FINGERPRINT = "fingerprint"
KIND_CONTENT = "content"

# A row deleted by the sweeper between our insert and read is retried this many times.
_RESERVE_MAX_ROUNDS = 3


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def fingerprint_key(fingerprint: str) -> str:
    return f"fp:{fingerprint}"


def content_key(recipient_id: str, entity_id: str, content_hash: str) -> str:
    # Content duplicates are scoped to one recipient and subject.
    return f"content:{recipient_id}:{entity_id}:{content_hash}"


@dataclass(frozen=True)
class ReservationResult:
    reserved: bool
    holder_id: str
    expires_at: datetime


@dataclass(frozen=True)
class DedupDecision:
    is_duplicate: bool
    record_id: str
    reason: str | None = None
    source: str | None = None
    degraded: bool = False


class ReservationBackend(Protocol):
    # Conditional-write contract: reserve succeeds for exactly one holder per live key.
    async def reserve(
        self,
        key: str,
        *,
        kind: str,
        holder_id: str,
        expires_at: datetime,
        now: datetime,
    ) -> ReservationResult: ...

    async def release(self, key: str, holder_id: str) -> bool: ...

    async def delete_expired(self, now: datetime, limit: int) -> int: ...

    async def size(self) -> int | None: ...


class InMemoryReservationBackend:
    # No native conditional write, so reservations serialize per key through sharded locks.
    def __init__(self, shards: int = 64) -> None:
        self._entries: dict[str, tuple[str, datetime, str]] = {}
        self._locks = [asyncio.Lock() for _ in range(max(1, shards))]

    def _lock_for(self, key: str) -> asyncio.Lock:
        return self._locks[zlib.crc32(key.encode("utf-8")) % len(self._locks)]

    async def reserve(
        self,
        key: str,
        *,
        kind: str,
        holder_id: str,
        expires_at: datetime,
        now: datetime,
    ) -> ReservationResult:
        async with self._lock_for(key):
            existing = self._entries.get(key)
            if existing is not None and existing[1] > now:
                return ReservationResult(False, existing[0], existing[1])
            self._entries[key] = (holder_id, expires_at, kind)
            return ReservationResult(True, holder_id, expires_at)

    async def release(self, key: str, holder_id: str) -> bool:
        async with self._lock_for(key):
            existing = self._entries.get(key)
            if existing is None or existing[0] != holder_id:
                return False
            del self._entries[key]
            return True

    async def delete_expired(self, now: datetime, limit: int) -> int:
        expired = [key for key, entry in self._entries.items() if entry[1] <= now][: max(1, limit)]
        for key in expired:
            async with self._lock_for(key):
                entry = self._entries.get(key)
                if entry is not None and entry[1] <= now:
                    del self._entries[key]
        return len(expired)

    async def size(self) -> int:
        return len(self._entries)


class SqlReservationBackend:
    # Primary-key insert is the atomic guard; expired rows are taken over with a conditional update.
    def __init__(self, session_factory: SessionFactory) -> None:
        self._session_factory = session_factory

    async def reserve(
        self,
        key: str,
        *,
        kind: str,
        holder_id: str,
        expires_at: datetime,
        now: datetime,
    ) -> ReservationResult:
        async with self._session_factory() as session:
            for _ in range(_RESERVE_MAX_ROUNDS):
                session.add(
                    DedupReservation(
                        key=key,
                        kind=kind,
                        holder_id=holder_id,
                        expires_at=expires_at,
                        created_at=now,
                    )
                )
                try:
                    await session.commit()
                    return ReservationResult(True, holder_id, expires_at)
                except IntegrityError:
                    await session.rollback()

                # Row exists; only an expired reservation may change hands.
                takeover = await session.execute(
                    update(DedupReservation)
                    .where(DedupReservation.key == key, DedupReservation.expires_at <= now)
                    .values(holder_id=holder_id, kind=kind, expires_at=expires_at, created_at=now)
                )
                await session.commit()
                if takeover.rowcount == 1:
                    return ReservationResult(True, holder_id, expires_at)

                existing = await session.get(DedupReservation, key, populate_existing=True)
                if existing is not None:
                    return ReservationResult(
                        False,
                        existing.holder_id,
                        coerce_utc(existing.expires_at) or expires_at,
                    )
                # Swept between takeover and read; try the insert again.
        raise DedupStoreUnavailableError(f"reservation for {key} did not settle")

    async def release(self, key: str, holder_id: str) -> bool:
        async with self._session_factory() as session:
            result = await session.execute(
                delete(DedupReservation).where(
                    DedupReservation.key == key,
                    DedupReservation.holder_id == holder_id,
                )
            )
            await session.commit()
            return result.rowcount == 1

    async def delete_expired(self, now: datetime, limit: int) -> int:
        # Delete in bounded batches so one sweep never holds long locks.
        async with self._session_factory() as session:
            keys = (
                await session.execute(
                    select(DedupReservation.key)
                    .where(DedupReservation.expires_at <= now)
                    .order_by(DedupReservation.expires_at.asc())
                    .limit(max(1, limit))
                )
            ).scalars().all()
            if not keys:
                return 0
            result = await session.execute(
                delete(DedupReservation).where(
                    DedupReservation.key.in_(keys),
                    DedupReservation.expires_at <= now,
                )
            )
            await session.commit()
            return int(result.rowcount or 0)

    async def size(self) -> int:
        async with self._session_factory() as session:
            return int((await session.execute(select(func.count()).select_from(DedupReservation))).scalar_one())


class RedisReservationBackend:
    # SET NX PX is the conditional write; Redis expiry replaces the sweeper.
    def __init__(self, redis: Redis, *, prefix: str = "staffnotify:dedup") -> None:
        self._redis = redis
        self._prefix = prefix

    def _key(self, key: str) -> str:
        return f"{self._prefix}:{key}"

    async def reserve(
        self,
        key: str,
        *,
        kind: str,
        holder_id: str,
        expires_at: datetime,
        now: datetime,
    ) -> ReservationResult:
        ttl_ms = max(1, int((expires_at - now).total_seconds() * 1000))
        for _ in range(_RESERVE_MAX_ROUNDS):
            acquired = await self._redis.set(self._key(key), holder_id, nx=True, px=ttl_ms)
            if acquired:
                return ReservationResult(True, holder_id, expires_at)
            existing = await self._redis.get(self._key(key))
            if existing is not None:
                remaining_ms = await self._redis.pttl(self._key(key))
                existing_expiry = now + timedelta(milliseconds=max(0, int(remaining_ms or 0)))
                return ReservationResult(False, str(existing), existing_expiry)
        raise DedupStoreUnavailableError(f"reservation for {key} did not settle")

    async def release(self, key: str, holder_id: str) -> bool:
        current = await self._redis.get(self._key(key))
        if current != holder_id:
            return False
        await self._redis.delete(self._key(key))
        return True

    async def delete_expired(self, now: datetime, limit: int) -> int:
        return 0

    async def size(self) -> int | None:
        # Counting would need a keyspace scan; stats report the size as unknown.
        return None


class DedupCache:
    """Bounded LRU in front of the reservation backend.

    Entries are only written after the backend answered, and never outlive the
    reservation they mirror, so dropping the cache only costs a backend round trip.
    """

    def __init__(self, max_entries: int = 10000, ttl_s: float = 5.0) -> None:
        self._max_entries = max(1, max_entries)
        self._ttl = timedelta(seconds=max(0.0, ttl_s))
        self._entries: OrderedDict[str, tuple[str, datetime]] = OrderedDict()

    def get(self, key: str, now: datetime) -> str | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        holder_id, valid_until = entry
        if valid_until <= now:
            del self._entries[key]
            return None
        self._entries.move_to_end(key)
        return holder_id

    def put(self, key: str, holder_id: str, expires_at: datetime, now: datetime) -> None:
        valid_until = min(expires_at, now + self._ttl)
        if valid_until <= now:
            return
        self._entries[key] = (holder_id, valid_until)
        self._entries.move_to_end(key)
        while len(self._entries) > self._max_entries:
            self._entries.popitem(last=False)

    def discard(self, key: str) -> None:
        self._entries.pop(key, None)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


class DeduplicationStore:
    def __init__(
        self,
        backend: ReservationBackend,
        *,
        cache: DedupCache | None = None,
        clock: Callable[[], datetime] = _utc_now,
        fail_mode: str = "closed",
    ) -> None:
        self._backend = backend
        self._cache = cache if cache is not None else DedupCache()
        self._clock = clock
        self._fail_mode = fail_mode.lower()
        self._checked = 0
        self._blocked = 0
        self._swept = 0

    @property
    def cache(self) -> DedupCache:
        return self._cache

    async def check_and_reserve(
        self,
        fingerprint: str,
        content_hash: str,
        window_s: float,
        *,
        record_id: str,
        recipient_id: str,
        entity_id: str,
        content_window_s: float | None = None,
    ) -> DedupDecision:
        self._checked += 1
        now = self._clock()
        fp_key = fingerprint_key(fingerprint)

        cached = self._cache.get(fp_key, now)
        if cached is not None:
            return self._blocked_by(cached, reason=KIND_FINGERPRINT, source="cache")

        try:
            reservation = await self._backend.reserve(
                fp_key,
                kind=KIND_FINGERPRINT,
                holder_id=record_id,
                expires_at=now + timedelta(seconds=window_s),
                now=now,
            )
        except Exception as exc:  # noqa: BLE001 - store outages follow the configured fail mode
            return self._degraded(record_id, exc)
        self._cache.put(fp_key, reservation.holder_id, reservation.expires_at, now)
        if not reservation.reserved:
            return self._blocked_by(reservation.holder_id, reason=KIND_FINGERPRINT, source="store")

        if not content_window_s or content_window_s <= 0:
            return DedupDecision(False, record_id)
        # Content window never outlives the fingerprint window it sits under.
        content_ttl = min(content_window_s, window_s)
        c_key = content_key(recipient_id, entity_id, content_hash)
        try:
            content = await self._backend.reserve(
                c_key,
                kind=KIND_CONTENT,
                holder_id=record_id,
                expires_at=now + timedelta(seconds=content_ttl),
                now=now,
            )
        except Exception as exc:  # noqa: BLE001 - content check is advisory
            logger.warning("dedup_content_check_degraded record_id=%s error=%s", record_id, exc)
            increment_counter("dedup_store_errors_total")
            return DedupDecision(False, record_id, degraded=True)
        if content.reserved:
            return DedupDecision(False, record_id)

        # Same content under another fingerprint: hand the fingerprint back and block.
        logger.info(
            "dedup_content_duplicate record_id=%s duplicate_of=%s recipient_id=%s",
            record_id,
            content.holder_id,
            recipient_id,
        )
        await self.release(fingerprint, record_id)
        return self._blocked_by(content.holder_id, reason=KIND_CONTENT, source="store")

    async def release(self, fingerprint: str, record_id: str) -> bool:
        fp_key = fingerprint_key(fingerprint)
        self._cache.discard(fp_key)
        try:
            return await self._backend.release(fp_key, record_id)
        except Exception as exc:  # noqa: BLE001 - a stuck reservation only expires later
            logger.warning("dedup_release_failed record_id=%s error=%s", record_id, exc)
            return False

    async def release_content(self, recipient_id: str, entity_id: str, content_hash: str, record_id: str) -> bool:
        # Only the holder can release; a newer reservation on the same content stays.
        try:
            return await self._backend.release(content_key(recipient_id, entity_id, content_hash), record_id)
        except Exception as exc:  # noqa: BLE001 - a stuck reservation only expires later
            logger.warning("dedup_content_release_failed record_id=%s error=%s", record_id, exc)
            return False

    async def sweep(self, batch_size: int = 100, *, max_batches: int = 50) -> int:
        # Remove expired reservations; callers log failures and keep admitting.
        now = self._clock()
        removed = 0
        for _ in range(max(1, max_batches)):
            deleted = await self._backend.delete_expired(now, batch_size)
            removed += deleted
            if deleted < batch_size:
                break
        self._swept += removed
        if removed:
            logger.info("dedup_sweep removed=%s", removed)
        increment_counter("dedup_reservations_swept_total", removed)
        return removed

    async def stats(self) -> dict[str, int | None]:
        try:
            stored = await self._backend.size()
        except (SQLAlchemyError, OSError) as exc:
            logger.warning("dedup_stats_size_failed error=%s", exc)
            stored = None
        if stored is not None:
            set_gauge("dedup_reservations", stored)
        return {
            "cache_size": len(self._cache),
            "stored_reservations": stored,
            "checked": self._checked,
            "blocked": self._blocked,
            "swept": self._swept,
        }

    def _blocked_by(self, holder_id: str, *, reason: str, source: str) -> DedupDecision:
        self._blocked += 1
        increment_counter("notifications_duplicates_blocked_total")
        increment_counter(f"notifications_duplicates_blocked_total.{reason}")
        return DedupDecision(True, holder_id, reason=reason, source=source)

    def _degraded(self, record_id: str, exc: Exception) -> DedupDecision:
        increment_counter("dedup_store_errors_total")
        if self._fail_mode == "open":
            logger.warning("dedup_degraded fail_mode=open record_id=%s error=%s", record_id, exc)
            return DedupDecision(False, record_id, degraded=True)
        logger.error("dedup_unavailable fail_mode=closed record_id=%s error=%s", record_id, exc)
        raise DedupStoreUnavailableError("deduplication store unavailable") from exc
