from __future__ import annotations

from datetime import timedelta

import pytest

from staffnotify.services.notifications.dedup import DeduplicationStore, SqlReservationBackend
from staffnotify.services.notifications.queue import QueueManager, RetryConfig, SqlQueueBackend
from staffnotify.services.notifications.rate_limit import RateLimitConfig, RateLimiter, SqlCounterBackend
from staffnotify.services.notifications.records import AttemptEntry, RecordSnapshot, SqlRecordStore
from staffnotify.services.notifications.routing import ChannelTarget
from staffnotify.tests.utils.fakes import make_event


def _record(clock, record_id: str, status: str = "pending") -> RecordSnapshot:
    event = make_event()
    return RecordSnapshot(
        id=record_id,
        fingerprint="fp",
        content_hash="ch",
        recipient_id=event.recipient_id,
        event_type=event.event_type,
        entity_id=event.entity_id,
        source_id=event.source_id,
        priority=event.priority,
        status=status,
        payload=event.payload.to_dict(),
        created_at=clock(),
        updated_at=clock(),
    )


@pytest.mark.asyncio
async def test_sql_reservation_insert_conflict_and_takeover(clock, sqlite_session_factory) -> None:
    store = DeduplicationStore(SqlReservationBackend(sqlite_session_factory), clock=clock)
    kwargs = {"recipient_id": "staff-1", "entity_id": "job-1", "content_window_s": 10}

    first = await store.check_and_reserve("fp-1", "c1", 30, record_id="rec-1", **kwargs)
    store.cache.clear()
    second = await store.check_and_reserve("fp-1", "c2", 30, record_id="rec-2", **kwargs)
    assert first.is_duplicate is False
    assert (second.is_duplicate, second.record_id, second.source) == (True, "rec-1", "store")

    clock.advance(31)
    store.cache.clear()
    third = await store.check_and_reserve("fp-1", "c3", 30, record_id="rec-3", **kwargs)
    assert third.is_duplicate is False

    content_dup = await store.check_and_reserve("fp-9", "c3", 30, record_id="rec-4", **kwargs)
    assert (content_dup.is_duplicate, content_dup.reason) == (True, "content")

    clock.advance(60)
    assert await store.sweep(batch_size=10) == 3
    assert (await store.stats())["stored_reservations"] == 0


@pytest.mark.asyncio
async def test_sql_counters_enforce_all_ceilings_atomically(clock, sqlite_session_factory) -> None:
    limiter = RateLimiter(
        SqlCounterBackend(sqlite_session_factory),
        RateLimitConfig(
            recipient_limits={"minute": 3},
            event_type_limits={"job.updated": {"burst": 2}},
            global_limits={},
        ),
        clock=clock,
    )
    assert (await limiter.try_consume("staff-1", "job.updated", "normal")).allowed
    assert (await limiter.try_consume("staff-1", "job.updated", "normal")).allowed
    blocked = await limiter.try_consume("staff-1", "job.updated", "normal")
    assert (blocked.allowed, blocked.scope, blocked.window) == (False, "event_type", "burst")
    status = await limiter.status("staff-1")
    assert status["windows"][0]["count"] == 2

    clock.advance(10)
    assert (await limiter.try_consume("staff-1", "job.updated", "normal")).allowed
    blocked = await limiter.try_consume("staff-1", "job.updated", "normal")
    assert (blocked.scope, blocked.window) == ("recipient", "minute")
    assert blocked.retry_after_s == pytest.approx(50.0)

    assert await limiter.reset("staff-1") == 1
    assert (await limiter.try_consume("staff-1", "job.updated", "normal")).allowed


@pytest.mark.asyncio
async def test_sql_queue_lifecycle(clock, sqlite_session_factory) -> None:
    manager = QueueManager(
        SqlQueueBackend(sqlite_session_factory),
        RetryConfig(base_ms=1000, multiplier=2.0, max_ms=10000, max_attempts=2),
        clock=clock,
    )
    plan = [ChannelTarget("push", {"push_tokens": ["tok"]})]
    await manager.enqueue(make_event(priority="urgent"), record_id="rec-1", channel_plan=plan)
    await manager.enqueue(make_event(priority="low", entity_id="job-2"), record_id="rec-2", channel_plan=plan)

    [item] = await manager.claim("immediate", 5)
    assert item.channel_plan == plan
    assert item.event.priority == "urgent"
    assert await manager.claim("immediate", 5) == []

    retry = await manager.fail_transient(item, "http_503")
    clock.advance(retry.delay_ms / 1000.0)
    [item] = await manager.claim("retry", 5)
    assert item.attempts == 1
    assert (await manager.fail_transient(item, "http_503")).dead_lettered is True

    [dead] = await manager.list_dead_letters()
    assert (dead.record_id, dead.dead_letter_reason) == ("rec-1", "max_attempts_exceeded")
    assert await manager.depths() == {"immediate": 0, "batch": 1, "retry": 0, "dead_letter": 1}

    [batch_item] = await manager.claim("batch", 5)
    assert await manager.complete(batch_item) is True
    assert (await manager.depths())["batch"] == 0


@pytest.mark.asyncio
async def test_sql_queue_recovers_stale_claims(clock, sqlite_session_factory) -> None:
    manager = QueueManager(SqlQueueBackend(sqlite_session_factory), clock=clock)
    await manager.enqueue(make_event(priority="high"), record_id="rec-1", channel_plan=[])
    await manager.claim("immediate", 1)
    clock.advance(120)
    assert await manager.requeue_stale(60) == 1
    assert len(await manager.claim("immediate", 1)) == 1


@pytest.mark.asyncio
async def test_sql_records_terminal_guard_and_prune(clock, sqlite_session_factory) -> None:
    records = SqlRecordStore(sqlite_session_factory)
    await records.create(_record(clock, "rec-1"))
    await records.create(_record(clock, "rec-2", status="dead_letter"))
    await records.add_attempts(
        [
            AttemptEntry("rec-1", "item-1", 1, "push", "transient_failure", clock(), "http_503", 12.5),
            AttemptEntry("rec-1", "item-1", 2, "push", "sent", clock(), None, 8.0),
        ]
    )

    assert await records.update_if_open("rec-1", now=clock(), status="sent", channel="push", sent_at=clock())
    assert not await records.update_if_open("rec-1", now=clock(), status="failed")
    stored = await records.get("rec-1")
    assert (stored.status, stored.channel, stored.payload["title"]) == ("sent", "push", "New job assigned")
    assert [entry.outcome for entry in await records.list_attempts("rec-1")] == ["transient_failure", "sent"]
    assert await records.count_by_status() == {"sent": 1, "dead_letter": 1}

    assert await records.prune(older_than=clock() - timedelta(seconds=1), limit=10) == 0
    clock.advance(3600)
    assert await records.prune(older_than=clock() - timedelta(seconds=60), limit=10) == 1
    assert await records.get("rec-1") is None
    assert await records.list_attempts("rec-1") == []
    assert (await records.get("rec-2")).status == "dead_letter"
