from __future__ import annotations

import pytest

from staffnotify.core.errors import InvalidTransitionError, NotFoundError
from staffnotify.services.notifications.queue import (
    InMemoryQueueBackend,
    QueueManager,
    RetryConfig,
    retry_backoff_ms,
)
from staffnotify.services.notifications.routing import ChannelTarget
from staffnotify.services.telemetry import counters_snapshot
from staffnotify.tests.utils.fakes import make_event


PLAN = [ChannelTarget("push", {"push_tokens": ["tok"]})]


def _manager(clock, **retry) -> QueueManager:
    config = RetryConfig(**{"base_ms": 1000, "multiplier": 2.0, "max_ms": 60000, "max_attempts": 3, **retry})
    return QueueManager(InMemoryQueueBackend(), config, clock=clock)


def test_backoff_strictly_increases_until_cap() -> None:
    config = RetryConfig(base_ms=1000, multiplier=2.0, max_ms=30000, max_attempts=10)
    delays = [retry_backoff_ms("item-1", attempt, config) for attempt in range(1, 9)]
    capped_from = delays.index(30000)
    assert all(later > earlier for earlier, later in zip(delays[:capped_from], delays[1 : capped_from + 1]))
    assert all(delay == 30000 for delay in delays[capped_from:])
    assert delays[0] >= 1000


def test_backoff_jitter_is_deterministic_per_item() -> None:
    config = RetryConfig()
    assert retry_backoff_ms("item-1", 2, config) == retry_backoff_ms("item-1", 2, config)
    spread = {retry_backoff_ms(f"item-{index}", 2, config) for index in range(20)}
    assert len(spread) > 1
    assert all(2000 <= delay < 3000 for delay in spread)


@pytest.mark.asyncio
async def test_priority_selects_queue(clock) -> None:
    manager = _manager(clock)
    urgent = await manager.enqueue(make_event(priority="urgent"), record_id="r1", channel_plan=PLAN)
    high = await manager.enqueue(make_event(priority="high"), record_id="r2", channel_plan=PLAN)
    low = await manager.enqueue(make_event(priority="low"), record_id="r3", channel_plan=PLAN)
    assert (urgent.queue, high.queue, low.queue) == ("immediate", "immediate", "batch")
    assert manager.signal("immediate").is_set()
    assert await manager.depths() == {"immediate": 2, "batch": 1, "retry": 0, "dead_letter": 0}


@pytest.mark.asyncio
async def test_claim_marks_in_flight_once(clock) -> None:
    manager = _manager(clock)
    await manager.enqueue(make_event(priority="urgent"), record_id="r1", channel_plan=PLAN)
    claimed = await manager.claim("immediate", 10)
    assert [item.state for item in claimed] == ["in_flight"]
    assert await manager.claim("immediate", 10) == []
    with pytest.raises(ValueError):
        await manager.claim("dead_letter", 1)


@pytest.mark.asyncio
async def test_dead_letter_after_exactly_max_attempts(clock) -> None:
    manager = _manager(clock, max_attempts=3)
    await manager.enqueue(make_event(priority="urgent"), record_id="r1", channel_plan=PLAN)
    [item] = await manager.claim("immediate", 1)

    first = await manager.fail_transient(item, "http_503")
    assert (first.dead_lettered, first.attempts) == (False, 1)
    assert await manager.claim("retry", 1) == []
    clock.advance(first.delay_ms / 1000.0)
    [item] = await manager.claim("retry", 1)

    second = await manager.fail_transient(item, "http_503")
    assert (second.dead_lettered, second.attempts) == (False, 2)
    assert second.delay_ms > first.delay_ms
    clock.advance(second.delay_ms / 1000.0)
    [item] = await manager.claim("retry", 1)

    third = await manager.fail_transient(item, "http_503")
    assert (third.dead_lettered, third.attempts) == (True, 3)
    [dead] = await manager.list_dead_letters()
    assert dead.dead_letter_reason == "max_attempts_exceeded"
    assert dead.attempts == 3
    assert dead.last_error == "http_503"


@pytest.mark.asyncio
async def test_per_event_type_attempt_budget(clock) -> None:
    manager = _manager(clock, max_attempts=5, max_attempts_by_event_type={"job.overdue": 1})
    await manager.enqueue(make_event(event_type="job.overdue", priority="urgent"), record_id="r1", channel_plan=PLAN)
    [item] = await manager.claim("immediate", 1)
    assert (await manager.fail_transient(item, "timeout")).dead_lettered is True


@pytest.mark.asyncio
async def test_complete_removes_item_and_rejects_second_transition(clock) -> None:
    manager = _manager(clock)
    await manager.enqueue(make_event(priority="urgent"), record_id="r1", channel_plan=PLAN)
    [item] = await manager.claim("immediate", 1)
    assert await manager.complete(item) is True
    with pytest.raises(NotFoundError):
        await manager.get(item.id)
    with pytest.raises(InvalidTransitionError):
        await manager.complete(item)


@pytest.mark.asyncio
async def test_defer_keeps_attempt_budget(clock) -> None:
    manager = _manager(clock)
    deferred = await manager.enqueue_deferred(
        make_event(), record_id="r1", channel_plan=PLAN, retry_after_s=30
    )
    assert (deferred.queue, deferred.state, deferred.awaiting_rate_limit) == ("retry", "retry_scheduled", True)
    clock.advance(30)
    [item] = await manager.claim("retry", 1)
    await manager.defer(item, 5)
    stored = await manager.get(item.id)
    assert (stored.state, stored.attempts) == ("retry_scheduled", 0)


@pytest.mark.asyncio
async def test_stale_in_flight_items_return_to_queue(clock) -> None:
    manager = _manager(clock)
    await manager.enqueue(make_event(priority="high"), record_id="r1", channel_plan=PLAN)
    await manager.claim("immediate", 1)
    clock.advance(30)
    assert await manager.requeue_stale(60) == 0
    clock.advance(31)
    assert await manager.requeue_stale(60) == 1
    assert len(await manager.claim("immediate", 1)) == 1


@pytest.mark.asyncio
async def test_late_report_after_stale_recovery_leaves_stored_item_alone(clock) -> None:
    manager = _manager(clock, max_attempts=2)
    await manager.enqueue(make_event(priority="high"), record_id="r1", channel_plan=PLAN)
    [item] = await manager.claim("immediate", 1)
    clock.advance(61)
    assert await manager.requeue_stale(60) == 1

    retry = await manager.fail_transient(item, "timeout")
    assert (retry.applied, retry.dead_lettered) == (False, False)
    item.state = "in_flight"
    assert await manager.defer(item, 5) is False
    item.state = "in_flight"
    assert await manager.dead_letter(item, reason="permanent_failure") is False

    stored = await manager.get(item.id)
    assert (stored.queue, stored.state, stored.attempts) == ("immediate", "queued", 0)
    assert counters_snapshot()["queue_transition_conflicts_total"] == 3
    assert "notifications_dead_lettered_total" not in counters_snapshot()


@pytest.mark.asyncio
async def test_replay_enqueues_fresh_copy(clock) -> None:
    manager = _manager(clock)
    dead = await manager.dead_letter_new(
        make_event(priority="urgent"), record_id="r1", channel_plan=PLAN, reason="permanent_failure"
    )
    replayed = await manager.replay(dead.id, record_id="r2")
    assert (replayed.queue, replayed.state, replayed.attempts) == ("immediate", "queued", 0)
    assert (await manager.get(dead.id)).state == "dead_letter"
    with pytest.raises(NotFoundError):
        await manager.replay(replayed.id, record_id="r3")
