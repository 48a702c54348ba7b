from __future__ import annotations

import asyncio
from dataclasses import replace

import pytest

from staffnotify.services.notifications.channels import DeliveryResult
from staffnotify.services.notifications.dedup import DeduplicationStore, ReservationResult
from staffnotify.services.notifications.queue import RetryConfig
from staffnotify.services.notifications.routing import InMemoryPreferenceProvider, RecipientPreferences
from staffnotify.services.telemetry import counters_snapshot
from staffnotify.tests.utils.fakes import (
    ScriptedAdapter,
    build_test_orchestrator,
    make_event,
    unlimited_rate_config,
)


@pytest.mark.asyncio
async def test_urgent_event_is_delivered_through_immediate_queue(clock) -> None:
    push = ScriptedAdapter("push")
    orchestrator = build_test_orchestrator(clock, adapters=[push])

    result = await orchestrator.submit(make_event(priority="urgent"))
    assert (result.success, result.status, result.queue, result.duplicates_blocked) == (True, "queued", "immediate", 0)
    assert (await orchestrator.get_record(result.record_id)).status == "pending"

    assert await orchestrator.drain_once("immediate") == 1
    record = await orchestrator.get_record(result.record_id)
    assert (record.status, record.channel, record.delivery_attempts) == ("sent", "push", 1)
    assert record.sent_at == clock()
    [attempt] = await orchestrator.list_attempts(result.record_id)
    assert (attempt.channel, attempt.outcome, attempt.attempt_no) == ("push", "sent", 1)
    assert push.calls[0][2]["push_tokens"] == ["ExponentPushToken[test-device]"]
    assert counters_snapshot()["notifications_sent_total"] == 1


@pytest.mark.asyncio
async def test_assignment_and_scheduler_race_delivers_once(clock) -> None:
    push = ScriptedAdapter("push")
    orchestrator = build_test_orchestrator(clock, adapters=[push])

    first = await orchestrator.submit(make_event(source_id="assignment-service", priority="high"))
    clock.advance(2)
    second = await orchestrator.submit(make_event(source_id="scheduler", priority="high"))

    assert first.status == "queued"
    assert (second.success, second.status, second.duplicates_blocked) == (True, "duplicate", 1)
    assert second.duplicate_of == first.record_id
    duplicate = await orchestrator.get_record(second.record_id)
    assert (duplicate.status, duplicate.duplicate_of) == ("duplicate", first.record_id)

    await orchestrator.run_until_idle()
    assert len(push.calls) == 1


@pytest.mark.asyncio
async def test_same_producer_retry_within_window_is_blocked(clock) -> None:
    orchestrator = build_test_orchestrator(clock, dedup_windows={"job.assigned": 300.0})
    first = await orchestrator.submit(make_event(title="Assigned"))
    clock.advance(20)
    second = await orchestrator.submit(make_event(title="Assigned (reworded)"))
    assert second.status == "duplicate"
    assert second.duplicate_of == first.record_id

    # Outside the five minute job.assigned window the obligation can be raised again.
    clock.advance(281)
    third = await orchestrator.submit(make_event(title="Assigned again"))
    assert third.status == "queued"


@pytest.mark.asyncio
async def test_concurrent_identical_submissions_admit_one(clock) -> None:
    orchestrator = build_test_orchestrator(clock)
    results = await asyncio.gather(*[orchestrator.submit(make_event(priority="urgent")) for _ in range(20)])
    statuses = [result.status for result in results]
    assert statuses.count("queued") == 1
    assert statuses.count("duplicate") == 19
    assert (await orchestrator.queue.depths())["immediate"] == 1


@pytest.mark.asyncio
async def test_rate_limited_events_are_deferred_then_delivered(clock) -> None:
    push = ScriptedAdapter("push")
    orchestrator = build_test_orchestrator(
        clock,
        adapters=[push],
        rate_limit=unlimited_rate_config(recipient_limits={"minute": 10}),
    )
    results = [
        await orchestrator.submit(make_event(event_type="job.updated", entity_id=f"job-{index}"))
        for index in range(15)
    ]
    assert [result.status for result in results] == ["queued"] * 10 + ["deferred"] * 5
    deferred = results[-1]
    assert (deferred.success, deferred.queue, deferred.rate_limit_scope) == (True, "retry", "recipient")
    assert deferred.retry_after_s == pytest.approx(60.0)

    await orchestrator.run_until_idle()
    assert len(push.calls) == 10
    assert (await orchestrator.get_record(deferred.record_id)).status == "pending"

    clock.advance(60)
    await orchestrator.run_until_idle()
    assert len(push.calls) == 15
    assert (await orchestrator.get_record(deferred.record_id)).status == "sent"


@pytest.mark.asyncio
async def test_droppable_priority_is_dead_lettered(clock) -> None:
    orchestrator = build_test_orchestrator(
        clock,
        rate_limit=unlimited_rate_config(recipient_limits={"minute": 1}, drop_priorities=frozenset({"low"})),
    )
    await orchestrator.submit(make_event(priority="low", entity_id="job-1"))
    dropped = await orchestrator.submit(make_event(priority="low", entity_id="job-2"))
    assert (dropped.success, dropped.status, dropped.rate_limit_scope) == (False, "dropped", "recipient")
    assert (await orchestrator.get_record(dropped.record_id)).status == "dead_letter"
    [dead] = await orchestrator.list_dead_letters()
    assert dead.dead_letter_reason == "rate_limited_dropped"

    # Dropped events never held their fingerprint.
    clock.advance(60)
    again = await orchestrator.submit(make_event(priority="low", entity_id="job-2"))
    assert again.status == "queued"


@pytest.mark.asyncio
async def test_dropped_event_can_be_raised_again_inside_content_window(clock) -> None:
    orchestrator = build_test_orchestrator(
        clock,
        rate_limit=unlimited_rate_config(recipient_limits={"minute": 1}, drop_priorities=frozenset({"low"})),
        dedup_windows={"job.assigned": 300.0},
    )
    await orchestrator.submit(make_event(priority="low", entity_id="job-1"))
    dropped = await orchestrator.submit(make_event(priority="low", entity_id="job-2"))
    assert dropped.status == "dropped"

    await orchestrator.reset_rate_limit("staff-1")
    clock.advance(1)
    again = await orchestrator.submit(make_event(priority="low", entity_id="job-2"))
    assert (again.status, again.duplicate_of) == ("queued", None)


@pytest.mark.asyncio
async def test_deferred_event_dropped_on_recheck_releases_reservations(clock) -> None:
    orchestrator = build_test_orchestrator(
        clock,
        rate_limit=unlimited_rate_config(
            recipient_limits={"minute": 1},
            global_limits={"second": 1},
            drop_priorities=frozenset({"low"}),
        ),
        dedup_windows={"job.assigned": 300.0},
    )
    await orchestrator.submit(make_event(priority="low", entity_id="job-1"))
    deferred = await orchestrator.submit(make_event(priority="low", entity_id="job-2"))
    # Global ceilings always defer, even for droppable priorities.
    assert (deferred.status, deferred.rate_limit_scope) == ("deferred", "global")

    clock.advance(1)
    await orchestrator.drain_once("retry")
    assert (await orchestrator.get_record(deferred.record_id)).status == "dead_letter"
    [dead] = await orchestrator.list_dead_letters()
    assert dead.dead_letter_reason == "rate_limited_dropped"

    await orchestrator.reset_rate_limit("staff-1")
    clock.advance(1)
    again = await orchestrator.submit(make_event(priority="low", entity_id="job-2"))
    assert (again.status, again.duplicate_of) == ("queued", None)


@pytest.mark.asyncio
async def test_transient_failures_retry_with_backoff_then_send(clock) -> None:
    push = ScriptedAdapter("push", [DeliveryResult.transient("http_503"), DeliveryResult.transient("timeout")])
    orchestrator = build_test_orchestrator(clock, adapters=[push])
    result = await orchestrator.submit(make_event(priority="urgent"))

    await orchestrator.drain_once("immediate")
    record = await orchestrator.get_record(result.record_id)
    assert (record.status, record.delivery_attempts, record.last_error) == ("failed", 1, "push: http_503")
    assert await orchestrator.drain_once("retry") == 0

    clock.advance(2)
    await orchestrator.drain_once("retry")
    assert (await orchestrator.get_record(result.record_id)).delivery_attempts == 2

    clock.advance(4)
    await orchestrator.drain_once("retry")
    record = await orchestrator.get_record(result.record_id)
    assert (record.status, record.delivery_attempts) == ("sent", 3)
    assert [attempt.attempt_no for attempt in await orchestrator.list_attempts(result.record_id)] == [1, 2, 3]


@pytest.mark.asyncio
async def test_retry_budget_exhaustion_dead_letters_after_exactly_max_attempts(clock) -> None:
    push = ScriptedAdapter("push", [DeliveryResult.transient("http_503")] * 10)
    orchestrator = build_test_orchestrator(
        clock,
        adapters=[push],
        retry=RetryConfig(base_ms=1000, multiplier=2.0, max_ms=5000, max_attempts=4),
    )
    result = await orchestrator.submit(make_event(priority="urgent"))
    for _ in range(6):
        await orchestrator.run_until_idle()
        clock.advance(10)

    assert len(push.calls) == 4
    record = await orchestrator.get_record(result.record_id)
    assert (record.status, record.delivery_attempts) == ("dead_letter", 4)
    [dead] = await orchestrator.list_dead_letters()
    assert (dead.dead_letter_reason, dead.attempts) == ("max_attempts_exceeded", 4)


@pytest.mark.asyncio
async def test_permanent_failure_skips_retry_budget(clock) -> None:
    push = ScriptedAdapter("push", [DeliveryResult.permanent("DeviceNotRegistered")])
    orchestrator = build_test_orchestrator(clock, adapters=[push])
    result = await orchestrator.submit(make_event(priority="high"))
    await orchestrator.run_until_idle()
    clock.advance(600)
    await orchestrator.run_until_idle()

    assert len(push.calls) == 1
    record = await orchestrator.get_record(result.record_id)
    assert (record.status, record.last_error) == ("dead_letter", "push: DeviceNotRegistered")
    [dead] = await orchestrator.list_dead_letters()
    assert dead.dead_letter_reason == "permanent_failure"


@pytest.mark.asyncio
async def test_unavailable_channel_falls_back_within_one_attempt(clock) -> None:
    push = ScriptedAdapter("push", [DeliveryResult.unavailable("gateway_down")])
    realtime = ScriptedAdapter("realtime")
    orchestrator = build_test_orchestrator(clock, adapters=[push, realtime])
    result = await orchestrator.submit(make_event(priority="urgent"))
    await orchestrator.drain_once("immediate")

    record = await orchestrator.get_record(result.record_id)
    assert (record.status, record.channel, record.delivery_attempts) == ("sent", "realtime", 1)
    attempts = await orchestrator.list_attempts(result.record_id)
    assert [(attempt.channel, attempt.outcome) for attempt in attempts] == [
        ("push", "unavailable"),
        ("realtime", "sent"),
    ]


@pytest.mark.asyncio
async def test_recipient_without_reachable_channel_is_dead_lettered(clock) -> None:
    preferences = InMemoryPreferenceProvider({"staff-1": RecipientPreferences("staff-1")})
    orchestrator = build_test_orchestrator(clock, preferences=preferences)
    result = await orchestrator.submit(make_event(priority="normal"))
    assert result.status == "queued"
    await orchestrator.run_until_idle()
    assert (await orchestrator.get_record(result.record_id)).status == "dead_letter"
    [dead] = await orchestrator.list_dead_letters()
    assert dead.dead_letter_reason == "channels_exhausted"


@pytest.mark.asyncio
async def test_outcome_for_terminal_record_is_a_no_op(clock) -> None:
    orchestrator = build_test_orchestrator(clock)
    result = await orchestrator.submit(make_event(priority="urgent"))
    [item] = await orchestrator.queue.claim("immediate", 1)
    outcome = await orchestrator._worker.process(item)

    assert await orchestrator.apply_outcome(outcome) is True
    assert await orchestrator.apply_outcome(outcome) is False
    record = await orchestrator.get_record(result.record_id)
    assert (record.status, record.delivery_attempts) == ("sent", 1)
    assert len(await orchestrator.list_attempts(result.record_id)) == 1


@pytest.mark.asyncio
async def test_late_failure_after_stale_recovery_keeps_record_pending(clock) -> None:
    push = ScriptedAdapter("push", [DeliveryResult.transient("timeout")])
    orchestrator = build_test_orchestrator(clock, adapters=[push])
    result = await orchestrator.submit(make_event(priority="urgent"))
    [item] = await orchestrator.queue.claim("immediate", 1)
    outcome = await orchestrator._worker.process(item)

    clock.advance(61)
    assert (await orchestrator.run_maintenance())["stale_requeued"] == 1
    assert await orchestrator.apply_outcome(outcome) is False
    assert (await orchestrator.get_record(result.record_id)).status == "pending"
    assert counters_snapshot()["queue_transition_conflicts_total"] == 1

    await orchestrator.run_until_idle()
    assert (await orchestrator.get_record(result.record_id)).status == "sent"


@pytest.mark.asyncio
async def test_invalid_event_is_rejected_without_record(clock) -> None:
    orchestrator = build_test_orchestrator(clock)
    result = await orchestrator.submit(make_event(recipient_id="", title=""))
    assert (result.success, result.status, result.record_id) == (False, "rejected", None)
    assert "recipient_id is required" in result.errors
    assert await orchestrator.list_records() == []


@pytest.mark.asyncio
async def test_payload_with_mixed_key_types_is_rejected(clock) -> None:
    orchestrator = build_test_orchestrator(clock)
    result = await orchestrator.submit(make_event(data={1: "a", "b": 2}))
    assert (result.success, result.status, result.record_id) == (False, "rejected", None)
    assert result.errors == ["payload.data keys must be strings"]
    assert counters_snapshot()["notifications_rejected_total"] == 1


@pytest.mark.asyncio
async def test_dedup_outage_fails_closed(clock) -> None:
    class _DownBackend:
        async def reserve(self, key: str, **_kwargs) -> ReservationResult:
            raise ConnectionError("down")

    orchestrator = build_test_orchestrator(clock)
    orchestrator._dedup = DeduplicationStore(_DownBackend(), clock=clock, fail_mode="closed")
    result = await orchestrator.submit(make_event())
    assert (result.success, result.status) == (False, "unavailable")
    assert await orchestrator.list_records() == []


@pytest.mark.asyncio
async def test_dead_letter_replay_creates_fresh_record(clock) -> None:
    push = ScriptedAdapter("push", [DeliveryResult.permanent("DeviceNotRegistered")])
    orchestrator = build_test_orchestrator(clock, adapters=[push])
    original = await orchestrator.submit(make_event(priority="urgent"))
    await orchestrator.run_until_idle()
    [dead] = await orchestrator.list_dead_letters()

    replay = await orchestrator.replay_dead_letter(dead.id)
    assert replay.record_id != original.record_id
    await orchestrator.run_until_idle()
    assert (await orchestrator.get_record(replay.record_id)).status == "sent"
    assert (await orchestrator.get_record(original.record_id)).status == "dead_letter"
    assert counters_snapshot()["notifications_replayed_total"] == 1


@pytest.mark.asyncio
async def test_maintenance_and_stats(clock) -> None:
    orchestrator = build_test_orchestrator(clock, record_retention_s=3600)
    await orchestrator.submit(make_event(priority="urgent"))
    await orchestrator.submit(make_event(priority="urgent"))
    await orchestrator.run_until_idle()

    stats = await orchestrator.stats()
    assert stats["records"] == {"sent": 1, "duplicate": 1}
    assert stats["queues"]["immediate"] == 0
    assert stats["dedup"]["blocked"] == 1
    assert stats["workers"]["immediate"]["available"] == 8

    clock.advance(7200)
    result = await orchestrator.run_maintenance()
    assert result == {"stale_requeued": 0, "reservations_swept": 2, "records_pruned": 2}
    assert (await orchestrator.stats())["records"] == {}


@pytest.mark.asyncio
async def test_background_loops_deliver_and_stop_cleanly(clock) -> None:
    push = ScriptedAdapter("push")
    orchestrator = build_test_orchestrator(clock, adapters=[push], immediate_poll_s=0.01)
    await orchestrator.start()
    try:
        result = await orchestrator.submit(make_event(priority="urgent"))
        for _ in range(200):
            if (await orchestrator.get_record(result.record_id)).status == "sent":
                break
            await asyncio.sleep(0.01)
        assert (await orchestrator.get_record(result.record_id)).status == "sent"
    finally:
        await orchestrator.stop()
    assert orchestrator.running is False


@pytest.mark.asyncio
async def test_reload_config_applies_new_ceilings_to_later_submissions(clock) -> None:
    orchestrator = build_test_orchestrator(clock)
    assert (await orchestrator.submit(make_event(entity_id="job-1"))).status == "queued"

    orchestrator.reload_config(
        replace(orchestrator.config, rate_limit=unlimited_rate_config(recipient_limits={"minute": 1}))
    )
    assert (await orchestrator.submit(make_event(entity_id="job-2"))).status == "queued"
    assert (await orchestrator.submit(make_event(entity_id="job-3"))).status == "deferred"
    assert orchestrator.rate_limiter.config.recipient_limits == {"minute": 1}
