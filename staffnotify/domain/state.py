from __future__ import annotations

from typing import Literal

from staffnotify.core.errors import InvalidTransitionError


QueueName = Literal["immediate", "batch", "retry", "dead_letter"]
QueueItemState = Literal["queued", "in_flight", "sent", "retry_scheduled", "dead_letter"]
RecordStatus = Literal["pending", "sent", "failed", "duplicate", "dead_letter"]

QUEUE_NAMES: tuple[str, ...] = ("immediate", "batch", "retry", "dead_letter")
# Queues that workers drain; dead letters are never consumed automatically.
DRAINABLE_QUEUES: tuple[str, ...] = ("immediate", "batch", "retry")

RECORD_STATUSES: tuple[str, ...] = ("pending", "sent", "failed", "duplicate", "dead_letter")
TERMINAL_RECORD_STATUSES = frozenset({"sent", "duplicate", "dead_letter"})

READY_STATES = frozenset({"queued", "retry_scheduled"})
TERMINAL_ITEM_STATES = frozenset({"sent", "dead_letter"})

_ALLOWED_TRANSITIONS: dict[str, frozenset[str]] = {
    "queued": frozenset({"in_flight"}),
    "in_flight": frozenset({"sent", "retry_scheduled", "dead_letter", "queued"}),
    "retry_scheduled": frozenset({"queued"}),
    "sent": frozenset(),
    "dead_letter": frozenset(),
}


def can_transition(current: str, target: str) -> bool:
    return target in _ALLOWED_TRANSITIONS.get(current, frozenset())


def assert_transition(current: str, target: str) -> None:
    # in_flight -> queued only happens when a stale claim is recovered.
    if not can_transition(current, target):
        raise InvalidTransitionError(f"queue item cannot move from {current} to {target}")
