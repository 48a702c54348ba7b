from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Literal

from staffnotify.core.errors import ValidationError


EventType = Literal["job.assigned", "job.updated", "job.completed", "job.overdue"]
Priority = Literal["urgent", "high", "normal", "low"]

EVENT_TYPES: tuple[str, ...] = ("job.assigned", "job.updated", "job.completed", "job.overdue")
PRIORITIES: tuple[str, ...] = ("urgent", "high", "normal", "low")
# Priorities routed to the immediate queue; everything else drains in batches.
IMMEDIATE_PRIORITIES = frozenset({"urgent", "high"})


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class NotificationPayload:
    # Opaque to the engine; only hashed and handed to channel adapters.
    title: str
    body: str
    data: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"title": self.title, "body": self.body, "data": dict(self.data)}


@dataclass(frozen=True)
class NotificationEvent:
    event_type: str
    entity_id: str
    recipient_id: str
    payload: NotificationPayload
    source_id: str
    priority: str = "normal"
    created_at: datetime = field(default_factory=_utc_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "event_type": self.event_type,
            "entity_id": self.entity_id,
            "recipient_id": self.recipient_id,
            "payload": self.payload.to_dict(),
            "source_id": self.source_id,
            "priority": self.priority,
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "NotificationEvent":
        # Accept producer dicts (arq jobs, API bodies) and reject malformed ones up front.
        errors: list[str] = []
        payload_raw = raw.get("payload")
        if not isinstance(payload_raw, dict):
            errors.append("payload must be an object")
            payload_raw = {}
        data = payload_raw.get("data") or {}
        if not isinstance(data, dict):
            errors.append("payload.data must be an object")
            data = {}
        created_raw = raw.get("created_at")
        created_at = _utc_now()
        if isinstance(created_raw, datetime):
            created_at = created_raw
        elif isinstance(created_raw, str) and created_raw:
            try:
                created_at = datetime.fromisoformat(created_raw)
            except ValueError:
                errors.append("created_at must be an ISO-8601 timestamp")
        if created_at.tzinfo is None:
            created_at = created_at.replace(tzinfo=timezone.utc)
        event = cls(
            event_type=str(raw.get("event_type") or ""),
            entity_id=str(raw.get("entity_id") or ""),
            recipient_id=str(raw.get("recipient_id") or ""),
            payload=NotificationPayload(
                title=str(payload_raw.get("title") or ""),
                body=str(payload_raw.get("body") or ""),
                data=data,
            ),
            source_id=str(raw.get("source_id") or ""),
            priority=str(raw.get("priority") or "normal"),
            created_at=created_at,
        )
        errors.extend(validate_event(event))
        if errors:
            raise ValidationError(errors)
        return event


def validate_event(event: NotificationEvent) -> list[str]:
    # Return field errors instead of raising so callers can report all of them at once.
    errors: list[str] = []
    if event.event_type not in EVENT_TYPES:
        errors.append(f"event_type must be one of {', '.join(EVENT_TYPES)}")
    for name in ("entity_id", "recipient_id", "source_id"):
        value = getattr(event, name)
        if not isinstance(value, str) or not value.strip():
            errors.append(f"{name} is required")
    if event.priority not in PRIORITIES:
        errors.append(f"priority must be one of {', '.join(PRIORITIES)}")
    payload = event.payload
    if not isinstance(payload, NotificationPayload):
        errors.append("payload is required")
    else:
        if not payload.title.strip():
            errors.append("payload.title is required")
        if not isinstance(payload.data, dict):
            errors.append("payload.data must be an object")
        elif _has_non_string_keys(payload.data):
            errors.append("payload.data keys must be strings")
    return errors


def _has_non_string_keys(value: Any) -> bool:
    # Content hashing sorts keys, which needs one key type per object.
    if isinstance(value, dict):
        return any(not isinstance(key, str) or _has_non_string_keys(item) for key, item in value.items())
    if isinstance(value, (list, tuple)):
        return any(_has_non_string_keys(item) for item in value)
    return False
