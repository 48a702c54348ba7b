from __future__ import annotations

import hashlib
import json
from typing import Any

from staffnotify.core.errors import ValidationError
from staffnotify.domain.events import NotificationEvent, NotificationPayload


def _canonical_json(value: dict[str, Any]) -> bytes:
    # Sorted keys and fixed separators keep hashes stable across processes and restarts.
    return json.dumps(value, sort_keys=True, separators=(",", ":"), default=str).encode("utf-8")


def fingerprint(event: NotificationEvent) -> str:
    """Identity of one notification obligation, independent of payload wording."""
    missing = [
        name
        for name in ("event_type", "entity_id", "recipient_id", "source_id")
        if not isinstance(getattr(event, name, None), str) or not getattr(event, name).strip()
    ]
    if missing:
        raise ValidationError([f"{name} is required" for name in missing])
    material = {
        "event_type": event.event_type,
        "entity_id": event.entity_id,
        "recipient_id": event.recipient_id,
        "source_id": event.source_id,
    }
    return hashlib.sha256(_canonical_json(material)).hexdigest()


def content_hash(payload: NotificationPayload) -> str:
    """Identity of message content, used for secondary duplicate detection."""
    if not isinstance(payload, NotificationPayload):
        raise ValidationError(["payload is required"])
    if not isinstance(payload.data, dict):
        raise ValidationError(["payload.data must be an object"])
    material = {"title": payload.title, "body": payload.body, "data": payload.data}
    try:
        encoded = _canonical_json(material)
    except TypeError as exc:
        raise ValidationError(["payload.data keys must be strings"]) from exc
    return hashlib.sha256(encoded).hexdigest()
