from __future__ import annotations

import pytest

from staffnotify.core.errors import ValidationError
from staffnotify.domain.events import NotificationPayload
from staffnotify.services.notifications.hashing import content_hash, fingerprint
from staffnotify.tests.utils.fakes import make_event


def test_fingerprint_ignores_payload_and_priority() -> None:
    first = make_event(title="Assigned", priority="normal")
    second = make_event(title="Assigned (edited)", body="other", priority="urgent")
    assert fingerprint(first) == fingerprint(second)
    assert len(fingerprint(first)) == 64


def test_fingerprint_changes_with_identity_fields() -> None:
    base = fingerprint(make_event())
    assert fingerprint(make_event(entity_id="job-101")) != base
    assert fingerprint(make_event(recipient_id="staff-2")) != base
    assert fingerprint(make_event(event_type="job.updated")) != base
    assert fingerprint(make_event(source_id="scheduler")) != base


def test_fingerprint_requires_identity_fields() -> None:
    with pytest.raises(ValidationError) as exc:
        fingerprint(make_event(entity_id="", source_id=" "))
    assert exc.value.errors == ["entity_id is required", "source_id is required"]


def test_content_hash_is_key_order_independent() -> None:
    first = NotificationPayload("Title", "Body", {"a": 1, "b": {"c": 2, "d": 3}})
    second = NotificationPayload("Title", "Body", {"b": {"d": 3, "c": 2}, "a": 1})
    assert content_hash(first) == content_hash(second)
    assert content_hash(first) != content_hash(NotificationPayload("Title", "Body!", first.data))


def test_content_hash_rejects_mixed_key_types() -> None:
    with pytest.raises(ValidationError) as exc:
        content_hash(NotificationPayload("Title", "Body", {1: "a", "b": 2}))
    assert exc.value.errors == ["payload.data keys must be strings"]
