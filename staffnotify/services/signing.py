from __future__ import annotations

from datetime import datetime
import hashlib
import hmac


HEADER_NOTIFICATION_ID = "X-Notification-Id"
HEADER_NOTIFICATION_ATTEMPT = "X-Notification-Attempt"
HEADER_NOTIFICATION_EVENT_TYPE = "X-Notification-Event-Type"
HEADER_NOTIFICATION_SIGNATURE = "X-Notification-Signature"
HEADER_NOTIFICATION_TIMESTAMP = "X-Notification-Timestamp"


def compute_hmac_sha256_hex(secret: str, raw_body: bytes) -> str:
    # Sign raw bytes only so sender and receiver agree on the canonical input.
    return hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()


def compute_signature(raw_body: bytes, secret: str) -> str:
    return f"sha256={compute_hmac_sha256_hex(secret, raw_body)}"


def parse_signature(header_value: str) -> str:
    # Accept only `sha256=<64 hex>` and return the lowercase digest.
    algorithm, separator, digest = header_value.strip().partition("=")
    digest_hex = digest.strip().lower()
    if separator != "=" or algorithm.strip().lower() != "sha256" or len(digest_hex) != 64:
        raise ValueError("invalid_signature_format")
    try:
        int(digest_hex, 16)
    except ValueError as exc:
        raise ValueError("invalid_signature_format") from exc
    return digest_hex


def verify_signature(raw_body: bytes, header_value: str | None, secret: str) -> bool:
    if not header_value:
        return False
    try:
        provided = parse_signature(header_value)
    except ValueError:
        return False
    expected = compute_hmac_sha256_hex(secret, raw_body)
    return hmac.compare_digest(expected, provided)


def build_webhook_headers(
    *,
    notification_id: str,
    attempt: int,
    event_type: str,
    raw_body: bytes,
    secret: str | None,
    timestamp: datetime,
) -> dict[str, str]:
    headers = {
        "Content-Type": "application/json",
        HEADER_NOTIFICATION_ID: notification_id,
        HEADER_NOTIFICATION_ATTEMPT: str(attempt),
        HEADER_NOTIFICATION_EVENT_TYPE: event_type,
        HEADER_NOTIFICATION_TIMESTAMP: timestamp.isoformat(),
    }
    # Unsigned delivery is allowed when no secret is configured.
    if secret:
        headers[HEADER_NOTIFICATION_SIGNATURE] = compute_signature(raw_body, secret)
    return headers
