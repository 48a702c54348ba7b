from __future__ import annotations


class StaffNotifyError(Exception):
    """Base error for the notification engine."""


class ValidationError(StaffNotifyError):
    """Malformed notification event; rejected at ingress and never queued."""

    def __init__(self, errors: list[str]) -> None:
        self.errors = list(errors)
        super().__init__("; ".join(self.errors) or "invalid notification event")


class RateLimitedError(StaffNotifyError):
    """Submission blocked by a rate ceiling."""

    def __init__(self, scope: str, retry_after_s: float) -> None:
        self.scope = scope
        self.retry_after_s = retry_after_s
        super().__init__(f"rate limited scope={scope} retry_after_s={retry_after_s:.3f}")


class DeliveryError(StaffNotifyError):
    """Channel delivery failure."""


class ChannelUnavailableError(DeliveryError):
    """No configured delivery path for a channel."""


class TransientDeliveryError(DeliveryError):
    """Network/timeout class failure that may succeed on retry."""


class PermanentDeliveryError(DeliveryError):
    """Channel rejected the recipient or payload; retrying will not help."""


class IntegrationUnavailableError(StaffNotifyError):
    """Circuit breaker is open for an external integration."""


class InvalidTransitionError(StaffNotifyError):
    """Queue item state transition is not allowed."""


class DedupStoreUnavailableError(StaffNotifyError):
    """Deduplication backing store failed."""


class NotFoundError(StaffNotifyError):
    """Requested record or queue item does not exist."""
