from __future__ import annotations

import asyncio
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timezone
import json
import logging
from typing import Any, Callable, Iterable, Literal, Protocol

import httpx

from staffnotify.core.errors import (
    ChannelUnavailableError,
    PermanentDeliveryError,
    TransientDeliveryError,
)
from staffnotify.domain.events import NotificationPayload
from staffnotify.services.notifications.routing import CHANNEL_PUSH, CHANNEL_REALTIME, CHANNEL_WEBHOOK
from staffnotify.services.signing import build_webhook_headers


logger = logging.getLogger(__name__)

DeliveryStatus = Literal["sent", "unavailable", "transient_failure", "permanent_failure"]

STATUS_SENT = "sent"
STATUS_UNAVAILABLE = "unavailable"
STATUS_TRANSIENT = "transient_failure"
STATUS_PERMANENT = "permanent_failure"

# 4xx responses that still deserve a retry.
_NON_TERMINAL_HTTP_4XX = {408, 425, 429}
# Expo ticket errors that mean the token or message will never be accepted.
_EXPO_PERMANENT_ERRORS = {"DeviceNotRegistered", "InvalidCredentials", "MessageTooBig"}
URGENT_SOUND = "urgent_notification.wav"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class DeliveryResult:
    status: str
    detail: str | None = None

    @classmethod
    def sent(cls, detail: str | None = None) -> "DeliveryResult":
        return cls(STATUS_SENT, detail)

    @classmethod
    def unavailable(cls, detail: str | None = None) -> "DeliveryResult":
        return cls(STATUS_UNAVAILABLE, detail)

    @classmethod
    def transient(cls, detail: str | None = None) -> "DeliveryResult":
        return cls(STATUS_TRANSIENT, detail)

    @classmethod
    def permanent(cls, detail: str | None = None) -> "DeliveryResult":
        return cls(STATUS_PERMANENT, detail)

    @classmethod
    def from_exception(cls, exc: Exception) -> "DeliveryResult":
        # Adapters may raise the delivery taxonomy instead of building results.
        if isinstance(exc, ChannelUnavailableError):
            return cls.unavailable(str(exc) or "channel_unavailable")
        if isinstance(exc, PermanentDeliveryError):
            return cls.permanent(str(exc) or "permanent_failure")
        if isinstance(exc, TransientDeliveryError):
            return cls.transient(str(exc) or "transient_failure")
        return cls.transient(f"{type(exc).__name__}: {exc}")


class ChannelAdapter(Protocol):
    name: str

    async def deliver(
        self,
        recipient_id: str,
        payload: NotificationPayload,
        channel_config: dict[str, Any],
    ) -> DeliveryResult: ...


def classify_http_status(status_code: int) -> str:
    # Receiver errors are terminal except throttling/timeouts; everything 5xx retries.
    if status_code < 400:
        return STATUS_SENT
    if 400 <= status_code < 500 and status_code not in _NON_TERMINAL_HTTP_4XX:
        return STATUS_PERMANENT
    return STATUS_TRANSIENT


class _HttpAdapterBase:
    def __init__(self, *, client: httpx.AsyncClient | None = None, timeout_s: float = 5.0) -> None:
        self._client = client
        self._owns_client = client is None
        self._timeout_s = max(0.2, timeout_s)

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout_s)
        return self._client

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def _post(self, url: str, *, content: bytes, headers: dict[str, str]) -> httpx.Response | DeliveryResult:
        try:
            return await self._get_client().post(url, content=content, headers=headers)
        except httpx.TimeoutException as exc:
            return DeliveryResult.transient(f"timeout: {type(exc).__name__}")
        except httpx.HTTPError as exc:
            return DeliveryResult.transient(f"transport_error: {type(exc).__name__}")


class WebhookChannelAdapter(_HttpAdapterBase):
    name = CHANNEL_WEBHOOK

    def __init__(
        self,
        *,
        client: httpx.AsyncClient | None = None,
        secret: str | None = None,
        timeout_s: float = 5.0,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        super().__init__(client=client, timeout_s=timeout_s)
        self._secret = secret
        self._clock = clock

    async def deliver(
        self,
        recipient_id: str,
        payload: NotificationPayload,
        channel_config: dict[str, Any],
    ) -> DeliveryResult:
        url = channel_config.get("webhook_url")
        if not url:
            return DeliveryResult.unavailable("no_webhook_url")
        # noop:// destinations succeed without I/O for local and test wiring.
        if str(url).startswith("noop://"):
            return DeliveryResult.sent("noop")
        notification_id = str(channel_config.get("notification_id") or "")
        event_type = str(channel_config.get("event_type") or "")
        body = json.dumps(
            {
                "notification_id": notification_id,
                "recipient_id": recipient_id,
                "event_type": event_type,
                "priority": channel_config.get("priority"),
                "entity_id": channel_config.get("entity_id"),
                "payload": payload.to_dict(),
            },
            sort_keys=True,
            separators=(",", ":"),
            default=str,
        ).encode("utf-8")
        headers = build_webhook_headers(
            notification_id=notification_id,
            attempt=int(channel_config.get("attempt") or 1),
            event_type=event_type,
            raw_body=body,
            secret=self._secret,
            timestamp=self._clock(),
        )
        response = await self._post(str(url), content=body, headers=headers)
        if isinstance(response, DeliveryResult):
            return response
        status = classify_http_status(response.status_code)
        return DeliveryResult(status, f"http_{response.status_code}")


class ExpoPushChannelAdapter(_HttpAdapterBase):
    name = CHANNEL_PUSH

    def __init__(
        self,
        *,
        gateway_url: str,
        access_token: str | None = None,
        client: httpx.AsyncClient | None = None,
        timeout_s: float = 5.0,
    ) -> None:
        super().__init__(client=client, timeout_s=timeout_s)
        self._gateway_url = gateway_url
        self._access_token = access_token

    def _messages(
        self,
        tokens: list[str],
        payload: NotificationPayload,
        channel_config: dict[str, Any],
    ) -> list[dict[str, Any]]:
        priority = str(channel_config.get("priority") or "normal")
        urgent = priority == "urgent"
        data = dict(payload.data)
        data.setdefault("notification_id", channel_config.get("notification_id"))
        data.setdefault("event_type", channel_config.get("event_type"))
        return [
            {
                "to": token,
                "title": payload.title,
                "body": payload.body,
                "data": data,
                "priority": "high" if priority in {"urgent", "high"} else "default",
                "sound": URGENT_SOUND if urgent else "default",
                "channelId": "urgent" if urgent else "default",
            }
            for token in tokens
        ]

    async def deliver(
        self,
        recipient_id: str,
        payload: NotificationPayload,
        channel_config: dict[str, Any],
    ) -> DeliveryResult:
        tokens = [str(token) for token in channel_config.get("push_tokens") or [] if token]
        if not tokens:
            return DeliveryResult.unavailable("no_push_tokens")
        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        if self._access_token:
            headers["Authorization"] = f"Bearer {self._access_token}"
        body = json.dumps(self._messages(tokens, payload, channel_config), default=str).encode("utf-8")
        response = await self._post(self._gateway_url, content=body, headers=headers)
        if isinstance(response, DeliveryResult):
            return response
        status = classify_http_status(response.status_code)
        if status != STATUS_SENT:
            return DeliveryResult(status, f"http_{response.status_code}")
        try:
            tickets = response.json().get("data") or []
        except ValueError:
            return DeliveryResult.transient("invalid_gateway_response")
        return self._classify_tickets(recipient_id, tickets)

    def _classify_tickets(self, recipient_id: str, tickets: list[dict[str, Any]]) -> DeliveryResult:
        ok = 0
        errors: list[str] = []
        for ticket in tickets:
            if ticket.get("status") == "ok":
                ok += 1
                continue
            details = ticket.get("details") or {}
            errors.append(str(details.get("error") or ticket.get("message") or "unknown"))
        if ok:
            return DeliveryResult.sent(f"tickets_ok={ok}/{len(tickets)}")
        if errors and all(error in _EXPO_PERMANENT_ERRORS for error in errors):
            logger.warning("push_tokens_rejected recipient_id=%s errors=%s", recipient_id, ",".join(errors))
            return DeliveryResult.permanent(",".join(sorted(set(errors))))
        return DeliveryResult.transient(",".join(sorted(set(errors))) or "no_tickets")


class RealtimeBroker:
    """In-process pub/sub for connected clients, keyed by recipient."""

    def __init__(self, max_queue_size: int = 100) -> None:
        self._subscribers: dict[str, list[asyncio.Queue[dict[str, Any]]]] = defaultdict(list)
        self._max_queue_size = max_queue_size

    def subscribe(self, recipient_id: str) -> asyncio.Queue[dict[str, Any]]:
        queue: asyncio.Queue[dict[str, Any]] = asyncio.Queue(maxsize=self._max_queue_size)
        self._subscribers[recipient_id].append(queue)
        return queue

    def unsubscribe(self, recipient_id: str, queue: asyncio.Queue[dict[str, Any]]) -> None:
        queues = self._subscribers.get(recipient_id, [])
        if queue in queues:
            queues.remove(queue)
        if not queues:
            self._subscribers.pop(recipient_id, None)

    def subscriber_count(self, recipient_id: str) -> int:
        return len(self._subscribers.get(recipient_id, []))

    def publish(self, recipient_id: str, message: dict[str, Any]) -> int:
        delivered = 0
        for queue in list(self._subscribers.get(recipient_id, [])):
            try:
                queue.put_nowait(message)
                delivered += 1
            except asyncio.QueueFull:
                logger.warning("realtime_subscriber_full recipient_id=%s", recipient_id)
        return delivered


class RealtimeChannelAdapter:
    name = CHANNEL_REALTIME

    def __init__(self, broker: RealtimeBroker) -> None:
        self._broker = broker

    async def deliver(
        self,
        recipient_id: str,
        payload: NotificationPayload,
        channel_config: dict[str, Any],
    ) -> DeliveryResult:
        if self._broker.subscriber_count(recipient_id) == 0:
            return DeliveryResult.unavailable("no_realtime_subscriber")
        delivered = self._broker.publish(
            recipient_id,
            {
                "notification_id": channel_config.get("notification_id"),
                "event_type": channel_config.get("event_type"),
                "priority": channel_config.get("priority"),
                "payload": payload.to_dict(),
            },
        )
        if delivered == 0:
            return DeliveryResult.transient("realtime_subscribers_saturated")
        return DeliveryResult.sent(f"subscribers={delivered}")


class ChannelRegistry:
    def __init__(self, adapters: Iterable[ChannelAdapter] = ()) -> None:
        self._adapters: dict[str, ChannelAdapter] = {}
        for adapter in adapters:
            self.register(adapter)

    def register(self, adapter: ChannelAdapter) -> None:
        self._adapters[adapter.name] = adapter

    def get(self, name: str) -> ChannelAdapter | None:
        return self._adapters.get(name)

    def names(self) -> list[str]:
        return sorted(self._adapters)

    async def aclose(self) -> None:
        for adapter in self._adapters.values():
            close = getattr(adapter, "aclose", None)
            if close is not None:
                await close()
