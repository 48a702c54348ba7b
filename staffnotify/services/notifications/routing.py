from __future__ import annotations

from dataclasses import dataclass, field
import json
import logging
from typing import Any, Callable, Protocol

from staffnotify.core.config import Settings
from staffnotify.domain.events import NotificationEvent


logger = logging.getLogger(__name__)

CHANNEL_PUSH = "push"
CHANNEL_REALTIME = "realtime"
CHANNEL_WEBHOOK = "webhook"
KNOWN_CHANNELS = (CHANNEL_PUSH, CHANNEL_REALTIME, CHANNEL_WEBHOOK)

_DEFAULT_PRIORITY_PLANS: dict[str, tuple[str, ...]] = {
    "urgent": (CHANNEL_PUSH, CHANNEL_REALTIME, CHANNEL_WEBHOOK),
    "high": (CHANNEL_PUSH, CHANNEL_REALTIME),
    "normal": (CHANNEL_PUSH,),
    "low": (CHANNEL_PUSH,),
}


@dataclass(frozen=True)
class ChannelTarget:
    # One resolved delivery path; config carries what the adapter needs (tokens, URLs).
    channel: str
    config: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"channel": self.channel, "config": dict(self.config)}

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "ChannelTarget":
        return cls(channel=str(raw["channel"]), config=dict(raw.get("config") or {}))


@dataclass(frozen=True)
class RecipientPreferences:
    recipient_id: str
    disabled_channels: frozenset[str] = frozenset()
    push_tokens: tuple[str, ...] = ()
    webhook_url: str | None = None
    realtime_enabled: bool = True


class PreferenceProvider(Protocol):
    async def get_preferences(self, recipient_id: str) -> RecipientPreferences: ...


class InMemoryPreferenceProvider:
    # Preference storage is owned upstream; this keeps a process-local copy for wiring and tests.
    def __init__(
        self,
        preferences: dict[str, RecipientPreferences] | None = None,
        *,
        default_factory: Callable[[str], RecipientPreferences] | None = None,
    ) -> None:
        self._preferences = dict(preferences or {})
        self._default_factory = default_factory or (lambda recipient_id: RecipientPreferences(recipient_id))

    def set(self, preferences: RecipientPreferences) -> None:
        self._preferences[preferences.recipient_id] = preferences

    async def get_preferences(self, recipient_id: str) -> RecipientPreferences:
        existing = self._preferences.get(recipient_id)
        if existing is not None:
            return existing
        return self._default_factory(recipient_id)


def _parse_plans(raw: str) -> dict[str, tuple[str, ...]]:
    parsed = json.loads(raw or "{}")
    if not isinstance(parsed, dict):
        raise ValueError("channel plan config must be a JSON object")
    plans: dict[str, tuple[str, ...]] = {}
    for name, channels in parsed.items():
        if isinstance(channels, list):
            plans[str(name)] = tuple(str(channel) for channel in channels if isinstance(channel, str))
    return plans


@dataclass(frozen=True)
class RoutingConfig:
    priority_plans: dict[str, tuple[str, ...]] = field(default_factory=lambda: dict(_DEFAULT_PRIORITY_PLANS))
    event_type_plans: dict[str, tuple[str, ...]] = field(default_factory=dict)
    audit_webhook_url: str | None = None

    @classmethod
    def from_settings(cls, settings: Settings) -> "RoutingConfig":
        return cls(
            priority_plans=_parse_plans(settings.notify_channel_plans_json) or dict(_DEFAULT_PRIORITY_PLANS),
            event_type_plans=_parse_plans(settings.notify_event_channel_plans_json),
            audit_webhook_url=settings.notify_audit_webhook_url,
        )


class ChannelRouter:
    def __init__(self, config: RoutingConfig | None = None) -> None:
        self._config = config or RoutingConfig()

    @property
    def config(self) -> RoutingConfig:
        return self._config

    def update_config(self, config: RoutingConfig) -> None:
        self._config = config

    def fallback_order(self, event: NotificationEvent) -> tuple[str, ...]:
        # Event-type overrides win over the priority default.
        plan = self._config.event_type_plans.get(event.event_type)
        if not plan:
            plan = self._config.priority_plans.get(event.priority) or (CHANNEL_PUSH,)
        ordered: list[str] = []
        seen: set[str] = set()
        for channel in plan:
            if channel in seen:
                continue
            seen.add(channel)
            ordered.append(channel)
        return tuple(ordered)

    def _target_for(self, channel: str, preferences: RecipientPreferences) -> ChannelTarget | None:
        if channel == CHANNEL_PUSH:
            tokens = [token for token in preferences.push_tokens if token]
            return ChannelTarget(channel, {"push_tokens": tokens}) if tokens else None
        if channel == CHANNEL_WEBHOOK:
            url = preferences.webhook_url or self._config.audit_webhook_url
            return ChannelTarget(channel, {"webhook_url": url}) if url else None
        if channel == CHANNEL_REALTIME:
            return ChannelTarget(channel, {}) if preferences.realtime_enabled else None
        # Channels without routing rules pass through; the adapter registry decides availability.
        return ChannelTarget(channel, {})

    def resolve_channels(
        self,
        event: NotificationEvent,
        preferences: RecipientPreferences,
    ) -> list[ChannelTarget]:
        """Ordered delivery targets for one event.

        Disabled channels and channels with no delivery path are skipped; the rest keep
        their fallback order. An empty list means nothing can be delivered.
        """
        targets: list[ChannelTarget] = []
        for channel in self.fallback_order(event):
            if channel in preferences.disabled_channels:
                logger.debug("channel_disabled recipient_id=%s channel=%s", event.recipient_id, channel)
                continue
            target = self._target_for(channel, preferences)
            if target is None:
                logger.debug("channel_unavailable recipient_id=%s channel=%s", event.recipient_id, channel)
                continue
            targets.append(target)
        return targets
