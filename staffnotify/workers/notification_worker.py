from __future__ import annotations

import logging
from typing import Any

from arq.connections import RedisSettings

from staffnotify.core.config import get_settings
from staffnotify.core.errors import ValidationError
from staffnotify.core.logging import configure_logging
from staffnotify.domain.events import NotificationEvent
from staffnotify.services.notifications.bootstrap import build_orchestrator

logger = logging.getLogger(__name__)


async def submit_notification(ctx: dict[str, Any], event: dict[str, Any]) -> dict[str, Any]:
    # Producers enqueue plain dicts; the engine result is returned as the job result.
    try:
        parsed = NotificationEvent.from_dict(event)
    except ValidationError as exc:
        logger.warning("notification_job_rejected errors=%s", "; ".join(exc.errors))
        return {"success": False, "status": "rejected", "errors": exc.errors}
    result = await ctx["orchestrator"].submit(parsed)
    return result.to_dict()


async def _startup(ctx: dict[str, Any]) -> None:
    # Run delivery loops inside the worker process so queued items drain without the API.
    configure_logging()
    orchestrator = build_orchestrator(get_settings())
    await orchestrator.start()
    ctx["orchestrator"] = orchestrator


async def _shutdown(ctx: dict[str, Any]) -> None:
    orchestrator = ctx.get("orchestrator")
    if orchestrator is not None:
        await orchestrator.aclose()


class WorkerSettings:
    # Keep worker settings as class attributes for ARQ CLI compatibility.
    settings = get_settings()
    redis_settings = RedisSettings.from_dsn(settings.redis_url)
    queue_name = settings.notify_worker_queue_name
    max_tries = max(1, int(settings.notify_worker_max_tries))
    functions = [submit_notification]
    on_startup = _startup
    on_shutdown = _shutdown
