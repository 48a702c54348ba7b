from __future__ import annotations

from fastapi import HTTPException, Request

from staffnotify.services.notifications.orchestrator import NotificationOrchestrator


def get_orchestrator(request: Request) -> NotificationOrchestrator:
    # One engine per app instance, created in the lifespan hook.
    orchestrator = getattr(request.app.state, "orchestrator", None)
    if orchestrator is None:
        raise HTTPException(status_code=503, detail={"code": "ENGINE_UNAVAILABLE", "message": "Engine not started"})
    return orchestrator
