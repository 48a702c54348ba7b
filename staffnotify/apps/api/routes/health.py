from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel

from staffnotify.apps.api.deps import get_orchestrator
from staffnotify.apps.api.response import SuccessEnvelope, success_response
from staffnotify.services.notifications.orchestrator import NotificationOrchestrator

router = APIRouter(tags=["health"])


class HealthResponse(BaseModel):
    status: str
    engine_running: bool


@router.get("/health", response_model=SuccessEnvelope[HealthResponse])
async def health(
    request: Request,
    orchestrator: NotificationOrchestrator = Depends(get_orchestrator),
) -> dict:
    payload = HealthResponse(status="ok", engine_running=orchestrator.running)
    return success_response(request=request, data=payload)
