from __future__ import annotations

from fastapi import APIRouter, Depends, Query, Request, Response

from staffnotify.apps.api.deps import get_orchestrator
from staffnotify.apps.api.response import success_response
from staffnotify.services.notifications.orchestrator import NotificationOrchestrator
from staffnotify.services.telemetry import delivery_latency_by_channel


router = APIRouter(prefix="/ops", tags=["ops"])


@router.get("/summary")
async def ops_summary(
    request: Request,
    window_s: int = Query(default=300, ge=1, le=86400),
    orchestrator: NotificationOrchestrator = Depends(get_orchestrator),
) -> dict:
    stats = await orchestrator.stats()
    stats["delivery_latency"] = delivery_latency_by_channel(window_s)
    return success_response(request=request, data=stats)


@router.get("/dead-letters")
async def list_dead_letters(
    request: Request,
    limit: int = Query(default=50, ge=1, le=500),
    orchestrator: NotificationOrchestrator = Depends(get_orchestrator),
) -> dict:
    items = await orchestrator.list_dead_letters(limit)
    return success_response(request=request, data={"items": [item.to_dict() for item in items]})


@router.post("/dead-letters/{item_id}/replay", status_code=202)
async def replay_dead_letter(
    item_id: str,
    request: Request,
    orchestrator: NotificationOrchestrator = Depends(get_orchestrator),
) -> dict:
    result = await orchestrator.replay_dead_letter(item_id)
    return success_response(request=request, data=result.to_dict())


@router.post("/maintenance")
async def run_maintenance(
    request: Request,
    orchestrator: NotificationOrchestrator = Depends(get_orchestrator),
) -> dict:
    return success_response(request=request, data=await orchestrator.run_maintenance())


@router.get("/rate-limits/{recipient_id}")
async def get_rate_limit_status(
    recipient_id: str,
    request: Request,
    orchestrator: NotificationOrchestrator = Depends(get_orchestrator),
) -> dict:
    return success_response(request=request, data=await orchestrator.rate_limit_status(recipient_id))


@router.delete("/rate-limits/{recipient_id}", status_code=204)
async def reset_rate_limit(
    recipient_id: str,
    orchestrator: NotificationOrchestrator = Depends(get_orchestrator),
) -> Response:
    await orchestrator.reset_rate_limit(recipient_id)
    return Response(status_code=204)
