from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, Field

from staffnotify.apps.api.deps import get_orchestrator
from staffnotify.apps.api.response import success_response
from staffnotify.core.errors import DedupStoreUnavailableError, RateLimitedError, ValidationError
from staffnotify.domain.events import NotificationEvent, NotificationPayload
from staffnotify.services.notifications.orchestrator import (
    SUBMIT_DROPPED,
    SUBMIT_REJECTED,
    SUBMIT_UNAVAILABLE,
    NotificationOrchestrator,
)


router = APIRouter(prefix="/notifications", tags=["notifications"])


class PayloadRequest(BaseModel):
    title: str = ""
    body: str = ""
    data: dict[str, Any] = Field(default_factory=dict)


class NotificationRequest(BaseModel):
    # Field checks beyond shape live in the engine so API and arq producers share them.
    event_type: str
    entity_id: str
    recipient_id: str
    source_id: str
    priority: str = "normal"
    payload: PayloadRequest


def _to_event(body: NotificationRequest) -> NotificationEvent:
    return NotificationEvent(
        event_type=body.event_type,
        entity_id=body.entity_id,
        recipient_id=body.recipient_id,
        source_id=body.source_id,
        priority=body.priority,
        payload=NotificationPayload(title=body.payload.title, body=body.payload.body, data=body.payload.data),
    )


@router.post("", status_code=202)
async def submit_notification(
    body: NotificationRequest,
    request: Request,
    orchestrator: NotificationOrchestrator = Depends(get_orchestrator),
) -> dict:
    result = await orchestrator.submit(_to_event(body))
    if result.status == SUBMIT_REJECTED:
        raise ValidationError(result.errors)
    if result.status == SUBMIT_UNAVAILABLE:
        raise DedupStoreUnavailableError("; ".join(result.errors))
    if result.status == SUBMIT_DROPPED:
        raise RateLimitedError(result.rate_limit_scope or "unknown", result.retry_after_s or 1.0)
    return success_response(request=request, data=result.to_dict())


@router.get("")
async def list_notifications(
    request: Request,
    status: str | None = Query(default=None),
    recipient_id: str | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=500),
    orchestrator: NotificationOrchestrator = Depends(get_orchestrator),
) -> dict:
    records = await orchestrator.list_records(status=status, recipient_id=recipient_id, limit=limit)
    return success_response(request=request, data={"items": [record.to_dict() for record in records]})


@router.get("/{record_id}")
async def get_notification(
    record_id: str,
    request: Request,
    orchestrator: NotificationOrchestrator = Depends(get_orchestrator),
) -> dict:
    record = await orchestrator.get_record(record_id)
    return success_response(request=request, data=record.to_dict())


@router.get("/{record_id}/attempts")
async def list_notification_attempts(
    record_id: str,
    request: Request,
    orchestrator: NotificationOrchestrator = Depends(get_orchestrator),
) -> dict:
    attempts = await orchestrator.list_attempts(record_id)
    return success_response(request=request, data={"items": [attempt.to_dict() for attempt in attempts]})
