from __future__ import annotations

import asyncio
import logging

from fastapi import APIRouter, WebSocket, WebSocketDisconnect, status


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/notifications", tags=["notifications"])


@router.websocket("/realtime/{recipient_id}")
async def realtime_stream(websocket: WebSocket, recipient_id: str) -> None:
    broker = getattr(websocket.app.state, "realtime_broker", None)
    if broker is None:
        await websocket.close(code=status.WS_1013_TRY_AGAIN_LATER)
        return
    # Subscribe before accepting so deliveries after the handshake are never missed.
    queue = broker.subscribe(recipient_id)
    await websocket.accept()
    logger.info("realtime_connected recipient_id=%s", recipient_id)

    async def forward() -> None:
        while True:
            message = await queue.get()
            await websocket.send_json(message)

    sender = asyncio.create_task(forward())
    try:
        while True:
            # Client frames are ignored; receiving only detects the disconnect.
            await websocket.receive_text()
    except WebSocketDisconnect:
        pass
    finally:
        sender.cancel()
        broker.unsubscribe(recipient_id, queue)
        logger.info("realtime_disconnected recipient_id=%s", recipient_id)
