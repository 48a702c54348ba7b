from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator
from uuid import uuid4

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from staffnotify.apps.api.errors import (
    engine_exception_handler,
    http_exception_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from staffnotify.apps.api.response import API_VERSION
from staffnotify.apps.api.routes.health import router as health_router
from staffnotify.apps.api.routes.notifications import router as notifications_router
from staffnotify.apps.api.routes.ops import router as ops_router
from staffnotify.apps.api.routes.realtime import router as realtime_router
from staffnotify.core.config import get_settings
from staffnotify.core.errors import StaffNotifyError
from staffnotify.core.logging import configure_logging
from staffnotify.services.notifications.bootstrap import build_orchestrator
from staffnotify.services.notifications.orchestrator import NotificationOrchestrator


def create_app(orchestrator: NotificationOrchestrator | None = None, *, start_engine: bool = True) -> FastAPI:
    """Build the API; an injected orchestrator is used as-is and left for the caller to close."""
    configure_logging()
    settings = get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        owned = orchestrator is None
        engine = orchestrator or build_orchestrator(settings)
        app.state.orchestrator = engine
        app.state.realtime_broker = engine.realtime
        if start_engine:
            await engine.start()
        try:
            yield
        finally:
            if owned:
                await engine.aclose()
            else:
                await engine.stop()

    app = FastAPI(title=settings.app_name, lifespan=lifespan)
    if orchestrator is not None:
        # Available even when the ASGI lifespan is not run (in-process test clients).
        app.state.orchestrator = orchestrator
        app.state.realtime_broker = orchestrator.realtime

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        request_id = request.headers.get("X-Request-Id") or str(uuid4())
        request.state.request_id = request_id
        response = await call_next(request)
        response.headers.setdefault("X-Request-Id", request_id)
        return response

    @app.exception_handler(StarletteHTTPException)
    async def _http_exception_handler(request: Request, exc: StarletteHTTPException):
        return await http_exception_handler(request, exc)

    @app.exception_handler(RequestValidationError)
    async def _validation_exception_handler(request: Request, exc: RequestValidationError):
        return await validation_exception_handler(request, exc)

    @app.exception_handler(StaffNotifyError)
    async def _engine_exception_handler(request: Request, exc: StaffNotifyError):
        return await engine_exception_handler(request, exc)

    @app.exception_handler(Exception)
    async def _unhandled_exception_handler(request: Request, exc: Exception):
        return await unhandled_exception_handler(request, exc)

    app.include_router(health_router, prefix=f"/{API_VERSION}")
    app.include_router(notifications_router, prefix=f"/{API_VERSION}")
    app.include_router(realtime_router, prefix=f"/{API_VERSION}")
    app.include_router(ops_router, prefix=f"/{API_VERSION}")
    return app
