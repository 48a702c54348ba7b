from __future__ import annotations

from typing import Any

from fastapi import Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from staffnotify.apps.api.response import error_response
from staffnotify.core.errors import (
    DedupStoreUnavailableError,
    NotFoundError,
    RateLimitedError,
    StaffNotifyError,
    ValidationError,
)


_DEFAULT_ERROR_CODES: dict[int, str] = {
    400: "BAD_REQUEST",
    404: "NOT_FOUND",
    409: "CONFLICT",
    422: "VALIDATION_ERROR",
    429: "RATE_LIMITED",
    500: "INTERNAL_ERROR",
    503: "SERVICE_UNAVAILABLE",
}


def _default_code(status_code: int) -> str:
    return _DEFAULT_ERROR_CODES.get(status_code, "UNKNOWN_ERROR")


def _split_detail(detail: Any, status_code: int) -> tuple[str, str, dict[str, Any] | None]:
    # Extract code/message/details from HTTPException detail payloads.
    if isinstance(detail, dict):
        code = str(detail.get("code") or _default_code(status_code))
        message = str(detail.get("message") or "Request failed")
        details = {k: v for k, v in detail.items() if k not in {"code", "message"}}
        return code, message, details or None
    if isinstance(detail, str):
        return _default_code(status_code), detail, None
    return _default_code(status_code), "Request failed", None


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    code, message, details = _split_detail(exc.detail, exc.status_code)
    payload = error_response(request=request, code=code, message=message, details=details)
    return JSONResponse(content=payload, status_code=exc.status_code, headers=exc.headers)


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    payload = error_response(
        request=request,
        code="REQUEST_VALIDATION_ERROR",
        message="Validation error",
        details={"errors": exc.errors()},
    )
    return JSONResponse(content=payload, status_code=422)


def _engine_error_status(exc: StaffNotifyError) -> tuple[int, str, dict[str, Any] | None, dict[str, str] | None]:
    if isinstance(exc, ValidationError):
        return 422, "NOTIFICATION_INVALID", {"errors": exc.errors}, None
    if isinstance(exc, NotFoundError):
        return 404, "NOT_FOUND", None, None
    if isinstance(exc, RateLimitedError):
        headers = {"Retry-After": str(max(1, int(round(exc.retry_after_s))))}
        return 429, "RATE_LIMITED", {"scope": exc.scope, "retry_after_s": exc.retry_after_s}, headers
    if isinstance(exc, DedupStoreUnavailableError):
        return 503, "DEDUP_UNAVAILABLE", None, None
    return 500, "INTERNAL_ERROR", None, None


async def engine_exception_handler(request: Request, exc: StaffNotifyError) -> JSONResponse:
    status_code, code, details, headers = _engine_error_status(exc)
    payload = error_response(request=request, code=code, message=str(exc), details=details)
    return JSONResponse(content=payload, status_code=status_code, headers=headers)


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    # Avoid leaking stack traces; return a stable internal error envelope.
    payload = error_response(request=request, code="INTERNAL_ERROR", message="Internal server error")
    return JSONResponse(content=payload, status_code=500)
