from __future__ import annotations

import logging
from typing import Any

from fastapi import HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException


logger = logging.getLogger(__name__)

_DEFAULT_ERROR_CODES: dict[int, str] = {
    400: "BAD_REQUEST",
    401: "AUTH_UNAUTHORIZED",
    403: "AUTH_FORBIDDEN",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    422: "VALIDATION_ERROR",
    429: "RATE_LIMITED",
    500: "INTERNAL_ERROR",
    502: "UPSTREAM_ERROR",
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


def error_payload(*, code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    return {"error": {"code": code, "message": message, "details": details}}


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    # Normalize FastAPI and Starlette HTTP errors into one machine-readable envelope.
    code, message, details = _split_detail(exc.detail, exc.status_code)
    return JSONResponse(
        content=error_payload(code=code, message=message, details=details),
        status_code=exc.status_code,
        headers=getattr(exc, "headers", None),
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse(
        content=error_payload(
            code="REQUEST_VALIDATION_ERROR",
            message="Validation error",
            details={"errors": exc.errors()},
        ),
        status_code=422,
    )


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    # Never leak internal fault text; log it and return a stable envelope.
    logger.exception("unhandled_exception path=%s", request.url.path, exc_info=exc)
    return JSONResponse(
        content=error_payload(code="INTERNAL_ERROR", message="Internal server error"),
        status_code=500,
    )


def register_exception_handlers(app: Any) -> None:
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)
