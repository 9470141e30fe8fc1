from __future__ import annotations

"""
JSON envelope exception handlers.

FastAPI integrates these via app/main.py. Every error leaves the API as

    {"success": false, "message": "...", "reason": "...", ..., "request_id": "..."}

`AppException` subclasses contribute their reason code and context fields;
plain HTTP errors get a message only; unexpected exceptions become a generic
500 and are logged with their traceback, never echoed to the client.
"""

import logging
from typing import Any, Dict

from fastapi import Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from app.core.exceptions import AppException

logger = logging.getLogger(__name__)


def _request_id(request: Request) -> str:
    return getattr(request.state, "request_id", None) or request.headers.get("X-Request-ID") or "N/A"


def _envelope(status_code: int, body: Dict[str, Any], headers: Dict[str, str] | None = None) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=body, headers=headers)


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:  # type: ignore
    if isinstance(exc, AppException):
        body = exc.to_envelope(fallback_request_id=_request_id(request))
        return _envelope(exc.status_code, body, getattr(exc, "headers", None))

    message = exc.detail if isinstance(exc.detail, str) else str(exc.detail)
    body = {"success": False, "message": message, "request_id": _request_id(request)}
    return _envelope(exc.status_code, body, getattr(exc, "headers", None))


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:  # type: ignore
    body = {
        "success": False,
        "message": "Validation error",
        "reason": "VALIDATION_ERROR",
        "errors": exc.errors(),
        "request_id": _request_id(request),
    }
    return JSONResponse(
        status_code=422,
        content=jsonable_encoder(body, custom_encoder={Exception: str}),
    )


async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:  # type: ignore
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    body = {
        "success": False,
        "message": "An unexpected error occurred.",
        "request_id": _request_id(request),
    }
    return _envelope(status.HTTP_500_INTERNAL_SERVER_ERROR, body)


__all__ = [
    "http_exception_handler",
    "validation_exception_handler",
    "global_exception_handler",
]
