"""
voicegate.api.envelope — Response Envelope & Error Mapping
===========================================================

Every API response has the same shape::

    {"status": "success" | "error", "message": str,
     "data": ..., "errors": ..., "error": {"code": ..., "details": ...}}

``data``/``errors``/``error`` appear only when there is something to put
in them.  Domain error codes are translated to HTTP statuses here and
nowhere else (:data:`STATUS_BY_CODE`).
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from voicegate.engine.errors import AccessError, AccessErrorCode, EventValidationError
from voicegate.services.access_service import AccessResult

logger = logging.getLogger(__name__)

STATUS_BY_CODE: dict[AccessErrorCode, int] = {
    AccessErrorCode.EVENT_NOT_FOUND: 404,
    AccessErrorCode.USER_NOT_FOUND: 404,
    AccessErrorCode.EVENT_TOO_EARLY: 400,
    AccessErrorCode.EVENT_NOT_ACTIVE: 400,
    AccessErrorCode.MISSING_REQUIRED_TAGS: 400,
    AccessErrorCode.DISCORD_NOT_LINKED: 400,
    AccessErrorCode.EVENT_FULL: 400,
    AccessErrorCode.VALIDATION_ERROR: 400,
    AccessErrorCode.RATE_LIMITED: 429,
    AccessErrorCode.DISCORD_ACCESS_FAILED: 500,
    AccessErrorCode.INTERNAL_ERROR: 500,
}


def status_for(code: AccessErrorCode | None) -> int:
    if code is None:
        return 200
    return STATUS_BY_CODE.get(code, 500)


def ok(message: str, data: Any = None) -> dict[str, Any]:
    body: dict[str, Any] = {"status": "success", "message": message}
    if data is not None:
        body["data"] = data
    return body


def error_body(
    message: str,
    *,
    code: str | None = None,
    details: dict[str, Any] | None = None,
    errors: Any = None,
) -> dict[str, Any]:
    body: dict[str, Any] = {"status": "error", "message": message}
    if errors:
        body["errors"] = errors
    if code:
        body["error"] = {"code": code}
        if details:
            body["error"]["details"] = details
    return body


def result_response(result: AccessResult) -> JSONResponse:
    """Render a coordinator result with the status its code maps to."""
    if result.success:
        return JSONResponse(ok(result.message, result.data))
    details = dict(result.details)
    if result.retryable:
        details["retryable"] = True
    return JSONResponse(
        error_body(result.message, code=result.code, details=details),
        status_code=status_for(result.code),
    )


# ---------------------------------------------------------------------------
# Exception handlers
# ---------------------------------------------------------------------------
async def _access_error(request: Request, exc: AccessError) -> JSONResponse:
    headers = None
    if exc.code is AccessErrorCode.RATE_LIMITED and "retry_after" in exc.details:
        headers = {"Retry-After": str(exc.details["retry_after"])}
    return JSONResponse(
        error_body(exc.message, code=exc.code, details=exc.details),
        status_code=status_for(exc.code),
        headers=headers,
    )


async def _event_validation_error(request: Request, exc: EventValidationError) -> JSONResponse:
    return JSONResponse(
        error_body(
            "Validation failed",
            code=AccessErrorCode.VALIDATION_ERROR,
            errors=exc.errors,
        ),
        status_code=400,
    )


async def _request_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = {
        ".".join(str(p) for p in err.get("loc", ()) if p != "body"): err.get("msg", "invalid")
        for err in exc.errors()
    }
    return JSONResponse(
        error_body("Validation failed", code=AccessErrorCode.VALIDATION_ERROR, errors=errors),
        status_code=400,
    )


async def _http_error(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    detail = exc.detail
    if isinstance(detail, dict):
        message = str(detail.get("message", "Request failed"))
        code = detail.get("error")
    else:
        message = str(detail)
        code = None
    return JSONResponse(
        error_body(message, code=code),
        status_code=exc.status_code,
        headers=getattr(exc, "headers", None),
    )


async def _unhandled_error(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(
        error_body("Internal server error", code=AccessErrorCode.INTERNAL_ERROR),
        status_code=500,
    )


def install_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(AccessError, _access_error)
    app.add_exception_handler(EventValidationError, _event_validation_error)
    app.add_exception_handler(RequestValidationError, _request_validation_error)
    app.add_exception_handler(StarletteHTTPException, _http_error)
    app.add_exception_handler(Exception, _unhandled_error)
