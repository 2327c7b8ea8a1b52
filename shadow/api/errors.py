"""Structured error responses for the relayer API.

Every rejection uses one envelope:

    {
        "error": {
            "code": "REPLAY_DETECTED",
            "message": "Human-readable description",
            "details": [...optional field-level errors...],
            "request_id": "abc-123"
        },
        "message": "Human-readable description"
    }

The top-level ``message`` repeats the description as a plain string for
clients that only read a string.
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from starlette.exceptions import HTTPException as StarletteHTTPException

from shadow.core.errors import ErrorCode, ShadowError

logger = logging.getLogger(__name__)

VALIDATION_ERROR = "VALIDATION_ERROR"
INTERNAL_ERROR = "INTERNAL_ERROR"


# ── Error Schemas ────────────────────────────────────────────────────────────


class FieldError(BaseModel):
    field: str
    message: str
    type: str


class ErrorEnvelope(BaseModel):
    code: str
    message: str
    details: list[FieldError] | list[dict[str, Any]] | None = None
    request_id: str | None = None


class ErrorResponse(BaseModel):
    error: ErrorEnvelope
    message: str


# ── Code → HTTP status ───────────────────────────────────────────────────────

STATUS_FOR_CODE: dict[ErrorCode, int] = {
    ErrorCode.RATE_LIMITED: 429,
    ErrorCode.PAYLOAD_TOO_LARGE: 413,
    ErrorCode.REPLAY_DETECTED: 409,
    ErrorCode.DOUBLE_SPEND: 409,
    ErrorCode.ALREADY_RESERVED_OR_SPENT: 409,
    ErrorCode.RELAYER_UNDERFUNDED: 503,
    ErrorCode.LEDGER_ERROR: 502,
    ErrorCode.PROOF_ERROR: 502,
    ErrorCode.PROOF_TIMEOUT: 504,
    ErrorCode.NOTE_NOT_FOUND: 404,
    ErrorCode.STORAGE_ERROR: 500,
}


def status_for(code: ErrorCode) -> int:
    """HTTP status for a domain error code; anything unlisted is a 400."""
    return STATUS_FOR_CODE.get(code, 400)


def _get_request_id(request: Request) -> str | None:
    return request.headers.get("X-Request-ID") or getattr(request.state, "request_id", None)


def error_response(request: Request, status_code: int, code: str, message: str, details: Any = None) -> JSONResponse:
    body = ErrorResponse(
        error=ErrorEnvelope(
            code=code,
            message=message,
            details=details,
            request_id=_get_request_id(request),
        ),
        message=message,
    )
    return JSONResponse(status_code=status_code, content=body.model_dump(exclude_none=True))


# ── Exception Handlers ──────────────────────────────────────────────────────


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    details = []
    for err in exc.errors():
        loc = err.get("loc", [])
        field = ".".join(str(part) for part in loc if part != "body")
        details.append(
            FieldError(
                field=field or "unknown",
                message=err.get("msg", "Invalid value"),
                type=err.get("type", "value_error"),
            ).model_dump()
        )
    return error_response(
        request, 422, VALIDATION_ERROR, f"Request validation failed: {len(details)} error(s)", details
    )


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    code = ErrorCode.PAYLOAD_TOO_LARGE.value if exc.status_code == 413 else f"HTTP_{exc.status_code}"
    return error_response(request, exc.status_code, code, str(exc.detail) if exc.detail else code)


async def shadow_error_handler(request: Request, exc: ShadowError) -> JSONResponse:
    return error_response(request, status_for(exc.code), exc.code.value, exc.message)


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled exception on %s %s: %s", request.method, request.url.path, exc)
    return error_response(
        request, 500, INTERNAL_ERROR, "An internal server error occurred. Please try again later."
    )


def register_error_handlers(app: Any) -> None:
    """Register all structured error handlers on a FastAPI app."""
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(ShadowError, shadow_error_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)
