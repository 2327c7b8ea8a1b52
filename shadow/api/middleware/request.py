"""Request middleware: request ID tracking and body size limits."""

from __future__ import annotations

import logging
import uuid
from typing import Callable

from fastapi import Request, Response, status
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from shadow.core.errors import ErrorCode

logger = logging.getLogger(__name__)

DEFAULT_MAX_REQUEST_SIZE = 64 * 1024


class RequestIDMiddleware(BaseHTTPMiddleware):
    """Propagate or generate X-Request-ID for every request."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get("x-request-id") or str(uuid.uuid4())
        request.state.request_id = request_id

        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response


class RequestSizeLimitMiddleware(BaseHTTPMiddleware):
    """Reject bodies whose declared length exceeds ``max_size`` before reading them."""

    def __init__(self, app: ASGIApp, max_size: int = DEFAULT_MAX_REQUEST_SIZE) -> None:
        super().__init__(app)
        self.max_size = max_size

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        if request.method not in ("POST", "PUT", "PATCH"):
            return await call_next(request)

        content_length = request.headers.get("content-length")
        if content_length and content_length.isdigit() and int(content_length) > self.max_size:
            message = f"Request body too large: {content_length} bytes (max: {self.max_size})"
            return JSONResponse(
                status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
                content={
                    "error": {"code": ErrorCode.PAYLOAD_TOO_LARGE.value, "message": message},
                    "message": message,
                },
            )
        return await call_next(request)
