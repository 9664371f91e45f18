"""
Security Middleware - size and content-type guards, security headers.
"""

from __future__ import annotations
import logging
from typing import Callable
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response, JSONResponse

logger = logging.getLogger(__name__)


def _reject(status_code: int, error_type: str, message: str, request: Request) -> JSONResponse:
    return JSONResponse(
        {
            "status": "error",
            "error_type": error_type,
            "message": message,
            "request_id": getattr(request.state, "request_id", None),
        },
        status_code=status_code,
    )


class SecurityMiddleware(BaseHTTPMiddleware):
    """
    Rejects oversized bodies (413) and unexpected POST content types
    (415) before they reach a handler, and adds standard security
    headers to every response.
    """

    def __init__(
        self,
        app,
        max_content_length: int = 1024 * 1024,
        allowed_content_types: tuple = ("application/json",),
    ):
        super().__init__(app)
        self.max_content_length = max_content_length
        self.allowed_content_types = allowed_content_types

    async def dispatch(
        self,
        request: Request,
        call_next: Callable,
    ) -> Response:
        content_length = request.headers.get("content-length")
        if content_length:
            try:
                size = int(content_length)
            except ValueError:
                return _reject(400, "INVALID_REQUEST", "Invalid Content-Length header", request)
            if size > self.max_content_length:
                logger.warning(f"Rejected {size} byte body on {request.url.path}")
                return _reject(413, "PAYLOAD_TOO_LARGE", "Request too large", request)

        if request.method in ("POST", "PUT", "PATCH"):
            content_type = request.headers.get("content-type", "")
            base_type = content_type.split(";")[0].strip().lower()

            if base_type and base_type not in self.allowed_content_types:
                return _reject(415, "UNSUPPORTED_MEDIA_TYPE", f"Unsupported content type: {base_type}", request)

        response = await call_next(request)

        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        response.headers["Cache-Control"] = "no-store"

        return response
