"""
Logging Middleware - request ids, timing and outcome.
"""

from __future__ import annotations
import time
import logging
from typing import Callable
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from wpagent.foundation.dispatch import new_request_id
from wpagent.server.auth import client_identity

logger = logging.getLogger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"


class LoggingMiddleware(BaseHTTPMiddleware):
    """
    Assigns a request id and logs every request.

    The id is stored on ``request.state.request_id`` so handlers and
    error bodies can report it, and echoed in ``X-Request-ID``.
    Credentials are never logged.
    """

    async def dispatch(
        self,
        request: Request,
        call_next: Callable,
    ) -> Response:
        start_time = time.time()
        request_id = new_request_id()
        request.state.request_id = request_id

        peer = request.client.host if request.client else None
        identity = client_identity(request.headers, peer)

        logger.info(f"[{request_id}] {request.method} {request.url.path} from {identity}")

        response = await call_next(request)

        duration_ms = (time.time() - start_time) * 1000
        log_level = logging.INFO if response.status_code < 400 else logging.WARNING
        logger.log(
            log_level,
            f"[{request_id}] {request.method} {request.url.path} -> {response.status_code} ({duration_ms:.1f}ms)",
        )

        response.headers["X-Response-Time"] = f"{duration_ms:.1f}ms"
        response.headers[REQUEST_ID_HEADER] = request_id
        return response
