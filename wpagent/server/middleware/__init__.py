"""
WP-Agent Server Middleware.

Request logging with request ids, and request guards.
"""

from wpagent.server.middleware.security import SecurityMiddleware
from wpagent.server.middleware.logging import LoggingMiddleware

__all__ = ["SecurityMiddleware", "LoggingMiddleware"]
