"""
Error taxonomy for the orchestration layer.

ValidationError surfaces immediately. GenerativeError subclasses carry a
kind and a retryable flag so the resilient caller can decide what to retry
without inspecting messages. Caller-supplied credential problems are
reported through the dispatch ErrorReply rather than raised.
"""

from __future__ import annotations
import asyncio
import logging
from typing import Optional

import aiohttp

logger = logging.getLogger(__name__)


class ErrorKind:
    """Classification of failures, shared by caller, dispatcher and HTTP layer."""
    VALIDATION = "VALIDATION"
    CREDENTIAL = "CREDENTIAL"
    RATE_LIMITED = "RATE_LIMITED"        # local per-client limit
    UPSTREAM_QUOTA = "UPSTREAM_QUOTA"    # generative service quota / 429
    UNAVAILABLE = "UNAVAILABLE"          # 502/503/504
    TIMEOUT = "TIMEOUT"
    NETWORK = "NETWORK"
    PARSE = "PARSE"
    UNKNOWN = "UNKNOWN"


RETRYABLE_KINDS = frozenset({
    ErrorKind.UPSTREAM_QUOTA,
    ErrorKind.UNAVAILABLE,
    ErrorKind.TIMEOUT,
    ErrorKind.NETWORK,
})


# =============================================================================
# Exceptions
# =============================================================================

class AgentError(Exception):
    """Base error for the orchestration layer."""
    kind = ErrorKind.UNKNOWN


class ValidationError(AgentError):
    """Malformed or oversized input."""
    kind = ErrorKind.VALIDATION

    def __init__(self, message: str, error_type: str = "INVALID_PROMPT"):
        super().__init__(message)
        self.error_type = error_type


class RateLimitExceededError(AgentError):
    """The local per-client limit has been reached."""
    kind = ErrorKind.RATE_LIMITED

    def __init__(self, message: str, reset_in_minutes: int, reset_time: float):
        super().__init__(message)
        self.reset_in_minutes = reset_in_minutes
        self.reset_time = reset_time


class GenerativeError(AgentError):
    """Failure talking to the generative service, already classified."""

    def __init__(
        self,
        message: str,
        kind: str = ErrorKind.UNKNOWN,
        status: Optional[int] = None,
    ):
        super().__init__(message)
        self.kind = kind
        self.status = status

    @property
    def retryable(self) -> bool:
        return self.kind in RETRYABLE_KINDS

    def __repr__(self) -> str:
        return f"{type(self).__name__}(kind={self.kind}, status={self.status}, message={str(self)!r})"


class UpstreamQuotaError(GenerativeError):
    def __init__(self, message: str, status: Optional[int] = 429):
        super().__init__(message, ErrorKind.UPSTREAM_QUOTA, status)


class UpstreamUnavailableError(GenerativeError):
    def __init__(self, message: str, kind: str = ErrorKind.UNAVAILABLE, status: Optional[int] = None):
        super().__init__(message, kind, status)


class UpstreamCredentialError(GenerativeError):
    def __init__(self, message: str, status: Optional[int] = 401):
        super().__init__(message, ErrorKind.CREDENTIAL, status)


class ParseError(GenerativeError):
    """Generative output could not be interpreted. Always recovered locally."""

    def __init__(self, message: str):
        super().__init__(message, ErrorKind.PARSE)


# =============================================================================
# Classification
# =============================================================================

# Upstream status strings (Google RPC style) and error reasons.
_STATUS_KINDS = {
    "RESOURCE_EXHAUSTED": ErrorKind.UPSTREAM_QUOTA,
    "UNAVAILABLE": ErrorKind.UNAVAILABLE,
    "DEADLINE_EXCEEDED": ErrorKind.TIMEOUT,
    "UNAUTHENTICATED": ErrorKind.CREDENTIAL,
    "PERMISSION_DENIED": ErrorKind.CREDENTIAL,
    "API_KEY_INVALID": ErrorKind.CREDENTIAL,
    "INVALID_ARGUMENT": ErrorKind.VALIDATION,
}

_HTTP_KINDS = {
    401: ErrorKind.CREDENTIAL,
    403: ErrorKind.CREDENTIAL,
    408: ErrorKind.TIMEOUT,
    429: ErrorKind.UPSTREAM_QUOTA,
    502: ErrorKind.UNAVAILABLE,
    503: ErrorKind.UNAVAILABLE,
    504: ErrorKind.TIMEOUT,
}

# Last resort for unstructured errors; first match wins.
_MESSAGE_HINTS = (
    ("api key", ErrorKind.CREDENTIAL),
    ("exhausted", ErrorKind.UPSTREAM_QUOTA),
    ("quota", ErrorKind.UPSTREAM_QUOTA),
    ("rate limit", ErrorKind.UPSTREAM_QUOTA),
    ("429", ErrorKind.UPSTREAM_QUOTA),
    ("503", ErrorKind.UNAVAILABLE),
    ("timeout", ErrorKind.TIMEOUT),
    ("timed out", ErrorKind.TIMEOUT),
    ("network", ErrorKind.NETWORK),
    ("connection", ErrorKind.NETWORK),
)


def kind_from_upstream(status: Optional[int], upstream_status: Optional[str] = None) -> str:
    """Map explicit upstream codes to an ErrorKind, UNKNOWN when neither is recognised."""
    if upstream_status and upstream_status.upper() in _STATUS_KINDS:
        return _STATUS_KINDS[upstream_status.upper()]
    if status is not None:
        if status in _HTTP_KINDS:
            return _HTTP_KINDS[status]
        if status >= 500:
            return ErrorKind.UNAVAILABLE
    return ErrorKind.UNKNOWN


def kind_from_message(message: str) -> str:
    lowered = message.lower()
    for needle, kind in _MESSAGE_HINTS:
        if needle in lowered:
            return kind
    return ErrorKind.UNKNOWN


def classify_error(exc: BaseException) -> GenerativeError:
    """
    Turn any exception raised around a generative call into a GenerativeError.

    Explicit codes win (already-classified errors, HTTP status, transport
    exception types); message substrings are consulted only when nothing
    structured is available.
    """
    if isinstance(exc, GenerativeError):
        if exc.kind != ErrorKind.UNKNOWN:
            return exc
        hinted = kind_from_message(str(exc))
        return GenerativeError(str(exc), hinted, exc.status) if hinted != ErrorKind.UNKNOWN else exc

    if isinstance(exc, asyncio.TimeoutError):
        return UpstreamUnavailableError(
            str(exc) or "Generative service timed out", kind=ErrorKind.TIMEOUT,
        )

    if isinstance(exc, aiohttp.ClientResponseError):
        kind = kind_from_upstream(exc.status)
        if kind == ErrorKind.UNKNOWN:
            kind = kind_from_message(exc.message or "")
        return GenerativeError(f"HTTP {exc.status}: {exc.message}", kind, exc.status)

    if isinstance(exc, aiohttp.ClientError):
        return UpstreamUnavailableError(
            f"Connection error: {exc}", kind=ErrorKind.NETWORK,
        )

    kind = kind_from_message(str(exc))
    if kind == ErrorKind.UNKNOWN:
        logger.debug(f"Unclassified error {type(exc).__name__}: {exc}")
    return GenerativeError(str(exc) or type(exc).__name__, kind)
