"""
Result type for collaborator calls.

Optional steps (ability discovery, policy evaluation, workflow suggestion,
remote execution) report failure as values instead of raising, so the
dispatch path can absorb them without try/except at every call site.

Usage:
    result = await site.discover_abilities(site_url, token)
    match result:
        case Ok(abilities):
            ...
        case Err(error):
            logger.warning(f"Discovery skipped: {error}")
"""

from __future__ import annotations
from dataclasses import dataclass
from typing import TypeVar, Generic, Union, Optional

T = TypeVar('T')  # Success type
E = TypeVar('E')  # Error type


# =============================================================================
# RESULT TYPE
# =============================================================================

@dataclass(frozen=True, slots=True)
class Ok(Generic[T, E]):
    """Success variant of Result."""
    value: T

    def is_err(self) -> bool:
        return False

    def unwrap(self) -> T:
        return self.value

    def __bool__(self) -> bool:
        return True


@dataclass(frozen=True, slots=True)
class Err(Generic[T, E]):
    """Error variant of Result."""
    error: E

    def is_err(self) -> bool:
        return True

    def unwrap(self) -> T:
        raise UnwrapError(f"Called unwrap on Err: {self.error}")

    def __bool__(self) -> bool:
        return False


Result = Union[Ok[T, E], Err[T, E]]


class UnwrapError(Exception):
    """Raised when unwrap is called on the wrong variant."""
    pass


# =============================================================================
# ERROR VALUES
# =============================================================================

@dataclass(frozen=True)
class Error:
    """Structured error value carried by Err."""
    code: str
    message: str
    details: Optional[dict] = None

    def __str__(self) -> str:
        return f"[{self.code}] {self.message}"


class ErrorCode:
    """Codes used by the remote site collaborator."""
    UNSUPPORTED = "UNSUPPORTED"          # endpoint missing (404)
    PLUGIN_NOT_FOUND = "PLUGIN_NOT_FOUND"
    INVALID_INPUT = "INVALID_INPUT"
    UNAUTHORIZED = "UNAUTHORIZED"
    HTTP_ERROR = "HTTP_ERROR"
    INVALID_RESPONSE = "INVALID_RESPONSE"
    TIMEOUT = "TIMEOUT"
    CONNECTION_ERROR = "CONNECTION_ERROR"
    UNKNOWN = "UNKNOWN"
