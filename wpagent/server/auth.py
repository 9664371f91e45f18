"""
Caller identification.

There are no accounts. A caller is identified by its network address
(the rate-limit key) and may bring its own generative credential in a
header, which exempts it from the shared-credential rate limit.
"""

from __future__ import annotations
import ipaddress
import logging
from dataclasses import dataclass
from typing import Mapping, Optional

from fastapi import Request

logger = logging.getLogger(__name__)

DEFAULT_IDENTITY = "127.0.0.1"

# Checked in order; the first valid address wins.
FORWARDING_HEADERS = ("x-forwarded-for", "x-real-ip", "x-client-ip")

CREDENTIAL_HEADERS = ("x-user-gemini-key", "x-user-api-key")


def normalize_ip(value: Optional[str]) -> Optional[str]:
    """Return a canonical IP string, or None if ``value`` is not an address."""
    if not value:
        return None
    candidate = value.strip()
    if candidate.lower().startswith("::ffff:"):
        candidate = candidate[7:]
    # Bracketed IPv6 or host:port forms
    if candidate.startswith("[") and "]" in candidate:
        candidate = candidate[1:candidate.index("]")]
    elif candidate.count(":") == 1:
        candidate = candidate.split(":", 1)[0]
    try:
        return str(ipaddress.ip_address(candidate))
    except ValueError:
        return None


def client_identity(headers: Mapping[str, str], peer: Optional[str] = None) -> str:
    """
    Resolve the rate-limit key for a request.

    ``X-Forwarded-For`` contributes its first entry only. Falls back to
    the socket peer and finally to 127.0.0.1.
    """
    for name in FORWARDING_HEADERS:
        raw = headers.get(name)
        if not raw:
            continue
        first = raw.split(",")[0] if name == "x-forwarded-for" else raw
        ip = normalize_ip(first)
        if ip:
            return ip
        logger.debug(f"Ignoring invalid {name} value")

    ip = normalize_ip(peer)
    return ip or DEFAULT_IDENTITY


def caller_credential(headers: Mapping[str, str]) -> Optional[str]:
    """The caller-supplied generative credential, if any."""
    for name in CREDENTIAL_HEADERS:
        value = headers.get(name)
        if value and value.strip():
            return value.strip()
    return None


@dataclass(frozen=True)
class Caller:
    identity: str
    api_key: Optional[str] = None

    @property
    def api_key_source(self) -> str:
        return "user" if self.api_key else "server"

    def __repr__(self) -> str:
        # Never print the credential itself
        return f"Caller(identity={self.identity!r}, api_key_source={self.api_key_source!r})"


async def get_caller(request: Request) -> Caller:
    """FastAPI dependency resolving the calling client."""
    peer = request.client.host if request.client else None
    return Caller(
        identity=client_identity(request.headers, peer),
        api_key=caller_credential(request.headers),
    )
