"""
WP-Agent Server - FastAPI surface for the dispatch engine.

Architecture:
    Client Request -> Caller identity -> Rate Limiter -> Dispatch Engine
                                                             |
                                         Site plugin (abilities, policies, workflows)
                                                             |
                                         Generative service (Gemini / OpenAI-compatible)
"""

from wpagent.server.config import ServerConfig, RateLimitConfig, SiteClientConfig, SessionConfig
from wpagent.server.ratelimit import RateLimiter, InMemoryRateLimitStore
from wpagent.server.site import SiteClient
from wpagent.server.app import create_app, WPAgentServer

__all__ = [
    # Config
    "ServerConfig",
    "RateLimitConfig",
    "SiteClientConfig",
    "SessionConfig",
    # Limits
    "RateLimiter",
    "InMemoryRateLimitStore",
    # Collaborators
    "SiteClient",
    # App
    "create_app",
    "WPAgentServer",
]
