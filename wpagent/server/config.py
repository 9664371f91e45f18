"""
Server Configuration - generative provider, limits and site client.

Supports environment variables for all sensitive configuration.
"""

from __future__ import annotations
import os
from dataclasses import dataclass, field

from wpagent.foundation.llm import GEMINI_BASE_URL, GenerativeConfig


@dataclass
class RateLimitConfig:
    """Per-client limits for callers using the shared credential."""

    limit: int = 50
    window_seconds: int = 3600
    sweep_interval_seconds: int = 600

    @classmethod
    def from_env(cls) -> RateLimitConfig:
        """Create config from environment variables."""
        return cls(
            limit=int(os.getenv("RATE_LIMIT_REQUESTS", "50")),
            window_seconds=int(os.getenv("RATE_LIMIT_WINDOW", "3600")),
            sweep_interval_seconds=int(os.getenv("RATE_LIMIT_SWEEP_INTERVAL", "600")),
        )


@dataclass
class SiteClientConfig:
    """Remote WordPress plugin client settings."""

    timeout: float = 15.0
    execute_timeout: float = 30.0
    simulate_timeout: float = 15.0
    user_agent: str = "WP-Agent/1.0"
    abilities_cache_seconds: int = 300

    @classmethod
    def from_env(cls) -> SiteClientConfig:
        """Create config from environment variables."""
        return cls(
            timeout=float(os.getenv("SITE_TIMEOUT", "15")),
            execute_timeout=float(os.getenv("SITE_EXECUTE_TIMEOUT", "30")),
            simulate_timeout=float(os.getenv("SITE_SIMULATE_TIMEOUT", "15")),
            user_agent=os.getenv("SITE_USER_AGENT", "WP-Agent/1.0"),
            abilities_cache_seconds=int(os.getenv("ABILITIES_CACHE_SECONDS", "300")),
        )


@dataclass
class SessionConfig:
    """Bounds for per-conversation memory."""

    max_chat_history: int = 10
    max_executed_actions: int = 20
    history_summary_turns: int = 10
    action_summary_count: int = 5
    max_sessions: int = 1000

    @classmethod
    def from_env(cls) -> SessionConfig:
        return cls(
            max_sessions=int(os.getenv("MAX_SESSIONS", "1000")),
        )


@dataclass
class ServerConfig:
    """Complete server configuration."""

    # Server settings
    host: str = "0.0.0.0"
    port: int = 3001
    debug: bool = False

    # CORS settings
    cors_origins: tuple = ("*",)
    cors_credentials: bool = True

    # Request limits
    max_prompt_length: int = 10_000
    max_content_length: int = 1024 * 1024

    # Component configs
    generative: GenerativeConfig = field(default_factory=GenerativeConfig.from_env)
    rate_limit: RateLimitConfig = field(default_factory=RateLimitConfig.from_env)
    site: SiteClientConfig = field(default_factory=SiteClientConfig.from_env)
    session: SessionConfig = field(default_factory=SessionConfig.from_env)

    # Logging
    log_level: str = "INFO"
    log_format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

    @classmethod
    def from_env(cls) -> ServerConfig:
        """Create complete config from environment variables."""
        origins = os.getenv("CORS_ORIGINS", "*")
        return cls(
            host=os.getenv("SERVER_HOST", "0.0.0.0"),
            port=int(os.getenv("SERVER_PORT", os.getenv("PORT", "3001"))),
            debug=os.getenv("DEBUG", "false").lower() == "true",
            cors_origins=tuple(o.strip() for o in origins.split(",") if o.strip()),
            max_prompt_length=int(os.getenv("MAX_PROMPT_LENGTH", "10000")),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
        )

    @classmethod
    def development(cls) -> ServerConfig:
        """Development configuration with sensible defaults."""
        return cls(
            debug=True,
            log_level="DEBUG",
            generative=GenerativeConfig(
                base_url=os.getenv("LLM_BASE_URL", GEMINI_BASE_URL),
                api_key=os.getenv("GEMINI_API_KEY", ""),
                max_attempts=2,
                backoff_base=0.5,
            ),
            rate_limit=RateLimitConfig(limit=1000),
        )

    @classmethod
    def production(cls) -> ServerConfig:
        """Production configuration from environment."""
        config = cls.from_env()

        # Validate production settings
        if config.generative.provider == "gemini" and not config.generative.has_shared_key:
            raise ValueError("GEMINI_API_KEY must be set in production!")

        return config
