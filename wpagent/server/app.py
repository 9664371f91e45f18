"""
WP-Agent Server - FastAPI Application.

Main application factory: prompt dispatch, explicit confirmation of
proposed actions, per-client rate limiting and session inspection.
"""

from __future__ import annotations
import asyncio
import logging
import time
from contextlib import asynccontextmanager, suppress
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Dict, List, Optional

from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from wpagent import __version__
from wpagent.foundation.dispatch import (
    ConfirmRequest,
    DispatchEngine,
    DispatchRequest,
    ErrorReply,
    new_request_id,
    public_site_context,
    to_reply,
    USER_QUOTA_RETRY_SECONDS,
)
from wpagent.foundation.errors import ErrorKind, RateLimitExceededError, ValidationError
from wpagent.foundation.healing import AutoHealer
from wpagent.foundation.llm import GenerativeClient, create_generative_client
from wpagent.foundation.memory import SessionMemory, SessionRegistry
from wpagent.foundation.resilience import ResilientCaller, RetryConfig
from wpagent.server.auth import Caller, get_caller
from wpagent.server.config import ServerConfig
from wpagent.server.middleware import LoggingMiddleware, SecurityMiddleware
from wpagent.server.ratelimit import RateLimiter, minutes_until
from wpagent.server.site import SiteClient

logger = logging.getLogger(__name__)


# =============================================================================
# Request/Response Models
# =============================================================================

class AskRequest(BaseModel):
    """Request model for prompt dispatch."""
    model_config = ConfigDict(populate_by_name=True)

    prompt: str
    site_context: Optional[Dict[str, Any]] = Field(None, alias="siteContext")
    chat_history: List[Dict[str, Any]] = Field(default_factory=list, alias="chatHistory")
    session_id: Optional[str] = Field(None, alias="sessionId", max_length=128)


class AskResponse(BaseModel):
    status: str = "success"
    request_id: str
    mode: str
    api_key_source: str
    reply: Dict[str, Any]
    rate_limit: Optional[Dict[str, Any]] = None
    hints: Dict[str, Any] = Field(default_factory=dict)
    processed_at: str


class ConfirmBody(BaseModel):
    """Explicit confirmation of a pending ability or a structured command."""
    model_config = ConfigDict(populate_by_name=True)

    site_context: Dict[str, Any] = Field(..., alias="siteContext")
    ability_name: Optional[str] = None
    arguments: Dict[str, Any] = Field(default_factory=dict)
    mode: str = "execute"
    command: Optional[str] = None
    session_id: Optional[str] = Field(None, alias="sessionId", max_length=128)


class ConfirmResponse(BaseModel):
    status: str
    request_id: str
    action_type: str
    description: str
    mode: Optional[str] = None
    result: Dict[str, Any]
    recovery: Optional[Dict[str, Any]] = None


class ClearSessionBody(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    site_context: Optional[Dict[str, Any]] = Field(None, alias="siteContext")


class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    version: str
    llm_provider: str
    llm_model: str
    shared_key_configured: bool
    active_sessions: int
    uptime_seconds: float


# =============================================================================
# Application State
# =============================================================================

@dataclass
class AppState:
    """Application state container."""
    config: ServerConfig
    engine: DispatchEngine
    rate_limiter: RateLimiter
    sessions: SessionRegistry
    client: GenerativeClient
    site: SiteClient
    start_time: float = 0.0

    @property
    def uptime(self) -> float:
        return time.time() - self.start_time


def build_state(
    config: ServerConfig,
    client: Optional[GenerativeClient] = None,
    site: Optional[SiteClient] = None,
    rate_limiter: Optional[RateLimiter] = None,
    sleep=None,
) -> AppState:
    """Wire the components for one application instance."""
    client = client or create_generative_client(config.generative)
    site = site or SiteClient(config.site)
    rate_limiter = rate_limiter or RateLimiter(
        limit=config.rate_limit.limit,
        window_seconds=config.rate_limit.window_seconds,
        sweep_interval_seconds=config.rate_limit.sweep_interval_seconds,
    )
    sessions = SessionRegistry(
        max_sessions=config.session.max_sessions,
        max_chat_history=config.session.max_chat_history,
        max_executed_actions=config.session.max_executed_actions,
    )
    caller = ResilientCaller(
        RetryConfig(
            max_attempts=config.generative.max_attempts,
            backoff_base=config.generative.backoff_base,
        ),
        sleep=sleep,
    )
    engine = DispatchEngine(
        client,
        site=site,
        rate_limiter=rate_limiter,
        sessions=sessions,
        caller=caller,
        healer=AutoHealer(client, caller),
        max_prompt_length=config.max_prompt_length,
        max_chat_history=config.session.max_chat_history,
        history_summary_turns=config.session.history_summary_turns,
        action_summary_count=config.session.action_summary_count,
    )
    return AppState(
        config=config,
        engine=engine,
        rate_limiter=rate_limiter,
        sessions=sessions,
        client=client,
        site=site,
        start_time=time.time(),
    )


# =============================================================================
# Dependency Injection
# =============================================================================

async def get_state(request: Request) -> AppState:
    """Get application state from request."""
    return request.app.state.wpagent


def request_id_of(request: Request) -> Optional[str]:
    return getattr(request.state, "request_id", None)


def error_response(
    request: Request,
    status_code: int,
    error_type: str,
    message: str,
    headers: Optional[Dict[str, str]] = None,
    **extra: Any,
) -> JSONResponse:
    body = {
        "status": "error",
        "error_type": error_type,
        "message": message,
        "request_id": request_id_of(request),
        **extra,
    }
    return JSONResponse(body, status_code=status_code, headers=headers)


def session_snapshot(memory: SessionMemory) -> Dict[str, Any]:
    """Session memory as returned to clients; site credentials are stripped."""
    data = memory.to_dict()
    if data["site_context"]:
        data["site_context"] = public_site_context(data["site_context"])
    return data


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


async def _sweep_periodically(limiter: RateLimiter, interval: float) -> None:
    while True:
        await asyncio.sleep(interval)
        limiter.sweep()


# =============================================================================
# Application Factory
# =============================================================================

def create_app(
    config: Optional[ServerConfig] = None,
    client: Optional[GenerativeClient] = None,
    site: Optional[SiteClient] = None,
    rate_limiter: Optional[RateLimiter] = None,
    sleep=None,
) -> FastAPI:
    """
    Create the FastAPI application.

    Args:
        config: Server configuration (uses env vars if not provided)
        client: Generative client override (tests, alternative providers)
        site: Site client override
        rate_limiter: Rate limiter override (custom store or clock)
        sleep: Backoff sleep override for the resilient caller

    Returns:
        Configured FastAPI application
    """
    config = config or ServerConfig.from_env()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        """Application lifespan manager."""
        logger.info("Starting WP-Agent Server...")

        state = build_state(config, client, site, rate_limiter, sleep)
        app.state.wpagent = state

        if not config.generative.has_shared_key:
            logger.warning("No shared generative API key configured; callers must send their own")
        logger.info(f"Using {config.generative.provider}: {config.generative.model}")

        sweeper = asyncio.create_task(
            _sweep_periodically(state.rate_limiter, config.rate_limit.sweep_interval_seconds)
        )
        logger.info(f"WP-Agent Server ready on {config.host}:{config.port}")

        yield

        logger.info("Shutting down WP-Agent Server...")
        sweeper.cancel()
        with suppress(asyncio.CancelledError):
            await sweeper
        await state.client.close()
        await state.site.close()

    app = FastAPI(
        title="WP-Agent API",
        description="Conversational WordPress agent: prompt dispatch, confirmation and recovery",
        version=__version__,
        lifespan=lifespan,
    )

    app.add_middleware(SecurityMiddleware, max_content_length=config.max_content_length)
    app.add_middleware(LoggingMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(config.cors_origins),
        allow_credentials=config.cors_credentials,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ==========================================================================
    # Error Handlers
    # ==========================================================================

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError) -> JSONResponse:
        fields = {".".join(str(p) for p in err.get("loc", ())[1:]) for err in exc.errors()} - {""}
        prompt_related = "prompt" in fields or not fields
        error_type = "INVALID_PROMPT" if request.url.path == "/ask" and prompt_related else "INVALID_REQUEST"
        return error_response(request, 400, error_type, "Invalid request body", fields=sorted(fields))

    @app.exception_handler(ValidationError)
    async def handle_validation(request: Request, exc: ValidationError) -> JSONResponse:
        return error_response(request, 400, exc.error_type, str(exc))

    @app.exception_handler(RateLimitExceededError)
    async def handle_rate_limit(request: Request, exc: RateLimitExceededError) -> JSONResponse:
        state: AppState = request.app.state.wpagent
        retry_after = max(60, exc.reset_in_minutes * 60)
        return error_response(
            request,
            429,
            "RATE_LIMIT_EXCEEDED",
            str(exc),
            headers={"Retry-After": str(retry_after)},
            rate_limit={
                "limit": state.rate_limiter.limit,
                "remaining": 0,
                "reset_in_minutes": exc.reset_in_minutes,
                "reset_time": datetime.fromtimestamp(exc.reset_time, tz=timezone.utc).isoformat(),
            },
        )

    @app.exception_handler(Exception)
    async def handle_unexpected(request: Request, exc: Exception) -> JSONResponse:
        logger.exception(f"[{request_id_of(request)}] Unhandled error on {request.url.path}")
        return error_response(request, 500, "INTERNAL_ERROR", "Internal error while processing the request")

    # ==========================================================================
    # Health & Info Routes
    # ==========================================================================

    @app.get("/health", response_model=HealthResponse, tags=["Health"])
    async def health_check(state: AppState = Depends(get_state)) -> HealthResponse:
        """Check server health and get basic info."""
        return HealthResponse(
            status="healthy",
            version=__version__,
            llm_provider=state.config.generative.provider,
            llm_model=state.config.generative.model,
            shared_key_configured=state.config.generative.has_shared_key,
            active_sessions=len(state.sessions),
            uptime_seconds=state.uptime,
        )

    @app.get("/", tags=["Health"])
    async def root() -> Dict[str, str]:
        """API root - basic info."""
        return {
            "name": "WP-Agent API",
            "version": __version__,
            "docs": "/docs",
        }

    # ==========================================================================
    # Dispatch Routes
    # ==========================================================================

    @app.post("/ask", response_model=AskResponse, tags=["Agent"])
    async def ask(
        body: AskRequest,
        request: Request,
        state: AppState = Depends(get_state),
        caller: Caller = Depends(get_caller),
    ):
        """
        Dispatch one prompt.

        Without a site context the reply is purely conversational. With
        one, proposed actions come back as ``function_call_pending`` and
        are only run through ``/confirm``.
        """
        outcome = await state.engine.dispatch(DispatchRequest(
            prompt=body.prompt,
            identity=caller.identity,
            site_context=body.site_context,
            chat_history=body.chat_history,
            user_api_key=caller.api_key,
            session_id=body.session_id,
            request_id=request_id_of(request) or new_request_id(),
            is_disconnected=request.is_disconnected,
        ))

        if isinstance(outcome.result, ErrorReply):
            if outcome.result.kind == ErrorKind.CREDENTIAL:
                return error_response(request, 401, "USER_CREDENTIAL_INVALID", outcome.result.message,
                                      api_key_source=outcome.api_key_source)
            retry_after = outcome.result.retry_after or USER_QUOTA_RETRY_SECONDS
            now = time.time()
            return error_response(
                request,
                429,
                "USER_QUOTA_EXCEEDED",
                outcome.result.message,
                headers={"Retry-After": str(retry_after)},
                api_key_source=outcome.api_key_source,
                retry_after=retry_after,
                rate_limit={
                    "reset_in_minutes": minutes_until(now + retry_after, now),
                    "reset_time": datetime.fromtimestamp(now + retry_after, tz=timezone.utc).isoformat(),
                },
            )

        return AskResponse(
            request_id=outcome.request_id,
            mode=outcome.mode,
            api_key_source=outcome.api_key_source,
            reply=to_reply(outcome.result),
            rate_limit=outcome.rate_limit,
            hints=outcome.hints,
            processed_at=_now_iso(),
        )

    @app.post("/confirm", response_model=ConfirmResponse, tags=["Agent"])
    async def confirm(
        body: ConfirmBody,
        request: Request,
        state: AppState = Depends(get_state),
        caller: Caller = Depends(get_caller),
    ) -> ConfirmResponse:
        """Execute a pending ability (simulate or execute) or a structured command."""
        outcome = await state.engine.confirm(ConfirmRequest(
            site_context=body.site_context,
            ability_name=body.ability_name,
            arguments=body.arguments,
            mode=body.mode,
            command=body.command,
            identity=caller.identity,
            user_api_key=caller.api_key,
            session_id=body.session_id,
            request_id=request_id_of(request) or new_request_id(),
            is_disconnected=request.is_disconnected,
        ))
        return ConfirmResponse(
            status="success" if outcome.success else "error",
            request_id=outcome.request_id,
            action_type=outcome.action_type,
            description=outcome.description,
            mode=outcome.mode,
            result=outcome.result,
            recovery=outcome.recovery.to_dict() if outcome.recovery else None,
        )

    # ==========================================================================
    # Rate Limit & Session Routes
    # ==========================================================================

    @app.get("/rate-limit/status", tags=["Limits"])
    async def rate_limit_status(
        state: AppState = Depends(get_state),
        caller: Caller = Depends(get_caller),
    ) -> Dict[str, Any]:
        """Current limit state for the calling client. Does not consume a request."""
        decision = state.rate_limiter.check(caller.identity)
        return {
            "status": "success",
            "rate_limit": decision.to_dict(),
            "client_ip": caller.identity,
            "api_key_source": caller.api_key_source,
            "timestamp": _now_iso(),
        }

    @app.get("/session/{session_id}", tags=["Sessions"])
    async def get_session(
        session_id: str,
        request: Request,
        state: AppState = Depends(get_state),
    ):
        """Snapshot of a session's memory."""
        memory = state.sessions.get(session_id)
        if memory is None:
            return error_response(request, 404, "SESSION_NOT_FOUND", f"No session {session_id}")
        return {"status": "success", "session_id": session_id, "memory": session_snapshot(memory)}

    @app.post("/session/{session_id}/clear", tags=["Sessions"])
    async def clear_session(
        session_id: str,
        request: Request,
        body: Optional[ClearSessionBody] = None,
        state: AppState = Depends(get_state),
    ):
        """Clear a session; a supplied site context is kept."""
        memory = state.sessions.get(session_id)
        if memory is None:
            return error_response(request, 404, "SESSION_NOT_FOUND", f"No session {session_id}")
        # Without a body the current site stays connected
        site_context = body.site_context if body is not None else memory.site_context
        memory.clear(site_context)
        return {"status": "success", "session_id": session_id, "memory": session_snapshot(memory)}

    return app


# =============================================================================
# Server Runner
# =============================================================================

class WPAgentServer:
    """
    WP-Agent Server wrapper for easy deployment.

    Usage:
        server = WPAgentServer()
        server.run()

    Or for production:
        server = WPAgentServer.production()
        server.run()
    """

    def __init__(self, config: Optional[ServerConfig] = None):
        self.config = config or ServerConfig.from_env()
        self.app = create_app(self.config)

    @classmethod
    def development(cls) -> WPAgentServer:
        """Create development server."""
        return cls(ServerConfig.development())

    @classmethod
    def production(cls) -> WPAgentServer:
        """Create production server."""
        return cls(ServerConfig.production())

    def configure_logging(self) -> None:
        logging.basicConfig(
            level=getattr(logging, self.config.log_level.upper(), logging.INFO),
            format=self.config.log_format,
        )

    def run(self) -> None:
        """Run the server."""
        import uvicorn

        self.configure_logging()
        uvicorn.run(
            self.app,
            host=self.config.host,
            port=self.config.port,
            log_level=self.config.log_level.lower(),
        )

    async def run_async(self) -> None:
        """Run server asynchronously."""
        import uvicorn

        self.configure_logging()
        config = uvicorn.Config(
            self.app,
            host=self.config.host,
            port=self.config.port,
            log_level=self.config.log_level.lower(),
        )
        server = uvicorn.Server(config)
        await server.serve()
