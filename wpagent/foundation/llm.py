"""
LLM - Generative service clients for wp-agent

Two providers share one async interface:
- GeminiClient: Google Generative Language REST API (generateContent)
- OpenAICompatibleClient: any /chat/completions endpoint (llama.cpp, OpenAI, ...)

Each client makes exactly ONE attempt per call and raises a classified
GenerativeError on failure. Retrying is the ResilientCaller's job, so
the same client serves the primary dispatch path and the healing loop.

A per-call ``api_key`` overrides the configured shared key; this is how
caller-supplied credentials flow through without touching configuration.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol, runtime_checkable
import asyncio
import json
import logging
import os
import re

import aiohttp

from wpagent.foundation.errors import (
    ErrorKind,
    GenerativeError,
    ParseError,
    UpstreamCredentialError,
    UpstreamQuotaError,
    UpstreamUnavailableError,
    kind_from_message,
    kind_from_upstream,
)

logger = logging.getLogger(__name__)


# =============================================================================
# CONFIGURATION
# =============================================================================

GEMINI_BASE_URL = "https://generativelanguage.googleapis.com"


@dataclass
class GenerativeConfig:
    """Configuration for the generative service."""
    provider: str = "gemini"  # gemini | openai_compatible
    base_url: str = GEMINI_BASE_URL
    api_key: str = ""  # shared server credential
    model: str = "gemini-2.5-flash"

    temperature: float = 0.7
    max_tokens: int = 2048
    timeout: float = 60.0

    # Used by the ResilientCaller, not by the clients
    max_attempts: int = 2
    backoff_base: float = 1.0

    @classmethod
    def from_env(cls) -> GenerativeConfig:
        provider = os.getenv("LLM_PROVIDER", "gemini")
        default_url = GEMINI_BASE_URL if provider == "gemini" else "http://localhost:8080/v1"
        return cls(
            provider=provider,
            base_url=os.getenv("LLM_BASE_URL", default_url),
            api_key=os.getenv("GEMINI_API_KEY", os.getenv("LLM_API_KEY", "")),
            model=os.getenv("LLM_MODEL", "gemini-2.5-flash"),
            temperature=float(os.getenv("LLM_TEMPERATURE", "0.7")),
            max_tokens=int(os.getenv("LLM_MAX_TOKENS", "2048")),
            timeout=float(os.getenv("LLM_TIMEOUT", "60")),
            max_attempts=int(os.getenv("LLM_MAX_ATTEMPTS", "2")),
            backoff_base=float(os.getenv("LLM_BACKOFF_BASE", "1.0")),
        )

    @property
    def has_shared_key(self) -> bool:
        return bool(self.api_key)


# =============================================================================
# REQUEST / RESPONSE
# =============================================================================

@dataclass
class ToolSpec:
    """A function the model may ask to call."""
    name: str
    description: str
    parameters: Dict[str, Any] = field(default_factory=dict)


@dataclass
class GenerationRequest:
    prompt: str
    system_instruction: str = ""
    tools: List[ToolSpec] = field(default_factory=list)


@dataclass
class FunctionCall:
    name: str
    args: Dict[str, Any] = field(default_factory=dict)


@dataclass
class GenerationResponse:
    """Response from the generative service."""
    text: str = ""
    function_call: Optional[FunctionCall] = None
    model: str = ""
    finish_reason: str = "unknown"
    raw_response: Dict[str, Any] = field(default_factory=dict)


@runtime_checkable
class GenerativeClient(Protocol):
    """Single-attempt generative call. Raises GenerativeError on failure."""

    async def generate(
        self,
        request: GenerationRequest,
        api_key: Optional[str] = None,
    ) -> GenerationResponse:
        ...

    async def close(self) -> None:
        ...


# =============================================================================
# PAYLOAD HELPERS
# =============================================================================

# Keys the Gemini function-declaration schema rejects.
_UNSUPPORTED_SCHEMA_KEYS = {"$schema", "additionalProperties", "default", "examples", "$id", "title"}


def clean_schema(schema: Any) -> Any:
    """Strip JSON-Schema keys that function declarations do not accept."""
    if isinstance(schema, dict):
        return {
            key: clean_schema(value)
            for key, value in schema.items()
            if key not in _UNSUPPORTED_SCHEMA_KEYS
        }
    if isinstance(schema, list):
        return [clean_schema(item) for item in schema]
    return schema


def error_from_payload(status: int, data: Any, text: str = "") -> GenerativeError:
    """
    Build a classified error from a non-200 upstream response.

    Looks at ``{"error": {"code", "message", "status", "details": [{"reason"}]}}``
    first and only falls back to message substrings when none of those are set.
    """
    error = data.get("error") if isinstance(data, dict) else None
    if isinstance(error, list) and error:
        error = error[0]
    if not isinstance(error, dict):
        error = {}

    message = str(error.get("message") or text or f"HTTP {status}")
    upstream_status = error.get("status") or error.get("type")

    reasons = [
        d.get("reason") for d in error.get("details", []) or []
        if isinstance(d, dict) and d.get("reason")
    ]
    if "API_KEY_INVALID" in reasons:
        kind = ErrorKind.CREDENTIAL
    else:
        kind = kind_from_upstream(status, upstream_status)
        # Gemini reports a bad key as 400 INVALID_ARGUMENT
        if kind in (ErrorKind.UNKNOWN, ErrorKind.VALIDATION):
            hinted = kind_from_message(message)
            if hinted != ErrorKind.UNKNOWN:
                kind = hinted

    if kind == ErrorKind.CREDENTIAL:
        return UpstreamCredentialError(message, status=status)
    if kind == ErrorKind.UPSTREAM_QUOTA:
        return UpstreamQuotaError(message, status=status)
    if kind in (ErrorKind.UNAVAILABLE, ErrorKind.TIMEOUT, ErrorKind.NETWORK):
        return UpstreamUnavailableError(message, kind=kind, status=status)
    return GenerativeError(message, kind, status)


def parse_gemini_payload(data: Dict[str, Any], model: str = "") -> GenerationResponse:
    """Read text and the first function call from ``candidates[0].content.parts``."""
    candidates = data.get("candidates") or []
    if not candidates:
        block = (data.get("promptFeedback") or {}).get("blockReason")
        raise ParseError(f"No candidates in response{f' (blocked: {block})' if block else ''}")

    candidate = candidates[0]
    parts = (candidate.get("content") or {}).get("parts") or []

    texts: List[str] = []
    call: Optional[FunctionCall] = None
    for part in parts:
        if "functionCall" in part and call is None:
            fc = part["functionCall"] or {}
            call = FunctionCall(name=str(fc.get("name", "")), args=dict(fc.get("args") or {}))
        elif "text" in part:
            texts.append(str(part["text"]))

    return GenerationResponse(
        text="".join(texts),
        function_call=call,
        model=data.get("modelVersion", model),
        finish_reason=str(candidate.get("finishReason", "unknown")),
        raw_response=data,
    )


def parse_openai_payload(data: Dict[str, Any], model: str = "") -> GenerationResponse:
    """Read ``choices[0].message`` including an optional tool call."""
    choices = data.get("choices") or []
    if not choices:
        raise ParseError("No choices in response")

    choice = choices[0]
    message = choice.get("message") or {}

    call = None
    tool_calls = message.get("tool_calls") or []
    if tool_calls:
        fn = tool_calls[0].get("function") or {}
        raw_args = fn.get("arguments") or "{}"
        try:
            args = json.loads(raw_args) if isinstance(raw_args, str) else dict(raw_args)
        except json.JSONDecodeError:
            args = {}
        call = FunctionCall(name=str(fn.get("name", "")), args=args)

    return GenerationResponse(
        text=message.get("content") or "",
        function_call=call,
        model=data.get("model", model),
        finish_reason=choice.get("finish_reason", "unknown"),
        raw_response=data,
    )


def extract_json(text: str) -> Optional[Dict[str, Any]]:
    """Extract a JSON object from model output, handling markdown code blocks."""
    try:
        value = json.loads(text)
        return value if isinstance(value, dict) else None
    except json.JSONDecodeError:
        pass

    patterns = [
        r'```json\s*([\s\S]*?)\s*```',
        r'```\s*([\s\S]*?)\s*```',
        r'\{[\s\S]*\}',
    ]

    for pattern in patterns:
        match = re.search(pattern, text)
        if match:
            try:
                json_str = match.group(1) if '```' in pattern else match.group(0)
                value = json.loads(json_str)
                if isinstance(value, dict):
                    return value
            except (json.JSONDecodeError, IndexError):
                continue

    return None


# =============================================================================
# CLIENTS
# =============================================================================

class _HTTPClient:
    """Shared aiohttp session handling and usage counters."""

    def __init__(self, config: Optional[GenerativeConfig] = None):
        self.config = config or GenerativeConfig()
        self._session: Optional[aiohttp.ClientSession] = None

        self.total_requests = 0
        self.failed_requests = 0

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            timeout = aiohttp.ClientTimeout(total=self.config.timeout)
            self._session = aiohttp.ClientSession(timeout=timeout)
        return self._session

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()

    def _resolve_key(self, api_key: Optional[str]) -> str:
        key = api_key or self.config.api_key
        if not key:
            raise UpstreamCredentialError("No generative API key configured", status=None)
        return key

    async def _post(self, url: str, payload: Dict[str, Any], headers: Dict[str, str]) -> Dict[str, Any]:
        session = await self._get_session()
        self.total_requests += 1
        try:
            async with session.post(url, json=payload, headers=headers) as response:
                text = await response.text()
                try:
                    data = json.loads(text) if text else {}
                except json.JSONDecodeError:
                    data = {}

                if response.status != 200:
                    self.failed_requests += 1
                    raise error_from_payload(response.status, data, text[:500])

                if not isinstance(data, dict):
                    self.failed_requests += 1
                    raise ParseError("Response body is not a JSON object")
                return data

        except asyncio.TimeoutError:
            self.failed_requests += 1
            raise UpstreamUnavailableError(
                f"Generative request timed out after {self.config.timeout}s",
                kind=ErrorKind.TIMEOUT,
            )
        except aiohttp.ClientError as e:
            self.failed_requests += 1
            raise UpstreamUnavailableError(f"Connection error: {e}", kind=ErrorKind.NETWORK)

    def get_usage_stats(self) -> Dict[str, Any]:
        return {
            "provider": self.config.provider,
            "model": self.config.model,
            "total_requests": self.total_requests,
            "failed_requests": self.failed_requests,
            "success_rate": (self.total_requests - self.failed_requests) / max(1, self.total_requests),
        }


class GeminiClient(_HTTPClient):
    """Client for ``POST /v1beta/models/{model}:generateContent``."""

    def build_payload(self, request: GenerationRequest) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "contents": [{"role": "user", "parts": [{"text": request.prompt}]}],
            "generationConfig": {
                "temperature": self.config.temperature,
                "maxOutputTokens": self.config.max_tokens,
            },
        }
        if request.system_instruction:
            payload["systemInstruction"] = {"parts": [{"text": request.system_instruction}]}
        if request.tools:
            declarations = []
            for tool in request.tools:
                declaration: Dict[str, Any] = {"name": tool.name, "description": tool.description}
                if tool.parameters.get("properties"):
                    declaration["parameters"] = clean_schema(tool.parameters)
                declarations.append(declaration)
            payload["tools"] = [{"functionDeclarations": declarations}]
        return payload

    async def generate(
        self,
        request: GenerationRequest,
        api_key: Optional[str] = None,
    ) -> GenerationResponse:
        key = self._resolve_key(api_key)
        url = f"{self.config.base_url.rstrip('/')}/v1beta/models/{self.config.model}:generateContent"
        headers = {"Content-Type": "application/json", "x-goog-api-key": key}

        data = await self._post(url, self.build_payload(request), headers)
        return parse_gemini_payload(data, self.config.model)


class OpenAICompatibleClient(_HTTPClient):
    """Client for OpenAI-compatible ``/chat/completions`` endpoints."""

    def _resolve_key(self, api_key: Optional[str]) -> str:
        # Local servers (llama.cpp) accept any bearer token
        return api_key or self.config.api_key or "not-needed"

    def build_payload(self, request: GenerationRequest) -> Dict[str, Any]:
        messages = []
        if request.system_instruction:
            messages.append({"role": "system", "content": request.system_instruction})
        messages.append({"role": "user", "content": request.prompt})

        payload: Dict[str, Any] = {
            "model": self.config.model,
            "messages": messages,
            "temperature": self.config.temperature,
            "max_tokens": self.config.max_tokens,
        }
        if request.tools:
            payload["tools"] = [
                {
                    "type": "function",
                    "function": {
                        "name": tool.name,
                        "description": tool.description,
                        "parameters": tool.parameters or {"type": "object", "properties": {}},
                    },
                }
                for tool in request.tools
            ]
        return payload

    async def generate(
        self,
        request: GenerationRequest,
        api_key: Optional[str] = None,
    ) -> GenerationResponse:
        key = self._resolve_key(api_key)
        url = f"{self.config.base_url.rstrip('/')}/chat/completions"
        headers = {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {key}",
        }

        data = await self._post(url, self.build_payload(request), headers)
        return parse_openai_payload(data, self.config.model)


def create_generative_client(config: GenerativeConfig) -> GenerativeClient:
    """Create the client for the configured provider."""
    if config.provider == "gemini":
        return GeminiClient(config)
    if config.provider == "openai_compatible":
        return OpenAICompatibleClient(config)
    raise ValueError(f"Unknown generative provider: {config.provider}")
