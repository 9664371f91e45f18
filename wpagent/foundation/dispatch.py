"""
Dispatch - turns one user prompt into exactly one DispatchResult.

Two modes:
- Stateless: no site context. Generic conversational prompt, no
  collaborators, no session writes. Always Conversational.
- Contextual: site context present. Discovery, policy evaluation and
  workflow suggestion run in order (each optional, failures absorbed),
  then one prompt goes through the ResilientCaller and the output is
  classified as PendingConfirmation, StructuredCommand or Conversational.

Nothing here executes a remote action on its own. Execution happens only
through ``confirm`` with an explicit mode.

Usage:
    engine = DispatchEngine(client, site=site_client, rate_limiter=limiter, sessions=registry)
    outcome = await engine.dispatch(DispatchRequest(prompt="list plugins", identity="1.2.3.4"))
    match outcome.result:
        case PendingConfirmation(action=action):
            ...
"""

from __future__ import annotations
import asyncio
import logging
import re
import secrets
import time
from dataclasses import dataclass, field
from typing import (
    Any, Awaitable, Callable, Dict, List, Optional, Protocol, Tuple, Union,
)

from wpagent.foundation.advisory import (
    Advisory,
    Suggestion,
    advisory_prompt_context,
    derive_workflow_suggestions,
    merge_advisories,
)
from wpagent.foundation.errors import (
    ErrorKind,
    GenerativeError,
    ParseError,
    RateLimitExceededError,
    ValidationError,
)
from wpagent.foundation.fallback import CannedResponse, ErrorContext, FallbackResponder
from wpagent.foundation.healing import AutoHealer, RecoveryMessage, detect_failure, extract_error_message
from wpagent.foundation.llm import (
    GenerationRequest,
    GenerationResponse,
    GenerativeClient,
    ToolSpec,
    extract_json,
)
from wpagent.foundation.memory import MAX_CHAT_HISTORY, SessionMemory, SessionRegistry
from wpagent.foundation.resilience import ResilientCaller
from wpagent.foundation.types import Err, Error, ErrorCode, Ok, Result

logger = logging.getLogger(__name__)

MAX_PROMPT_LENGTH = 10_000

# Suggested wait after the generative service reports a caller key over quota.
USER_QUOTA_RETRY_SECONDS = 60

RISK_LEVELS = ("read", "write", "destructive")
MODES = ("simulate", "execute")

# Site context keys that must never be echoed back.
_SECRET_KEYS = {"token", "auth_token", "api_key", "password", "application_password"}


def new_request_id() -> str:
    return f"req_{int(time.time() * 1000)}_{secrets.token_hex(4)}"


# =============================================================================
# Abilities and pending actions
# =============================================================================

@dataclass(frozen=True)
class AbilityDescriptor:
    """A named remote operation offered by the site."""
    name: str
    description: str = ""
    parameters: Dict[str, Any] = field(default_factory=dict)
    risk_level: str = "read"

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> AbilityDescriptor:
        name = data.get("name") or data.get("ability")
        if not name:
            raise ValueError("ability without name")
        risk = str(data.get("risk_level") or data.get("riskLevel") or "read").lower()
        if risk not in RISK_LEVELS:
            risk = "write"
        return cls(
            name=str(name),
            description=str(data.get("description", "")),
            parameters=dict(data.get("parameters") or data.get("input_schema") or {}),
            risk_level=risk,
        )

    @property
    def suggested_mode(self) -> str:
        return "simulate" if self.risk_level == "destructive" else "execute"


@dataclass(frozen=True)
class AbilityDiscovery:
    abilities: Tuple[AbilityDescriptor, ...] = ()
    cache_hit: bool = False


def tool_name_for(ability_name: str) -> str:
    """Function-declaration-safe name for an ability (``core/list-plugins`` -> ``core_list_plugins``)."""
    name = re.sub(r"[^A-Za-z0-9_]", "_", ability_name)
    if not name or not (name[0].isalpha() or name[0] == "_"):
        name = f"a_{name}"
    return name[:64]


def build_tool_map(abilities: Tuple[AbilityDescriptor, ...]) -> Dict[str, AbilityDescriptor]:
    """Map unique tool names back to their abilities."""
    tool_map: Dict[str, AbilityDescriptor] = {}
    for ability in abilities:
        base = tool_name_for(ability.name)
        name, n = base, 2
        while name in tool_map:
            suffix = f"_{n}"
            name = f"{base[:64 - len(suffix)]}{suffix}"
            n += 1
        tool_map[name] = ability
    return tool_map


def public_site_context(site_context: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    return {k: v for k, v in (site_context or {}).items() if k not in _SECRET_KEYS}


def site_target(site_context: Optional[Dict[str, Any]]) -> Tuple[Optional[str], Optional[str]]:
    """(site_url, token) from a site context, either may be None."""
    ctx = site_context or {}
    url = ctx.get("site_url") or ctx.get("url")
    token = ctx.get("auth_token") or ctx.get("token")
    return (str(url) if url else None, str(token) if token else None)


@dataclass(frozen=True)
class PendingAction:
    """A proposed ability call awaiting explicit confirmation."""
    ability_name: str
    arguments: Dict[str, Any]
    site_context: Dict[str, Any]
    mode: str = "execute"
    risk_level: str = "read"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ability_name": self.ability_name,
            "arguments": self.arguments,
            "mode": self.mode,
            "risk_level": self.risk_level,
            "site_context": public_site_context(self.site_context),
        }


# =============================================================================
# Dispatch results (tagged union)
# =============================================================================

@dataclass(frozen=True)
class Conversational:
    text: str
    agent_thought: str = "Conversational reply"
    advisory: Advisory = field(default_factory=Advisory)
    degraded: bool = False


@dataclass(frozen=True)
class StructuredCommand:
    """A ``wp ...`` command envelope. Still needs confirmation to run."""
    command: str
    explanation: str
    is_safe: bool = True
    agent_thought: str = "Command generated"
    degraded: bool = False


@dataclass(frozen=True)
class PendingConfirmation:
    action: PendingAction
    explanation: str


@dataclass(frozen=True)
class ErrorReply:
    """An error reported to the caller as-is (caller credential problems)."""
    kind: str
    message: str
    caller_supplied: bool = False
    retry_after: Optional[int] = None  # seconds


DispatchResult = Union[Conversational, StructuredCommand, PendingConfirmation, ErrorReply]


def to_reply(result: DispatchResult) -> Dict[str, Any]:
    """Serialize a DispatchResult into the reply envelope."""
    match result:
        case Conversational(text=text, agent_thought=thought, advisory=advisory):
            return {
                "explanation": text,
                "command": None,
                "is_safe": True,
                "is_conversational": True,
                "function_call_pending": False,
                "agent_thought": thought,
                **advisory.to_reply_fields(),
            }
        case StructuredCommand(command=command, explanation=explanation, is_safe=is_safe, agent_thought=thought):
            return {
                "explanation": explanation,
                "command": command,
                "is_safe": is_safe,
                "is_conversational": False,
                "function_call_pending": False,
                "agent_thought": thought,
            }
        case PendingConfirmation(action=action, explanation=explanation):
            return {
                "explanation": explanation,
                "command": None,
                "is_safe": action.risk_level == "read",
                "is_conversational": False,
                "function_call_pending": True,
                "pending_action": action.to_dict(),
                "agent_thought": f"Requested ability {action.ability_name}",
            }
        case ErrorReply(kind=kind, message=message):
            return {
                "explanation": message,
                "command": None,
                "is_conversational": False,
                "function_call_pending": False,
                "error_kind": kind,
            }
    raise TypeError(f"Unknown dispatch result: {result!r}")


def result_text(result: DispatchResult) -> str:
    match result:
        case Conversational(text=text):
            return text
        case StructuredCommand(explanation=explanation, command=command):
            return f"{explanation}\n{command}"
        case PendingConfirmation(explanation=explanation):
            return explanation
        case ErrorReply(message=message):
            return message
    raise TypeError(f"Unknown dispatch result: {result!r}")


# =============================================================================
# Collaborator seams
# =============================================================================

class SiteCollaborator(Protocol):
    """Remote site endpoints. Every call reports failure as Err, never raises."""

    async def discover_abilities(self, site_url: str, token: Optional[str]) -> Result[AbilityDiscovery, Error]:
        ...

    async def evaluate_policies(
        self, site_url: str, token: Optional[str], context: Dict[str, Any],
    ) -> Result[List[Suggestion], Error]:
        ...

    async def suggest_workflows(
        self, site_url: str, token: Optional[str], user_input: str, policy: List[Suggestion],
    ) -> Result[List[Suggestion], Error]:
        ...

    async def execute_ability(
        self, ability_name: str, arguments: Dict[str, Any], site_url: str, token: Optional[str], mode: str,
    ) -> Result[Dict[str, Any], Error]:
        ...

    async def execute_command(
        self, command: str, site_url: str, token: Optional[str],
    ) -> Result[Dict[str, Any], Error]:
        ...


class Admission(Protocol):
    """The part of the rate limiter the engine needs."""

    def check(self, identity: str) -> Any:
        ...

    def reserve(self, identity: str) -> Any:
        ...

    def commit(self, reservation: Any) -> Any:
        ...

    def release(self, reservation: Any) -> None:
        ...


Disconnected = Callable[[], Awaitable[bool]]


# =============================================================================
# Prompts
# =============================================================================

STATELESS_SYSTEM_INSTRUCTION = (
    "You are WP-Agent, a friendly assistant that knows WordPress well. "
    "No site is connected, so answer conversationally: explain concepts, give code snippets, "
    "and describe WP-CLI commands the user could run. Never claim to have run anything."
)

CONTEXTUAL_SYSTEM_INSTRUCTION = """You are WP-Agent, a conversational assistant that manages a connected WordPress site.

Connected site:
{site_summary}

Decide what each message needs:
1. Conversation (greetings, questions, code requests, explanations): answer in plain friendly text.
2. A site action: call one of the provided functions when one fits. The user will confirm before anything runs.
3. A site action no function covers: answer only with JSON {{"command": "wp ...", "explanation": "...", "is_safe": true}}.
Mark is_safe false for anything that deletes data or changes many items at once."""


def site_summary(site_context: Dict[str, Any]) -> str:
    ctx = site_context
    lines = [
        f"- URL: {ctx.get('site_url') or ctx.get('url') or 'unknown'}",
        f"- WordPress: {ctx.get('wordpress_version', 'unknown')}",
        f"- PHP: {ctx.get('php_version', 'unknown')}",
        f"- Server: {ctx.get('server_software', 'unknown')}",
        f"- WP-CLI available: {'yes' if ctx.get('wp_cli_available') else 'no'}",
        f"- Recommended method: {ctx.get('recommended_method', 'native API')}",
    ]
    if ctx.get("emulation_mode"):
        lines.append("- Commands are emulated through the REST API")
    return "\n".join(lines)


def build_contextual_prompt(user_input: str, history: str, advisory: str) -> str:
    sections = []
    if history:
        sections.append(history)
    if advisory:
        sections.append(advisory)
    sections.append(f'User: "{user_input}"')
    sections.append("Respond appropriately:")
    return "\n\n".join(sections)


# =============================================================================
# Requests and outcomes
# =============================================================================

@dataclass
class DispatchRequest:
    prompt: str
    identity: str = "127.0.0.1"
    site_context: Optional[Dict[str, Any]] = None
    chat_history: List[Dict[str, Any]] = field(default_factory=list)
    user_api_key: Optional[str] = None
    session_id: Optional[str] = None
    request_id: str = field(default_factory=new_request_id)
    is_disconnected: Optional[Disconnected] = None

    @property
    def contextual(self) -> bool:
        return bool(self.site_context)

    @property
    def api_key_source(self) -> str:
        return "user" if self.user_api_key else "server"


@dataclass
class DispatchOutcome:
    result: DispatchResult
    request_id: str
    mode: str  # stateless | contextual
    api_key_source: str
    rate_limit: Optional[Dict[str, Any]] = None
    hints: Dict[str, Any] = field(default_factory=dict)
    charged: bool = False
    disconnected: bool = False


@dataclass
class ConfirmRequest:
    site_context: Dict[str, Any]
    ability_name: Optional[str] = None
    arguments: Dict[str, Any] = field(default_factory=dict)
    mode: str = "execute"
    command: Optional[str] = None
    identity: str = "127.0.0.1"
    user_api_key: Optional[str] = None
    session_id: Optional[str] = None
    request_id: str = field(default_factory=new_request_id)
    is_disconnected: Optional[Disconnected] = None


@dataclass
class ConfirmOutcome:
    success: bool
    action_type: str  # ability | command
    description: str
    result: Dict[str, Any]
    request_id: str
    mode: Optional[str] = None
    recovery: Optional[RecoveryMessage] = None


@dataclass
class _Generated:
    result: DispatchResult
    succeeded: bool  # generative call returned usable output


# =============================================================================
# Engine
# =============================================================================

class DispatchEngine:
    """
    Orchestrates one request: admission, context, generation, classification.

    Rate limiting is charge-on-success. A slot is reserved before any
    awaited work and committed only when the generative call produced
    output (parse-degraded output included); fallback replies, errors
    and disconnected callers release it.
    """

    def __init__(
        self,
        client: GenerativeClient,
        site: Optional[SiteCollaborator] = None,
        rate_limiter: Optional[Admission] = None,
        sessions: Optional[SessionRegistry] = None,
        caller: Optional[ResilientCaller] = None,
        fallback: Optional[FallbackResponder] = None,
        healer: Optional[AutoHealer] = None,
        max_prompt_length: int = MAX_PROMPT_LENGTH,
        max_chat_history: int = MAX_CHAT_HISTORY,
        history_summary_turns: int = MAX_CHAT_HISTORY,
        action_summary_count: int = 5,
    ):
        self.client = client
        self.site = site
        self.rate_limiter = rate_limiter
        self.sessions = sessions
        self.caller = caller or ResilientCaller()
        self.fallback = fallback or FallbackResponder()
        self.healer = healer or AutoHealer(client, self.caller)
        self.max_prompt_length = max_prompt_length
        self.max_chat_history = max_chat_history
        self.history_summary_turns = history_summary_turns
        self.action_summary_count = action_summary_count

    # -------------------------------------------------------------------------
    # Validation
    # -------------------------------------------------------------------------

    def validate(self, request: DispatchRequest) -> str:
        """Return the stripped prompt or raise ValidationError."""
        if not isinstance(request.prompt, str) or not request.prompt.strip():
            raise ValidationError("Prompt must be a non-empty string", "INVALID_PROMPT")
        prompt = request.prompt.strip()
        if len(prompt) > self.max_prompt_length:
            raise ValidationError(
                f"Prompt is too long ({len(prompt)} characters, maximum {self.max_prompt_length})",
                "PROMPT_TOO_LONG",
            )
        return prompt

    # -------------------------------------------------------------------------
    # Dispatch
    # -------------------------------------------------------------------------

    async def dispatch(self, request: DispatchRequest) -> DispatchOutcome:
        """
        Handle one prompt.

        Raises:
            ValidationError: empty or oversized prompt
            RateLimitExceededError: shared-credential caller over its limit
        """
        prompt = self.validate(request)
        history = list(request.chat_history or [])[-self.max_chat_history:]
        mode = "contextual" if request.contextual else "stateless"
        rid = request.request_id

        reservation = None
        if not request.user_api_key and self.rate_limiter is not None:
            reservation = self.rate_limiter.reserve(request.identity)

        logger.info(f"[{rid}] Dispatch mode={mode} key_source={request.api_key_source}")
        outcome = DispatchOutcome(
            result=Conversational(""),
            request_id=rid,
            mode=mode,
            api_key_source=request.api_key_source,
        )

        try:
            if request.contextual:
                generated = await self._contextual(prompt, history, request, outcome.hints)
            else:
                generated = await self._stateless(prompt, request)
        except BaseException:
            if reservation is not None:
                self.rate_limiter.release(reservation)
            raise

        outcome.result = generated.result

        if request.is_disconnected is not None and await request.is_disconnected():
            logger.info(f"[{rid}] Caller disconnected, nothing recorded")
            outcome.disconnected = True
            if reservation is not None:
                self.rate_limiter.release(reservation)
            return outcome

        if reservation is not None:
            if generated.succeeded:
                decision = self.rate_limiter.commit(reservation)
                outcome.charged = True
            else:
                self.rate_limiter.release(reservation)
                decision = self.rate_limiter.check(request.identity)
            outcome.rate_limit = decision.to_dict()

        if isinstance(generated.result, ErrorReply):
            logger.info(f"[{rid}] Request failed, session left unchanged")
        elif request.contextual and request.session_id and self.sessions is not None:
            self._remember(request, history, prompt, generated.result)

        return outcome

    async def _stateless(self, prompt: str, request: DispatchRequest) -> _Generated:
        generation = GenerationRequest(prompt=prompt, system_instruction=STATELESS_SYSTEM_INSTRUCTION)
        try:
            response = await self._generate(generation, request.user_api_key)
            text = response.text.strip()
            if not text:
                raise ParseError("Empty response")
        except GenerativeError as e:
            result = self._on_error(e, prompt, request)
            # Stateless replies are always conversational
            match result:
                case StructuredCommand(command=command, explanation=explanation, agent_thought=thought):
                    result = Conversational(f"{explanation}\n\nSuggested command: `{command}`", thought, degraded=True)
            return _Generated(result, succeeded=False)

        return _Generated(Conversational(text), succeeded=True)

    async def _contextual(
        self,
        prompt: str,
        history: List[Dict[str, Any]],
        request: DispatchRequest,
        hints: Dict[str, Any],
    ) -> _Generated:
        site_context = dict(request.site_context or {})
        site_url, token = site_target(site_context)
        rid = request.request_id

        abilities: Tuple[AbilityDescriptor, ...] = ()
        policy: List[Suggestion] = []
        workflow: List[Suggestion] = []

        if site_url and self.site is not None:
            discovery = await self._collect("discovery", rid, self.site.discover_abilities(site_url, token))
            match discovery:
                case Ok(found):
                    abilities = found.abilities
                    hints["abilities_count"] = len(abilities)
                    hints["cache_hit"] = found.cache_hit
                case Err(error):
                    hints["discovery"] = error.code

            policy_context = {"user_input": prompt, "site_context": public_site_context(site_context)}
            match await self._collect("policies", rid, self.site.evaluate_policies(site_url, token, policy_context)):
                case Ok(items):
                    policy = list(items)
                case Err(error):
                    hints["policies"] = error.code

            match await self._collect("workflows", rid, self.site.suggest_workflows(site_url, token, prompt, policy)):
                case Ok(items):
                    workflow = list(items)
                case Err(error) if error.code == ErrorCode.UNSUPPORTED:
                    workflow = derive_workflow_suggestions(policy, prompt)
                    hints["workflows"] = "derived"
                case Err(error):
                    hints["workflows"] = error.code

        summary = self._history_summary(request, history, site_context)
        tool_map = build_tool_map(abilities)
        generation = GenerationRequest(
            prompt=build_contextual_prompt(prompt, summary, advisory_prompt_context(policy, workflow)),
            system_instruction=CONTEXTUAL_SYSTEM_INSTRUCTION.format(site_summary=site_summary(site_context)),
            tools=[
                ToolSpec(name=name, description=a.description or a.name, parameters=a.parameters)
                for name, a in tool_map.items()
            ],
        )

        try:
            response = await self._generate(generation, request.user_api_key)
            result = self.classify(response, tool_map, site_context)
        except GenerativeError as e:
            return _Generated(self._on_error(e, prompt, request), succeeded=False)

        if isinstance(result, Conversational):
            advisory = merge_advisories(True, policy, workflow)
            if not advisory.empty:
                result = Conversational(result.text, result.agent_thought, advisory, result.degraded)
        return _Generated(result, succeeded=True)

    async def _generate(self, generation: GenerationRequest, api_key: Optional[str]) -> GenerationResponse:
        return await self.caller.call(lambda: self.client.generate(generation, api_key=api_key))

    async def _collect(self, step: str, rid: str, call: Awaitable[Result]) -> Result:
        """Await an optional collaborator step; anything unexpected becomes Err."""
        try:
            result = await call
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning(f"[{rid}] {step} failed unexpectedly: {e}")
            return Err(Error(ErrorCode.UNKNOWN, str(e)))
        if isinstance(result, Err):
            logger.info(f"[{rid}] {step} skipped: {result.error}")
        return result

    def _history_summary(
        self,
        request: DispatchRequest,
        history: List[Dict[str, Any]],
        site_context: Dict[str, Any],
    ) -> str:
        memory = None
        if request.session_id and self.sessions is not None:
            memory = self.sessions.get(request.session_id)
        if memory is None or not memory.chat_history:
            memory = SessionMemory.from_history(history, site_context, self.max_chat_history)
        return memory.summary(self.history_summary_turns, self.action_summary_count)

    def _remember(
        self,
        request: DispatchRequest,
        history: List[Dict[str, Any]],
        prompt: str,
        result: DispatchResult,
    ) -> None:
        memory = self.sessions.get_or_create(request.session_id, request.site_context)
        if not memory.chat_history and history:
            memory.extend_history(history)
        memory.add_turn("user", prompt)
        memory.add_turn("assistant", result_text(result))

    # -------------------------------------------------------------------------
    # Classification
    # -------------------------------------------------------------------------

    def classify(
        self,
        response: GenerationResponse,
        tool_map: Dict[str, AbilityDescriptor],
        site_context: Dict[str, Any],
    ) -> DispatchResult:
        """
        Classify generative output.

        A function call becomes PendingConfirmation, a JSON command envelope
        with a command becomes StructuredCommand, anything else (including an
        envelope whose command is empty) is Conversational. Unusable
        structure degrades to the raw text.

        Raises:
            ParseError: the output was empty
        """
        text = response.text.strip()

        if response.function_call is not None:
            ability = tool_map.get(response.function_call.name)
            if ability is not None:
                action = PendingAction(
                    ability_name=ability.name,
                    arguments=dict(response.function_call.args),
                    site_context=site_context,
                    mode=ability.suggested_mode,
                    risk_level=ability.risk_level,
                )
                explanation = text or f"I can run '{ability.name}' on your site. Confirm to continue."
                if action.mode == "simulate":
                    explanation += " This action is destructive, so it will be simulated first."
                return PendingConfirmation(action=action, explanation=explanation)
            logger.warning(f"Model called unknown function '{response.function_call.name}'")
            if not text:
                return Conversational(
                    "I wanted to run an action this site does not offer. Could you rephrase the request?",
                    "Unknown function requested",
                )

        if not text:
            raise ParseError("Empty response")

        if '"command"' in text:
            try:
                payload = extract_json(text)
                explanation = payload.get("explanation") if payload else None
                if payload and not payload.get("command") and isinstance(explanation, str) and explanation.strip():
                    # Envelope without a command is the model chatting
                    return Conversational(
                        explanation.strip(),
                        str(payload.get("agent_thought") or "Conversational reply"),
                    )
                if payload and payload.get("command") and payload.get("explanation"):
                    is_safe = payload.get("is_safe")
                    return StructuredCommand(
                        command=str(payload["command"]).strip(),
                        explanation=str(payload["explanation"]),
                        is_safe=is_safe if isinstance(is_safe, bool) else True,
                        agent_thought=str(payload.get("agent_thought") or "Command generated"),
                    )
            except (TypeError, ValueError) as e:
                logger.info(f"Command envelope unusable, treating as conversation: {e}")
            return Conversational(text, "Conversational reply (unparsed command envelope)")

        return Conversational(text)

    def _on_error(self, error: GenerativeError, prompt: str, request: DispatchRequest) -> DispatchResult:
        """Map a failed generative call onto a reply."""
        rid = request.request_id
        caller_supplied = bool(request.user_api_key)

        if caller_supplied and error.kind == ErrorKind.CREDENTIAL:
            logger.warning(f"[{rid}] Caller-supplied API key rejected")
            return ErrorReply(ErrorKind.CREDENTIAL, "Your API key is invalid or was rejected by the generative service.", True)
        if caller_supplied and error.kind == ErrorKind.UPSTREAM_QUOTA:
            logger.warning(f"[{rid}] Caller-supplied API key is over quota")
            return ErrorReply(
                ErrorKind.UPSTREAM_QUOTA,
                "Your API key has exhausted its quota. Wait for it to reset.",
                True,
                retry_after=USER_QUOTA_RETRY_SECONDS,
            )

        logger.warning(f"[{rid}] Generative call failed [{error.kind}], using fallback: {error}")
        message = ""
        if error.kind == ErrorKind.CREDENTIAL:
            message = "The shared generative credential is not available"
        canned = self.fallback.respond(prompt, ErrorContext(error.kind, message, caller_supplied))
        return self._from_canned(canned)

    @staticmethod
    def _from_canned(canned: CannedResponse) -> DispatchResult:
        if canned.command:
            return StructuredCommand(
                command=canned.command,
                explanation=canned.explanation,
                is_safe=canned.is_safe,
                agent_thought=canned.agent_thought,
                degraded=True,
            )
        return Conversational(canned.explanation, canned.agent_thought, degraded=True)

    # -------------------------------------------------------------------------
    # Confirmation
    # -------------------------------------------------------------------------

    async def confirm(self, request: ConfirmRequest) -> ConfirmOutcome:
        """
        Execute an explicitly confirmed ability or command.

        Raises:
            ValidationError: missing site, target or bad mode
        """
        site_url, token = site_target(request.site_context)
        if not site_url:
            raise ValidationError("siteContext.site_url is required to execute an action", "INVALID_REQUEST")
        if self.site is None:
            raise ValidationError("No site client configured", "INVALID_REQUEST")
        if bool(request.ability_name) == bool(request.command):
            raise ValidationError("Provide exactly one of ability_name or command", "INVALID_REQUEST")
        if request.mode not in MODES:
            raise ValidationError(f"mode must be one of {', '.join(MODES)}", "INVALID_REQUEST")

        rid = request.request_id
        if request.command:
            action_type, mode = "command", None
            description = request.command.strip()
            remote = await self._collect(
                "execute_command", rid, self.site.execute_command(description, site_url, token),
            )
        else:
            action_type, mode = "ability", request.mode
            description = f"{request.ability_name} ({mode})"
            remote = await self._collect(
                "execute_ability", rid,
                self.site.execute_ability(request.ability_name, request.arguments, site_url, token, mode),
            )

        match remote:
            case Ok(payload):
                result = dict(payload) if isinstance(payload, dict) else {"response": payload}
            case Err(error):
                result = {"status": "error", "message": error.message, "code": error.code}

        failed = detect_failure(result)
        logger.info(f"[{rid}] {action_type} '{description}' {'failed' if failed else 'succeeded'}")

        recovery = None
        if failed:
            recovery = await self._heal(request, description, result)

        if request.is_disconnected is not None and await request.is_disconnected():
            logger.info(f"[{rid}] Caller disconnected, action not recorded")
        elif request.session_id and self.sessions is not None:
            memory = self.sessions.get_or_create(request.session_id, request.site_context)
            memory.record_action(action_type, description, not failed)

        return ConfirmOutcome(
            success=not failed,
            action_type=action_type,
            description=description,
            result=result,
            request_id=rid,
            mode=mode,
            recovery=recovery,
        )

    async def _heal(self, request: ConfirmRequest, description: str, result: Dict[str, Any]) -> RecoveryMessage:
        """One isolated healing call, admitted like any shared-credential request."""
        error_message = extract_error_message(result)
        reservation = None
        if not request.user_api_key and self.rate_limiter is not None:
            try:
                reservation = self.rate_limiter.reserve(request.identity)
            except RateLimitExceededError:
                logger.info(f"[{request.request_id}] Healing skipped, rate limit reached")
                return self.healer.unavailable(description, error_message)

        try:
            recovery = await self.healer.heal(description, error_message, api_key=request.user_api_key)
        except BaseException:
            if reservation is not None:
                self.rate_limiter.release(reservation)
            raise
        if reservation is not None:
            if recovery.available:
                self.rate_limiter.commit(reservation)
            else:
                self.rate_limiter.release(reservation)
        return recovery
