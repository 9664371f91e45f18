"""
Auto-healing - recovery suggestions after a failed remote action.

When an executed action's result carries a failure signature, one
isolated prompt (the failing command and its error message, nothing
else) is sent through the ResilientCaller. The answer comes back as a
separately labelled recovery message.

Nothing here reads or writes SessionMemory.
"""

from __future__ import annotations
import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from wpagent.foundation.errors import GenerativeError
from wpagent.foundation.fallback import CannedResponse, FallbackResponder, FallbackRule, any_of, always
from wpagent.foundation.llm import GenerationRequest, GenerativeClient, extract_json
from wpagent.foundation.resilience import ResilientCaller

logger = logging.getLogger(__name__)

RECOVERY_LABEL = "Recovery Assistant"
RECOVERY_UNAVAILABLE = "Automatic recovery is not available right now. Review the error above and check the command and site configuration."

# Case-insensitive, English and Spanish.
FAILURE_PHRASES = (
    "error",
    "failed",
    "permission denied",
    "permiso denegado",
    "access denied",
    "acceso denegado",
    "already exists",
    "ya existe",
    "not found",
    "no encontrado",
    "invalid",
    "inválido",
    "forbidden",
    "prohibido",
    "unauthorized",
    "no autorizado",
    "timeout",
    "connection failed",
    "conexión falló",
)

HEALING_SYSTEM_INSTRUCTION = (
    "You are the recovery assistant for a WordPress management agent. "
    "A command just failed. Explain the most likely cause in two or three sentences "
    "and suggest one fix. If a WP-CLI command would help, answer with JSON: "
    '{"command": "wp ...", "explanation": "...", "is_safe": true}. Otherwise answer in plain text.'
)

# Offline hints shown with the unavailable message.
HEALING_HINTS = (
    FallbackRule("permission", any_of("permission denied", "permiso denegado", "forbidden", "unauthorized"), CannedResponse(
        explanation="This looks like a permissions problem. Check that the token belongs to an administrator.",
        command="wp user list --role=administrator",
    )),
    FallbackRule("exists", any_of("already exists", "ya existe"), CannedResponse(
        explanation="The item already exists. Use a different name or update the existing one.",
        command="wp --help",
    )),
    FallbackRule("not_found", any_of("not found", "no encontrado"), CannedResponse(
        explanation="The item was not found. Check the name or ID.",
        command="wp --version",
    )),
    FallbackRule("default", always, CannedResponse(
        explanation="Check the command syntax and its parameters.",
        command="wp --help",
    )),
)


@dataclass(frozen=True)
class RecoveryMessage:
    """A labelled suggestion produced after a failure."""
    text: str
    failed_command: str
    error_message: str
    command: Optional[str] = None
    available: bool = True
    label: str = RECOVERY_LABEL

    def to_dict(self) -> Dict[str, Any]:
        return {
            "label": self.label,
            "text": self.text,
            "command": self.command,
            "failed_command": self.failed_command,
            "error_message": self.error_message,
            "available": self.available,
        }


def extract_error_message(result: Any) -> str:
    if isinstance(result, str):
        return result
    if isinstance(result, dict):
        for key in ("error", "message", "response"):
            value = result.get(key)
            if value:
                return str(value)
    return "Unknown error while executing the command"


def detect_failure(result: Any) -> bool:
    """True when a remote action result carries a failure signature."""
    if not result:
        return False
    if isinstance(result, str):
        text = result
    elif isinstance(result, dict):
        if result.get("status") == "error":
            return True
        text = str(result.get("response") or result.get("message") or "")
    else:
        return False
    lowered = text.lower()
    return any(phrase in lowered for phrase in FAILURE_PHRASES)


def healing_prompt(command: str, error_message: str) -> str:
    return (
        f"The previous command `{command}` failed with this error: {error_message}. "
        "Analyze why it failed and suggest a solution or an alternative command."
    )


class AutoHealer:
    """Issues the isolated recovery prompt for a failed action."""

    def __init__(
        self,
        client: GenerativeClient,
        caller: Optional[ResilientCaller] = None,
    ):
        self.client = client
        self.caller = caller or ResilientCaller()
        self._hints = FallbackResponder(HEALING_HINTS)

    async def heal(
        self,
        command: str,
        error_message: str,
        api_key: Optional[str] = None,
    ) -> RecoveryMessage:
        """Ask for a remedy. Never raises for generative failures."""
        request = GenerationRequest(
            prompt=healing_prompt(command, error_message),
            system_instruction=HEALING_SYSTEM_INSTRUCTION,
        )

        try:
            response = await self.caller.call(lambda: self.client.generate(request, api_key=api_key))
        except asyncio.CancelledError:
            raise
        except GenerativeError as e:
            logger.warning(f"Auto-healing unavailable for '{command}': [{e.kind}] {e}")
            return self.unavailable(command, error_message)

        text = response.text.strip()
        if not text:
            return self.unavailable(command, error_message)

        suggested = None
        if '"command"' in text:
            payload = extract_json(text)
            if payload and payload.get("explanation"):
                text = str(payload["explanation"])
                suggested = payload.get("command") or None

        logger.info(f"Auto-healing produced a suggestion for '{command}'")
        return RecoveryMessage(
            text=text,
            failed_command=command,
            error_message=error_message,
            command=suggested,
        )

    def unavailable(self, command: str, error_message: str) -> RecoveryMessage:
        hint = self._hints.match(error_message).template
        return RecoveryMessage(
            text=f"{RECOVERY_UNAVAILABLE} {hint.explanation}",
            failed_command=command,
            error_message=error_message,
            command=hint.command,
            available=False,
        )
