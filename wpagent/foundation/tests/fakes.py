"""
Test doubles shared by the foundation and server tests.

ScriptedClient replays generative responses (or raises errors) in order,
RecordingSite returns configured Results and records every call.
"""

from typing import Any, Dict, List, Optional, Tuple

from wpagent.foundation.advisory import Suggestion
from wpagent.foundation.dispatch import AbilityDescriptor, AbilityDiscovery
from wpagent.foundation.llm import FunctionCall, GenerationRequest, GenerationResponse
from wpagent.foundation.types import Err, Error, ErrorCode, Ok


def text_reply(text: str) -> GenerationResponse:
    return GenerationResponse(text=text, model="test-model", finish_reason="STOP")


def tool_reply(name: str, args: Optional[Dict[str, Any]] = None, text: str = "") -> GenerationResponse:
    return GenerationResponse(
        text=text,
        function_call=FunctionCall(name=name, args=args or {}),
        model="test-model",
        finish_reason="STOP",
    )


class ScriptedClient:
    """Generative client returning (or raising) scripted items in order."""

    def __init__(self, *script):
        self.script: List[Any] = list(script)
        self.calls: List[Tuple[GenerationRequest, Optional[str]]] = []
        self.closed = False

    async def generate(
        self,
        request: GenerationRequest,
        api_key: Optional[str] = None,
    ) -> GenerationResponse:
        self.calls.append((request, api_key))
        if not self.script:
            raise AssertionError("ScriptedClient ran out of responses")
        item = self.script.pop(0)
        if isinstance(item, BaseException):
            raise item
        return item

    async def close(self) -> None:
        self.closed = True

    @property
    def prompts(self) -> List[str]:
        return [request.prompt for request, _ in self.calls]


class RecordingSite:
    """Site collaborator with configurable results."""

    def __init__(
        self,
        abilities=(),
        policies=None,
        workflows=None,
        ability_result=None,
        command_result=None,
    ):
        self.discovery = Ok(AbilityDiscovery(tuple(
            a if isinstance(a, AbilityDescriptor) else AbilityDescriptor.from_dict(a) for a in abilities
        )))
        self.policies = policies if policies is not None else Ok([])
        self.workflows = workflows if workflows is not None else Ok([])
        self.ability_result = ability_result if ability_result is not None else Ok({"status": "success"})
        self.command_result = command_result if command_result is not None else Ok({"response": "Success"})
        self.calls: List[Tuple[str, tuple]] = []
        self.closed = False

    def called(self, name: str) -> List[tuple]:
        return [args for call, args in self.calls if call == name]

    async def discover_abilities(self, site_url, token):
        self.calls.append(("discover_abilities", (site_url, token)))
        return self.discovery

    async def evaluate_policies(self, site_url, token, context):
        self.calls.append(("evaluate_policies", (site_url, token, context)))
        return self.policies

    async def suggest_workflows(self, site_url, token, user_input, policy):
        self.calls.append(("suggest_workflows", (site_url, token, user_input, policy)))
        return self.workflows

    async def execute_ability(self, ability_name, arguments, site_url, token, mode):
        self.calls.append(("execute_ability", (ability_name, arguments, site_url, token, mode)))
        return self.ability_result

    async def execute_command(self, command, site_url, token):
        self.calls.append(("execute_command", (command, site_url, token)))
        return self.command_result

    async def close(self) -> None:
        self.closed = True


def unsupported(message: str = "not supported") -> Err:
    return Err(Error(ErrorCode.UNSUPPORTED, message, {"status": 404}))


def policy(ident: str, description: str, priority: float = 1.0, next_step: Optional[str] = None,
           category: str = "general") -> Suggestion:
    return Suggestion(id=ident, description=description, priority=priority,
                      category=category, next_step=next_step, source="policy")


class FakeClock:
    """Manually advanced clock."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingSleep:
    """Async sleep that records delays instead of waiting."""

    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


class Disconnect:
    """``is_disconnected`` stand-in."""

    def __init__(self, gone: bool = False):
        self.gone = gone

    async def __call__(self) -> bool:
        return self.gone
