"""
Auto-healing Tests.
"""

import asyncio

import pytest

from wpagent.foundation.errors import UpstreamCredentialError, UpstreamQuotaError
from wpagent.foundation.healing import (
    HEALING_SYSTEM_INSTRUCTION,
    RECOVERY_LABEL,
    RECOVERY_UNAVAILABLE,
    AutoHealer,
    detect_failure,
    extract_error_message,
    healing_prompt,
)
from wpagent.foundation.resilience import ResilientCaller, RetryConfig
from wpagent.foundation.tests.fakes import RecordingSleep, ScriptedClient, text_reply


class TestFailureDetection:
    """Tests for failure signatures."""

    @pytest.mark.parametrize("result", [
        {"status": "error", "message": "anything"},
        {"response": "Error: Permission denied"},
        {"message": "Permiso denegado"},
        {"response": "Plugin already exists"},
        "Connection failed",
    ])
    def test_failures(self, result):
        assert detect_failure(result)

    @pytest.mark.parametrize("result", [
        {"status": "success", "response": "Plugin activated."},
        {},
        "",
        None,
        42,
    ])
    def test_successes(self, result):
        assert not detect_failure(result)

    def test_extract_error_message(self):
        assert extract_error_message({"error": "boom", "message": "later"}) == "boom"
        assert extract_error_message({"response": "Error: nope"}) == "Error: nope"
        assert extract_error_message("raw") == "raw"
        assert extract_error_message({}) == "Unknown error while executing the command"


class TestAutoHealer:
    """Tests for the recovery prompt."""

    def setup_method(self):
        self.sleep = RecordingSleep()
        self.caller = ResilientCaller(RetryConfig(max_attempts=2, backoff_base=1.0), sleep=self.sleep)

    def test_heal_text(self):
        client = ScriptedClient(text_reply("The token user is not an administrator."))
        healer = AutoHealer(client, self.caller)

        recovery = asyncio.run(healer.heal("wp plugin install hello", "Error: Permission denied"))

        assert recovery.available
        assert recovery.label == RECOVERY_LABEL
        assert recovery.text == "The token user is not an administrator."
        assert recovery.failed_command == "wp plugin install hello"
        assert len(client.calls) == 1

    def test_prompt_is_isolated(self):
        """Only the failing command and error go out; no history."""
        client = ScriptedClient(text_reply("ok"))
        asyncio.run(AutoHealer(client, self.caller).heal("wp user create x", "already exists", api_key="user-key"))

        request, api_key = client.calls[0]
        assert request.prompt == healing_prompt("wp user create x", "already exists")
        assert request.system_instruction == HEALING_SYSTEM_INSTRUCTION
        assert request.tools == []
        assert api_key == "user-key"

    def test_heal_command_envelope(self):
        client = ScriptedClient(text_reply(
            '```json\n{"command": "wp user list --role=administrator", "explanation": "Check the roles"}\n```'
        ))
        recovery = asyncio.run(AutoHealer(client, self.caller).heal("wp x", "forbidden"))

        assert recovery.text == "Check the roles"
        assert recovery.command == "wp user list --role=administrator"

    def test_unavailable_on_credential_error(self):
        client = ScriptedClient(UpstreamCredentialError("API key not valid"))
        recovery = asyncio.run(AutoHealer(client, self.caller).heal("wp x", "Error: Permission denied"))

        assert not recovery.available
        assert recovery.text.startswith(RECOVERY_UNAVAILABLE)
        assert recovery.command == "wp user list --role=administrator"
        assert len(client.calls) == 1

    def test_retries_transient_then_unavailable(self):
        client = ScriptedClient(UpstreamQuotaError("quota"), UpstreamQuotaError("quota"))
        recovery = asyncio.run(AutoHealer(client, self.caller).heal("wp x", "post not found"))

        assert not recovery.available
        assert recovery.command == "wp --version"
        assert len(client.calls) == 2
        assert self.sleep.delays == [2.0]

    def test_empty_answer_is_unavailable(self):
        client = ScriptedClient(text_reply("   "))
        recovery = asyncio.run(AutoHealer(client, self.caller).heal("wp x", "weird"))
        assert not recovery.available
        assert recovery.command == "wp --help"

    def test_to_dict(self):
        client = ScriptedClient(text_reply("Fix it"))
        data = asyncio.run(AutoHealer(client, self.caller).heal("wp x", "failed")).to_dict()
        assert data["label"] == RECOVERY_LABEL
        assert data["available"] is True
        assert data["error_message"] == "failed"
