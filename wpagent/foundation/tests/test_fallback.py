"""
Fallback Responder Tests.
"""

import pytest

from wpagent.foundation.errors import ErrorKind
from wpagent.foundation.fallback import (
    DEFAULT_NOTE,
    QUOTA_NOTE_SHARED,
    QUOTA_NOTE_USER,
    UNAVAILABLE_NOTE,
    CannedResponse,
    ErrorContext,
    FallbackResponder,
    FallbackRule,
    any_of,
    degradation_note,
)


class TestFallbackRules:
    """Tests for rule matching."""

    def setup_method(self):
        self.responder = FallbackResponder()

    @pytest.mark.parametrize("prompt,rule", [
        ("Hello there", "greeting"),
        ("hola", "greeting"),
        ("¿Qué puedes hacer?", "capabilities"),
        ("give me css for the menu", "css_code"),
        ("thank you!", "thanks"),
        ("create a home page with two columns of services", "create_home_page"),
        ("create a page", "create_page"),
        ("crea una entrada", "create_post"),
        ("my site is slow", "slow_site"),
        ("update all plugins", "update_all_plugins"),
        ("update my plugins", "update_plugins"),
        ("list plugins", "plugins"),
        ("show users", "users"),
        ("xyzzy", "default"),
    ])
    def test_rule_selection(self, prompt, rule):
        assert self.responder.match(prompt).name == rule

    def test_first_match_wins(self):
        """Help requests win over later content rules."""
        assert self.responder.match("help me create a post").name == "capabilities"

    def test_conversational_vs_command(self):
        assert self.responder.respond("hello").is_conversational
        response = self.responder.respond("list plugins")
        assert response.command == "wp plugin list"
        assert response.is_safe

    def test_bulk_update_not_safe(self):
        response = self.responder.respond("update all plugins")
        assert response.command == "wp plugin update --all"
        assert response.is_safe is False

    def test_deterministic(self):
        error = ErrorContext(ErrorKind.UNAVAILABLE)
        assert self.responder.respond("list plugins", error) == self.responder.respond("list plugins", error)

    def test_rule_recorded(self):
        assert self.responder.respond("my site is slow").rule == "slow_site"

    def test_default_includes_error_message(self):
        response = self.responder.respond(
            "xyzzy", ErrorContext(ErrorKind.CREDENTIAL, "The shared generative credential is not available"),
        )
        assert response.explanation.startswith("The shared generative credential is not available. ")
        assert response.command == "wp --version"

    def test_custom_table_without_catch_all(self):
        rules = (FallbackRule("only", any_of("zzz"), CannedResponse(explanation="only{note}")),)
        responder = FallbackResponder(rules)
        assert responder.respond("anything").rule == "only"

    def test_empty_table_rejected(self):
        with pytest.raises(ValueError):
            FallbackResponder(())

    def test_table_order(self):
        names = [rule.name for rule in self.responder.rules]
        assert names[0] == "greeting"
        assert names[-1] == "default"


class TestDegradationNotes:
    """Tests for the annotation explaining why the fallback answered."""

    def test_notes(self):
        assert degradation_note(None) == DEFAULT_NOTE
        assert degradation_note(ErrorContext(ErrorKind.UPSTREAM_QUOTA, caller_supplied=True)) == QUOTA_NOTE_USER
        assert degradation_note(ErrorContext(ErrorKind.UPSTREAM_QUOTA)) == QUOTA_NOTE_SHARED
        assert degradation_note(ErrorContext(ErrorKind.UNAVAILABLE)) == UNAVAILABLE_NOTE

    def test_note_substituted(self):
        responder = FallbackResponder()
        response = responder.respond("list plugins", ErrorContext(ErrorKind.UPSTREAM_QUOTA))
        assert QUOTA_NOTE_SHARED in response.explanation
        assert "{note}" not in response.explanation
        assert response.agent_thought.startswith("Generative service reachable but quota exhausted")

    def test_thought_prefix(self):
        response = FallbackResponder().respond("list plugins", ErrorContext(ErrorKind.TIMEOUT))
        assert response.agent_thought == "Fallback system: plugin request"
