"""
API Integration Tests.

Tests for the FastAPI server endpoints, with a scripted generative client,
a recording site collaborator and a rate limiter on a fake clock.
"""

import pytest
from fastapi.testclient import TestClient

from wpagent.foundation.errors import UpstreamCredentialError, UpstreamQuotaError
from wpagent.foundation.llm import GenerativeConfig
from wpagent.foundation.tests.fakes import (
    FakeClock,
    RecordingSite,
    RecordingSleep,
    ScriptedClient,
    text_reply,
    tool_reply,
)
from wpagent.foundation.types import Ok
from wpagent.server.app import create_app
from wpagent.server.config import RateLimitConfig, ServerConfig, SessionConfig, SiteClientConfig
from wpagent.server.ratelimit import RateLimiter

SITE = {"site_url": "https://example.com", "auth_token": "secret-token"}

ABILITIES = [
    {"name": "core/list-plugins", "description": "List installed plugins", "risk_level": "read"},
]


@pytest.fixture
def config():
    """Create test configuration."""
    return ServerConfig(
        debug=True,
        max_content_length=64 * 1024,
        generative=GenerativeConfig(api_key="shared-test-key", model="test-model"),
        rate_limit=RateLimitConfig(limit=3),
        site=SiteClientConfig(),
        session=SessionConfig(),
    )


@pytest.fixture
def llm():
    return ScriptedClient()


@pytest.fixture
def site():
    return RecordingSite(abilities=ABILITIES)


@pytest.fixture
def limiter():
    return RateLimiter(limit=3, window_seconds=3600, clock=FakeClock())


@pytest.fixture
def app(config, llm, site, limiter):
    """Create test application."""
    return create_app(config, client=llm, site=site, rate_limiter=limiter, sleep=RecordingSleep())


@pytest.fixture
def client(app):
    """Create test client."""
    with TestClient(app) as client:
        yield client


class TestHealthEndpoints:
    """Tests for health check endpoints."""

    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200

        data = response.json()
        assert data["status"] == "healthy"
        assert data["llm_provider"] == "gemini"
        assert data["llm_model"] == "test-model"
        assert data["shared_key_configured"] is True
        assert data["active_sessions"] == 0

    def test_root(self, client):
        response = client.get("/")
        assert response.status_code == 200
        assert response.json()["name"] == "WP-Agent API"

    def test_headers(self, client):
        response = client.get("/")
        assert response.headers["X-Content-Type-Options"] == "nosniff"
        assert response.headers["X-Request-ID"].startswith("req_")
        assert "X-Response-Time" in response.headers

    def test_lifespan_closes_clients(self, app, llm, site):
        with TestClient(app):
            pass
        assert llm.closed
        assert site.closed


class TestAskEndpoint:
    """Tests for prompt dispatch."""

    def test_stateless(self, client, llm, site):
        llm.script.append(text_reply("Hi! How can I help with WordPress?"))

        response = client.post("/ask", json={"prompt": "hello"})
        assert response.status_code == 200

        data = response.json()
        assert data["status"] == "success"
        assert data["mode"] == "stateless"
        assert data["api_key_source"] == "server"
        assert data["reply"]["is_conversational"] is True
        assert data["reply"]["explanation"] == "Hi! How can I help with WordPress?"
        assert data["rate_limit"]["remaining"] == 2
        assert data["request_id"] == response.headers["X-Request-ID"]
        assert site.calls == []

    def test_missing_prompt(self, client):
        response = client.post("/ask", json={})
        assert response.status_code == 400
        assert response.json()["error_type"] == "INVALID_PROMPT"

    def test_blank_prompt(self, client, llm):
        response = client.post("/ask", json={"prompt": "   "})
        assert response.status_code == 400
        assert response.json()["error_type"] == "INVALID_PROMPT"
        assert llm.calls == []

    def test_prompt_too_long(self, client):
        response = client.post("/ask", json={"prompt": "x" * 10_001})
        assert response.status_code == 400
        assert response.json()["error_type"] == "PROMPT_TOO_LONG"

    def test_rate_limited(self, client, llm):
        for i in range(3):
            llm.script.append(text_reply(f"answer {i}"))
            assert client.post("/ask", json={"prompt": "hi"}).status_code == 200

        response = client.post("/ask", json={"prompt": "hi"})
        assert response.status_code == 429
        assert response.headers["Retry-After"] == "3600"

        data = response.json()
        assert data["error_type"] == "RATE_LIMIT_EXCEEDED"
        assert data["rate_limit"]["remaining"] == 0
        assert data["rate_limit"]["reset_in_minutes"] == 60
        assert len(llm.calls) == 3

    def test_fallback_not_charged(self, client, llm):
        llm.script.extend([UpstreamQuotaError("quota"), UpstreamQuotaError("quota")])

        response = client.post("/ask", json={"prompt": "list plugins"})
        assert response.status_code == 200

        data = response.json()
        assert "Suggested command: `wp plugin list`" in data["reply"]["explanation"]
        assert data["rate_limit"]["remaining"] == 3

    def test_user_credential_rejected(self, client, llm):
        llm.script.append(UpstreamCredentialError("API key not valid"))

        response = client.post("/ask", json={"prompt": "hello"}, headers={"X-User-Gemini-Key": "bad"})
        assert response.status_code == 401

        data = response.json()
        assert data["error_type"] == "USER_CREDENTIAL_INVALID"
        assert data["api_key_source"] == "user"
        assert llm.calls[0][1] == "bad"
        assert client.get("/rate-limit/status").json()["rate_limit"]["used"] == 0

    def test_user_quota_exceeded(self, client, llm):
        llm.script.extend([UpstreamQuotaError("quota"), UpstreamQuotaError("quota")])

        response = client.post("/ask", json={"prompt": "hello"}, headers={"X-User-Gemini-Key": "mine"})
        assert response.status_code == 429
        assert response.headers["Retry-After"] == "60"

        data = response.json()
        assert data["error_type"] == "USER_QUOTA_EXCEEDED"
        assert data["retry_after"] == 60
        assert data["rate_limit"]["reset_in_minutes"] == 1
        assert data["rate_limit"]["reset_time"].endswith("+00:00")

    def test_contextual_pending(self, client, llm, site):
        llm.script.append(tool_reply("core_list_plugins", {"status": "active"}))

        response = client.post("/ask", json={"prompt": "list plugins", "siteContext": SITE, "sessionId": "abc"})
        assert response.status_code == 200

        data = response.json()
        reply = data["reply"]
        assert data["mode"] == "contextual"
        assert reply["function_call_pending"] is True
        assert reply["pending_action"]["ability_name"] == "core/list-plugins"
        assert "auth_token" not in reply["pending_action"]["site_context"]
        assert data["hints"]["abilities_count"] == 1
        assert site.called("execute_ability") == []

    def test_contextual_advisory(self, client, llm, site):
        site.policies = Ok([])
        llm.script.append(text_reply("All good."))

        data = client.post("/ask", json={"prompt": "how is my site", "siteContext": SITE}).json()
        assert data["reply"]["explanation"] == "All good."
        assert "policy_context" not in data["reply"]

    def test_wrong_content_type(self, client):
        response = client.post("/ask", content="prompt=hi", headers={"Content-Type": "application/x-www-form-urlencoded"})
        assert response.status_code == 415
        assert response.json()["error_type"] == "UNSUPPORTED_MEDIA_TYPE"

    def test_payload_too_large(self, client):
        response = client.post("/ask", json={"prompt": "x" * 70_000})
        assert response.status_code == 413
        assert response.json()["error_type"] == "PAYLOAD_TOO_LARGE"


class TestConfirmEndpoint:
    """Tests for explicit execution."""

    def test_execute_ability(self, client, site):
        response = client.post("/confirm", json={
            "siteContext": SITE, "ability_name": "core/list-plugins", "mode": "simulate",
        })
        assert response.status_code == 200

        data = response.json()
        assert data["status"] == "success"
        assert data["action_type"] == "ability"
        assert data["mode"] == "simulate"
        assert data["recovery"] is None
        assert site.called("execute_ability")[0][4] == "simulate"

    def test_failed_command_heals(self, client, llm, site):
        site.command_result = Ok({"response": "Error: Permission denied"})
        llm.script.append(text_reply("Use a token that belongs to an administrator."))

        response = client.post("/confirm", json={
            "siteContext": SITE, "command": "wp plugin install hello-dolly", "sessionId": "abc",
        })
        assert response.status_code == 200

        data = response.json()
        assert data["status"] == "error"
        assert data["recovery"]["label"] == "Recovery Assistant"
        assert data["recovery"]["available"] is True
        assert len(llm.calls) == 1

        memory = client.get("/session/abc").json()["memory"]
        assert memory["chat_history"] == []
        assert memory["executed_actions"][0]["success"] is False

    def test_requires_target(self, client):
        response = client.post("/confirm", json={"siteContext": SITE})
        assert response.status_code == 400
        assert response.json()["error_type"] == "INVALID_REQUEST"

    def test_requires_site_context(self, client):
        response = client.post("/confirm", json={"command": "wp plugin list"})
        assert response.status_code == 400
        assert response.json()["error_type"] == "INVALID_REQUEST"


class TestRateLimitAndSessions:
    """Tests for limit status and session endpoints."""

    def test_status_does_not_consume(self, client):
        for _ in range(2):
            data = client.get("/rate-limit/status").json()
        assert data["rate_limit"]["remaining"] == 3
        assert data["client_ip"] == "127.0.0.1"

    def test_status_uses_forwarded_for(self, client):
        data = client.get("/rate-limit/status", headers={"X-Forwarded-For": "203.0.113.5, 10.0.0.1"}).json()
        assert data["client_ip"] == "203.0.113.5"

    def test_session_not_found(self, client):
        response = client.get("/session/nope")
        assert response.status_code == 404
        assert response.json()["error_type"] == "SESSION_NOT_FOUND"

    def test_session_roundtrip(self, client, llm):
        llm.script.append(text_reply("Hello!"))
        client.post("/ask", json={"prompt": "hi", "siteContext": SITE, "sessionId": "abc"})

        memory = client.get("/session/abc").json()["memory"]
        assert [e["message"] for e in memory["chat_history"]] == ["hi", "Hello!"]

        cleared = client.post("/session/abc/clear").json()["memory"]
        assert cleared["chat_history"] == []
        assert cleared["site_context"] == {"site_url": "https://example.com"}

        other = {"site_url": "https://other.example"}
        cleared = client.post("/session/abc/clear", json={"siteContext": other}).json()["memory"]
        assert cleared["site_context"] == other

    def test_clear_unknown_session(self, client):
        assert client.post("/session/nope/clear").status_code == 404


class TestErrorHandling:

    def test_unexpected_error(self, app):
        async def explode(request):
            raise RuntimeError("boom")

        with TestClient(app, raise_server_exceptions=False) as client:
            client.app.state.wpagent.engine.dispatch = explode
            response = client.post("/ask", json={"prompt": "hello"})

        assert response.status_code == 500
        data = response.json()
        assert data["error_type"] == "INTERNAL_ERROR"
        assert "boom" not in data["message"]
