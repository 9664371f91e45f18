"""
Resilience Tests.

Retry budget, backoff schedule and error classification.
"""

import asyncio

import aiohttp
import pytest

from wpagent.foundation.errors import (
    ErrorKind,
    GenerativeError,
    ParseError,
    UpstreamCredentialError,
    UpstreamQuotaError,
    UpstreamUnavailableError,
    classify_error,
    kind_from_message,
    kind_from_upstream,
)
from wpagent.foundation.resilience import ResilientCaller, RetryConfig
from wpagent.foundation.tests.fakes import RecordingSleep


class Flaky:
    """Fails with the given errors, then returns 'ok'."""

    def __init__(self, *errors):
        self.errors = list(errors)
        self.attempts = 0

    async def __call__(self):
        self.attempts += 1
        if self.errors:
            raise self.errors.pop(0)
        return "ok"


class TestResilientCaller:
    """Tests for bounded retries."""

    def setup_method(self):
        self.sleep = RecordingSleep()
        self.caller = ResilientCaller(RetryConfig(max_attempts=2, backoff_base=1.0), sleep=self.sleep)

    def test_success_first_attempt(self):
        op = Flaky()
        assert asyncio.run(self.caller.call(op)) == "ok"
        assert op.attempts == 1
        assert self.sleep.delays == []

    def test_retries_quota_once(self):
        """A transient failure is retried after base * 2 seconds."""
        op = Flaky(UpstreamQuotaError("Resource exhausted"))
        assert asyncio.run(self.caller.call(op)) == "ok"
        assert op.attempts == 2
        assert self.sleep.delays == [2.0]

    def test_exhaustion_raises_last_error(self):
        op = Flaky(
            UpstreamUnavailableError("first", status=503),
            UpstreamUnavailableError("second", status=503),
        )
        with pytest.raises(GenerativeError) as exc_info:
            asyncio.run(self.caller.call(op))

        assert str(exc_info.value) == "second"
        assert exc_info.value.kind == ErrorKind.UNAVAILABLE
        assert op.attempts == 2

    def test_backoff_doubles(self):
        op = Flaky(*[UpstreamQuotaError("quota")] * 3)
        with pytest.raises(UpstreamQuotaError):
            asyncio.run(self.caller.call(op, max_attempts=3))
        assert self.sleep.delays == [2.0, 4.0]

    def test_non_retryable_fails_fast(self):
        """Credential errors are never retried."""
        op = Flaky(UpstreamCredentialError("API key not valid"))
        with pytest.raises(UpstreamCredentialError):
            asyncio.run(self.caller.call(op))
        assert op.attempts == 1
        assert self.sleep.delays == []

    def test_explicit_zero_attempts_still_tries_once(self):
        op = Flaky(UpstreamQuotaError("quota"))
        with pytest.raises(UpstreamQuotaError):
            asyncio.run(self.caller.call(op, max_attempts=0))
        assert op.attempts == 1
        assert self.sleep.delays == []
        assert self.caller.get_stats()["total_failures"] == 1

    def test_parse_error_not_retried(self):
        op = Flaky(ParseError("no candidates"))
        with pytest.raises(ParseError):
            asyncio.run(self.caller.call(op))
        assert op.attempts == 1

    def test_plain_exception_is_classified(self):
        op = Flaky(RuntimeError("connection reset by peer"), RuntimeError("connection reset by peer"))
        with pytest.raises(GenerativeError) as exc_info:
            asyncio.run(self.caller.call(op))
        assert exc_info.value.kind == ErrorKind.NETWORK
        assert op.attempts == 2

    def test_delay_schedule(self):
        caller = ResilientCaller(RetryConfig(backoff_base=0.5))
        assert caller.delay_before(1) == 0.0
        assert caller.delay_before(2) == 1.0
        assert caller.delay_before(3) == 2.0

    def test_stats(self):
        asyncio.run(self.caller.call(Flaky(UpstreamQuotaError("quota"))))
        stats = self.caller.get_stats()
        assert stats["total_calls"] == 1
        assert stats["total_attempts"] == 2
        assert stats["total_failures"] == 0


class TestClassification:
    """Tests for the error classifier."""

    def test_explicit_status_wins(self):
        assert kind_from_upstream(429) == ErrorKind.UPSTREAM_QUOTA
        assert kind_from_upstream(503) == ErrorKind.UNAVAILABLE
        assert kind_from_upstream(500) == ErrorKind.UNAVAILABLE
        assert kind_from_upstream(401) == ErrorKind.CREDENTIAL
        assert kind_from_upstream(400, "RESOURCE_EXHAUSTED") == ErrorKind.UPSTREAM_QUOTA
        assert kind_from_upstream(418) == ErrorKind.UNKNOWN

    def test_message_hints(self):
        assert kind_from_message("API key not valid") == ErrorKind.CREDENTIAL
        assert kind_from_message("Quota exceeded for metric") == ErrorKind.UPSTREAM_QUOTA
        assert kind_from_message("request timed out") == ErrorKind.TIMEOUT
        assert kind_from_message("something odd") == ErrorKind.UNKNOWN

    def test_classified_error_passes_through(self):
        error = UpstreamQuotaError("quota")
        assert classify_error(error) is error

    def test_transport_errors(self):
        assert classify_error(asyncio.TimeoutError()).kind == ErrorKind.TIMEOUT
        assert classify_error(aiohttp.ClientConnectionError("refused")).kind == ErrorKind.NETWORK

    def test_credential_error_not_retryable(self):
        classified = classify_error(UpstreamCredentialError("bad key"))
        assert classified.kind == ErrorKind.CREDENTIAL
        assert not classified.retryable

    def test_retryable_kinds(self):
        assert UpstreamQuotaError("q").retryable
        assert UpstreamUnavailableError("u", kind=ErrorKind.TIMEOUT).retryable
        assert not ParseError("p").retryable
        assert not GenerativeError("x").retryable
