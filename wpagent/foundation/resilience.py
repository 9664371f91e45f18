"""
Resilient caller - bounded retries with exponential backoff.

Wraps any awaitable-producing operation. Only transient failures (quota,
429/503, timeouts, network) are retried; everything else fails on the
first attempt. The last classified error is re-raised on exhaustion.

Used by both the primary dispatch path and the auto-healing loop.
"""

from __future__ import annotations
import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, TypeVar

from wpagent.foundation.errors import classify_error

logger = logging.getLogger(__name__)

T = TypeVar('T')

Sleep = Callable[[float], Awaitable[None]]


@dataclass
class RetryConfig:
    """Configuration for retry behavior."""
    max_attempts: int = 2
    backoff_base: float = 1.0


class ResilientCaller:
    """
    Calls an async operation with bounded retries.

    Backoff before attempt n (n >= 2) is ``backoff_base * 2 ** (n - 1)``
    seconds. ``sleep`` is injectable so tests can observe delays without
    waiting for them.
    """

    def __init__(
        self,
        config: Optional[RetryConfig] = None,
        sleep: Optional[Sleep] = None,
    ):
        self.config = config or RetryConfig()
        self._sleep = sleep or asyncio.sleep

        self.total_calls = 0
        self.total_attempts = 0
        self.total_failures = 0

    def delay_before(self, attempt: int) -> float:
        """Delay in seconds before the given 1-based attempt."""
        if attempt < 2:
            return 0.0
        return self.config.backoff_base * (2 ** (attempt - 1))

    async def call(
        self,
        operation: Callable[[], Awaitable[T]],
        max_attempts: Optional[int] = None,
    ) -> T:
        """
        Run ``operation`` until it succeeds or attempts run out.

        Args:
            operation: Zero-argument callable returning a fresh awaitable per attempt
            max_attempts: Override the configured attempt budget

        Returns:
            The operation's result

        Raises:
            GenerativeError: classified error from the last attempt
        """
        if max_attempts is None:
            max_attempts = self.config.max_attempts
        attempts = max(1, max_attempts)
        self.total_calls += 1
        attempt = 1

        while True:
            self.total_attempts += 1
            try:
                result = await operation()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                error = classify_error(e)
                logger.warning(f"Attempt {attempt}/{attempts} failed [{error.kind}]: {error}")

                if not error.retryable:
                    logger.info(f"Error kind {error.kind} is not retryable, giving up")
                if not error.retryable or attempt >= attempts:
                    self.total_failures += 1
                    raise error
            else:
                if attempt > 1:
                    logger.info(f"Attempt {attempt}/{attempts} succeeded")
                return result

            attempt += 1
            delay = self.delay_before(attempt)
            logger.info(f"Waiting {delay:.1f}s before attempt {attempt}/{attempts}")
            await self._sleep(delay)

    def get_stats(self) -> dict:
        return {
            "total_calls": self.total_calls,
            "total_attempts": self.total_attempts,
            "total_failures": self.total_failures,
            "max_attempts": self.config.max_attempts,
        }
