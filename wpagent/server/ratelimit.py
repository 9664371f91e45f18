"""
Per-client rate limiting for the shared generative credential.

Fixed-window counter keyed by client identity, charged only for requests
whose generative call succeeded:

    reservation = limiter.reserve(identity)   # raises RateLimitExceededError
    try:
        ...                                   # awaited work
    except Exception:
        limiter.release(reservation)
        raise
    limiter.commit(reservation)

``reserve`` checks ``count + pending < limit`` and registers the pending
slot in one step with no await in between, so concurrent tasks cannot
both pass the check for the last slot. ``check`` never mutates.

Callers that bring their own credential bypass the limiter entirely.
"""

from __future__ import annotations
import logging
import math
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Dict, Iterator, Optional, Protocol, Tuple

from wpagent.foundation.errors import RateLimitExceededError

logger = logging.getLogger(__name__)


# =============================================================================
# Records and storage
# =============================================================================

@dataclass
class RateLimitRecord:
    """Counter for one identity in one window."""
    count: int
    window_start: float
    window_end: float
    pending: int = 0  # reserved, not yet committed or released


class RateLimitStore(Protocol):
    """Storage for rate-limit records. Operations must not suspend."""

    def get(self, identity: str) -> Optional[RateLimitRecord]:
        ...

    def put(self, identity: str, record: RateLimitRecord) -> None:
        ...

    def delete(self, identity: str) -> None:
        ...

    def items(self) -> Iterator[Tuple[str, RateLimitRecord]]:
        ...

    def __len__(self) -> int:
        ...


class InMemoryRateLimitStore:
    """Process-local store for single-instance deployments."""

    def __init__(self):
        self._records: Dict[str, RateLimitRecord] = {}

    def get(self, identity: str) -> Optional[RateLimitRecord]:
        return self._records.get(identity)

    def put(self, identity: str, record: RateLimitRecord) -> None:
        self._records[identity] = record

    def delete(self, identity: str) -> None:
        self._records.pop(identity, None)

    def items(self) -> Iterator[Tuple[str, RateLimitRecord]]:
        # Copy so sweeping can delete while iterating
        return iter(list(self._records.items()))

    def __len__(self) -> int:
        return len(self._records)


# =============================================================================
# Decisions
# =============================================================================

@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    limit: int
    used: int
    remaining: int
    reset_time: float  # epoch seconds
    reset_in_minutes: int

    def to_dict(self) -> Dict[str, object]:
        return {
            "limit": self.limit,
            "used": self.used,
            "remaining": self.remaining,
            "reset_time": datetime.fromtimestamp(self.reset_time, tz=timezone.utc).isoformat(),
            "reset_in_minutes": self.reset_in_minutes,
        }


@dataclass(frozen=True)
class Reservation:
    """A pending slot handed out by ``reserve``."""
    identity: str
    window_start: float
    decision: RateLimitDecision


def minutes_until(reset_time: float, now: float) -> int:
    """Whole minutes until reset, rounded up."""
    return max(0, math.ceil((reset_time - now) / 60))


# =============================================================================
# Rate limiter
# =============================================================================

class RateLimiter:
    """
    Fixed-window rate limiter over an injected store and clock.

    A window opens on the first request for an identity and lasts
    ``window_seconds``; once the clock passes ``window_end`` the counter
    starts again at zero.
    """

    def __init__(
        self,
        limit: int = 50,
        window_seconds: int = 3600,
        store: Optional[RateLimitStore] = None,
        clock: Callable[[], float] = time.time,
        sweep_interval_seconds: int = 600,
    ):
        self.limit = limit
        self.window_seconds = window_seconds
        self.store: RateLimitStore = store if store is not None else InMemoryRateLimitStore()
        self.sweep_interval_seconds = sweep_interval_seconds
        self._clock = clock
        self._last_sweep = clock()

    def _current(self, identity: str, now: float) -> Optional[RateLimitRecord]:
        """The record for the open window, or None if there is none."""
        record = self.store.get(identity)
        if record is None or now > record.window_end:
            return None
        return record

    def _decision(self, record: Optional[RateLimitRecord], now: float) -> RateLimitDecision:
        if record is None:
            used, reset_time = 0, now + self.window_seconds
        else:
            used, reset_time = record.count + record.pending, record.window_end
        return RateLimitDecision(
            allowed=used < self.limit,
            limit=self.limit,
            used=used,
            remaining=max(0, self.limit - used),
            reset_time=reset_time,
            reset_in_minutes=minutes_until(reset_time, now),
        )

    def check(self, identity: str) -> RateLimitDecision:
        """Report the state for ``identity`` without changing it."""
        now = self._clock()
        return self._decision(self._current(identity, now), now)

    def reserve(self, identity: str) -> Reservation:
        """
        Admit one request for ``identity`` or raise.

        Raises:
            RateLimitExceededError: when the window is full
        """
        now = self._clock()
        record = self._current(identity, now)
        if record is None:
            record = RateLimitRecord(count=0, window_start=now, window_end=now + self.window_seconds)

        decision = self._decision(record, now)
        if not decision.allowed:
            logger.warning(f"Rate limit exceeded for {identity} (resets in {decision.reset_in_minutes} min)")
            raise RateLimitExceededError(
                f"Rate limit of {self.limit} requests per window exceeded. "
                f"Try again in {decision.reset_in_minutes} minutes or use your own API key.",
                reset_in_minutes=decision.reset_in_minutes,
                reset_time=decision.reset_time,
            )

        record.pending += 1
        self.store.put(identity, record)
        return Reservation(identity=identity, window_start=record.window_start, decision=self._decision(record, now))

    def _owned(self, reservation: Reservation) -> Optional[RateLimitRecord]:
        record = self.store.get(reservation.identity)
        if record is None or record.window_start != reservation.window_start or record.pending <= 0:
            return None
        return record

    def commit(self, reservation: Reservation) -> RateLimitDecision:
        """Charge a reserved slot after a successful upstream call."""
        now = self._clock()
        record = self._owned(reservation)
        if record is not None:
            record.pending -= 1
            record.count += 1
            self.store.put(reservation.identity, record)
        else:
            # Window was swept or replaced while the request was in flight
            logger.debug(f"Reservation for {reservation.identity} outlived its window, not charged")

        self.maybe_sweep(now)
        return self._decision(self._current(reservation.identity, now), now)

    def release(self, reservation: Reservation) -> None:
        """Return a reserved slot without charging it."""
        record = self._owned(reservation)
        if record is not None:
            record.pending -= 1
            self.store.put(reservation.identity, record)

    def sweep(self, now: Optional[float] = None) -> int:
        """Remove records whose window closed more than one full window ago."""
        now = self._clock() if now is None else now
        removed = 0
        for identity, record in self.store.items():
            if now - record.window_end > self.window_seconds:
                self.store.delete(identity)
                removed += 1
        self._last_sweep = now
        if removed:
            logger.info(f"Rate limit sweep removed {removed} stale records, {len(self.store)} active")
        return removed

    def maybe_sweep(self, now: Optional[float] = None) -> int:
        now = self._clock() if now is None else now
        if now - self._last_sweep >= self.sweep_interval_seconds:
            return self.sweep(now)
        return 0
