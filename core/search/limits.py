# Path: core/search/limits.py
# Purpose: Provide per-request call quotas, cost budgets, and per-service circuit breakers.
# Layer: core/search.
# Details: Plain objects passed into the dispatcher; nothing here is process-wide.

from __future__ import annotations

import logging
import time
from typing import Callable, Optional

logger = logging.getLogger(__name__)


class CallQuota:
    """Counts down a fixed number of allowed calls."""

    def __init__(self, limit: int) -> None:
        self.limit = max(0, int(limit))
        self.used = 0

    @property
    def remaining(self) -> int:
        return self.limit - self.used

    def available(self, count: int = 1) -> bool:
        return self.remaining >= count

    def try_acquire(self, count: int = 1) -> bool:
        if not self.available(count):
            return False
        self.used += count
        return True


class CostBudget:
    """Credits a caller may still spend; spending never goes below zero."""

    def __init__(self, limit: float) -> None:
        self.limit = max(0.0, float(limit))
        self.spent = 0.0

    @property
    def remaining(self) -> float:
        return self.limit - self.spent

    def can_afford(self, amount: float) -> bool:
        return amount <= self.remaining + 1e-9

    def try_spend(self, amount: float) -> bool:
        if not self.can_afford(amount):
            return False
        self.spent += amount
        return True

    def refund(self, amount: float) -> None:
        self.spent = max(0.0, self.spent - amount)


class CircuitBreaker:
    """Stops calling a failing service for a cool-down period.

    Closed until ``failure_threshold`` consecutive failures, then open for
    ``reset_seconds``; after that a single trial call is allowed (half-open)
    and its outcome closes or re-opens the breaker.
    """

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"

    def __init__(
        self,
        name: str,
        failure_threshold: int = 3,
        reset_seconds: float = 60.0,
        clock: Optional[Callable[[], float]] = None,
    ) -> None:
        self.name = name
        self.failure_threshold = max(1, failure_threshold)
        self.reset_seconds = reset_seconds
        self._clock = clock or time.monotonic
        self.failures = 0
        self._opened_at: Optional[float] = None
        self._trial_at: Optional[float] = None

    @classmethod
    def from_settings(cls, name: str, settings, clock=None) -> "CircuitBreaker":
        return cls(name, settings.breaker_failure_threshold, settings.breaker_reset_seconds, clock)

    @property
    def state(self) -> str:
        if self._opened_at is None:
            return self.CLOSED
        if self._clock() - self._opened_at >= self.reset_seconds:
            return self.HALF_OPEN
        return self.OPEN

    def available(self) -> bool:
        """Whether a call would be allowed right now; claims nothing."""

        state = self.state
        if state == self.HALF_OPEN:
            return not self._trial_in_flight()
        return state == self.CLOSED

    def allow(self) -> bool:
        """Admit one call; while half-open only the first caller gets the trial."""

        state = self.state
        if state == self.CLOSED:
            return True
        if state == self.OPEN or self._trial_in_flight():
            return False
        self._trial_at = self._clock()
        return True

    def record_success(self) -> None:
        self.failures = 0
        self._opened_at = None
        self._trial_at = None

    def record_failure(self) -> None:
        self.failures += 1
        if self.state == self.HALF_OPEN or self.failures >= self.failure_threshold:
            if self._opened_at is None:
                logger.warning("Circuit breaker %s opened after %d failures", self.name, self.failures)
            self._opened_at = self._clock()
        self._trial_at = None

    def _trial_in_flight(self) -> bool:
        # An unreported trial expires after one reset period.
        return self._trial_at is not None and self._clock() - self._trial_at < self.reset_seconds
