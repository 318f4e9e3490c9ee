"""Consecutive-failure circuit breaker for content dispatch."""

from __future__ import annotations

import logging
from dataclasses import replace

from manuscript_loop.orchestrator.models import LoopState

logger = logging.getLogger(__name__)


class CircuitBreaker:
    """Opens after ``threshold`` consecutive content-task failures.

    Review task outcomes are never recorded here, so a diagnostic sweep alone
    cannot close an open breaker. Only a content success or an operator reset
    closes it.
    """

    def __init__(
        self,
        threshold: int,
        *,
        consecutive_failures: int = 0,
        is_open: bool = False,
        trips: int = 0,
    ) -> None:
        if threshold < 1:
            raise ValueError("Circuit breaker threshold must be >= 1.")
        self.threshold = threshold
        self.consecutive_failures = consecutive_failures
        self.is_open = is_open
        self.trips = trips

    @classmethod
    def from_state(cls, state: LoopState, *, threshold: int) -> CircuitBreaker:
        return cls(
            threshold,
            consecutive_failures=state.consecutive_failures,
            is_open=state.breaker_open,
            trips=state.breaker_trips,
        )

    def record_outcome(self, success: bool) -> bool:
        """Record one content outcome; return True when this call opened the breaker."""

        if success:
            if self.is_open:
                logger.info("Circuit breaker closed after successful task")
            self.consecutive_failures = 0
            self.is_open = False
            return False

        self.consecutive_failures += 1
        if not self.is_open and self.consecutive_failures >= self.threshold:
            self.is_open = True
            self.trips += 1
            logger.warning(
                "Circuit breaker opened after %d consecutive failures",
                self.consecutive_failures,
            )
            return True
        return False

    def can_dispatch_content_task(self) -> bool:
        return not self.is_open

    def reset(self) -> None:
        """Operator reset: close the breaker and clear the failure streak."""

        self.consecutive_failures = 0
        self.is_open = False

    def apply_to(self, state: LoopState) -> LoopState:
        return replace(
            state,
            consecutive_failures=self.consecutive_failures,
            breaker_open=self.is_open,
            breaker_trips=self.trips,
        )

    def status_line(self) -> str:
        if self.is_open:
            return (
                f"Circuit breaker: OPEN ({self.consecutive_failures}/{self.threshold} "
                f"consecutive failures, trips={self.trips})"
            )
        if self.consecutive_failures:
            return (
                f"Circuit breaker: closed ({self.consecutive_failures}/{self.threshold} "
                f"consecutive failures, trips={self.trips})"
            )
        return f"Circuit breaker: stable, no consecutive failures (trips={self.trips})"
