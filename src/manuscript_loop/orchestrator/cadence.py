"""Fixed-period review sweep cadence."""

from __future__ import annotations

from dataclasses import dataclass


def should_run_review_sweep(iteration_count: int, period: int) -> bool:
    """True on iterations ``period, 2*period, ...``; a non-positive period disables sweeps."""

    if period <= 0 or iteration_count < 1:
        return False
    return iteration_count % period == 0


@dataclass(frozen=True, slots=True)
class ReviewCadence:
    period: int = 6

    def should_run(self, iteration_count: int) -> bool:
        return should_run_review_sweep(iteration_count, self.period)

    def next_sweep_at(self, iteration_count: int) -> int | None:
        """First iteration after ``iteration_count`` that runs a sweep."""

        if self.period <= 0:
            return None
        return (max(0, iteration_count) // self.period + 1) * self.period
