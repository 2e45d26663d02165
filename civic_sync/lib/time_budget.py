"""
Per-invocation time budget.

A sync job runs under an external wall-clock ceiling (the scheduler or the
hosting platform kills it once that passes). The budget lets a job stop at a
clean checkpoint before that happens instead of dying mid-write.

Usage:
    budget = TimeBudget(25)
    while budget.should_continue():
        ...  # fetch next page
"""

import time
from typing import Callable, Dict

NEAR_EXPIRY_RATIO = 0.85


class BudgetExhaustedError(Exception):
    """Raised when work is abandoned because the budget is nearly spent.

    Not a failure: the run ends "partial" and the next invocation resumes
    from the last checkpoint.
    """


class TimeBudget:
    """Deadline tracker with a "near expiry" wind-down threshold.

    Args:
        ceiling_seconds: Total seconds this invocation may run
        near_expiry_ratio: Fraction of the ceiling after which the job
            should stop starting new work (default: 0.85)
        clock: Monotonic clock, injectable for tests
    """

    def __init__(
        self,
        ceiling_seconds: float,
        near_expiry_ratio: float = NEAR_EXPIRY_RATIO,
        clock: Callable[[], float] = time.monotonic,
    ):
        if ceiling_seconds <= 0:
            raise ValueError("ceiling_seconds must be positive")
        if not 0 < near_expiry_ratio <= 1:
            raise ValueError("near_expiry_ratio must be in (0, 1]")
        self.ceiling_seconds = ceiling_seconds
        self.near_expiry_ratio = near_expiry_ratio
        self._clock = clock
        self._started = clock()

    def elapsed(self) -> float:
        return self._clock() - self._started

    def remaining(self) -> float:
        return max(0.0, self.ceiling_seconds - self.elapsed())

    def is_expired(self) -> bool:
        return self.elapsed() >= self.ceiling_seconds

    def is_near_expiry(self) -> bool:
        return self.elapsed() >= self.ceiling_seconds * self.near_expiry_ratio

    def should_continue(self) -> bool:
        """True while there is room to start another unit of work."""
        return not self.is_expired() and not self.is_near_expiry()

    def to_dict(self) -> Dict[str, float]:
        return {
            "ceiling_seconds": self.ceiling_seconds,
            "elapsed_seconds": round(self.elapsed(), 3),
            "remaining_seconds": round(self.remaining(), 3),
        }

    def __repr__(self) -> str:
        return (
            f"<TimeBudget(elapsed={self.elapsed():.1f}s, "
            f"ceiling={self.ceiling_seconds}s)>"
        )
