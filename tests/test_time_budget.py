"""
Tests for the per-invocation time budget (civic_sync/lib/time_budget.py).
"""

import pytest

from civic_sync.lib.time_budget import TimeBudget


class ManualClock:
    def __init__(self):
        self.value = 0.0

    def __call__(self):
        return self.value


class TestTimeBudget:
    """Tests for TimeBudget."""

    def test_fresh_budget_allows_work(self):
        clock = ManualClock()
        budget = TimeBudget(10, clock=clock)

        assert budget.should_continue() is True
        assert budget.remaining() == 10

    def test_near_expiry_stops_new_work(self):
        clock = ManualClock()
        budget = TimeBudget(10, clock=clock)

        clock.value = 8.4
        assert budget.should_continue() is True

        clock.value = 8.5
        assert budget.is_near_expiry() is True
        assert budget.is_expired() is False
        assert budget.should_continue() is False

    def test_expired_after_ceiling(self):
        clock = ManualClock()
        budget = TimeBudget(10, clock=clock)

        clock.value = 12
        assert budget.is_expired() is True
        assert budget.remaining() == 0.0

    def test_custom_ratio(self):
        clock = ManualClock()
        budget = TimeBudget(10, near_expiry_ratio=0.5, clock=clock)

        clock.value = 5
        assert budget.should_continue() is False

    def test_rejects_invalid_arguments(self):
        with pytest.raises(ValueError):
            TimeBudget(0)
        with pytest.raises(ValueError):
            TimeBudget(10, near_expiry_ratio=1.5)

    def test_to_dict(self):
        clock = ManualClock()
        budget = TimeBudget(20, clock=clock)
        clock.value = 5

        assert budget.to_dict() == {
            "ceiling_seconds": 20,
            "elapsed_seconds": 5.0,
            "remaining_seconds": 15.0,
        }
