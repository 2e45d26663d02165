"""
Tests for due-job selection (civic_sync/lib/scheduler.py).

Uses the registered bills, votes and fec-finance jobs with in-memory stores.
"""

from datetime import timedelta

import pytest

import civic_sync.services  # noqa: F401  (registers jobs)
from civic_sync.lib.scheduler import (
    MAX_RETRY_ATTEMPTS,
    STALE_LEASE_MESSAGE,
    SyncScheduler,
    consecutive_failures,
    retry_delay,
)


def plan_for(scheduler, job_id):
    return next(p for p in scheduler.plan() if p.job_id == job_id)


def finish_run(deps, clock, job_id, status="complete"):
    """Record a run of job_id that started and ended at the current time."""
    deps.leases.try_acquire(job_id, clock(), clock() + timedelta(minutes=30))
    deps.leases.release(job_id, status, 0, 0, finished_at=clock())


# =============================================================================
# Helper Tests
# =============================================================================


class TestHelpers:
    def test_consecutive_failures_counts_leading_failures(self):
        runs = [{"status": "failed"}, {"status": "failed"}, {"status": "succeeded"}, {"status": "failed"}]

        assert consecutive_failures(runs) == 2
        assert consecutive_failures([{"status": "partial"}]) == 0
        assert consecutive_failures([]) == 0

    def test_retry_delay_doubles_up_to_frequency(self):
        assert retry_delay(1, 300) == timedelta(minutes=5)
        assert retry_delay(2, 300) == timedelta(minutes=10)
        assert retry_delay(3, 300) == timedelta(minutes=20)
        assert retry_delay(10, 120) == timedelta(minutes=120)


# =============================================================================
# Planning Tests
# =============================================================================


class TestPlan:
    """Tests for SyncScheduler.plan()."""

    def test_never_run_jobs_are_due_by_priority(self, make_deps, clock):
        scheduler = SyncScheduler(make_deps(), clock=clock)

        plans = [p for p in scheduler.plan() if p.job_id in ("bills", "votes", "fec-finance")]

        assert [p.job_id for p in plans] == ["votes", "bills", "fec-finance"]
        assert all(p.is_due and p.reason == "never run" for p in plans)

    def test_recent_run_waits_for_frequency(self, make_deps, clock):
        deps = make_deps()
        scheduler = SyncScheduler(deps, clock=clock)
        started = clock()
        finish_run(deps, clock, "votes")

        clock.advance(60 * 60)
        waiting = plan_for(scheduler, "votes")
        assert waiting.state == "waiting"
        assert waiting.next_run_at == started + timedelta(minutes=120)

        clock.advance(60 * 60)
        assert plan_for(scheduler, "votes").is_due

    def test_partial_run_is_due_immediately(self, make_deps, clock):
        deps = make_deps()
        finish_run(deps, clock, "bills", status="partial")
        clock.advance(60)

        schedule = plan_for(SyncScheduler(deps, clock=clock), "bills")

        assert schedule.is_due
        assert schedule.reason == "resuming partial run"

    def test_held_lease_is_locked(self, make_deps, clock):
        deps = make_deps()
        deps.leases.try_acquire("fec-finance", clock(), clock() + timedelta(minutes=30))

        schedule = plan_for(SyncScheduler(deps, clock=clock), "fec-finance")

        assert schedule.state == "locked"
        assert schedule.next_run_at == clock() + timedelta(minutes=30)

    def test_failed_job_retries_with_backoff(self, make_deps, clock):
        deps = make_deps()
        scheduler = SyncScheduler(deps, clock=clock)
        for _ in range(2):
            deps.runs.append({"job_id": "bills", "status": "failed"})
        finish_run(deps, clock, "bills", status="error")

        clock.advance(9 * 60)
        assert plan_for(scheduler, "bills").state == "waiting"

        clock.advance(60)
        schedule = plan_for(scheduler, "bills")
        assert schedule.is_due
        assert schedule.reason == "retry 2 after failure"

    def test_repeated_failures_fall_back_to_frequency(self, make_deps, clock):
        deps = make_deps()
        for _ in range(MAX_RETRY_ATTEMPTS + 1):
            deps.runs.append({"job_id": "votes", "status": "failed"})
        finish_run(deps, clock, "votes", status="error")

        clock.advance(119 * 60)
        schedule = plan_for(SyncScheduler(deps, clock=clock), "votes")

        assert schedule.state == "waiting"
        assert "normal frequency" in schedule.reason


# =============================================================================
# Sweep and Tick Tests
# =============================================================================


class TestSweepAndTick:
    """Tests for stale lease sweeping and SyncScheduler.tick()."""

    def test_sweep_closes_expired_running_leases(self, make_deps, clock):
        deps = make_deps()
        deps.leases.try_acquire("bills", clock(), clock() + timedelta(minutes=30))
        deps.leases.try_acquire("fec-finance:m-001", clock(), clock() + timedelta(minutes=30))
        deps.leases.try_acquire("votes", clock(), clock() + timedelta(hours=2))
        clock.advance(31 * 60)

        swept = SyncScheduler(deps, clock=clock).sweep_stale_leases()

        assert sorted(swept) == ["bills", "fec-finance:m-001"]
        bills = deps.leases.get("bills")
        assert bills.status == "error"
        assert bills.lock_until is None
        assert bills.error_message == STALE_LEASE_MESSAGE
        assert deps.leases.get("votes").status == "running"

    @pytest.mark.asyncio
    async def test_tick_reports_without_running(self, make_deps, clock):
        deps = make_deps()

        report = await SyncScheduler(deps, clock=clock).tick()

        assert report["success"] is True
        assert report["due"][0] == "votes"
        assert report["ran"] == []
        assert deps.runs.recent("votes") == []

    @pytest.mark.asyncio
    async def test_tick_runs_highest_priority_due_job(self, make_deps, clock, sample_members):
        # Every roll 404s, so both vote feeds are immediately exhausted
        deps = make_deps(tables={"members": sample_members})

        report = await SyncScheduler(deps, clock=clock).tick(run=True, max_jobs=1)

        assert report["ran"] == [
            {
                "job_id": "votes",
                "success": True,
                "status": "complete",
                "message": "Roll-call votes sync complete",
            }
        ]
        assert deps.runs.recent("votes")[0]["status"] == "succeeded"
        assert deps.runs.recent("bills") == []

    @pytest.mark.asyncio
    async def test_paused_tick_does_nothing(self, make_deps, clock):
        deps = make_deps()
        deps.leases.try_acquire("bills", clock(), clock() + timedelta(minutes=30))
        clock.advance(31 * 60)
        deps.pause_flag.set_paused(True)

        report = await SyncScheduler(deps, clock=clock).tick(run=True)

        assert report["paused"] is True
        assert deps.leases.get("bills").status == "running"
