"""
Due-job selection for the recurring scheduler.

A cron calls POST /sync/schedule every few minutes. Each tick:
1. Skips everything while syncs are paused
2. Sweeps stale leases: "running" rows whose lock_until has passed are
   closed as "error" so progress views stop reporting a crashed run as live
3. Classifies every registered job as locked, due or waiting
4. Optionally runs the due jobs, highest priority first, up to max_jobs

When a job is due:
- never run: immediately
- last run partial: immediately, so a backlog drains on consecutive ticks
- last run failed: after an exponential retry delay (capped at the job's
  frequency); after MAX_RETRY_ATTEMPTS consecutive failures it falls back
  to the normal frequency
- otherwise: frequency_minutes after the last run started

Usage:
    scheduler = SyncScheduler(deps)
    report = await scheduler.tick(run=True, max_jobs=1)
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Sequence

from civic_sync.lib.base_sync import SyncDependencies, SyncRequest
from civic_sync.lib.registry import SyncRegistry
from civic_sync.lib.stores import LeaseRecord, utcnow

logger = logging.getLogger(__name__)

RETRY_BASE_MINUTES = 5
MAX_RETRY_ATTEMPTS = 6
MAX_JOBS_PER_TICK = 10
STALE_LEASE_MESSAGE = "Lease expired while running; cleared by scheduler"


def consecutive_failures(runs: Sequence[Dict[str, Any]]) -> int:
    """Number of failed runs at the head of a newest-first run list."""
    count = 0
    for run in runs:
        if run.get("status") != "failed":
            break
        count += 1
    return count


def retry_delay(failures: int, frequency_minutes: int) -> timedelta:
    """5, 10, 20, ... minutes after the nth failure, never beyond the frequency."""
    minutes = RETRY_BASE_MINUTES * 2 ** max(failures - 1, 0)
    return timedelta(minutes=min(minutes, frequency_minutes))


@dataclass
class JobSchedule:
    """Where one job stands at the time of a tick."""

    job_id: str
    priority: int
    frequency_minutes: int
    state: str
    reason: str
    last_run_at: Optional[datetime] = None
    next_run_at: Optional[datetime] = None
    last_status: Optional[str] = None

    @property
    def is_due(self) -> bool:
        return self.state == "due"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "job_id": self.job_id,
            "priority": self.priority,
            "frequency_minutes": self.frequency_minutes,
            "state": self.state,
            "reason": self.reason,
            "last_status": self.last_status,
            "last_run_at": self.last_run_at.isoformat() if self.last_run_at else None,
            "next_run_at": self.next_run_at.isoformat() if self.next_run_at else None,
        }


class SyncScheduler:
    """
    Picks which registered jobs should run now.

    Args:
        deps: Stores (leases, runs, pause flag) and the HTTP client
        clock: Returns the current aware UTC datetime
        registry: Job registry (default: SyncRegistry)
    """

    def __init__(
        self,
        deps: SyncDependencies,
        clock: Callable[[], datetime] = utcnow,
        registry: Any = SyncRegistry,
    ):
        self.deps = deps
        self.registry = registry
        self._clock = clock

    # =========================================================================
    # Stale Lease Sweep
    # =========================================================================

    def sweep_stale_leases(self) -> List[str]:
        """Close every expired "running" lease as "error". Returns their ids."""
        now = self._clock()
        cleared = []
        for record in self.deps.leases.list_all():
            if not record.is_stale(now):
                continue
            # A new run may have taken it over since list_all()
            current = self.deps.leases.get(record.job_id)
            if current is None or not current.is_stale(now):
                continue
            self.deps.leases.release(
                record.job_id,
                status="error",
                success_count=current.last_success_count,
                failure_count=current.last_failure_count,
                finished_at=now,
                error_message=STALE_LEASE_MESSAGE,
            )
            logger.warning(
                f"Cleared stale lease {record.job_id} "
                f"(lock expired {current.lock_until.isoformat()})"
            )
            cleared.append(record.job_id)
        return cleared

    # =========================================================================
    # Planning
    # =========================================================================

    def plan(self) -> List[JobSchedule]:
        """Every registered job, due ones first, then by priority."""
        now = self._clock()
        plans = [
            self._classify(self.registry.get(job_id), self.deps.leases.get(job_id), now)
            for job_id in self.registry.list_jobs()
        ]
        plans.sort(key=lambda p: (not p.is_due, -p.priority, p.job_id))
        return plans

    def _classify(
        self, job_class: Any, lease: Optional[LeaseRecord], now: datetime
    ) -> JobSchedule:
        schedule = JobSchedule(
            job_id=job_class.job_id,
            priority=job_class.priority,
            frequency_minutes=job_class.frequency_minutes,
            state="waiting",
            reason="scheduled",
        )
        if lease is None or lease.last_run_at is None:
            schedule.state, schedule.reason = "due", "never run"
            schedule.next_run_at = now
            return schedule

        schedule.last_run_at = lease.last_run_at
        schedule.last_status = lease.status
        if lease.is_held(now):
            schedule.state = "locked"
            schedule.reason = f"lease held until {lease.lock_until.isoformat()}"
            schedule.next_run_at = lease.lock_until
            return schedule

        frequency = timedelta(minutes=job_class.frequency_minutes)
        if lease.status == "partial":
            schedule.next_run_at = lease.last_run_at
            schedule.reason = "resuming partial run"
        elif lease.status == "error":
            runs = self.deps.runs.recent(job_class.job_id, MAX_RETRY_ATTEMPTS + 1)
            # A swept lease has no failed JobRun behind it; count it once
            failures = max(consecutive_failures(runs), 1)
            if failures > MAX_RETRY_ATTEMPTS:
                schedule.next_run_at = lease.last_run_at + frequency
                schedule.reason = f"failed {failures} times; back to normal frequency"
            else:
                delay = retry_delay(failures, job_class.frequency_minutes)
                schedule.next_run_at = lease.last_run_at + delay
                schedule.reason = f"retry {failures} after failure"
        else:
            schedule.next_run_at = lease.last_run_at + frequency

        if schedule.next_run_at <= now:
            schedule.state = "due"
        return schedule

    # =========================================================================
    # Tick
    # =========================================================================

    async def tick(self, run: bool = False, max_jobs: int = 1) -> Dict[str, Any]:
        """
        One scheduler pass.

        Args:
            run: Run due jobs in-process instead of only reporting them
            max_jobs: Most jobs to run in this tick (capped at MAX_JOBS_PER_TICK)

        Returns:
            Report with swept leases, the full plan and any run outcomes
        """
        if self.deps.pause_flag.is_paused():
            logger.info("Syncs paused, scheduler tick skipped")
            return {"success": False, "paused": True, "message": "Syncs are currently paused"}

        swept = self.sweep_stale_leases()
        plans = self.plan()
        due = [p for p in plans if p.is_due]
        logger.info(
            f"Scheduler tick: {len(due)} due of {len(plans)}, {len(swept)} stale lease(s) swept"
        )

        ran = []
        if run:
            for schedule in due[: min(max_jobs, MAX_JOBS_PER_TICK)]:
                orchestrator = self.registry.create_instance(
                    schedule.job_id, self.deps, clock=self._clock
                )
                outcome = await orchestrator.run(SyncRequest())
                ran.append(
                    {
                        "job_id": schedule.job_id,
                        "success": outcome.get("success", False),
                        "status": outcome.get("status"),
                        "message": outcome.get("message") or outcome.get("error"),
                    }
                )

        return {
            "success": True,
            "swept": swept,
            "due": [p.job_id for p in due],
            "jobs": [p.to_dict() for p in plans],
            "ran": ran,
        }
