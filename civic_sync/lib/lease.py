"""
Lease-based mutual exclusion for sync jobs.

A lease prevents two invocations of the same job from running at once. It is
time-bounded: a run that crashes without releasing leaves a "running" row
whose lock_until eventually passes, and the next invocation takes it over.

Usage:
    lease = JobLease(store, "fec-finance", max_duration_seconds=1800)
    if not lease.acquire():
        return {"success": False, "already_running": True}
    try:
        ...
    finally:
        lease.release("complete", success_count=10, failure_count=0)
"""

import logging
from datetime import datetime, timedelta
from typing import Callable, Optional

from civic_sync.lib.stores import LeaseRecord, LeaseStore, utcnow

logger = logging.getLogger(__name__)

DEFAULT_LEASE_SECONDS = 30 * 60

LEASE_STATUSES = ("idle", "running", "complete", "error", "partial")


def lease_id_for(job_id: str, scope: Optional[str] = None) -> str:
    """Lease identity for a whole job or a job narrowed to one scope.

    Example: lease_id_for("fec-finance", "m-42") -> "fec-finance:m-42"
    """
    return f"{job_id}:{scope}" if scope else job_id


class JobLease:
    """
    Lease on one job identity.

    Args:
        store: Persisted lease rows
        job_id: Lease identity (see lease_id_for)
        max_duration_seconds: How long an acquired lease stays valid
        clock: Returns the current aware UTC datetime
    """

    def __init__(
        self,
        store: LeaseStore,
        job_id: str,
        max_duration_seconds: int = DEFAULT_LEASE_SECONDS,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.job_id = job_id
        self.max_duration_seconds = max_duration_seconds
        self._clock = clock
        self.held = False

    def acquire(self) -> bool:
        """Try to take the lease.

        Succeeds when no row exists, lock_until is empty, or lock_until has
        passed (stale takeover). Fails when another run holds it.
        """
        now = self._clock()
        existing = self.store.get(self.job_id)
        if existing is not None and existing.is_stale(now):
            logger.warning(
                f"Reclaiming stale lease for {self.job_id} "
                f"(expired {existing.lock_until.isoformat()})"
            )

        lock_until = now + timedelta(seconds=self.max_duration_seconds)
        self.held = self.store.try_acquire(self.job_id, now, lock_until)
        if self.held:
            logger.info(f"Acquired lease {self.job_id} until {lock_until.isoformat()}")
        else:
            logger.info(f"Lease {self.job_id} is held by another run")
        return self.held

    def release(
        self,
        status: str,
        success_count: int = 0,
        failure_count: int = 0,
        error_message: Optional[str] = None,
    ) -> None:
        """Clear lock_until and record the final status and counts."""
        if status not in LEASE_STATUSES:
            raise ValueError(f"Unknown lease status: {status}")
        self.store.release(
            self.job_id,
            status=status,
            success_count=success_count,
            failure_count=failure_count,
            finished_at=self._clock(),
            error_message=error_message,
        )
        self.held = False
        logger.info(
            f"Released lease {self.job_id}: {status} "
            f"({success_count} ok, {failure_count} failed)"
        )

    def state(self) -> Optional[LeaseRecord]:
        return self.store.get(self.job_id)

    def __repr__(self) -> str:
        return f"<JobLease(job_id={self.job_id}, held={self.held})>"
