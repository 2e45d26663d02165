"""
Job Run Audit Log

Appends one record per sync invocation to the sync_job_runs table. The
history survives restarts and backs the GET /sync/runs/{job_id} endpoint.

Writing the audit record is best-effort: a failure here is logged and never
turns a successful sync into a failed one.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional
from uuid import uuid4

from civic_sync.lib.stores import JobRunStore

logger = logging.getLogger(__name__)

RUN_STATUSES = ("succeeded", "partial", "failed")


@dataclass
class JobRun:
    """Immutable summary of one finished invocation."""

    job_id: str
    provider: str
    job_type: str
    status: str
    started_at: datetime
    finished_at: datetime
    records_fetched: int = 0
    records_upserted: int = 0
    api_calls: int = 0
    wait_time_ms: int = 0
    error: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: str(uuid4()))

    def __post_init__(self):
        if self.status not in RUN_STATUSES:
            raise ValueError(f"Unknown run status: {self.status}")
        # Clock skew between start and finish must not produce negative runs
        if self.finished_at < self.started_at:
            self.finished_at = self.started_at

    @property
    def duration_seconds(self) -> float:
        return (self.finished_at - self.started_at).total_seconds()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "job_id": self.job_id,
            "provider": self.provider,
            "job_type": self.job_type,
            "status": self.status,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat(),
            "duration_seconds": self.duration_seconds,
            "records_fetched": self.records_fetched,
            "records_upserted": self.records_upserted,
            "api_calls": self.api_calls,
            "wait_time_ms": self.wait_time_ms,
            "error": self.error,
            "metadata": self.metadata,
        }


def record_job_run(store: JobRunStore, run: JobRun) -> Optional[str]:
    """
    Append a JobRun to the audit log.

    Args:
        store: Run history store
        run: The finished run

    Returns:
        The run ID if written, None otherwise
    """
    try:
        store.append(run.to_dict())
        logger.info(
            f"Logged job run: {run.job_id} ({run.status}, "
            f"{run.records_upserted} upserted, {run.api_calls} calls)"
        )
        return run.id
    except Exception as e:
        logger.error(f"Error logging job run for {run.job_id}: {e}")
        return None
