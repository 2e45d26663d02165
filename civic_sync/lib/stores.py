"""
Storage interfaces used by the sync engine.

Orchestrators never reach for a global client. They receive these stores at
construction time, so production wiring (Supabase, see database.py) and test
wiring (in-memory, see memory_store.py) are interchangeable.

Stores:
- DataStore: destination tables (members, bills, votes, finance rows)
- PauseFlagStore: the global "syncs paused" switch
- LeaseStore: per-job lease rows, which double as the progress surface
- CursorStore: per (provider, dataset, scope) watermarks
- JobRunStore: append-only run history
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

GLOBAL_SCOPE = "global"

# Table names shared by the Supabase store and the admin routes
PROGRESS_TABLE = "sync_progress"
CURSOR_TABLE = "sync_state"
JOB_RUNS_TABLE = "sync_job_runs"
FEATURE_TOGGLES_TABLE = "feature_toggles"
PAUSE_TOGGLE_ID = "sync_paused"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse a stored timestamp (datetime or ISO string) into an aware datetime."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        text = str(value).replace("Z", "+00:00")
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def advance_watermark(
    previous: Optional[datetime], candidate: datetime
) -> datetime:
    """Return the later of two success timestamps; watermarks never go back."""
    if previous is None or candidate > previous:
        return candidate
    return previous


# =============================================================================
# Records
# =============================================================================


@dataclass
class SyncCursor:
    """Durable watermark for one (provider, dataset, scope)."""

    provider: str
    dataset: str
    scope_key: str = GLOBAL_SCOPE
    last_success_at: Optional[datetime] = None
    cursor: Optional[Dict[str, Any]] = None
    records_total: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "provider": self.provider,
            "dataset": self.dataset,
            "scope_key": self.scope_key,
            "last_success_at": (
                self.last_success_at.isoformat() if self.last_success_at else None
            ),
            "last_cursor": self.cursor,
            "records_total": self.records_total,
        }


@dataclass
class LeaseRecord:
    """Lease and progress row for one job id.

    A lease is held iff lock_until is set and in the future. A row still
    marked "running" whose lock_until has passed belongs to a crashed run.
    """

    job_id: str
    status: str = "idle"
    lock_until: Optional[datetime] = None
    last_run_at: Optional[datetime] = None
    last_success_count: int = 0
    last_failure_count: int = 0
    total_processed: int = 0
    current_cursor: Optional[Dict[str, Any]] = None
    last_synced_at: Optional[datetime] = None
    error_message: Optional[str] = None

    def is_held(self, now: datetime) -> bool:
        return self.lock_until is not None and self.lock_until > now

    def is_stale(self, now: datetime) -> bool:
        return (
            self.status == "running"
            and self.lock_until is not None
            and self.lock_until <= now
        )

    def to_dict(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        now = now or utcnow()

        def iso(value: Optional[datetime]) -> Optional[str]:
            return value.isoformat() if value else None

        return {
            "id": self.job_id,
            "status": self.status,
            "lock_until": iso(self.lock_until),
            "last_run_at": iso(self.last_run_at),
            "last_success_count": self.last_success_count,
            "last_failure_count": self.last_failure_count,
            "total_processed": self.total_processed,
            "current_cursor": self.current_cursor,
            "last_synced_at": iso(self.last_synced_at),
            "error_message": self.error_message,
            "stale": self.is_stale(now),
        }


# =============================================================================
# Interfaces
# =============================================================================


class DataStore(ABC):
    """Destination tables, addressed the way PostgREST addresses them."""

    @abstractmethod
    def select(
        self,
        table: str,
        match: Optional[Dict[str, Any]] = None,
        columns: str = "*",
        order_by: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        ...

    @abstractmethod
    def insert(self, table: str, rows: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        ...

    @abstractmethod
    def upsert(
        self,
        table: str,
        rows: List[Dict[str, Any]],
        on_conflict: str,
        ignore_duplicates: bool = False,
    ) -> List[Dict[str, Any]]:
        """Insert or update on the comma-separated conflict columns.

        Returns the written rows (including generated ids). Rows skipped
        because of ignore_duplicates are not returned.
        """

    @abstractmethod
    def update(
        self, table: str, values: Dict[str, Any], match: Dict[str, Any]
    ) -> List[Dict[str, Any]]:
        ...

    @abstractmethod
    def delete(self, table: str, match: Dict[str, Any]) -> List[Dict[str, Any]]:
        ...


class PauseFlagStore(ABC):
    """The single global switch that stops every sync job at its start."""

    @abstractmethod
    def is_paused(self) -> bool:
        ...

    @abstractmethod
    def set_paused(self, paused: bool) -> None:
        ...


class LeaseStore(ABC):
    """Persisted lease rows, one per job id (created lazily)."""

    @abstractmethod
    def get(self, job_id: str) -> Optional[LeaseRecord]:
        ...

    @abstractmethod
    def try_acquire(self, job_id: str, now: datetime, lock_until: datetime) -> bool:
        """Atomically take the lease unless it is held at `now`."""

    @abstractmethod
    def release(
        self,
        job_id: str,
        status: str,
        success_count: int,
        failure_count: int,
        finished_at: datetime,
        error_message: Optional[str] = None,
    ) -> None:
        ...

    @abstractmethod
    def record_progress(
        self,
        job_id: str,
        total_processed: int,
        cursor: Optional[Dict[str, Any]],
    ) -> None:
        ...

    @abstractmethod
    def list_all(self) -> List[LeaseRecord]:
        ...


class CursorStore(ABC):
    """Watermarks keyed by (provider, dataset, scope_key)."""

    @abstractmethod
    def get(
        self, provider: str, dataset: str, scope_key: str = GLOBAL_SCOPE
    ) -> SyncCursor:
        """Return the stored cursor, or an empty one if none exists."""

    @abstractmethod
    def put(
        self,
        provider: str,
        dataset: str,
        scope_key: str,
        cursor: Optional[Dict[str, Any]],
        records_total: int,
        success: bool,
        now: Optional[datetime] = None,
    ) -> SyncCursor:
        """Store the cursor; success=True moves last_success_at forward."""


class JobRunStore(ABC):
    """Append-only run history."""

    @abstractmethod
    def append(self, record: Dict[str, Any]) -> None:
        ...

    @abstractmethod
    def recent(self, job_id: str, limit: int = 20) -> List[Dict[str, Any]]:
        ...
