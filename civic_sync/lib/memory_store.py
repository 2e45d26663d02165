"""
In-memory implementations of the sync stores.

Used by the test suite and for local runs without Supabase credentials
(SYNC_STORE_BACKEND=memory). State lives for the lifetime of the process.
"""

import copy
import threading
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from civic_sync.lib.stores import (
    GLOBAL_SCOPE,
    CursorStore,
    DataStore,
    JobRunStore,
    LeaseRecord,
    LeaseStore,
    PauseFlagStore,
    SyncCursor,
    advance_watermark,
    utcnow,
)


def _matches(row: Dict[str, Any], match: Optional[Dict[str, Any]]) -> bool:
    if not match:
        return True
    return all(row.get(key) == value for key, value in match.items())


def _project(row: Dict[str, Any], columns: str) -> Dict[str, Any]:
    if columns.strip() == "*":
        return copy.deepcopy(row)
    wanted = [c.strip() for c in columns.split(",") if c.strip()]
    return {c: copy.deepcopy(row.get(c)) for c in wanted}


class InMemoryDataStore(DataStore):
    """Dict-of-lists table store with PostgREST-like upsert semantics."""

    def __init__(self, tables: Optional[Dict[str, List[Dict[str, Any]]]] = None):
        self._lock = threading.Lock()
        self.tables: Dict[str, List[Dict[str, Any]]] = {}
        for name, rows in (tables or {}).items():
            self.tables[name] = [self._with_id(r) for r in copy.deepcopy(rows)]

    @staticmethod
    def _with_id(row: Dict[str, Any]) -> Dict[str, Any]:
        if not row.get("id"):
            row["id"] = str(uuid.uuid4())
        return row

    def rows(self, table: str) -> List[Dict[str, Any]]:
        """Snapshot of a table, for assertions."""
        with self._lock:
            return copy.deepcopy(self.tables.get(table, []))

    def count(self, table: str) -> int:
        with self._lock:
            return len(self.tables.get(table, []))

    def select(
        self,
        table: str,
        match: Optional[Dict[str, Any]] = None,
        columns: str = "*",
        order_by: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        with self._lock:
            rows = [r for r in self.tables.get(table, []) if _matches(r, match)]
            if order_by:
                descending = order_by.startswith("-")
                key = order_by.lstrip("-")
                rows = sorted(
                    rows,
                    key=lambda r: (r.get(key) is None, r.get(key)),
                    reverse=descending,
                )
            if limit is not None:
                rows = rows[:limit]
            return [_project(r, columns) for r in rows]

    def insert(self, table: str, rows: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        with self._lock:
            target = self.tables.setdefault(table, [])
            written = [self._with_id(copy.deepcopy(r)) for r in rows]
            target.extend(written)
            return copy.deepcopy(written)

    def upsert(
        self,
        table: str,
        rows: List[Dict[str, Any]],
        on_conflict: str,
        ignore_duplicates: bool = False,
    ) -> List[Dict[str, Any]]:
        keys = [k.strip() for k in on_conflict.split(",") if k.strip()]
        with self._lock:
            target = self.tables.setdefault(table, [])
            index: Dict[Tuple[Any, ...], Dict[str, Any]] = {
                tuple(r.get(k) for k in keys): r for r in target
            }
            written = []
            for row in rows:
                key = tuple(row.get(k) for k in keys)
                existing = index.get(key)
                if existing is not None:
                    if ignore_duplicates:
                        continue
                    existing.update(copy.deepcopy({k: v for k, v in row.items() if k != "id"}))
                    written.append(existing)
                else:
                    new_row = self._with_id(copy.deepcopy(row))
                    target.append(new_row)
                    index[key] = new_row
                    written.append(new_row)
            return copy.deepcopy(written)

    def update(
        self, table: str, values: Dict[str, Any], match: Dict[str, Any]
    ) -> List[Dict[str, Any]]:
        with self._lock:
            updated = []
            for row in self.tables.get(table, []):
                if _matches(row, match):
                    row.update(copy.deepcopy(values))
                    updated.append(row)
            return copy.deepcopy(updated)

    def delete(self, table: str, match: Dict[str, Any]) -> List[Dict[str, Any]]:
        with self._lock:
            rows = self.tables.get(table, [])
            removed = [r for r in rows if _matches(r, match)]
            self.tables[table] = [r for r in rows if not _matches(r, match)]
            return copy.deepcopy(removed)


class InMemoryPauseFlag(PauseFlagStore):
    def __init__(self, paused: bool = False):
        self._paused = paused

    def is_paused(self) -> bool:
        return self._paused

    def set_paused(self, paused: bool) -> None:
        self._paused = bool(paused)


class InMemoryLeaseStore(LeaseStore):
    """Lease rows guarded by a lock so acquisition is atomic."""

    def __init__(self):
        self._lock = threading.Lock()
        self._rows: Dict[str, LeaseRecord] = {}

    def get(self, job_id: str) -> Optional[LeaseRecord]:
        with self._lock:
            row = self._rows.get(job_id)
            return copy.deepcopy(row) if row else None

    def try_acquire(self, job_id: str, now: datetime, lock_until: datetime) -> bool:
        with self._lock:
            row = self._rows.setdefault(job_id, LeaseRecord(job_id=job_id))
            if row.is_held(now):
                return False
            row.status = "running"
            row.lock_until = lock_until
            row.last_run_at = now
            row.error_message = None
            return True

    def release(
        self,
        job_id: str,
        status: str,
        success_count: int,
        failure_count: int,
        finished_at: datetime,
        error_message: Optional[str] = None,
    ) -> None:
        with self._lock:
            row = self._rows.setdefault(job_id, LeaseRecord(job_id=job_id))
            row.status = status
            row.lock_until = None
            row.last_success_count = success_count
            row.last_failure_count = failure_count
            row.error_message = error_message
            if status in ("complete", "partial"):
                row.last_synced_at = finished_at

    def record_progress(
        self,
        job_id: str,
        total_processed: int,
        cursor: Optional[Dict[str, Any]],
    ) -> None:
        with self._lock:
            row = self._rows.setdefault(job_id, LeaseRecord(job_id=job_id))
            row.total_processed = total_processed
            row.current_cursor = copy.deepcopy(cursor)

    def list_all(self) -> List[LeaseRecord]:
        with self._lock:
            return [copy.deepcopy(r) for r in self._rows.values()]


class InMemoryCursorStore(CursorStore):
    def __init__(self):
        self._lock = threading.Lock()
        self._rows: Dict[Tuple[str, str, str], SyncCursor] = {}

    def get(
        self, provider: str, dataset: str, scope_key: str = GLOBAL_SCOPE
    ) -> SyncCursor:
        with self._lock:
            row = self._rows.get((provider, dataset, scope_key))
            if row is None:
                return SyncCursor(provider=provider, dataset=dataset, scope_key=scope_key)
            return copy.deepcopy(row)

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
        with self._lock:
            key = (provider, dataset, scope_key)
            row = self._rows.get(key) or SyncCursor(
                provider=provider, dataset=dataset, scope_key=scope_key
            )
            row.cursor = copy.deepcopy(cursor)
            row.records_total = records_total
            if success:
                row.last_success_at = advance_watermark(row.last_success_at, now or utcnow())
            self._rows[key] = row
            return copy.deepcopy(row)


class InMemoryJobRunStore(JobRunStore):
    def __init__(self):
        self._lock = threading.Lock()
        self.records: List[Dict[str, Any]] = []

    def append(self, record: Dict[str, Any]) -> None:
        with self._lock:
            self.records.append(copy.deepcopy(record))

    def recent(self, job_id: str, limit: int = 20) -> List[Dict[str, Any]]:
        with self._lock:
            runs = [r for r in self.records if r.get("job_id") == job_id]
            return copy.deepcopy(list(reversed(runs))[:limit])
