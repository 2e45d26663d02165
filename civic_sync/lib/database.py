"""
Supabase-backed stores for the sync engine.

Tables used:
- sync_progress: lease + progress row per job id
- sync_state: watermarks, unique on (provider, dataset, scope_key)
- sync_job_runs: append-only run history
- feature_toggles: row "sync_paused" holds the global pause flag
- destination tables (members, bills, votes, ...) via SupabaseDataStore
"""

import logging
import os
from datetime import datetime
from typing import Any, Dict, List, Optional

from supabase import Client, create_client

from civic_sync.lib.stores import (
    CURSOR_TABLE,
    FEATURE_TOGGLES_TABLE,
    GLOBAL_SCOPE,
    JOB_RUNS_TABLE,
    PAUSE_TOGGLE_ID,
    PROGRESS_TABLE,
    CursorStore,
    DataStore,
    JobRunStore,
    LeaseRecord,
    LeaseStore,
    PauseFlagStore,
    SyncCursor,
    advance_watermark,
    parse_timestamp,
    utcnow,
)

logger = logging.getLogger(__name__)


class StoreUnavailableError(Exception):
    """Raised when no backing store is configured."""


def get_supabase() -> Optional[Client]:
    """Get Supabase client, or None when credentials are not configured."""
    supabase_url = os.getenv("SUPABASE_URL", "")
    supabase_key = os.getenv("SUPABASE_SERVICE_KEY", "")
    if not supabase_key or not supabase_url:
        return None
    return create_client(supabase_url, supabase_key)


def _postgrest_timestamp(value: datetime) -> str:
    # Avoid "+00:00" inside PostgREST filter strings
    return value.strftime("%Y-%m-%dT%H:%M:%S.%fZ")


class SupabaseDataStore(DataStore):
    def __init__(self, client: Client):
        self.client = client

    def select(
        self,
        table: str,
        match: Optional[Dict[str, Any]] = None,
        columns: str = "*",
        order_by: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        query = self.client.table(table).select(columns)
        for key, value in (match or {}).items():
            query = query.eq(key, value)
        if order_by:
            query = query.order(order_by.lstrip("-"), desc=order_by.startswith("-"))
        if limit is not None:
            query = query.limit(limit)
        return query.execute().data or []

    def insert(self, table: str, rows: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        if not rows:
            return []
        return self.client.table(table).insert(rows).execute().data or []

    def upsert(
        self,
        table: str,
        rows: List[Dict[str, Any]],
        on_conflict: str,
        ignore_duplicates: bool = False,
    ) -> List[Dict[str, Any]]:
        if not rows:
            return []
        response = (
            self.client.table(table)
            .upsert(rows, on_conflict=on_conflict, ignore_duplicates=ignore_duplicates)
            .execute()
        )
        return response.data or []

    def update(
        self, table: str, values: Dict[str, Any], match: Dict[str, Any]
    ) -> List[Dict[str, Any]]:
        query = self.client.table(table).update(values)
        for key, value in match.items():
            query = query.eq(key, value)
        return query.execute().data or []

    def delete(self, table: str, match: Dict[str, Any]) -> List[Dict[str, Any]]:
        if not match:
            raise ValueError("Refusing to delete without a filter")
        query = self.client.table(table).delete()
        for key, value in match.items():
            query = query.eq(key, value)
        return query.execute().data or []


class SupabasePauseFlag(PauseFlagStore):
    def __init__(self, client: Client):
        self.client = client

    def is_paused(self) -> bool:
        response = (
            self.client.table(FEATURE_TOGGLES_TABLE)
            .select("enabled")
            .eq("id", PAUSE_TOGGLE_ID)
            .limit(1)
            .execute()
        )
        return bool(response.data and response.data[0].get("enabled"))

    def set_paused(self, paused: bool) -> None:
        self.client.table(FEATURE_TOGGLES_TABLE).upsert(
            {"id": PAUSE_TOGGLE_ID, "enabled": bool(paused), "updated_at": utcnow().isoformat()},
            on_conflict="id",
        ).execute()
        logger.info(f"Sync pause flag set to {paused}")


def _lease_from_row(row: Dict[str, Any]) -> LeaseRecord:
    return LeaseRecord(
        job_id=row["id"],
        status=row.get("status") or "idle",
        lock_until=parse_timestamp(row.get("lock_until")),
        last_run_at=parse_timestamp(row.get("last_run_at")),
        last_success_count=row.get("last_success_count") or 0,
        last_failure_count=row.get("last_failure_count") or 0,
        total_processed=row.get("total_processed") or 0,
        current_cursor=(row.get("metadata") or {}).get("cursor"),
        last_synced_at=parse_timestamp(row.get("last_synced_at")),
        error_message=row.get("error_message"),
    )


class SupabaseLeaseStore(LeaseStore):
    """Lease rows in sync_progress.

    Acquisition is a conditional UPDATE (lock_until null or past), so two
    concurrent attempts cannot both match the row.
    """

    def __init__(self, client: Client):
        self.client = client

    def get(self, job_id: str) -> Optional[LeaseRecord]:
        response = (
            self.client.table(PROGRESS_TABLE).select("*").eq("id", job_id).limit(1).execute()
        )
        if not response.data:
            return None
        return _lease_from_row(response.data[0])

    def try_acquire(self, job_id: str, now: datetime, lock_until: datetime) -> bool:
        # Create the row lazily; an existing row is left alone
        self.client.table(PROGRESS_TABLE).upsert(
            {"id": job_id, "status": "idle"}, on_conflict="id", ignore_duplicates=True
        ).execute()

        response = (
            self.client.table(PROGRESS_TABLE)
            .update(
                {
                    "status": "running",
                    "lock_until": lock_until.isoformat(),
                    "last_run_at": now.isoformat(),
                    "error_message": None,
                }
            )
            .eq("id", job_id)
            .or_(f"lock_until.is.null,lock_until.lt.{_postgrest_timestamp(now)}")
            .execute()
        )
        return bool(response.data)

    def release(
        self,
        job_id: str,
        status: str,
        success_count: int,
        failure_count: int,
        finished_at: datetime,
        error_message: Optional[str] = None,
    ) -> None:
        values: Dict[str, Any] = {
            "status": status,
            "lock_until": None,
            "last_success_count": success_count,
            "last_failure_count": failure_count,
            "error_message": error_message,
        }
        if status in ("complete", "partial"):
            values["last_synced_at"] = finished_at.isoformat()
        self.client.table(PROGRESS_TABLE).update(values).eq("id", job_id).execute()

    def record_progress(
        self,
        job_id: str,
        total_processed: int,
        cursor: Optional[Dict[str, Any]],
    ) -> None:
        offset = (cursor or {}).get("offset", 0)
        self.client.table(PROGRESS_TABLE).update(
            {
                "total_processed": total_processed,
                "current_offset": offset if isinstance(offset, int) else 0,
                "metadata": {"cursor": cursor},
            }
        ).eq("id", job_id).execute()

    def list_all(self) -> List[LeaseRecord]:
        response = self.client.table(PROGRESS_TABLE).select("*").order("id").execute()
        return [_lease_from_row(row) for row in response.data or []]


class SupabaseCursorStore(CursorStore):
    def __init__(self, client: Client):
        self.client = client

    def get(
        self, provider: str, dataset: str, scope_key: str = GLOBAL_SCOPE
    ) -> SyncCursor:
        response = (
            self.client.table(CURSOR_TABLE)
            .select("*")
            .eq("provider", provider)
            .eq("dataset", dataset)
            .eq("scope_key", scope_key)
            .limit(1)
            .execute()
        )
        if not response.data:
            return SyncCursor(provider=provider, dataset=dataset, scope_key=scope_key)
        row = response.data[0]
        return SyncCursor(
            provider=provider,
            dataset=dataset,
            scope_key=scope_key,
            last_success_at=parse_timestamp(row.get("last_success_at")),
            cursor=row.get("last_cursor"),
            records_total=row.get("records_total") or 0,
        )

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
        current = self.get(provider, dataset, scope_key)
        current.cursor = cursor
        current.records_total = records_total
        if success:
            current.last_success_at = advance_watermark(
                current.last_success_at, now or utcnow()
            )
        row = current.to_dict()
        row["updated_at"] = utcnow().isoformat()
        self.client.table(CURSOR_TABLE).upsert(
            row, on_conflict="provider,dataset,scope_key"
        ).execute()
        return current


class SupabaseJobRunStore(JobRunStore):
    def __init__(self, client: Client):
        self.client = client

    def append(self, record: Dict[str, Any]) -> None:
        self.client.table(JOB_RUNS_TABLE).insert(record).execute()

    def recent(self, job_id: str, limit: int = 20) -> List[Dict[str, Any]]:
        response = (
            self.client.table(JOB_RUNS_TABLE)
            .select("*")
            .eq("job_id", job_id)
            .order("started_at", desc=True)
            .limit(limit)
            .execute()
        )
        return response.data or []


def build_dependencies(http: Any) -> "SyncDependencies":
    """Wire orchestrator dependencies from the environment.

    SYNC_STORE_BACKEND=memory selects process-local stores (local runs only);
    otherwise Supabase credentials are required.

    Raises:
        StoreUnavailableError: If Supabase is selected but not configured
    """
    from civic_sync.lib.base_sync import SyncDependencies

    backend = os.getenv("SYNC_STORE_BACKEND", "supabase").lower()
    if backend == "memory":
        logger.warning("Using in-memory sync stores; state will not survive restart")
        return SyncDependencies.in_memory(http)

    client = get_supabase()
    if client is None:
        raise StoreUnavailableError(
            "SUPABASE_URL and SUPABASE_SERVICE_KEY must be set"
        )
    return SyncDependencies(
        http=http,
        data=SupabaseDataStore(client),
        pause_flag=SupabasePauseFlag(client),
        leases=SupabaseLeaseStore(client),
        cursors=SupabaseCursorStore(client),
        runs=SupabaseJobRunStore(client),
    )
