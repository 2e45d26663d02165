"""
Base Sync Orchestrator

Every sync job follows the same invocation lifecycle:

1. Check the global pause flag (paused -> return without touching anything)
2. Acquire the job's lease (held elsewhere -> "already running")
3. Load the cursor for each dataset the job feeds
4. Run the job-specific sync() under a time budget, checkpointing as it goes
5. Finalize: clear or keep each cursor, update progress, release the lease,
   append a JobRun

Subclasses implement sync() only. A dataset whose epoch finished is marked
with ctx.finish(); any dataset left unfinished keeps its cursor and the run
reports "partial" so the next invocation resumes from the checkpoint.

Usage:
    from civic_sync.lib.base_sync import BaseSyncOrchestrator, SyncContext
    from civic_sync.lib.registry import SyncRegistry

    @SyncRegistry.register
    class WidgetSync(BaseSyncOrchestrator):
        job_id = "widgets"
        job_name = "Widgets"
        provider = "congress"
        dataset = "widgets"

        async def sync(self, ctx: SyncContext) -> None:
            offset = (ctx.cursor or {}).get("offset", 0)
            while ctx.should_continue():
                page = await ctx.fetch_json(url, params={"offset": offset})
                ...
                ctx.checkpoint({"offset": offset})
            ctx.finish()
"""

import asyncio
import logging
import os
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Literal, Optional

from pydantic import BaseModel

from civic_sync.lib.batch import BatchCoordinator
from civic_sync.lib.http_client import HttpResult, RetryExhaustedError, RetryingHttpClient
from civic_sync.lib.job_logger import JobRun, record_job_run
from civic_sync.lib.lease import DEFAULT_LEASE_SECONDS, JobLease, lease_id_for
from civic_sync.lib.logging_config import get_logger
from civic_sync.lib.reconcile import IdempotentReconciler
from civic_sync.lib.stores import (
    GLOBAL_SCOPE,
    CursorStore,
    DataStore,
    JobRunStore,
    LeaseStore,
    PauseFlagStore,
    parse_timestamp,
    utcnow,
)
from civic_sync.lib.time_budget import BudgetExhaustedError, TimeBudget

logger = logging.getLogger(__name__)

DEFAULT_TIME_BUDGET_SECONDS = 25.0
EPOCH_STARTED_KEY = "epoch_started_at"
MAX_REPORTED_ERRORS = 10


class SyncRequest(BaseModel):
    """Body of POST /sync/{job_id}."""

    mode: Literal["delta", "full"] = "delta"
    offset: Optional[int] = None
    limit: Optional[int] = None
    reset: bool = False
    member_id: Optional[str] = None
    chamber: Optional[Literal["house", "senate", "both"]] = None


@dataclass
class SyncResult:
    """Counters accumulated by one invocation."""

    records_fetched: int = 0
    records_upserted: int = 0
    records_skipped: int = 0
    records_failed: int = 0
    api_calls: int = 0
    wait_time_ms: int = 0
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)

    def add_error(self, error: str) -> None:
        self.errors.append(error)
        logger.error(f"Sync error: {error}")

    def add_warning(self, warning: str) -> None:
        self.warnings.append(warning)
        logger.warning(f"Sync warning: {warning}")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "records_fetched": self.records_fetched,
            "records_upserted": self.records_upserted,
            "records_skipped": self.records_skipped,
            "records_failed": self.records_failed,
            "api_calls": self.api_calls,
            "wait_time_ms": self.wait_time_ms,
            "errors": self.errors[:MAX_REPORTED_ERRORS],
            "warnings": self.warnings[:MAX_REPORTED_ERRORS],
        }


@dataclass
class SyncDependencies:
    """Everything an orchestrator talks to. Nothing is reached globally."""

    http: RetryingHttpClient
    data: DataStore
    pause_flag: PauseFlagStore
    leases: LeaseStore
    cursors: CursorStore
    runs: JobRunStore

    @classmethod
    def in_memory(cls, http: RetryingHttpClient) -> "SyncDependencies":
        from civic_sync.lib.memory_store import (
            InMemoryCursorStore,
            InMemoryDataStore,
            InMemoryJobRunStore,
            InMemoryLeaseStore,
            InMemoryPauseFlag,
        )

        return cls(
            http=http,
            data=InMemoryDataStore(),
            pause_flag=InMemoryPauseFlag(),
            leases=InMemoryLeaseStore(),
            cursors=InMemoryCursorStore(),
            runs=InMemoryJobRunStore(),
        )


@dataclass
class DatasetStream:
    """Cursor state for one (provider, dataset, scope) within a run."""

    provider: str
    dataset: str
    scope_key: str
    start_cursor: Optional[Dict[str, Any]]
    since: Optional[datetime]
    epoch_started_at: datetime
    records_base: int = 0
    upserted: int = 0
    finished: bool = False
    cursor: Optional[Dict[str, Any]] = None

    @property
    def records_total(self) -> int:
        return self.records_base + self.upserted

    def stored_cursor(self) -> Dict[str, Any]:
        return {**(self.cursor or {}), EPOCH_STARTED_KEY: self.epoch_started_at.isoformat()}


class SyncContext:
    """
    Per-invocation handle passed to sync().

    Attributes:
        request: The invocation's SyncRequest
        budget: TimeBudget for this invocation
        result: Counters reported at the end of the run
        streams: DatasetStream per dataset this job feeds
    """

    def __init__(
        self,
        orchestrator: "BaseSyncOrchestrator",
        request: SyncRequest,
        budget: TimeBudget,
        streams: Dict[str, DatasetStream],
        lease_id: str,
    ):
        self.orchestrator = orchestrator
        self.request = request
        self.budget = budget
        self.streams = streams
        self.lease_id = lease_id
        self.result = SyncResult()
        self.budget_cut = False
        self._deps = orchestrator.deps

    # =========================================================================
    # Cursor Access
    # =========================================================================

    def stream(self, dataset: Optional[str] = None) -> DatasetStream:
        """The named stream, else the primary one (first stream if absent)."""
        if dataset is None:
            dataset = self.orchestrator.dataset
            if dataset not in self.streams:
                dataset = next(iter(self.streams))
        return self.streams[dataset]

    @property
    def cursor(self) -> Optional[Dict[str, Any]]:
        """Starting cursor of the primary dataset (None at epoch start)."""
        return self.stream().start_cursor

    @property
    def since(self) -> Optional[datetime]:
        """Watermark for delta mode; None in full mode or on first sync."""
        return self.stream().since

    @property
    def is_full(self) -> bool:
        return self.request.mode == "full"

    def should_continue(self) -> bool:
        return not self.budget_cut and self.budget.should_continue()

    def add_upserted(self, count: int, dataset: Optional[str] = None) -> None:
        self.result.records_upserted += count
        self.stream(dataset).upserted += count

    def checkpoint(self, cursor: Dict[str, Any], dataset: Optional[str] = None) -> None:
        """Persist progress so a later run resumes after this point."""
        stream = self.stream(dataset)
        stream.cursor = dict(cursor)
        self._deps.cursors.put(
            stream.provider,
            stream.dataset,
            stream.scope_key,
            cursor=stream.stored_cursor(),
            records_total=stream.records_total,
            success=False,
        )
        self._deps.leases.record_progress(
            self.lease_id, total_processed=self.result.records_upserted, cursor=stream.cursor
        )
        logger.info(
            f"[{self.orchestrator.job_id}] checkpoint {stream.dataset} {stream.cursor} "
            f"({self.result.records_upserted} upserted, {self.budget.elapsed():.1f}s)"
        )

    def finish(self, dataset: Optional[str] = None) -> None:
        """Mark the dataset's epoch as complete; its cursor is cleared at the end."""
        self.stream(dataset).finished = True

    # =========================================================================
    # HTTP
    # =========================================================================

    async def fetch(
        self,
        url: str,
        provider: Optional[str] = None,
        method: str = "GET",
        **kwargs: Any,
    ) -> HttpResult:
        """Issue a budgeted request and fold its metrics into the result.

        Raises:
            BudgetExhaustedError: A retry was abandoned because the budget is
                nearly spent; run() ends the invocation as "partial"
            RetryExhaustedError: Every attempt failed at the transport level
        """
        try:
            result = await self._deps.http.request(
                method,
                url,
                provider=provider or self.orchestrator.provider,
                budget=self.budget,
                **kwargs,
            )
        except RetryExhaustedError as e:
            self._account(e.metrics.attempts, e.metrics.total_wait_ms)
            if e.metrics.budget_cut:
                self.budget_cut = True
                raise BudgetExhaustedError(f"Budget spent retrying {url}: {e}") from e
            raise
        self._account(result.metrics.attempts, result.metrics.total_wait_ms)
        if result.metrics.budget_cut:
            self.budget_cut = True
            raise BudgetExhaustedError(
                f"Budget spent retrying {url} (last status {result.status_code})"
            )
        return result

    async def fetch_json(self, url: str, provider: Optional[str] = None, **kwargs: Any) -> Any:
        result = await self.fetch(url, provider=provider, **kwargs)
        return result.raise_for_status().json()

    def _account(self, attempts: int, wait_ms: int) -> None:
        self.result.api_calls += attempts
        self.result.wait_time_ms += wait_ms


class BaseSyncOrchestrator(ABC):
    """
    Abstract base class for sync jobs.

    Subclasses must define:
    - job_id, job_name: Registry identity
    - provider, dataset: Primary cursor stream
    - sync(): The job body

    Optional overrides:
    - datasets(): Additional (provider, dataset) streams for this request
    - scope_for(): Narrow the lease and cursor to one entity
    - cursor_from_offset(): Translate request.offset into a cursor
    """

    job_id: str
    job_name: str
    provider: str
    dataset: str
    job_type: str = "sync"
    description: str = ""
    max_duration_seconds: int = DEFAULT_LEASE_SECONDS
    frequency_minutes: int = 60
    priority: int = 50
    time_budget_seconds: float = DEFAULT_TIME_BUDGET_SECONDS

    def __init__(
        self,
        deps: SyncDependencies,
        clock: Callable[[], datetime] = utcnow,
        monotonic: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        time_budget_seconds: Optional[float] = None,
    ):
        self.deps = deps
        self.reconciler = IdempotentReconciler(deps.data)
        self.batch = BatchCoordinator(sleep=sleep)
        self._clock = clock
        self._monotonic = monotonic
        self._budget_seconds = time_budget_seconds or float(
            os.getenv("SYNC_TIME_BUDGET_SECONDS", self.time_budget_seconds)
        )
        self.logger = get_logger(f"{__name__}.{self.job_id}", job_id=self.job_id)

    # =========================================================================
    # Hooks
    # =========================================================================

    @abstractmethod
    async def sync(self, ctx: SyncContext) -> None:
        """Do the work: fetch, reconcile, checkpoint, finish()."""

    def datasets(self, request: SyncRequest) -> Dict[str, str]:
        """Map of dataset -> provider fed by this request."""
        return {self.dataset: self.provider}

    def scope_for(self, request: SyncRequest) -> Optional[str]:
        return None

    def cursor_from_offset(self, offset: int) -> Dict[str, Any]:
        return {"offset": offset}

    # =========================================================================
    # Main Execution Flow
    # =========================================================================

    async def run(self, request: Optional[SyncRequest] = None) -> Dict[str, Any]:
        """
        Execute one invocation.

        Returns:
            Response dict. Never raises for job failures; those come back
            as {"success": False, "error": ...}.
        """
        request = request or SyncRequest()
        scope = self.scope_for(request)
        lease_id = lease_id_for(self.job_id, scope)

        if self.deps.pause_flag.is_paused():
            self.logger.info(f"Syncs paused, skipping {self.job_id}")
            return {
                "success": False,
                "paused": True,
                "job_id": self.job_id,
                "message": "Syncs are currently paused",
            }

        lease = JobLease(
            self.deps.leases, lease_id, self.max_duration_seconds, clock=self._clock
        )
        if not lease.acquire():
            return {
                "success": False,
                "already_running": True,
                "job_id": self.job_id,
                "message": f"{self.job_name} sync already in progress",
            }

        started_at = self._clock()
        ctx = SyncContext(
            self,
            request,
            TimeBudget(self._budget_seconds, clock=self._monotonic),
            {},
            lease_id,
        )

        # Anything raised past acquire() must release the lease and log a run
        try:
            ctx.streams = self._load_streams(request, scope, started_at)
            self.logger.info(
                f"Starting {self.job_name} sync ({request.mode}, scope={scope or GLOBAL_SCOPE}, "
                f"budget={self._budget_seconds}s)"
            )
            try:
                await self.sync(ctx)
            except BudgetExhaustedError as e:
                self.logger.info(f"{self.job_name} sync cut short: {e}")
            return self._finalize(ctx, lease, started_at)
        except Exception as e:
            self.logger.exception(f"{self.job_name} sync failed: {e}")
            return self._fail(ctx, lease, started_at, e)

    def _load_streams(
        self, request: SyncRequest, scope: Optional[str], started_at: datetime
    ) -> Dict[str, DatasetStream]:
        scope_key = scope or GLOBAL_SCOPE
        streams = {}
        for dataset, provider in self.datasets(request).items():
            stored = self.deps.cursors.get(provider, dataset, scope_key)
            if request.reset:
                cursor = None
            elif request.offset is not None and dataset == self.dataset:
                cursor = self.cursor_from_offset(request.offset)
            else:
                cursor = stored.cursor

            epoch_started_at = started_at
            if cursor and cursor.get(EPOCH_STARTED_KEY):
                epoch_started_at = parse_timestamp(cursor[EPOCH_STARTED_KEY]) or started_at
            if cursor is not None:
                cursor = {k: v for k, v in cursor.items() if k != EPOCH_STARTED_KEY}
            resuming = bool(cursor)

            streams[dataset] = DatasetStream(
                provider=provider,
                dataset=dataset,
                scope_key=scope_key,
                start_cursor=cursor or None,
                since=None if request.mode == "full" else stored.last_success_at,
                epoch_started_at=epoch_started_at,
                records_base=stored.records_total if resuming else 0,
                cursor=cursor or None,
            )
        return streams

    def _finalize(
        self, ctx: SyncContext, lease: JobLease, started_at: datetime
    ) -> Dict[str, Any]:
        complete = all(s.finished for s in ctx.streams.values())
        for stream in ctx.streams.values():
            if stream.finished:
                self.deps.cursors.put(
                    stream.provider,
                    stream.dataset,
                    stream.scope_key,
                    cursor=None,
                    records_total=stream.records_total,
                    success=True,
                    now=stream.epoch_started_at,
                )
            elif stream.cursor:
                self.deps.cursors.put(
                    stream.provider,
                    stream.dataset,
                    stream.scope_key,
                    cursor=stream.stored_cursor(),
                    records_total=stream.records_total,
                    success=False,
                )

        result = ctx.result
        status = "complete" if complete else "partial"
        remaining_cursor = None if complete else ctx.stream().cursor
        self.deps.leases.record_progress(
            lease.job_id, total_processed=result.records_upserted, cursor=remaining_cursor
        )
        lease.release(
            status,
            success_count=result.records_upserted,
            failure_count=result.records_failed,
            error_message="; ".join(result.errors[:3]) or None,
        )

        run_status = "succeeded" if complete and not result.records_failed else "partial"
        self._record_run(ctx, run_status, started_at)

        if complete:
            message = f"{self.job_name} sync complete"
        elif ctx.budget_cut or not ctx.budget.should_continue():
            message = f"{self.job_name} sync stopped at time budget; will resume"
        else:
            message = f"{self.job_name} sync stopped early; will resume"
        self.logger.info(
            f"{message}: {result.records_upserted} upserted, {result.records_failed} failed, "
            f"{result.api_calls} calls, {result.wait_time_ms}ms waiting"
        )

        return {
            "success": True,
            "message": message,
            "job_id": self.job_id,
            "status": status,
            "has_more": not complete,
            "cursor": remaining_cursor,
            "duration_seconds": round((self._clock() - started_at).total_seconds(), 3),
            **result.to_dict(),
            "metadata": result.metadata,
        }

    def _fail(
        self, ctx: SyncContext, lease: JobLease, started_at: datetime, error: Exception
    ) -> Dict[str, Any]:
        message = f"{type(error).__name__}: {error}"
        result = ctx.result
        try:
            self._record_run(ctx, "failed", started_at, error=message)
        finally:
            lease.release(
                "error",
                success_count=result.records_upserted,
                failure_count=result.records_failed + 1,
                error_message=message,
            )
        return {
            "success": False,
            "job_id": self.job_id,
            "status": "error",
            "error": message,
            "cursor": ctx.stream().cursor if ctx.streams else None,
            **{k: v for k, v in result.to_dict().items() if k != "errors"},
        }

    def _record_run(
        self,
        ctx: SyncContext,
        status: str,
        started_at: datetime,
        error: Optional[str] = None,
    ) -> None:
        result = ctx.result
        record_job_run(
            self.deps.runs,
            JobRun(
                job_id=self.job_id,
                provider=self.provider,
                job_type=self.job_type,
                status=status,
                started_at=started_at,
                finished_at=self._clock(),
                records_fetched=result.records_fetched,
                records_upserted=result.records_upserted,
                api_calls=result.api_calls,
                wait_time_ms=result.wait_time_ms,
                error=error or ("; ".join(result.errors[:3]) or None),
                metadata={
                    "mode": ctx.request.mode,
                    "scope": ctx.lease_id,
                    "budget": ctx.budget.to_dict(),
                    **result.metadata,
                },
            ),
        )

    @classmethod
    def info(cls) -> Dict[str, Any]:
        return {
            "job_id": cls.job_id,
            "job_name": cls.job_name,
            "provider": cls.provider,
            "dataset": cls.dataset,
            "description": cls.description,
            "frequency_minutes": cls.frequency_minutes,
            "priority": cls.priority,
            "class": cls.__name__,
        }

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__}(job_id={self.job_id})>"
