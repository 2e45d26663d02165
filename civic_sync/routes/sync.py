"""
Sync invocation and status endpoints.

POST /sync/{job_id} runs one bounded invocation of a job and returns when it
stops (finished, time budget reached, or failed). A scheduler calls it
repeatedly; each call resumes from the stored cursor. POST /sync/schedule
is the cron entry point that decides which jobs are due.
"""

import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

import civic_sync.services  # noqa: F401  (registers jobs)
from civic_sync.lib.base_sync import SyncDependencies, SyncRequest
from civic_sync.lib.database import StoreUnavailableError, build_dependencies
from civic_sync.lib.registry import SyncRegistry
from civic_sync.lib.scheduler import MAX_JOBS_PER_TICK, SyncScheduler
from civic_sync.lib.stores import utcnow

logger = logging.getLogger(__name__)

router = APIRouter()


def get_sync_dependencies(request: Request) -> SyncDependencies:
    """Stores are built once per process and reused across requests."""
    deps = getattr(request.app.state, "deps", None)
    if deps is None:
        try:
            deps = build_dependencies(request.app.state.http)
        except StoreUnavailableError as e:
            logger.error(f"Sync stores unavailable: {e}")
            raise HTTPException(status_code=503, detail=str(e))
        request.app.state.deps = deps
    return deps


class JobInfo(BaseModel):
    """Registered job description."""
    job_id: str
    job_name: str
    provider: str
    dataset: str
    description: str = ""
    frequency_minutes: int = 60
    priority: int = 50


class JobListResponse(BaseModel):
    jobs: List[JobInfo]
    count: int


class ProgressResponse(BaseModel):
    """Lease and progress rows, with crashed runs flagged as stale."""
    jobs: List[Dict[str, Any]]
    paused: bool


class ScheduleRequest(BaseModel):
    """Body of POST /sync/schedule."""
    run: bool = False
    max_jobs: int = Field(1, ge=1, le=MAX_JOBS_PER_TICK)


@router.post("/schedule")
async def schedule_tick(
    body: Optional[ScheduleRequest] = None,
    deps: SyncDependencies = Depends(get_sync_dependencies),
):
    """
    One scheduler tick: sweep stale leases, report due jobs, optionally run them.

    Declared before /{job_id} so "schedule" is never taken for a job id.
    """
    body = body or ScheduleRequest()
    return await SyncScheduler(deps).tick(run=body.run, max_jobs=body.max_jobs)


@router.post("/{job_id}")
async def run_sync(
    job_id: str,
    body: Optional[SyncRequest] = None,
    deps: SyncDependencies = Depends(get_sync_dependencies),
):
    """
    Run one invocation of a sync job.

    Returns 200 for completed, partial, paused and already-running outcomes,
    500 when the job itself failed, 404 for an unknown job.
    """
    if not SyncRegistry.is_registered(job_id):
        raise HTTPException(
            status_code=404,
            detail=f"Unknown sync job: {job_id}. Available: {', '.join(SyncRegistry.list_jobs())}",
        )

    orchestrator = SyncRegistry.create_instance(job_id, deps)
    outcome = await orchestrator.run(body or SyncRequest())

    status_code = 500 if not outcome.get("success") and outcome.get("error") else 200
    return JSONResponse(status_code=status_code, content=outcome)


@router.get("/jobs", response_model=JobListResponse)
async def list_jobs():
    """List registered sync jobs."""
    jobs = [JobInfo(**info) for info in SyncRegistry.get_all_info()]
    return JobListResponse(jobs=jobs, count=len(jobs))


@router.get("/progress", response_model=ProgressResponse)
async def get_progress(deps: SyncDependencies = Depends(get_sync_dependencies)):
    """Current lease state of every job that has ever run."""
    now = utcnow()
    rows = sorted(deps.leases.list_all(), key=lambda r: r.job_id)
    return ProgressResponse(
        jobs=[r.to_dict(now) for r in rows],
        paused=deps.pause_flag.is_paused(),
    )


@router.get("/runs/{job_id}")
async def get_runs(
    job_id: str,
    limit: int = Query(20, ge=1, le=200),
    deps: SyncDependencies = Depends(get_sync_dependencies),
):
    """Most recent JobRun records for a job, newest first."""
    if not SyncRegistry.is_registered(job_id):
        raise HTTPException(status_code=404, detail=f"Unknown sync job: {job_id}")
    runs = deps.runs.recent(job_id, limit)
    return {"job_id": job_id, "runs": runs, "count": len(runs)}
