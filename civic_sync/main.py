"""
Civic Sync Service

FastAPI service that keeps a local store of congressional bills, roll-call
votes and campaign-finance data in step with the public APIs.
"""

import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI

from civic_sync.lib.http_client import RetryingHttpClient
from civic_sync.lib.logging_config import configure_logging, level_from_env
from civic_sync.middleware import CorrelationMiddleware
from civic_sync.routes import admin, health, sync

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    configure_logging(
        level=level_from_env(),
        json_format=os.getenv("LOG_FORMAT", "json").lower() != "text",
    )
    logger.info("Starting Civic Sync Service...")
    app.state.http = RetryingHttpClient()
    app.state.deps = None
    yield
    logger.info("Shutting down Civic Sync Service...")
    await app.state.http.aclose()


app = FastAPI(
    title="Civic Sync Service",
    description="Resumable syncs of congressional bills, votes and campaign finance",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(CorrelationMiddleware)

# Include routers
app.include_router(health.router, tags=["health"])
app.include_router(sync.router, prefix="/sync", tags=["sync"])
app.include_router(admin.router, prefix="/admin", tags=["admin"])


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "service": "civic-sync",
        "status": "running",
        "endpoints": {
            "health": "/health",
            "run_sync": "POST /sync/{job_id}",
            "schedule": "POST /sync/schedule",
            "jobs": "GET /sync/jobs",
            "progress": "GET /sync/progress",
            "runs": "GET /sync/runs/{job_id}",
            "pause": "GET|PUT /admin/pause",
            "clear_fec_match": "POST /admin/members/{member_id}/clear-fec-match",
        },
    }
