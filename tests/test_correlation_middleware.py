"""
Tests for correlation ID middleware (civic_sync/middleware/correlation.py).
"""

import logging
import uuid

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from civic_sync.lib.logging_config import clear_correlation_id, current_correlation_id
from civic_sync.middleware.correlation import (
    CORRELATION_ID_HEADER,
    REQUEST_ID_HEADER,
    CorrelationMiddleware,
    sync_job_from_path,
)

MIDDLEWARE_LOGGER = "civic_sync.middleware.correlation"


def build_app() -> FastAPI:
    """A stand-in service: one sync trigger, a health check and a failing route."""
    service = FastAPI()
    service.add_middleware(CorrelationMiddleware)

    @service.post("/sync/{job_id}")
    async def trigger(job_id: str):
        return {"job_id": job_id, "correlation_id": current_correlation_id()}

    @service.get("/health")
    async def health():
        return {"status": "healthy"}

    @service.post("/sync/broken/run")
    async def broken():
        raise RuntimeError("store exploded")

    return service


@pytest.fixture
def client():
    clear_correlation_id()
    yield TestClient(build_app(), raise_server_exceptions=False)
    clear_correlation_id()


# =============================================================================
# Header Handling
# =============================================================================


class TestCorrelationHeaders:
    """The id is taken from the request or generated, then echoed back."""

    def test_uses_correlation_header(self, client):
        response = client.post("/sync/bills", headers={CORRELATION_ID_HEADER: "sched-42"})

        assert response.headers[CORRELATION_ID_HEADER] == "sched-42"
        assert response.json()["correlation_id"] == "sched-42"

    def test_falls_back_to_request_id(self, client):
        response = client.post("/sync/votes", headers={REQUEST_ID_HEADER: "req-456"})

        assert response.headers[CORRELATION_ID_HEADER] == "req-456"

    def test_generates_uuid_per_request(self, client):
        first = client.post("/sync/votes")
        second = client.post("/sync/votes")

        generated = first.headers[CORRELATION_ID_HEADER]
        assert str(uuid.UUID(generated)) == generated
        assert first.json()["correlation_id"] == generated
        assert generated != second.headers[CORRELATION_ID_HEADER]

    def test_unhandled_error_becomes_500(self, client):
        assert client.post("/sync/broken/run").status_code == 500


# =============================================================================
# Log Lines
# =============================================================================


class TestRequestLogging:
    """Sync triggers are tagged with their job; health checks stay quiet."""

    def test_sync_post_tagged_with_job_id(self, client, caplog):
        with caplog.at_level(logging.DEBUG, logger=MIDDLEWARE_LOGGER):
            client.post("/sync/fec-finance")

        tagged = [r for r in caplog.records if getattr(r, "extra_fields", {}).get("job_id")]
        assert tagged
        assert tagged[-1].extra_fields["job_id"] == "fec-finance"
        assert tagged[-1].extra_fields["status_code"] == 200

    def test_health_check_logged_at_debug(self, client, caplog):
        with caplog.at_level(logging.DEBUG, logger=MIDDLEWARE_LOGGER):
            client.get("/health")

        levels = {r.levelno for r in caplog.records if r.name == MIDDLEWARE_LOGGER}
        assert levels == {logging.DEBUG}


class TestSyncJobFromPath:
    """Tests for sync_job_from_path()."""

    @pytest.mark.parametrize(
        "path,expected",
        [
            ("/sync/bills", "bills"),
            ("/sync/fec-finance/", "fec-finance"),
            ("/sync/jobs", None),
            ("/sync/progress", None),
            ("/sync/schedule", None),
            ("/sync/runs/votes", None),
            ("/admin/pause", None),
        ],
    )
    def test_extracts_job_id(self, path, expected):
        assert sync_job_from_path(path) == expected
