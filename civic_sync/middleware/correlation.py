"""
Correlation ID middleware.

Each sync invocation arrives as an HTTP request; the correlation id picked
here is attached to every log line the orchestrator, the HTTP client and the
stores emit while serving it. Scheduler health checks are logged at DEBUG so
they do not drown out sync traffic.
"""

import logging
import time
import uuid
from typing import Any, Callable, Dict, Optional

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from civic_sync.lib.logging_config import clear_correlation_id, set_correlation_id

logger = logging.getLogger(__name__)

CORRELATION_ID_HEADER = "X-Correlation-ID"
REQUEST_ID_HEADER = "X-Request-ID"
QUIET_PATHS = frozenset({"/health", "/"})
SYNC_PREFIX = "/sync/"


def sync_job_from_path(path: str) -> Optional[str]:
    """'/sync/bills' -> 'bills'; None for status, schedule and other paths."""
    if not path.startswith(SYNC_PREFIX):
        return None
    job_id = path[len(SYNC_PREFIX):].strip("/")
    if not job_id or "/" in job_id or job_id in ("jobs", "progress", "schedule"):
        return None
    return job_id


class CorrelationMiddleware(BaseHTTPMiddleware):
    """Tag each request with a correlation id and log its outcome.

    The id comes from X-Correlation-ID, then X-Request-ID, else a new UUID,
    and is echoed back in X-Correlation-ID.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        correlation_id = (
            request.headers.get(CORRELATION_ID_HEADER)
            or request.headers.get(REQUEST_ID_HEADER)
            or str(uuid.uuid4())
        )
        set_correlation_id(correlation_id)

        path = request.url.path
        level = logging.DEBUG if path in QUIET_PATHS else logging.INFO
        fields: Dict[str, Any] = {"method": request.method, "path": path}
        job_id = sync_job_from_path(path) if request.method == "POST" else None
        if job_id:
            fields["job_id"] = job_id

        started = time.perf_counter()
        logger.log(level, f"{request.method} {path} received", extra={"extra_fields": fields})

        try:
            response = await call_next(request)
        except Exception as e:
            fields["error_type"] = type(e).__name__
            fields["duration_ms"] = round((time.perf_counter() - started) * 1000, 2)
            logger.error(
                f"{request.method} {path} raised {type(e).__name__}: {e}",
                extra={"extra_fields": fields},
                exc_info=True,
            )
            raise
        else:
            fields["status_code"] = response.status_code
            fields["duration_ms"] = round((time.perf_counter() - started) * 1000, 2)
            if response.status_code >= 500:
                level = logging.WARNING
            logger.log(
                level,
                f"{request.method} {path} -> {response.status_code} "
                f"({fields['duration_ms']:.2f}ms)",
                extra={"extra_fields": fields},
            )
            response.headers[CORRELATION_ID_HEADER] = correlation_id
            return response
        finally:
            clear_correlation_id()
