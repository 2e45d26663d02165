"""
Structured logging for the sync service.

Every sync invocation carries a correlation id (taken from the incoming
request or generated by the middleware) and, inside an orchestrator, the job
id. Both are promoted to top-level fields so the retry warnings, checkpoint
lines and run summary of one invocation can be filtered together.

Usage:
    configure_logging(level=logging.INFO, json_format=True)
    log = get_logger(__name__, job_id="bills")
    log.info("Checkpoint written")
"""

import json
import logging
import os
import sys
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple

SERVICE_NAME = "civic-sync"
PROMOTED_FIELDS = ("job_id", "provider")
NOISY_LOGGERS = ("httpx", "httpcore", "hpack", "asyncio")
TEXT_FORMAT = (
    "%(asctime)s %(levelname)-7s [%(correlation_id)s] [%(job_id)s] %(name)s: %(message)s"
)

# Async-safe: each request task sees its own value
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)


def current_correlation_id() -> Optional[str]:
    return correlation_id_var.get()


def set_correlation_id(correlation_id: str) -> None:
    correlation_id_var.set(correlation_id)


def clear_correlation_id() -> None:
    correlation_id_var.set(None)


def _record_fields(record: logging.LogRecord) -> Dict[str, Any]:
    fields = getattr(record, "extra_fields", None)
    return dict(fields) if isinstance(fields, dict) else {}


class SyncContextFilter(logging.Filter):
    """Stamp records with correlation_id and job_id ("-" when absent).

    Lets the plain-text format reference both without KeyErrors on records
    from third-party loggers.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        record.correlation_id = current_correlation_id() or "-"
        record.job_id = _record_fields(record).get("job_id") or "-"
        return True


class JsonLineFormatter(logging.Formatter):
    """One JSON object per line; job and correlation ids at top level."""

    def __init__(self, service_name: str = SERVICE_NAME):
        super().__init__()
        self.service_name = service_name

    def format(self, record: logging.LogRecord) -> str:
        fields = _record_fields(record)
        entry: Dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "service": self.service_name,
            "logger": record.name,
            "msg": record.getMessage(),
            "at": f"{record.module}:{record.lineno}",
        }

        correlation_id = fields.pop("correlation_id", None) or current_correlation_id()
        if correlation_id:
            entry["correlation_id"] = correlation_id
        for name in PROMOTED_FIELDS:
            if name in fields:
                entry[name] = fields.pop(name)
        if fields:
            entry["context"] = fields

        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(entry, default=str)


class JobLoggerAdapter(logging.LoggerAdapter):
    """Adapter that merges bound context (job id, provider) into extra_fields.

    Per-call extra_fields win over bound values.
    """

    def process(
        self, msg: str, kwargs: Dict[str, Any]
    ) -> Tuple[str, Dict[str, Any]]:
        extra = dict(kwargs.get("extra") or {})
        fields = dict(self.extra or {})
        fields.update(extra.get("extra_fields") or {})
        extra["extra_fields"] = fields
        kwargs["extra"] = extra
        return msg, kwargs


def get_logger(name: str, **context: Any) -> JobLoggerAdapter:
    """Get a logger that tags every line with the given context.

    Args:
        name: Logger name (typically __name__)
        **context: Bound fields, e.g. job_id="votes"
    """
    return JobLoggerAdapter(logging.getLogger(name), context)


def level_from_env(default: str = "INFO") -> int:
    """Resolve LOG_LEVEL to a logging level, falling back on bad values."""
    name = os.getenv("LOG_LEVEL", default).upper()
    level = logging.getLevelName(name)
    return level if isinstance(level, int) else logging.INFO


def configure_logging(
    level: int = logging.INFO,
    service_name: str = SERVICE_NAME,
    json_format: bool = True,
) -> None:
    """Install a single stdout handler on the root logger.

    Safe to call repeatedly; earlier handlers are removed.

    Args:
        level: Logging level (default: INFO)
        service_name: Service name included in JSON lines
        json_format: JSON lines (deployed) or readable text (local runs)
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(level)
    handler.addFilter(SyncContextFilter())
    if json_format:
        handler.setFormatter(JsonLineFormatter(service_name=service_name))
    else:
        handler.setFormatter(logging.Formatter(TEXT_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
    root_logger.addHandler(handler)

    # Per-request httpx lines would drown out retry warnings
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
