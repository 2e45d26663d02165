"""
Shared library for the sync service.

Framework components:
- BaseSyncOrchestrator: Invocation lifecycle for a sync job
- SyncRegistry: Job discovery and registration
- RetryingHttpClient: Rate-limited, budget-aware HTTP with retries
- JobLease / CursorStore: Mutual exclusion and resumable progress
"""

from civic_sync.lib.base_sync import (
    BaseSyncOrchestrator,
    SyncContext,
    SyncDependencies,
    SyncRequest,
    SyncResult,
)
from civic_sync.lib.http_client import RetryExhaustedError, RetryingHttpClient
from civic_sync.lib.registry import SyncRegistry
from civic_sync.lib.time_budget import TimeBudget

__all__ = [
    "BaseSyncOrchestrator",
    "SyncContext",
    "SyncDependencies",
    "SyncRequest",
    "SyncResult",
    "RetryExhaustedError",
    "RetryingHttpClient",
    "SyncRegistry",
    "TimeBudget",
]
