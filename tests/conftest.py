"""
Pytest fixtures for the sync service tests.

Provides in-memory dependencies, an httpx MockTransport-backed client with
zero backoff, and controllable clocks.
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

import httpx
import pytest

from civic_sync.lib.base_sync import SyncDependencies
from civic_sync.lib.http_client import ProviderConfig, RetryingHttpClient
from civic_sync.lib.memory_store import InMemoryDataStore

FAST_CONFIG = ProviderConfig(
    max_retries=2,
    base_delay=0.01,
    max_delay=0.05,
    jitter_percent=0.0,
    timeout=5.0,
    max_concurrency=2,
    min_delay_between_requests=0.0,
)

PROVIDERS = ("congress", "fec", "house_clerk", "senate_gov", "default")


# =============================================================================
# Clocks
# =============================================================================


class FakeClock:
    """Aware UTC wall clock that only moves when told to."""

    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class TickingMonotonic:
    """Monotonic clock advancing a fixed step on every read."""

    def __init__(self, step: float = 0.0, start: float = 1000.0):
        self.step = step
        self.value = start

    def __call__(self) -> float:
        current = self.value
        self.value += self.step
        return current


class SleepRecorder:
    """Async sleep replacement that records requested delays."""

    def __init__(self):
        self.calls: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


# =============================================================================
# HTTP and Store Fixtures
# =============================================================================


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def sleep_recorder():
    return SleepRecorder()


@pytest.fixture
def make_http(sleep_recorder):
    """Build a RetryingHttpClient over a MockTransport handler."""

    def _make(
        handler: Callable[[httpx.Request], Any],
        configs: Optional[Dict[str, ProviderConfig]] = None,
    ) -> RetryingHttpClient:
        return RetryingHttpClient(
            transport=httpx.MockTransport(handler),
            configs=configs or {p: FAST_CONFIG for p in PROVIDERS},
            sleep=sleep_recorder,
            rng=lambda: 0.0,
        )

    return _make


@pytest.fixture
def make_deps(make_http):
    """Build in-memory SyncDependencies around a MockTransport handler."""

    def _make(
        handler: Optional[Callable[[httpx.Request], Any]] = None,
        tables: Optional[Dict[str, List[Dict[str, Any]]]] = None,
    ) -> SyncDependencies:
        handler = handler or (lambda request: httpx.Response(404))
        deps = SyncDependencies.in_memory(make_http(handler))
        deps.data = InMemoryDataStore(tables)
        return deps

    return _make


@pytest.fixture
def sample_members():
    """Members table rows covering both chambers."""
    return [
        {
            "id": "m-001",
            "bioguide_id": "P000197",
            "full_name": "Nancy Pelosi",
            "first_name": "Nancy",
            "last_name": "Pelosi",
            "state": "CA",
            "chamber": "house",
            "in_office": True,
        },
        {
            "id": "m-002",
            "bioguide_id": "S000148",
            "full_name": "Charles Schumer",
            "first_name": "Charles",
            "last_name": "Schumer",
            "state": "NY",
            "chamber": "senate",
            "in_office": True,
        },
        {
            "id": "m-003",
            "bioguide_id": "S001181",
            "full_name": "Jeanne Shaheen",
            "first_name": "Jeanne",
            "last_name": "Shaheen",
            "state": "New Hampshire",
            "chamber": "senate",
            "in_office": True,
        },
        {
            "id": "m-004",
            "bioguide_id": "R000395",
            "full_name": "Harold Rogers",
            "first_name": "Harold",
            "last_name": "Rogers",
            "state": "KY",
            "chamber": "house",
            "in_office": False,
        },
    ]


@pytest.fixture
def ticking():
    """Factory for monotonic clocks that advance on every read."""
    return TickingMonotonic
