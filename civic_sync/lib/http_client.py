"""
Rate-Limited Resilient HTTP Client

Provides the outbound HTTP layer shared by every sync job:
- Per-provider concurrency cap and minimum spacing between dispatches
- Exponential backoff retry with jitter for 429/5xx and transport failures
- Retry-After header support (delta-seconds or HTTP-date)
- Time budget awareness (returns the failing response instead of sleeping
  past the job's deadline)
- Per-request metrics (attempts, wait time, final status)

Usage:
    from civic_sync.lib.http_client import RetryingHttpClient

    async with RetryingHttpClient() as client:
        result = await client.request("GET", url, provider="congress")
        if result.ok:
            data = result.json()

        # Raises HttpStatusError on a non-ok final response
        data = await client.get_json(url, provider="fec", params={"page": 1})
"""

import asyncio
import logging
import os
import random
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx

from civic_sync.lib.time_budget import TimeBudget

logger = logging.getLogger(__name__)

# Exceptions that should trigger retry
RETRYABLE_EXCEPTIONS = (
    httpx.TimeoutException,
    httpx.ConnectError,
    httpx.ReadError,
    httpx.WriteError,
    httpx.RemoteProtocolError,
)


# =============================================================================
# Configuration
# =============================================================================


@dataclass(frozen=True)
class ProviderConfig:
    """Retry and pacing settings for one upstream provider.

    All durations are in seconds.
    """

    max_retries: int = 6
    base_delay: float = 2.0
    max_delay: float = 120.0
    jitter_percent: float = 0.3
    timeout: float = 30.0
    max_concurrency: int = 2
    min_delay_between_requests: float = 0.25


PROVIDER_DEFAULTS: Dict[str, ProviderConfig] = {
    "congress": ProviderConfig(),
    "fec": ProviderConfig(min_delay_between_requests=0.5),
    "house_clerk": ProviderConfig(max_retries=3, min_delay_between_requests=0.1),
    "senate_gov": ProviderConfig(max_retries=3, max_concurrency=1),
}


def _env_number(name: str, cast: Callable[[str], Any], default: Any) -> Any:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return cast(raw)
    except ValueError:
        logger.warning(f"Ignoring invalid value for {name}: {raw!r}")
        return default


def load_provider_config(provider: str) -> ProviderConfig:
    """Build the config for a provider, applying SYNC_<PROVIDER>_* overrides.

    Recognized variables (e.g. for provider "fec"):
        SYNC_FEC_MAX_CONCURRENCY, SYNC_FEC_MIN_DELAY_MS, SYNC_FEC_MAX_RETRIES
    """
    base = PROVIDER_DEFAULTS.get(provider, ProviderConfig())
    prefix = f"SYNC_{provider.upper()}_"
    min_delay_ms = _env_number(
        f"{prefix}MIN_DELAY_MS", int, int(base.min_delay_between_requests * 1000)
    )
    return replace(
        base,
        max_concurrency=_env_number(f"{prefix}MAX_CONCURRENCY", int, base.max_concurrency),
        max_retries=_env_number(f"{prefix}MAX_RETRIES", int, base.max_retries),
        min_delay_between_requests=min_delay_ms / 1000,
    )


# =============================================================================
# Errors and Results
# =============================================================================


@dataclass
class RequestMetrics:
    """Observability counters for one logical request."""

    provider: str
    endpoint: str
    attempts: int = 0
    total_wait_ms: int = 0
    final_status: Optional[int] = None
    exhausted: bool = False
    budget_cut: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "provider": self.provider,
            "endpoint": self.endpoint,
            "attempts": self.attempts,
            "total_wait_ms": self.total_wait_ms,
            "final_status": self.final_status,
            "exhausted": self.exhausted,
            "budget_cut": self.budget_cut,
        }


class RetryExhaustedError(Exception):
    """Raised when every attempt of a request failed at the transport level."""

    def __init__(
        self,
        message: str,
        metrics: RequestMetrics,
        last_error: Optional[BaseException] = None,
    ):
        super().__init__(message)
        self.metrics = metrics
        self.last_error = last_error


class HttpStatusError(Exception):
    """Raised by the JSON/text helpers when the final response is not ok."""

    def __init__(self, status_code: int, url: str, body: str = ""):
        super().__init__(f"HTTP {status_code} for {url}: {body[:200]}")
        self.status_code = status_code
        self.url = url
        self.body = body


@dataclass
class HttpResult:
    """Final response of a logical request plus its metrics."""

    response: httpx.Response
    metrics: RequestMetrics

    @property
    def status_code(self) -> int:
        return self.response.status_code

    @property
    def ok(self) -> bool:
        return self.response.is_success

    @property
    def text(self) -> str:
        return self.response.text

    def json(self) -> Any:
        return self.response.json()

    def raise_for_status(self) -> "HttpResult":
        if not self.ok:
            raise HttpStatusError(
                self.status_code, self.metrics.endpoint, self.response.text
            )
        return self


# =============================================================================
# Backoff Helpers
# =============================================================================


def is_retryable_status(status_code: int) -> bool:
    """429 and every 5xx are retryable; everything else goes to the caller."""
    return status_code == 429 or 500 <= status_code < 600


def calculate_backoff_delay(
    attempt: int,
    base_delay: float = 2.0,
    max_delay: float = 120.0,
    jitter_percent: float = 0.3,
    rng: Callable[[], float] = random.random,
) -> float:
    """
    Calculate exponential backoff delay with proportional jitter.

    Args:
        attempt: The retry attempt number (0-indexed)
        base_delay: Base delay in seconds
        max_delay: Maximum delay cap in seconds (applied before jitter)
        jitter_percent: Upper bound of jitter as a fraction of the capped delay
        rng: Source of uniform [0, 1) randoms

    Returns:
        Delay in seconds
    """
    capped = min(base_delay * (2 ** attempt), max_delay)
    return capped + capped * jitter_percent * rng()


def parse_retry_after(
    value: Optional[str], now: Optional[datetime] = None
) -> Optional[float]:
    """
    Parse a Retry-After header value into seconds.

    Accepts delta-seconds ("120") or an HTTP-date
    ("Wed, 21 Oct 2015 07:28:00 GMT"). Dates in the past yield 0.

    Returns:
        Seconds to wait, or None if the header is missing or malformed
    """
    if not value:
        return None
    value = value.strip()
    if value.isdigit():
        return float(value)
    try:
        retry_at = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if retry_at is None:
        return None
    if retry_at.tzinfo is None:
        retry_at = retry_at.replace(tzinfo=timezone.utc)
    now = now or datetime.now(timezone.utc)
    return max(0.0, (retry_at - now).total_seconds())


# =============================================================================
# Rate Limiter
# =============================================================================


class RateLimiter:
    """
    Per-provider concurrency cap and minimum dispatch spacing.

    State is process-local and advisory: it is never persisted and resets
    when the worker restarts.

    Args:
        max_concurrency: Maximum logical requests in flight at once
        min_interval: Minimum seconds between consecutive dispatches
        clock: Monotonic clock, injectable for tests
        sleep: Async sleep, injectable for tests
    """

    def __init__(
        self,
        max_concurrency: int,
        min_interval: float,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be at least 1")
        self.max_concurrency = max_concurrency
        self.min_interval = max(0.0, min_interval)
        self._clock = clock
        self._sleep = sleep
        self._semaphore = asyncio.Semaphore(max_concurrency)
        self._dispatch_lock = asyncio.Lock()
        self._last_dispatch: Optional[float] = None
        self.active = 0
        self.peak_active = 0

    @asynccontextmanager
    async def slot(self):
        """Hold one of the provider's concurrency slots."""
        async with self._semaphore:
            self.active += 1
            self.peak_active = max(self.peak_active, self.active)
            try:
                yield self
            finally:
                self.active -= 1

    async def wait_for_dispatch(self) -> float:
        """Wait until the spacing since the previous dispatch has elapsed.

        Dispatches are serialized through a lock so the spacing holds across
        concurrent callers. Returns the number of seconds slept.
        """
        async with self._dispatch_lock:
            waited = 0.0
            if self._last_dispatch is not None:
                wait = self._last_dispatch + self.min_interval - self._clock()
                if wait > 0:
                    await self._sleep(wait)
                    waited = wait
            self._last_dispatch = self._clock()
            return waited


# =============================================================================
# Client
# =============================================================================


class RetryingHttpClient:
    """
    HTTP client issuing rate-limited, retried requests per provider.

    Example:
        async with RetryingHttpClient() as client:
            result = await client.request("GET", url, provider="congress",
                                          budget=budget, params={...})

    Args:
        client: Existing httpx.AsyncClient to use (not closed by this class)
        transport: httpx transport for a client created here (tests pass
            httpx.MockTransport)
        configs: Per-provider overrides; missing providers fall back to
            load_provider_config()
        sleep: Async sleep used for backoff and spacing
        clock: Monotonic clock used for spacing
        rng: Jitter source
        headers: Default headers for a client created here
    """

    def __init__(
        self,
        *,
        client: Optional[httpx.AsyncClient] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        configs: Optional[Dict[str, ProviderConfig]] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
        rng: Callable[[], float] = random.random,
        headers: Optional[Dict[str, str]] = None,
    ):
        self._client = client
        self._owns_client = client is None
        self._transport = transport
        self._configs: Dict[str, ProviderConfig] = dict(configs or {})
        self._sleep = sleep
        self._clock = clock
        self._rng = rng
        self._headers = headers or {"User-Agent": "civic-sync/1.0"}
        self._limiters: Dict[str, RateLimiter] = {}
        self.rate_limit_hits: Dict[str, int] = {}

    async def __aenter__(self) -> "RetryingHttpClient":
        self._ensure_client()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.aclose()

    def _ensure_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                transport=self._transport,
                headers=self._headers,
                follow_redirects=True,
            )
        return self._client

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    def config_for(self, provider: str) -> ProviderConfig:
        if provider not in self._configs:
            self._configs[provider] = load_provider_config(provider)
        return self._configs[provider]

    def limiter_for(self, provider: str) -> RateLimiter:
        if provider not in self._limiters:
            config = self.config_for(provider)
            self._limiters[provider] = RateLimiter(
                config.max_concurrency,
                config.min_delay_between_requests,
                clock=self._clock,
                sleep=self._sleep,
            )
        return self._limiters[provider]

    def rate_limit_count(self, provider: str) -> int:
        """Number of 429 responses seen from a provider by this client."""
        return self.rate_limit_hits.get(provider, 0)

    async def _backoff(self, delay: float, metrics: RequestMetrics) -> None:
        metrics.total_wait_ms += int(delay * 1000)
        await self._sleep(delay)

    async def request(
        self,
        method: str,
        url: str,
        provider: str = "default",
        config: Optional[ProviderConfig] = None,
        budget: Optional[TimeBudget] = None,
        **kwargs: Any,
    ) -> HttpResult:
        """
        Issue one logical request with pacing, retries and metrics.

        Non-retryable statuses (including 4xx other than 429) are returned
        as-is; the caller decides what they mean.

        Args:
            method: HTTP method
            url: Request URL
            provider: Provider key for rate limiting and 429 accounting
            config: Explicit settings (default: the provider's config)
            budget: When near expiry, a pending retry is abandoned and the
                last failing response returned (metrics.budget_cut)
            **kwargs: Passed to httpx.AsyncClient.request()

        Returns:
            HttpResult with the final response and metrics

        Raises:
            RetryExhaustedError: If the last attempt failed at the transport
                level (timeout, connection error)
        """
        config = config or self.config_for(provider)
        limiter = self.limiter_for(provider)
        http = self._ensure_client()
        kwargs.setdefault("timeout", config.timeout)

        metrics = RequestMetrics(provider=provider, endpoint=url)
        last_error: Optional[BaseException] = None

        async with limiter.slot():
            for attempt in range(config.max_retries + 1):
                await limiter.wait_for_dispatch()
                metrics.attempts = attempt + 1

                try:
                    response = await http.request(method, url, **kwargs)
                except RETRYABLE_EXCEPTIONS as e:
                    last_error = e
                    if attempt >= config.max_retries:
                        metrics.exhausted = True
                        break
                    if budget is not None and budget.is_near_expiry():
                        metrics.budget_cut = True
                        break
                    delay = calculate_backoff_delay(
                        attempt,
                        config.base_delay,
                        config.max_delay,
                        config.jitter_percent,
                        self._rng,
                    )
                    logger.warning(
                        f"{provider} error retry {attempt + 1}/{config.max_retries} "
                        f"for {url}: {type(e).__name__}: {e}, waiting {delay:.2f}s"
                    )
                    await self._backoff(delay, metrics)
                    continue

                metrics.final_status = response.status_code
                if response.status_code == 429:
                    self.rate_limit_hits[provider] = self.rate_limit_count(provider) + 1

                if not is_retryable_status(response.status_code):
                    return HttpResult(response, metrics)

                if attempt >= config.max_retries:
                    metrics.exhausted = True
                    logger.error(
                        f"{provider} gave up on {url} after {metrics.attempts} "
                        f"attempts, last status {response.status_code}"
                    )
                    return HttpResult(response, metrics)

                if budget is not None and budget.is_near_expiry():
                    metrics.budget_cut = True
                    logger.warning(
                        f"{provider} budget nearly spent, returning status "
                        f"{response.status_code} for {url} without retrying"
                    )
                    return HttpResult(response, metrics)

                retry_after = parse_retry_after(response.headers.get("Retry-After"))
                if retry_after is not None:
                    delay = retry_after
                else:
                    delay = calculate_backoff_delay(
                        attempt,
                        config.base_delay,
                        config.max_delay,
                        config.jitter_percent,
                        self._rng,
                    )
                logger.warning(
                    f"{provider} retry {attempt + 1}/{config.max_retries} for {url}, "
                    f"status={response.status_code}, waiting {delay:.2f}s"
                )
                await self._backoff(delay, metrics)

        logger.error(
            f"Request to {url} failed after {metrics.attempts} attempts: {last_error}"
        )
        raise RetryExhaustedError(
            f"Request to {url} failed after {metrics.attempts} attempts: {last_error}",
            metrics,
            last_error,
        )

    async def get(self, url: str, provider: str = "default", **kwargs: Any) -> HttpResult:
        """Make a GET request with pacing and retry logic."""
        return await self.request("GET", url, provider=provider, **kwargs)

    async def get_json(self, url: str, provider: str = "default", **kwargs: Any) -> Any:
        """GET and decode JSON, raising HttpStatusError if not ok."""
        result = await self.request("GET", url, provider=provider, **kwargs)
        return result.raise_for_status().json()

    async def get_text(self, url: str, provider: str = "default", **kwargs: Any) -> str:
        """GET and return the body text, raising HttpStatusError if not ok."""
        result = await self.request("GET", url, provider=provider, **kwargs)
        return result.raise_for_status().text
