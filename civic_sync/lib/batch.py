"""
Batch processing strategies for sync jobs.

Three ways to push a list of work items through an async processor:
- run_sequential: fixed-size chunks, each awaited together, delay between
  chunks; the first failure fails the batch
- run_tolerant: same chunking, but item failures are recorded and skipped
- run_pool: N workers pulling from a shared index, no chunk boundaries

A processor raising BudgetExhaustedError stops run_tolerant and run_pool
early (stopped_early) without counting the item as failed.

Pick sequential/tolerant when the processor writes to the store and must not
race; pick the pool for read-only fetches where per-item latency dominates.

Usage:
    coordinator = BatchCoordinator()
    outcome = await coordinator.run_tolerant(members, sync_member, batch_size=8,
                                             budget=budget)
    for item, error in outcome.errors:
        ...
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, List, Optional, Sequence, Tuple

from civic_sync.lib.time_budget import BudgetExhaustedError, TimeBudget

logger = logging.getLogger(__name__)

Processor = Callable[[Any], Awaitable[Any]]
ProgressCallback = Callable[[int, int], None]


@dataclass
class BatchResult:
    """Outcome of one batch run.

    `results` holds processor return values. For the chunked strategies it
    holds one entry per successful item in input order; for the pool it is
    indexed by input position with None for failed or unstarted items.
    """

    results: List[Any] = field(default_factory=list)
    errors: List[Tuple[Any, BaseException]] = field(default_factory=list)
    processed: int = 0
    stopped_early: bool = False

    @property
    def failed(self) -> int:
        return len(self.errors)

    @property
    def succeeded(self) -> int:
        return self.processed - self.failed


class BatchCoordinator:
    """Runs work items through an async processor with a chosen strategy.

    Args:
        sleep: Async sleep used for inter-chunk delays (injectable for tests)
    """

    def __init__(self, sleep: Callable[[float], Awaitable[None]] = asyncio.sleep):
        self._sleep = sleep

    @staticmethod
    def _chunks(items: Sequence[Any], size: int):
        if size < 1:
            raise ValueError("batch_size must be at least 1")
        for start in range(0, len(items), size):
            yield items[start:start + size]

    async def run_sequential(
        self,
        items: Sequence[Any],
        processor: Processor,
        batch_size: int = 10,
        delay_seconds: float = 0.1,
        on_progress: Optional[ProgressCallback] = None,
        budget: Optional[TimeBudget] = None,
    ) -> BatchResult:
        """Process chunk by chunk; any item failure propagates.

        Raises:
            Exception: The first exception raised by the processor
        """
        outcome = BatchResult()
        total = len(items)

        for index, chunk in enumerate(self._chunks(items, batch_size)):
            if budget is not None and not budget.should_continue():
                outcome.stopped_early = True
                break
            if index > 0 and delay_seconds > 0:
                await self._sleep(delay_seconds)

            chunk_results = await asyncio.gather(*(processor(item) for item in chunk))
            outcome.results.extend(chunk_results)
            outcome.processed += len(chunk)
            if on_progress:
                on_progress(outcome.processed, total)

        return outcome

    async def run_tolerant(
        self,
        items: Sequence[Any],
        processor: Processor,
        batch_size: int = 10,
        delay_seconds: float = 0.1,
        continue_on_error: bool = True,
        on_progress: Optional[ProgressCallback] = None,
        budget: Optional[TimeBudget] = None,
    ) -> BatchResult:
        """Process chunk by chunk, recording item failures instead of raising.

        With continue_on_error=False the run stops after the chunk in which
        the first failure happened.
        """
        outcome = BatchResult()
        total = len(items)

        for index, chunk in enumerate(self._chunks(items, batch_size)):
            if budget is not None and not budget.should_continue():
                outcome.stopped_early = True
                break
            if index > 0 and delay_seconds > 0:
                await self._sleep(delay_seconds)

            chunk_results = await asyncio.gather(
                *(processor(item) for item in chunk), return_exceptions=True
            )
            cut = 0
            for item, value in zip(chunk, chunk_results):
                if isinstance(value, BudgetExhaustedError):
                    cut += 1
                    outcome.stopped_early = True
                elif isinstance(value, Exception):
                    logger.warning(f"Batch item failed: {type(value).__name__}: {value}")
                    outcome.errors.append((item, value))
                elif isinstance(value, BaseException):
                    raise value
                else:
                    outcome.results.append(value)
            outcome.processed += len(chunk) - cut
            if on_progress:
                on_progress(outcome.processed, total)

            if outcome.stopped_early:
                logger.info(f"Budget cut {cut} item(s); stopping after {outcome.processed}/{total}")
                break
            if outcome.errors and not continue_on_error:
                outcome.stopped_early = outcome.processed < total
                break

        return outcome

    async def run_pool(
        self,
        items: Sequence[Any],
        processor: Processor,
        concurrency: int = 4,
        budget: Optional[TimeBudget] = None,
    ) -> BatchResult:
        """Process items with a fixed number of concurrent workers.

        Workers share one index counter; each writes only its own slot of the
        result list.
        """
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")

        outcome = BatchResult(results=[None] * len(items))
        next_index = 0

        async def worker() -> None:
            nonlocal next_index
            while next_index < len(items):
                if outcome.stopped_early:
                    return
                if budget is not None and not budget.should_continue():
                    outcome.stopped_early = True
                    return
                position = next_index
                next_index += 1
                item = items[position]
                try:
                    outcome.results[position] = await processor(item)
                except BudgetExhaustedError:
                    outcome.stopped_early = True
                    return
                except Exception as e:
                    logger.warning(f"Pool item {position} failed: {type(e).__name__}: {e}")
                    outcome.errors.append((item, e))
                outcome.processed += 1

        workers = min(concurrency, len(items))
        await asyncio.gather(*(worker() for _ in range(workers)))
        return outcome
