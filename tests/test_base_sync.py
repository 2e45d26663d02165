"""
Tests for the orchestrator lifecycle (civic_sync/lib/base_sync.py).

Tests:
- Pause flag and lease checks at start
- Checkpointing, partial runs and resumption
- Watermark set to the epoch start on completion
- Failure handling and JobRun audit records
- HTTP accounting through SyncContext.fetch()
"""

from datetime import timedelta

import httpx
import pytest

from civic_sync.lib.base_sync import BaseSyncOrchestrator, SyncRequest


class CountingSync(BaseSyncOrchestrator):
    """Upserts `total` synthetic items, checkpointing after each."""

    job_id = "counting"
    job_name = "Counting"
    provider = "congress"
    dataset = "items"

    total = 5

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.seen_since = "unset"
        self.seen_cursor = "unset"

    async def sync(self, ctx):
        self.seen_since = ctx.since
        self.seen_cursor = ctx.cursor
        offset = (ctx.cursor or {}).get("offset", 0)
        while offset < self.total:
            if not ctx.should_continue():
                return
            ctx.add_upserted(1)
            offset += 1
            ctx.checkpoint({"offset": offset})
        ctx.finish()


class ExplodingSync(CountingSync):
    job_id = "exploding"

    async def sync(self, ctx):
        ctx.add_upserted(2)
        ctx.checkpoint({"offset": 2})
        raise RuntimeError("upstream schema changed")


class FetchingSync(CountingSync):
    job_id = "fetching"

    async def sync(self, ctx):
        payload = await ctx.fetch_json("https://api.test/items")
        ctx.result.records_fetched += len(payload["items"])
        ctx.finish()


class PagedSync(CountingSync):
    """Walks an offset-paged list endpoint until a short page."""

    job_id = "paged"
    page_size = 50

    async def sync(self, ctx):
        offset = (ctx.cursor or {}).get("offset", 0)
        while ctx.should_continue():
            page = await ctx.fetch_json(
                "https://api.test/items", params={"offset": offset, "limit": self.page_size}
            )
            items = page["items"]
            ctx.result.records_fetched += len(items)
            ctx.add_upserted(len(items))
            offset += len(items)
            ctx.checkpoint({"offset": offset})
            if len(items) < self.page_size or not page.get("next"):
                ctx.finish()
                return


# =============================================================================
# Lifecycle Tests
# =============================================================================


class TestRunLifecycle:
    """Tests for BaseSyncOrchestrator.run()."""

    @pytest.mark.asyncio
    async def test_complete_run(self, make_deps, clock):
        deps = make_deps()
        outcome = await CountingSync(deps, clock=clock).run()

        assert outcome["success"] is True
        assert outcome["status"] == "complete"
        assert outcome["has_more"] is False
        assert outcome["records_upserted"] == 5

        cursor = deps.cursors.get("congress", "items")
        assert cursor.cursor is None
        assert cursor.records_total == 5
        assert cursor.last_success_at == clock()

        lease = deps.leases.get("counting")
        assert lease.status == "complete"
        assert lease.lock_until is None

        runs = deps.runs.recent("counting")
        assert len(runs) == 1
        assert runs[0]["status"] == "succeeded"
        assert runs[0]["records_upserted"] == 5

    @pytest.mark.asyncio
    async def test_paused_returns_without_side_effects(self, make_deps, clock):
        deps = make_deps()
        deps.pause_flag.set_paused(True)

        outcome = await CountingSync(deps, clock=clock).run()

        assert outcome["success"] is False
        assert outcome["paused"] is True
        assert deps.leases.get("counting") is None
        assert deps.runs.recent("counting") == []

    @pytest.mark.asyncio
    async def test_already_running(self, make_deps, clock):
        deps = make_deps()
        deps.leases.try_acquire("counting", clock(), clock() + timedelta(minutes=30))

        outcome = await CountingSync(deps, clock=clock).run()

        assert outcome["success"] is False
        assert outcome["already_running"] is True
        assert deps.runs.recent("counting") == []

    @pytest.mark.asyncio
    async def test_stale_lease_is_reclaimed(self, make_deps, clock):
        deps = make_deps()
        deps.leases.try_acquire("counting", clock(), clock() + timedelta(minutes=30))
        clock.advance(31 * 60)

        outcome = await CountingSync(deps, clock=clock).run()

        assert outcome["success"] is True
        assert outcome["status"] == "complete"

    @pytest.mark.asyncio
    async def test_failure_is_reported_not_raised(self, make_deps, clock):
        deps = make_deps()

        outcome = await ExplodingSync(deps, clock=clock).run()

        assert outcome["success"] is False
        assert outcome["status"] == "error"
        assert outcome["error"] == "RuntimeError: upstream schema changed"
        assert outcome["cursor"] == {"offset": 2}

        lease = deps.leases.get("exploding")
        assert lease.status == "error"
        assert lease.lock_until is None
        assert deps.runs.recent("exploding")[0]["status"] == "failed"
        # The checkpoint written before the failure survives for the next run
        assert deps.cursors.get("congress", "items").cursor["offset"] == 2

    @pytest.mark.asyncio
    async def test_cursor_store_outage_releases_lease(self, make_deps, clock, monkeypatch):
        deps = make_deps()

        def unreachable(*args, **kwargs):
            raise ConnectionError("store unreachable")

        monkeypatch.setattr(deps.cursors, "get", unreachable)

        outcome = await CountingSync(deps, clock=clock).run()

        assert outcome["success"] is False
        assert outcome["error"] == "ConnectionError: store unreachable"
        assert outcome["cursor"] is None
        lease = deps.leases.get("counting")
        assert lease.status == "error"
        assert lease.lock_until is None
        assert deps.runs.recent("counting")[0]["status"] == "failed"

    @pytest.mark.asyncio
    async def test_finalize_outage_releases_lease(self, make_deps, clock, monkeypatch):
        deps = make_deps()
        original_put = deps.cursors.put

        def put(provider, dataset, scope_key, cursor=None, **kwargs):
            if cursor is None:
                raise ConnectionError("store unreachable")
            return original_put(provider, dataset, scope_key, cursor=cursor, **kwargs)

        monkeypatch.setattr(deps.cursors, "put", put)

        outcome = await CountingSync(deps, clock=clock).run()

        assert outcome["success"] is False
        assert deps.leases.get("counting").status == "error"
        assert deps.leases.get("counting").lock_until is None
        assert deps.runs.recent("counting")[0]["status"] == "failed"


# =============================================================================
# Cursor and Budget Tests
# =============================================================================


class TestResumption:
    """Partial runs resume from the stored cursor."""

    @pytest.mark.asyncio
    async def test_budget_cut_then_resume(self, make_deps, clock, ticking):
        deps = make_deps()
        epoch_start = clock()

        class LongSync(CountingSync):
            total = 100

        first = await LongSync(
            deps, clock=clock, monotonic=ticking(step=1.0), time_budget_seconds=10
        ).run()

        assert first["success"] is True
        assert first["status"] == "partial"
        assert first["has_more"] is True
        stopped_at = first["cursor"]["offset"]
        assert 0 < stopped_at < 100
        assert deps.leases.get("counting").status == "partial"
        assert deps.runs.recent("counting")[0]["status"] == "partial"

        stored = deps.cursors.get("congress", "items")
        assert stored.last_success_at is None
        assert stored.cursor["offset"] == stopped_at

        clock.advance(3600)
        second_job = LongSync(deps, clock=clock)
        second = await second_job.run()

        assert second_job.seen_cursor == {"offset": stopped_at}
        assert second["status"] == "complete"
        assert second["records_upserted"] == 100 - stopped_at

        stored = deps.cursors.get("congress", "items")
        assert stored.cursor is None
        assert stored.records_total == 100
        # Watermark is the start of the epoch, not the end of the last run
        assert stored.last_success_at == epoch_start

    @pytest.mark.asyncio
    async def test_delta_since_and_full_mode(self, make_deps, clock):
        deps = make_deps()
        first_start = clock()
        await CountingSync(deps, clock=clock).run()
        clock.advance(600)

        delta = CountingSync(deps, clock=clock)
        await delta.run(SyncRequest(mode="delta"))
        full = CountingSync(deps, clock=clock)
        await full.run(SyncRequest(mode="full"))

        assert delta.seen_since == first_start
        assert full.seen_since is None

    @pytest.mark.asyncio
    async def test_reset_and_offset_override_cursor(self, make_deps, clock):
        deps = make_deps()
        deps.cursors.put("congress", "items", "global", {"offset": 3}, 3, success=False)

        reset = CountingSync(deps, clock=clock)
        await reset.run(SyncRequest(reset=True))
        assert reset.seen_cursor is None

        deps.cursors.put("congress", "items", "global", {"offset": 3}, 3, success=False)
        explicit = CountingSync(deps, clock=clock)
        await explicit.run(SyncRequest(offset=1))
        assert explicit.seen_cursor == {"offset": 1}


class TestFetchAccounting:
    """SyncContext.fetch() folds request metrics into the result."""

    @pytest.mark.asyncio
    async def test_attempts_and_waits_are_counted(self, make_deps, clock):
        calls = {"n": 0}

        def handler(request):
            calls["n"] += 1
            if calls["n"] == 1:
                return httpx.Response(502)
            return httpx.Response(200, json={"items": [1, 2, 3]})

        deps = make_deps(handler)
        outcome = await FetchingSync(deps, clock=clock).run()

        assert outcome["success"] is True
        assert outcome["records_fetched"] == 3
        assert outcome["api_calls"] == 2
        assert outcome["wait_time_ms"] == 10

    @pytest.mark.asyncio
    async def test_three_full_pages(self, make_deps, clock):
        requests = []

        def handler(request):
            offset = int(request.url.params["offset"])
            requests.append(offset)
            items = [{"n": offset + i} for i in range(50)]
            return httpx.Response(200, json={"items": items, "next": offset < 100})

        deps = make_deps(handler)
        outcome = await PagedSync(deps, clock=clock).run()

        assert outcome["status"] == "complete"
        assert outcome["records_fetched"] == 150
        assert outcome["records_upserted"] == 150
        assert requests == [0, 50, 100]
        assert deps.cursors.get("congress", "items").cursor is None

    @pytest.mark.asyncio
    async def test_throttled_near_deadline_ends_partial(self, make_deps, clock):
        mono = {"t": 0.0}

        def handler(request):
            offset = int(request.url.params["offset"])
            if offset == 50:
                mono["t"] = 90.0
                return httpx.Response(503)
            items = [{"n": offset + i} for i in range(50)]
            return httpx.Response(200, json={"items": items, "next": True})

        deps = make_deps(handler)
        job = PagedSync(deps, clock=clock, monotonic=lambda: mono["t"], time_budget_seconds=100)
        outcome = await job.run()

        assert outcome["success"] is True
        assert outcome["status"] == "partial"
        assert outcome["cursor"] == {"offset": 50}
        assert outcome["api_calls"] == 2
        assert deps.leases.get("paged").status == "partial"
        assert deps.runs.recent("paged")[0]["status"] == "partial"
        assert deps.cursors.get("congress", "items").cursor["offset"] == 50

    @pytest.mark.asyncio
    async def test_http_error_fails_the_run(self, make_deps, clock):
        deps = make_deps(lambda request: httpx.Response(403, text="bad key"))

        outcome = await FetchingSync(deps, clock=clock).run()

        assert outcome["success"] is False
        assert outcome["error"].startswith("HttpStatusError: HTTP 403")
