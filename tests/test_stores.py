"""
Tests for store records and the in-memory stores.
"""

from datetime import datetime, timedelta, timezone

from civic_sync.lib.memory_store import (
    InMemoryCursorStore,
    InMemoryDataStore,
    InMemoryJobRunStore,
    InMemoryLeaseStore,
)
from civic_sync.lib.stores import GLOBAL_SCOPE, advance_watermark, parse_timestamp

T0 = datetime(2025, 1, 1, tzinfo=timezone.utc)


class TestTimestamps:
    def test_parse_iso_with_z(self):
        assert parse_timestamp("2025-01-01T00:00:00Z") == T0

    def test_naive_values_are_utc(self):
        assert parse_timestamp("2025-01-01T00:00:00") == T0

    def test_empty_and_invalid(self):
        assert parse_timestamp(None) is None
        assert parse_timestamp("") is None
        assert parse_timestamp("yesterday") is None

    def test_watermark_never_moves_back(self):
        later = T0 + timedelta(hours=1)
        assert advance_watermark(None, T0) == T0
        assert advance_watermark(T0, later) == later
        assert advance_watermark(later, T0) == later


class TestInMemoryCursorStore:
    """Tests for the cursor store."""

    def test_missing_cursor_is_empty(self):
        cursor = InMemoryCursorStore().get("congress", "bills")

        assert cursor.scope_key == GLOBAL_SCOPE
        assert cursor.cursor is None
        assert cursor.last_success_at is None
        assert cursor.records_total == 0

    def test_progress_put_keeps_watermark(self):
        store = InMemoryCursorStore()
        store.put("congress", "bills", GLOBAL_SCOPE, None, 10, success=True, now=T0)

        store.put("congress", "bills", GLOBAL_SCOPE, {"offset": 250}, 260, success=False)

        cursor = store.get("congress", "bills")
        assert cursor.cursor == {"offset": 250}
        assert cursor.records_total == 260
        assert cursor.last_success_at == T0

    def test_success_with_older_timestamp_does_not_regress(self):
        store = InMemoryCursorStore()
        store.put("fec", "finance", "m-1", None, 1, success=True, now=T0 + timedelta(days=1))
        store.put("fec", "finance", "m-1", None, 1, success=True, now=T0)

        assert store.get("fec", "finance", "m-1").last_success_at == T0 + timedelta(days=1)

    def test_scopes_are_independent(self):
        store = InMemoryCursorStore()
        store.put("fec", "finance", "m-1", {"offset": 8}, 8, success=False)

        assert store.get("fec", "finance", "m-2").cursor is None

    def test_to_dict_uses_last_cursor(self):
        store = InMemoryCursorStore()
        row = store.put("fec", "finance", GLOBAL_SCOPE, {"offset": 8}, 8, success=True, now=T0)

        assert row.to_dict()["last_cursor"] == {"offset": 8}
        assert row.to_dict()["last_success_at"] == T0.isoformat()


class TestInMemoryLeaseStore:
    def test_progress_and_stale_flag(self):
        store = InMemoryLeaseStore()
        store.try_acquire("bills", T0, T0 + timedelta(minutes=30))
        store.record_progress("bills", 500, {"offset": 500})

        row = store.list_all()[0].to_dict(now=T0 + timedelta(hours=1))

        assert row["id"] == "bills"
        assert row["total_processed"] == 500
        assert row["current_cursor"] == {"offset": 500}
        assert row["stale"] is True


class TestInMemoryDataStore:
    """Tests for the PostgREST-like table store."""

    def test_upsert_updates_on_conflict(self):
        store = InMemoryDataStore()
        first = store.upsert("t", [{"a": 1, "b": 2, "v": "x"}], on_conflict="a,b")
        second = store.upsert("t", [{"a": 1, "b": 2, "v": "y"}], on_conflict="a,b")

        assert store.count("t") == 1
        assert first[0]["id"] == second[0]["id"]
        assert store.rows("t")[0]["v"] == "y"

    def test_upsert_ignore_duplicates(self):
        store = InMemoryDataStore()
        store.upsert("t", [{"k": 1, "v": "x"}], on_conflict="k")
        written = store.upsert("t", [{"k": 1, "v": "y"}], on_conflict="k", ignore_duplicates=True)

        assert written == []
        assert store.rows("t")[0]["v"] == "x"

    def test_select_order_limit_columns(self):
        store = InMemoryDataStore({"m": [{"id": "b", "n": 2}, {"id": "a", "n": 1}, {"id": "c", "n": 3}]})

        rows = store.select("m", order_by="-n", limit=2, columns="id")

        assert rows == [{"id": "c"}, {"id": "b"}]

    def test_update_and_delete(self):
        store = InMemoryDataStore({"m": [{"id": "a", "x": 1}, {"id": "b", "x": 1}]})

        store.update("m", {"x": 2}, {"id": "a"})
        removed = store.delete("m", {"x": 1})

        assert [r["id"] for r in removed] == ["b"]
        assert store.rows("m") == [{"id": "a", "x": 2}]


class TestInMemoryJobRunStore:
    def test_recent_is_newest_first_and_limited(self):
        store = InMemoryJobRunStore()
        for i in range(5):
            store.append({"job_id": "bills", "n": i})
        store.append({"job_id": "votes", "n": 99})

        recent = store.recent("bills", limit=3)

        assert [r["n"] for r in recent] == [4, 3, 2]
