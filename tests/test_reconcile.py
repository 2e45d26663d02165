"""
Tests for idempotent write strategies (civic_sync/lib/reconcile.py).
"""

from unittest.mock import patch

import pytest

from civic_sync.lib.memory_store import InMemoryDataStore
from civic_sync.lib.reconcile import IdempotentReconciler, ReconcileError, derive_dedupe_id


class TestDeriveDedupeId:
    """Tests for derive_dedupe_id()."""

    def test_stable_across_calls(self):
        args = ("m-1", "4123", "2024-03-01", 250, "Jane Q. Donor", "94110-1234")
        assert derive_dedupe_id(*args) == derive_dedupe_id(*args)

    def test_format(self):
        dedupe_id = derive_dedupe_id("m-1", "4123", "2024-03-01", 250, "jane donor", "94110-1234")
        assert dedupe_id == "m-1-4123-2024-03-01-250_00-JANE_DONOR-94110"

    def test_name_truncated_to_twenty_chars(self):
        long_name = "A VERY LONG CONTRIBUTOR NAME INDEED"
        assert "A_VERY_LONG_CONTRIBU" in derive_dedupe_id("m", "1", "d", 1, long_name, "")

    def test_amount_distinguishes_records(self):
        a = derive_dedupe_id("m-1", None, "2024-03-01", 250, "Jane", "94110")
        b = derive_dedupe_id("m-1", None, "2024-03-01", 251, "Jane", "94110")
        assert a != b


class TestIdempotentReconciler:
    """Tests for IdempotentReconciler."""

    @pytest.fixture
    def store(self):
        return InMemoryDataStore()

    @pytest.fixture
    def reconciler(self, store):
        return IdempotentReconciler(store)

    def test_upsert_twice_converges(self, store, reconciler):
        row = {"member_id": "m-1", "cycle": 2024, "total_receipts": 100.0}

        reconciler.upsert("funding_metrics", [row], "member_id,cycle")
        first = store.rows("funding_metrics")
        reconciler.upsert("funding_metrics", [row], "member_id,cycle")

        assert store.rows("funding_metrics") == first

    def test_upsert_empty_is_noop(self, reconciler):
        assert reconciler.upsert("funding_metrics", [], "member_id,cycle") == []

    def test_replace_partition_swaps_rows(self, store, reconciler):
        partition = {"member_id": "m-1", "cycle": 2024}
        reconciler.replace_partition("member_contributions", partition, [{"contributor_name": "A", "amount": 1}])
        store.insert("member_contributions", [{"member_id": "m-2", "cycle": 2024, "contributor_name": "Z"}])

        count = reconciler.replace_partition(
            "member_contributions",
            partition,
            [{"contributor_name": "B", "amount": 2}, {"contributor_name": "C", "amount": 3}],
        )

        assert count == 2
        mine = store.select("member_contributions", match=partition)
        assert sorted(r["contributor_name"] for r in mine) == ["B", "C"]
        assert store.select("member_contributions", match={"member_id": "m-2"})[0]["contributor_name"] == "Z"

    def test_unchanged_partition_is_not_rewritten(self, store, reconciler):
        partition = {"member_id": "m-1", "cycle": 2024}
        rows = [{"contributor_name": "A", "amount": 1.0}]
        reconciler.replace_partition("member_contributions", partition, rows)
        ids_before = [r["id"] for r in store.rows("member_contributions")]

        with patch.object(store, "delete", wraps=store.delete) as delete:
            written = reconciler.replace_partition("member_contributions", partition, rows)

        assert written == 0
        delete.assert_not_called()
        assert [r["id"] for r in store.rows("member_contributions")] == ids_before

    def test_failed_insert_restores_snapshot(self, store, reconciler):
        partition = {"member_id": "m-1", "cycle": 2024}
        reconciler.replace_partition("member_contributions", partition, [{"contributor_name": "A"}])
        original_insert = store.insert
        calls = {"n": 0}

        def flaky_insert(table, rows):
            calls["n"] += 1
            if calls["n"] == 1:
                raise RuntimeError("connection reset")
            return original_insert(table, rows)

        with patch.object(store, "insert", side_effect=flaky_insert):
            with pytest.raises(ReconcileError):
                reconciler.replace_partition(
                    "member_contributions", partition, [{"contributor_name": "B"}]
                )

        names = [r["contributor_name"] for r in store.select("member_contributions", match=partition)]
        assert names == ["A"]

    def test_replace_partition_requires_filter(self, reconciler):
        with pytest.raises(ValueError):
            reconciler.replace_partition("member_contributions", {}, [])

    def test_insert_deduped_skips_known_rows(self, store, reconciler):
        rows = [
            {"dedupe_id": "a", "amount": 1},
            {"dedupe_id": "b", "amount": 2},
            {"dedupe_id": "a", "amount": 1},
        ]

        assert reconciler.insert_deduped("member_receipts", rows) == 2
        assert reconciler.insert_deduped("member_receipts", rows) == 0
        assert store.count("member_receipts") == 2

    def test_insert_deduped_requires_id(self, reconciler):
        with pytest.raises(ValueError):
            reconciler.insert_deduped("member_receipts", [{"amount": 1}])
