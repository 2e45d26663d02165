"""
Tests for the sync job registry (civic_sync/lib/registry.py).
"""

import pytest

from civic_sync.lib.base_sync import BaseSyncOrchestrator
from civic_sync.lib.registry import SyncRegistry


class TestSyncRegistry:
    """Tests for SyncRegistry class."""

    @pytest.fixture(autouse=True)
    def isolated_registry(self):
        """Run each test against an empty registry, then restore the real one."""
        saved = dict(SyncRegistry._jobs)
        SyncRegistry.clear()
        yield
        SyncRegistry._jobs.clear()
        SyncRegistry._jobs.update(saved)

    @pytest.fixture
    def sample_job_class(self):
        class SampleSync(BaseSyncOrchestrator):
            job_id = "sample"
            job_name = "Sample"
            provider = "congress"
            dataset = "samples"

            async def sync(self, ctx):
                ctx.finish()

        return SampleSync

    def test_register_adds_job(self, sample_job_class):
        SyncRegistry.register(sample_job_class)

        assert SyncRegistry.is_registered("sample")
        assert SyncRegistry.get("sample") is sample_job_class

    def test_register_returns_class(self, sample_job_class):
        assert SyncRegistry.register(sample_job_class) is sample_job_class

    @pytest.mark.parametrize("missing", ["job_id", "job_name", "provider", "dataset"])
    def test_register_requires_identity(self, missing):
        attrs = {"job_id": "x", "job_name": "X", "provider": "p", "dataset": "d"}
        attrs[missing] = ""

        async def sync(self, ctx):
            return None

        job_class = type("Broken", (BaseSyncOrchestrator,), {**attrs, "sync": sync})

        with pytest.raises(ValueError, match=missing):
            SyncRegistry.register(job_class)

    def test_get_returns_none_for_unknown(self):
        assert SyncRegistry.get("nope") is None

    def test_get_or_raise_lists_available(self, sample_job_class):
        SyncRegistry.register(sample_job_class)

        with pytest.raises(KeyError, match="sample"):
            SyncRegistry.get_or_raise("nope")

    def test_list_jobs_sorted(self, sample_job_class):
        class Another(sample_job_class):
            job_id = "another"

        SyncRegistry.register(sample_job_class)
        SyncRegistry.register(Another)

        assert SyncRegistry.list_jobs() == ["another", "sample"]
        assert [i["job_id"] for i in SyncRegistry.get_all_info()] == ["another", "sample"]

    def test_create_instance(self, sample_job_class, make_deps):
        SyncRegistry.register(sample_job_class)
        deps = make_deps()

        first = SyncRegistry.create_instance("sample", deps)
        second = SyncRegistry.create_instance("sample", deps)

        assert isinstance(first, sample_job_class)
        assert first is not second
        assert first.deps is deps

    def test_clear(self, sample_job_class):
        SyncRegistry.register(sample_job_class)
        SyncRegistry.clear()
        assert SyncRegistry.list_jobs() == []


class TestBuiltInJobs:
    def test_services_register_on_import(self):
        import civic_sync.services  # noqa: F401

        for job_id in ("bills", "votes", "fec-finance"):
            assert SyncRegistry.is_registered(job_id)
