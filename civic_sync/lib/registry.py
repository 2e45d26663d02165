"""
Sync Job Registry

Job discovery for the invocation surface. Orchestrators register themselves
with a class decorator; the routes look them up by job id.

Usage:
    @SyncRegistry.register
    class BillsSync(BaseSyncOrchestrator):
        job_id = "bills"
        job_name = "Congress.gov bills"
        ...

    orchestrator = SyncRegistry.create_instance("bills", deps)
    outcome = await orchestrator.run(request)
"""

import logging
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Type

if TYPE_CHECKING:
    from civic_sync.lib.base_sync import BaseSyncOrchestrator, SyncDependencies

logger = logging.getLogger(__name__)


class SyncRegistry:
    """Class-level registry of orchestrator classes keyed by job_id."""

    _jobs: Dict[str, Type["BaseSyncOrchestrator"]] = {}

    @classmethod
    def register(
        cls, job_class: Type["BaseSyncOrchestrator"]
    ) -> Type["BaseSyncOrchestrator"]:
        """
        Decorator to register an orchestrator class.

        Raises:
            ValueError: If job_id, job_name, provider or dataset is missing
        """
        for attr in ("job_id", "job_name", "provider", "dataset"):
            if not getattr(job_class, attr, None):
                raise ValueError(
                    f"Sync job class {job_class.__name__} must define '{attr}'"
                )

        job_id = job_class.job_id
        if job_id in cls._jobs and cls._jobs[job_id] is not job_class:
            logger.warning(
                f"Sync job '{job_id}' already registered by {cls._jobs[job_id].__name__}, "
                f"overwriting with {job_class.__name__}"
            )

        cls._jobs[job_id] = job_class
        logger.debug(f"Registered sync job: {job_id} ({job_class.__name__})")
        return job_class

    @classmethod
    def get(cls, job_id: str) -> Optional[Type["BaseSyncOrchestrator"]]:
        return cls._jobs.get(job_id)

    @classmethod
    def get_or_raise(cls, job_id: str) -> Type["BaseSyncOrchestrator"]:
        """
        Raises:
            KeyError: If job_id is not registered
        """
        job_class = cls._jobs.get(job_id)
        if job_class is None:
            available = ", ".join(sorted(cls._jobs)) or "(none)"
            raise KeyError(f"Unknown sync job: '{job_id}'. Available jobs: {available}")
        return job_class

    @classmethod
    def list_jobs(cls) -> List[str]:
        return sorted(cls._jobs)

    @classmethod
    def get_all_info(cls) -> List[Dict[str, Any]]:
        return [cls._jobs[job_id].info() for job_id in cls.list_jobs()]

    @classmethod
    def create_instance(
        cls, job_id: str, deps: "SyncDependencies", **kwargs: Any
    ) -> "BaseSyncOrchestrator":
        """Instantiate a registered job with its dependencies.

        Raises:
            KeyError: If job_id is not registered
        """
        return cls.get_or_raise(job_id)(deps, **kwargs)

    @classmethod
    def is_registered(cls, job_id: str) -> bool:
        return job_id in cls._jobs

    @classmethod
    def clear(cls) -> None:
        """Remove every registration. Tests only."""
        cls._jobs.clear()
