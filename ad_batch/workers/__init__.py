"""Background workers package."""

from ad_batch.workers.job_cleanup import JobCleanupService

__all__ = ["JobCleanupService"]
