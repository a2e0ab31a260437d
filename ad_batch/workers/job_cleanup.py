"""Periodic cleanup of finished advertising jobs and stale item claims."""

import asyncio
import logging
from datetime import datetime, timedelta

from ad_batch.config import Settings, get_settings
from ad_batch.core.exceptions import PersistenceError
from ad_batch.db.models import JOB_FINISHED_STATUSES
from ad_batch.services.job_orchestrator import JobOrchestrator

logger = logging.getLogger(__name__)


class JobCleanupService:
    """Async background service that periodically cleans up job state.

    Cleanup operations:
    1. Delete completed/partial jobs finished more than job_cleanup_grace_seconds ago
    2. Return items whose processor lease expired to pending
    """

    def __init__(self, orchestrator: JobOrchestrator, settings: Settings | None = None):
        """Initialize cleanup service.

        Args:
            orchestrator: Used for job deletion and stale-claim release.
            settings: Optional settings override (uses get_settings() if None).
        """
        self.orchestrator = orchestrator
        self.settings = settings or get_settings()
        self._task: asyncio.Task | None = None
        self._shutdown = asyncio.Event()

    async def start(self) -> None:
        """Start cleanup service as asyncio task."""
        self._shutdown.clear()
        self._task = asyncio.create_task(self._cleanup_loop())
        logger.info("JobCleanupService started")

    async def stop(self) -> None:
        """Graceful shutdown."""
        logger.info("JobCleanupService stopping...")
        self._shutdown.set()
        if self._task:
            self._task.cancel()
            try:
                await asyncio.wait_for(self._task, timeout=10)
            except (TimeoutError, asyncio.CancelledError):
                pass
        logger.info("JobCleanupService stopped")

    async def _cleanup_loop(self) -> None:
        """Run cleanup every job_cleanup_interval_seconds."""
        while not self._shutdown.is_set():
            try:
                await self.run_cleanup()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Cleanup error: {e}")

            # Wait for next interval or shutdown
            try:
                await asyncio.wait_for(
                    self._shutdown.wait(),
                    timeout=self.settings.job_cleanup_interval_seconds,
                )
                break  # Shutdown requested
            except TimeoutError:
                pass  # Normal timeout, continue loop

    async def run_cleanup(self) -> dict[str, int]:
        """Perform all cleanup operations.

        Returns:
            Dict with counts of deleted jobs and released claims.
        """
        cutoff = datetime.utcnow() - timedelta(seconds=self.settings.job_cleanup_grace_seconds)
        store = self.orchestrator.store

        deleted = 0
        for job in store.list_finished_jobs(JOB_FINISHED_STATUSES, cutoff):
            try:
                if self.orchestrator.delete_job(job.id):
                    deleted += 1
            except PersistenceError as e:
                logger.warning(f"Failed to delete finished job {job.id}: {e}")

        released = self.orchestrator.release_stale_claims()

        if deleted or released:
            logger.info(f"Cleanup: deleted {deleted} finished jobs, released {released} stale claims")
        return {"deleted_jobs": deleted, "released_claims": released}
