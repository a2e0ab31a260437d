"""In-process ARQ consumer for advertising job runs.

The API process consumes its own ``process_advertising_job`` queue so runs
publish through the same ChangeBroker the SSE streams read from. A separate
``arq ad_batch.workers.settings.WorkerSettings`` process also works, but its
events only reach clients through the cache backstop refresh.
"""

import asyncio
import logging
import signal

from arq.connections import ArqRedis
from arq.worker import Worker

from ad_batch.config import Settings
from ad_batch.services.factory import Pipeline
from ad_batch.workers.tasks import process_advertising_job

logger = logging.getLogger(__name__)


class EmbeddedArqWorker:
    """Runs job-run tasks from Redis on the API's event loop.

    Shares the app's Redis pool and pipeline; the lifespan owns signals and
    the pool, so stopping never closes either.
    """

    def __init__(
        self,
        redis_pool: ArqRedis,
        settings: Settings,
        pipeline: Pipeline,
    ) -> None:
        self._redis_pool = redis_pool
        self._settings = settings
        self._pipeline = pipeline
        self._task: asyncio.Task | None = None
        self._worker: Worker | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def _build_worker(self) -> Worker:
        return Worker(
            functions=[process_advertising_job],
            redis_pool=self._redis_pool,
            max_jobs=self._settings.arq_max_jobs,
            job_timeout=self._settings.arq_job_timeout,
            health_check_interval=self._settings.arq_health_check_interval,
            handle_signals=False,
            ctx={"settings": self._settings, "pipeline": self._pipeline},
        )

    async def start(self) -> None:
        self._worker = self._build_worker()
        self._task = asyncio.create_task(self._consume(), name="arq-job-runs")
        # handle_sig() cancels main_task, which only run()/async_run() set
        self._worker.main_task = self._task
        logger.info(f"Consuming job runs from Redis (max {self._settings.arq_max_jobs} concurrent)")

    async def _consume(self) -> None:
        try:
            await self._worker.main()
        except asyncio.CancelledError:
            pass
        except Exception:
            logger.exception("Job-run consumer exited unexpectedly")

    async def stop(self) -> None:
        """Stop polling, let in-flight job runs finish, drop the health key."""
        if self._worker is None:
            return

        worker, task = self._worker, self._task
        worker.handle_sig(signal.SIGUSR1)

        if task and not task.done():
            try:
                await asyncio.wait_for(task, timeout=self._settings.arq_stop_timeout_seconds)
            except (TimeoutError, asyncio.CancelledError):
                logger.warning(
                    f"Job-run consumer still busy after {self._settings.arq_stop_timeout_seconds}s, abandoning it"
                )

        running = list(worker.tasks.values())
        if running:
            logger.info(f"Waiting for {len(running)} job runs to settle")
            await asyncio.gather(*running, return_exceptions=True)

        try:
            await self._redis_pool.delete(worker.health_check_key)
        except Exception as e:
            logger.debug(f"Could not remove ARQ health check key: {e}")

        self._worker = None
        self._task = None
        logger.info("Job-run consumer stopped")
