"""Wave-based concurrent execution of a job's items.

A run repeatedly takes up to ``wave_size`` pending items in creation order,
processes them concurrently, waits for the whole wave to settle, recomputes
the job status, and loops until no pending item remains. Cancellation is
checked at every wave boundary.
"""

import asyncio
import logging
import uuid
from collections.abc import Callable
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any

from ad_batch.config import Settings, get_settings
from ad_batch.core.exceptions import ConsistencyError, EntityNotFound, QuotaExceededError
from ad_batch.core.logging import job_id_var
from ad_batch.db.models import (
    ITEM_FAILED,
    ITEM_PENDING,
    ITEM_PROCESSING,
    JOB_CANCELLED,
    JOB_FINISHED_STATUSES,
)
from ad_batch.services.credential_service import CredentialService
from ad_batch.services.item_processor import ItemProcessor, Outcome, OutcomeKind
from ad_batch.services.job_orchestrator import JobOrchestrator
from ad_batch.services.protocols import GenerationClientProtocol
from ad_batch.services.state_store import StateStore

logger = logging.getLogger(__name__)

ClientFactory = Callable[[str], GenerationClientProtocol]


@dataclass
class JobOutcome:
    """Summary of one scheduler run."""

    job_id: str
    status: str
    total: int = 0
    completed: int = 0
    failed: int = 0
    waves: int = 0
    cancelled: bool = False
    retried: int = 0
    skipped: int = 0
    finished: bool = False

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


class BatchScheduler:
    """Runs a job's items through ItemProcessors in bounded waves."""

    def __init__(
        self,
        store: StateStore,
        orchestrator: JobOrchestrator,
        credentials: CredentialService,
        client_factory: ClientFactory,
        settings: Settings | None = None,
        **processor_options: Any,
    ):
        """Initialize the scheduler.

        Args:
            store: Job/item state
            orchestrator: Used for start, recompute and stale-claim release
            credentials: Resolves the provider key once per run
            client_factory: Builds a generation client from an API key
            settings: Wave size and processor settings
            **processor_options: Forwarded to every ItemProcessor (sleep, clock)
        """
        self.store = store
        self.orchestrator = orchestrator
        self.credentials = credentials
        self.client_factory = client_factory
        self.settings = settings or get_settings()
        self.run_id = f"run-{uuid.uuid4().hex[:8]}"
        self._processor_options = processor_options

    async def run_job(self, job_id: str) -> JobOutcome:
        """Process every pending item of a job.

        Item errors never abort the run. Raises EntityNotFound only when the
        job does not exist at start.
        """
        token = job_id_var.set(job_id)
        try:
            return await self._run(job_id)
        finally:
            job_id_var.reset(token)

    async def _run(self, job_id: str) -> JobOutcome:
        job = self.orchestrator.start_job(job_id)
        if job is None:
            current = self.store.get_job(job_id)
            status = current.status if current else "deleted"
            logger.info(f"Job {job_id} is {status}, nothing to run")
            return self._summarize(
                job_id,
                JobOutcome(job_id=job_id, status=status, cancelled=status == JOB_CANCELLED),
            )

        outcome = JobOutcome(job_id=job_id, status=job.status)
        self.orchestrator.release_stale_claims(job_id)

        try:
            api_key = self.credentials.resolve_api_key(job.owner_id)
        except QuotaExceededError as e:
            logger.error(f"Job {job_id} cannot run: {e.detail}")
            self._fail_pending(job_id, e.detail)
            return self._finish(job_id, outcome)

        client = self.client_factory(api_key)
        try:
            await self._run_waves(job_id, client, outcome)
        finally:
            await client.aclose()

        return self._finish(job_id, outcome)

    async def _run_waves(self, job_id: str, client: GenerationClientProtocol, outcome: JobOutcome) -> None:
        wave_size = max(1, self.settings.scheduler_wave_size)

        while True:
            job = self.store.get_job(job_id)
            if job is None:
                logger.warning(f"Job {job_id} deleted mid-run, stopping")
                return
            if job.status == JOB_CANCELLED:
                logger.info(f"Job {job_id} cancelled, stopping after {outcome.waves} waves")
                outcome.cancelled = True
                return

            wave = self.store.list_items(job_id, statuses=[ITEM_PENDING], limit=wave_size)
            if not wave:
                in_flight = self.store.list_items(job_id, statuses=[ITEM_PROCESSING])
                if in_flight:
                    logger.info(
                        f"{len(in_flight)} items of job {job_id} are held by another run, "
                        "leaving them to it"
                    )
                return

            outcome.waves += 1
            logger.info(f"Job {job_id} wave {outcome.waves}: {len(wave)} items")
            results = await asyncio.gather(
                *(self._processor(client).process(item.id, job) for item in wave),
                return_exceptions=True,
            )
            settled = [self._settle(item.id, result) for item, result in zip(wave, results)]
            self._tally(outcome, settled)

            self._recompute(job_id)

            if all(o.kind == OutcomeKind.SKIPPED for o in settled):
                # Everything in the wave is owned elsewhere; avoid spinning on it
                logger.info(f"Job {job_id} wave {outcome.waves} made no progress, stopping")
                return

    def _processor(self, client: GenerationClientProtocol) -> ItemProcessor:
        return ItemProcessor(
            self.store,
            self.orchestrator,
            client,
            settings=self.settings,
            worker_id=f"{self.run_id}-{uuid.uuid4().hex[:6]}",
            **self._processor_options,
        )

    @staticmethod
    def _settle(item_id: str, result: Outcome | BaseException) -> Outcome:
        if isinstance(result, Outcome):
            return result
        if isinstance(result, asyncio.CancelledError):
            raise result
        # Lease expiry hands the item back to pending for a later run
        logger.error(f"Item {item_id} processor raised {type(result).__name__}: {result}")
        return Outcome.skipped(item_id, str(result))

    @staticmethod
    def _tally(outcome: JobOutcome, settled: list[Outcome]) -> None:
        for result in settled:
            if result.kind == OutcomeKind.RETRY:
                outcome.retried += 1
            elif result.kind == OutcomeKind.SKIPPED:
                outcome.skipped += 1

    def _fail_pending(self, job_id: str, message: str) -> None:
        for item in self.store.list_items(job_id, statuses=[ITEM_PENDING]):
            try:
                self.store.update_item(
                    item.id,
                    {"status": ITEM_FAILED, "error_message": message, "completed_at": datetime.utcnow()},
                    where={"status": ITEM_PENDING},
                )
            except ConsistencyError:
                return

    def _recompute(self, job_id: str):
        try:
            return self.orchestrator.recompute_job_status(job_id)
        except EntityNotFound:
            return None

    def _finish(self, job_id: str, outcome: JobOutcome) -> JobOutcome:
        job = self._recompute(job_id)
        if job is None:
            outcome.status = "deleted"
        else:
            outcome.status = job.status
            outcome.total = job.total_items
            outcome.completed = job.completed_count
            outcome.failed = job.failed_count
            outcome.cancelled = outcome.cancelled or job.status == JOB_CANCELLED
            outcome.finished = job.status in JOB_FINISHED_STATUSES
        return self._summarize(job_id, outcome)

    @staticmethod
    def _summarize(job_id: str, outcome: JobOutcome) -> JobOutcome:
        logger.info(
            f"Job {job_id} run finished: {outcome.status} "
            f"({outcome.completed} completed, {outcome.failed} failed, "
            f"{outcome.waves} waves, {outcome.retried} retries)"
        )
        return outcome
