"""Per-item lifecycle: claim, submit, poll, persist result, retry or fail.

State machine::

    pending -> processing -> completed
                          -> pending   (retry, retry_count < max_retries)
                          -> failed    (retry budget exhausted)

Every write after the claim is guarded on ``claimed_by`` so a processor that
lost its lease can never overwrite the item.
"""

import asyncio
import logging
import time
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any

from ad_batch.config import Settings, get_settings
from ad_batch.core.exceptions import (
    RETRYABLE_EXCEPTIONS,
    ConsistencyError,
    EntityNotFound,
    GenerationTimeoutError,
    PersistenceError,
    ProviderError,
)
from ad_batch.db.models import (
    ITEM_COMPLETED,
    ITEM_FAILED,
    ITEM_PENDING,
    ITEM_PROCESSING,
    JOB_CANCELLED,
    AdvertisingJob,
    AdvertisingJobItem,
    GeneratedImage,
    generate_uuid,
)
from ad_batch.services.generation_client import (
    TASK_COMPLETED,
    TASK_FAILED,
    customize_prompt,
    output_dimensions,
)
from ad_batch.services.job_orchestrator import JobOrchestrator
from ad_batch.services.protocols import GenerationClientProtocol
from ad_batch.services.state_store import StateStore

logger = logging.getLogger(__name__)

STYLE_NOT_FOUND = "Style not found"


class OutcomeKind(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    RETRY = "retry"
    SKIPPED = "skipped"  # Claimed elsewhere, or the item/job vanished
    RELEASED = "released"  # Job cancelled mid-poll; item handed back untouched


@dataclass(frozen=True)
class Outcome:
    """Result of one ItemProcessor.process() call."""

    kind: OutcomeKind
    item_id: str
    attempt: int = 0
    result_ref: str | None = None
    error: str | None = None

    @classmethod
    def success(cls, item_id: str, result_ref: str) -> "Outcome":
        return cls(OutcomeKind.SUCCESS, item_id, result_ref=result_ref)

    @classmethod
    def failure(cls, item_id: str, error: str, attempt: int = 0) -> "Outcome":
        return cls(OutcomeKind.FAILURE, item_id, attempt=attempt, error=error)

    @classmethod
    def retry(cls, item_id: str, attempt: int, error: str) -> "Outcome":
        return cls(OutcomeKind.RETRY, item_id, attempt=attempt, error=error)

    @classmethod
    def skipped(cls, item_id: str, reason: str | None = None) -> "Outcome":
        return cls(OutcomeKind.SKIPPED, item_id, error=reason)

    @classmethod
    def released(cls, item_id: str) -> "Outcome":
        return cls(OutcomeKind.RELEASED, item_id)

    @property
    def is_terminal(self) -> bool:
        return self.kind in (OutcomeKind.SUCCESS, OutcomeKind.FAILURE)


class ClaimLostError(Exception):
    """This processor no longer holds the item (lease expired and was reclaimed)."""


class JobCancelledDuringPoll(Exception):
    """The owning job was cancelled while the item was being polled."""


class ItemProcessor:
    """Drives one job item through the generation provider."""

    def __init__(
        self,
        store: StateStore,
        orchestrator: JobOrchestrator,
        client: GenerationClientProtocol,
        settings: Settings | None = None,
        worker_id: str | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.store = store
        self.orchestrator = orchestrator
        self.client = client
        self.settings = settings or get_settings()
        self.worker_id = worker_id or f"processor-{uuid.uuid4().hex[:12]}"
        self._sleep = sleep
        self._clock = clock

    async def process(self, item_id: str, job: AdvertisingJob) -> Outcome:
        """Run one item to a terminal outcome or back to ``pending``.

        Never raises for item-level problems; they are reported through the
        returned Outcome and the item row.
        """
        try:
            return await self._process(item_id, job)
        except ConsistencyError as e:
            logger.warning(f"Discarding write for item {item_id}: {e}")
            return Outcome.skipped(item_id, str(e))
        except ClaimLostError:
            logger.warning(f"Item {item_id} claim lost by {self.worker_id}, leaving it to the new owner")
            return Outcome.skipped(item_id, "claim lost")

    async def _process(self, item_id: str, job: AdvertisingJob) -> Outcome:
        item = self.store.update_item(
            item_id,
            {
                "status": ITEM_PROCESSING,
                "claimed_by": self.worker_id,
                "lease_expires_at": self._lease_expiry(),
                "started_at": datetime.utcnow(),
            },
            where={"status": ITEM_PENDING},
        )
        if item is None:
            logger.debug(f"Item {item_id} already claimed, skipping")
            return Outcome.skipped(item_id, "already claimed")

        variant = self._find_variant(job, item)
        if variant is None:
            logger.error(f"{STYLE_NOT_FOUND}: {item.style_id} (item {item_id})")
            self._write(
                item_id,
                {
                    "status": ITEM_FAILED,
                    "error_message": STYLE_NOT_FOUND,
                    "completed_at": datetime.utcnow(),
                    "claimed_by": None,
                    "lease_expires_at": None,
                },
            )
            self._recompute(job.id)
            return Outcome.failure(item_id, STYLE_NOT_FOUND, attempt=item.retry_count)

        try:
            result_ref = await self._generate(item, job, variant)
        except JobCancelledDuringPoll:
            self._write(item_id, {"status": ITEM_PENDING, "claimed_by": None, "lease_expires_at": None})
            logger.info(f"Job {job.id} cancelled, released item {item_id}")
            return Outcome.released(item_id)
        except (*RETRYABLE_EXCEPTIONS, PersistenceError) as e:
            return self._fail(item, job, e)
        except (ConsistencyError, ClaimLostError):
            raise
        except Exception as e:
            logger.exception(f"Unexpected error processing item {item_id}")
            return self._fail(item, job, e)

        self._recompute(job.id)
        return Outcome.success(item_id, result_ref)

    async def _generate(self, item: AdvertisingJobItem, job: AdvertisingJob, variant: dict[str, Any]) -> str:
        params = {
            "source_image_url": job.input_image_url,
            "quality": job.image_quality,
            "product_analysis": job.product_analysis,
        }

        task_id = item.task_id
        if task_id:
            # Generation already succeeded once; only the result was lost
            logger.info(f"Item {item.id} resuming task {task_id}")
        else:
            task_id = await self.client.submit(variant, params)
            self._write(item.id, {"task_id": task_id})

        result_ref = await self._poll(job.id, task_id)
        self._persist_result(item, job, variant, result_ref)
        return result_ref

    async def _poll(self, job_id: str, task_id: str) -> str:
        deadline = self._clock() + self.settings.item_poll_timeout_seconds
        while True:
            await self._sleep(self.settings.item_poll_interval_seconds)

            job = self.store.get_job(job_id)
            if job is None:
                raise ConsistencyError(f"Job {job_id} no longer exists")
            if job.status == JOB_CANCELLED:
                raise JobCancelledDuringPoll()

            status = await self.client.status(task_id)
            if status.status == TASK_COMPLETED and status.result_ref:
                return status.result_ref
            if status.status == TASK_FAILED:
                raise ProviderError(status.error or "Generation failed")

            if self._clock() >= deadline:
                raise GenerationTimeoutError()

    def _persist_result(
        self,
        item: AdvertisingJobItem,
        job: AdvertisingJob,
        variant: dict[str, Any],
        result_ref: str,
    ) -> None:
        width, height = output_dimensions(variant.get("aspect_ratio") or item.aspect_ratio, job.image_quality)
        image = GeneratedImage(
            id=generate_uuid(),
            owner_id=job.owner_id,
            job_id=job.id,
            collection_id=job.collection_id,
            style_id=item.style_id,
            platform=item.platform,
            prompt=customize_prompt(variant.get("prompt") or "", job.product_analysis),
            negative_prompt=variant.get("negative_prompt"),
            image_url=result_ref,
            original_image_url=job.input_image_url,
            generation_type="img2img",
            provider=self.settings.kie_service_name,
            model=self.settings.kie_model,
            width=width,
            height=height,
            parameters={
                "strength": variant.get("strength"),
                "quality": job.image_quality,
                "negativePrompt": variant.get("negative_prompt"),
                "styleName": variant.get("style_name") or item.style_name,
                "styleDescription": variant.get("description"),
                "aspectRatio": variant.get("aspect_ratio") or item.aspect_ratio,
            },
            sort_order=item.series_number or 0,
        )
        self._write(
            item.id,
            {
                "status": ITEM_COMPLETED,
                "image_url": result_ref,
                "generated_image_id": image.id,
                "error_message": None,
                "completed_at": datetime.utcnow(),
                "claimed_by": None,
                "lease_expires_at": None,
            },
            extra_rows=[image],
        )
        logger.info(f"Completed item {item.id} ({item.style_name})")

    def _fail(self, item: AdvertisingJobItem, job: AdvertisingJob, error: Exception) -> Outcome:
        """Apply the retry policy to a failed attempt."""
        attempt = item.retry_count + 1
        message = str(error) or type(error).__name__
        values: dict[str, Any] = {
            "retry_count": attempt,
            "error_message": message,
            "claimed_by": None,
            "lease_expires_at": None,
        }
        if not isinstance(error, PersistenceError):
            # A fresh attempt needs a fresh provider task
            values["task_id"] = None

        if attempt < self.settings.item_max_retries:
            values["status"] = ITEM_PENDING
            outcome = Outcome.retry(item.id, attempt, message)
            logger.warning(f"Item {item.id} attempt {attempt} failed, will retry: {message}")
        else:
            values["status"] = ITEM_FAILED
            values["completed_at"] = datetime.utcnow()
            outcome = Outcome.failure(item.id, message, attempt=attempt)
            logger.error(f"Item {item.id} failed after {attempt} attempts: {message}")

        try:
            self._write(item.id, values)
        except PersistenceError as e:
            # Item stays claimed until its lease expires and it is released
            logger.error(f"Could not record failure of item {item.id}: {e}")
            return Outcome.skipped(item.id, str(e))

        if outcome.is_terminal:
            self._recompute(job.id)
        return outcome

    def _write(
        self,
        item_id: str,
        values: dict[str, Any],
        extra_rows: list[Any] | None = None,
    ) -> AdvertisingJobItem:
        updated = self.store.update_item(
            item_id,
            values,
            where={"status": ITEM_PROCESSING, "claimed_by": self.worker_id},
            extra_rows=extra_rows or (),
        )
        if updated is None:
            raise ClaimLostError(item_id)
        return updated

    def _recompute(self, job_id: str) -> None:
        try:
            self.orchestrator.recompute_job_status(job_id)
        except EntityNotFound:
            logger.warning(f"Job {job_id} deleted before its status could be recomputed")
        except PersistenceError as e:
            # The scheduler recomputes again after the wave settles
            logger.warning(f"Recompute of job {job_id} deferred: {e}")

    def _lease_expiry(self) -> datetime:
        return datetime.utcnow() + timedelta(minutes=self.settings.item_lease_minutes)

    @staticmethod
    def _find_variant(job: AdvertisingJob, item: AdvertisingJobItem) -> dict[str, Any] | None:
        """The variant an item was created from.

        Items are created in variant order, so ``sort_order`` indexes
        ``selected_styles``; a job may repeat a style across platforms.
        """
        styles = job.selected_styles or []
        if 0 <= item.sort_order < len(styles) and styles[item.sort_order].get("style_id") == item.style_id:
            return styles[item.sort_order]
        for variant in styles:
            if variant.get("style_id") == item.style_id:
                return variant
        return None
