"""Job lifecycle: creation, cancellation, status recomputation, deletion.

The job row is an aggregate of its items. recompute_job_status is the single
place that derives counts, progress and terminal status from item states, and
it is safe to call any number of times.
"""

import logging
from datetime import datetime
from typing import Any

from pydantic import ValidationError as PydanticValidationError

from ad_batch.config import Settings, get_settings
from ad_batch.core.exceptions import (
    ConsistencyError,
    EntityNotFound,
    InvalidStateTransition,
    PersistenceError,
    QuotaExceededError,
    ValidationError,
)
from ad_batch.db.models import (
    ITEM_COMPLETED,
    ITEM_FAILED,
    ITEM_PENDING,
    ITEM_PROCESSING,
    JOB_ACTIVE_STATUSES,
    JOB_CANCELLED,
    JOB_COMPLETED,
    JOB_FAILED,
    JOB_GENERATING,
    JOB_PARTIAL,
    JOB_PENDING,
    JOB_TERMINAL_STATUSES,
    AdvertisingJob,
    AdvertisingJobItem,
    ImageCollection,
    generate_uuid,
)
from ad_batch.schemas.jobs import JobInput, VariantSpec
from ad_batch.services.credential_service import CredentialService
from ad_batch.services.state_store import StateStore

logger = logging.getLogger(__name__)

CANCELLED_MESSAGE = "Cancelled by user"
RECOMPUTE_ATTEMPTS = 3


def compute_progress(completed: int, failed: int, total: int) -> int:
    """Percentage of items that reached a terminal state."""
    if total <= 0:
        return 0
    return int(round(100 * (completed + failed) / total))


def derive_job_status(current: str, total: int, completed: int, failed: int, started: bool) -> str:
    """Job status implied by item counts.

    Args:
        current: Job's stored status
        total: Number of items in the job
        completed: Items in ``completed``
        failed: Items in ``failed``
        started: Whether any item has left ``pending``
    """
    if current == JOB_CANCELLED:
        return current
    if total > 0 and completed + failed >= total:
        if failed == 0:
            return JOB_COMPLETED
        if completed == 0:
            return JOB_FAILED
        return JOB_PARTIAL
    if current == JOB_PENDING and started:
        return JOB_GENERATING
    return current


def default_group_name(now: datetime | None = None) -> str:
    now = now or datetime.utcnow()
    return f"Product Ads - {now.strftime('%b')} {now.day}, {now.year}"


class JobOrchestrator:
    """Creates jobs and keeps the job row consistent with its items."""

    def __init__(
        self,
        store: StateStore,
        credentials: CredentialService | None = None,
        settings: Settings | None = None,
    ):
        self.store = store
        self.settings = settings or get_settings()
        self.credentials = credentials or CredentialService(store, self.settings)

    # --- Creation ---

    def create_job(
        self,
        owner_id: str,
        input_params: dict[str, Any],
        variants: list[dict[str, Any]],
    ) -> AdvertisingJob:
        """Persist a pending job with one pending item per variant.

        Args:
            owner_id: Submitting owner
            input_params: ``source_image_url``, ``quality``, optional
                ``group_name`` and ``product_analysis``
            variants: Variant descriptors, one per item, in display order

        Returns:
            The stored job with its items loaded

        Raises:
            ValidationError: No variants, no source reference or bad fields
            QuotaExceededError: Owner has no usable provider credential
        """
        try:
            params = JobInput.model_validate(input_params)
            specs = [VariantSpec.model_validate(v) for v in variants or []]
        except PydanticValidationError as e:
            error = e.errors()[0]
            field = ".".join(str(part) for part in error["loc"])
            raise ValidationError(f"Invalid job input: {error['msg']}", context={"field": field}) from e

        if not specs:
            raise ValidationError("At least one variant is required")
        if not params.source_image_url or not params.source_image_url.strip():
            raise ValidationError("A source image is required")

        if not self.credentials.has_usable_key(owner_id):
            raise QuotaExceededError(
                "No generation credits available. Add an API key or contact an administrator.",
                context={"owner_id": owner_id},
            )

        group_name = params.group_name or default_group_name()
        collection = ImageCollection(
            id=generate_uuid(),
            owner_id=owner_id,
            name=group_name,
            description=f"{len(specs)} advertising images",
        )
        job = AdvertisingJob(
            id=generate_uuid(),
            owner_id=owner_id,
            collection_id=collection.id,
            status=JOB_PENDING,
            total_items=len(specs),
            completed_count=0,
            failed_count=0,
            progress_percentage=0,
            input_image_url=params.source_image_url,
            image_quality=params.quality,
            selected_styles=[spec.model_dump(exclude_none=True) for spec in specs],
            product_analysis=params.product_analysis,
            group_name=group_name,
        )
        items = [
            AdvertisingJobItem(
                id=generate_uuid(),
                job_id=job.id,
                style_id=spec.style_id,
                style_name=spec.style_name or spec.style_id,
                platform=spec.platform,
                aspect_ratio=spec.aspect_ratio,
                series_number=spec.series_number or index + 1,
                sort_order=index,
                status=ITEM_PENDING,
                retry_count=0,
            )
            for index, spec in enumerate(specs)
        ]

        stored = self.store.insert_job(job, items, extra_rows=[collection])
        logger.info(f"Created job {stored.id} for owner {owner_id} with {len(items)} items")
        return stored

    # --- Reads ---

    def get_job(self, job_id: str, owner_id: str | None = None) -> AdvertisingJob:
        """Job with items; a job owned by someone else is reported as missing."""
        job = self.store.get_job(job_id, with_items=True)
        if job is None or (owner_id is not None and job.owner_id != owner_id):
            raise EntityNotFound(f"Job {job_id} not found")
        return job

    def list_jobs(self, owner_id: str, limit: int | None = None) -> list[AdvertisingJob]:
        return self.store.list_jobs(owner_id, limit=limit or self.settings.job_list_limit)

    # --- Transitions ---

    def start_job(self, job_id: str) -> AdvertisingJob | None:
        """Move a pending job to generating.

        Returns the job when it is (now) generating, None when it is terminal.
        """
        job = self.store.update_job(
            job_id,
            {"status": JOB_GENERATING, "started_at": datetime.utcnow()},
            where={"status": JOB_PENDING},
        )
        if job is not None:
            logger.info(f"Job {job_id} started")
            return job

        job = self.store.get_job(job_id)
        if job is None:
            raise EntityNotFound(f"Job {job_id} not found")
        if job.status == JOB_GENERATING:
            return job
        return None

    def cancel_job(self, job_id: str, owner_id: str) -> AdvertisingJob:
        """Cancel an active job.

        Items already completed or failed are left as they are; in-flight
        provider calls are not aborted and their results are still recorded.

        Raises:
            EntityNotFound: Job missing or owned by someone else
            InvalidStateTransition: Job is not pending or generating
        """
        job = self.store.get_owned_job(job_id, owner_id)
        if job is None:
            raise EntityNotFound(f"Job {job_id} not found")
        if job.status not in JOB_ACTIVE_STATUSES:
            raise InvalidStateTransition(
                f"Cannot cancel job in '{job.status}' status",
                context={"job_id": job_id, "status": job.status},
            )

        updated = self.store.update_job(
            job_id,
            {
                "status": JOB_CANCELLED,
                "completed_at": datetime.utcnow(),
                "error_message": CANCELLED_MESSAGE,
            },
            where={"status": list(JOB_ACTIVE_STATUSES)},
        )
        if updated is None:
            # Finished (or was deleted) between the read and the write
            current = self.store.get_job(job_id)
            if current is None:
                raise EntityNotFound(f"Job {job_id} not found")
            raise InvalidStateTransition(
                f"Cannot cancel job in '{current.status}' status",
                context={"job_id": job_id, "status": current.status},
            )

        logger.info(f"Job {job_id} cancelled by owner {owner_id}")
        return updated

    def recompute_job_status(self, job_id: str) -> AdvertisingJob:
        """Rewrite counts, progress and status from the job's items.

        No write (and no change event) happens when nothing changed.

        Raises:
            EntityNotFound: Job no longer exists
            PersistenceError: Job kept changing underneath every attempt
        """
        for _ in range(RECOMPUTE_ATTEMPTS):
            job = self.store.get_job(job_id)
            if job is None:
                raise EntityNotFound(f"Job {job_id} not found")

            counts = self.store.count_items_by_status(job_id)
            total = sum(counts.values()) or job.total_items
            completed = counts.get(ITEM_COMPLETED, 0)
            failed = counts.get(ITEM_FAILED, 0)
            started = completed + failed + counts.get(ITEM_PROCESSING, 0) > 0

            status = derive_job_status(job.status, total, completed, failed, started)
            values: dict[str, Any] = {
                "status": status,
                "total_items": total,
                "completed_count": completed,
                "failed_count": failed,
                "progress_percentage": compute_progress(completed, failed, total),
            }
            if failed and status != JOB_CANCELLED:
                values["error_message"] = self.store.latest_item_error(job_id)
            if status in JOB_TERMINAL_STATUSES and job.completed_at is None:
                values["completed_at"] = datetime.utcnow()
            if status == JOB_GENERATING and job.started_at is None:
                values["started_at"] = datetime.utcnow()

            if all(getattr(job, key) == value for key, value in values.items()):
                return job

            # Guard on version so two concurrent recomputes can't interleave
            updated = self.store.update_job(job_id, values, where={"version": job.version})
            if updated is not None:
                if status != job.status:
                    logger.info(
                        f"Job {job_id} {job.status} -> {status} "
                        f"({completed} completed, {failed} failed of {total})"
                    )
                return updated

        raise PersistenceError(f"Job {job_id} changed concurrently during recompute")

    # --- Deletion ---

    def delete_job(self, job_id: str, owner_id: str | None = None) -> bool:
        """Hard-delete a job and its items.

        Raises:
            EntityNotFound: Job is owned by someone else
        """
        if owner_id is not None and self.store.get_owned_job(job_id, owner_id) is None:
            raise EntityNotFound(f"Job {job_id} not found")
        return self.store.delete_job(job_id)

    def release_stale_claims(self, job_id: str | None = None) -> int:
        """Return items whose processor lease expired to ``pending``."""
        released = 0
        for item in self.store.list_expired_claims(datetime.utcnow(), job_id=job_id):
            try:
                updated = self.store.update_item(
                    item.id,
                    {"status": ITEM_PENDING, "claimed_by": None, "lease_expires_at": None},
                    where={"status": ITEM_PROCESSING, "claimed_by": item.claimed_by},
                )
            except ConsistencyError:
                continue  # Job deleted meanwhile
            if updated is not None:
                released += 1
                logger.warning(f"Released stale claim on item {item.id} held by {item.claimed_by}")
        return released
