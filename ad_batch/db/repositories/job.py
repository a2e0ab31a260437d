"""Repositories for advertising jobs, items and gallery rows."""

from collections.abc import Iterable
from datetime import datetime

from sqlalchemy import delete, func, select
from sqlalchemy.orm import selectinload

from ad_batch.db.models import (
    ITEM_FAILED,
    ITEM_PROCESSING,
    AdvertisingJob,
    AdvertisingJobItem,
    GeneratedImage,
    ImageCollection,
)
from ad_batch.db.repositories.base import BaseRepository


class JobRepository(BaseRepository[AdvertisingJob]):
    model = AdvertisingJob

    def get_with_items(self, job_id: str) -> AdvertisingJob | None:
        stmt = (
            select(AdvertisingJob)
            .where(AdvertisingJob.id == job_id)
            .options(selectinload(AdvertisingJob.items))
        )
        return self.db.scalar(stmt)

    def list_for_owner(
        self,
        owner_id: str,
        limit: int | None = None,
        statuses: Iterable[str] | None = None,
    ) -> list[AdvertisingJob]:
        """Owner's jobs with items, most recent first."""
        stmt = (
            select(AdvertisingJob)
            .where(AdvertisingJob.owner_id == owner_id)
            .options(selectinload(AdvertisingJob.items))
            .order_by(AdvertisingJob.created_at.desc(), AdvertisingJob.id.desc())
        )
        if statuses is not None:
            stmt = stmt.where(AdvertisingJob.status.in_(list(statuses)))
        if limit is not None:
            stmt = stmt.limit(limit)
        return list(self.db.scalars(stmt).all())

    def list_finished_before(self, statuses: Iterable[str], cutoff: datetime) -> list[AdvertisingJob]:
        stmt = select(AdvertisingJob).where(
            AdvertisingJob.status.in_(list(statuses)),
            AdvertisingJob.completed_at.is_not(None),
            AdvertisingJob.completed_at < cutoff,
        )
        return list(self.db.scalars(stmt).all())

    def owner_of(self, job_id: str) -> str | None:
        return self.db.scalar(select(AdvertisingJob.owner_id).where(AdvertisingJob.id == job_id))


class JobItemRepository(BaseRepository[AdvertisingJobItem]):
    model = AdvertisingJobItem

    def list_for_job(
        self,
        job_id: str,
        statuses: Iterable[str] | None = None,
        limit: int | None = None,
    ) -> list[AdvertisingJobItem]:
        """Items of a job in creation order."""
        stmt = (
            select(AdvertisingJobItem)
            .where(AdvertisingJobItem.job_id == job_id)
            .order_by(AdvertisingJobItem.sort_order.asc(), AdvertisingJobItem.created_at.asc())
        )
        if statuses is not None:
            stmt = stmt.where(AdvertisingJobItem.status.in_(list(statuses)))
        if limit is not None:
            stmt = stmt.limit(limit)
        return list(self.db.scalars(stmt).all())

    def count_by_status(self, job_id: str) -> dict[str, int]:
        stmt = (
            select(AdvertisingJobItem.status, func.count())
            .where(AdvertisingJobItem.job_id == job_id)
            .group_by(AdvertisingJobItem.status)
        )
        return {status: count for status, count in self.db.execute(stmt).all()}

    def latest_error(self, job_id: str) -> str | None:
        """Error of the most recently failed item."""
        stmt = (
            select(AdvertisingJobItem.error_message)
            .where(
                AdvertisingJobItem.job_id == job_id,
                AdvertisingJobItem.status == ITEM_FAILED,
                AdvertisingJobItem.error_message.is_not(None),
            )
            .order_by(
                AdvertisingJobItem.completed_at.desc(),
                AdvertisingJobItem.sort_order.desc(),
            )
            .limit(1)
        )
        return self.db.scalar(stmt)

    def list_expired_claims(self, now: datetime, job_id: str | None = None) -> list[AdvertisingJobItem]:
        stmt = select(AdvertisingJobItem).where(
            AdvertisingJobItem.status == ITEM_PROCESSING,
            AdvertisingJobItem.lease_expires_at.is_not(None),
            AdvertisingJobItem.lease_expires_at < now,
        )
        if job_id is not None:
            stmt = stmt.where(AdvertisingJobItem.job_id == job_id)
        return list(self.db.scalars(stmt).all())

    def delete_for_job(self, job_id: str) -> int:
        result = self.db.execute(
            delete(AdvertisingJobItem).where(AdvertisingJobItem.job_id == job_id)
        )
        return result.rowcount


class GeneratedImageRepository(BaseRepository[GeneratedImage]):
    model = GeneratedImage

    def list_for_owner(self, owner_id: str, limit: int | None = None) -> list[GeneratedImage]:
        stmt = (
            select(GeneratedImage)
            .where(GeneratedImage.owner_id == owner_id)
            .order_by(GeneratedImage.created_at.desc(), GeneratedImage.sort_order.asc())
        )
        if limit is not None:
            stmt = stmt.limit(limit)
        return list(self.db.scalars(stmt).all())


class ImageCollectionRepository(BaseRepository[ImageCollection]):
    model = ImageCollection

    def list_for_owner(self, owner_id: str) -> list[ImageCollection]:
        stmt = (
            select(ImageCollection)
            .where(ImageCollection.owner_id == owner_id)
            .order_by(ImageCollection.created_at.desc())
        )
        return list(self.db.scalars(stmt).all())
