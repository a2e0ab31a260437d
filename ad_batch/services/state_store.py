"""Durable job/item state, the source of truth for the pipeline.

Every write is scoped to one entity by primary key, committed, and only then
published to the ChangeBroker. Writes to the same row bump its ``version``
column, which is what lets subscribers ignore superseded updates when events
arrive out of order or twice.

Methods are synchronous and short: each opens a session, does its work and
closes it, so no session is ever held across an ``await``.
"""

import logging
from collections.abc import Callable, Iterable, Iterator
from contextlib import contextmanager
from datetime import datetime
from typing import Any

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ad_batch.core.exceptions import ConsistencyError, PersistenceError
from ad_batch.db.models import (
    AdvertisingJob,
    AdvertisingJobItem,
    GeneratedImage,
    ImageCollection,
    to_dict,
)
from ad_batch.db.repositories import (
    GeneratedImageRepository,
    ImageCollectionRepository,
    JobItemRepository,
    JobRepository,
)
from ad_batch.services.change_broker import (
    CHANGE_DELETE,
    CHANGE_INSERT,
    CHANGE_UPDATE,
    ENTITY_ITEM,
    ENTITY_JOB,
    ChangeBroker,
    ChangeEvent,
)

logger = logging.getLogger(__name__)

Where = dict[str, Any]


class StateStore:
    """SQLAlchemy-backed job/item persistence with change notifications."""

    def __init__(
        self,
        session_factory: Callable[[], Session] | None = None,
        broker: ChangeBroker | None = None,
    ):
        if session_factory is None:
            from ad_batch.db.database import SessionLocal

            session_factory = SessionLocal
        self._session_factory = session_factory
        self.broker = broker or ChangeBroker()

    @contextmanager
    def session(self) -> Iterator[Session]:
        """Short-lived session; database errors surface as PersistenceError."""
        db = self._session_factory()
        try:
            yield db
        except SQLAlchemyError as exc:
            db.rollback()
            raise PersistenceError(f"{type(exc).__name__}: {exc}") from exc
        finally:
            db.close()

    # --- Reads ---

    def get_job(self, job_id: str, with_items: bool = False) -> AdvertisingJob | None:
        with self.session() as db:
            repo = JobRepository(db)
            return repo.get_with_items(job_id) if with_items else repo.get(job_id)

    def get_owned_job(self, job_id: str, owner_id: str) -> AdvertisingJob | None:
        with self.session() as db:
            return JobRepository(db).get_with_filter(job_id, owner_id=owner_id)

    def list_jobs(
        self,
        owner_id: str,
        limit: int | None = None,
        statuses: Iterable[str] | None = None,
    ) -> list[AdvertisingJob]:
        with self.session() as db:
            return JobRepository(db).list_for_owner(owner_id, limit=limit, statuses=statuses)

    def list_finished_jobs(self, statuses: Iterable[str], cutoff: datetime) -> list[AdvertisingJob]:
        with self.session() as db:
            return JobRepository(db).list_finished_before(statuses, cutoff)

    def get_item(self, item_id: str) -> AdvertisingJobItem | None:
        with self.session() as db:
            return JobItemRepository(db).get(item_id)

    def list_items(
        self,
        job_id: str,
        statuses: Iterable[str] | None = None,
        limit: int | None = None,
    ) -> list[AdvertisingJobItem]:
        with self.session() as db:
            return JobItemRepository(db).list_for_job(job_id, statuses=statuses, limit=limit)

    def count_items_by_status(self, job_id: str) -> dict[str, int]:
        with self.session() as db:
            return JobItemRepository(db).count_by_status(job_id)

    def latest_item_error(self, job_id: str) -> str | None:
        with self.session() as db:
            return JobItemRepository(db).latest_error(job_id)

    def list_expired_claims(self, now: datetime, job_id: str | None = None) -> list[AdvertisingJobItem]:
        with self.session() as db:
            return JobItemRepository(db).list_expired_claims(now, job_id=job_id)

    def list_images(self, owner_id: str, limit: int | None = None) -> list[GeneratedImage]:
        with self.session() as db:
            return GeneratedImageRepository(db).list_for_owner(owner_id, limit=limit)

    def list_collections(self, owner_id: str) -> list[ImageCollection]:
        with self.session() as db:
            return ImageCollectionRepository(db).list_for_owner(owner_id)

    # --- Writes ---

    def insert_job(
        self,
        job: AdvertisingJob,
        items: list[AdvertisingJobItem],
        extra_rows: Iterable[Any] = (),
    ) -> AdvertisingJob:
        """Persist a new job with its items in one transaction."""
        with self.session() as db:
            extra = list(extra_rows)
            if extra:
                db.add_all(extra)
                db.flush()
            jobs = JobRepository(db)
            jobs.add(job)
            jobs.flush()
            JobItemRepository(db).add_all(items)
            db.commit()

            stored = jobs.get_with_items(job.id)
            job_after = to_dict(stored)
            item_afters = [to_dict(item) for item in stored.items]

        self._publish(ENTITY_JOB, CHANGE_INSERT, stored.id, stored.owner_id, job_after)
        for after in item_afters:
            self._publish(ENTITY_ITEM, CHANGE_INSERT, after["id"], stored.owner_id, after)
        return stored

    def update_job(self, job_id: str, values: dict[str, Any], where: Where | None = None) -> AdvertisingJob | None:
        """Conditionally update one job.

        Returns the updated row, or None when the job does not exist or the
        ``where`` guard no longer holds.
        """
        with self.session() as db:
            jobs = JobRepository(db)
            current = jobs.get(job_id)
            if current is None:
                return None
            before = to_dict(current)

            if not self._conditional_update(db, AdvertisingJob, job_id, values, where):
                db.rollback()
                return None
            db.commit()

            stored = jobs.get(job_id)
            after = to_dict(stored)

        self._publish(ENTITY_JOB, CHANGE_UPDATE, job_id, stored.owner_id, after, before)
        return stored

    def update_item(
        self,
        item_id: str,
        values: dict[str, Any],
        where: Where | None = None,
        extra_rows: Iterable[Any] = (),
    ) -> AdvertisingJobItem | None:
        """Conditionally update one item, optionally inserting rows atomically.

        Returns None when the ``where`` guard no longer holds (nothing is
        written, extra rows included). Raises ConsistencyError when the item
        or its job has been deleted.
        """
        with self.session() as db:
            items = JobItemRepository(db)
            current = items.get(item_id)
            if current is None:
                raise ConsistencyError(f"Item {item_id} no longer exists")
            owner_id = JobRepository(db).owner_of(current.job_id)
            if owner_id is None:
                raise ConsistencyError(f"Item {item_id} references missing job {current.job_id}")
            before = to_dict(current)

            extra = list(extra_rows)
            if extra:
                db.add_all(extra)
                db.flush()

            if not self._conditional_update(db, AdvertisingJobItem, item_id, values, where):
                db.rollback()
                return None
            db.commit()

            stored = items.get(item_id)
            after = to_dict(stored)

        self._publish(ENTITY_ITEM, CHANGE_UPDATE, item_id, owner_id, after, before)
        return stored

    def delete_job(self, job_id: str) -> bool:
        """Hard-delete a job and its items. Returns False if it was already gone."""
        with self.session() as db:
            jobs = JobRepository(db)
            job = jobs.get(job_id)
            if job is None:
                return False
            before = to_dict(job)
            removed_items = JobItemRepository(db).delete_for_job(job_id)
            jobs.delete(job)
            db.commit()

        logger.info(f"Deleted job {job_id} with {removed_items} items")
        # Item deletions are implied by the job delete event
        self._publish(
            ENTITY_JOB,
            CHANGE_DELETE,
            job_id,
            before["owner_id"],
            None,
            before,
            version=before["version"] + 1,
        )
        return True

    def add_rows(self, *rows: Any) -> None:
        """Insert rows that carry no change notifications (credentials, gallery)."""
        with self.session() as db:
            db.add_all(rows)
            db.commit()

    # --- Internals ---

    @staticmethod
    def _conditional_update(
        db: Session,
        model: type,
        entity_id: str,
        values: dict[str, Any],
        where: Where | None,
    ) -> bool:
        stmt = update(model).where(model.id == entity_id)
        for key, expected in (where or {}).items():
            column = getattr(model, key)
            if isinstance(expected, (list, tuple, set, frozenset)):
                stmt = stmt.where(column.in_(list(expected)))
            elif expected is None:
                stmt = stmt.where(column.is_(None))
            else:
                stmt = stmt.where(column == expected)

        stmt = stmt.values(
            **values,
            version=model.version + 1,
            updated_at=datetime.utcnow(),
        ).execution_options(synchronize_session=False)
        result = db.execute(stmt)
        return result.rowcount > 0

    def _publish(
        self,
        entity_type: str,
        change_kind: str,
        entity_id: str,
        owner_id: str,
        after: dict[str, Any] | None,
        before: dict[str, Any] | None = None,
        version: int | None = None,
    ) -> None:
        if version is None:
            version = after["version"] if after else 0
        event = ChangeEvent(
            entity_type=entity_type,
            change_kind=change_kind,
            entity_id=entity_id,
            owner_id=owner_id,
            version=version,
            after=after,
            before=before,
        )
        delivered = self.broker.publish(event)
        logger.debug(
            f"Published {entity_type}.{change_kind} {entity_id} v{version} to {delivered} subscribers"
        )
