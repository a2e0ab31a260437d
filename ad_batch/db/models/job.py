"""Advertising job and job item models."""

from datetime import datetime

from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import relationship

from ad_batch.db.database import Base
from ad_batch.db.models.base import generate_uuid

JOB_PENDING = "pending"
JOB_GENERATING = "generating"
JOB_COMPLETED = "completed"
JOB_FAILED = "failed"
JOB_PARTIAL = "partial"
JOB_CANCELLED = "cancelled"

JOB_ACTIVE_STATUSES = frozenset({JOB_PENDING, JOB_GENERATING})
JOB_FINISHED_STATUSES = frozenset({JOB_COMPLETED, JOB_PARTIAL})
JOB_TERMINAL_STATUSES = frozenset({JOB_COMPLETED, JOB_FAILED, JOB_PARTIAL, JOB_CANCELLED})

ITEM_PENDING = "pending"
ITEM_PROCESSING = "processing"
ITEM_COMPLETED = "completed"
ITEM_FAILED = "failed"


class AdvertisingJob(Base):
    """One user-submitted batch of image generations.

    Counts and progress are aggregates of the job's items, rewritten by
    JobOrchestrator.recompute_job_status. ``version`` increases on every
    write so change subscribers can discard superseded updates.
    """

    __tablename__ = "advertising_jobs"
    __table_args__ = (
        Index("idx_advertising_jobs_owner_created", "owner_id", "created_at"),
        Index("idx_advertising_jobs_owner_status", "owner_id", "status"),
        Index("idx_advertising_jobs_cleanup", "status", "completed_at"),
    )

    id = Column(String, primary_key=True, default=generate_uuid)
    owner_id = Column(String, nullable=False)
    collection_id = Column(
        String,
        ForeignKey("image_collections.id", ondelete="SET NULL"),
        nullable=True,
    )
    status = Column(String, nullable=False, default=JOB_PENDING)

    total_items = Column(Integer, nullable=False)
    completed_count = Column(Integer, nullable=False, default=0)
    failed_count = Column(Integer, nullable=False, default=0)
    progress_percentage = Column(Integer, nullable=False, default=0)

    input_image_url = Column(Text, nullable=False)
    image_quality = Column(String, nullable=False, default="2K")  # 1K | 2K | 4K
    selected_styles = Column(JSON, nullable=False)  # Variant specs confirmed by the user
    product_analysis = Column(JSON, nullable=True)
    group_name = Column(String, nullable=False)

    error_message = Column(Text, nullable=True)
    version = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)
    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)

    items = relationship(
        "AdvertisingJobItem",
        back_populates="job",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="AdvertisingJobItem.sort_order",
    )


class AdvertisingJobItem(Base):
    """A single generation call within a job.

    Claimed by exactly one ItemProcessor at a time (``claimed_by`` plus a
    lease). ``sort_order`` is the creation order used for wave selection.
    """

    __tablename__ = "advertising_job_items"
    __table_args__ = (
        UniqueConstraint("job_id", "sort_order", name="uq_job_items_job_sort"),
        Index("idx_job_items_job_status", "job_id", "status"),
        Index(
            "idx_job_items_pending",
            "job_id",
            "sort_order",
            sqlite_where=text("status = 'pending'"),
        ),
        Index("idx_job_items_task_id", "task_id"),
        Index("idx_job_items_lease", "status", "lease_expires_at"),
    )

    id = Column(String, primary_key=True, default=generate_uuid)
    job_id = Column(
        String,
        ForeignKey("advertising_jobs.id", ondelete="CASCADE"),
        nullable=False,
    )

    # Variant descriptor
    style_id = Column(String, nullable=False)
    style_name = Column(String, nullable=False)
    platform = Column(String, nullable=False)  # shopee, lazada, instagram, tiktok, ...
    aspect_ratio = Column(String, nullable=False, default="1:1")
    series_number = Column(Integer, nullable=True)
    sort_order = Column(Integer, nullable=False, default=0)

    status = Column(String, nullable=False, default=ITEM_PENDING)
    task_id = Column(String, nullable=True)  # External provider task handle
    retry_count = Column(Integer, nullable=False, default=0)
    claimed_by = Column(String, nullable=True)
    lease_expires_at = Column(DateTime, nullable=True)

    # Result
    image_url = Column(Text, nullable=True)
    generated_image_id = Column(
        String,
        ForeignKey("generated_images.id", ondelete="SET NULL"),
        nullable=True,
    )
    error_message = Column(Text, nullable=True)

    version = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)
    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)

    job = relationship("AdvertisingJob", back_populates="items")
