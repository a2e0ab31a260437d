"""SQLAlchemy ORM models.

Import from here: ``from ad_batch.db.models import AdvertisingJob, AdvertisingJobItem``
"""

from ad_batch.db.models.base import generate_uuid, to_dict
from ad_batch.db.models.credential import SOURCE_ADMIN, SOURCE_USER, ProviderCredential
from ad_batch.db.models.gallery import GeneratedImage, ImageCollection
from ad_batch.db.models.job import (
    ITEM_COMPLETED,
    ITEM_FAILED,
    ITEM_PENDING,
    ITEM_PROCESSING,
    JOB_ACTIVE_STATUSES,
    JOB_CANCELLED,
    JOB_COMPLETED,
    JOB_FAILED,
    JOB_FINISHED_STATUSES,
    JOB_GENERATING,
    JOB_PARTIAL,
    JOB_PENDING,
    JOB_TERMINAL_STATUSES,
    AdvertisingJob,
    AdvertisingJobItem,
)

__all__ = [
    "generate_uuid",
    "to_dict",
    "AdvertisingJob",
    "AdvertisingJobItem",
    "GeneratedImage",
    "ImageCollection",
    "ProviderCredential",
    "SOURCE_ADMIN",
    "SOURCE_USER",
    "JOB_PENDING",
    "JOB_GENERATING",
    "JOB_COMPLETED",
    "JOB_FAILED",
    "JOB_PARTIAL",
    "JOB_CANCELLED",
    "JOB_ACTIVE_STATUSES",
    "JOB_FINISHED_STATUSES",
    "JOB_TERMINAL_STATUSES",
    "ITEM_PENDING",
    "ITEM_PROCESSING",
    "ITEM_COMPLETED",
    "ITEM_FAILED",
]
