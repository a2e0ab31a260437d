"""Repository layer: standardized data access for all models."""

from ad_batch.db.repositories.base import BaseRepository
from ad_batch.db.repositories.credential import CredentialRepository
from ad_batch.db.repositories.job import (
    GeneratedImageRepository,
    ImageCollectionRepository,
    JobItemRepository,
    JobRepository,
)

__all__ = [
    "BaseRepository",
    "CredentialRepository",
    "GeneratedImageRepository",
    "ImageCollectionRepository",
    "JobItemRepository",
    "JobRepository",
]
