"""Gallery models fed by completed job items."""

from datetime import datetime

from sqlalchemy import JSON, Column, DateTime, ForeignKey, Index, Integer, String, Text

from ad_batch.db.database import Base
from ad_batch.db.models.base import generate_uuid


class ImageCollection(Base):
    """Named group of generated images; every job gets one."""

    __tablename__ = "image_collections"
    __table_args__ = (Index("idx_image_collections_owner", "owner_id", "created_at"),)

    id = Column(String, primary_key=True, default=generate_uuid)
    owner_id = Column(String, nullable=False)
    name = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)


class GeneratedImage(Base):
    """A generated image surfaced in the owner's gallery."""

    __tablename__ = "generated_images"
    __table_args__ = (
        Index("idx_generated_images_owner", "owner_id", "created_at"),
        Index("idx_generated_images_job", "job_id"),
        Index("idx_generated_images_collection", "collection_id"),
    )

    id = Column(String, primary_key=True, default=generate_uuid)
    owner_id = Column(String, nullable=False)
    job_id = Column(String, ForeignKey("advertising_jobs.id", ondelete="SET NULL"), nullable=True)
    collection_id = Column(
        String,
        ForeignKey("image_collections.id", ondelete="SET NULL"),
        nullable=True,
    )
    style_id = Column(String, nullable=True)
    platform = Column(String, nullable=True)
    prompt = Column(Text, nullable=False)
    negative_prompt = Column(Text, nullable=True)
    image_url = Column(Text, nullable=False)
    original_image_url = Column(Text, nullable=True)
    generation_type = Column(String, nullable=False, default="img2img")
    provider = Column(String, nullable=False)
    model = Column(String, nullable=False)
    width = Column(Integer, nullable=False)
    height = Column(Integer, nullable=False)
    parameters = Column(JSON, nullable=True)
    sort_order = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
