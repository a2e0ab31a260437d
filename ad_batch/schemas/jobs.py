"""Advertising jobs API schemas."""

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

ImageQuality = Literal["1K", "2K", "4K"]

# =============================================================================
# Job Submission
# =============================================================================


class VariantSpec(BaseModel):
    """One requested output variant (a style on a platform)."""

    style_id: str = Field(..., min_length=1)
    style_name: str = ""
    platform: str = Field(..., min_length=1)
    aspect_ratio: str = "1:1"
    prompt: str = ""
    negative_prompt: str | None = None
    strength: float | None = None
    series_number: int | None = None
    description: str | None = None

    class Config:
        extra = "allow"


class JobInput(BaseModel):
    """Job-level generation parameters."""

    source_image_url: str | None = None
    quality: ImageQuality = "2K"
    group_name: str | None = None
    product_analysis: dict[str, Any] | None = None


class JobCreateRequest(JobInput):
    """Request body for POST /api/jobs."""

    variants: list[VariantSpec] = Field(default_factory=list)


class JobCreateResponse(BaseModel):
    """Response after submitting a job."""

    job_id: str
    status: str
    total_items: int
    queued: bool
    message: str


# =============================================================================
# Job Reads
# =============================================================================


class JobItemRead(BaseModel):
    """A job item as seen by clients."""

    id: str
    job_id: str
    style_id: str
    style_name: str
    platform: str
    aspect_ratio: str
    series_number: int | None = None
    sort_order: int = 0
    status: str
    task_id: str | None = None
    retry_count: int = 0
    image_url: str | None = None
    generated_image_id: str | None = None
    error_message: str | None = None
    version: int = 1
    created_at: datetime | None = None
    updated_at: datetime | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None

    class Config:
        from_attributes = True


class JobRead(BaseModel):
    """A job with its items."""

    id: str
    owner_id: str
    status: str
    total_items: int
    completed_count: int = 0
    failed_count: int = 0
    progress_percentage: int = 0
    input_image_url: str
    image_quality: str
    group_name: str
    collection_id: str | None = None
    error_message: str | None = None
    version: int = 1
    created_at: datetime | None = None
    updated_at: datetime | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    items: list[JobItemRead] = Field(default_factory=list)

    class Config:
        from_attributes = True


class JobListResponse(BaseModel):
    jobs: list[JobRead]
    total: int


class JobCancelResponse(BaseModel):
    """Response after cancelling a job."""

    job_id: str
    cancelled: bool
    message: str


class JobRunResponse(BaseModel):
    """Response after re-triggering a job run."""

    job_id: str
    queued: bool
    message: str


# =============================================================================
# Gallery
# =============================================================================


class GeneratedImageRead(BaseModel):
    id: str
    owner_id: str
    job_id: str | None = None
    collection_id: str | None = None
    style_id: str | None = None
    platform: str | None = None
    image_url: str
    width: int
    height: int
    created_at: datetime | None = None

    class Config:
        from_attributes = True


class ImageCollectionRead(BaseModel):
    id: str
    owner_id: str
    name: str
    description: str | None = None
    created_at: datetime | None = None

    class Config:
        from_attributes = True
