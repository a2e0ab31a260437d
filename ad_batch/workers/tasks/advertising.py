"""Advertising job ARQ task.

Runs a job's items through the BatchScheduler. Falls back to BackgroundTasks
(same function, empty ctx) if Redis is unavailable.
"""

import logging

from ad_batch.config import get_settings
from ad_batch.core.exceptions import EntityNotFound

logger = logging.getLogger(__name__)


async def process_advertising_job(ctx: dict, job_id: str) -> dict:
    """ARQ task: process every pending item of an advertising job.

    Args:
        ctx: ARQ context dict (contains settings and pipeline from startup)
        job_id: AdvertisingJob ID to process

    Returns:
        Dict with run result (success, status, completed, failed, waves)
    """
    from ad_batch.services.factory import build_pipeline

    pipeline = ctx.get("pipeline")
    if pipeline is None:
        pipeline = build_pipeline(ctx.get("settings") or get_settings())

    logger.info(f"[ARQ] Starting advertising job {job_id}")

    try:
        outcome = await pipeline.scheduler().run_job(job_id)
    except EntityNotFound:
        logger.warning(f"[ARQ] Job {job_id} not found")
        return {"success": False, "error": "Job not found"}
    except Exception as e:
        logger.exception(f"[ARQ] Unexpected error processing job {job_id}: {e}")
        return {"success": False, "error": str(e)}

    logger.info(
        f"[ARQ] Job {job_id} run ended {outcome.status}: "
        f"{outcome.completed} completed, {outcome.failed} failed in {outcome.waves} waves"
    )
    return {"success": True, **outcome.as_dict()}
