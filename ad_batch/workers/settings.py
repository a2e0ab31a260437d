"""ARQ worker settings.

Start a standalone worker with:
    arq ad_batch.workers.settings.WorkerSettings

A standalone worker has its own ChangeBroker, so SSE clients of the API
process only see its writes through the periodic cache refresh.
"""

import logging

from ad_batch.config import get_settings
from ad_batch.core.redis import redis_settings_from_url
from ad_batch.workers.tasks import process_advertising_job

logger = logging.getLogger(__name__)


async def on_startup(ctx: dict) -> None:
    """ARQ worker startup: initialize shared resources."""
    from ad_batch.db.database import init_db
    from ad_batch.services.factory import build_pipeline

    settings = get_settings()
    init_db()

    ctx["settings"] = settings
    ctx["pipeline"] = build_pipeline(settings)
    logger.info("ARQ worker started, pipeline initialized")


async def on_shutdown(ctx: dict) -> None:
    """ARQ worker shutdown: clean up resources."""
    pipeline = ctx.get("pipeline")
    if pipeline is not None:
        await pipeline.close()
    logger.info("ARQ worker shutting down")


class WorkerSettings:
    """ARQ WorkerSettings for `arq ad_batch.workers.settings.WorkerSettings`."""

    settings = get_settings()

    functions = [process_advertising_job]
    redis_settings = redis_settings_from_url(settings.redis_url, fail_fast=False)
    max_jobs = settings.arq_max_jobs
    job_timeout = settings.arq_job_timeout
    health_check_interval = settings.arq_health_check_interval
    on_startup = on_startup
    on_shutdown = on_shutdown
