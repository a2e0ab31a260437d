"""Health check endpoints."""

import logging
import time

from fastapi import APIRouter, Depends, Request
from sqlalchemy import text

from ad_batch.core.dependencies import get_pipeline
from ad_batch.core.exceptions import PersistenceError
from ad_batch.core.redis import is_redis_available
from ad_batch.services.factory import Pipeline

logger = logging.getLogger(__name__)
router = APIRouter()


def _check_database(pipeline: Pipeline) -> bool:
    try:
        with pipeline.store.session() as db:
            db.execute(text("SELECT 1"))
        return True
    except PersistenceError as e:
        logger.warning(f"Database health check failed: {e}")
        return False


@router.get("/health")
async def health_check(request: Request, pipeline: Pipeline = Depends(get_pipeline)):
    """Service health: database, Redis/ARQ and change subscribers."""
    settings = pipeline.settings
    database_ok = _check_database(pipeline)
    redis_ok = await is_redis_available() if settings.use_arq_worker else False
    arq_worker = getattr(request.app.state, "arq_worker", None)
    start_time = getattr(request.app.state, "start_time", None)

    return {
        "status": "healthy" if database_ok else "unhealthy",
        "version": settings.app_version,
        "database": "ok" if database_ok else "unavailable",
        "redis": "ok" if redis_ok else "unavailable",
        "task_queue": "arq" if arq_worker is not None and arq_worker.running else "background_tasks",
        "change_subscribers": pipeline.broker.subscriber_count(),
        "uptime_seconds": round(time.time() - start_time, 1) if start_time else None,
    }


@router.get("/version")
async def version(pipeline: Pipeline = Depends(get_pipeline)):
    return {"name": pipeline.settings.app_name, "version": pipeline.settings.app_version}
