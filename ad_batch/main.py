"""FastAPI application entry point."""

import logging
import time
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from ad_batch.api import health, jobs
from ad_batch.config import get_settings
from ad_batch.core.error_handlers import register_error_handlers
from ad_batch.core.logging import configure_logging
from ad_batch.core.redis import close_redis_pool, get_redis_pool
from ad_batch.db.database import init_db
from ad_batch.middleware.request_logging import RequestLoggingMiddleware
from ad_batch.services.factory import build_pipeline
from ad_batch.workers.arq_worker import EmbeddedArqWorker
from ad_batch.workers.job_cleanup import JobCleanupService

settings = get_settings()
configure_logging(settings.log_level, settings.log_format)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan: initialize and cleanup services.

    A pipeline already placed on ``app.state.pipeline`` (tests, embedding
    applications) is used as-is; otherwise one is built on the default
    database.
    """
    app.state.start_time = time.time()

    pipeline = getattr(app.state, "pipeline", None)
    owns_pipeline = pipeline is None
    if owns_pipeline:
        init_db()
        pipeline = build_pipeline(settings)
        app.state.pipeline = pipeline

    app_settings = pipeline.settings
    app.state.settings = app_settings
    logger.info(f"Starting {app_settings.app_name} v{app_settings.app_version}")
    logger.info(f"  Database: {app_settings.database_url}")
    logger.info(f"  Wave size: {app_settings.scheduler_wave_size}, max retries: {app_settings.item_max_retries}")

    arq_worker: EmbeddedArqWorker | None = None
    if app_settings.use_arq_worker:
        redis_pool = await get_redis_pool()
        if redis_pool:
            arq_worker = EmbeddedArqWorker(redis_pool, app_settings, pipeline)
            await arq_worker.start()
        else:
            logger.warning("Redis unavailable, job runs use BackgroundTasks (degraded mode)")
    app.state.arq_worker = arq_worker

    # First pass also releases item claims left behind by a crashed process
    job_cleanup = JobCleanupService(pipeline.orchestrator, app_settings)
    await job_cleanup.start()

    yield

    # Shutdown
    await job_cleanup.stop()

    if arq_worker:
        await arq_worker.stop()

    await close_redis_pool()
    await pipeline.close()
    if owns_pipeline:
        app.state.pipeline = None

    logger.info("Shutting down...")


app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description="Advertising batch image generation pipeline",
    docs_url="/api/docs" if settings.debug else None,
    redoc_url="/api/redoc" if settings.debug else None,
    lifespan=lifespan,
)

# Register global error handlers (AppError → JSON responses)
register_error_handlers(app)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Request logging middleware (adds X-Request-ID, logs method/path/latency)
app.add_middleware(RequestLoggingMiddleware)

# API Routes
app.include_router(health.router, prefix="/api", tags=["Health"])
app.include_router(jobs.router, prefix="/api/jobs", tags=["Jobs"])


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "message": f"Welcome to {settings.app_name}",
        "version": settings.app_version,
        "docs": "/api/docs" if settings.debug else "disabled",
        "health": "/api/health",
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("ad_batch.main:app", host=settings.host, port=settings.port, reload=settings.debug)
