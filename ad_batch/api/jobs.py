"""Advertising jobs API: submission, reads, cancellation, deletion, SSE changes.

Job runs are enqueued on ARQ when Redis is available, otherwise they run as
in-process BackgroundTasks (degraded mode).
"""

import asyncio
import json
import logging
import uuid
from collections.abc import AsyncIterator, Awaitable, Callable

from fastapi import APIRouter, BackgroundTasks, Depends, Request, Response, status
from fastapi.responses import StreamingResponse

from ad_batch.core.dependencies import get_orchestrator, get_owner_id, get_pipeline
from ad_batch.core.exceptions import InvalidStateTransition
from ad_batch.core.redis import get_redis_pool
from ad_batch.db.models import JOB_ACTIVE_STATUSES
from ad_batch.schemas.jobs import (
    JobCancelResponse,
    JobCreateRequest,
    JobCreateResponse,
    JobListResponse,
    JobRead,
    JobRunResponse,
)
from ad_batch.services.change_broker import Subscription
from ad_batch.services.factory import Pipeline
from ad_batch.services.job_orchestrator import JobOrchestrator
from ad_batch.services.sync_cache import ClientSyncCache

logger = logging.getLogger(__name__)

router = APIRouter()


async def enqueue_job_run(job_id: str, background_tasks: BackgroundTasks, pipeline: Pipeline) -> bool:
    """Schedule a run of the job via ARQ or BackgroundTasks.

    Returns True if enqueued via ARQ, False if using the BackgroundTasks fallback.
    """
    redis = await get_redis_pool() if pipeline.settings.use_arq_worker else None
    if redis:
        try:
            arq_job = await redis.enqueue_job("process_advertising_job", job_id)
            logger.info(f"Enqueued job {job_id} via ARQ (arq job: {arq_job.job_id})")
            return True
        except Exception as e:
            logger.warning(f"ARQ enqueue failed, falling back to BackgroundTasks: {e}")

    # Degraded mode: fall back to in-process BackgroundTasks
    background_tasks.add_task(run_job_task, pipeline, job_id)
    logger.info(f"Queued job {job_id} via BackgroundTasks (degraded mode)")
    return False


async def run_job_task(pipeline: Pipeline, job_id: str) -> None:
    """Background task to run a job's items."""
    try:
        await pipeline.scheduler().run_job(job_id)
    except Exception as e:
        logger.exception(f"Background run of job {job_id} failed: {e}")


def format_sse(event: str, data: dict, event_id: str | None = None) -> str:
    return f"id: {event_id or uuid.uuid4()}\nevent: {event}\ndata: {json.dumps(data)}\n\n"


async def change_events(
    subscription: Subscription,
    heartbeat_seconds: float,
    is_disconnected: Callable[[], Awaitable[bool]],
    cache: ClientSyncCache | None = None,
) -> AsyncIterator[str]:
    """SSE frames for one owner's change subscription.

    Emits ``connected`` first, then one ``change`` per event, a ``resync``
    when events were dropped, and a comment line as heartbeat. While the
    stream is open ``cache`` keeps the owner's rows live.
    """
    owner_id = subscription.owner_id
    if cache is not None:
        cache.retain(owner_id)
    try:
        yield format_sse("connected", {"owner_id": owner_id, "message": "Connected"})

        while not await is_disconnected():
            try:
                change = await asyncio.wait_for(subscription.get(), timeout=heartbeat_seconds)
            except TimeoutError:
                yield ": heartbeat\n\n"
                continue

            if subscription.lagged:
                while subscription.get_nowait() is not None:
                    pass
                subscription.lagged = False
                yield format_sse("resync", {"reason": "Change events were dropped; reload jobs"})
                continue

            yield format_sse(
                "change",
                change.to_payload(),
                event_id=f"{change.entity_id}:{change.version}",
            )
    finally:
        subscription.close()
        if cache is not None:
            await cache.release(owner_id)


@router.post("", response_model=JobCreateResponse, status_code=status.HTTP_201_CREATED)
async def create_job(
    payload: JobCreateRequest,
    background_tasks: BackgroundTasks,
    owner_id: str = Depends(get_owner_id),
    pipeline: Pipeline = Depends(get_pipeline),
):
    """Submit an advertising job and schedule its run.

    Returns 400 for invalid input and 402 when no provider key is usable.
    """
    job = pipeline.orchestrator.create_job(
        owner_id,
        payload.model_dump(exclude={"variants"}),
        [variant.model_dump() for variant in payload.variants],
    )
    queued = await enqueue_job_run(job.id, background_tasks, pipeline)
    return JobCreateResponse(
        job_id=job.id,
        status=job.status,
        total_items=job.total_items,
        queued=queued,
        message="Job queued." if queued else "Job accepted, processing in background.",
    )


@router.get("", response_model=JobListResponse)
async def list_jobs(
    limit: int | None = None,
    owner_id: str = Depends(get_owner_id),
    orchestrator: JobOrchestrator = Depends(get_orchestrator),
):
    """Owner's most recent jobs with their items."""
    jobs = orchestrator.list_jobs(owner_id, limit=limit)
    return JobListResponse(jobs=[JobRead.model_validate(job) for job in jobs], total=len(jobs))


@router.get("/active", response_model=JobListResponse)
async def list_active_jobs(
    owner_id: str = Depends(get_owner_id),
    pipeline: Pipeline = Depends(get_pipeline),
):
    """Owner's pending/generating jobs, served from the job cache.

    The cache follows change events only while the owner has a stream open;
    otherwise entries expire after ``cache_ttl_seconds``.
    """
    cache = pipeline.job_cache
    await cache.get(owner_id)
    jobs = cache.active_jobs(owner_id)
    return JobListResponse(jobs=jobs, total=len(jobs))


@router.get("/stream")
async def stream_job_changes(
    request: Request,
    owner_id: str = Depends(get_owner_id),
    pipeline: Pipeline = Depends(get_pipeline),
):
    """Stream job/item change events for the owner over SSE.

    Delivery is best effort: nothing is replayed after a disconnect, so
    clients reload their job list on (re)connect and on ``resync``.
    """
    subscription = pipeline.broker.subscribe(owner_id)
    return StreamingResponse(
        change_events(
            subscription,
            pipeline.settings.sse_heartbeat_seconds,
            request.is_disconnected,
            cache=pipeline.job_cache,
        ),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )


@router.get("/{job_id}", response_model=JobRead)
async def get_job(
    job_id: str,
    owner_id: str = Depends(get_owner_id),
    orchestrator: JobOrchestrator = Depends(get_orchestrator),
):
    return JobRead.model_validate(orchestrator.get_job(job_id, owner_id))


@router.post("/{job_id}/cancel", response_model=JobCancelResponse)
async def cancel_job(
    job_id: str,
    owner_id: str = Depends(get_owner_id),
    orchestrator: JobOrchestrator = Depends(get_orchestrator),
):
    """Cancel a pending or generating job.

    Completed and failed items are kept. Items mid-generation go back to
    pending at their next poll; no new items are started.
    """
    orchestrator.cancel_job(job_id, owner_id)
    return JobCancelResponse(job_id=job_id, cancelled=True, message="Job cancelled.")


@router.post("/{job_id}/run", response_model=JobRunResponse, status_code=status.HTTP_202_ACCEPTED)
async def rerun_job(
    job_id: str,
    background_tasks: BackgroundTasks,
    owner_id: str = Depends(get_owner_id),
    pipeline: Pipeline = Depends(get_pipeline),
):
    """Schedule another run for a job that still has work (e.g. after a crash)."""
    job = pipeline.orchestrator.get_job(job_id, owner_id)
    if job.status not in JOB_ACTIVE_STATUSES:
        raise InvalidStateTransition(
            f"Cannot run job in '{job.status}' status",
            context={"job_id": job_id, "status": job.status},
        )
    queued = await enqueue_job_run(job_id, background_tasks, pipeline)
    return JobRunResponse(job_id=job_id, queued=queued, message="Job run scheduled.")


@router.delete("/{job_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_job(
    job_id: str,
    owner_id: str = Depends(get_owner_id),
    orchestrator: JobOrchestrator = Depends(get_orchestrator),
):
    """Delete a job and its items."""
    orchestrator.delete_job(job_id, owner_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
