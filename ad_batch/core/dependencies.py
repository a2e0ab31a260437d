"""FastAPI dependencies for owner identification and pipeline access.

Authentication is handled upstream; this service trusts the ``X-Owner-Id``
header set by the gateway.
"""

from fastapi import Depends, Header, HTTPException, Request, status

from ad_batch.services.factory import Pipeline
from ad_batch.services.job_orchestrator import JobOrchestrator

OWNER_HEADER = "X-Owner-Id"


async def get_owner_id(x_owner_id: str | None = Header(default=None, alias=OWNER_HEADER)) -> str:
    """Owner key of the calling user."""
    if not x_owner_id or not x_owner_id.strip():
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"{OWNER_HEADER} header required",
        )
    return x_owner_id.strip()


def get_pipeline(request: Request) -> Pipeline:
    """Pipeline built during app startup."""
    pipeline = getattr(request.app.state, "pipeline", None)
    if pipeline is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Pipeline not initialized",
        )
    return pipeline


def get_orchestrator(pipeline: Pipeline = Depends(get_pipeline)) -> JobOrchestrator:
    return pipeline.orchestrator
