"""Global error handlers for FastAPI."""

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from ad_batch.core.exceptions import AppError, PersistenceError

logger = logging.getLogger(__name__)


def register_error_handlers(app: FastAPI) -> None:
    """Register global exception handlers on the FastAPI app.

    Catches all AppError subclasses and returns a consistent JSON response
    with `detail`, `error_code`, and any extra context fields. Store failures
    surface as 503 so clients retry the request.
    """

    @app.exception_handler(AppError)
    async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
        content: dict = {
            "detail": exc.detail,
            "error_code": exc.error_code,
        }
        if exc.context:
            content.update(exc.context)
        return JSONResponse(
            status_code=exc.status_code,
            content=content,
        )

    @app.exception_handler(PersistenceError)
    async def persistence_error_handler(request: Request, exc: PersistenceError) -> JSONResponse:
        logger.error(f"Store failure on {request.method} {request.url.path}: {exc}")
        return JSONResponse(
            status_code=503,
            content={"detail": "State store unavailable, retry later", "error_code": "STORE_UNAVAILABLE"},
        )
