"""Request logging middleware with request_id propagation.

Logs every HTTP request with method, path, status code, latency, and owner.
Adds X-Request-ID header to responses for tracing.
"""

import logging
import time
import uuid

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from ad_batch.core.logging import request_id_var

logger = logging.getLogger(__name__)

# Health checks and long-lived streams are not worth a log line each
SKIP_PATHS = frozenset({"/api/health", "/api/version", "/favicon.ico"})
STREAM_SUFFIX = "/stream"


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Log HTTP requests with structured metadata."""

    async def dispatch(self, request: Request, call_next) -> Response:
        rid = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request_id_var.set(rid)

        path = request.url.path
        if path in SKIP_PATHS or path.endswith(STREAM_SUFFIX):
            response = await call_next(request)
            response.headers["X-Request-ID"] = rid
            return response

        start = time.perf_counter()
        response = await call_next(request)
        latency_ms = round((time.perf_counter() - start) * 1000, 1)

        logger.info(
            "http_request",
            extra={
                "request_id": rid,
                "method": request.method,
                "path": path,
                "status_code": response.status_code,
                "latency_ms": latency_ms,
                "owner_id": request.headers.get("X-Owner-Id"),
            },
        )

        response.headers["X-Request-ID"] = rid
        return response
