"""
FastAPI middleware for structured logging and request metrics.

For every request:
- request_id from X-Request-ID (or generated)
- trace_id from X-Trace-ID (or generated)
- user_id from X-User-ID (resolved upstream by the auth tier)
- one completion log line with latency, plus Prometheus request metrics
"""

import time
import uuid
from collections.abc import Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from quota_ledger.observability.logging import RequestContext, get_logger
from quota_ledger.observability.metrics import track_request

logger = get_logger(__name__)

# Probe and scrape endpoints are not logged
EXCLUDED_PATHS = {
    "/health",
    "/metrics",
    "/docs",
    "/redoc",
    "/openapi.json",
}


class StructuredLoggingMiddleware(BaseHTTPMiddleware):
    """
    Request logging with propagated context.

    Returns X-Request-ID and X-Trace-ID on every response for client-side
    correlation.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get("x-request-id") or f"req_{uuid.uuid4().hex[:16]}"
        trace_id = request.headers.get("x-trace-id") or f"trace_{uuid.uuid4().hex[:16]}"
        user_id = request.headers.get("x-user-id")
        path = request.url.path
        should_log = path not in EXCLUDED_PATHS

        with RequestContext(request_id=request_id, trace_id=trace_id, user_id=user_id):
            start_time = time.perf_counter()

            try:
                response = await call_next(request)
            except Exception as exc:
                latency_ms = (time.perf_counter() - start_time) * 1000
                logger.error(
                    "HTTP request failed",
                    method=request.method,
                    path=path,
                    latency_ms=round(latency_ms, 2),
                    exception_type=type(exc).__name__,
                    exc_info=True,
                )
                raise

            duration = time.perf_counter() - start_time
            route = request.scope.get("route")
            endpoint = getattr(route, "path", path)
            track_request(request.method, endpoint, response.status_code, duration)

            if should_log:
                logger.info(
                    "HTTP request completed",
                    method=request.method,
                    path=path,
                    status_code=response.status_code,
                    latency_ms=round(duration * 1000, 2),
                )

            response.headers["X-Request-ID"] = request_id
            response.headers["X-Trace-ID"] = trace_id
            return response
