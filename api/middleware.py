# ============================================================================
# File: api/middleware.py
# ============================================================================

import logging
import time
import uuid
from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response

logger = logging.getLogger("api.access")


class RequestContextMiddleware(BaseHTTPMiddleware):
    """
    Injects:
    - request_id (reused from an incoming X-Request-ID header when present)
    - api_latency_ms

    and writes one access log line per request.
    """

    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex[:12]
        start_time = time.perf_counter()

        request.state.request_id = request_id

        try:
            response: Response = await call_next(request)
        except Exception:
            latency_ms = int((time.perf_counter() - start_time) * 1000)
            logger.exception(
                f"[{request_id}] {request.method} {request.url.path} failed after {latency_ms}ms"
            )
            raise

        latency_ms = int((time.perf_counter() - start_time) * 1000)

        response.headers["X-Request-ID"] = request_id
        response.headers["X-API-Latency-ms"] = str(latency_ms)

        # Health probes are noisy
        log = logger.debug if request.url.path == "/health" else logger.info
        log(f"[{request_id}] {request.method} {request.url.path} -> {response.status_code} ({latency_ms}ms)")

        return response
