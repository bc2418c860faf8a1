# backend/valuation_engine/middleware/correlation.py
"""
Correlation ID middleware for request tracing.

Each request gets an ID taken from X-Correlation-ID, then X-Request-ID,
or generated. The ID is set in the logging context for the duration of
the request and echoed back in the X-Correlation-ID response header.

Recompute jobs enqueued by a write copy the context onto the worker
thread, so the lines logged by the job that rebuilds a portfolio can be
joined to the POST that caused it.
"""

import logging
import time
import uuid
from typing import Callable

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from valuation_engine.utils.context import set_correlation_id, clear_correlation_id

logger = logging.getLogger(__name__)

CORRELATION_ID_HEADER = "X-Correlation-ID"
REQUEST_ID_HEADER = "X-Request-ID"

# Polled constantly by orchestrators, not worth a log line each
QUIET_PATHS = frozenset({"/health", "/health/live"})


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """Tags every request (and the jobs it enqueues) with a correlation ID."""

    async def dispatch(
        self,
        request: Request,
        call_next: Callable[[Request], Response],
    ) -> Response:
        correlation_id = (
            request.headers.get(CORRELATION_ID_HEADER)
            or request.headers.get(REQUEST_ID_HEADER)
            or str(uuid.uuid4())
        )
        set_correlation_id(correlation_id)
        started = time.perf_counter()

        try:
            response = await call_next(request)
            response.headers[CORRELATION_ID_HEADER] = correlation_id
            if request.url.path not in QUIET_PATHS:
                elapsed_ms = (time.perf_counter() - started) * 1000
                logger.info(
                    f"{request.method} {request.url.path} -> {response.status_code} ({elapsed_ms:.0f}ms)",
                    extra={"status_code": response.status_code, "elapsed_ms": round(elapsed_ms, 1)},
                )
            return response
        finally:
            clear_correlation_id()
