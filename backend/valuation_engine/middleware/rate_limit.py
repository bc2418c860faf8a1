# backend/valuation_engine/middleware/rate_limit.py
"""
Rate limiting for API protection.

This module provides rate limiting using slowapi to:
- Protect external provider quotas (force refresh fans out to every asset)
- Bound how fast clients can enqueue recompute jobs

Rate limits are configured in services/constants.py.

Key by: Client IP address (X-Forwarded-For only when TRUST_PROXY_HEADERS)
Storage: In-memory (single-instance deployments)

Usage:
    from valuation_engine.middleware.rate_limit import limiter, RATE_LIMIT_REFRESH

    @router.post("/{portfolio_id}/refresh")
    @limiter.limit(RATE_LIMIT_REFRESH)
    def refresh(request: Request, portfolio_id: int):
        ...
"""

import logging

from slowapi import Limiter
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse

from valuation_engine.config import settings
from valuation_engine.schemas.errors import ErrorDetail
from valuation_engine.services.constants import (
    RATE_LIMIT_DEFAULT,
    RATE_LIMIT_HEALTH,
    RATE_LIMIT_REFRESH,
    RATE_LIMIT_WRITE,
)

logger = logging.getLogger(__name__)


def _get_client_ip(request: Request) -> str:
    """
    Extract client IP address from request.

    Forwarded headers are only honored behind a trusted proxy; otherwise a
    client could pick its own rate-limit bucket.
    """
    if settings.trust_proxy_headers:
        forwarded_for = request.headers.get("X-Forwarded-For")
        if forwarded_for:
            # First entry is the original client
            return forwarded_for.split(",")[0].strip()

        real_ip = request.headers.get("X-Real-IP")
        if real_ip:
            return real_ip

    return get_remote_address(request)


# =============================================================================
# LIMITER INSTANCE
# =============================================================================

limiter = Limiter(
    key_func=_get_client_ip,
    default_limits=[RATE_LIMIT_DEFAULT],
    enabled=settings.rate_limit_enabled,
)


# =============================================================================
# RATE LIMIT EXCEEDED HANDLER
# =============================================================================

async def rate_limit_exceeded_handler(
    request: Request, exc: RateLimitExceeded
) -> JSONResponse:
    """
    Render a 429 in the standard error format.

    Retry-After is the length of the exceeded window, so a client backing
    off for that long is guaranteed a fresh bucket.
    """
    retry_after = exc.limit.limit.get_expiry()
    limit_info = str(exc.detail) if exc.detail else "Rate limit exceeded"

    logger.warning(f"Rate limit exceeded for {_get_client_ip(request)} on {request.url.path}: {limit_info}")

    return JSONResponse(
        status_code=429,
        content=ErrorDetail(
            error="RateLimitError",
            message=f"Too many requests. {limit_info}",
            details={"retry_after": retry_after, "path": request.url.path},
        ).model_dump(),
        headers={"Retry-After": str(retry_after)},
    )


__all__ = [
    "limiter",
    "rate_limit_exceeded_handler",
    "SlowAPIMiddleware",
    "RATE_LIMIT_DEFAULT",
    "RATE_LIMIT_HEALTH",
    "RATE_LIMIT_REFRESH",
    "RATE_LIMIT_WRITE",
]
