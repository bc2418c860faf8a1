# backend/valuation_engine/main.py
"""
FastAPI application entry point.

This file:
- Configures application-wide logging
- Creates the FastAPI application
- Registers global exception handlers
- Registers all routers
- Defines global endpoints (health checks)

Run with:
    uvicorn valuation_engine.main:app --app-dir backend
"""

import logging
import math
from contextlib import asynccontextmanager

from fastapi import FastAPI, Depends, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from starlette.exceptions import HTTPException
from sqlalchemy import text
from sqlalchemy.orm import Session

from valuation_engine.config import settings
from valuation_engine.database import get_db
from valuation_engine.dependencies import get_provider_chain, shutdown_services
from valuation_engine.middleware import (
    CorrelationIdMiddleware,
    limiter,
    rate_limit_exceeded_handler,
    SlowAPIMiddleware,
    RATE_LIMIT_HEALTH,
)
from valuation_engine.routers import portfolios_router, transactions_router
from valuation_engine.schemas.errors import ErrorDetail, FieldError, ProviderAttemptDetail, ValidationErrorDetail
from valuation_engine.services.exceptions import (
    ServiceError,
    NotFoundError,
    ValidationError,
    AllProvidersExhausted,
    NoRateAvailable,
    OversoldPosition,
    ReconciliationError,
    StaleWrite,
    CircuitBreakerOpen,
)
from valuation_engine.services.providers import ProviderChain
from valuation_engine.utils import setup_logging

logger = logging.getLogger(__name__)

# =============================================================================
# LOGGING SETUP (must be before app creation)
# =============================================================================

setup_logging()


# =============================================================================
# APPLICATION SETUP
# =============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    # Let running recompute jobs finish before the process exits
    shutdown_services()


app = FastAPI(
    title=settings.app_name,
    description="Portfolio valuation reconciliation engine",
    version="0.1.0",
    lifespan=lifespan,
)


# =============================================================================
# MIDDLEWARE (order matters: last added = first executed)
# =============================================================================

# Attach limiter to app state (required by slowapi)
app.state.limiter = limiter

app.add_middleware(SlowAPIMiddleware)

# Correlation IDs follow enqueued jobs onto the worker threads
app.add_middleware(CorrelationIdMiddleware)


# =============================================================================
# GLOBAL EXCEPTION HANDLERS
# =============================================================================
# These handlers catch service-layer exceptions and convert them to
# consistent HTTP responses. Starlette picks the handler of the closest
# class in the MRO, so subclasses below override ServiceError.
# =============================================================================

app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)


@app.exception_handler(NotFoundError)
async def not_found_handler(request: Request, exc: NotFoundError) -> JSONResponse:
    """Handle portfolio/asset/transaction not found errors (404)."""
    logger.warning(f"{exc.resource_type or 'Resource'} not found: {exc.resource_id}")
    return JSONResponse(
        status_code=404,
        content=ErrorDetail(
            error=type(exc).__name__,
            message=str(exc),
            details={"resource_type": exc.resource_type, "resource_id": exc.resource_id},
        ).model_dump(),
    )


@app.exception_handler(ValidationError)
async def validation_error_handler(request: Request, exc: ValidationError) -> JSONResponse:
    """Handle validation errors (400)."""
    logger.warning(f"Validation error: {exc}")
    return JSONResponse(
        status_code=400,
        content=ErrorDetail(
            error="ValidationError",
            message=str(exc),
            details={"field": exc.field} if exc.field else None,
        ).model_dump(),
    )


@app.exception_handler(OversoldPosition)
async def oversold_position_handler(request: Request, exc: OversoldPosition) -> JSONResponse:
    """Handle writes that would sell more than held (409)."""
    logger.warning(f"Oversold position refused: {exc}")
    return JSONResponse(
        status_code=409,
        content=ErrorDetail(
            error="OversoldPosition",
            message=str(exc),
            details={
                "portfolio_id": exc.portfolio_id,
                "asset_id": exc.asset_id,
                "transaction_id": exc.transaction_id,
                "held": str(exc.held),
                "requested": str(exc.requested),
            },
        ).model_dump(),
    )


@app.exception_handler(ReconciliationError)
async def reconciliation_error_handler(request: Request, exc: ReconciliationError) -> JSONResponse:
    """Handle other replay failures (409)."""
    logger.error(f"Reconciliation error: {exc}")
    return JSONResponse(
        status_code=409,
        content=ErrorDetail(
            error=type(exc).__name__,
            message=str(exc),
            details={"portfolio_id": exc.portfolio_id, "asset_id": exc.asset_id},
        ).model_dump(),
    )


@app.exception_handler(StaleWrite)
async def stale_write_handler(request: Request, exc: StaleWrite) -> JSONResponse:
    """Handle a superseded synchronous recompute (409)."""
    logger.info(f"Stale write: {exc}")
    return JSONResponse(
        status_code=409,
        content=ErrorDetail(
            error="StaleWrite",
            message=str(exc),
            details={
                "expected_generation": exc.expected_generation,
                "current_generation": exc.current_generation,
            },
        ).model_dump(),
    )


@app.exception_handler(AllProvidersExhausted)
async def providers_exhausted_handler(request: Request, exc: AllProvidersExhausted) -> JSONResponse:
    """Handle no provider being able to answer (503)."""
    logger.warning(f"All providers exhausted: {exc}")
    return JSONResponse(
        status_code=503,
        content=ErrorDetail(
            error="AllProvidersExhausted",
            message=str(exc),
            details={
                "operation": exc.operation,
                "symbol": exc.symbol,
                "attempts": [
                    ProviderAttemptDetail(provider=a.provider, outcome=a.outcome, error=a.error).model_dump()
                    for a in exc.attempts
                ],
            },
        ).model_dump(),
        headers={"Retry-After": "60"},
    )


@app.exception_handler(CircuitBreakerOpen)
async def circuit_breaker_handler(request: Request, exc: CircuitBreakerOpen) -> JSONResponse:
    """Handle an open provider circuit (503)."""
    logger.warning(f"Circuit breaker open: {exc}")
    return JSONResponse(
        status_code=503,
        content=ErrorDetail(
            error="CircuitBreakerOpen",
            message=str(exc),
            details={"provider": exc.breaker_name, "retry_after_seconds": round(exc.time_remaining, 1)},
        ).model_dump(),
        headers={"Retry-After": str(max(1, math.ceil(exc.time_remaining)))},
    )


@app.exception_handler(NoRateAvailable)
async def no_rate_handler(request: Request, exc: NoRateAvailable) -> JSONResponse:
    """Handle a missing FX rate (503: the rate may become available later)."""
    logger.warning(f"No FX rate: {exc}")
    return JSONResponse(
        status_code=503,
        content=ErrorDetail(
            error="NoRateAvailable",
            message=str(exc),
            details={
                "from_currency": exc.from_currency,
                "to_currency": exc.to_currency,
                "date": exc.date.isoformat(),
            },
        ).model_dump(),
    )


@app.exception_handler(ServiceError)
async def service_error_handler(request: Request, exc: ServiceError) -> JSONResponse:
    """Handle generic service errors (500)."""
    logger.error(f"Service error: {exc}")
    return JSONResponse(
        status_code=500,
        content=ErrorDetail(
            error="ServiceError",
            message=str(exc),
            details=None,
        ).model_dump(),
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """
    Handle all HTTPExceptions with consistent error format.

    Converts the default {"detail": "..."} format to ErrorDetail, for
    unknown routes and methods as well as explicit raises.
    """
    error_types = {
        400: "BadRequestError",
        404: "NotFoundError",
        405: "MethodNotAllowedError",
        409: "ConflictError",
        422: "ValidationError",
        429: "RateLimitError",
        500: "InternalServerError",
        503: "ServiceUnavailableError",
    }
    error_type = error_types.get(exc.status_code, "HTTPError")

    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorDetail(
            error=error_type,
            message=str(exc.detail) if exc.detail else "An error occurred",
            details=None,
        ).model_dump(),
        headers=exc.headers,
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """Convert the default 422 validation error to ValidationErrorDetail."""
    errors = [
        FieldError(
            field=".".join(str(loc) for loc in error["loc"]),
            message=error["msg"],
            type=error["type"],
        )
        for error in exc.errors()
    ]

    return JSONResponse(
        status_code=422,
        content=ValidationErrorDetail(
            error="ValidationError",
            message="Request validation failed",
            details=errors,
        ).model_dump(),
    )


# =============================================================================
# ROUTER REGISTRATION
# =============================================================================

app.include_router(portfolios_router)  # /portfolios/*
app.include_router(transactions_router)  # /transactions/*, /dividends/*


# =============================================================================
# GLOBAL ENDPOINTS
# =============================================================================

@app.get("/", tags=["Health"])
@limiter.limit(RATE_LIMIT_HEALTH)
def root(request: Request):
    return {
        "message": f"Welcome to {settings.app_name}!",
        "docs": "/docs",
    }


@app.get("/health", tags=["Health"])
@limiter.limit(RATE_LIMIT_HEALTH)
def health_check(
        request: Request,
        db: Session = Depends(get_db),
        chain: ProviderChain = Depends(get_provider_chain),
):
    """
    Health check endpoint.

    **Response Status Codes:**
    - 200: Healthy, or degraded (some provider circuits open)
    - 503: Database unreachable
    """
    checks = {}
    critical_healthy = True
    overall_status = "healthy"

    # Check 1: Database (CRITICAL)
    try:
        db.execute(text("SELECT 1"))
        checks["database"] = {"status": "healthy", "critical": True}
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        checks["database"] = {"status": "unhealthy", "critical": True, "error": str(e)}
        critical_healthy = False
        overall_status = "unhealthy"

    # Check 2: Provider circuits (NON-CRITICAL: the chain degrades)
    breakers = chain.breaker_states()
    open_circuits = [b["name"] for b in breakers if b["state"] == "open"]
    checks["providers"] = {
        "status": "healthy" if not open_circuits else "degraded",
        "critical": False,
        "circuits": breakers,
        "workers": chain.executor_stats(),
    }
    if open_circuits and overall_status == "healthy":
        overall_status = "degraded"

    response_data = {"status": overall_status, "checks": checks}
    if not critical_healthy:
        return JSONResponse(status_code=503, content=response_data)
    return response_data


@app.get("/health/live", tags=["Health"])
@limiter.limit(RATE_LIMIT_HEALTH)
def liveness_check(request: Request):
    """Liveness probe: succeeds whenever the process is up."""
    return {"status": "alive"}
