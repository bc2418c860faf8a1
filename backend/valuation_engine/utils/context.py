# backend/valuation_engine/utils/context.py
"""
Execution context for log correlation.

Two identifiers travel with the work:
- Correlation ID: set per HTTP request (or per CLI invocation)
- Job ID: set per recompute job on a worker thread

Uses contextvars, so each worker thread and each request sees its own
values. A job submitted from a request carries the request's correlation
ID with it (see services.jobs).

Usage:
    from valuation_engine.utils.context import get_correlation_id, set_correlation_id

    set_correlation_id("abc-123")
    correlation_id = get_correlation_id()  # Returns "abc-123"
"""

from contextvars import ContextVar

_correlation_id_var: ContextVar[str | None] = ContextVar("correlation_id", default=None)
_job_id_var: ContextVar[str | None] = ContextVar("job_id", default=None)


# =============================================================================
# CORRELATION ID
# =============================================================================

def get_correlation_id() -> str | None:
    """Return the current correlation ID, or None if not set."""
    return _correlation_id_var.get()


def set_correlation_id(correlation_id: str | None) -> None:
    """
    Set the correlation ID for the current request or job.

    Args:
        correlation_id: Unique identifier for this request
    """
    _correlation_id_var.set(correlation_id)


def clear_correlation_id() -> None:
    _correlation_id_var.set(None)


# =============================================================================
# JOB ID
# =============================================================================

def get_job_id() -> str | None:
    """Return the ID of the recompute job running in this context, if any."""
    return _job_id_var.get()


def set_job_id(job_id: str | None) -> None:
    _job_id_var.set(job_id)


def clear_job_id() -> None:
    _job_id_var.set(None)
