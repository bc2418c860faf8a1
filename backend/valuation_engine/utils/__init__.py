# backend/valuation_engine/utils/__init__.py
"""
Utility modules for the valuation engine.

This package contains cross-cutting utilities used throughout the engine:
- logging: Logging configuration with correlation/job ID support
- context: Correlation ID and job ID context variables
- date_utils: Date ranges, business days, chunking
- currency: Minor-unit currency normalization
- sql: Dialect-aware ON CONFLICT inserts

Usage:
    from valuation_engine.utils import setup_logging
    from valuation_engine.utils import get_correlation_id, set_correlation_id
    from valuation_engine.utils.date_utils import get_business_days
"""

from valuation_engine.utils.context import (
    get_correlation_id,
    set_correlation_id,
    clear_correlation_id,
    get_job_id,
    set_job_id,
    clear_job_id,
)
from valuation_engine.utils.logging import setup_logging

__all__ = [
    # Logging
    "setup_logging",
    # Context
    "get_correlation_id",
    "set_correlation_id",
    "clear_correlation_id",
    "get_job_id",
    "set_job_id",
    "clear_job_id",
]
