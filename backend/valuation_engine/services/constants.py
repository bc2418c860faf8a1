# backend/valuation_engine/services/constants.py
"""
Business constants for the valuation engine.

Values that operators tune per deployment live in config.Settings; the
constants here are fixed properties of the engine.

Usage:
    from valuation_engine.services.constants import (
        DECIMAL_QUANTUM,
        RATE_LIMIT_REFRESH,
    )
"""

from decimal import Decimal


# =============================================================================
# NUMERIC PRECISION
# =============================================================================

# Matches Numeric(18, 8) columns; all persisted amounts are quantized to this
DECIMAL_QUANTUM: Decimal = Decimal("0.00000001")

ZERO: Decimal = Decimal("0")


# =============================================================================
# PROVIDER CHAIN
# =============================================================================

# Probe calls allowed while a provider's breaker is half-open
CIRCUIT_BREAKER_HALF_OPEN_MAX_CALLS: int = 1


# =============================================================================
# RECOMPUTE JOBS
# =============================================================================

# Exponential backoff bounds between job attempts (seconds)
JOB_RETRY_MIN_WAIT: float = 1.0
JOB_RETRY_MAX_WAIT: float = 30.0


# =============================================================================
# RATE LIMITING
# =============================================================================

# Default for all endpoints
RATE_LIMIT_DEFAULT: str = "100/minute"

# Force refresh hits external providers for every asset in the portfolio
RATE_LIMIT_REFRESH: str = "10/minute"

# Transaction writes enqueue recompute jobs
RATE_LIMIT_WRITE: str = "60/minute"

# Health checks (load balancers poll frequently)
RATE_LIMIT_HEALTH: str = "300/minute"
