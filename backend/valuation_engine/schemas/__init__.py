# backend/valuation_engine/schemas/__init__.py
"""
Pydantic schemas for API request/response validation.

Organized by domain:
- errors: Error response formats
- portfolios: Holdings, daily changes, recompute status, refresh
- transactions: Transaction and dividend writes
- validators: Reusable validation functions (ticker, exchange, currency)

Usage:
    from valuation_engine.schemas import TransactionCreate, TransactionResponse
    from valuation_engine.schemas import RefreshRequest, RecomputeStatusResponse
"""

from valuation_engine.schemas.errors import (
    ErrorDetail,
    FieldError,
    ProviderAttemptDetail,
    ValidationErrorDetail,
)
from valuation_engine.schemas.portfolios import (
    DailyChangeResponse,
    DailyChangesResponse,
    HoldingResponse,
    HoldingsResponse,
    RecomputeStatusResponse,
    RefreshRequest,
    RefreshResponse,
)
from valuation_engine.schemas.transactions import (
    DividendCreate,
    DividendResponse,
    TransactionCreate,
    TransactionResponse,
    TransactionUpdate,
)

__all__ = [
    # Errors
    "ErrorDetail",
    "FieldError",
    "ProviderAttemptDetail",
    "ValidationErrorDetail",
    # Portfolios
    "DailyChangeResponse",
    "DailyChangesResponse",
    "HoldingResponse",
    "HoldingsResponse",
    "RecomputeStatusResponse",
    "RefreshRequest",
    "RefreshResponse",
    # Transactions
    "DividendCreate",
    "DividendResponse",
    "TransactionCreate",
    "TransactionResponse",
    "TransactionUpdate",
]
