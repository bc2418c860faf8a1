# backend/valuation_engine/schemas/errors.py
"""
Pydantic schemas for error responses.

Every handler in main.py renders an ErrorDetail, so clients can switch on
`error` (the domain exception's class name) and read the structured
`details` for the cases they care about:

    409 OversoldPosition   -> held / requested quantities
    503 AllProvidersExhausted -> one ProviderAttemptDetail per provider tried
    422 request validation -> one FieldError per offending field
"""

from pydantic import BaseModel, Field


class ErrorDetail(BaseModel):
    """Standard error response format."""

    error: str = Field(
        ...,
        description="Error type/code (e.g., 'OversoldPosition')"
    )
    message: str = Field(
        ...,
        description="Human-readable error message"
    )
    details: dict | None = Field(
        default=None,
        description="Additional error context (optional)"
    )


class ProviderAttemptDetail(BaseModel):
    """How one provider fared when every provider failed."""

    provider: str = Field(..., examples=["yahoo"])
    outcome: str = Field(
        ...,
        description="unsupported, not_found, transient or circuit_open",
        examples=["transient"]
    )
    error: str | None = None


class FieldError(BaseModel):
    """One failed field of a rejected request."""

    field: str = Field(
        ...,
        description="Dotted location of the field",
        examples=["body.quantity", "path.portfolio_id"]
    )
    message: str
    type: str = Field(..., examples=["greater_than"])


class ValidationErrorDetail(BaseModel):
    """Request validation failures (422 responses)."""

    error: str = Field(default="ValidationError")
    message: str = Field(default="Request validation failed")
    details: list[FieldError]
