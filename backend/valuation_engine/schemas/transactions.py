# backend/valuation_engine/schemas/transactions.py
"""
Pydantic schemas for Transaction and Dividend validation.

These schemas define:
- What data clients must send (Create)
- What data clients can correct (Update)
- What data the API returns (Response)

Validation layers:
- Field constraints: type, length, numeric limits
- Field validators: normalization (uppercase, trim), logical checks
- Service: existence checks, currency match, oversell guard

IMPORTANT: All financial values use Decimal for precision.
Never use float for money!
"""

from datetime import date, datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from valuation_engine.models import TransactionType
from valuation_engine.schemas.validators import (
    validate_currency,
    validate_date_not_future,
    validate_exchange,
    validate_ticker,
)


# =============================================================================
# TRANSACTIONS
# =============================================================================

class TransactionCreate(BaseModel):
    """
    Schema for recording a new transaction.

    ticker, exchange and transaction_type cannot be changed after creation.
    """

    ticker: str = Field(
        ...,
        min_length=1,
        max_length=20,
        description="Trading symbol",
        examples=["SAP", "AAPL", "VUSA"]
    )

    exchange: str = Field(
        ...,
        min_length=1,
        max_length=20,
        description="Exchange code",
        examples=["XETRA", "NASDAQ", "LSE"]
    )

    transaction_type: TransactionType = Field(
        ...,
        description="Type of transaction",
        examples=[TransactionType.BUY, TransactionType.SELL]
    )

    trade_date: date = Field(
        ...,
        description="Date the trade was executed",
        examples=["2024-01-02"]
    )

    quantity: Decimal = Field(
        ...,
        gt=0,
        max_digits=18,
        decimal_places=8,
        description="Number of shares/units (must be positive)",
        examples=["10", "0.5"]
    )

    price_per_share: Decimal = Field(
        ...,
        ge=0,
        max_digits=18,
        decimal_places=8,
        description="Price per share in the trade currency",
        examples=["150.50"]
    )

    currency: str | None = Field(
        default=None,
        description="Trade currency; defaults to the asset's currency and must match it",
        examples=["EUR", "USD", "GBp"]
    )

    fee: Decimal = Field(
        default=Decimal("0"),
        ge=0,
        max_digits=18,
        decimal_places=8,
        description="Transaction fee/commission in the trade currency",
        examples=["0", "9.99"]
    )

    @field_validator('ticker')
    @classmethod
    def validate_and_normalize_ticker(cls, v: str) -> str:
        return validate_ticker(v)

    @field_validator('exchange')
    @classmethod
    def validate_and_normalize_exchange(cls, v: str) -> str:
        return validate_exchange(v)

    @field_validator('currency')
    @classmethod
    def normalize_currency(cls, v: str | None) -> str | None:
        if v is None:
            return None
        return validate_currency(v)

    @field_validator('trade_date')
    @classmethod
    def validate_trade_date(cls, v: date) -> date:
        """Prevent recording transactions that haven't happened yet."""
        return validate_date_not_future(v, "Trade date")


class TransactionUpdate(BaseModel):
    """
    Schema for correcting an existing transaction.

    All fields are optional; the client only sends the fields to correct.

    Note: portfolio, asset, transaction_type and currency CANNOT be changed.
    To change these, delete the transaction and create a new one.
    """

    trade_date: date | None = Field(default=None, description="Corrected trade date")

    quantity: Decimal | None = Field(
        default=None,
        gt=0,
        max_digits=18,
        decimal_places=8,
        description="Corrected quantity"
    )

    price_per_share: Decimal | None = Field(
        default=None,
        ge=0,
        max_digits=18,
        decimal_places=8,
        description="Corrected price per share"
    )

    fee: Decimal | None = Field(
        default=None,
        ge=0,
        max_digits=18,
        decimal_places=8
    )

    @field_validator('trade_date')
    @classmethod
    def validate_trade_date(cls, v: date | None) -> date | None:
        if v is None:
            return None
        return validate_date_not_future(v, "Trade date")


class TransactionResponse(BaseModel):
    """
    Schema for API responses.

    Includes the normalization fields computed at save time; they are
    null when no rate was available.
    """

    id: int = Field(..., description="Unique identifier")
    portfolio_id: int
    asset_id: int
    transaction_type: TransactionType
    trade_date: date
    quantity: Decimal
    price_per_share: Decimal
    currency: str
    fee: Decimal
    fx_rate_to_base: Decimal | None = Field(None, description="Rate from trade currency to base currency")
    base_amount: Decimal | None = Field(None, description="Trade amount in base currency, fees included")
    fx_rate_date: date | None = Field(None, description="Date the FX rate comes from")
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


# =============================================================================
# DIVIDENDS
# =============================================================================

class DividendCreate(BaseModel):
    asset_id: int = Field(..., gt=0)
    pay_date: date = Field(..., examples=["2024-05-16"])
    amount: Decimal = Field(
        ...,
        gt=0,
        max_digits=18,
        decimal_places=8,
        description="Total cash received"
    )
    currency: str = Field(..., examples=["EUR", "USD"])

    @field_validator('currency')
    @classmethod
    def normalize_currency(cls, v: str) -> str:
        return validate_currency(v)

    @field_validator('pay_date')
    @classmethod
    def validate_pay_date(cls, v: date) -> date:
        return validate_date_not_future(v, "Pay date")


class DividendResponse(BaseModel):
    id: int
    portfolio_id: int
    asset_id: int
    pay_date: date
    amount: Decimal
    currency: str
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)
