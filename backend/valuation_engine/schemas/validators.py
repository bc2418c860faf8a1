# backend/valuation_engine/schemas/validators.py
"""
Reusable validation functions for Pydantic schemas.

This module provides:
- Ticker validation and normalization
- Exchange validation and normalization
- Currency code validation (ISO 4217 plus minor-unit aliases like GBp)
- Date validation

These validators ensure consistent input handling across all schemas.
"""

import re
from datetime import date

from valuation_engine.utils.currency import CURRENCY_ALIASES
from valuation_engine.utils.date_utils import utc_today

# =============================================================================
# CONSTANTS
# =============================================================================

# Ticker: 1-20 chars, alphanumeric + dots + dashes + carets (for indices like ^SPX)
TICKER_PATTERN = re.compile(r'^[\^]?[A-Z0-9][A-Z0-9.\-]{0,19}$')
TICKER_MAX_LENGTH = 20

# Exchange: 1-20 chars, alphanumeric only
EXCHANGE_PATTERN = re.compile(r'^[A-Z0-9]{1,20}$')
EXCHANGE_MAX_LENGTH = 20

# Currency: ISO 4217 format (3 uppercase letters)
CURRENCY_PATTERN = re.compile(r'^[A-Z]{3}$')

MIN_VALID_DATE = date(1970, 1, 1)


# =============================================================================
# TICKER / EXCHANGE
# =============================================================================

def validate_ticker(value: str) -> str:
    """
    Validate and normalize a ticker symbol.

    Valid formats:
    - Standard tickers: AAPL, SAP, MSFT
    - With dots or dashes: BRK.B, BRK-B
    - Indices with caret: ^SPX

    Raises:
        ValueError: If ticker format is invalid
    """
    if not value:
        raise ValueError("Ticker cannot be empty")

    normalized = value.strip().upper()

    if len(normalized) > TICKER_MAX_LENGTH:
        raise ValueError(f"Ticker cannot exceed {TICKER_MAX_LENGTH} characters")

    if not TICKER_PATTERN.match(normalized):
        raise ValueError(
            f"Invalid ticker format: '{normalized}'. "
            "Ticker must be alphanumeric, may include dots (.) or dashes (-), or start with caret (^)"
        )

    return normalized


def validate_exchange(value: str) -> str:
    """
    Validate and normalize an exchange code (XETRA, LSE, NASDAQ, ...).

    Raises:
        ValueError: If exchange format is invalid
    """
    if not value:
        raise ValueError("Exchange cannot be empty")

    normalized = value.strip().upper()

    if len(normalized) > EXCHANGE_MAX_LENGTH:
        raise ValueError(f"Exchange cannot exceed {EXCHANGE_MAX_LENGTH} characters")

    if not EXCHANGE_PATTERN.match(normalized):
        raise ValueError(
            f"Invalid exchange format: '{normalized}'. "
            "Exchange must be alphanumeric only"
        )

    return normalized


# =============================================================================
# CURRENCY
# =============================================================================

def validate_currency(value: str) -> str:
    """
    Validate a currency code.

    Minor-unit aliases (GBp, GBX, ZAc, ILA) are kept verbatim since their
    case carries meaning; anything else must be a 3-letter ISO code and is
    uppercased.

    Raises:
        ValueError: If the code is neither an alias nor ISO 4217 shaped
    """
    if not value:
        raise ValueError("Currency cannot be empty")

    stripped = value.strip()
    if stripped in CURRENCY_ALIASES:
        return stripped

    normalized = stripped.upper()
    if not CURRENCY_PATTERN.match(normalized):
        raise ValueError(f"Invalid currency code: '{stripped}'. Expected ISO 4217 (e.g., EUR, USD)")
    return normalized


# =============================================================================
# DATE VALIDATION
# =============================================================================

def validate_date_not_future(value: date, field_name: str = "Date") -> date:
    """
    Validate that a date is neither in the future nor before 1970.

    Raises:
        ValueError: If date is out of range
    """
    if value < MIN_VALID_DATE:
        raise ValueError(f"{field_name} cannot be before {MIN_VALID_DATE}")
    if value > utc_today():
        raise ValueError(f"{field_name} cannot be in the future")
    return value
