# backend/valuation_engine/services/valuation/types.py
"""
Internal data types for the Daily Valuation Rebuilder.

These dataclasses are used internally by the rebuilder. They are NOT
Pydantic schemas - those live in valuation_engine/schemas/ for API
serialization.

Design Principles:
- Use Decimal for ALL financial values (never float)
- Use date (not datetime) for valuation dates
- Degraded data is flagged with a human-readable reason, never hidden

Type Hierarchy:
    AssetValuation   - One held asset on one date
    DayValuation     - Whole portfolio on one date (one DailyChange row)
    RebuildResult    - Outcome of a rebuild run
"""

from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal


# =============================================================================
# PER-DATE VALUATION
# =============================================================================

@dataclass
class AssetValuation:
    """
    Value of one held asset on one date.

    Attributes:
        asset_id: Database ID of the asset
        quantity: Shares held at end of day
        price: Close used, in the asset's native currency (None if excluded)
        price_date: Date the close comes from
        price_source: "history", "last_known" or "cost_basis"
        fx_rate: Native ISO currency -> base currency rate (1 for same currency)
        fx_date: Date the rate comes from
        value: Value in base currency (None if it could not be converted)
    """

    asset_id: int
    quantity: Decimal
    price: Decimal | None = None
    price_date: date | None = None
    price_source: str | None = None
    fx_rate: Decimal | None = None
    fx_date: date | None = None
    value: Decimal | None = None

    def to_snapshot(self) -> dict[str, str | None]:
        """JSON-safe form stored in DailyChange.snapshot."""
        return {
            "quantity": str(self.quantity),
            "price": str(self.price) if self.price is not None else None,
            "price_date": self.price_date.isoformat() if self.price_date else None,
            "price_source": self.price_source,
            "fx_rate": str(self.fx_rate) if self.fx_rate is not None else None,
            "fx_date": self.fx_date.isoformat() if self.fx_date else None,
            "value": str(self.value) if self.value is not None else None,
        }


@dataclass
class DayValuation:
    """
    Portfolio valuation for one calendar date.

    day_change is total_value minus the previous date's total_value; the
    first date of a portfolio's history has day_change 0.
    """

    valuation_date: date
    total_value: Decimal
    day_change: Decimal = Decimal("0")
    assets: list[AssetValuation] = field(default_factory=list)
    degraded_reasons: list[str] = field(default_factory=list)

    @property
    def holdings_count(self) -> int:
        return len(self.assets)

    @property
    def is_degraded(self) -> bool:
        return bool(self.degraded_reasons)

    def snapshot(self) -> dict[str, dict]:
        return {str(a.asset_id): a.to_snapshot() for a in self.assets}


# =============================================================================
# REBUILD RESULT
# =============================================================================

@dataclass
class RebuildResult:
    """
    Outcome of one rebuild run.

    Attributes:
        portfolio_id: Portfolio rebuilt
        start_date: First date written (None if nothing to write)
        end_date: Last date written, normally today
        rows_written: DailyChange rows upserted
        rows_deleted: Rows removed for dates outside the history
        degraded_dates: Dates whose valuation used a fallback or left a holding out
        generation: Generation the rows were written for
    """

    portfolio_id: int
    start_date: date | None = None
    end_date: date | None = None
    rows_written: int = 0
    rows_deleted: int = 0
    degraded_dates: list[date] = field(default_factory=list)
    generation: int | None = None

    @property
    def is_degraded(self) -> bool:
        return bool(self.degraded_dates)
