# backend/valuation_engine/schemas/portfolios.py
"""
Pydantic schemas for the engine's per-portfolio views.

Read-only projections of engine output:
- HoldingResponse: reconciled position per asset
- DailyChangeResponse: one valuation date
- RecomputeStatusResponse: state machine + in-memory job queue

Plus the refresh request/response for the job trigger interface.
"""

from datetime import date, datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field, model_validator

from valuation_engine.models import RecomputeState


# =============================================================================
# HOLDINGS
# =============================================================================

class HoldingResponse(BaseModel):
    """
    Reconciled holding.

    Currency:
        - average_cost, realized_gain_native: asset's native currency
        - realized_gain, dividend_income: portfolio base currency
    """

    asset_id: int
    ticker: str
    exchange: str
    currency: str = Field(..., description="Asset's native currency")
    quantity: Decimal
    average_cost: Decimal
    realized_gain: Decimal
    realized_gain_native: Decimal
    dividend_income: Decimal
    is_closed: bool
    is_degraded: bool
    degraded_reasons: list[str] | None = None
    last_synced_at: datetime | None = None


class HoldingsResponse(BaseModel):
    portfolio_id: int
    base_currency: str
    holdings: list[HoldingResponse]


# =============================================================================
# DAILY CHANGES
# =============================================================================

class DailyChangeResponse(BaseModel):
    """One date of the valuation series, in base currency."""

    valuation_date: date
    total_value: Decimal
    day_change: Decimal
    holdings_count: int
    is_degraded: bool
    degraded_reasons: list[str] | None = None
    snapshot: dict | None = Field(None, description="Per-asset breakdown keyed by asset ID")

    model_config = ConfigDict(from_attributes=True)


class DailyChangesResponse(BaseModel):
    portfolio_id: int
    base_currency: str
    from_date: date | None
    to_date: date | None
    items: list[DailyChangeResponse]


# =============================================================================
# RECOMPUTE
# =============================================================================

class RecomputeStatusResponse(BaseModel):
    """
    Persisted cycle state plus the runner's in-memory queue.

    generation > completed_generation means a recompute is pending or running.
    """

    portfolio_id: int
    state: RecomputeState
    generation: int
    completed_generation: int
    last_trigger: str | None = None
    last_triggered_at: datetime | None = None
    cycle_started_at: datetime | None = None
    cycle_completed_at: datetime | None = None
    last_error: str | None = None
    active_job_id: str | None = None
    pending_job_id: str | None = None

    model_config = ConfigDict(from_attributes=True)


class RefreshRequest(BaseModel):
    """
    Scope of a force refresh.

    Empty body means every asset and a full rebuild.
    """

    asset_ids: list[int] | None = Field(
        default=None,
        description="Restrict to these assets (default: all)"
    )
    from_date: date | None = Field(
        default=None,
        description="Rebuild from this date (default: first transaction)"
    )

    @model_validator(mode="after")
    def validate_asset_ids(self) -> "RefreshRequest":
        if self.asset_ids is not None and not self.asset_ids:
            raise ValueError("asset_ids must not be empty; omit it to refresh every asset")
        return self


class RefreshResponse(BaseModel):
    portfolio_id: int
    job_id: str = Field(..., description="Job carrying out the refresh (may be an existing pending job)")
    generation: int
    message: str
