# backend/valuation_engine/services/valuation/__init__.py
"""
Daily valuation series.

Usage:
    from valuation_engine.services.valuation import ValuationRebuilder

    rebuilder = ValuationRebuilder(fx_service, price_service)
    result = rebuilder.rebuild(db, portfolio_id=1)
"""

from valuation_engine.services.valuation.rebuilder import ValuationRebuilder
from valuation_engine.services.valuation.types import (
    AssetValuation,
    DayValuation,
    RebuildResult,
)

__all__ = [
    "ValuationRebuilder",
    "AssetValuation",
    "DayValuation",
    "RebuildResult",
]
