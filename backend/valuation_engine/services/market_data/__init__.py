# backend/valuation_engine/services/market_data/__init__.py
"""
Cached market data: daily closes, latest quotes and stock splits.

Usage:
    from valuation_engine.services.market_data import PriceHistoryService, CorporateActionService
"""

from valuation_engine.services.market_data.corporate_actions import CorporateActionService
from valuation_engine.services.market_data.price_history import (
    PriceHistoryService,
    PriceLookup,
    PriceSyncResult,
)

__all__ = [
    "CorporateActionService",
    "PriceHistoryService",
    "PriceLookup",
    "PriceSyncResult",
]
