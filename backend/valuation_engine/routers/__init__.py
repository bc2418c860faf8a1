# backend/valuation_engine/routers/__init__.py
"""
API routers for the valuation engine.

Each router handles a specific domain:
- portfolios: Force refresh, recompute status, holdings, daily changes,
  transaction and dividend recording
- transactions: Transaction corrections and deletions, dividend deletion
"""

from valuation_engine.routers.portfolios import router as portfolios_router
from valuation_engine.routers.transactions import router as transactions_router

__all__ = [
    "portfolios_router",
    "transactions_router",
]
