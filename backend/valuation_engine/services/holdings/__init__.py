# backend/valuation_engine/services/holdings/__init__.py
"""
Holding reconciliation.

Usage:
    from valuation_engine.services.holdings import HoldingReconciler
"""

from valuation_engine.services.holdings.reconciler import HoldingReconciler, PositionState

__all__ = [
    "HoldingReconciler",
    "PositionState",
]
