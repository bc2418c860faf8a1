# backend/valuation_engine/__init__.py
"""Portfolio valuation reconciliation engine."""

__version__ = "0.1.0"
