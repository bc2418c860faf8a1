# backend/valuation_engine/services/__init__.py
"""
Service layer: the valuation reconciliation engine.

Services:
- Have NO knowledge of HTTP (no HTTPException, no status codes)
- Raise domain-specific exceptions
- Receive database sessions as parameters (not via Depends)
- Are easily testable via dependency injection

Usage:
    from valuation_engine.services import FXRateService, HoldingReconciler
    from valuation_engine.services import (
        AllProvidersExhausted,
        NoRateAvailable,
        OversoldPosition,
        StaleWrite,
    )

Architecture:
    services/
    ├── __init__.py              # This file - main exports
    ├── exceptions.py            # Domain exceptions
    ├── constants.py             # Business constants
    ├── circuit_breaker.py       # Per-provider circuit breaker
    ├── fx_rate_service.py       # FX Conversion Service
    ├── orchestrator.py          # Recompute Orchestrator (state machine)
    ├── jobs.py                  # Worker pool, coalescing, job retries
    ├── transactions.py          # Transaction/dividend writes + triggers
    ├── providers/               # Rate/Quote Provider Chain
    │   ├── base.py              # Provider interface, capabilities, DTOs
    │   ├── chain.py             # Failover chain
    │   ├── yahoo.py             # Yahoo Finance (equities + FX)
    │   └── frankfurter.py       # Frankfurter / ECB (FX only)
    ├── market_data/             # Cached closes, quotes, splits
    │   ├── price_history.py
    │   └── corporate_actions.py
    ├── holdings/                # Holding Reconciler
    │   └── reconciler.py
    └── valuation/               # Daily Valuation Rebuilder
        ├── rebuilder.py
        └── types.py
"""

# Exceptions
from valuation_engine.services.exceptions import (
    ServiceError,
    ValidationError,
    NotFoundError,
    PortfolioNotFoundError,
    AssetNotFoundError,
    TransactionNotFoundError,
    ProviderError,
    ProviderTransientError,
    ProviderConfigError,
    SymbolNotFoundError,
    AllProvidersExhausted,
    FXRateError,
    NoRateAvailable,
    ReconciliationError,
    OversoldPosition,
    StaleWrite,
    CircuitBreakerOpen,
)
# Provider chain
from valuation_engine.services.providers import ProviderChain, build_provider_chain
# FX Conversion Service
from valuation_engine.services.fx_rate_service import FXRateService, FXRateResult, ConversionResult
# Market data caches
from valuation_engine.services.market_data import CorporateActionService, PriceHistoryService
# Holding Reconciler
from valuation_engine.services.holdings import HoldingReconciler
# Daily Valuation Rebuilder
from valuation_engine.services.valuation import ValuationRebuilder, RebuildResult
# Recompute Orchestrator and jobs
from valuation_engine.services.orchestrator import (
    CycleResult,
    RecomputeOrchestrator,
    RecomputeScope,
    TriggerType,
)
from valuation_engine.services.jobs import JobRunner
from valuation_engine.services.transactions import TransactionService

__all__ = [
    # ==========================================================================
    # Services
    # ==========================================================================
    "ProviderChain",
    "build_provider_chain",
    "FXRateService",
    "FXRateResult",
    "ConversionResult",
    "CorporateActionService",
    "PriceHistoryService",
    "HoldingReconciler",
    "ValuationRebuilder",
    "RebuildResult",
    "CycleResult",
    "RecomputeOrchestrator",
    "RecomputeScope",
    "TriggerType",
    "JobRunner",
    "TransactionService",

    # ==========================================================================
    # Exceptions
    # ==========================================================================
    "ServiceError",
    "ValidationError",
    "NotFoundError",
    "PortfolioNotFoundError",
    "AssetNotFoundError",
    "TransactionNotFoundError",
    "ProviderError",
    "ProviderTransientError",
    "ProviderConfigError",
    "SymbolNotFoundError",
    "AllProvidersExhausted",
    "FXRateError",
    "NoRateAvailable",
    "ReconciliationError",
    "OversoldPosition",
    "StaleWrite",
    "CircuitBreakerOpen",
]
