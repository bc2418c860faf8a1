# backend/valuation_engine/dependencies.py
"""
Dependency injection module for FastAPI routes and the CLI.

This module provides singleton service instances that are shared across
all requests. Sharing matters here: the provider chain owns the circuit
breakers, and the job runner owns the per-portfolio queues, so a second
instance of either would split that state.

Services are lazily initialized on first use to avoid import-time side effects.

Usage in routers:
    from valuation_engine.dependencies import get_job_runner, get_transaction_service

    @router.post("/{portfolio_id}/refresh")
    def refresh(
        portfolio_id: int,
        runner: JobRunner = Depends(get_job_runner),
    ):
        ...
"""

import logging
from functools import lru_cache

from valuation_engine.config import settings
from valuation_engine.database import SessionLocal
from valuation_engine.services.fx_rate_service import FXRateService
from valuation_engine.services.holdings import HoldingReconciler
from valuation_engine.services.jobs import JobRunner
from valuation_engine.services.market_data import CorporateActionService, PriceHistoryService
from valuation_engine.services.orchestrator import RecomputeOrchestrator
from valuation_engine.services.providers import ProviderChain, build_provider_chain
from valuation_engine.services.transactions import TransactionService
from valuation_engine.services.valuation import ValuationRebuilder

logger = logging.getLogger(__name__)


# =============================================================================
# SINGLETON SERVICE INSTANCES
# =============================================================================
# Order matters: define dependencies before dependents
# 1. get_provider_chain (no deps)
# 2. get_fx_rate_service, get_price_history_service, get_corporate_action_service (chain)
# 3. get_holding_reconciler, get_valuation_rebuilder (fx, prices)
# 4. get_orchestrator (reconciler, rebuilder, prices, corporate actions)
# 5. get_job_runner (orchestrator)
# 6. get_transaction_service (fx, prices, runner)


@lru_cache(maxsize=1)
def get_provider_chain() -> ProviderChain:
    """
    Get the singleton provider chain.

    Shares the providers (and their circuit breakers) across all services,
    so a provider that is down is skipped everywhere at once.
    """
    logger.debug("Initializing singleton ProviderChain")
    return build_provider_chain(settings)


@lru_cache(maxsize=1)
def get_fx_rate_service() -> FXRateService:
    logger.debug("Initializing singleton FXRateService")
    return FXRateService(get_provider_chain(), lookback_days=settings.fx_lookback_days)


@lru_cache(maxsize=1)
def get_price_history_service() -> PriceHistoryService:
    logger.debug("Initializing singleton PriceHistoryService")
    return PriceHistoryService(
        get_provider_chain(),
        lookback_days=settings.price_lookback_days,
        freshness_minutes=settings.quote_freshness_minutes,
    )


@lru_cache(maxsize=1)
def get_corporate_action_service() -> CorporateActionService:
    logger.debug("Initializing singleton CorporateActionService")
    return CorporateActionService(get_provider_chain())


@lru_cache(maxsize=1)
def get_holding_reconciler() -> HoldingReconciler:
    logger.debug("Initializing singleton HoldingReconciler")
    return HoldingReconciler(fx_service=get_fx_rate_service())


@lru_cache(maxsize=1)
def get_valuation_rebuilder() -> ValuationRebuilder:
    logger.debug("Initializing singleton ValuationRebuilder")
    return ValuationRebuilder(
        fx_service=get_fx_rate_service(),
        price_service=get_price_history_service(),
        batch_days=settings.rebuild_batch_days,
    )


@lru_cache(maxsize=1)
def get_orchestrator() -> RecomputeOrchestrator:
    """
    Get the singleton RecomputeOrchestrator.

    The per-(portfolio, asset) reconcile locks live on its reconciler.
    """
    logger.debug("Initializing singleton RecomputeOrchestrator")
    return RecomputeOrchestrator(
        reconciler=get_holding_reconciler(),
        rebuilder=get_valuation_rebuilder(),
        price_service=get_price_history_service(),
        corporate_actions=get_corporate_action_service(),
    )


@lru_cache(maxsize=1)
def get_job_runner() -> JobRunner:
    """
    Get the singleton JobRunner.

    Owns the worker pool and the per-portfolio coalescing queues. On
    SQLite every session may share one connection, where one job's
    rollback would discard another's writes, so jobs run inline.
    """
    logger.debug("Initializing singleton JobRunner")
    return JobRunner(
        orchestrator=get_orchestrator(),
        session_factory=SessionLocal,
        max_workers=settings.worker_pool_size,
        max_attempts=settings.job_max_attempts,
        synchronous=settings.is_sqlite,
    )


@lru_cache(maxsize=1)
def get_transaction_service() -> TransactionService:
    logger.debug("Initializing singleton TransactionService")
    return TransactionService(
        fx_service=get_fx_rate_service(),
        price_service=get_price_history_service(),
        runner=get_job_runner(),
    )


# =============================================================================
# CACHE MANAGEMENT
# =============================================================================

def shutdown_services() -> None:
    """Stop the worker pool and provider executors if they were started."""
    if get_job_runner.cache_info().currsize:
        get_job_runner().shutdown(wait=True)
    if get_provider_chain.cache_info().currsize:
        get_provider_chain().close()


def clear_service_caches() -> None:
    """
    Clear all service caches.

    Useful for testing or when you need to reset state.
    """
    get_provider_chain.cache_clear()
    get_fx_rate_service.cache_clear()
    get_price_history_service.cache_clear()
    get_corporate_action_service.cache_clear()
    get_holding_reconciler.cache_clear()
    get_valuation_rebuilder.cache_clear()
    get_orchestrator.cache_clear()
    get_job_runner.cache_clear()
    get_transaction_service.cache_clear()
    logger.info("Cleared all service singleton caches")
