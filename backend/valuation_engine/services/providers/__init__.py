# backend/valuation_engine/services/providers/__init__.py
"""
Market data providers and the failover chain.

Usage:
    from valuation_engine.services.providers import build_provider_chain, Instrument, Operation

    chain = build_provider_chain(settings)
    result = chain.resolve(Operation.QUOTE, Instrument.equity("SAP", "XETRA"))
"""

from valuation_engine.services.providers.base import (
    Capabilities,
    DividendEvent,
    Instrument,
    InstrumentKind,
    MarketDataProvider,
    Operation,
    PricePoint,
    Quote,
    SplitEvent,
)
from valuation_engine.services.providers.chain import (
    ProviderAttempt,
    ProviderChain,
    ProviderChainConfig,
    ProviderResult,
)
from valuation_engine.services.providers.frankfurter import FrankfurterProvider
from valuation_engine.services.providers.yahoo import YahooFinanceProvider


def build_provider(name: str, settings) -> MarketDataProvider:
    """Instantiate a provider by its PROVIDER_ORDER name."""
    if name == "yahoo":
        return YahooFinanceProvider(timeout=settings.provider_timeout_seconds)
    if name == "frankfurter":
        return FrankfurterProvider(
            settings.frankfurter_base_url,
            timeout=settings.provider_timeout_seconds,
        )
    raise ValueError(f"Unknown provider: {name}")


def build_provider_chain(settings) -> ProviderChain:
    """Build the chain described by settings (order, disabled set, timeouts)."""
    config = ProviderChainConfig.from_settings(settings)
    providers = [build_provider(name, settings) for name in config.order]
    return ProviderChain(providers, config)


__all__ = [
    # Types
    "Capabilities",
    "DividendEvent",
    "Instrument",
    "InstrumentKind",
    "MarketDataProvider",
    "Operation",
    "PricePoint",
    "Quote",
    "SplitEvent",
    # Chain
    "ProviderAttempt",
    "ProviderChain",
    "ProviderChainConfig",
    "ProviderResult",
    # Providers
    "FrankfurterProvider",
    "YahooFinanceProvider",
    # Factories
    "build_provider",
    "build_provider_chain",
]
