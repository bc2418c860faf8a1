# backend/tests/conftest.py
"""
Pytest configuration and fixtures.

This module provides shared fixtures for all tests:
- Database session fixtures (in-memory SQLite)
- Scriptable mock provider and chain builder
- Service fixtures wired the way dependencies.py wires them
- Sample data factories
"""

import os

# Must be set before valuation_engine.config is imported
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("RATE_LIMIT_ENABLED", "false")

import time
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Iterator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from valuation_engine.database import get_db
from valuation_engine.dependencies import (
    get_job_runner,
    get_orchestrator,
    get_provider_chain,
    get_transaction_service,
)
from valuation_engine.main import app
from valuation_engine.models import (
    Base,
    Asset,
    AssetClass,
    CurrencyRate,
    Dividend,
    Portfolio,
    PriceHistory,
    StockSplit,
    Transaction,
    TransactionType,
    User,
)
from valuation_engine.services.exceptions import ProviderTransientError, SymbolNotFoundError
from valuation_engine.services.fx_rate_service import FXRateService
from valuation_engine.services.holdings import HoldingReconciler
from valuation_engine.services.jobs import JobRunner
from valuation_engine.services.market_data import CorporateActionService, PriceHistoryService
from valuation_engine.services.orchestrator import RecomputeOrchestrator
from valuation_engine.services.providers import (
    Capabilities,
    DividendEvent,
    Instrument,
    InstrumentKind,
    MarketDataProvider,
    Operation,
    PricePoint,
    ProviderChain,
    ProviderChainConfig,
    Quote,
    SplitEvent,
)
from valuation_engine.services.transactions import TransactionService
from valuation_engine.services.valuation import ValuationRebuilder
from valuation_engine.utils.date_utils import date_range


# =============================================================================
# DATABASE FIXTURES
# =============================================================================

@pytest.fixture(scope="function")
def db_engine():
    """Create an in-memory SQLite database engine for testing."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    Base.metadata.drop_all(engine)


@pytest.fixture(scope="function")
def session_factory(db_engine):
    """Session factory on the test engine, as the job runner uses SessionLocal."""
    return sessionmaker(autocommit=False, autoflush=False, bind=db_engine)


@pytest.fixture(scope="function")
def db(session_factory) -> Iterator[Session]:
    """Create a database session for testing."""
    session = session_factory()
    try:
        yield session
    finally:
        session.rollback()
        session.close()


# =============================================================================
# MOCK MARKET DATA PROVIDER
# =============================================================================

class MockProvider(MarketDataProvider):
    """
    Scriptable MarketDataProvider for testing.

    Data is keyed by instrument symbol ("SAP", "USDEUR"). Anything not
    configured is unknown to the provider.

    Failure scripting:
        transient_failures: next N calls raise ProviderTransientError
                            (-1 means every call)
        delay: seconds to sleep inside each call (timeout tests)
    """

    def __init__(
            self,
            name: str = "mock",
            operations=None,
            kinds=None,
            markets=None,
    ):
        self._name = name
        self._capabilities = Capabilities(
            operations=frozenset(operations) if operations is not None else frozenset(Operation),
            kinds=frozenset(kinds) if kinds is not None else frozenset(InstrumentKind),
            markets=frozenset(markets) if markets is not None else None,
        )
        self.known: set[str] = set()
        self.quotes: dict[str, Quote] = {}
        self.histories: dict[str, dict[date, Decimal]] = {}
        self.split_events: dict[str, list[SplitEvent]] = {}
        self.dividend_events: dict[str, list[DividendEvent]] = {}
        self.transient_failures = 0
        self.delay = 0.0
        self.calls: list[tuple[Operation, str]] = []

    @property
    def name(self) -> str:
        return self._name

    @property
    def capabilities(self) -> Capabilities:
        return self._capabilities

    # =========================================================================
    # Configuration helpers
    # =========================================================================

    def add_quote(self, symbol: str, price: str, currency: str = "EUR", as_of: datetime | None = None) -> None:
        self.known.add(symbol)
        self.quotes[symbol] = Quote(
            price=Decimal(price),
            currency=currency,
            as_of=as_of or datetime.now(timezone.utc),
        )

    def add_history(self, symbol: str, prices: dict[date, str]) -> None:
        self.known.add(symbol)
        self.histories.setdefault(symbol, {}).update({d: Decimal(p) for d, p in prices.items()})

    def add_daily_history(
            self,
            symbol: str,
            start_date: date,
            end_date: date,
            price: str,
            weekdays_only: bool = False,
    ) -> None:
        """Same close for every date in range."""
        self.add_history(symbol, {
            d: price for d in date_range(start_date, end_date)
            if not weekdays_only or d.weekday() < 5
        })

    def add_split(self, symbol: str, split_date: date, ratio: str) -> None:
        self.known.add(symbol)
        self.split_events.setdefault(symbol, []).append(SplitEvent(split_date, Decimal(ratio)))

    def calls_for(self, operation: Operation) -> list[str]:
        return [symbol for op, symbol in self.calls if op == operation]

    # =========================================================================
    # MarketDataProvider
    # =========================================================================

    def _record(self, operation: Operation, instrument: Instrument) -> None:
        self.calls.append((operation, instrument.symbol))
        if self.delay:
            time.sleep(self.delay)
        if self.transient_failures:
            if self.transient_failures > 0:
                self.transient_failures -= 1
            raise ProviderTransientError(self.name, "simulated outage")

    def exists(self, instrument: Instrument) -> bool:
        self._record(Operation.EXISTS, instrument)
        return instrument.symbol in self.known

    def quote(self, instrument: Instrument) -> Quote:
        self._record(Operation.QUOTE, instrument)
        if instrument.symbol not in self.quotes:
            raise SymbolNotFoundError(instrument.symbol, self.name)
        return self.quotes[instrument.symbol]

    def history(self, instrument: Instrument, start_date: date, end_date: date) -> list[PricePoint]:
        self._record(Operation.HISTORY, instrument)
        if instrument.symbol not in self.histories:
            raise SymbolNotFoundError(instrument.symbol, self.name)
        return [
            PricePoint(d, p)
            for d, p in sorted(self.histories[instrument.symbol].items())
            if start_date <= d <= end_date
        ]

    def dividends(self, instrument: Instrument, start_date: date, end_date: date) -> list[DividendEvent]:
        self._record(Operation.DIVIDENDS, instrument)
        return [e for e in self.dividend_events.get(instrument.symbol, []) if start_date <= e.date <= end_date]

    def splits(self, instrument: Instrument, start_date: date, end_date: date) -> list[SplitEvent]:
        self._record(Operation.SPLITS, instrument)
        return [e for e in self.split_events.get(instrument.symbol, []) if start_date <= e.date <= end_date]


def make_chain(*providers: MarketDataProvider, **config) -> ProviderChain:
    """Chain over providers in the given order."""
    return ProviderChain(
        list(providers),
        ProviderChainConfig(order=tuple(p.name for p in providers), **config),
    )


# =============================================================================
# SERVICE FIXTURES
# =============================================================================

@pytest.fixture
def provider() -> MockProvider:
    return MockProvider("mock")


@pytest.fixture
def chain(provider) -> Iterator[ProviderChain]:
    chain = make_chain(provider)
    yield chain
    chain.close()


@pytest.fixture
def fx_service(chain) -> FXRateService:
    return FXRateService(chain)


@pytest.fixture
def price_service(chain) -> PriceHistoryService:
    return PriceHistoryService(chain)


@pytest.fixture
def corporate_actions(chain) -> CorporateActionService:
    return CorporateActionService(chain)


@pytest.fixture
def reconciler(fx_service) -> HoldingReconciler:
    return HoldingReconciler(fx_service)


@pytest.fixture
def rebuilder(fx_service, price_service) -> ValuationRebuilder:
    return ValuationRebuilder(fx_service, price_service, batch_days=7)


@pytest.fixture
def orchestrator(reconciler, rebuilder, price_service, corporate_actions) -> RecomputeOrchestrator:
    return RecomputeOrchestrator(reconciler, rebuilder, price_service, corporate_actions)


@pytest.fixture
def runner(orchestrator, session_factory) -> Iterator[JobRunner]:
    """Synchronous runner without backoff, so jobs finish inside submit()."""
    runner = JobRunner(
        orchestrator,
        session_factory,
        synchronous=True,
        retry_min_wait=0,
        retry_max_wait=0,
    )
    yield runner
    runner.shutdown()


@pytest.fixture
def transaction_service(fx_service, price_service) -> TransactionService:
    return TransactionService(fx_service, price_service)


# =============================================================================
# API CLIENT
# =============================================================================

@pytest.fixture
def client(db, chain, orchestrator, runner, fx_service, price_service) -> Iterator[TestClient]:
    """
    TestClient with every service dependency overridden.

    Requests share the test session; recompute jobs run synchronously on
    their own sessions from the same engine.
    """

    def override_get_db():
        try:
            yield db
        finally:
            pass

    service = TransactionService(fx_service, price_service, runner=runner)
    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_provider_chain] = lambda: chain
    app.dependency_overrides[get_orchestrator] = lambda: orchestrator
    app.dependency_overrides[get_job_runner] = lambda: runner
    app.dependency_overrides[get_transaction_service] = lambda: service

    with TestClient(app) as c:
        yield c

    app.dependency_overrides.clear()


# =============================================================================
# SAMPLE DATA FACTORIES
# =============================================================================

@pytest.fixture
def user(db: Session) -> User:
    user = User(email="investor@example.com")
    db.add(user)
    db.commit()
    return user


@pytest.fixture
def portfolio(db: Session, user: User) -> Portfolio:
    """EUR-based portfolio."""
    portfolio = Portfolio(user_id=user.id, name="Main", currency="EUR")
    db.add(portfolio)
    db.commit()
    return portfolio


@pytest.fixture
def eur_asset(db: Session) -> Asset:
    asset = Asset(ticker="SAP", exchange="XETRA", name="SAP SE", asset_class=AssetClass.STOCK, currency="EUR")
    db.add(asset)
    db.commit()
    return asset


@pytest.fixture
def usd_asset(db: Session) -> Asset:
    asset = Asset(ticker="AAPL", exchange="NASDAQ", name="Apple Inc.", asset_class=AssetClass.STOCK, currency="USD")
    db.add(asset)
    db.commit()
    return asset


@pytest.fixture
def gbp_asset(db: Session) -> Asset:
    """London listing quoted in pence."""
    asset = Asset(ticker="VOD", exchange="LSE", name="Vodafone", asset_class=AssetClass.STOCK, currency="GBp")
    db.add(asset)
    db.commit()
    return asset


def add_transaction(
        db: Session,
        portfolio: Portfolio,
        asset: Asset,
        transaction_type: TransactionType,
        trade_date: date,
        quantity: str,
        price: str,
        fee: str = "0",
        currency: str | None = None,
        fx_rate_to_base: str | None = None,
) -> Transaction:
    """Insert a transaction directly, bypassing the service's guards."""
    txn = Transaction(
        portfolio_id=portfolio.id,
        asset_id=asset.id,
        transaction_type=transaction_type,
        trade_date=trade_date,
        quantity=Decimal(quantity),
        price_per_share=Decimal(price),
        currency=currency or asset.currency,
        fee=Decimal(fee),
        fx_rate_to_base=Decimal(fx_rate_to_base) if fx_rate_to_base is not None else None,
    )
    db.add(txn)
    db.commit()
    return txn


def add_rates(db: Session, from_currency: str, to_currency: str, rates: dict[date, str]) -> None:
    for rate_date, rate in rates.items():
        db.add(CurrencyRate(
            from_currency=from_currency,
            to_currency=to_currency,
            rate_date=rate_date,
            rate=Decimal(rate),
            provider="test",
        ))
    db.commit()


def add_prices(db: Session, asset: Asset, prices: dict[date, str]) -> None:
    for price_date, price in prices.items():
        db.add(PriceHistory(asset_id=asset.id, price_date=price_date, close_price=Decimal(price), provider="test"))
    db.commit()


def add_split(db: Session, asset: Asset, split_date: date, ratio: str) -> StockSplit:
    split = StockSplit(asset_id=asset.id, split_date=split_date, ratio=Decimal(ratio), provider="test")
    db.add(split)
    db.commit()
    return split


def add_dividend(db: Session, portfolio: Portfolio, asset: Asset, pay_date: date, amount: str, currency: str) -> Dividend:
    dividend = Dividend(
        portfolio_id=portfolio.id,
        asset_id=asset.id,
        pay_date=pay_date,
        amount=Decimal(amount),
        currency=currency,
    )
    db.add(dividend)
    db.commit()
    return dividend
