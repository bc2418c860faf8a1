# backend/valuation_engine/models.py
import enum
from datetime import date, datetime, timezone
from decimal import Decimal

from sqlalchemy import String, Date, DateTime, ForeignKey, Enum, Numeric, UniqueConstraint, Boolean, JSON, Integer, Index
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""
    pass


class TransactionType(str, enum.Enum):
    BUY = "BUY"
    SELL = "SELL"
    TRANSFER_IN = "TRANSFER_IN"
    TRANSFER_OUT = "TRANSFER_OUT"


# Types that add to a position vs. remove from it
INFLOW_TYPES = frozenset({TransactionType.BUY, TransactionType.TRANSFER_IN})
OUTFLOW_TYPES = frozenset({TransactionType.SELL, TransactionType.TRANSFER_OUT})


class AssetClass(str, enum.Enum):
    STOCK = "STOCK"
    ETF = "ETF"
    BOND = "BOND"
    CRYPTO = "CRYPTO"
    CASH = "CASH"
    INDEX = "INDEX"
    OTHER = "OTHER"


class RecomputeState(str, enum.Enum):
    """
    Per-portfolio recompute cycle state.

    State transitions:
        IDLE → RECONCILING_HOLDINGS → REBUILDING_VALUATION → IDLE
        RECONCILING_HOLDINGS → IDLE (reconcile failed, error recorded)
        REBUILDING_VALUATION → IDLE (rebuild failed or superseded)
    """
    IDLE = "IDLE"
    RECONCILING_HOLDINGS = "RECONCILING_HOLDINGS"
    REBUILDING_VALUATION = "REBUILDING_VALUATION"


class User(Base):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(primary_key=True, index=True)
    email: Mapped[str] = mapped_column(String, unique=True, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    portfolios: Mapped[list["Portfolio"]] = relationship(back_populates="owner")


class Portfolio(Base):
    __tablename__ = "portfolios"

    id: Mapped[int] = mapped_column(primary_key=True, index=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), index=True)
    name: Mapped[str] = mapped_column(String)
    # Base currency: every valuation and realized gain is reported in it
    currency: Mapped[str] = mapped_column(String(3), default="EUR")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc))

    owner: Mapped["User"] = relationship(back_populates="portfolios")
    transactions: Mapped[list["Transaction"]] = relationship(
        back_populates="portfolio",
        cascade="all, delete-orphan"
    )
    dividends: Mapped[list["Dividend"]] = relationship(
        back_populates="portfolio",
        cascade="all, delete-orphan"
    )
    holdings: Mapped[list["Holding"]] = relationship(
        back_populates="portfolio",
        cascade="all, delete-orphan"
    )
    daily_changes: Mapped[list["DailyChange"]] = relationship(
        back_populates="portfolio",
        cascade="all, delete-orphan"
    )
    recompute_status: Mapped["RecomputeStatus | None"] = relationship(
        back_populates="portfolio",
        uselist=False,
        cascade="all, delete-orphan"
    )


class Asset(Base):
    """
    Global table of assets shared by all portfolios.

    An asset is uniquely identified by the combination of ticker AND exchange.
    Example: VUAA on XETRA is different from VUAA on LSE (different currency, price).
    """
    __tablename__ = "assets"
    __table_args__ = (
        UniqueConstraint('ticker', 'exchange', name='uq_ticker_exchange'),
    )

    id: Mapped[int] = mapped_column(primary_key=True, index=True)
    ticker: Mapped[str] = mapped_column(String, index=True)  # e.g. "AAPL"
    exchange: Mapped[str] = mapped_column(String, index=True)  # e.g. "XETRA", "LSE"
    name: Mapped[str | None] = mapped_column(String)
    asset_class: Mapped[AssetClass] = mapped_column(Enum(AssetClass), default=AssetClass.STOCK)
    # Native quote currency; may be a minor-unit code such as "GBp"
    currency: Mapped[str] = mapped_column(String, default="EUR")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    transactions: Mapped[list["Transaction"]] = relationship(back_populates="asset")


class Transaction(Base):
    """
    Immutable economic event against one asset in one portfolio.

    Replay order is (trade_date, id). Only the normalization columns
    (fx_rate_to_base, base_amount, fx_rate_date) are written after insert,
    once, when the transaction is saved.
    """
    __tablename__ = "transactions"
    __table_args__ = (
        Index('ix_transaction_portfolio_date', 'portfolio_id', 'trade_date'),
        Index('ix_transaction_portfolio_asset_date', 'portfolio_id', 'asset_id', 'trade_date'),
    )

    id: Mapped[int] = mapped_column(primary_key=True, index=True)
    portfolio_id: Mapped[int] = mapped_column(ForeignKey("portfolios.id"), index=True)
    asset_id: Mapped[int] = mapped_column(ForeignKey("assets.id"), index=True)
    transaction_type: Mapped[TransactionType] = mapped_column(Enum(TransactionType))
    trade_date: Mapped[date] = mapped_column(Date, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    # Numeric(18, 8) supports values up to 9,999,999,999.99999999
    quantity: Mapped[Decimal] = mapped_column(Numeric(18, 8))
    price_per_share: Mapped[Decimal] = mapped_column(Numeric(18, 8))
    currency: Mapped[str] = mapped_column(String, default="EUR")
    fee: Mapped[Decimal] = mapped_column(Numeric(18, 8), default=Decimal(0))

    # Currency normalization, computed once at save time
    fx_rate_to_base: Mapped[Decimal | None] = mapped_column(Numeric(18, 8), nullable=True)
    base_amount: Mapped[Decimal | None] = mapped_column(Numeric(18, 8), nullable=True)
    fx_rate_date: Mapped[date | None] = mapped_column(Date, nullable=True)

    portfolio: Mapped["Portfolio"] = relationship(back_populates="transactions")
    asset: Mapped["Asset"] = relationship(back_populates="transactions")


class Dividend(Base):
    """Cash distribution; feeds income tracking, never quantity."""
    __tablename__ = "dividends"
    __table_args__ = (
        Index('ix_dividend_portfolio_asset_date', 'portfolio_id', 'asset_id', 'pay_date'),
    )

    id: Mapped[int] = mapped_column(primary_key=True, index=True)
    portfolio_id: Mapped[int] = mapped_column(ForeignKey("portfolios.id"), index=True)
    asset_id: Mapped[int] = mapped_column(ForeignKey("assets.id"), index=True)
    pay_date: Mapped[date] = mapped_column(Date, index=True)
    amount: Mapped[Decimal] = mapped_column(Numeric(18, 8))
    currency: Mapped[str] = mapped_column(String)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    portfolio: Mapped["Portfolio"] = relationship(back_populates="dividends")


class Holding(Base):
    """
    Derived position state for one asset in one portfolio.

    Written only by the holding reconciler, which replays the full
    transaction log and replaces the row in place. A holding whose quantity
    reaches zero is kept with is_closed=True while transactions still
    reference it.

    Currency:
        - average_cost and realized_gain_native: asset's native currency
        - realized_gain and dividend_income: portfolio base currency
    """
    __tablename__ = "holdings"
    __table_args__ = (
        UniqueConstraint('portfolio_id', 'asset_id', name='uq_holding_portfolio_asset'),
    )

    id: Mapped[int] = mapped_column(primary_key=True, index=True)
    portfolio_id: Mapped[int] = mapped_column(ForeignKey("portfolios.id"), index=True)
    asset_id: Mapped[int] = mapped_column(ForeignKey("assets.id"), index=True)

    quantity: Mapped[Decimal] = mapped_column(Numeric(18, 8), default=Decimal(0))
    average_cost: Mapped[Decimal] = mapped_column(Numeric(18, 8), default=Decimal(0))
    realized_gain: Mapped[Decimal] = mapped_column(Numeric(18, 8), default=Decimal(0))
    realized_gain_native: Mapped[Decimal] = mapped_column(Numeric(18, 8), default=Decimal(0))
    dividend_income: Mapped[Decimal] = mapped_column(Numeric(18, 8), default=Decimal(0))

    is_closed: Mapped[bool] = mapped_column(Boolean, default=False)
    # True when a conversion to base currency could not be made
    is_degraded: Mapped[bool] = mapped_column(Boolean, default=False)
    degraded_reasons: Mapped[list | None] = mapped_column(JSON, nullable=True)

    last_synced_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc))

    portfolio: Mapped["Portfolio"] = relationship(back_populates="holdings")
    asset: Mapped["Asset"] = relationship()


class MarketData(Base):
    """
    Last-known quote per asset.

    One row per asset, upserted on every quote refresh. A quote whose as_of
    is older than QUOTE_FRESHNESS_MINUTES is stale.
    """
    __tablename__ = "market_data"

    id: Mapped[int] = mapped_column(primary_key=True, index=True)
    asset_id: Mapped[int] = mapped_column(ForeignKey("assets.id"), unique=True, index=True)
    price: Mapped[Decimal] = mapped_column(Numeric(18, 8))
    currency: Mapped[str] = mapped_column(String)
    as_of: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    provider: Mapped[str] = mapped_column(String(50))
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc))

    asset: Mapped["Asset"] = relationship()


class PriceHistory(Base):
    """
    Daily close per asset, fetched from the provider chain.

    Each record represents one trading day for one asset. Days without a
    row (weekends, holidays, gaps) are bridged by backward search.
    """
    __tablename__ = "price_history"
    __table_args__ = (
        UniqueConstraint('asset_id', 'price_date', name='uq_price_history_asset_date'),
    )

    id: Mapped[int] = mapped_column(primary_key=True, index=True)
    asset_id: Mapped[int] = mapped_column(ForeignKey("assets.id"), index=True)
    price_date: Mapped[date] = mapped_column(Date, index=True)
    close_price: Mapped[Decimal] = mapped_column(Numeric(18, 8))
    provider: Mapped[str] = mapped_column(String(50), default="yahoo")
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc)
    )


class StockSplit(Base):
    """
    Recorded split: ratio = new shares per old share.

    Write-once. Applied before any transaction dated on the split date.
    """
    __tablename__ = "stock_splits"
    __table_args__ = (
        UniqueConstraint('asset_id', 'split_date', name='uq_stock_split_asset_date'),
    )

    id: Mapped[int] = mapped_column(primary_key=True, index=True)
    asset_id: Mapped[int] = mapped_column(ForeignKey("assets.id"), index=True)
    split_date: Mapped[date] = mapped_column(Date)
    ratio: Mapped[Decimal] = mapped_column(Numeric(18, 8))
    provider: Mapped[str] = mapped_column(String(50), default="yahoo")
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc)
    )


class CurrencyRate(Base):
    """
    Historical exchange rates between currency pairs.

    Convention: 1 from_currency = rate × to_currency
    Example: from=USD, to=EUR, rate=0.92 means 1 USD = 0.92 EUR

    Rows are write-once: a second write for the same (pair, date) is a no-op,
    which keeps every past valuation reproducible.
    """
    __tablename__ = "currency_rates"
    __table_args__ = (
        UniqueConstraint('from_currency', 'to_currency', 'rate_date',
                         name='uq_currency_rate_pair_date'),
        Index('ix_currency_rate_to_from_date', 'to_currency', 'from_currency', 'rate_date'),
    )

    id: Mapped[int] = mapped_column(primary_key=True, index=True)
    from_currency: Mapped[str] = mapped_column(String(3), index=True)
    to_currency: Mapped[str] = mapped_column(String(3), index=True)
    rate_date: Mapped[date] = mapped_column(Date, index=True)
    rate: Mapped[Decimal] = mapped_column(Numeric(18, 8))
    provider: Mapped[str] = mapped_column(String(50), default="yahoo")
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc)
    )


class DailyChange(Base):
    """
    Portfolio valuation for one calendar date, in base currency.

    After a successful rebuild there is exactly one row per date from the
    first transaction date through today. The table is fully regenerable
    from transactions, price history and currency rates.
    """
    __tablename__ = "daily_changes"

    portfolio_id: Mapped[int] = mapped_column(ForeignKey("portfolios.id"), primary_key=True)
    valuation_date: Mapped[date] = mapped_column(Date, primary_key=True)

    total_value: Mapped[Decimal] = mapped_column(Numeric(18, 8))
    day_change: Mapped[Decimal] = mapped_column(Numeric(18, 8), default=Decimal(0))
    holdings_count: Mapped[int] = mapped_column(Integer, default=0)

    # Example: {"12": {"quantity": "6", "price": "118.5", "price_date": "2024-01-05",
    #                  "fx_rate": "0.92", "fx_date": "2024-01-05", "value": "654.12"}}
    snapshot: Mapped[dict | None] = mapped_column(JSON, nullable=True)

    is_degraded: Mapped[bool] = mapped_column(Boolean, default=False)
    degraded_reasons: Mapped[list | None] = mapped_column(JSON, nullable=True)

    generation: Mapped[int] = mapped_column(Integer, default=0)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc))

    portfolio: Mapped["Portfolio"] = relationship(back_populates="daily_changes")


class RecomputeStatus(Base):
    """
    Tracks the recompute cycle per portfolio.

    generation is bumped by every accepted trigger; a rebuild that finds a
    generation newer than the one it started with abandons its writes.
    """
    __tablename__ = "recompute_status"

    id: Mapped[int] = mapped_column(primary_key=True, index=True)
    portfolio_id: Mapped[int] = mapped_column(
        ForeignKey("portfolios.id"),
        unique=True,
        index=True
    )

    state: Mapped[RecomputeState] = mapped_column(
        Enum(RecomputeState),
        default=RecomputeState.IDLE
    )
    generation: Mapped[int] = mapped_column(Integer, default=0)
    completed_generation: Mapped[int] = mapped_column(Integer, default=0)

    last_trigger: Mapped[str | None] = mapped_column(String(50), nullable=True)
    last_triggered_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    cycle_started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    cycle_completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_error: Mapped[str | None] = mapped_column(String, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc)
    )

    portfolio: Mapped["Portfolio"] = relationship(back_populates="recompute_status")
