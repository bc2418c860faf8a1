# backend/valuation_engine/services/providers/base.py
"""
Abstract interface for market data providers.

Every external source (Yahoo Finance, the ECB reference-rate API, test
doubles) implements this contract. The provider chain only ever talks to
providers through it.

A provider declares what it can do through Capabilities. A request outside
its capabilities is never sent to it; the chain skips it instead.

Error contract for implementations:
    - ProviderTransientError: network, timeout, rate limit, 5xx
    - ProviderConfigError: disabled or missing credentials
    - SymbolNotFoundError: the instrument is unknown to this provider
Implementations never retry; the chain moves on to the next provider and
job-level retries handle the rest.
"""

import enum
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal


# =============================================================================
# REQUEST TYPES
# =============================================================================

class Operation(str, enum.Enum):
    EXISTS = "exists"
    QUOTE = "quote"
    HISTORY = "history"
    DIVIDENDS = "dividends"
    SPLITS = "splits"


# Operations that take a date range
RANGED_OPERATIONS = frozenset({Operation.HISTORY, Operation.DIVIDENDS, Operation.SPLITS})


class InstrumentKind(str, enum.Enum):
    EQUITY = "equity"
    CURRENCY = "currency"


@dataclass(frozen=True)
class Instrument:
    """
    What a provider is asked about.

    Equities are identified by ticker and market (exchange code). Currency
    pairs use the six-letter symbol "USDEUR" meaning 1 USD in EUR, and have
    no market.

    Example:
        Instrument.equity("SAP", "XETRA")
        Instrument.currency_pair("USD", "EUR")
    """

    symbol: str
    kind: InstrumentKind = InstrumentKind.EQUITY
    market: str | None = None

    @classmethod
    def equity(cls, ticker: str, market: str | None = None) -> "Instrument":
        return cls(
            symbol=ticker.strip().upper(),
            kind=InstrumentKind.EQUITY,
            market=market.strip().upper() if market else None,
        )

    @classmethod
    def currency_pair(cls, from_currency: str, to_currency: str) -> "Instrument":
        return cls(
            symbol=f"{from_currency.upper()}{to_currency.upper()}",
            kind=InstrumentKind.CURRENCY,
        )

    @property
    def from_currency(self) -> str:
        if self.kind != InstrumentKind.CURRENCY:
            raise ValueError(f"{self.symbol} is not a currency pair")
        return self.symbol[:3]

    @property
    def to_currency(self) -> str:
        if self.kind != InstrumentKind.CURRENCY:
            raise ValueError(f"{self.symbol} is not a currency pair")
        return self.symbol[3:]

    def __str__(self) -> str:
        if self.kind == InstrumentKind.CURRENCY:
            return f"{self.from_currency}/{self.to_currency}"
        if self.market:
            return f"{self.symbol}@{self.market}"
        return self.symbol


# =============================================================================
# RESPONSE TYPES
# =============================================================================

@dataclass(frozen=True)
class Quote:
    """
    Latest price for an instrument.

    Attributes:
        price: Last traded price (or rate, for currency pairs)
        currency: Currency of price as quoted, possibly a minor unit ("GBp")
        as_of: When the provider observed the price
    """

    price: Decimal
    currency: str
    as_of: datetime

    def __post_init__(self) -> None:
        if self.price <= 0:
            raise ValueError(f"price must be positive, got {self.price}")


@dataclass(frozen=True)
class PricePoint:
    """Daily close (or daily reference rate for currency pairs)."""

    date: date
    price: Decimal

    def __post_init__(self) -> None:
        if self.price <= 0:
            raise ValueError(f"price must be positive, got {self.price}")


@dataclass(frozen=True)
class DividendEvent:
    """Dividend per share paid on date, in the instrument's quote currency."""

    date: date
    amount: Decimal


@dataclass(frozen=True)
class SplitEvent:
    """Stock split effective on date; ratio = new shares per old share."""

    date: date
    ratio: Decimal

    def __post_init__(self) -> None:
        if self.ratio <= 0:
            raise ValueError(f"split ratio must be positive, got {self.ratio}")


# =============================================================================
# CAPABILITIES
# =============================================================================

@dataclass(frozen=True)
class Capabilities:
    """
    What a provider can answer.

    Attributes:
        operations: Supported operations
        kinds: Supported instrument kinds
        markets: Supported exchange codes for equities; None means all
    """

    operations: frozenset[Operation]
    kinds: frozenset[InstrumentKind] = field(default_factory=lambda: frozenset(InstrumentKind))
    markets: frozenset[str] | None = None

    def supports(self, operation: Operation, instrument: Instrument) -> bool:
        if operation not in self.operations:
            return False
        if instrument.kind not in self.kinds:
            return False
        if self.markets is not None and instrument.kind == InstrumentKind.EQUITY:
            return instrument.market is not None and instrument.market in self.markets
        return True


# =============================================================================
# ABSTRACT BASE CLASS
# =============================================================================

class MarketDataProvider(ABC):
    """
    Abstract base class for market data providers.

    Subclasses implement the operations they list in `capabilities`; the
    rest keep the default implementations, which the chain never reaches.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Unique identifier, as used in PROVIDER_ORDER (e.g. "yahoo")."""

    @property
    @abstractmethod
    def capabilities(self) -> Capabilities:
        """Operations, instrument kinds and markets this provider serves."""

    def check_configured(self) -> None:
        """
        Raise ProviderConfigError if the provider cannot be used at all.

        Default: always configured.
        """

    @abstractmethod
    def exists(self, instrument: Instrument) -> bool:
        """Whether the provider knows the instrument."""

    @abstractmethod
    def quote(self, instrument: Instrument) -> Quote:
        """Latest quote; SymbolNotFoundError if unknown."""

    @abstractmethod
    def history(self, instrument: Instrument, start_date: date, end_date: date) -> list[PricePoint]:
        """
        Daily closes between start_date and end_date inclusive, ascending.

        Closes are as traded on the day, not adjusted for later splits;
        holdings apply recorded splits to quantities themselves.
        """

    def dividends(self, instrument: Instrument, start_date: date, end_date: date) -> list[DividendEvent]:
        raise NotImplementedError(f"{self.name} does not provide dividends")

    def splits(self, instrument: Instrument, start_date: date, end_date: date) -> list[SplitEvent]:
        raise NotImplementedError(f"{self.name} does not provide splits")

    def call(
            self,
            operation: Operation,
            instrument: Instrument,
            start_date: date | None = None,
            end_date: date | None = None,
    ):
        """Dispatch an operation by name. Used by the provider chain."""
        if operation == Operation.EXISTS:
            return self.exists(instrument)
        if operation == Operation.QUOTE:
            return self.quote(instrument)
        if start_date is None or end_date is None:
            raise ValueError(f"{operation.value} requires a date range")
        if operation == Operation.HISTORY:
            return self.history(instrument, start_date, end_date)
        if operation == Operation.DIVIDENDS:
            return self.dividends(instrument, start_date, end_date)
        if operation == Operation.SPLITS:
            return self.splits(instrument, start_date, end_date)
        raise ValueError(f"Unknown operation: {operation}")

    def close(self) -> None:
        """Release network resources. Default: nothing to release."""
