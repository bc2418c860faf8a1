# backend/valuation_engine/services/providers/yahoo.py
"""
Yahoo Finance provider implementation.

Uses the yfinance library for equities and currency pairs on every market
Yahoo lists. Supports all five operations.

Key features:
- Exchange code mapping (our codes → Yahoo's suffixes)
- Currency pairs as "USDEUR=X" symbols
- Error classification: unknown symbol vs. transient failure

Limitations:
- Rate limits (not officially documented, but exist)
- Data may be delayed (15-20 minutes for some markets)
"""

import logging
import math
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation
from typing import Any

import yfinance as yf

from valuation_engine.services.constants import DECIMAL_QUANTUM
from valuation_engine.services.exceptions import (
    ProviderTransientError,
    SymbolNotFoundError,
)
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

logger = logging.getLogger(__name__)


class YahooFinanceProvider(MarketDataProvider):
    """
    Yahoo Finance implementation of MarketDataProvider.

    Example:
        provider = YahooFinanceProvider(timeout=15)

        quote = provider.quote(Instrument.equity("NVDA", "NASDAQ"))
        points = provider.history(
            Instrument.currency_pair("USD", "EUR"),
            date(2024, 1, 1), date(2024, 1, 31),
        )
    """

    # =========================================================================
    # EXCHANGE MAPPING
    # =========================================================================
    # Yahoo uses suffixes for non-US exchanges (e.g., ".DE" for Germany).
    # US exchanges (NASDAQ, NYSE) use no suffix.

    EXCHANGE_SUFFIXES: dict[str, str] = {
        # US
        "NASDAQ": "",
        "NYSE": "",
        "NYSEARCA": "",
        "AMEX": "",
        "BATS": "",

        # Germany
        "XETRA": ".DE",
        "IBIS": ".DE",
        "FRA": ".F",

        # UK
        "LSE": ".L",
        "LON": ".L",

        # Euronext
        "EPA": ".PA",
        "AMS": ".AS",
        "BRU": ".BR",
        "MIL": ".MI",
        "BME": ".MC",

        # Switzerland
        "SWX": ".SW",

        # Asia-Pacific
        "TSE": ".T",
        "HKEX": ".HK",
        "ASX": ".AX",
        "NSE": ".NS",

        # Americas
        "TSX": ".TO",
        "B3": ".SA",

        # Nordics
        "STO": ".ST",
        "CPH": ".CO",
        "HEL": ".HE",
        "OSL": ".OL",

        # Middle East / Africa
        "TASE": ".TA",
        "JSE": ".JO",
    }

    def __init__(self, timeout: float = 10) -> None:
        """
        Args:
            timeout: Request timeout in seconds, passed to yfinance
        """
        self._timeout = timeout
        self._capabilities = Capabilities(
            operations=frozenset(Operation),
            kinds=frozenset({InstrumentKind.EQUITY, InstrumentKind.CURRENCY}),
            markets=None,
        )

    @property
    def name(self) -> str:
        return "yahoo"

    @property
    def capabilities(self) -> Capabilities:
        return self._capabilities

    # =========================================================================
    # OPERATIONS
    # =========================================================================

    def exists(self, instrument: Instrument) -> bool:
        yahoo_symbol = self.build_yahoo_symbol(instrument)
        try:
            info = yf.Ticker(yahoo_symbol).info
        except Exception as e:
            error = self._classify_error(e, yahoo_symbol)
            if isinstance(error, SymbolNotFoundError):
                return False
            raise error from e
        return self._is_valid_ticker_info(info)

    def quote(self, instrument: Instrument) -> Quote:
        yahoo_symbol = self.build_yahoo_symbol(instrument)
        logger.debug(f"Fetching quote for {yahoo_symbol}")

        try:
            info = yf.Ticker(yahoo_symbol).info
        except Exception as e:
            raise self._classify_error(e, yahoo_symbol) from e

        if not self._is_valid_ticker_info(info):
            raise SymbolNotFoundError(yahoo_symbol, self.name)

        price = self._to_decimal(info.get("regularMarketPrice") or info.get("currentPrice"))
        if price is None or price <= 0:
            raise SymbolNotFoundError(yahoo_symbol, self.name)

        if instrument.kind == InstrumentKind.CURRENCY:
            currency = instrument.to_currency
        else:
            # Keep case: "GBp" (pence) differs from "GBP"
            currency = info.get("currency") or "USD"

        market_time = info.get("regularMarketTime")
        if isinstance(market_time, (int, float)):
            as_of = datetime.fromtimestamp(market_time, tz=timezone.utc)
        else:
            as_of = datetime.now(timezone.utc)

        return Quote(price=price, currency=currency, as_of=as_of)

    def history(self, instrument: Instrument, start_date: date, end_date: date) -> list[PricePoint]:
        yahoo_symbol = self.build_yahoo_symbol(instrument)
        logger.debug(f"Fetching history for {yahoo_symbol}: {start_date} to {end_date}")

        try:
            yf_ticker = yf.Ticker(yahoo_symbol)

            # Yahoo Finance end date is exclusive, so add 1 day
            df = yf_ticker.history(
                start=start_date.isoformat(),
                end=(end_date + timedelta(days=1)).isoformat(),
                interval="1d",
                auto_adjust=False,
                timeout=self._timeout,
            )

            if df.empty:
                if not self._is_valid_ticker_info(yf_ticker.info):
                    raise SymbolNotFoundError(yahoo_symbol, self.name)
                logger.debug(f"No price data for {yahoo_symbol} between {start_date} and {end_date}")
                return []

            # Close is split-adjusted even with auto_adjust=False
            later_splits = []
            if instrument.kind == InstrumentKind.EQUITY:
                later_splits = self._split_ratios(yf_ticker.splits, start_date)

        except SymbolNotFoundError:
            raise
        except Exception as e:
            raise self._classify_error(e, yahoo_symbol) from e

        points = []
        for idx, row in df.iterrows():
            price_date = idx.date() if hasattr(idx, "date") else idx
            close = self._to_decimal(row.get("Close"))
            if close is None or close <= 0:
                logger.debug(f"Skipping {yahoo_symbol} {price_date}: missing close price")
                continue
            factor = Decimal("1")
            for split_date, ratio in later_splits:
                if split_date > price_date:
                    factor *= ratio
            if factor != 1:
                close = (close * factor).quantize(DECIMAL_QUANTUM)
            if start_date <= price_date <= end_date:
                points.append(PricePoint(date=price_date, price=close))

        points.sort(key=lambda p: p.date)
        return points

    def dividends(self, instrument: Instrument, start_date: date, end_date: date) -> list[DividendEvent]:
        yahoo_symbol = self.build_yahoo_symbol(instrument)
        try:
            series = yf.Ticker(yahoo_symbol).dividends
        except Exception as e:
            raise self._classify_error(e, yahoo_symbol) from e

        events = []
        for idx, value in self._series_items(series, start_date, end_date):
            amount = self._to_decimal(value)
            if amount is not None and amount > 0:
                events.append(DividendEvent(date=idx, amount=amount))
        return events

    def splits(self, instrument: Instrument, start_date: date, end_date: date) -> list[SplitEvent]:
        yahoo_symbol = self.build_yahoo_symbol(instrument)
        try:
            series = yf.Ticker(yahoo_symbol).splits
        except Exception as e:
            raise self._classify_error(e, yahoo_symbol) from e

        events = []
        for idx, value in self._series_items(series, start_date, end_date):
            ratio = self._to_decimal(value)
            if ratio is not None and ratio > 0:
                events.append(SplitEvent(date=idx, ratio=ratio))
        return events

    # =========================================================================
    # HELPER METHODS
    # =========================================================================

    def build_yahoo_symbol(self, instrument: Instrument) -> str:
        """
        Build the Yahoo Finance symbol for an instrument.

        Examples:
            NVDA@NASDAQ -> "NVDA"
            SAP@XETRA   -> "SAP.DE"
            USD/EUR     -> "USDEUR=X"
        """
        if instrument.kind == InstrumentKind.CURRENCY:
            return f"{instrument.symbol}=X"
        suffix = self.EXCHANGE_SUFFIXES.get(instrument.market or "", "")
        return f"{instrument.symbol}{suffix}"

    def _classify_error(self, error: Exception, yahoo_symbol: str) -> Exception:
        """Map a yfinance exception onto the provider error contract."""
        error_str = str(error).lower()
        if "not found" in error_str or "delisted" in error_str or "no data" in error_str:
            return SymbolNotFoundError(yahoo_symbol, self.name)
        if "rate limit" in error_str or "too many requests" in error_str:
            return ProviderTransientError(self.name, "rate limit exceeded")
        logger.debug(f"Yahoo Finance error for {yahoo_symbol}: {error}")
        return ProviderTransientError(self.name, str(error))

    def _split_ratios(self, series, start_date: date) -> list[tuple[date, Decimal]]:
        """Splits after start_date, through today, as (date, ratio)."""
        ratios = []
        for split_date, value in self._series_items(series, start_date + timedelta(days=1), date.max):
            ratio = self._to_decimal(value)
            if ratio is not None and ratio > 0:
                ratios.append((split_date, ratio))
        return ratios

    @staticmethod
    def _series_items(series, start_date: date, end_date: date) -> list[tuple[date, Any]]:
        """(date, value) pairs from a yfinance date-indexed Series, within range."""
        if series is None or len(series) == 0:
            return []
        items = []
        for idx, value in series.items():
            event_date = idx.date() if hasattr(idx, "date") else idx
            if start_date <= event_date <= end_date:
                items.append((event_date, value))
        items.sort(key=lambda item: item[0])
        return items

    @staticmethod
    def _is_valid_ticker_info(info: dict | None) -> bool:
        """
        Check if a Yahoo Finance info dict represents a real symbol.

        Yahoo returns an info dict even for invalid tickers, but it lacks
        meaningful data.
        """
        if not info:
            return False
        return bool(
            info.get("regularMarketPrice")
            or info.get("shortName")
            or info.get("longName")
        )

    @staticmethod
    def _to_decimal(value: Any) -> Decimal | None:
        """Convert a value to Decimal, returning None for NaN/None."""
        if value is None:
            return None
        try:
            if math.isnan(float(value)):
                return None
            return Decimal(str(value)).quantize(DECIMAL_QUANTUM)
        except (TypeError, ValueError, InvalidOperation):
            return None
