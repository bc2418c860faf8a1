# backend/tests/services/test_yahoo_provider.py
"""
Tests for the YahooFinanceProvider.

This module tests:
- Exchange code to Yahoo suffix mapping
- Quote parsing (currency case, market time)
- History parsing from yfinance DataFrames
- Dividend and split series
- Error handling and classification

Note: These tests mock the yfinance library to avoid actual API calls.
"""

from datetime import date, datetime, timezone
from decimal import Decimal
from unittest.mock import PropertyMock, patch

import numpy as np
import pandas as pd
import pytest

from valuation_engine.services.exceptions import ProviderTransientError, SymbolNotFoundError
from valuation_engine.services.providers import Instrument, InstrumentKind, Operation, YahooFinanceProvider


# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture
def provider():
    """Create YahooFinanceProvider instance."""
    return YahooFinanceProvider(timeout=10)


@pytest.fixture
def sample_dataframe():
    """Create sample DataFrame like yfinance returns."""
    dates = pd.date_range(start="2024-01-15", periods=5, freq="B")  # Business days
    return pd.DataFrame({
        "Open": [185.0, 186.0, 184.5, 187.0, 188.0],
        "High": [187.0, 188.0, 186.0, 189.0, 190.0],
        "Low": [184.0, 185.0, 183.5, 186.0, 187.0],
        "Close": [186.0, 185.5, np.nan, 188.0, 189.5],
        "Volume": [1000000, 1100000, 900000, 1200000, 1150000],
    }, index=dates)


SAP = Instrument.equity("SAP", "XETRA")
NVDA = Instrument.equity("NVDA", "NASDAQ")
USDEUR = Instrument.currency_pair("USD", "EUR")


# =============================================================================
# PROVIDER INITIALIZATION
# =============================================================================

class TestYahooProviderInit:
    def test_provider_name(self, provider):
        assert provider.name == "yahoo"

    def test_custom_timeout(self):
        provider = YahooFinanceProvider(timeout=30)
        assert provider._timeout == 30

    def test_supports_every_operation_and_kind(self, provider):
        for operation in Operation:
            assert provider.capabilities.supports(operation, SAP)
            assert provider.capabilities.supports(operation, USDEUR)
        assert provider.capabilities.kinds == frozenset(InstrumentKind)


# =============================================================================
# SYMBOL MAPPING
# =============================================================================

class TestSymbolMapping:
    @pytest.mark.parametrize("exchange,expected", [
        ("NASDAQ", "TEST"),
        ("NYSE", "TEST"),
        ("XETRA", "TEST.DE"),
        ("FRA", "TEST.F"),
        ("LSE", "TEST.L"),
        ("EPA", "TEST.PA"),
        ("AMS", "TEST.AS"),
        ("TSE", "TEST.T"),
        ("SWX", "TEST.SW"),
        ("TSX", "TEST.TO"),
        ("UNKNOWN_EXCHANGE", "TEST"),
    ])
    def test_exchange_suffix_mapping(self, provider, exchange, expected):
        assert provider.build_yahoo_symbol(Instrument.equity("TEST", exchange)) == expected

    def test_currency_pair_symbol(self, provider):
        assert provider.build_yahoo_symbol(USDEUR) == "USDEUR=X"

    def test_equity_without_market(self, provider):
        assert provider.build_yahoo_symbol(Instrument.equity("nvda")) == "NVDA"


# =============================================================================
# EXISTS / QUOTE
# =============================================================================

class TestQuote:
    @patch("valuation_engine.services.providers.yahoo.yf")
    def test_quote_parses_price_currency_and_time(self, mock_yf, provider):
        mock_yf.Ticker.return_value.info = {
            "shortName": "SAP SE",
            "regularMarketPrice": 181.42,
            "currency": "EUR",
            "regularMarketTime": 1718035200,
        }

        quote = provider.quote(SAP)

        mock_yf.Ticker.assert_called_once_with("SAP.DE")
        assert quote.price == Decimal("181.42")
        assert quote.currency == "EUR"
        assert quote.as_of == datetime.fromtimestamp(1718035200, tz=timezone.utc)

    @patch("valuation_engine.services.providers.yahoo.yf")
    def test_quote_keeps_minor_unit_currency(self, mock_yf, provider):
        mock_yf.Ticker.return_value.info = {"shortName": "Vodafone", "currentPrice": 72.5, "currency": "GBp"}

        quote = provider.quote(Instrument.equity("VOD", "LSE"))

        assert quote.currency == "GBp"
        assert quote.price == Decimal("72.5")

    @patch("valuation_engine.services.providers.yahoo.yf")
    def test_currency_pair_quote_in_target_currency(self, mock_yf, provider):
        mock_yf.Ticker.return_value.info = {"regularMarketPrice": 0.9212, "currency": "USD"}

        quote = provider.quote(USDEUR)

        mock_yf.Ticker.assert_called_once_with("USDEUR=X")
        assert quote.currency == "EUR"

    @patch("valuation_engine.services.providers.yahoo.yf")
    def test_quote_invalid_info_is_not_found(self, mock_yf, provider):
        mock_yf.Ticker.return_value.info = {"trailingPegRatio": None}

        with pytest.raises(SymbolNotFoundError):
            provider.quote(Instrument.equity("NOPE", "NASDAQ"))

    @patch("valuation_engine.services.providers.yahoo.yf")
    def test_exists_true_for_valid_info(self, mock_yf, provider):
        mock_yf.Ticker.return_value.info = {"longName": "NVIDIA Corporation"}
        assert provider.exists(NVDA) is True

    @patch("valuation_engine.services.providers.yahoo.yf")
    def test_exists_false_for_empty_info(self, mock_yf, provider):
        mock_yf.Ticker.return_value.info = {}
        assert provider.exists(NVDA) is False

    @patch("valuation_engine.services.providers.yahoo.yf")
    def test_exists_false_when_yahoo_reports_not_found(self, mock_yf, provider):
        type(mock_yf.Ticker.return_value).info = PropertyMock(side_effect=Exception("404 Not Found"))
        assert provider.exists(NVDA) is False

    @patch("valuation_engine.services.providers.yahoo.yf")
    def test_exists_propagates_outage(self, mock_yf, provider):
        type(mock_yf.Ticker.return_value).info = PropertyMock(side_effect=ConnectionError("connection reset"))
        with pytest.raises(ProviderTransientError):
            provider.exists(NVDA)


# =============================================================================
# HISTORY
# =============================================================================

class TestHistory:
    @patch("valuation_engine.services.providers.yahoo.yf")
    def test_parses_closes_and_skips_missing(self, mock_yf, provider, sample_dataframe):
        mock_yf.Ticker.return_value.history.return_value = sample_dataframe

        points = provider.history(NVDA, date(2024, 1, 15), date(2024, 1, 19))

        assert [p.date for p in points] == [
            date(2024, 1, 15), date(2024, 1, 16), date(2024, 1, 18), date(2024, 1, 19),
        ]
        assert points[0].price == Decimal("186")
        assert points[-1].price == Decimal("189.5")

    @patch("valuation_engine.services.providers.yahoo.yf")
    def test_end_date_made_exclusive(self, mock_yf, provider, sample_dataframe):
        mock_yf.Ticker.return_value.history.return_value = sample_dataframe

        provider.history(NVDA, date(2024, 1, 15), date(2024, 1, 19))

        mock_yf.Ticker.return_value.history.assert_called_once_with(
            start="2024-01-15",
            end="2024-01-20",
            interval="1d",
            auto_adjust=False,
            timeout=10,
        )

    @patch("valuation_engine.services.providers.yahoo.yf")
    def test_rows_outside_range_dropped(self, mock_yf, provider, sample_dataframe):
        mock_yf.Ticker.return_value.history.return_value = sample_dataframe

        points = provider.history(NVDA, date(2024, 1, 16), date(2024, 1, 17))

        assert [p.date for p in points] == [date(2024, 1, 16)]

    @patch("valuation_engine.services.providers.yahoo.yf")
    def test_split_adjusted_closes_restored(self, mock_yf, provider):
        """Yahoo divides closes before a split by its ratio; history undoes that."""
        dates = pd.date_range(start="2024-06-06", periods=4, freq="B")
        mock_yf.Ticker.return_value.history.return_value = pd.DataFrame(
            {"Close": [120.0, 121.0, 122.0, 123.0]}, index=dates,
        )
        mock_yf.Ticker.return_value.splits = pd.Series(
            [4.0, 10.0, 2.0],
            index=pd.DatetimeIndex(["2020-08-31", "2024-06-10", "2025-01-02"]),
        )

        points = provider.history(NVDA, date(2024, 6, 6), date(2024, 6, 11))

        # 6-7 June predate both later splits, 10-11 June only the 2025 one
        assert [p.price for p in points] == [
            Decimal("2400"), Decimal("2420"), Decimal("244"), Decimal("246"),
        ]

    @patch("valuation_engine.services.providers.yahoo.yf")
    def test_currency_history_not_split_adjusted(self, mock_yf, provider, sample_dataframe):
        mock_yf.Ticker.return_value.history.return_value = sample_dataframe
        mock_yf.Ticker.return_value.splits = pd.Series([2.0], index=pd.DatetimeIndex(["2024-06-10"]))

        points = provider.history(USDEUR, date(2024, 1, 15), date(2024, 1, 19))

        assert points[0].price == Decimal("186")

    @patch("valuation_engine.services.providers.yahoo.yf")
    def test_empty_frame_for_valid_symbol(self, mock_yf, provider):
        mock_yf.Ticker.return_value.history.return_value = pd.DataFrame()
        mock_yf.Ticker.return_value.info = {"shortName": "NVIDIA"}

        assert provider.history(NVDA, date(2024, 1, 6), date(2024, 1, 7)) == []

    @patch("valuation_engine.services.providers.yahoo.yf")
    def test_empty_frame_for_unknown_symbol(self, mock_yf, provider):
        mock_yf.Ticker.return_value.history.return_value = pd.DataFrame()
        mock_yf.Ticker.return_value.info = {}

        with pytest.raises(SymbolNotFoundError):
            provider.history(NVDA, date(2024, 1, 1), date(2024, 1, 31))


# =============================================================================
# CORPORATE ACTIONS
# =============================================================================

class TestCorporateActions:
    @patch("valuation_engine.services.providers.yahoo.yf")
    def test_splits_in_range(self, mock_yf, provider):
        mock_yf.Ticker.return_value.splits = pd.Series(
            [4.0, 10.0],
            index=pd.DatetimeIndex(["2020-08-31", "2024-06-10"]),
        )

        events = provider.splits(NVDA, date(2024, 1, 1), date(2024, 12, 31))

        assert len(events) == 1
        assert events[0].date == date(2024, 6, 10)
        assert events[0].ratio == Decimal("10")

    @patch("valuation_engine.services.providers.yahoo.yf")
    def test_no_splits(self, mock_yf, provider):
        mock_yf.Ticker.return_value.splits = pd.Series([], dtype=float)

        assert provider.splits(NVDA, date(2024, 1, 1), date(2024, 12, 31)) == []

    @patch("valuation_engine.services.providers.yahoo.yf")
    def test_dividends_sorted_and_positive(self, mock_yf, provider):
        mock_yf.Ticker.return_value.dividends = pd.Series(
            [0.04, 0.0, 0.01],
            index=pd.DatetimeIndex(["2024-09-12", "2024-07-01", "2024-06-11"]),
        )

        events = provider.dividends(NVDA, date(2024, 1, 1), date(2024, 12, 31))

        assert [e.date for e in events] == [date(2024, 6, 11), date(2024, 9, 12)]
        assert events[1].amount == Decimal("0.04")


# =============================================================================
# ERROR CLASSIFICATION
# =============================================================================

class TestErrorClassification:
    @pytest.mark.parametrize("message", [
        "No data found, symbol may be delisted",
        "404 Client Error: Not Found",
    ])
    def test_unknown_symbol_errors(self, provider, message):
        error = provider._classify_error(Exception(message), "XYZ")
        assert isinstance(error, SymbolNotFoundError)

    @pytest.mark.parametrize("message", ["Rate limit reached", "429 Too Many Requests"])
    def test_rate_limit_is_transient(self, provider, message):
        error = provider._classify_error(Exception(message), "XYZ")
        assert isinstance(error, ProviderTransientError)
        assert error.reason == "rate limit exceeded"

    def test_other_errors_are_transient(self, provider):
        error = provider._classify_error(TimeoutError("read timed out"), "XYZ")
        assert isinstance(error, ProviderTransientError)

    @patch("valuation_engine.services.providers.yahoo.yf")
    def test_history_outage_raises_transient(self, mock_yf, provider):
        mock_yf.Ticker.return_value.history.side_effect = ConnectionError("connection reset by peer")

        with pytest.raises(ProviderTransientError):
            provider.history(NVDA, date(2024, 1, 1), date(2024, 1, 31))

    @pytest.mark.parametrize("value,expected", [
        (None, None),
        (float("nan"), None),
        ("abc", None),
        (123.456, Decimal("123.456")),
    ])
    def test_to_decimal(self, value, expected):
        assert YahooFinanceProvider._to_decimal(value) == expected
