# backend/valuation_engine/services/providers/frankfurter.py
"""
ECB reference-rate provider (Frankfurter API).

Serves currency pairs only: exists, quote and history. The ECB publishes
one rate per business day; weekends and TARGET holidays have no entry.

Endpoints used:
    GET /currencies                         -> {"USD": "United States Dollar", ...}
    GET /latest?from=USD&to=EUR             -> {"date": "...", "rates": {"EUR": 0.92}}
    GET /2024-01-02..2024-01-31?from=USD&to=EUR
                                            -> {"rates": {"2024-01-02": {"EUR": 0.91}, ...}}
"""

import logging
from datetime import date, datetime, time, timezone
from decimal import Decimal

import httpx

from valuation_engine.services.constants import DECIMAL_QUANTUM
from valuation_engine.services.exceptions import (
    ProviderConfigError,
    ProviderTransientError,
    SymbolNotFoundError,
)
from valuation_engine.services.providers.base import (
    Capabilities,
    Instrument,
    InstrumentKind,
    MarketDataProvider,
    Operation,
    PricePoint,
    Quote,
)

logger = logging.getLogger(__name__)

# ECB publishes around 16:00 CET
_ECB_PUBLICATION_TIME = time(15, 0, tzinfo=timezone.utc)


class FrankfurterProvider(MarketDataProvider):
    """
    Currency-only provider backed by the Frankfurter API.

    Example:
        provider = FrankfurterProvider("https://api.frankfurter.app", timeout=10)
        points = provider.history(Instrument.currency_pair("USD", "EUR"),
                                  date(2024, 1, 1), date(2024, 1, 31))
    """

    def __init__(
            self,
            base_url: str,
            timeout: float = 10,
            client: httpx.Client | None = None,
    ) -> None:
        """
        Args:
            base_url: API root, e.g. "https://api.frankfurter.app"
            timeout: Request timeout in seconds
            client: Pre-built client (tests pass one with a MockTransport)
        """
        self._base_url = base_url.rstrip("/") if base_url else ""
        self._client = client or (
            httpx.Client(base_url=self._base_url, timeout=timeout, follow_redirects=True)
            if self._base_url else None
        )
        self._currencies: frozenset[str] | None = None
        self._capabilities = Capabilities(
            operations=frozenset({Operation.EXISTS, Operation.QUOTE, Operation.HISTORY}),
            kinds=frozenset({InstrumentKind.CURRENCY}),
        )

    @property
    def name(self) -> str:
        return "frankfurter"

    @property
    def capabilities(self) -> Capabilities:
        return self._capabilities

    def check_configured(self) -> None:
        if self._client is None:
            raise ProviderConfigError(self.name, "FRANKFURTER_BASE_URL is empty")

    # =========================================================================
    # OPERATIONS
    # =========================================================================

    def exists(self, instrument: Instrument) -> bool:
        currencies = self._get_currencies()
        return instrument.from_currency in currencies and instrument.to_currency in currencies

    def quote(self, instrument: Instrument) -> Quote:
        payload = self._get_json(
            "/latest",
            params={"from": instrument.from_currency, "to": instrument.to_currency},
            symbol=str(instrument),
        )
        rate = self._extract_rate(payload.get("rates", {}), instrument)
        if rate is None:
            raise SymbolNotFoundError(str(instrument), self.name)

        rate_date = date.fromisoformat(payload["date"])
        return Quote(
            price=rate,
            currency=instrument.to_currency,
            as_of=datetime.combine(rate_date, _ECB_PUBLICATION_TIME),
        )

    def history(self, instrument: Instrument, start_date: date, end_date: date) -> list[PricePoint]:
        payload = self._get_json(
            f"/{start_date.isoformat()}..{end_date.isoformat()}",
            params={"from": instrument.from_currency, "to": instrument.to_currency},
            symbol=str(instrument),
        )

        points = []
        for day, rates in payload.get("rates", {}).items():
            rate = self._extract_rate(rates, instrument)
            rate_date = date.fromisoformat(day)
            # The API snaps a weekend start back to the prior business day
            if rate is not None and start_date <= rate_date <= end_date:
                points.append(PricePoint(date=rate_date, price=rate))

        points.sort(key=lambda p: p.date)
        return points

    def close(self) -> None:
        if self._client is not None:
            self._client.close()

    # =========================================================================
    # HTTP HELPERS
    # =========================================================================

    def _get_currencies(self) -> frozenset[str]:
        if self._currencies is None:
            payload = self._get_json("/currencies", params=None, symbol="currencies")
            self._currencies = frozenset(code.upper() for code in payload)
        return self._currencies

    def _get_json(self, path: str, params: dict | None, symbol: str) -> dict:
        """
        GET a JSON document, mapping failures onto the provider error contract.

        Raises:
            ProviderConfigError: no base URL configured
            SymbolNotFoundError: 404/422 (unknown currency)
            ProviderTransientError: network error, timeout, 429 or 5xx
        """
        self.check_configured()
        try:
            response = self._client.get(path, params=params)
        except httpx.TimeoutException as e:
            raise ProviderTransientError(self.name, f"timeout: {e}") from e
        except httpx.HTTPError as e:
            raise ProviderTransientError(self.name, f"network error: {e}") from e

        if response.status_code in (404, 422):
            raise SymbolNotFoundError(symbol, self.name)
        if response.status_code == 429:
            raise ProviderTransientError(self.name, "rate limit exceeded")
        if response.status_code >= 400:
            raise ProviderTransientError(self.name, f"HTTP {response.status_code}")

        try:
            return response.json()
        except ValueError as e:
            raise ProviderTransientError(self.name, f"invalid JSON: {e}") from e

    @staticmethod
    def _extract_rate(rates: dict, instrument: Instrument) -> Decimal | None:
        value = rates.get(instrument.to_currency)
        if value is None:
            return None
        rate = Decimal(str(value)).quantize(DECIMAL_QUANTUM)
        return rate if rate > 0 else None
