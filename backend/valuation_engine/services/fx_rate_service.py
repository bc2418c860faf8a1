# backend/valuation_engine/services/fx_rate_service.py
"""
FX Conversion Service: historic exchange rates with backward fill.

This service handles:
- Converting amounts between currencies on a given date
- Looking up cached rates (exact, inverse, then backward within the lookback window)
- Backfilling missing rates from the provider chain
- Bulk range lookups for the daily valuation rebuild
- Coverage reporting per currency pair

=============================================================================
RATE CONVENTION
=============================================================================

    rate = "1 from_currency = X to_currency"

Example:
    from_currency = "USD", to_currency = "EUR", rate = 0.92
    Meaning: 1 USD = 0.92 EUR

Conversion formula:
    USD → EUR:  EUR_amount = USD_amount × rate
    EUR → USD:  USD_amount = EUR_amount ÷ rate   (inverse lookup)

=============================================================================
WRITE-ONCE CACHE
=============================================================================

A rate recorded for (pair, date) never changes. A later fetch that returns
a different value for the same day is ignored, so every past valuation
can be reproduced from the cache.

Lookup algorithm (convert / get_rate):
    1. Normalize aliases (GBp → GBP with amount ÷ 100)
    2. Same currency → identity, no lookup
    3. Nearest cached rate in [date - FX_LOOKBACK_DAYS, date], direct or
       inverse pair; on the exact date this is an exact match
    4. Nothing cached → fetch the lookback window from the provider chain,
       store it, and look up once more
    5. Still nothing → NoRateAvailable

Usage:
    service = FXRateService(chain, lookback_days=7)

    result = service.convert(db, Decimal("100"), "USD", "EUR", date(2024, 1, 6))
    result.amount         # 92.00
    result.rate_date      # date(2024, 1, 5): Saturday falls back to Friday
    result.is_exact_match # False
"""

import logging
from dataclasses import dataclass, field
from datetime import date, timedelta
from decimal import Decimal
from typing import Any

from sqlalchemy import select, and_, or_, func
from sqlalchemy.orm import Session

from valuation_engine.models import CurrencyRate
from valuation_engine.services.exceptions import AllProvidersExhausted, NoRateAvailable
from valuation_engine.services.providers import Instrument, Operation, ProviderChain
from valuation_engine.utils.currency import minor_unit_divisor, normalize_code, normalize_currency
from valuation_engine.utils.date_utils import date_range, get_business_days
from valuation_engine.utils.sql import insert_ignore

logger = logging.getLogger(__name__)

ONE = Decimal("1")


# =============================================================================
# RESULT DATA CLASSES
# =============================================================================

@dataclass
class FXRateResult:
    """Result of an FX rate lookup."""

    from_currency: str
    to_currency: str
    date: date
    rate: Decimal
    is_exact_match: bool = True
    actual_date: date | None = None
    # True if the rate was derived from the opposite pair
    inverted: bool = False

    def __post_init__(self):
        if self.actual_date is None:
            self.actual_date = self.date


@dataclass(frozen=True)
class ConversionResult:
    """
    Amount converted into the target currency.

    Attributes:
        amount: Converted amount, in to_currency
        rate: Rate applied (1 from_currency = rate to_currency, after alias scaling)
        rate_date: Date the rate is from (differs from requested_date on fallback)
        is_exact_match: False if a prior day's rate was used
    """

    amount: Decimal
    from_currency: str
    to_currency: str
    rate: Decimal
    requested_date: date
    rate_date: date
    is_exact_match: bool


@dataclass
class FXSyncResult:
    """Result of an FX rate sync operation."""

    from_currency: str
    to_currency: str
    start_date: date
    end_date: date
    provider: str | None = None
    rates_fetched: int = 0
    rates_inserted: int = 0
    errors: list[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return len(self.errors) == 0


# =============================================================================
# FX RATE SERVICE
# =============================================================================

class FXRateService:
    """
    Service for converting amounts with historic exchange rates.

    Attributes:
        lookback_days: How far back a missing day may borrow a prior rate

    Thread safety:
        Holds no per-call state; sessions are passed in. Concurrent
        backfills of the same pair are safe because inserts ignore
        conflicts.
    """

    DEFAULT_LOOKBACK_DAYS: int = 7

    def __init__(
            self,
            chain: ProviderChain | None,
            lookback_days: int | None = None,
    ) -> None:
        """
        Args:
            chain: Provider chain used to backfill missing rates. None means
                   cache-only (no network).
            lookback_days: Backward-search window. Defaults to 7; 0 means
                           exact dates only.
        """
        if lookback_days is not None and lookback_days < 0:
            raise ValueError(f"lookback_days must be >= 0, got {lookback_days}")
        self._chain = chain
        self.lookback_days = self.DEFAULT_LOOKBACK_DAYS if lookback_days is None else lookback_days

    # =========================================================================
    # CONVERSION
    # =========================================================================

    def convert(
            self,
            db: Session,
            amount: Decimal,
            from_currency: str,
            to_currency: str,
            on_date: date,
    ) -> ConversionResult:
        """
        Convert amount from one currency to another on a date.

        Raises:
            NoRateAvailable: neither cache nor providers have a usable rate
        """
        from_iso, scaled_amount = normalize_currency(from_currency, amount)
        to_iso = normalize_code(to_currency)
        to_divisor = minor_unit_divisor(to_currency)

        if from_iso == to_iso:
            return ConversionResult(
                amount=scaled_amount * to_divisor,
                from_currency=from_iso,
                to_currency=to_iso,
                rate=ONE,
                requested_date=on_date,
                rate_date=on_date,
                is_exact_match=True,
            )

        rate_result = self.get_rate(db, from_iso, to_iso, on_date)
        return ConversionResult(
            amount=scaled_amount * rate_result.rate * to_divisor,
            from_currency=from_iso,
            to_currency=to_iso,
            rate=rate_result.rate,
            requested_date=on_date,
            rate_date=rate_result.actual_date,
            is_exact_match=rate_result.is_exact_match,
        )

    def get_rate(
            self,
            db: Session,
            from_currency: str,
            to_currency: str,
            on_date: date,
            allow_backfill: bool = True,
    ) -> FXRateResult:
        """
        Get the rate for a pair on a date (ISO codes).

        Args:
            allow_backfill: If True, ask the provider chain when the cache
                            has nothing within the lookback window.

        Raises:
            NoRateAvailable: If no rate found
        """
        from_iso = normalize_code(from_currency)
        to_iso = normalize_code(to_currency)

        if from_iso == to_iso:
            return FXRateResult(from_iso, to_iso, on_date, ONE)

        cached = self.lookup_cached_rate(db, from_iso, to_iso, on_date)
        if cached is not None:
            return cached

        if not allow_backfill or self._chain is None:
            raise NoRateAvailable(from_iso, to_iso, on_date)

        window_start = on_date - timedelta(days=self.lookback_days)
        try:
            self.backfill(db, from_iso, to_iso, window_start, on_date)
        except AllProvidersExhausted as e:
            raise NoRateAvailable(
                from_iso, to_iso, on_date,
                message=f"No FX rate available for {from_iso}/{to_iso} on {on_date}: {e}",
            ) from e

        cached = self.lookup_cached_rate(db, from_iso, to_iso, on_date)
        if cached is None:
            raise NoRateAvailable(from_iso, to_iso, on_date)
        return cached

    def get_rate_or_none(
            self,
            db: Session,
            from_currency: str,
            to_currency: str,
            on_date: date,
            allow_backfill: bool = True,
    ) -> FXRateResult | None:
        try:
            return self.get_rate(db, from_currency, to_currency, on_date, allow_backfill)
        except NoRateAvailable:
            return None

    def lookup_cached_rate(
            self,
            db: Session,
            from_currency: str,
            to_currency: str,
            on_date: date,
    ) -> FXRateResult | None:
        """
        Nearest cached rate at or before on_date within the lookback window.

        Direct and inverse pairs are both considered. The most recent date
        wins; on equal dates the direct pair wins.
        """
        window_start = on_date - timedelta(days=self.lookback_days)

        direct = self._latest_row(db, from_currency, to_currency, window_start, on_date)
        inverse = self._latest_row(db, to_currency, from_currency, window_start, on_date)

        if direct is None and inverse is None:
            return None

        if direct is not None and (inverse is None or direct.rate_date >= inverse.rate_date):
            row, inverted = direct, False
        else:
            row, inverted = inverse, True

        rate = ONE / row.rate if inverted else row.rate
        return FXRateResult(
            from_currency=from_currency,
            to_currency=to_currency,
            date=on_date,
            rate=rate,
            is_exact_match=row.rate_date == on_date,
            actual_date=row.rate_date,
            inverted=inverted,
        )

    def get_last_known_rate(
            self,
            db: Session,
            from_currency: str,
            to_currency: str,
            on_date: date,
    ) -> FXRateResult | None:
        """
        Most recent cached rate at or before on_date, however old.

        Used as the degraded fallback when the lookback window is empty.
        """
        direct = self._latest_row(db, from_currency, to_currency, None, on_date)
        inverse = self._latest_row(db, to_currency, from_currency, None, on_date)
        if direct is None and inverse is None:
            return None
        if direct is not None and (inverse is None or direct.rate_date >= inverse.rate_date):
            return FXRateResult(from_currency, to_currency, on_date, direct.rate,
                                is_exact_match=False, actual_date=direct.rate_date)
        return FXRateResult(from_currency, to_currency, on_date, ONE / inverse.rate,
                            is_exact_match=False, actual_date=inverse.rate_date, inverted=True)

    # =========================================================================
    # BULK LOOKUP
    # =========================================================================

    def get_rates_for_date_range(
            self,
            db: Session,
            from_currency: str,
            to_currency: str,
            start_date: date,
            end_date: date,
            backfill: bool = True,
    ) -> dict[date, FXRateResult]:
        """
        Rates for every calendar date in a range, in two queries.

        Missing dates use the nearest prior rate within the lookback window.
        If some dates have nothing in their window and backfill is True,
        the provider chain is asked once for the uncovered span.

        Returns:
            Dict mapping date -> FXRateResult. Dates with no rate within
            their window are omitted.
        """
        from_iso = normalize_code(from_currency)
        to_iso = normalize_code(to_currency)

        if from_iso == to_iso:
            return {d: FXRateResult(from_iso, to_iso, d, ONE) for d in date_range(start_date, end_date)}

        result = self._build_range(db, from_iso, to_iso, start_date, end_date)

        missing = [d for d in date_range(start_date, end_date) if d not in result]
        if missing and backfill and self._chain is not None:
            fetch_start = min(missing) - timedelta(days=self.lookback_days)
            fetch_end = max(missing)
            try:
                self.backfill(db, from_iso, to_iso, fetch_start, fetch_end)
            except AllProvidersExhausted as e:
                logger.warning(f"FX backfill failed for {from_iso}/{to_iso}: {e}")
            else:
                result = self._build_range(db, from_iso, to_iso, start_date, end_date)

        return result

    def _build_range(
            self,
            db: Session,
            from_currency: str,
            to_currency: str,
            start_date: date,
            end_date: date,
    ) -> dict[date, FXRateResult]:
        extended_start = start_date - timedelta(days=self.lookback_days)
        direct = self._rates_in_range(db, from_currency, to_currency, extended_start, end_date)
        inverse = self._rates_in_range(db, to_currency, from_currency, extended_start, end_date)

        # Per available day: (rate, inverted), direct pair preferred
        available: dict[date, tuple[Decimal, bool]] = {
            d: (ONE / r, True) for d, r in inverse.items()
        }
        available.update({d: (r, False) for d, r in direct.items()})

        result: dict[date, FXRateResult] = {}
        last_date: date | None = None
        for d in date_range(extended_start, end_date):
            if d in available:
                last_date = d
            if d < start_date or last_date is None:
                continue
            if (d - last_date).days > self.lookback_days:
                continue
            rate, inverted = available[last_date]
            result[d] = FXRateResult(
                from_currency=from_currency,
                to_currency=to_currency,
                date=d,
                rate=rate,
                is_exact_match=last_date == d,
                actual_date=last_date,
                inverted=inverted,
            )
        return result

    # =========================================================================
    # BACKFILL / SYNC
    # =========================================================================

    def backfill(
            self,
            db: Session,
            from_currency: str,
            to_currency: str,
            start_date: date,
            end_date: date,
    ) -> int:
        """
        Fetch rates for a window from the provider chain and store them.

        Returns:
            Number of new rows stored

        Raises:
            AllProvidersExhausted: no provider could supply the history
        """
        if self._chain is None:
            return 0

        instrument = Instrument.currency_pair(from_currency, to_currency)
        result = self._chain.resolve(Operation.HISTORY, instrument, start_date, end_date)
        rates = {point.date: point.price for point in result.value}

        inserted = self.store_rates(db, from_currency, to_currency, rates, provider=result.provider)
        logger.info(
            f"FX backfill {from_currency}/{to_currency} {start_date}..{end_date}: "
            f"fetched={len(rates)}, stored={inserted}, provider={result.provider}"
        )
        return inserted

    def store_rates(
            self,
            db: Session,
            from_currency: str,
            to_currency: str,
            rates: dict[date, Decimal],
            provider: str,
    ) -> int:
        """Store rates write-once; existing (pair, date) rows are left untouched."""
        rows = [
            {
                "from_currency": from_currency,
                "to_currency": to_currency,
                "rate_date": rate_date,
                "rate": rate,
                "provider": provider,
            }
            for rate_date, rate in sorted(rates.items())
            if rate > 0
        ]
        inserted = insert_ignore(db, CurrencyRate, rows, ["from_currency", "to_currency", "rate_date"])
        db.flush()
        return inserted

    def sync_rates(
            self,
            db: Session,
            from_currency: str,
            to_currency: str,
            start_date: date,
            end_date: date,
    ) -> FXSyncResult:
        """
        Backfill every missing business day for a pair over a range.

        Returns:
            FXSyncResult with fetch statistics; provider failures are
            reported in errors rather than raised.
        """
        from_iso = normalize_code(from_currency)
        to_iso = normalize_code(to_currency)
        result = FXSyncResult(from_iso, to_iso, start_date, end_date)

        if from_iso == to_iso:
            return result

        existing = self._existing_dates(db, from_iso, to_iso, start_date, end_date)
        missing = [d for d in get_business_days(start_date, end_date) if d not in existing]
        if not missing:
            logger.debug(f"No missing dates for {from_iso}/{to_iso}")
            return result

        if self._chain is None:
            result.errors.append("No provider chain configured")
            return result

        instrument = Instrument.currency_pair(from_iso, to_iso)
        try:
            provider_result = self._chain.resolve(Operation.HISTORY, instrument, min(missing), max(missing))
        except AllProvidersExhausted as e:
            result.errors.append(str(e))
            return result

        rates = {p.date: p.price for p in provider_result.value}
        result.provider = provider_result.provider
        result.rates_fetched = len(rates)
        result.rates_inserted = self.store_rates(db, from_iso, to_iso, rates, provider_result.provider)
        if not rates:
            result.errors.append(f"No rates returned for {from_iso}/{to_iso}")

        logger.info(
            f"FX sync {from_iso}/{to_iso}: fetched={result.rates_fetched}, "
            f"inserted={result.rates_inserted}"
        )
        return result

    def get_coverage(
            self,
            db: Session,
            from_currency: str,
            to_currency: str,
    ) -> dict[str, Any]:
        """
        Coverage of the cache for a pair.

        Returns:
            Dict with from_date, to_date, total_days
        """
        from_iso = normalize_code(from_currency)
        to_iso = normalize_code(to_currency)

        if from_iso == to_iso:
            return {
                "from_currency": from_iso,
                "to_currency": to_iso,
                "from_date": None,
                "to_date": None,
                "total_days": 0,
                "note": "Same currency, no rates needed",
            }

        min_date, max_date, count = db.execute(
            select(
                func.min(CurrencyRate.rate_date),
                func.max(CurrencyRate.rate_date),
                func.count(CurrencyRate.id),
            ).where(
                and_(
                    CurrencyRate.from_currency == from_iso,
                    CurrencyRate.to_currency == to_iso,
                )
            )
        ).one()

        return {
            "from_currency": from_iso,
            "to_currency": to_iso,
            "from_date": min_date,
            "to_date": max_date,
            "total_days": count,
        }

    # =========================================================================
    # PRIVATE METHODS - Database
    # =========================================================================

    @staticmethod
    def _latest_row(
            db: Session,
            from_currency: str,
            to_currency: str,
            window_start: date | None,
            on_date: date,
    ) -> CurrencyRate | None:
        conditions = [
            CurrencyRate.from_currency == from_currency,
            CurrencyRate.to_currency == to_currency,
            CurrencyRate.rate_date <= on_date,
        ]
        if window_start is not None:
            conditions.append(CurrencyRate.rate_date >= window_start)
        query = (
            select(CurrencyRate)
            .where(and_(*conditions))
            .order_by(CurrencyRate.rate_date.desc())
            .limit(1)
        )
        return db.scalars(query).first()

    @staticmethod
    def _rates_in_range(
            db: Session,
            from_currency: str,
            to_currency: str,
            start_date: date,
            end_date: date,
    ) -> dict[date, Decimal]:
        query = select(CurrencyRate.rate_date, CurrencyRate.rate).where(
            and_(
                CurrencyRate.from_currency == from_currency,
                CurrencyRate.to_currency == to_currency,
                CurrencyRate.rate_date >= start_date,
                CurrencyRate.rate_date <= end_date,
            )
        )
        return {row.rate_date: row.rate for row in db.execute(query)}

    @staticmethod
    def _existing_dates(
            db: Session,
            from_currency: str,
            to_currency: str,
            start_date: date,
            end_date: date,
    ) -> set[date]:
        """Dates with a stored rate for the pair in either direction."""
        query = select(CurrencyRate.rate_date).where(
            and_(
                or_(
                    and_(CurrencyRate.from_currency == from_currency, CurrencyRate.to_currency == to_currency),
                    and_(CurrencyRate.from_currency == to_currency, CurrencyRate.to_currency == from_currency),
                ),
                CurrencyRate.rate_date >= start_date,
                CurrencyRate.rate_date <= end_date,
            )
        )
        return set(db.scalars(query).all())
