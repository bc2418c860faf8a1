# backend/valuation_engine/services/market_data/price_history.py
"""
Price History Service: cached daily closes and last-known quotes.

This service handles:
- Fetching missing daily closes from the provider chain (PriceHistory)
- Range lookups with backward fill for the valuation rebuild
- Last-known quote cache per asset (MarketData) with a freshness window

Missing-range detection:
    Only three kinds of gap are fetched, so market holidays do not cause a
    provider call on every rebuild:
    - Head: requested start before the first stored close
    - Tail: business days after the last stored close
    - Holes: gaps between stored closes longer than the lookback window

Usage:
    service = PriceHistoryService(chain, lookback_days=5, freshness_minutes=15)

    service.sync_history(db, asset, date(2024, 1, 1), date.today())
    prices = service.get_prices_for_range(db, asset.id, start, end)
"""

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal

from sqlalchemy import select, and_
from sqlalchemy.orm import Session

from valuation_engine.models import Asset, MarketData, PriceHistory
from valuation_engine.services.exceptions import AllProvidersExhausted
from valuation_engine.services.providers import Instrument, Operation, ProviderChain
from valuation_engine.utils.date_utils import as_utc, get_business_days
from valuation_engine.utils.sql import upsert

logger = logging.getLogger(__name__)


# =============================================================================
# DATA CLASSES
# =============================================================================

@dataclass
class PriceSyncResult:
    """Result of a history sync for one asset."""

    asset_id: int
    ticker: str
    ranges_fetched: list[tuple[date, date]] = field(default_factory=list)
    prices_stored: int = 0
    provider: str | None = None
    error: str | None = None

    @property
    def success(self) -> bool:
        return self.error is None


@dataclass(frozen=True)
class PriceLookup:
    """Close price used for a date, with the date it actually comes from."""

    price: Decimal
    price_date: date
    is_exact_match: bool


# =============================================================================
# PRICE HISTORY SERVICE
# =============================================================================

class PriceHistoryService:
    """
    Cache of daily closes and latest quotes, filled from the provider chain.

    Attributes:
        lookback_days: How far back a missing day may borrow a prior close
        freshness_minutes: Age after which a cached quote is stale
    """

    def __init__(
            self,
            chain: ProviderChain | None,
            lookback_days: int = 5,
            freshness_minutes: int = 15,
    ) -> None:
        self._chain = chain
        self.lookback_days = lookback_days
        self.freshness_minutes = freshness_minutes

    # =========================================================================
    # HISTORY
    # =========================================================================

    def sync_history(
            self,
            db: Session,
            asset: Asset,
            start_date: date,
            end_date: date,
    ) -> PriceSyncResult:
        """
        Fetch and store missing closes for an asset over a range.

        Provider failure is reported in the result, never raised: the
        rebuild degrades instead of failing.
        """
        result = PriceSyncResult(asset_id=asset.id, ticker=asset.ticker)
        if self._chain is None:
            return result

        ranges = self._get_missing_date_ranges(db, asset.id, start_date, end_date)
        if not ranges:
            return result

        instrument = Instrument.equity(asset.ticker, asset.exchange)
        for range_start, range_end in ranges:
            try:
                provider_result = self._chain.resolve(Operation.HISTORY, instrument, range_start, range_end)
            except AllProvidersExhausted as e:
                logger.warning(f"Price history unavailable for {instrument} {range_start}..{range_end}: {e}")
                result.error = str(e)
                continue

            result.ranges_fetched.append((range_start, range_end))
            result.provider = provider_result.provider
            result.prices_stored += self._store_prices(db, asset.id, provider_result.value, provider_result.provider)

        if result.prices_stored:
            logger.info(f"Stored {result.prices_stored} closes for {instrument} from {result.provider}")
        return result

    def get_prices_for_range(
            self,
            db: Session,
            asset_id: int,
            start_date: date,
            end_date: date,
    ) -> dict[date, Decimal]:
        """
        Stored closes for an asset, extended back by the lookback window.

        The extension lets the first dates of the range fall back to a
        close from before the range.
        """
        extended_start = start_date - timedelta(days=self.lookback_days)
        query = select(PriceHistory.price_date, PriceHistory.close_price).where(
            and_(
                PriceHistory.asset_id == asset_id,
                PriceHistory.price_date >= extended_start,
                PriceHistory.price_date <= end_date,
            )
        )
        return {row.price_date: row.close_price for row in db.execute(query)}

    def lookup_price(
            self,
            prices: dict[date, Decimal],
            target_date: date,
    ) -> PriceLookup | None:
        """
        Close for target_date from a preloaded dict, else nearest prior within the window.
        """
        if target_date in prices:
            return PriceLookup(prices[target_date], target_date, True)

        for days_back in range(1, self.lookback_days + 1):
            candidate = target_date - timedelta(days=days_back)
            if candidate in prices:
                return PriceLookup(prices[candidate], candidate, False)

        return None

    def get_last_known_price(
            self,
            db: Session,
            asset_id: int,
            on_date: date,
    ) -> PriceLookup | None:
        """Most recent stored close at or before on_date, however old."""
        row = db.execute(
            select(PriceHistory.price_date, PriceHistory.close_price)
            .where(and_(PriceHistory.asset_id == asset_id, PriceHistory.price_date <= on_date))
            .order_by(PriceHistory.price_date.desc())
            .limit(1)
        ).first()
        if row is None:
            return None
        return PriceLookup(row.close_price, row.price_date, row.price_date == on_date)

    # =========================================================================
    # QUOTES
    # =========================================================================

    def get_quote(self, db: Session, asset: Asset, force: bool = False) -> MarketData | None:
        """
        Cached quote, refreshed through the chain when stale or forced.

        If every provider fails, the stale cached quote is returned (or
        None if there never was one).
        """
        cached = db.scalar(select(MarketData).where(MarketData.asset_id == asset.id))
        if cached is not None and not force and not self.is_quote_stale(cached):
            return cached

        try:
            return self.refresh_quote(db, asset)
        except AllProvidersExhausted as e:
            logger.warning(f"Quote refresh failed for {asset.ticker}@{asset.exchange}: {e}")
            return cached

    def refresh_quote(self, db: Session, asset: Asset) -> MarketData:
        """
        Fetch the latest quote and upsert the MarketData row.

        Raises:
            AllProvidersExhausted: no provider could quote the asset
        """
        if self._chain is None:
            raise AllProvidersExhausted(Operation.QUOTE.value, asset.ticker, [])

        result = self._chain.resolve(Operation.QUOTE, Instrument.equity(asset.ticker, asset.exchange))
        quote = result.value
        upsert(
            db,
            MarketData,
            [{
                "asset_id": asset.id,
                "price": quote.price,
                "currency": quote.currency,
                "as_of": quote.as_of,
                "provider": result.provider,
                "updated_at": datetime.now(timezone.utc),
            }],
            ["asset_id"],
            ["price", "currency", "as_of", "provider", "updated_at"],
        )
        db.flush()
        return db.scalar(
            select(MarketData)
            .where(MarketData.asset_id == asset.id)
            .execution_options(populate_existing=True)
        )

    def is_quote_stale(self, quote: MarketData, now: datetime | None = None) -> bool:
        now = now or datetime.now(timezone.utc)
        return now - as_utc(quote.as_of) > timedelta(minutes=self.freshness_minutes)

    def asset_exists(self, asset: Asset) -> bool:
        """
        Ask the chain whether any provider knows the asset.

        Raises:
            AllProvidersExhausted: every provider failed
        """
        if self._chain is None:
            return True
        return bool(self._chain.resolve(Operation.EXISTS, Instrument.equity(asset.ticker, asset.exchange)).value)

    # =========================================================================
    # PRIVATE METHODS
    # =========================================================================

    def _get_missing_date_ranges(
            self,
            db: Session,
            asset_id: int,
            start_date: date,
            end_date: date,
    ) -> list[tuple[date, date]]:
        """Head, tail and over-long holes in stored history, as (start, end) ranges."""
        stored = sorted(db.scalars(
            select(PriceHistory.price_date).where(
                and_(
                    PriceHistory.asset_id == asset_id,
                    PriceHistory.price_date >= start_date,
                    PriceHistory.price_date <= end_date,
                )
            )
        ).all())

        if not stored:
            return [(start_date, end_date)] if get_business_days(start_date, end_date) else []

        ranges: list[tuple[date, date]] = []

        head_end = stored[0] - timedelta(days=1)
        if get_business_days(start_date, head_end):
            ranges.append((start_date, head_end))

        for previous, current in zip(stored, stored[1:]):
            if (current - previous).days > self.lookback_days:
                ranges.append((previous + timedelta(days=1), current - timedelta(days=1)))

        tail_start = stored[-1] + timedelta(days=1)
        if get_business_days(tail_start, end_date):
            ranges.append((tail_start, end_date))

        return ranges

    @staticmethod
    def _store_prices(db: Session, asset_id: int, points: list, provider: str) -> int:
        rows = [
            {
                "asset_id": asset_id,
                "price_date": point.date,
                "close_price": point.price,
                "provider": provider,
            }
            for point in points
        ]
        written = upsert(db, PriceHistory, rows, ["asset_id", "price_date"], ["close_price", "provider"])
        db.flush()
        return written
