# backend/valuation_engine/services/valuation/rebuilder.py
"""
Daily Valuation Rebuilder: one DailyChange row per calendar date.

For a portfolio, values every date from the first transaction (or a given
from_date) through today and upserts the rows by (portfolio, date).

Algorithm:
    1. Fetch ALL transactions (sorted by trade_date, id) and recorded splits
    2. Fill the price cache for each asset over the dates it is held
       (one provider pass per rebuild, via PriceHistoryService)
    3. Batch fetch closes and FX rates for the whole range
    4. ROLLING STATE - O(D + T): walk the calendar once, applying each
       split and transaction on its date, and value the open positions
    5. Upsert rows in batches of REBUILD_BATCH_DAYS, checking the
       portfolio generation before each batch and before the commit

Fallbacks (a fallback marks the date degraded with a reason):
    Price: exact close, else nearest prior within PRICE_LOOKBACK_DAYS
           (not degraded), else last known close, else average cost
    FX:    exact rate, else nearest prior within FX_LOOKBACK_DAYS
           (not degraded), else last known rate, else the rate stored on
           the asset's latest transaction, else the holding is left out

Stale writes:
    The run is tied to the generation it was started for. If a newer
    trigger bumped RecomputeStatus.generation meanwhile, StaleWrite is
    raised and every DailyChange write of the run is rolled back. Price and
    FX cache rows are committed before the first batch, so a superseded run
    still leaves the cache warmer for the next one.

Usage:
    rebuilder = ValuationRebuilder(fx_service, price_service, batch_days=31)
    result = rebuilder.rebuild(db, portfolio_id=1)
    result.rows_written    # one per date from first transaction to today
"""

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal

from sqlalchemy import select, delete, and_, or_
from sqlalchemy.orm import Session

from valuation_engine.models import (
    Asset,
    DailyChange,
    Portfolio,
    RecomputeStatus,
    StockSplit,
    Transaction,
    INFLOW_TYPES,
)
from valuation_engine.services.constants import DECIMAL_QUANTUM, ZERO
from valuation_engine.services.exceptions import (
    OversoldPosition,
    PortfolioNotFoundError,
    StaleWrite,
)
from valuation_engine.services.fx_rate_service import FXRateResult, FXRateService
from valuation_engine.services.holdings.reconciler import PositionState
from valuation_engine.services.market_data import CorporateActionService, PriceHistoryService
from valuation_engine.services.valuation.types import AssetValuation, DayValuation, RebuildResult
from valuation_engine.utils.currency import normalize_code, normalize_currency
from valuation_engine.utils.date_utils import date_range, utc_today
from valuation_engine.utils.sql import upsert

logger = logging.getLogger(__name__)

DAILY_CHANGE_UPDATE_COLUMNS = [
    "total_value",
    "day_change",
    "holdings_count",
    "snapshot",
    "is_degraded",
    "degraded_reasons",
    "generation",
    "updated_at",
]


@dataclass
class _MarketBook:
    """Preloaded prices and rates for one rebuild run."""

    base_currency: str
    prices: dict[int, dict[date, Decimal]] = field(default_factory=dict)
    fx: dict[str, dict[date, FXRateResult]] = field(default_factory=dict)


class ValuationRebuilder:
    """
    Rebuilds the DailyChange series of a portfolio.

    Owns the commit of its run: cache rows are committed first, then the
    DailyChange rows in one transaction that a StaleWrite rolls back.
    """

    DEFAULT_BATCH_DAYS: int = 31

    def __init__(
            self,
            fx_service: FXRateService,
            price_service: PriceHistoryService,
            batch_days: int | None = None,
    ) -> None:
        self.fx_service = fx_service
        if batch_days is not None and batch_days < 1:
            raise ValueError(f"batch_days must be >= 1, got {batch_days}")
        self.price_service = price_service
        self.batch_days = self.DEFAULT_BATCH_DAYS if batch_days is None else batch_days

    def rebuild(
            self,
            db: Session,
            portfolio_id: int,
            from_date: date | None = None,
            generation: int | None = None,
            today: date | None = None,
    ) -> RebuildResult:
        """
        Recompute and upsert DailyChange rows for a portfolio.

        Args:
            portfolio_id: Portfolio to rebuild
            from_date: First date to rewrite; None (or a date at or before
                       the first transaction) means a full rebuild
            generation: Generation this run writes for; None means the
                        portfolio's current generation
            today: Last date to value (defaults to today in UTC)

        Raises:
            PortfolioNotFoundError: unknown portfolio
            StaleWrite: a newer generation was triggered during the run
            OversoldPosition: the transaction log removes more than held
        """
        portfolio = db.get(Portfolio, portfolio_id)
        if portfolio is None:
            raise PortfolioNotFoundError(portfolio_id)

        today = today or utc_today()
        if generation is None:
            generation = self._current_generation(db, portfolio_id)
        result = RebuildResult(portfolio_id=portfolio_id, generation=generation)

        transactions = self._fetch_transactions(db, portfolio_id)
        if not transactions or transactions[0].trade_date > today:
            # Nothing to value: the series is empty
            try:
                result.rows_deleted = self._delete_all(db, portfolio_id)
                self._check_generation(db, portfolio_id, generation)
                db.commit()
            except Exception:
                db.rollback()
                raise
            return result

        first_date = transactions[0].trade_date
        is_full = from_date is None or from_date <= first_date
        start_date = first_date if is_full else min(from_date, today)
        # Value one extra day before a partial range so its day_change matches a full rebuild
        calc_start = start_date if is_full else max(first_date, start_date - timedelta(days=1))

        asset_ids = sorted({txn.asset_id for txn in transactions})
        assets = {a.id: a for a in db.scalars(select(Asset).where(Asset.id.in_(asset_ids))).all()}
        splits = CorporateActionService.get_splits_by_asset(db, asset_ids)

        book = self._load_market_data(
            db, portfolio.currency, assets, transactions, splits, calc_start, today
        )
        db.commit()

        logger.info(
            f"Rebuilding portfolio {portfolio_id} {start_date}..{today} "
            f"(generation={generation}, full={is_full})"
        )

        result.start_date = start_date
        result.end_date = today
        try:
            batch: list[dict] = []
            for day in self._iter_valuations(db, assets, transactions, splits, book, calc_start, today):
                if day.valuation_date < start_date:
                    continue
                batch.append(self._to_row(portfolio_id, day, generation))
                if day.is_degraded:
                    result.degraded_dates.append(day.valuation_date)
                if len(batch) >= self.batch_days:
                    result.rows_written += self._write_batch(db, portfolio_id, batch, generation)
                    batch = []
            if batch:
                result.rows_written += self._write_batch(db, portfolio_id, batch, generation)

            result.rows_deleted = self._delete_outside(
                db, portfolio_id, first_date if is_full else None, today
            )
            self._check_generation(db, portfolio_id, generation)
            db.commit()
        except Exception:
            db.rollback()
            raise

        if result.degraded_dates:
            logger.warning(
                f"Portfolio {portfolio_id}: {len(result.degraded_dates)} of "
                f"{result.rows_written} dates valued with fallback data"
            )
        logger.info(f"Rebuilt portfolio {portfolio_id}: {result.rows_written} rows, {result.rows_deleted} removed")
        return result

    # =========================================================================
    # ROLLING STATE
    # =========================================================================

    def _iter_valuations(
            self,
            db: Session,
            assets: dict[int, Asset],
            transactions: list[Transaction],
            splits: dict[int, list[StockSplit]],
            book: _MarketBook,
            calc_start: date,
            end_date: date,
    ):
        """
        Yield a DayValuation for every date from calc_start to end_date.

        State is rolled forward from the first transaction; dates before
        calc_start only advance the state.
        """
        positions: dict[int, PositionState] = {}
        last_txn_fx: dict[int, Decimal] = {}
        split_index = {asset_id: 0 for asset_id in splits}
        txn_index = 0
        previous_total: Decimal | None = None

        for current in date_range(transactions[0].trade_date, end_date):
            # === PHASE 1: splits, then the day's transactions ===
            for asset_id, asset_splits in splits.items():
                index = split_index[asset_id]
                while index < len(asset_splits) and asset_splits[index].split_date <= current:
                    if asset_id in positions:
                        positions[asset_id].apply_split(asset_splits[index].ratio)
                    index += 1
                split_index[asset_id] = index

            while txn_index < len(transactions) and transactions[txn_index].trade_date <= current:
                txn = transactions[txn_index]
                self._apply_transaction(positions.setdefault(txn.asset_id, PositionState()), txn)
                if txn.fx_rate_to_base is not None:
                    last_txn_fx[txn.asset_id] = txn.fx_rate_to_base
                txn_index += 1

            if current < calc_start:
                continue

            # === PHASE 2: value open positions ===
            day = DayValuation(valuation_date=current, total_value=ZERO)
            for asset_id in sorted(positions):
                position = positions[asset_id]
                if position.quantity <= ZERO:
                    continue
                valuation = self._value_position(
                    db, assets[asset_id], position, book, last_txn_fx.get(asset_id), current, day.degraded_reasons
                )
                day.assets.append(valuation)
                if valuation.value is not None:
                    day.total_value += valuation.value

            day.total_value = day.total_value.quantize(DECIMAL_QUANTUM)
            day.day_change = ZERO if previous_total is None else day.total_value - previous_total
            previous_total = day.total_value
            yield day

    @staticmethod
    def _apply_transaction(position: PositionState, txn: Transaction) -> None:
        if txn.transaction_type in INFLOW_TYPES:
            position.apply_inflow(txn.quantity, txn.price_per_share, txn.fee or ZERO)
            return
        if txn.quantity > position.quantity:
            raise OversoldPosition(
                portfolio_id=txn.portfolio_id,
                asset_id=txn.asset_id,
                transaction_id=txn.id,
                held=position.quantity,
                requested=txn.quantity,
            )
        position.quantity = position.quantity - txn.quantity

    def _value_position(
            self,
            db: Session,
            asset: Asset,
            position: PositionState,
            book: _MarketBook,
            transaction_fx: Decimal | None,
            current: date,
            reasons: list[str],
    ) -> AssetValuation:
        """Value one position on one date, appending a reason for every fallback used."""
        valuation = AssetValuation(asset_id=asset.id, quantity=position.quantity)
        label = f"{asset.ticker}@{asset.exchange}"

        # --- Price ---
        lookup = self.price_service.lookup_price(book.prices.get(asset.id, {}), current)
        if lookup is not None:
            valuation.price, valuation.price_date, valuation.price_source = lookup.price, lookup.price_date, "history"
        else:
            last_known = self.price_service.get_last_known_price(db, asset.id, current)
            if last_known is not None:
                valuation.price, valuation.price_date = last_known.price, last_known.price_date
                valuation.price_source = "last_known"
                reasons.append(f"{label}: last known close from {last_known.price_date.isoformat()}")
            else:
                valuation.price, valuation.price_source = position.average_cost, "cost_basis"
                reasons.append(f"{label}: no close available, valued at cost basis")

        iso_currency, native_value = normalize_currency(asset.currency, position.quantity * valuation.price)

        # --- FX ---
        if iso_currency == book.base_currency:
            valuation.fx_rate, valuation.fx_date = Decimal("1"), current
        else:
            rate = book.fx.get(iso_currency, {}).get(current)
            if rate is None:
                rate = self.fx_service.get_last_known_rate(db, iso_currency, book.base_currency, current)
                if rate is not None:
                    reasons.append(
                        f"{label}: last known {iso_currency}/{book.base_currency} rate "
                        f"from {rate.actual_date.isoformat()}"
                    )
            if rate is not None:
                valuation.fx_rate, valuation.fx_date = rate.rate, rate.actual_date
            elif transaction_fx is not None:
                valuation.fx_rate = transaction_fx
                reasons.append(f"{label}: no {iso_currency}/{book.base_currency} rate, using transaction rate")
            else:
                reasons.append(f"{label}: no {iso_currency}/{book.base_currency} rate, left out of total")
                return valuation

        valuation.value = (native_value * valuation.fx_rate).quantize(DECIMAL_QUANTUM)
        return valuation

    # =========================================================================
    # DATA FETCHING (Batch Operations)
    # =========================================================================

    def _load_market_data(
            self,
            db: Session,
            base_currency: str,
            assets: dict[int, Asset],
            transactions: list[Transaction],
            splits: dict[int, list[StockSplit]],
            calc_start: date,
            end_date: date,
    ) -> _MarketBook:
        """
        Fill caches from providers (once per run) and preload them.

        Closes are synced only over the span each asset is actually held,
        so long-closed positions cause no provider calls.
        """
        book = _MarketBook(base_currency=normalize_code(base_currency))
        spans = self._held_spans(transactions, splits, end_date)
        currencies: set[str] = set()

        for asset_id, (held_from, held_until) in spans.items():
            if held_until < calc_start:
                continue
            asset = assets[asset_id]
            sync_start = max(held_from, calc_start) - timedelta(days=self.price_service.lookback_days)
            self.price_service.sync_history(db, asset, sync_start, held_until)
            book.prices[asset_id] = self.price_service.get_prices_for_range(db, asset_id, calc_start, end_date)

            iso_currency = normalize_code(asset.currency)
            if iso_currency != book.base_currency:
                currencies.add(iso_currency)

        for currency in sorted(currencies):
            book.fx[currency] = self.fx_service.get_rates_for_date_range(
                db, currency, book.base_currency, calc_start, end_date
            )

        return book

    @staticmethod
    def _held_spans(
            transactions: list[Transaction],
            splits: dict[int, list[StockSplit]],
            end_date: date,
    ) -> dict[int, tuple[date, date]]:
        """
        (first trade date, last date held) per asset.

        An asset still held at the end is held until end_date; otherwise
        until the trade that closed it for good.
        """
        quantities: dict[int, Decimal] = {}
        first_seen: dict[int, date] = {}
        last_trade: dict[int, date] = {}
        for txn in transactions:
            first_seen.setdefault(txn.asset_id, txn.trade_date)
            last_trade[txn.asset_id] = txn.trade_date
            sign = 1 if txn.transaction_type in INFLOW_TYPES else -1
            quantities[txn.asset_id] = quantities.get(txn.asset_id, ZERO) + sign * txn.quantity

        spans: dict[int, tuple[date, date]] = {}
        for asset_id, first in first_seen.items():
            # A split after the first trade can leave shares even when the unadjusted sum is zero
            has_split = any(s.split_date > first for s in splits.get(asset_id, []))
            still_held = quantities[asset_id] != ZERO or has_split
            spans[asset_id] = (first, end_date if still_held else last_trade[asset_id])
        return spans

    @staticmethod
    def _fetch_transactions(db: Session, portfolio_id: int) -> list[Transaction]:
        return list(db.scalars(
            select(Transaction)
            .where(Transaction.portfolio_id == portfolio_id)
            .order_by(Transaction.trade_date, Transaction.id)
        ).all())

    # =========================================================================
    # WRITES
    # =========================================================================

    @staticmethod
    def _to_row(portfolio_id: int, day: DayValuation, generation: int) -> dict:
        return {
            "portfolio_id": portfolio_id,
            "valuation_date": day.valuation_date,
            "total_value": day.total_value,
            "day_change": day.day_change,
            "holdings_count": day.holdings_count,
            "snapshot": day.snapshot(),
            "is_degraded": day.is_degraded,
            "degraded_reasons": list(day.degraded_reasons) or None,
            "generation": generation,
            "updated_at": datetime.now(timezone.utc),
        }

    def _write_batch(self, db: Session, portfolio_id: int, rows: list[dict], generation: int) -> int:
        self._check_generation(db, portfolio_id, generation)
        written = upsert(db, DailyChange, rows, ["portfolio_id", "valuation_date"], DAILY_CHANGE_UPDATE_COLUMNS)
        db.flush()
        return written

    @staticmethod
    def _delete_outside(db: Session, portfolio_id: int, first_date: date | None, end_date: date) -> int:
        """
        Delete rows after end_date, and before first_date if given.
        """
        conditions = [DailyChange.valuation_date > end_date]
        if first_date is not None:
            conditions.append(DailyChange.valuation_date < first_date)
        result = db.execute(
            delete(DailyChange).where(and_(DailyChange.portfolio_id == portfolio_id, or_(*conditions)))
        )
        return max(result.rowcount or 0, 0)

    @staticmethod
    def _delete_all(db: Session, portfolio_id: int) -> int:
        result = db.execute(delete(DailyChange).where(DailyChange.portfolio_id == portfolio_id))
        return max(result.rowcount or 0, 0)

    # =========================================================================
    # GENERATION CHECKS
    # =========================================================================

    @staticmethod
    def _current_generation(db: Session, portfolio_id: int) -> int:
        current = db.scalar(
            select(RecomputeStatus.generation).where(RecomputeStatus.portfolio_id == portfolio_id)
        )
        return current or 0

    def _check_generation(self, db: Session, portfolio_id: int, generation: int) -> None:
        current = self._current_generation(db, portfolio_id)
        if current > generation:
            raise StaleWrite(portfolio_id, generation, current)
