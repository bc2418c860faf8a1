# backend/valuation_engine/services/holdings/reconciler.py
"""
Holding Reconciler: replays a portfolio's transaction log for one asset.

The holding row is derived state. Every reconcile throws away what is
stored and replays the full log from the first transaction, so the result
depends only on the transactions, recorded splits, dividends and cached
FX rates.

Replay order:
    1. Transactions sorted by (trade_date, id)
    2. A split dated d is applied before any transaction dated d
    3. Dividends are folded into income separately (they never move quantity)

Replay rules (all amounts in the asset's native currency unless noted):
    BUY / TRANSFER_IN:
        new_avg = (q × avg + buy_q × price + fee) / (q + buy_q)
    SELL:
        realized_native = sold_q × (price - avg) - fee
        realized (base) = realized_native converted on the trade date
        avg unchanged
    TRANSFER_OUT:
        quantity leaves at average cost, no realized gain
    SPLIT (ratio r):
        q × r, avg ÷ r

A SELL or TRANSFER_OUT larger than the quantity held at that point raises
OversoldPosition before anything is written.

If a realized gain or a dividend cannot be converted to base currency the
replay carries on: the amount is left out of the base-currency total and
the holding is flagged degraded with a reason.

Usage:
    reconciler = HoldingReconciler(fx_service)
    holding = reconciler.reconcile(db, portfolio_id=1, asset_id=7)
"""

import logging
import threading
import weakref
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal

from sqlalchemy import select, and_
from sqlalchemy.orm import Session

from valuation_engine.models import (
    Asset,
    Dividend,
    Holding,
    Portfolio,
    StockSplit,
    Transaction,
    TransactionType,
    INFLOW_TYPES,
)
from valuation_engine.services.constants import DECIMAL_QUANTUM, ZERO
from valuation_engine.services.exceptions import (
    AssetNotFoundError,
    NoRateAvailable,
    OversoldPosition,
    PortfolioNotFoundError,
)
from valuation_engine.services.fx_rate_service import FXRateService
from valuation_engine.services.market_data import CorporateActionService

logger = logging.getLogger(__name__)


# =============================================================================
# REPLAY STATE
# =============================================================================

@dataclass
class PositionState:
    """
    Running state of one position during replay.

    Values are kept at full precision while replaying and quantized once,
    when persisted.
    """

    quantity: Decimal = ZERO
    average_cost: Decimal = ZERO
    realized_gain: Decimal = ZERO
    realized_gain_native: Decimal = ZERO
    dividend_income: Decimal = ZERO
    degraded_reasons: list[str] = field(default_factory=list)

    @property
    def is_closed(self) -> bool:
        return self.quantity == ZERO

    @property
    def is_degraded(self) -> bool:
        return bool(self.degraded_reasons)

    def apply_split(self, ratio: Decimal) -> None:
        self.quantity = self.quantity * ratio
        if self.average_cost:
            self.average_cost = self.average_cost / ratio

    def apply_inflow(self, quantity: Decimal, price: Decimal, fee: Decimal) -> None:
        new_quantity = self.quantity + quantity
        self.average_cost = (self.quantity * self.average_cost + quantity * price + fee) / new_quantity
        self.quantity = new_quantity


# =============================================================================
# RECONCILER
# =============================================================================

class HoldingReconciler:
    """
    Rebuilds Holding rows from the transaction log.

    Attributes:
        fx_service: Converts realized gains and dividends to base currency
    """

    def __init__(self, fx_service: FXRateService) -> None:
        self.fx_service = fx_service
        # One lock per (portfolio, asset) while anyone holds it: replays of
        # the same position never interleave
        self._locks: weakref.WeakValueDictionary = weakref.WeakValueDictionary()
        self._locks_guard = threading.Lock()

    def _position_lock(self, portfolio_id: int, asset_id: int) -> threading.Lock:
        with self._locks_guard:
            return self._locks.setdefault((portfolio_id, asset_id), threading.Lock())

    def reconcile(self, db: Session, portfolio_id: int, asset_id: int) -> Holding | None:
        """
        Replay every transaction for (portfolio, asset) and store the holding.

        The session is flushed, not committed; the caller owns the unit of
        work.

        Returns:
            The updated Holding, or None when no transactions remain (any
            stored holding is deleted).

        Raises:
            PortfolioNotFoundError: unknown portfolio
            AssetNotFoundError: unknown asset
            OversoldPosition: the log removes more than was held
        """
        with self._position_lock(portfolio_id, asset_id):
            return self._reconcile_locked(db, portfolio_id, asset_id)

    def _reconcile_locked(self, db: Session, portfolio_id: int, asset_id: int) -> Holding | None:
        portfolio = db.get(Portfolio, portfolio_id)
        if portfolio is None:
            raise PortfolioNotFoundError(portfolio_id)
        asset = db.get(Asset, asset_id)
        if asset is None:
            raise AssetNotFoundError(asset_id)

        transactions = self._fetch_transactions(db, portfolio_id, asset_id)
        existing = db.scalar(
            select(Holding).where(
                and_(Holding.portfolio_id == portfolio_id, Holding.asset_id == asset_id)
            )
        )

        if not transactions:
            if existing is not None:
                logger.info(f"Removing holding for asset {asset_id} in portfolio {portfolio_id}: no transactions left")
                db.delete(existing)
                db.flush()
            return None

        state = self.replay(
            db,
            portfolio=portfolio,
            asset=asset,
            transactions=transactions,
            splits=CorporateActionService.get_splits(db, asset_id),
            dividends=self._fetch_dividends(db, portfolio_id, asset_id),
        )

        holding = self._persist(db, existing, portfolio_id, asset_id, state)
        logger.debug(
            f"Reconciled asset {asset_id} in portfolio {portfolio_id}: "
            f"qty={holding.quantity} avg={holding.average_cost} realized={holding.realized_gain}"
        )
        return holding

    def reconcile_portfolio(
            self,
            db: Session,
            portfolio_id: int,
            asset_ids: list[int] | None = None,
    ) -> list[Holding]:
        """
        Reconcile several assets of a portfolio, or all of them.

        With asset_ids None, every asset that has a transaction or a stored
        holding is reconciled. Assets are processed in id order.
        """
        if asset_ids is None:
            asset_ids = self.get_portfolio_asset_ids(db, portfolio_id)

        holdings = []
        for asset_id in sorted(set(asset_ids)):
            holding = self.reconcile(db, portfolio_id, asset_id)
            if holding is not None:
                holdings.append(holding)
        return holdings

    @staticmethod
    def get_portfolio_asset_ids(db: Session, portfolio_id: int) -> list[int]:
        """Assets referenced by the portfolio's transactions or holdings."""
        from_transactions = set(db.scalars(
            select(Transaction.asset_id).where(Transaction.portfolio_id == portfolio_id).distinct()
        ).all())
        from_holdings = set(db.scalars(
            select(Holding.asset_id).where(Holding.portfolio_id == portfolio_id)
        ).all())
        return sorted(from_transactions | from_holdings)

    # =========================================================================
    # REPLAY
    # =========================================================================

    def replay(
            self,
            db: Session,
            portfolio: Portfolio,
            asset: Asset,
            transactions: list[Transaction],
            splits: list[StockSplit],
            dividends: list[Dividend],
    ) -> PositionState:
        """
        Fold the ordered event stream into a PositionState.

        Args:
            transactions: Sorted by (trade_date, id)
            splits: Sorted by split_date
            dividends: Any order

        Raises:
            OversoldPosition: a SELL/TRANSFER_OUT exceeds the held quantity
        """
        state = PositionState()
        split_index = 0

        for txn in transactions:
            # Splits dated on or before this trade take effect first
            while split_index < len(splits) and splits[split_index].split_date <= txn.trade_date:
                state.apply_split(splits[split_index].ratio)
                split_index += 1

            fee = txn.fee or ZERO

            if txn.transaction_type in INFLOW_TYPES:
                state.apply_inflow(txn.quantity, txn.price_per_share, fee)
                continue

            if txn.quantity > state.quantity:
                raise OversoldPosition(
                    portfolio_id=portfolio.id,
                    asset_id=asset.id,
                    transaction_id=txn.id,
                    held=state.quantity,
                    requested=txn.quantity,
                )

            state.quantity = state.quantity - txn.quantity

            if txn.transaction_type == TransactionType.SELL:
                gain_native = txn.quantity * (txn.price_per_share - state.average_cost) - fee
                state.realized_gain_native += gain_native
                self._add_in_base(
                    db, state, "realized_gain", gain_native,
                    txn.currency or asset.currency, portfolio.currency, txn.trade_date,
                    f"sale transaction {txn.id}",
                )

        # Splits after the last trade still change the position held today
        while split_index < len(splits):
            state.apply_split(splits[split_index].ratio)
            split_index += 1

        for dividend in sorted(dividends, key=lambda d: (d.pay_date, d.id)):
            self._add_in_base(
                db, state, "dividend_income", dividend.amount,
                dividend.currency, portfolio.currency, dividend.pay_date,
                f"dividend {dividend.id}",
            )

        return state

    def _add_in_base(
            self,
            db: Session,
            state: PositionState,
            attribute: str,
            amount: Decimal,
            from_currency: str,
            base_currency: str,
            on_date: date,
            description: str,
    ) -> None:
        """Convert amount to base currency and add it to a state accumulator, or flag degraded."""
        try:
            converted = self.fx_service.convert(db, amount, from_currency, base_currency, on_date)
        except NoRateAvailable as e:
            logger.warning(f"Leaving {description} out of {attribute}: {e}")
            state.degraded_reasons.append(
                f"No {from_currency}/{base_currency} rate for {description} on {on_date.isoformat()}"
            )
            return
        setattr(state, attribute, getattr(state, attribute) + converted.amount)

    # =========================================================================
    # PERSISTENCE
    # =========================================================================

    @staticmethod
    def _persist(
            db: Session,
            holding: Holding | None,
            portfolio_id: int,
            asset_id: int,
            state: PositionState,
    ) -> Holding:
        if holding is None:
            holding = Holding(portfolio_id=portfolio_id, asset_id=asset_id)
            db.add(holding)

        holding.quantity = state.quantity.quantize(DECIMAL_QUANTUM)
        holding.average_cost = state.average_cost.quantize(DECIMAL_QUANTUM)
        holding.realized_gain = state.realized_gain.quantize(DECIMAL_QUANTUM)
        holding.realized_gain_native = state.realized_gain_native.quantize(DECIMAL_QUANTUM)
        holding.dividend_income = state.dividend_income.quantize(DECIMAL_QUANTUM)
        holding.is_closed = state.is_closed
        holding.is_degraded = state.is_degraded
        holding.degraded_reasons = list(state.degraded_reasons) or None
        holding.last_synced_at = datetime.now(timezone.utc)

        db.flush()
        return holding

    @staticmethod
    def _fetch_transactions(db: Session, portfolio_id: int, asset_id: int) -> list[Transaction]:
        return list(db.scalars(
            select(Transaction)
            .where(and_(Transaction.portfolio_id == portfolio_id, Transaction.asset_id == asset_id))
            .order_by(Transaction.trade_date, Transaction.id)
        ).all())

    @staticmethod
    def _fetch_dividends(db: Session, portfolio_id: int, asset_id: int) -> list[Dividend]:
        return list(db.scalars(
            select(Dividend)
            .where(and_(Dividend.portfolio_id == portfolio_id, Dividend.asset_id == asset_id))
            .order_by(Dividend.pay_date, Dividend.id)
        ).all())
