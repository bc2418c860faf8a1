# backend/valuation_engine/services/transactions.py
"""
Transaction Service: records the economic events the engine replays.

This service handles:
- Creating, correcting and deleting transactions and dividends
- Resolving the asset by (ticker, exchange), registering unknown ones
- Computing the currency-normalization fields once, at save time
- Refusing writes that would make the position negative at any point
- Emitting recompute triggers to the job runner after each commit

Normalization fields (Transaction):
    fx_rate_to_base = rate from the trade's ISO currency to the portfolio
                      base currency on the trade date
    base_amount     = (quantity × price ± fee) in base currency
                      (+ fee for BUY/TRANSFER_IN, - fee for SELL/TRANSFER_OUT)
    fx_rate_date    = date the rate actually comes from

    If no rate is available the fields stay NULL; the transaction is still
    recorded and the valuation degrades instead.

Usage:
    service = TransactionService(fx_service, price_service, runner)

    txn = service.create_transaction(
        db, portfolio_id=1, ticker="SAP", exchange="XETRA",
        transaction_type=TransactionType.BUY, trade_date=date(2024, 1, 2),
        quantity=Decimal("10"), price_per_share=Decimal("100"),
    )
"""

import logging
from datetime import date
from decimal import Decimal

from sqlalchemy import select, and_
from sqlalchemy.orm import Session

from valuation_engine.models import (
    Asset,
    AssetClass,
    Dividend,
    Portfolio,
    Transaction,
    TransactionType,
    INFLOW_TYPES,
)
from valuation_engine.services.constants import ZERO
from valuation_engine.services.exceptions import (
    AllProvidersExhausted,
    AssetNotFoundError,
    NotFoundError,
    OversoldPosition,
    PortfolioNotFoundError,
    TransactionNotFoundError,
    ValidationError,
)
from valuation_engine.services.fx_rate_service import FXRateService
from valuation_engine.services.holdings.reconciler import PositionState
from valuation_engine.services.market_data import CorporateActionService, PriceHistoryService
from valuation_engine.services.orchestrator import TriggerType, scope_for_trigger
from valuation_engine.utils.currency import normalize_code, normalize_currency

logger = logging.getLogger(__name__)


class TransactionService:
    """
    Write side of the transaction log.

    Attributes:
        fx_service: Computes normalization fields at save time
        price_service: Checks unknown symbols against providers (optional)
        runner: Receives recompute triggers (optional; None in tests and
                scripts that recompute explicitly)
    """

    def __init__(
            self,
            fx_service: FXRateService,
            price_service: PriceHistoryService | None = None,
            runner=None,
    ) -> None:
        self.fx_service = fx_service
        self.price_service = price_service
        self.runner = runner

    # =========================================================================
    # TRANSACTIONS
    # =========================================================================

    def create_transaction(
            self,
            db: Session,
            portfolio_id: int,
            ticker: str,
            exchange: str,
            transaction_type: TransactionType,
            trade_date: date,
            quantity: Decimal,
            price_per_share: Decimal,
            currency: str | None = None,
            fee: Decimal = ZERO,
            asset_currency: str | None = None,
    ) -> Transaction:
        """
        Record a transaction and trigger a recompute from its date.

        Args:
            currency: Trade currency; defaults to the asset's currency and
                      must match it (minor units such as GBp count as GBP)
            asset_currency: Native currency for an asset not yet known;
                            defaults to currency

        Raises:
            PortfolioNotFoundError: unknown portfolio
            ValidationError: bad values or currency mismatch
            OversoldPosition: the log would remove more than held
        """
        portfolio = self._get_portfolio(db, portfolio_id)
        self._validate_amounts(quantity, price_per_share, fee)
        asset = self.resolve_asset(db, ticker, exchange, asset_currency or currency)
        currency = self._validate_currency(asset, currency)

        txn = Transaction(
            portfolio_id=portfolio.id,
            asset_id=asset.id,
            transaction_type=transaction_type,
            trade_date=trade_date,
            quantity=quantity,
            price_per_share=price_per_share,
            currency=currency,
            fee=fee,
        )
        self._normalize(db, txn, portfolio.currency)
        db.add(txn)
        db.flush()

        self._guard_position(db, portfolio.id, asset.id)
        db.commit()
        db.refresh(txn)

        logger.info(
            f"Recorded {transaction_type.value} {quantity} {asset.ticker}@{asset.exchange} "
            f"on {trade_date} in portfolio {portfolio.id} (transaction {txn.id})"
        )
        self._trigger(portfolio.id, TriggerType.TRANSACTION_CREATED, [asset.id], trade_date)
        return txn

    def update_transaction(
            self,
            db: Session,
            transaction_id: int,
            trade_date: date | None = None,
            quantity: Decimal | None = None,
            price_per_share: Decimal | None = None,
            fee: Decimal | None = None,
    ) -> Transaction:
        """
        Correct a transaction's economic fields.

        Type, asset and portfolio cannot change; delete and re-create
        instead. Normalization fields are recomputed for the corrected
        values.

        Raises:
            TransactionNotFoundError: unknown transaction
            ValidationError: bad values
            OversoldPosition: the corrected log would remove more than held
        """
        txn = self.get_transaction(db, transaction_id)
        previous_date = txn.trade_date

        new_quantity = quantity if quantity is not None else txn.quantity
        new_price = price_per_share if price_per_share is not None else txn.price_per_share
        new_fee = fee if fee is not None else txn.fee
        self._validate_amounts(new_quantity, new_price, new_fee)

        txn.trade_date = trade_date or txn.trade_date
        txn.quantity = new_quantity
        txn.price_per_share = new_price
        txn.fee = new_fee
        self._normalize(db, txn, txn.portfolio.currency)
        db.flush()

        self._guard_position(db, txn.portfolio_id, txn.asset_id)
        db.commit()
        db.refresh(txn)

        logger.info(f"Updated transaction {txn.id} in portfolio {txn.portfolio_id}")
        self._trigger(
            txn.portfolio_id, TriggerType.TRANSACTION_UPDATED, [txn.asset_id], min(previous_date, txn.trade_date)
        )
        return txn

    def delete_transaction(self, db: Session, transaction_id: int) -> None:
        """
        Delete a transaction and trigger a recompute from its date.

        Raises:
            TransactionNotFoundError: unknown transaction
            OversoldPosition: a later sale would exceed what remains held
        """
        txn = self.get_transaction(db, transaction_id)
        portfolio_id, asset_id, trade_date = txn.portfolio_id, txn.asset_id, txn.trade_date

        db.delete(txn)
        db.flush()
        self._guard_position(db, portfolio_id, asset_id)
        db.commit()

        logger.info(f"Deleted transaction {transaction_id} from portfolio {portfolio_id}")
        self._trigger(portfolio_id, TriggerType.TRANSACTION_DELETED, [asset_id], trade_date)

    def get_transaction(self, db: Session, transaction_id: int) -> Transaction:
        txn = db.get(Transaction, transaction_id)
        if txn is None:
            raise TransactionNotFoundError(transaction_id)
        return txn

    def list_transactions(self, db: Session, portfolio_id: int, asset_id: int | None = None) -> list[Transaction]:
        """Transactions of a portfolio in replay order."""
        self._get_portfolio(db, portfolio_id)
        query = select(Transaction).where(Transaction.portfolio_id == portfolio_id)
        if asset_id is not None:
            query = query.where(Transaction.asset_id == asset_id)
        return list(db.scalars(query.order_by(Transaction.trade_date, Transaction.id)).all())

    # =========================================================================
    # DIVIDENDS
    # =========================================================================

    def record_dividend(
            self,
            db: Session,
            portfolio_id: int,
            asset_id: int,
            pay_date: date,
            amount: Decimal,
            currency: str,
    ) -> Dividend:
        """
        Record a dividend and trigger a reconcile of its holding.

        Raises:
            PortfolioNotFoundError, AssetNotFoundError: unknown references
            ValidationError: non-positive amount
        """
        self._get_portfolio(db, portfolio_id)
        if db.get(Asset, asset_id) is None:
            raise AssetNotFoundError(asset_id)
        if amount <= ZERO:
            raise ValidationError("Dividend amount must be positive", field="amount")

        dividend = Dividend(
            portfolio_id=portfolio_id,
            asset_id=asset_id,
            pay_date=pay_date,
            amount=amount,
            currency=currency.strip(),
        )
        db.add(dividend)
        db.commit()
        db.refresh(dividend)

        logger.info(f"Recorded dividend {dividend.id} of {amount} {currency} for asset {asset_id}")
        self._trigger(portfolio_id, TriggerType.DIVIDEND_CHANGED, [asset_id], pay_date)
        return dividend

    def delete_dividend(self, db: Session, dividend_id: int) -> None:
        dividend = db.get(Dividend, dividend_id)
        if dividend is None:
            raise NotFoundError(f"Dividend {dividend_id} not found", resource_type="Dividend", resource_id=dividend_id)
        portfolio_id, asset_id, pay_date = dividend.portfolio_id, dividend.asset_id, dividend.pay_date
        db.delete(dividend)
        db.commit()
        self._trigger(portfolio_id, TriggerType.DIVIDEND_CHANGED, [asset_id], pay_date)

    # =========================================================================
    # ASSETS
    # =========================================================================

    def resolve_asset(
            self,
            db: Session,
            ticker: str,
            exchange: str,
            currency: str | None = None,
    ) -> Asset:
        """
        Asset by (ticker, exchange), registered on first use.

        A new symbol is checked against the provider chain. A provider that
        positively does not know it rejects it; if no provider can be
        reached the asset is registered anyway.

        Raises:
            ValidationError: unknown symbol, or no currency for a new asset
        """
        ticker = ticker.strip().upper()
        exchange = exchange.strip().upper()
        asset = db.scalar(select(Asset).where(and_(Asset.ticker == ticker, Asset.exchange == exchange)))
        if asset is not None:
            return asset

        if not currency:
            raise ValidationError(f"Currency is required for new asset {ticker}@{exchange}", field="currency")

        asset = Asset(ticker=ticker, exchange=exchange, currency=currency.strip(), asset_class=AssetClass.STOCK)
        if self.price_service is not None:
            try:
                known = self.price_service.asset_exists(asset)
            except AllProvidersExhausted as e:
                logger.warning(f"Could not verify {ticker}@{exchange}, registering anyway: {e}")
                known = True
            if not known:
                raise ValidationError(f"Unknown symbol {ticker}@{exchange}", field="ticker")

        db.add(asset)
        db.flush()
        logger.info(f"Registered asset {ticker}@{exchange} ({asset.currency})")
        return asset

    # =========================================================================
    # PRIVATE METHODS
    # =========================================================================

    @staticmethod
    def _get_portfolio(db: Session, portfolio_id: int) -> Portfolio:
        portfolio = db.get(Portfolio, portfolio_id)
        if portfolio is None:
            raise PortfolioNotFoundError(portfolio_id)
        return portfolio

    @staticmethod
    def _validate_amounts(quantity: Decimal, price_per_share: Decimal, fee: Decimal) -> None:
        if quantity <= ZERO:
            raise ValidationError("Quantity must be positive", field="quantity")
        if price_per_share < ZERO:
            raise ValidationError("Price per share cannot be negative", field="price_per_share")
        if fee < ZERO:
            raise ValidationError("Fee cannot be negative", field="fee")

    @staticmethod
    def _validate_currency(asset: Asset, currency: str | None) -> str:
        if not currency:
            return asset.currency
        currency = currency.strip()
        if normalize_code(currency) != normalize_code(asset.currency):
            raise ValidationError(
                f"Trade currency {currency} does not match {asset.ticker}@{asset.exchange} "
                f"currency {asset.currency}",
                field="currency",
            )
        return currency

    def _normalize(self, db: Session, txn: Transaction, base_currency: str) -> None:
        """Fill fx_rate_to_base, base_amount and fx_rate_date from cached or fetched rates."""
        gross = txn.quantity * txn.price_per_share
        fee = txn.fee or ZERO
        gross = gross + fee if txn.transaction_type in INFLOW_TYPES else gross - fee
        iso_currency, iso_amount = normalize_currency(txn.currency, gross)

        rate = self.fx_service.get_rate_or_none(db, iso_currency, base_currency, txn.trade_date)
        if rate is None:
            logger.warning(
                f"No {iso_currency}/{base_currency} rate for transaction on {txn.trade_date}; "
                f"normalization fields left empty"
            )
            txn.fx_rate_to_base = None
            txn.base_amount = None
            txn.fx_rate_date = None
            return

        txn.fx_rate_to_base = rate.rate
        txn.base_amount = iso_amount * rate.rate
        txn.fx_rate_date = rate.actual_date

    @staticmethod
    def _guard_position(db: Session, portfolio_id: int, asset_id: int) -> None:
        """
        Replay quantities (with splits) and raise if any outflow exceeds the position.

        Must run after flush and before commit, so the caller's transaction
        can still be rolled back.
        """
        transactions = db.scalars(
            select(Transaction)
            .where(and_(Transaction.portfolio_id == portfolio_id, Transaction.asset_id == asset_id))
            .order_by(Transaction.trade_date, Transaction.id)
        ).all()
        splits = CorporateActionService.get_splits(db, asset_id)

        position = PositionState()
        split_index = 0
        for txn in transactions:
            while split_index < len(splits) and splits[split_index].split_date <= txn.trade_date:
                position.apply_split(splits[split_index].ratio)
                split_index += 1
            if txn.transaction_type in INFLOW_TYPES:
                position.quantity += txn.quantity
            elif txn.quantity > position.quantity:
                error = OversoldPosition(portfolio_id, asset_id, txn.id, position.quantity, txn.quantity)
                db.rollback()
                raise error
            else:
                position.quantity -= txn.quantity

    def _trigger(self, portfolio_id: int, trigger: TriggerType, asset_ids: list[int], from_date: date) -> None:
        if self.runner is None:
            return
        self.runner.submit(portfolio_id, trigger, scope_for_trigger(trigger, asset_ids=asset_ids, from_date=from_date))
