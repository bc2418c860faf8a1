# backend/tests/services/test_transaction_service.py
"""
Tests for the TransactionService.

This module tests:
- Normalization fields computed at save time (EUR, USD, GBp)
- Asset resolution and registration of new symbols
- Validation of amounts and trade currency
- The oversold guard on create, update and delete
- Dividends
- Recompute triggers sent to the job runner
"""

from datetime import date, timedelta
from decimal import Decimal

import pytest
from sqlalchemy import select

from valuation_engine.models import Asset, Holding, Transaction, TransactionType
from valuation_engine.services.exceptions import (
    AssetNotFoundError,
    NotFoundError,
    OversoldPosition,
    PortfolioNotFoundError,
    TransactionNotFoundError,
    ValidationError,
)
from valuation_engine.services.orchestrator import RecomputeScope, TriggerType
from valuation_engine.services.transactions import TransactionService
from valuation_engine.utils.date_utils import utc_today
from tests.conftest import add_rates, add_split

BUY = TransactionType.BUY
SELL = TransactionType.SELL
JAN_5 = date(2024, 1, 5)


class RecordingRunner:
    def __init__(self):
        self.submitted: list[tuple[int, TriggerType, RecomputeScope]] = []

    def submit(self, portfolio_id, trigger, scope):
        self.submitted.append((portfolio_id, trigger, scope))
        return "job"


@pytest.fixture
def recorder() -> RecordingRunner:
    return RecordingRunner()


@pytest.fixture
def service(fx_service, price_service, recorder) -> TransactionService:
    return TransactionService(fx_service, price_service, runner=recorder)


def buy(service, db, portfolio, quantity="10", price="100", trade_date=JAN_5, ticker="SAP", exchange="XETRA", **kwargs):
    return service.create_transaction(
        db,
        portfolio_id=portfolio.id,
        ticker=ticker,
        exchange=exchange,
        transaction_type=BUY,
        trade_date=trade_date,
        quantity=Decimal(quantity),
        price_per_share=Decimal(price),
        **kwargs,
    )


def sell(service, db, portfolio, quantity, trade_date, price="120", ticker="SAP", exchange="XETRA"):
    return service.create_transaction(
        db,
        portfolio_id=portfolio.id,
        ticker=ticker,
        exchange=exchange,
        transaction_type=SELL,
        trade_date=trade_date,
        quantity=Decimal(quantity),
        price_per_share=Decimal(price),
    )


# =============================================================================
# NORMALIZATION
# =============================================================================

class TestNormalization:
    def test_base_currency_trade(self, db, portfolio, eur_asset, service):
        txn = buy(service, db, portfolio, fee=Decimal("5"))

        assert txn.asset_id == eur_asset.id
        assert txn.currency == "EUR"
        assert txn.fx_rate_to_base == Decimal("1")
        assert txn.base_amount == Decimal("1005")
        assert txn.fx_rate_date == JAN_5

    def test_fee_reduces_sale_proceeds(self, db, portfolio, eur_asset, service):
        buy(service, db, portfolio)

        txn = service.create_transaction(
            db, portfolio.id, "SAP", "XETRA", SELL, date(2024, 1, 8),
            Decimal("4"), Decimal("120"), fee=Decimal("5"),
        )

        assert txn.base_amount == Decimal("475")

    def test_foreign_trade_uses_trade_date_rate(self, db, portfolio, usd_asset, service):
        add_rates(db, "USD", "EUR", {date(2024, 1, 4): "0.9"})

        txn = buy(service, db, portfolio, ticker="AAPL", exchange="NASDAQ", fee=Decimal("5"))

        assert txn.fx_rate_to_base == Decimal("0.9")
        assert txn.base_amount == Decimal("904.5")
        assert txn.fx_rate_date == date(2024, 1, 4)

    def test_pence_trade_scaled_to_pounds(self, db, portfolio, gbp_asset, service):
        add_rates(db, "GBP", "EUR", {JAN_5: "1.2"})

        txn = buy(service, db, portfolio, ticker="VOD", exchange="LSE")

        assert txn.currency == "GBp"
        assert txn.fx_rate_to_base == Decimal("1.2")
        assert txn.base_amount == Decimal("12")

    def test_missing_rate_leaves_fields_empty(self, db, portfolio, usd_asset, service):
        txn = buy(service, db, portfolio, ticker="AAPL", exchange="NASDAQ")

        assert txn.id is not None
        assert txn.fx_rate_to_base is None
        assert txn.base_amount is None
        assert txn.fx_rate_date is None


# =============================================================================
# ASSETS AND VALIDATION
# =============================================================================

class TestAssets:
    def test_existing_asset_matched_case_insensitively(self, db, portfolio, eur_asset, service):
        txn = buy(service, db, portfolio, ticker=" sap ", exchange="xetra")

        assert txn.asset_id == eur_asset.id

    def test_new_symbol_registered(self, db, provider, portfolio, service):
        provider.known.add("ASML")

        txn = buy(service, db, portfolio, ticker="asml", exchange="AEX", currency="EUR")

        asset = db.get(Asset, txn.asset_id)
        assert (asset.ticker, asset.exchange, asset.currency) == ("ASML", "AEX", "EUR")

    def test_unknown_symbol_rejected(self, db, portfolio, service):
        with pytest.raises(ValidationError, match="Unknown symbol NOPE@XETRA"):
            buy(service, db, portfolio, ticker="NOPE", currency="EUR")

        assert db.scalars(select(Asset)).all() == []

    def test_registered_when_providers_unreachable(self, db, provider, portfolio, service):
        provider.transient_failures = -1

        txn = buy(service, db, portfolio, ticker="ASML", exchange="AEX", currency="EUR")

        assert db.get(Asset, txn.asset_id).ticker == "ASML"

    def test_new_asset_needs_currency(self, db, service):
        with pytest.raises(ValidationError) as exc_info:
            service.resolve_asset(db, "ASML", "AEX")

        assert exc_info.value.field == "currency"

    def test_asset_currency_differs_from_trade_currency(self, db, provider, portfolio, service):
        provider.known.add("SHEL")

        txn = buy(service, db, portfolio, ticker="SHEL", exchange="LSE", currency="GBX", asset_currency="GBp")

        assert db.get(Asset, txn.asset_id).currency == "GBp"
        assert txn.currency == "GBX"


class TestValidation:
    @pytest.mark.parametrize("quantity,price,fee,field", [
        ("0", "100", "0", "quantity"),
        ("-1", "100", "0", "quantity"),
        ("10", "-1", "0", "price_per_share"),
        ("10", "100", "-0.01", "fee"),
    ])
    def test_bad_amounts(self, db, portfolio, eur_asset, service, quantity, price, fee, field):
        with pytest.raises(ValidationError) as exc_info:
            buy(service, db, portfolio, quantity=quantity, price=price, fee=Decimal(fee))

        assert exc_info.value.field == field

    def test_currency_must_match_asset(self, db, portfolio, eur_asset, service):
        with pytest.raises(ValidationError, match="does not match"):
            buy(service, db, portfolio, currency="USD")

    def test_minor_unit_alias_accepted(self, db, portfolio, gbp_asset, service):
        txn = buy(service, db, portfolio, ticker="VOD", exchange="LSE", currency="GBX")

        assert txn.currency == "GBX"

    def test_unknown_portfolio(self, db, eur_asset, service):
        with pytest.raises(PortfolioNotFoundError):
            service.create_transaction(db, 999, "SAP", "XETRA", BUY, JAN_5, Decimal("1"), Decimal("1"))


# =============================================================================
# OVERSOLD GUARD
# =============================================================================

class TestOversoldGuard:
    def test_sell_more_than_held(self, db, portfolio, eur_asset, service, recorder):
        buy(service, db, portfolio)
        recorder.submitted.clear()

        with pytest.raises(OversoldPosition) as exc_info:
            sell(service, db, portfolio, "11", date(2024, 1, 8))

        assert exc_info.value.held == Decimal("10")
        assert len(service.list_transactions(db, portfolio.id)) == 1
        assert recorder.submitted == []

    def test_backdated_sell_before_buy(self, db, portfolio, eur_asset, service):
        buy(service, db, portfolio)

        with pytest.raises(OversoldPosition):
            sell(service, db, portfolio, "5", date(2024, 1, 2))

    def test_split_counted(self, db, portfolio, eur_asset, service):
        buy(service, db, portfolio)
        add_split(db, eur_asset, date(2024, 1, 6), "2")

        txn = sell(service, db, portfolio, "20", date(2024, 1, 8))

        assert txn.quantity == Decimal("20")

    def test_update_that_would_oversell(self, db, portfolio, eur_asset, service):
        purchase = buy(service, db, portfolio)
        sell(service, db, portfolio, "8", date(2024, 1, 8))

        with pytest.raises(OversoldPosition):
            service.update_transaction(db, purchase.id, quantity=Decimal("5"))

        assert service.get_transaction(db, purchase.id).quantity == Decimal("10")

    def test_delete_that_would_oversell(self, db, portfolio, eur_asset, service):
        purchase = buy(service, db, portfolio)
        sell(service, db, portfolio, "8", date(2024, 1, 8))

        with pytest.raises(OversoldPosition):
            service.delete_transaction(db, purchase.id)

        assert service.get_transaction(db, purchase.id) is not None


# =============================================================================
# UPDATE, DELETE, LIST
# =============================================================================

class TestMutations:
    def test_update_recomputes_normalization(self, db, portfolio, usd_asset, service):
        add_rates(db, "USD", "EUR", {JAN_5: "0.9", date(2024, 1, 10): "0.8"})
        txn = buy(service, db, portfolio, ticker="AAPL", exchange="NASDAQ")

        updated = service.update_transaction(db, txn.id, trade_date=date(2024, 1, 10), price_per_share=Decimal("110"))

        assert updated.fx_rate_to_base == Decimal("0.8")
        assert updated.base_amount == Decimal("880")

    def test_delete(self, db, portfolio, eur_asset, service):
        txn = buy(service, db, portfolio)

        service.delete_transaction(db, txn.id)

        with pytest.raises(TransactionNotFoundError):
            service.get_transaction(db, txn.id)

    def test_list_in_replay_order(self, db, portfolio, eur_asset, usd_asset, service):
        add_rates(db, "USD", "EUR", {date(2024, 1, 2): "0.9"})
        later = buy(service, db, portfolio, trade_date=date(2024, 1, 9))
        earlier = buy(service, db, portfolio, trade_date=date(2024, 1, 2))
        apple = buy(service, db, portfolio, ticker="AAPL", exchange="NASDAQ", trade_date=date(2024, 1, 3))

        assert [t.id for t in service.list_transactions(db, portfolio.id)] == [earlier.id, apple.id, later.id]
        assert [t.id for t in service.list_transactions(db, portfolio.id, asset_id=eur_asset.id)] == [
            earlier.id, later.id,
        ]


# =============================================================================
# DIVIDENDS
# =============================================================================

class TestDividends:
    def test_record_and_delete(self, db, portfolio, usd_asset, service, recorder):
        dividend = service.record_dividend(db, portfolio.id, usd_asset.id, date(2024, 2, 15), Decimal("25"), "USD")

        assert dividend.id is not None
        _, trigger, scope = recorder.submitted[-1]
        assert trigger == TriggerType.DIVIDEND_CHANGED
        assert scope.rebuild is False

        service.delete_dividend(db, dividend.id)
        with pytest.raises(NotFoundError):
            service.delete_dividend(db, dividend.id)

    def test_amount_must_be_positive(self, db, portfolio, usd_asset, service):
        with pytest.raises(ValidationError):
            service.record_dividend(db, portfolio.id, usd_asset.id, date(2024, 2, 15), Decimal("0"), "USD")

    def test_unknown_asset(self, db, portfolio, service):
        with pytest.raises(AssetNotFoundError):
            service.record_dividend(db, portfolio.id, 999, date(2024, 2, 15), Decimal("1"), "USD")


# =============================================================================
# TRIGGERS
# =============================================================================

class TestTriggers:
    def test_create_triggers_from_trade_date(self, db, portfolio, eur_asset, service, recorder):
        buy(service, db, portfolio)

        assert recorder.submitted == [
            (portfolio.id, TriggerType.TRANSACTION_CREATED, RecomputeScope.for_assets([eur_asset.id], JAN_5)),
        ]

    def test_update_triggers_from_earlier_of_both_dates(self, db, portfolio, eur_asset, service, recorder):
        txn = buy(service, db, portfolio)

        service.update_transaction(db, txn.id, trade_date=date(2024, 1, 12))

        _, trigger, scope = recorder.submitted[-1]
        assert trigger == TriggerType.TRANSACTION_UPDATED
        assert scope.from_date == JAN_5

    def test_delete_triggers(self, db, portfolio, eur_asset, service, recorder):
        txn = buy(service, db, portfolio)

        service.delete_transaction(db, txn.id)

        assert recorder.submitted[-1][1] == TriggerType.TRANSACTION_DELETED

    def test_no_runner_no_trigger(self, db, portfolio, eur_asset, transaction_service):
        txn = buy(transaction_service, db, portfolio)

        assert txn.id is not None

    def test_runner_reconciles_holding(self, db, portfolio, eur_asset, fx_service, price_service, runner):
        service = TransactionService(fx_service, price_service, runner=runner)

        buy(service, db, portfolio, trade_date=utc_today() - timedelta(days=2))

        db.expire_all()
        holding = db.scalar(select(Holding))
        assert holding.quantity == Decimal("10")
        assert runner.last_result(portfolio.id).status == "completed"
        assert db.scalars(select(Transaction)).one().asset_id == eur_asset.id
