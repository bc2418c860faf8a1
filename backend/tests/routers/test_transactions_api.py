# tests/routers/test_transactions_api.py
"""
Integration tests for transaction and dividend correction endpoints.

These tests verify full HTTP request/response cycles for:
- GET /transactions/{id} (Read)
- PUT /transactions/{id} (Correct)
- DELETE /transactions/{id} (Delete)
- DELETE /dividends/{id} (Delete)

Tests validate:
- Correct status codes
- Recompute after every write
- The oversold guard on corrections and deletions (409)
"""

from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy.orm import Session

from valuation_engine.models import Asset, Portfolio, TransactionType
from valuation_engine.utils.date_utils import utc_today
from tests.conftest import add_dividend


# =============================================================================
# FACTORY FUNCTIONS
# =============================================================================

def seed_transaction(
        client,
        portfolio: Portfolio,
        transaction_type: TransactionType = TransactionType.BUY,
        quantity: str = "10",
        days_ago: int = 3,
) -> dict:
    """Record a SAP transaction through the API."""
    response = client.post(
        f"/portfolios/{portfolio.id}/transactions",
        json={
            "ticker": "SAP",
            "exchange": "XETRA",
            "transaction_type": transaction_type.value,
            "trade_date": (utc_today() - timedelta(days=days_ago)).isoformat(),
            "quantity": quantity,
            "price_per_share": "100",
        },
    )
    assert response.status_code == 201
    return response.json()


def holding_quantity(client, portfolio: Portfolio) -> Decimal:
    holdings = client.get(f"/portfolios/{portfolio.id}/holdings").json()["holdings"]
    return Decimal(holdings[0]["quantity"]) if holdings else Decimal("0")


# =============================================================================
# TEST: GET /transactions/{id}
# =============================================================================

class TestGetTransaction:
    """Tests for GET /transactions/{id} endpoint."""

    def test_get_transaction_success(self, client, portfolio, eur_asset):
        """Should return the transaction."""
        created = seed_transaction(client, portfolio)

        response = client.get(f"/transactions/{created['id']}")

        assert response.status_code == 200
        assert response.json()["id"] == created["id"]
        assert response.json()["portfolio_id"] == portfolio.id

    def test_get_transaction_not_found(self, client):
        """Should return 404 with the resource details."""
        response = client.get("/transactions/999")

        assert response.status_code == 404
        data = response.json()
        assert data["error"] == "TransactionNotFoundError"
        assert data["details"]["resource_id"] == 999


# =============================================================================
# TEST: PUT /transactions/{id}
# =============================================================================

class TestUpdateTransaction:
    """Tests for PUT /transactions/{id} endpoint."""

    def test_update_quantity_recomputes_holding(self, client, portfolio, eur_asset):
        """Should correct the quantity and reconcile the holding again."""
        created = seed_transaction(client, portfolio)

        response = client.put(f"/transactions/{created['id']}", json={"quantity": "12", "fee": "2"})

        assert response.status_code == 200
        data = response.json()
        assert Decimal(data["quantity"]) == Decimal("12")
        assert Decimal(data["base_amount"]) == Decimal("1202")
        assert holding_quantity(client, portfolio) == Decimal("12")

    def test_update_only_sent_fields(self, client, portfolio, eur_asset):
        """Fields not sent should keep their values."""
        created = seed_transaction(client, portfolio)

        data = client.put(f"/transactions/{created['id']}", json={"price_per_share": "90"}).json()

        assert Decimal(data["quantity"]) == Decimal("10")
        assert Decimal(data["price_per_share"]) == Decimal("90")
        assert data["trade_date"] == created["trade_date"]

    def test_update_that_would_oversell(self, client, portfolio, eur_asset):
        """Should return 409 and keep the original values."""
        created = seed_transaction(client, portfolio)
        seed_transaction(client, portfolio, TransactionType.SELL, quantity="8", days_ago=1)

        response = client.put(f"/transactions/{created['id']}", json={"quantity": "5"})

        assert response.status_code == 409
        assert response.json()["error"] == "OversoldPosition"
        assert Decimal(client.get(f"/transactions/{created['id']}").json()["quantity"]) == Decimal("10")

    def test_update_rejects_future_date(self, client, portfolio, eur_asset):
        """Should return 422 for a trade date in the future."""
        created = seed_transaction(client, portfolio)

        response = client.put(
            f"/transactions/{created['id']}",
            json={"trade_date": (utc_today() + timedelta(days=1)).isoformat()},
        )

        assert response.status_code == 422

    def test_update_not_found(self, client):
        """Should return 404 for an unknown transaction."""
        response = client.put("/transactions/999", json={"quantity": "1"})

        assert response.status_code == 404


# =============================================================================
# TEST: DELETE /transactions/{id}
# =============================================================================

class TestDeleteTransaction:
    """Tests for DELETE /transactions/{id} endpoint."""

    def test_delete_success(self, client, portfolio, eur_asset):
        """Should delete and clear the holding and series."""
        created = seed_transaction(client, portfolio)

        response = client.delete(f"/transactions/{created['id']}")

        assert response.status_code == 204
        assert client.get(f"/transactions/{created['id']}").status_code == 404
        assert holding_quantity(client, portfolio) == Decimal("0")
        assert client.get(f"/portfolios/{portfolio.id}/daily-changes").json()["items"] == []

    def test_delete_that_would_oversell(self, client, portfolio, eur_asset):
        """Should return 409 when a later sale depends on the transaction."""
        created = seed_transaction(client, portfolio)
        seed_transaction(client, portfolio, TransactionType.SELL, quantity="8", days_ago=1)

        response = client.delete(f"/transactions/{created['id']}")

        assert response.status_code == 409
        assert client.get(f"/transactions/{created['id']}").status_code == 200

    def test_delete_not_found(self, client):
        """Should return 404 for an unknown transaction."""
        assert client.delete("/transactions/999").status_code == 404


# =============================================================================
# TEST: DELETE /dividends/{id}
# =============================================================================

class TestDeleteDividend:
    """Tests for DELETE /dividends/{id} endpoint."""

    @pytest.fixture
    def dividend(self, db: Session, portfolio: Portfolio, eur_asset: Asset):
        return add_dividend(db, portfolio, eur_asset, utc_today() - timedelta(days=1), "15", "EUR")

    def test_delete_dividend_success(self, client, dividend):
        """Should delete the dividend."""
        assert client.delete(f"/dividends/{dividend.id}").status_code == 204
        assert client.delete(f"/dividends/{dividend.id}").status_code == 404

    def test_delete_dividend_not_found(self, client):
        """Should return 404 with the resource type."""
        response = client.delete("/dividends/999")

        assert response.status_code == 404
        assert response.json()["details"]["resource_type"] == "Dividend"
