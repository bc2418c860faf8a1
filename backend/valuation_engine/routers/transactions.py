# backend/valuation_engine/routers/transactions.py
"""
Transaction and dividend correction endpoints.

Key concepts:
- Transactions are created under their portfolio (routers/portfolios.py)
- Type, asset and currency cannot be changed after creation; corrections
  are limited to date, quantity, price and fee
- Every write queues a recompute from the earliest affected date
- A write that would make the position negative at any date is refused
"""

import logging
from typing import Annotated

from fastapi import APIRouter, Depends, Request, status

from sqlalchemy.orm import Session

from valuation_engine.database import get_db
from valuation_engine.dependencies import get_transaction_service
from valuation_engine.middleware.rate_limit import limiter, RATE_LIMIT_DEFAULT, RATE_LIMIT_WRITE
from valuation_engine.schemas.transactions import TransactionResponse, TransactionUpdate
from valuation_engine.services.transactions import TransactionService

logger = logging.getLogger(__name__)

# =============================================================================
# ROUTER SETUP
# =============================================================================

router = APIRouter(tags=["Transactions"])

DbSession = Annotated[Session, Depends(get_db)]
Service = Annotated[TransactionService, Depends(get_transaction_service)]


# =============================================================================
# TRANSACTIONS
# =============================================================================

@router.get("/transactions/{transaction_id}", response_model=TransactionResponse)
@limiter.limit(RATE_LIMIT_DEFAULT)
def get_transaction(
        request: Request,
        transaction_id: int,
        db: DbSession,
        service: Service,
) -> TransactionResponse:
    """
    **Errors:**
    - 404: Transaction not found
    """
    return TransactionResponse.model_validate(service.get_transaction(db, transaction_id))


@router.put("/transactions/{transaction_id}", response_model=TransactionResponse)
@limiter.limit(RATE_LIMIT_WRITE)
def update_transaction(
        request: Request,
        transaction_id: int,
        transaction_in: TransactionUpdate,
        db: DbSession,
        service: Service,
) -> TransactionResponse:
    """
    Correct a transaction.

    Only the fields sent are changed. Currency normalization is recomputed.

    **Errors:**
    - 404: Transaction not found
    - 409: The corrected log would sell more than held
    """
    txn = service.update_transaction(
        db,
        transaction_id,
        trade_date=transaction_in.trade_date,
        quantity=transaction_in.quantity,
        price_per_share=transaction_in.price_per_share,
        fee=transaction_in.fee,
    )
    return TransactionResponse.model_validate(txn)


@router.delete("/transactions/{transaction_id}", status_code=status.HTTP_204_NO_CONTENT)
@limiter.limit(RATE_LIMIT_WRITE)
def delete_transaction(
        request: Request,
        transaction_id: int,
        db: DbSession,
        service: Service,
) -> None:
    """
    Delete a transaction.

    **Errors:**
    - 404: Transaction not found
    - 409: A later sale would exceed what remains held
    """
    service.delete_transaction(db, transaction_id)


# =============================================================================
# DIVIDENDS
# =============================================================================

@router.delete("/dividends/{dividend_id}", status_code=status.HTTP_204_NO_CONTENT)
@limiter.limit(RATE_LIMIT_WRITE)
def delete_dividend(
        request: Request,
        dividend_id: int,
        db: DbSession,
        service: Service,
) -> None:
    """
    **Errors:**
    - 404: Dividend not found
    """
    service.delete_dividend(db, dividend_id)
