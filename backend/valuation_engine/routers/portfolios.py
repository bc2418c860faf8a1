# backend/valuation_engine/routers/portfolios.py
"""
Per-portfolio engine endpoints.

Write side (enqueue only; work runs on the job runner):
- POST /portfolios/{id}/refresh          force refresh (rate-limited)
- POST /portfolios/{id}/transactions     record a transaction
- POST /portfolios/{id}/dividends        record a dividend

Read side (engine output):
- GET /portfolios/{id}/recompute-status
- GET /portfolios/{id}/holdings
- GET /portfolios/{id}/daily-changes
- GET /portfolios/{id}/transactions

Domain errors propagate to the exception handlers in main.py.
"""

import logging
from datetime import date
from typing import Annotated

from fastapi import APIRouter, Depends, Query, Request, status
from sqlalchemy import select
from sqlalchemy.orm import Session, joinedload

from valuation_engine.database import get_db
from valuation_engine.dependencies import (
    get_job_runner,
    get_orchestrator,
    get_transaction_service,
)
from valuation_engine.middleware.rate_limit import limiter, RATE_LIMIT_DEFAULT, RATE_LIMIT_REFRESH, RATE_LIMIT_WRITE
from valuation_engine.models import DailyChange, Holding, Portfolio
from valuation_engine.schemas.portfolios import (
    DailyChangeResponse,
    DailyChangesResponse,
    HoldingResponse,
    HoldingsResponse,
    RecomputeStatusResponse,
    RefreshRequest,
    RefreshResponse,
)
from valuation_engine.schemas.transactions import (
    DividendCreate,
    DividendResponse,
    TransactionCreate,
    TransactionResponse,
)
from valuation_engine.services.exceptions import PortfolioNotFoundError, ValidationError
from valuation_engine.services.jobs import JobRunner
from valuation_engine.services.orchestrator import RecomputeOrchestrator, TriggerType, scope_for_trigger
from valuation_engine.services.transactions import TransactionService

logger = logging.getLogger(__name__)

# =============================================================================
# ROUTER SETUP
# =============================================================================

router = APIRouter(
    prefix="/portfolios",
    tags=["Portfolios"],
)

DbSession = Annotated[Session, Depends(get_db)]


# =============================================================================
# HELPER FUNCTIONS
# =============================================================================

def get_portfolio_or_404(db: Session, portfolio_id: int) -> Portfolio:
    portfolio = db.get(Portfolio, portfolio_id)
    if portfolio is None:
        raise PortfolioNotFoundError(portfolio_id)
    return portfolio


# =============================================================================
# RECOMPUTE
# =============================================================================

@router.post(
    "/{portfolio_id}/refresh",
    response_model=RefreshResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
@limiter.limit(RATE_LIMIT_REFRESH)
def refresh_portfolio(
        request: Request,  # Required for rate limiting
        portfolio_id: int,
        db: DbSession,
        runner: Annotated[JobRunner, Depends(get_job_runner)],
        orchestrator: Annotated[RecomputeOrchestrator, Depends(get_orchestrator)],
        refresh_request: RefreshRequest | None = None,
) -> RefreshResponse:
    """
    Force a refresh: sync splits and quotes, reconcile, rebuild.

    Quotes are refetched even when fresh. The work runs in the background;
    poll **recompute-status** for completion. If an equivalent refresh is
    already pending, its job ID is returned and nothing new is queued.

    **Errors:**
    - 404: Portfolio not found
    - 429: Rate limit exceeded
    """
    get_portfolio_or_404(db, portfolio_id)
    refresh_request = refresh_request or RefreshRequest()

    scope = scope_for_trigger(
        TriggerType.FORCE_REFRESH,
        asset_ids=refresh_request.asset_ids,
        from_date=refresh_request.from_date,
    )
    job_id = runner.force_refresh(portfolio_id, scope)
    generation = orchestrator.current_generation(db, portfolio_id)

    logger.info(f"Force refresh requested for portfolio {portfolio_id}: job {job_id}")
    return RefreshResponse(
        portfolio_id=portfolio_id,
        job_id=job_id,
        generation=generation,
        message="Refresh queued",
    )


@router.get("/{portfolio_id}/recompute-status", response_model=RecomputeStatusResponse)
@limiter.limit(RATE_LIMIT_DEFAULT)
def get_recompute_status(
        request: Request,
        portfolio_id: int,
        db: DbSession,
        runner: Annotated[JobRunner, Depends(get_job_runner)],
        orchestrator: Annotated[RecomputeOrchestrator, Depends(get_orchestrator)],
) -> RecomputeStatusResponse:
    """
    Current recompute state of a portfolio.

    **generation** counts accepted triggers; when it equals
    **completed_generation** the holdings and daily series are current.
    """
    recompute_status = orchestrator.get_status(db, portfolio_id)
    response = RecomputeStatusResponse.model_validate(recompute_status)
    queue = runner.queue_state(portfolio_id)
    response.active_job_id = queue["active_job_id"]
    response.pending_job_id = queue["pending_job_id"]
    return response


# =============================================================================
# ENGINE OUTPUT
# =============================================================================

@router.get("/{portfolio_id}/holdings", response_model=HoldingsResponse)
@limiter.limit(RATE_LIMIT_DEFAULT)
def get_holdings(
        request: Request,
        portfolio_id: int,
        db: DbSession,
        include_closed: bool = Query(False, description="Include positions sold down to zero"),
) -> HoldingsResponse:
    """Reconciled holdings, ordered by ticker."""
    portfolio = get_portfolio_or_404(db, portfolio_id)

    query = (
        select(Holding)
        .options(joinedload(Holding.asset))
        .where(Holding.portfolio_id == portfolio_id)
    )
    if not include_closed:
        query = query.where(Holding.is_closed.is_(False))
    holdings = sorted(db.scalars(query).all(), key=lambda h: (h.asset.ticker, h.asset.exchange))

    return HoldingsResponse(
        portfolio_id=portfolio.id,
        base_currency=portfolio.currency,
        holdings=[
            HoldingResponse(
                asset_id=h.asset_id,
                ticker=h.asset.ticker,
                exchange=h.asset.exchange,
                currency=h.asset.currency,
                quantity=h.quantity,
                average_cost=h.average_cost,
                realized_gain=h.realized_gain,
                realized_gain_native=h.realized_gain_native,
                dividend_income=h.dividend_income,
                is_closed=h.is_closed,
                is_degraded=h.is_degraded,
                degraded_reasons=h.degraded_reasons,
                last_synced_at=h.last_synced_at,
            )
            for h in holdings
        ],
    )


@router.get("/{portfolio_id}/daily-changes", response_model=DailyChangesResponse)
@limiter.limit(RATE_LIMIT_DEFAULT)
def get_daily_changes(
        request: Request,
        portfolio_id: int,
        db: DbSession,
        from_date: date | None = Query(None, description="First date (inclusive)"),
        to_date: date | None = Query(None, description="Last date (inclusive)"),
        include_snapshot: bool = Query(False, description="Include the per-asset breakdown"),
) -> DailyChangesResponse:
    """
    Daily valuation series in base currency, oldest first.

    **Errors:**
    - 400: from_date after to_date
    - 404: Portfolio not found
    """
    portfolio = get_portfolio_or_404(db, portfolio_id)
    if from_date and to_date and from_date > to_date:
        raise ValidationError("from_date must be before or equal to to_date", field="from_date")

    query = select(DailyChange).where(DailyChange.portfolio_id == portfolio_id)
    if from_date:
        query = query.where(DailyChange.valuation_date >= from_date)
    if to_date:
        query = query.where(DailyChange.valuation_date <= to_date)
    rows = db.scalars(query.order_by(DailyChange.valuation_date)).all()

    items = [DailyChangeResponse.model_validate(row) for row in rows]
    if not include_snapshot:
        for item in items:
            item.snapshot = None

    return DailyChangesResponse(
        portfolio_id=portfolio.id,
        base_currency=portfolio.currency,
        from_date=items[0].valuation_date if items else from_date,
        to_date=items[-1].valuation_date if items else to_date,
        items=items,
    )


# =============================================================================
# TRANSACTIONS & DIVIDENDS
# =============================================================================

@router.post(
    "/{portfolio_id}/transactions",
    response_model=TransactionResponse,
    status_code=status.HTTP_201_CREATED,
)
@limiter.limit(RATE_LIMIT_WRITE)
def create_transaction(
        request: Request,
        portfolio_id: int,
        transaction_in: TransactionCreate,
        db: DbSession,
        service: Annotated[TransactionService, Depends(get_transaction_service)],
) -> TransactionResponse:
    """
    Record a transaction.

    Unknown (ticker, exchange) pairs are registered after a provider check.
    A recompute from the trade date is queued.

    **Errors:**
    - 400: Currency mismatch or unknown symbol
    - 404: Portfolio not found
    - 409: Sale exceeds the quantity held at that date
    """
    txn = service.create_transaction(
        db,
        portfolio_id=portfolio_id,
        ticker=transaction_in.ticker,
        exchange=transaction_in.exchange,
        transaction_type=transaction_in.transaction_type,
        trade_date=transaction_in.trade_date,
        quantity=transaction_in.quantity,
        price_per_share=transaction_in.price_per_share,
        currency=transaction_in.currency,
        fee=transaction_in.fee,
    )
    return TransactionResponse.model_validate(txn)


@router.get("/{portfolio_id}/transactions", response_model=list[TransactionResponse])
@limiter.limit(RATE_LIMIT_DEFAULT)
def list_transactions(
        request: Request,
        portfolio_id: int,
        db: DbSession,
        service: Annotated[TransactionService, Depends(get_transaction_service)],
        asset_id: int | None = Query(None, gt=0),
) -> list[TransactionResponse]:
    """Transactions in replay order (trade date, then ID)."""
    return [
        TransactionResponse.model_validate(txn)
        for txn in service.list_transactions(db, portfolio_id, asset_id=asset_id)
    ]


@router.post(
    "/{portfolio_id}/dividends",
    response_model=DividendResponse,
    status_code=status.HTTP_201_CREATED,
)
@limiter.limit(RATE_LIMIT_WRITE)
def record_dividend(
        request: Request,
        portfolio_id: int,
        dividend_in: DividendCreate,
        db: DbSession,
        service: Annotated[TransactionService, Depends(get_transaction_service)],
) -> DividendResponse:
    """
    Record a dividend. Queues a reconcile of the holding's income.

    **Errors:**
    - 404: Portfolio or asset not found
    """
    dividend = service.record_dividend(
        db,
        portfolio_id=portfolio_id,
        asset_id=dividend_in.asset_id,
        pay_date=dividend_in.pay_date,
        amount=dividend_in.amount,
        currency=dividend_in.currency,
    )
    return DividendResponse.model_validate(dividend)
