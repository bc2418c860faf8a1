# backend/valuation_engine/services/orchestrator.py
"""
Recompute Orchestrator: sequences reconcile and rebuild per portfolio.

This service handles:
- Accepting triggers (transaction mutations, force/scheduled refresh)
  and bumping the portfolio generation for each
- Running one recompute cycle: optional market data refresh, holding
  reconciliation, then the daily valuation rebuild
- Recording the cycle state and outcome on RecomputeStatus

State machine (RecomputeStatus.state):

    IDLE ──► RECONCILING_HOLDINGS ──► REBUILDING_VALUATION ──► IDLE
                     │                         │
                     └──── failure ────────────┴──► IDLE (last_error set)

Error handling:
    - Data-integrity errors (OversoldPosition, ...) abort the cycle, are
      recorded in last_error, logged at ERROR and re-raised
    - StaleWrite means a newer trigger superseded the rebuild: logged at
      INFO, not an error
    - A failed reconcile aborts the cycle before the rebuild; holdings are
      left as they were

Coalescing and threading live in services.jobs.JobRunner; this class runs
exactly what it is given, on the caller's thread.

Usage:
    orchestrator = RecomputeOrchestrator(reconciler, rebuilder, price_service, corporate_actions)

    generation = orchestrator.accept_trigger(db, portfolio_id, TriggerType.FORCE_REFRESH)
    result = orchestrator.run_cycle(db, portfolio_id, RecomputeScope.everything(), generation)
"""

import enum
import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timezone

from sqlalchemy import select, update, func
from sqlalchemy.orm import Session

from valuation_engine.models import (
    Asset,
    Portfolio,
    RecomputeState,
    RecomputeStatus,
    Transaction,
)
from valuation_engine.services.exceptions import (
    PortfolioNotFoundError,
    ReconciliationError,
    StaleWrite,
)
from valuation_engine.services.holdings import HoldingReconciler
from valuation_engine.services.market_data import CorporateActionService, PriceHistoryService
from valuation_engine.services.valuation import RebuildResult, ValuationRebuilder
from valuation_engine.utils.date_utils import utc_today
from valuation_engine.utils.sql import insert_ignore

logger = logging.getLogger(__name__)


# =============================================================================
# TRIGGERS & SCOPE
# =============================================================================

class TriggerType(str, enum.Enum):
    TRANSACTION_CREATED = "transaction_created"
    TRANSACTION_UPDATED = "transaction_updated"
    TRANSACTION_DELETED = "transaction_deleted"
    DIVIDEND_CHANGED = "dividend_changed"
    FORCE_REFRESH = "force_refresh"
    SCHEDULED_REFRESH = "scheduled_refresh"
    RECONCILE_REQUESTED = "reconcile_requested"
    REBUILD_REQUESTED = "rebuild_requested"


@dataclass(frozen=True)
class RecomputeScope:
    """
    What one cycle has to do.

    Attributes:
        asset_ids: Assets to reconcile; None means every asset
        from_date: First date to rebuild; None means a full rebuild
        reconcile: Run the holding reconciler
        rebuild: Run the valuation rebuilder
        sync_market_data: Sync splits and refresh stale quotes first
        force_quotes: Refresh quotes even when fresh
    """

    asset_ids: frozenset[int] | None = None
    from_date: date | None = None
    reconcile: bool = True
    rebuild: bool = True
    sync_market_data: bool = False
    force_quotes: bool = False

    @classmethod
    def everything(cls) -> "RecomputeScope":
        return cls()

    @classmethod
    def for_assets(cls, asset_ids, from_date: date | None = None) -> "RecomputeScope":
        return cls(asset_ids=frozenset(asset_ids), from_date=from_date)

    def merge(self, other: "RecomputeScope") -> "RecomputeScope":
        """
        Smallest scope covering both.

        None (everything) absorbs any asset set; the earlier from_date wins
        and None (full rebuild) absorbs any date.
        """
        if self.asset_ids is None or other.asset_ids is None:
            asset_ids = None
        else:
            asset_ids = self.asset_ids | other.asset_ids

        if self.from_date is None or other.from_date is None:
            from_date = None
        else:
            from_date = min(self.from_date, other.from_date)

        return RecomputeScope(
            asset_ids=asset_ids,
            from_date=from_date,
            reconcile=self.reconcile or other.reconcile,
            rebuild=self.rebuild or other.rebuild,
            sync_market_data=self.sync_market_data or other.sync_market_data,
            force_quotes=self.force_quotes or other.force_quotes,
        )

    def covers(self, other: "RecomputeScope") -> bool:
        """True when running self already does everything other asks for."""
        return self.merge(other) == self


@dataclass
class CycleResult:
    """Outcome of one recompute cycle."""

    portfolio_id: int
    generation: int
    status: str = "completed"  # "completed", "superseded", "failed"
    holdings_reconciled: int = 0
    quotes_refreshed: int = 0
    splits_recorded: int = 0
    rebuild: RebuildResult | None = None
    error: str | None = None
    warnings: list[str] = field(default_factory=list)


# =============================================================================
# ORCHESTRATOR
# =============================================================================

class RecomputeOrchestrator:
    """
    Runs recompute cycles and keeps RecomputeStatus current.

    Thread safety:
        Reconciles for one (portfolio, asset) never interleave: each is
        serialized by the reconciler. Sessions are passed in per call.
    """

    def __init__(
            self,
            reconciler: HoldingReconciler,
            rebuilder: ValuationRebuilder,
            price_service: PriceHistoryService | None = None,
            corporate_actions: CorporateActionService | None = None,
    ) -> None:
        self.reconciler = reconciler
        self.rebuilder = rebuilder
        self.price_service = price_service
        self.corporate_actions = corporate_actions

    # =========================================================================
    # TRIGGERS
    # =========================================================================

    def accept_trigger(self, db: Session, portfolio_id: int, trigger: TriggerType) -> int:
        """
        Record a trigger and bump the portfolio generation.

        The increment is a single UPDATE, so concurrent triggers each get
        their own generation.

        Returns:
            The new generation

        Raises:
            PortfolioNotFoundError: unknown portfolio
        """
        self._ensure_status(db, portfolio_id)
        db.execute(
            update(RecomputeStatus)
            .where(RecomputeStatus.portfolio_id == portfolio_id)
            .values(
                generation=RecomputeStatus.generation + 1,
                last_trigger=trigger.value,
                last_triggered_at=datetime.now(timezone.utc),
            )
        )
        db.commit()
        generation = self.current_generation(db, portfolio_id)
        logger.debug(f"Portfolio {portfolio_id}: accepted {trigger.value}, generation={generation}")
        return generation

    def get_status(self, db: Session, portfolio_id: int) -> RecomputeStatus:
        """RecomputeStatus row for a portfolio, created IDLE if missing."""
        self._ensure_status(db, portfolio_id)
        return db.scalar(
            select(RecomputeStatus)
            .where(RecomputeStatus.portfolio_id == portfolio_id)
            .execution_options(populate_existing=True)
        )

    @staticmethod
    def current_generation(db: Session, portfolio_id: int) -> int:
        generation = db.scalar(
            select(RecomputeStatus.generation).where(RecomputeStatus.portfolio_id == portfolio_id)
        )
        return generation or 0

    # =========================================================================
    # CYCLE
    # =========================================================================

    def run_cycle(
            self,
            db: Session,
            portfolio_id: int,
            scope: RecomputeScope,
            generation: int | None = None,
    ) -> CycleResult:
        """
        Run one recompute cycle for a portfolio.

        Args:
            scope: What to do (see RecomputeScope)
            generation: Generation the cycle runs for; None means current

        Returns:
            CycleResult with status "completed" or "superseded"

        Raises:
            Any failure other than StaleWrite, after recording it on
            RecomputeStatus (state back to IDLE)
        """
        self._ensure_status(db, portfolio_id)
        if generation is None:
            generation = self.current_generation(db, portfolio_id)
        result = CycleResult(portfolio_id=portfolio_id, generation=generation)
        first_state = (
            RecomputeState.RECONCILING_HOLDINGS
            if scope.reconcile or scope.sync_market_data
            else RecomputeState.REBUILDING_VALUATION
        )
        self._set_state(db, portfolio_id, first_state, cycle_started_at=datetime.now(timezone.utc))

        try:
            asset_ids = sorted(scope.asset_ids) if scope.asset_ids is not None else None

            if scope.sync_market_data:
                self._sync_market_data(db, portfolio_id, asset_ids, scope.force_quotes, result)

            if scope.reconcile:
                result.holdings_reconciled = self._reconcile(db, portfolio_id, asset_ids)
                db.commit()

            if scope.rebuild:
                self._set_state(db, portfolio_id, RecomputeState.REBUILDING_VALUATION)
                result.rebuild = self.rebuilder.rebuild(
                    db, portfolio_id, from_date=scope.from_date, generation=generation
                )
                if result.rebuild.is_degraded:
                    result.warnings.append(
                        f"{len(result.rebuild.degraded_dates)} dates valued with fallback data"
                    )

        except StaleWrite as e:
            db.rollback()
            logger.info(f"Discarding superseded cycle for portfolio {portfolio_id}: {e}")
            result.status = "superseded"
            self._set_state(db, portfolio_id, RecomputeState.IDLE)
            return result

        except Exception as e:
            db.rollback()
            result.status = "failed"
            result.error = str(e)
            if isinstance(e, ReconciliationError):
                logger.error(f"Recompute of portfolio {portfolio_id} aborted: {e}")
            else:
                logger.exception(f"Recompute of portfolio {portfolio_id} failed: {e}")
            self._set_state(db, portfolio_id, RecomputeState.IDLE, last_error=str(e)[:1000])
            raise

        self._complete(db, portfolio_id, generation)
        logger.info(
            f"Recompute of portfolio {portfolio_id} completed "
            f"(generation={generation}, holdings={result.holdings_reconciled}, "
            f"rows={result.rebuild.rows_written if result.rebuild else 0})"
        )
        return result

    # =========================================================================
    # PRIVATE METHODS
    # =========================================================================

    def _reconcile(self, db: Session, portfolio_id: int, asset_ids: list[int] | None) -> int:
        if asset_ids is None:
            asset_ids = self.reconciler.get_portfolio_asset_ids(db, portfolio_id)

        reconciled = 0
        for asset_id in asset_ids:
            if self.reconciler.reconcile(db, portfolio_id, asset_id) is not None:
                reconciled += 1
        return reconciled

    def _sync_market_data(
            self,
            db: Session,
            portfolio_id: int,
            asset_ids: list[int] | None,
            force_quotes: bool,
            result: CycleResult,
    ) -> None:
        """
        Record new splits and refresh quotes before reconciling.

        Provider failures here never abort the cycle; cached data is used.
        """
        first_dates = dict(db.execute(
            select(Transaction.asset_id, func.min(Transaction.trade_date))
            .where(Transaction.portfolio_id == portfolio_id)
            .group_by(Transaction.asset_id)
        ).all())
        if asset_ids is not None:
            wanted = set(asset_ids)
            first_dates = {k: v for k, v in first_dates.items() if k in wanted}
        if not first_dates:
            return

        today = utc_today()
        assets = db.scalars(select(Asset).where(Asset.id.in_(first_dates.keys())).order_by(Asset.id)).all()
        for asset in assets:
            if self.corporate_actions is not None:
                result.splits_recorded += self.corporate_actions.sync_splits(db, asset, first_dates[asset.id], today)
            if self.price_service is not None:
                quote = self.price_service.get_quote(db, asset, force=force_quotes)
                if quote is None:
                    result.warnings.append(f"No quote available for {asset.ticker}@{asset.exchange}")
                else:
                    result.quotes_refreshed += 1
        db.commit()

    def _ensure_status(self, db: Session, portfolio_id: int) -> None:
        if db.get(Portfolio, portfolio_id) is None:
            raise PortfolioNotFoundError(portfolio_id)
        inserted = insert_ignore(
            db,
            RecomputeStatus,
            [{
                "portfolio_id": portfolio_id,
                "state": RecomputeState.IDLE,
                "generation": 0,
                "completed_generation": 0,
            }],
            ["portfolio_id"],
        )
        if inserted:
            db.commit()

    @staticmethod
    def _set_state(db: Session, portfolio_id: int, state: RecomputeState, **values) -> None:
        db.execute(
            update(RecomputeStatus)
            .where(RecomputeStatus.portfolio_id == portfolio_id)
            .values(state=state, updated_at=datetime.now(timezone.utc), **values)
        )
        db.commit()

    def _complete(self, db: Session, portfolio_id: int, generation: int) -> None:
        completed = db.scalar(
            select(RecomputeStatus.completed_generation).where(RecomputeStatus.portfolio_id == portfolio_id)
        )
        self._set_state(
            db,
            portfolio_id,
            RecomputeState.IDLE,
            completed_generation=max(completed or 0, generation),
            cycle_completed_at=datetime.now(timezone.utc),
            last_error=None,
        )


def scope_for_trigger(
        trigger: TriggerType,
        asset_ids=None,
        from_date: date | None = None,
) -> RecomputeScope:
    """
    Default scope for a trigger.

    Transaction and dividend triggers name the affected assets and the
    earliest affected date; refreshes default to everything.
    """
    assets = frozenset(asset_ids) if asset_ids is not None else None
    if trigger == TriggerType.DIVIDEND_CHANGED:
        return RecomputeScope(asset_ids=assets, rebuild=False)
    if trigger == TriggerType.RECONCILE_REQUESTED:
        return RecomputeScope(asset_ids=assets, rebuild=False)
    if trigger == TriggerType.REBUILD_REQUESTED:
        return RecomputeScope(from_date=from_date, reconcile=False)
    if trigger == TriggerType.FORCE_REFRESH:
        return RecomputeScope(asset_ids=assets, from_date=from_date, sync_market_data=True, force_quotes=True)
    if trigger == TriggerType.SCHEDULED_REFRESH:
        return RecomputeScope(sync_market_data=True)
    return RecomputeScope(asset_ids=assets, from_date=from_date)
