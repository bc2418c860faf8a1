# backend/valuation_engine/cli.py
"""
Operator command surface.

Commands:
    valuation-engine refresh  (--portfolio ID ... | --user ID | --all)
                              [--asset ID|TICKER:EXCHANGE ...] [--force] [--from-date YYYY-MM-DD]
    valuation-engine rebuild   --portfolio ID ... [--from-date YYYY-MM-DD]
    valuation-engine reconcile --portfolio ID ... [--asset ...]
    valuation-engine status    --portfolio ID ...
    valuation-engine init-db

Jobs run synchronously on this process through the same JobRunner the API
uses, so coalescing, retries and the generation guard behave identically.
--all must be given explicitly; a refresh never defaults to every portfolio.

Exit codes:
    0  every job completed (or was superseded by a newer one)
    1  at least one job failed
    2  invalid arguments
"""

import argparse
import logging
import sys
from collections.abc import Callable
from datetime import date

from sqlalchemy import select, and_
from sqlalchemy.orm import Session

from valuation_engine.models import Asset, Base, DailyChange, Holding, Portfolio
from valuation_engine.services.exceptions import NotFoundError, ServiceError
from valuation_engine.services.jobs import JobRunner
from valuation_engine.services.orchestrator import (
    RecomputeOrchestrator,
    RecomputeScope,
    TriggerType,
    scope_for_trigger,
)
from valuation_engine.utils import setup_logging

logger = logging.getLogger(__name__)


# =============================================================================
# ARGUMENTS
# =============================================================================

def _parse_date(value: str) -> date:
    try:
        return date.fromisoformat(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"Invalid date '{value}', expected YYYY-MM-DD")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="valuation-engine",
        description="Recompute holdings and daily valuations",
    )
    parser.add_argument("--log-level", default=None, help="Override LOG_LEVEL")
    commands = parser.add_subparsers(dest="command", required=True)

    refresh = commands.add_parser("refresh", help="Sync market data, reconcile and rebuild")
    target = refresh.add_mutually_exclusive_group(required=True)
    target.add_argument("--portfolio", type=int, action="append", metavar="ID", help="Portfolio ID (repeatable)")
    target.add_argument("--user", type=int, metavar="ID", help="Every portfolio of this user")
    target.add_argument("--all", action="store_true", help="Every portfolio")
    refresh.add_argument(
        "--asset", action="append", metavar="ASSET",
        help="Restrict to an asset: ID or TICKER:EXCHANGE (repeatable)",
    )
    refresh.add_argument("--force", action="store_true", help="Refetch quotes even when fresh")
    refresh.add_argument("--from-date", type=_parse_date, help="Rebuild from this date (default: full)")

    rebuild = commands.add_parser("rebuild", help="Rebuild the daily valuation series")
    rebuild.add_argument("--portfolio", type=int, action="append", metavar="ID", required=True)
    rebuild.add_argument("--from-date", type=_parse_date, help="First date to rebuild (default: full)")

    reconcile = commands.add_parser("reconcile", help="Replay transactions into holdings")
    reconcile.add_argument("--portfolio", type=int, action="append", metavar="ID", required=True)
    reconcile.add_argument("--asset", action="append", metavar="ASSET", help="ID or TICKER:EXCHANGE (repeatable)")

    status = commands.add_parser("status", help="Show recompute status")
    status.add_argument("--portfolio", type=int, action="append", metavar="ID", required=True)

    commands.add_parser("init-db", help="Create database tables")
    return parser


# =============================================================================
# RESOLUTION
# =============================================================================

def resolve_portfolio_ids(db: Session, args: argparse.Namespace) -> list[int]:
    """
    Portfolios addressed by --portfolio / --user / --all.

    Raises:
        NotFoundError: a named portfolio does not exist
    """
    if getattr(args, "all", False):
        return list(db.scalars(select(Portfolio.id).order_by(Portfolio.id)).all())
    if getattr(args, "user", None) is not None:
        return list(db.scalars(
            select(Portfolio.id).where(Portfolio.user_id == args.user).order_by(Portfolio.id)
        ).all())

    ids = []
    for portfolio_id in args.portfolio:
        if db.get(Portfolio, portfolio_id) is None:
            raise NotFoundError(f"Portfolio {portfolio_id} not found", "Portfolio", portfolio_id)
        if portfolio_id not in ids:
            ids.append(portfolio_id)
    return ids


def resolve_asset_ids(db: Session, values: list[str] | None) -> list[int] | None:
    """
    Asset IDs from --asset values (numeric ID or TICKER:EXCHANGE).

    Raises:
        NotFoundError: no such asset
    """
    if not values:
        return None

    ids = []
    for value in values:
        if value.isdigit():
            asset = db.get(Asset, int(value))
        elif ":" in value:
            ticker, exchange = value.split(":", 1)
            asset = db.scalar(select(Asset).where(and_(
                Asset.ticker == ticker.strip().upper(),
                Asset.exchange == exchange.strip().upper(),
            )))
        else:
            asset = None
        if asset is None:
            raise NotFoundError(f"Asset '{value}' not found", "Asset", value)
        ids.append(asset.id)
    return ids


# =============================================================================
# COMMANDS
# =============================================================================

def _run_jobs(runner: JobRunner, submissions: list[tuple[int, TriggerType, RecomputeScope]]) -> int:
    failed = 0
    for portfolio_id, trigger, scope in submissions:
        job_id = runner.submit(portfolio_id, trigger, scope)
        runner.wait()
        result = runner.last_result(portfolio_id)
        if result is None:
            print(f"portfolio {portfolio_id}: job {job_id} produced no result")
            failed += 1
            continue

        line = f"portfolio {portfolio_id}: {result.status} (generation {result.generation}"
        if result.rebuild is not None:
            line += f", {result.rebuild.rows_written} days written"
            if result.rebuild.degraded_dates:
                line += f", {len(result.rebuild.degraded_dates)} degraded"
        line += f", {result.holdings_reconciled} holdings)"
        print(line)
        for warning in result.warnings:
            print(f"  warning: {warning}")
        if result.status == "failed":
            print(f"  error: {result.error}")
            failed += 1
    return 1 if failed else 0


def cmd_refresh(args, db: Session, runner: JobRunner) -> int:
    portfolio_ids = resolve_portfolio_ids(db, args)
    if not portfolio_ids:
        print("No portfolios matched")
        return 0
    asset_ids = resolve_asset_ids(db, args.asset)

    trigger = TriggerType.FORCE_REFRESH if args.force else TriggerType.SCHEDULED_REFRESH
    scope = RecomputeScope(
        asset_ids=frozenset(asset_ids) if asset_ids is not None else None,
        from_date=args.from_date,
        sync_market_data=True,
        force_quotes=args.force,
    )
    return _run_jobs(runner, [(pid, trigger, scope) for pid in portfolio_ids])


def cmd_rebuild(args, db: Session, runner: JobRunner) -> int:
    portfolio_ids = resolve_portfolio_ids(db, args)
    scope = scope_for_trigger(TriggerType.REBUILD_REQUESTED, from_date=args.from_date)
    return _run_jobs(runner, [(pid, TriggerType.REBUILD_REQUESTED, scope) for pid in portfolio_ids])


def cmd_reconcile(args, db: Session, runner: JobRunner) -> int:
    portfolio_ids = resolve_portfolio_ids(db, args)
    asset_ids = resolve_asset_ids(db, args.asset)
    scope = scope_for_trigger(TriggerType.RECONCILE_REQUESTED, asset_ids=asset_ids)
    return _run_jobs(runner, [(pid, TriggerType.RECONCILE_REQUESTED, scope) for pid in portfolio_ids])


def cmd_status(args, db: Session, orchestrator: RecomputeOrchestrator) -> int:
    for portfolio_id in resolve_portfolio_ids(db, args):
        status = orchestrator.get_status(db, portfolio_id)
        open_holdings = db.scalars(
            select(Holding.id).where(and_(Holding.portfolio_id == portfolio_id, Holding.is_closed.is_(False)))
        ).all()
        dates = db.scalars(
            select(DailyChange.valuation_date)
            .where(DailyChange.portfolio_id == portfolio_id)
            .order_by(DailyChange.valuation_date)
        ).all()

        print(f"portfolio {portfolio_id}")
        print(f"  state:        {status.state.value}")
        print(f"  generation:   {status.generation} (completed {status.completed_generation})")
        print(f"  last trigger: {status.last_trigger or '-'}")
        print(f"  holdings:     {len(open_holdings)} open")
        print(f"  daily rows:   {len(dates)}" + (f" ({dates[0]} .. {dates[-1]})" if dates else ""))
        if status.last_error:
            print(f"  last error:   {status.last_error}")
    return 0


def cmd_init_db(engine) -> int:
    Base.metadata.create_all(bind=engine)
    print("Tables created")
    return 0


# =============================================================================
# ENTRY POINT
# =============================================================================

def main(
        argv: list[str] | None = None,
        session_factory: Callable[[], Session] | None = None,
        orchestrator: RecomputeOrchestrator | None = None,
) -> int:
    """
    Run a command.

    session_factory and orchestrator default to the configured database
    and the production service wiring.
    """
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging(level=args.log_level)

    if session_factory is None:
        from valuation_engine.database import SessionLocal, engine
        session_factory = SessionLocal
        if args.command == "init-db":
            return cmd_init_db(engine)
    if orchestrator is None:
        from valuation_engine.dependencies import get_orchestrator
        orchestrator = get_orchestrator()

    runner = JobRunner(orchestrator, session_factory, synchronous=True)
    try:
        with session_factory() as db:
            if args.command == "refresh":
                return cmd_refresh(args, db, runner)
            if args.command == "rebuild":
                return cmd_rebuild(args, db, runner)
            if args.command == "reconcile":
                return cmd_reconcile(args, db, runner)
            if args.command == "status":
                return cmd_status(args, db, orchestrator)
            parser.error(f"Command {args.command} needs the configured database")
    except NotFoundError as e:
        print(f"error: {e}", file=sys.stderr)
        return 2
    except ServiceError as e:
        logger.error(f"Command {args.command} failed: {e}")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
