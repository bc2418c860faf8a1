# tests/test_cli.py
"""
Tests for the valuation-engine command line.

Commands run against the test engine through main()'s injection points,
with the same synchronous JobRunner the CLI builds for itself.
"""

import logging
from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy import select

from valuation_engine.cli import build_parser, main
from valuation_engine.models import DailyChange, Holding, TransactionType
from valuation_engine.services.providers import Operation
from valuation_engine.utils.date_utils import utc_today
from tests.conftest import add_transaction


@pytest.fixture
def run(session_factory, orchestrator):
    # main() reconfigures the root logger onto the captured stdout
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level

    def _run(*argv: str) -> int:
        return main(list(argv), session_factory=session_factory, orchestrator=orchestrator)

    yield _run
    root.handlers[:] = handlers
    root.setLevel(level)


@pytest.fixture
def position(db, portfolio, eur_asset):
    """10 SAP bought two days ago."""
    return add_transaction(db, portfolio, eur_asset, TransactionType.BUY, utc_today() - timedelta(days=2), "10", "100")


# =============================================================================
# ARGUMENTS
# =============================================================================

class TestArguments:
    def test_refresh_needs_a_target(self):
        with pytest.raises(SystemExit) as exc_info:
            build_parser().parse_args(["refresh"])

        assert exc_info.value.code == 2

    def test_targets_are_exclusive(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args(["refresh", "--all", "--portfolio", "1"])

    def test_invalid_date(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args(["rebuild", "--portfolio", "1", "--from-date", "01/02/2024"])

    def test_repeated_portfolios(self):
        args = build_parser().parse_args(["status", "--portfolio", "1", "--portfolio", "2"])

        assert args.portfolio == [1, 2]


# =============================================================================
# COMMANDS
# =============================================================================

class TestCommands:
    def test_rebuild(self, run, db, portfolio, position, capsys):
        code = run("rebuild", "--portfolio", str(portfolio.id))

        out = capsys.readouterr().out
        assert code == 0
        assert f"portfolio {portfolio.id}: completed" in out
        assert "3 days written" in out
        assert len(db.scalars(select(DailyChange)).all()) == 3

    def test_reconcile_single_asset(self, run, db, portfolio, position, capsys):
        code = run("reconcile", "--portfolio", str(portfolio.id), "--asset", "sap:xetra")

        assert code == 0
        assert "1 holdings" in capsys.readouterr().out
        db.expire_all()
        assert db.scalar(select(Holding)).quantity == Decimal("10")

    def test_refresh_with_force(self, run, provider, portfolio, position, capsys):
        provider.add_quote("SAP", "104")

        code = run("refresh", "--portfolio", str(portfolio.id), "--force")

        assert code == 0
        assert "completed" in capsys.readouterr().out
        assert provider.calls_for(Operation.QUOTE) == ["SAP"]

    def test_refresh_reports_missing_quote(self, run, user, portfolio, position, capsys):
        code = run("refresh", "--user", str(user.id))

        out = capsys.readouterr().out
        assert code == 0
        assert "warning: No quote available for SAP@XETRA" in out

    def test_refresh_no_matching_portfolios(self, run, capsys):
        assert run("refresh", "--user", "999") == 0
        assert "No portfolios matched" in capsys.readouterr().out

    def test_failed_job_exits_1(self, run, db, portfolio, eur_asset, position, capsys):
        add_transaction(db, portfolio, eur_asset, TransactionType.SELL, utc_today() - timedelta(days=1), "12", "100")

        code = run("reconcile", "--portfolio", str(portfolio.id))

        out = capsys.readouterr().out
        assert code == 1
        assert "failed" in out
        assert "error: Transaction" in out

    def test_status(self, run, portfolio, position, capsys):
        run("rebuild", "--portfolio", str(portfolio.id))
        capsys.readouterr()

        code = run("status", "--portfolio", str(portfolio.id))

        out = capsys.readouterr().out
        assert code == 0
        assert "state:        IDLE" in out
        assert "generation:   1 (completed 1)" in out
        assert "daily rows:   3" in out

    def test_unknown_portfolio(self, run, capsys):
        assert run("status", "--portfolio", "999") == 2
        assert "Portfolio 999 not found" in capsys.readouterr().err

    def test_unknown_asset(self, run, portfolio, capsys):
        assert run("reconcile", "--portfolio", str(portfolio.id), "--asset", "NOPE:XETRA") == 2
        assert "Asset 'NOPE:XETRA' not found" in capsys.readouterr().err
