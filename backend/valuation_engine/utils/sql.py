# backend/valuation_engine/utils/sql.py
"""
Dialect-aware INSERT ... ON CONFLICT helpers.

PostgreSQL runs in production and SQLite in tests; both support the same
ON CONFLICT clause, but through different dialect constructs. These helpers
pick the right one from the session's bind.

Usage:
    from valuation_engine.utils.sql import insert_ignore, upsert

    # Write-once rows (currency rates, splits)
    insert_ignore(db, CurrencyRate, rows, ["from_currency", "to_currency", "rate_date"])

    # Replace-in-place rows (daily changes, quotes)
    upsert(db, DailyChange, rows, ["portfolio_id", "valuation_date"], ["total_value", ...])
"""

from collections.abc import Sequence
from typing import Any

from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Session


def _dialect_insert(db: Session, model: type) -> Any:
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        return postgresql.insert(model)
    if dialect == "sqlite":
        return sqlite.insert(model)
    raise NotImplementedError(f"ON CONFLICT is not supported for dialect '{dialect}'")


def insert_ignore(
        db: Session,
        model: type,
        rows: Sequence[dict[str, Any]],
        conflict_columns: list[str],
) -> int:
    """
    Insert rows, silently skipping any that collide on conflict_columns.

    Returns:
        Number of rows the database reports as inserted
    """
    if not rows:
        return 0
    stmt = _dialect_insert(db, model).on_conflict_do_nothing(index_elements=conflict_columns)
    # Core execution: the ORM bulk path returns no rowcount
    result = db.connection().execute(stmt, list(rows))
    return max(result.rowcount or 0, 0)


def upsert(
        db: Session,
        model: type,
        rows: Sequence[dict[str, Any]],
        conflict_columns: list[str],
        update_columns: list[str],
) -> int:
    """
    Insert rows, overwriting update_columns where conflict_columns collide.

    Returns:
        Number of rows written
    """
    if not rows:
        return 0
    stmt = _dialect_insert(db, model)
    stmt = stmt.on_conflict_do_update(
        index_elements=conflict_columns,
        set_={column: stmt.excluded[column] for column in update_columns},
    )
    db.execute(stmt, list(rows))
    return len(rows)
