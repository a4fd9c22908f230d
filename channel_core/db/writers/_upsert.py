"""
Dialect-aware INSERT ... ON CONFLICT helpers.

PostgreSQL is the production store; SQLite backs local runs and tests. Both
support ON CONFLICT with the same shape, only the insert construct differs.
"""

from typing import Any, Optional

from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.engine import Connection


def dialect_insert(conn: Connection, table: type) -> Any:
    """Return the dialect-specific ``insert()`` construct for ``table``."""
    if conn.dialect.name == "postgresql":
        return postgresql.insert(table)
    if conn.dialect.name == "sqlite":
        return sqlite.insert(table)
    raise ValueError(f"Unsupported dialect for upserts: {conn.dialect.name}")


def insert_ignore_conflicts(
    conn: Connection,
    table: type,
    rows: list[dict[str, Any]],
    conflict_columns: list[str],
) -> None:
    """
    Insert rows, silently skipping any that collide on ``conflict_columns``.

    Args:
        conn: Active database connection (within transaction)
        table: SQLAlchemy ORM table class
        rows: Row dicts to insert
        conflict_columns: Columns of the unique constraint to test
    """
    if not rows:
        return
    stmt = dialect_insert(conn, table).values(rows)
    conn.execute(stmt.on_conflict_do_nothing(index_elements=conflict_columns))


def upsert_with_distinct_check(
    conn: Connection,
    table: type,
    rows: list[dict[str, Any]],
    conflict_columns: list[str],
    update_columns: list[str],
    distinct_columns: Optional[list[str]] = None,
) -> None:
    """
    Perform upsert, updating only rows whose tracked values actually changed.

    Args:
        conn: Active database connection (within transaction)
        table: SQLAlchemy ORM table class
        rows: List of row dicts to upsert
        conflict_columns: Columns of the unique constraint for ON CONFLICT
        update_columns: Columns to overwrite on conflict
        distinct_columns: Columns compared with IS DISTINCT FROM; the update is
            skipped when none differ (default: all of ``update_columns``)

    Example:
        >>> with engine.begin() as conn:
        ...     upsert_with_distinct_check(
        ...         conn,
        ...         DemandForecast,
        ...         rows=[{...}],
        ...         conflict_columns=["hotel_id", "room_type_id", "date"],
        ...         update_columns=["predicted_occupancy", "confidence", "updated_at"],
        ...         distinct_columns=["predicted_occupancy", "confidence"],
        ...     )
    """
    if not rows:
        return

    stmt = dialect_insert(conn, table).values(rows)
    set_dict = {col: getattr(stmt.excluded, col) for col in update_columns}

    checks = [
        getattr(table, col).is_distinct_from(getattr(stmt.excluded, col))
        for col in (distinct_columns or update_columns)
    ]
    where = checks[0]
    for check in checks[1:]:
        where = where | check

    stmt = stmt.on_conflict_do_update(
        index_elements=conflict_columns,
        set_=set_dict,
        where=where,
    )
    conn.execute(stmt)
