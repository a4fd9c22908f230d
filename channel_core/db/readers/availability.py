from datetime import date
from typing import Any, Mapping

from sqlalchemy import func, select
from sqlalchemy.engine import Connection

from channel_core.models.availability import AvailabilityRow
from channel_core.schemas.availability import LedgerRow, Restrictions


def row_to_ledger(row: Mapping[str, Any]) -> LedgerRow:
    """
    Convert a result mapping of the availability table into a LedgerRow.

    Args:
        row (Mapping): Mapping from ``conn.execute(...).mappings()``

    Returns:
        LedgerRow: Read-only projection
    """
    return LedgerRow(
        id=row["id"],
        hotel_id=row["hotel_id"],
        room_type_id=row["room_type_id"],
        date=row["date"],
        total_rooms=row["total_rooms"],
        sold_rooms=row["sold_rooms"],
        blocked_rooms=row["blocked_rooms"],
        base_rate=row["base_rate"],
        selling_rate=row["selling_rate"],
        currency=row["currency"],
        restrictions=Restrictions(
            stop_sell=row["stop_sell"],
            closed_to_arrival=row["closed_to_arrival"],
            closed_to_departure=row["closed_to_departure"],
            min_los=row["min_los"],
            max_los=row["max_los"],
        ),
        dirty=row["dirty"],
        archived=row["archived"],
        last_synced_at=row["last_synced_at"],
        last_price_update=row["last_price_update"],
        channel_sync=row["channel_sync"] or {},
        version=row["version"],
        revision=row["revision"],
    )


def get_rows(
    conn: Connection,
    hotel_id: str,
    room_type_id: str,
    start: date,
    end: date,
    include_archived: bool = True,
) -> list[LedgerRow]:
    """
    Fetch ledger rows for the half-open date range [start, end), ordered by date.

    Args:
        conn (Connection): Active SQLAlchemy connection
        hotel_id (str): Hotel ID
        room_type_id (str): Room type ID
        start (date): First date (inclusive)
        end (date): Last date (exclusive)
        include_archived (bool): Whether archived rows are returned

    Returns:
        list[LedgerRow]: Existing rows only; missing dates are simply absent
    """
    stmt = (
        select(AvailabilityRow)
        .where(AvailabilityRow.hotel_id == hotel_id)
        .where(AvailabilityRow.room_type_id == room_type_id)
        .where(AvailabilityRow.date >= start)
        .where(AvailabilityRow.date < end)
        .order_by(AvailabilityRow.date)
    )
    if not include_archived:
        stmt = stmt.where(AvailabilityRow.archived == False)  # noqa: E712
    return [row_to_ledger(row) for row in conn.execute(stmt).mappings()]


def get_row(conn: Connection, hotel_id: str, room_type_id: str, day: date) -> LedgerRow | None:
    """Fetch a single ledger row, or None if it has not been created yet."""
    stmt = (
        select(AvailabilityRow)
        .where(AvailabilityRow.hotel_id == hotel_id)
        .where(AvailabilityRow.room_type_id == room_type_id)
        .where(AvailabilityRow.date == day)
    )
    row = conn.execute(stmt).mappings().fetchone()
    return row_to_ledger(row) if row else None


def list_dirty_groups(conn: Connection) -> list[tuple[str, str, date, date]]:
    """
    Summarize dirty, non-archived rows per (hotel, room type).

    Returns:
        list[tuple]: (hotel_id, room_type_id, earliest dirty date, latest dirty date)
    """
    stmt = (
        select(
            AvailabilityRow.hotel_id,
            AvailabilityRow.room_type_id,
            func.min(AvailabilityRow.date),
            func.max(AvailabilityRow.date),
        )
        .where(AvailabilityRow.dirty == True)  # noqa: E712
        .where(AvailabilityRow.archived == False)  # noqa: E712
        .group_by(AvailabilityRow.hotel_id, AvailabilityRow.room_type_id)
    )
    return [(r[0], r[1], r[2], r[3]) for r in conn.execute(stmt)]


def list_room_type_ids_with_rows(conn: Connection, hotel_id: str) -> list[str]:
    """Room types of a hotel that have at least one non-archived ledger row."""
    stmt = (
        select(AvailabilityRow.room_type_id)
        .where(AvailabilityRow.hotel_id == hotel_id)
        .where(AvailabilityRow.archived == False)  # noqa: E712
        .distinct()
    )
    return list(conn.execute(stmt).scalars().all())
