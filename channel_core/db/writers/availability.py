import uuid
from datetime import date, datetime
from typing import Any

from sqlalchemy import update
from sqlalchemy.engine import Connection

from channel_core.db.writers._upsert import insert_ignore_conflicts
from channel_core.models.availability import AvailabilityRow
from channel_core.schemas.availability import RoomTypeInfo


def insert_missing_rows(
    conn: Connection, room_type: RoomTypeInfo, days: list[date], now: datetime
) -> None:
    """
    Lazily create ledger rows for the given dates from the room type defaults.

    Existing rows are left untouched (ON CONFLICT DO NOTHING), so concurrent
    creators cannot clobber each other.

    Args:
        conn (Connection): Connection inside a transaction
        room_type (RoomTypeInfo): Supplies total rooms, base price and currency
        days (list[date]): Dates that must exist afterwards
        now (datetime): Creation timestamp
    """
    rows: list[dict[str, Any]] = [
        {
            "id": str(uuid.uuid4()),
            "hotel_id": room_type.hotel_id,
            "room_type_id": room_type.id,
            "date": day,
            "total_rooms": room_type.total_rooms,
            "sold_rooms": 0,
            "blocked_rooms": 0,
            "base_rate": room_type.base_price,
            "selling_rate": room_type.base_price,
            "currency": room_type.currency,
            "stop_sell": False,
            "closed_to_arrival": False,
            "closed_to_departure": False,
            "min_los": 1,
            "max_los": None,
            "dirty": False,
            "archived": False,
            "channel_sync": {},
            "version": 1,
            "revision": 1,
            "created_at": now,
            "updated_at": now,
        }
        for day in days
    ]
    insert_ignore_conflicts(
        conn, AvailabilityRow, rows, conflict_columns=["hotel_id", "room_type_id", "date"]
    )


def cas_update_row(
    conn: Connection,
    row_id: str,
    expected_version: int,
    values: dict[str, Any],
    content_change: bool = True,
) -> bool:
    """
    Compare-and-set update of one ledger row.

    Args:
        conn (Connection): Connection inside a transaction
        row_id (str): Row primary key
        expected_version (int): Version read before computing ``values``
        values (dict): Columns to write
        content_change (bool): Whether sellable content changed; bumps ``revision``

    Returns:
        bool: True if the row was updated, False on a version mismatch
    """
    new_values = dict(values)
    new_values["version"] = AvailabilityRow.version + 1
    if content_change:
        new_values["revision"] = AvailabilityRow.revision + 1

    stmt = (
        update(AvailabilityRow)
        .where(AvailabilityRow.id == row_id)
        .where(AvailabilityRow.version == expected_version)
        .values(**new_values)
    )
    return conn.execute(stmt).rowcount == 1


def archive_rows_before(conn: Connection, hotel_id: str, cutoff: date, now: datetime) -> int:
    """
    Flag rows dated before ``cutoff`` as archived. Rows are never deleted.

    Returns:
        int: Number of rows archived by this call
    """
    stmt = (
        update(AvailabilityRow)
        .where(AvailabilityRow.hotel_id == hotel_id)
        .where(AvailabilityRow.date < cutoff)
        .where(AvailabilityRow.archived == False)  # noqa: E712
        .values(
            archived=True,
            dirty=False,
            version=AvailabilityRow.version + 1,
            updated_at=now,
        )
    )
    return conn.execute(stmt).rowcount
