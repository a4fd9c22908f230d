import uuid
from datetime import date, datetime
from typing import Any, Optional

from sqlalchemy import insert, select, update
from sqlalchemy.engine import Connection

from channel_core.db.writers._upsert import upsert_with_distinct_check
from channel_core.models.channels import Channel, InventorySync, ReservationMapping


def insert_channel(conn: Connection, values: dict[str, Any]) -> str:
    """
    Insert a channel row.

    Returns:
        str: Generated primary key
    """
    channel_pk = str(uuid.uuid4())
    conn.execute(insert(Channel).values(id=channel_pk, **values))
    return channel_pk


def update_channel(conn: Connection, channel_pk: str, values: dict[str, Any], now: datetime) -> None:
    """Update channel columns and stamp ``updated_at``."""
    conn.execute(update(Channel).where(Channel.id == channel_pk).values(updated_at=now, **values))


def replace_credentials(conn: Connection, channel_pk: str, token: str, now: datetime) -> None:
    """Store new encrypted credentials and bump their version."""
    conn.execute(
        update(Channel)
        .where(Channel.id == channel_pk)
        .values(
            credentials_encrypted=token,
            credentials_version=Channel.credentials_version + 1,
            updated_at=now,
        )
    )


def mark_last_sync(conn: Connection, channel_pk: str, categories: list[str], at: datetime) -> None:
    """
    Advance ``last_sync`` markers for the given categories.

    Args:
        conn (Connection): Connection inside a transaction
        channel_pk (str): Channel primary key
        categories (list[str]): Any of rates, inventory, restrictions, reservations
        at (datetime): Timestamp to record
    """
    current = conn.execute(select(Channel.last_sync).where(Channel.id == channel_pk)).scalar()
    markers = dict(current or {})
    for category in categories:
        markers[category] = at.isoformat()
    conn.execute(update(Channel).where(Channel.id == channel_pk).values(last_sync=markers))


def insert_reservation_mapping(
    conn: Connection,
    hotel_id: str,
    channel_id: str,
    channel_reservation_id: str,
    booking_id: str,
    status: str,
    raw_payload: Optional[dict[str, Any]],
    now: datetime,
) -> None:
    """Record which booking an inbound reservation produced."""
    conn.execute(
        insert(ReservationMapping).values(
            id=str(uuid.uuid4()),
            hotel_id=hotel_id,
            channel_id=channel_id,
            channel_reservation_id=channel_reservation_id,
            booking_id=booking_id,
            status=status,
            modifications=[],
            raw_payload=raw_payload,
            created_at=now,
            updated_at=now,
        )
    )


def append_mapping_modification(
    conn: Connection, mapping_id: str, entry: dict[str, Any], status: str, now: datetime
) -> None:
    """Append an inbound modification to a reservation mapping and update its status."""
    current = conn.execute(
        select(ReservationMapping.modifications).where(ReservationMapping.id == mapping_id)
    ).scalar()
    conn.execute(
        update(ReservationMapping)
        .where(ReservationMapping.id == mapping_id)
        .values(modifications=list(current or []) + [entry], status=status, updated_at=now)
    )


def record_push_attempts(
    conn: Connection,
    hotel_id: str,
    channel_id: str,
    room_type_id: str,
    payloads: dict[date, dict[str, Any]],
    status: str,
    attempts: int,
    at: datetime,
    error_message: Optional[str] = None,
    next_attempt_at: Optional[datetime] = None,
) -> None:
    """
    Upsert InventorySync bookkeeping for every pushed date.

    Args:
        payloads (dict): Canonical record per date as it was sent
        status (str): success, failed or retry
        attempts (int): Consecutive failed attempts of the current episode
    """
    rows = [
        {
            "id": str(uuid.uuid4()),
            "hotel_id": hotel_id,
            "channel_id": channel_id,
            "room_type_id": room_type_id,
            "date": day,
            "payload": payload,
            "sync_status": status,
            "attempts": attempts,
            "last_attempt_at": at,
            "next_attempt_at": next_attempt_at,
            "error_message": error_message,
        }
        for day, payload in payloads.items()
    ]
    upsert_with_distinct_check(
        conn,
        InventorySync,
        rows,
        conflict_columns=["channel_id", "room_type_id", "date"],
        update_columns=[
            "payload",
            "sync_status",
            "attempts",
            "last_attempt_at",
            "next_attempt_at",
            "error_message",
        ],
        distinct_columns=["sync_status", "attempts", "last_attempt_at"],
    )
