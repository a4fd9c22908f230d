from datetime import datetime
from typing import Any

from sqlalchemy import insert, update
from sqlalchemy.engine import Connection

from channel_core.models.bookings import Booking as BookingModel
from channel_core.schemas.bookings import Booking


def booking_to_row(booking: Booking) -> dict[str, Any]:
    """
    Flatten the booking aggregate into ``bookings`` column values.

    Nested documents are stored as JSON; indexed flags are denormalized.
    """
    data = booking.model_dump(mode="json")
    return {
        "id": booking.id,
        "hotel_id": booking.hotel_id,
        "user_id": booking.user_id,
        "room_type_id": booking.room_type_id,
        "rooms": data["rooms"],
        "guest": data["guest"],
        "check_in": booking.check_in,
        "check_out": booking.check_out,
        "nights": booking.nights,
        "total_amount": booking.total_amount,
        "currency": booking.currency,
        "status": booking.status.value,
        "payment_status": booking.payment_status.value,
        "source": booking.source,
        "channel_booking_id": booking.channel_booking_id,
        "status_history": data["status_history"],
        "modifications": data["modifications"],
        "ota_amendments": data["ota_amendments"],
        "amendment_flags": data["amendment_flags"],
        "sync_status": data["sync_status"],
        "pending_actions": data["pending_actions"],
        "raw_booking_payload": data["raw_booking_payload"],
        "needs_sync": booking.sync_status.needs_sync,
        "has_active_pending_amendments": booking.amendment_flags.has_active_pending_amendments,
        "reserved_until": booking.reserved_until,
        "actual_check_in": booking.actual_check_in,
        "actual_check_out": booking.actual_check_out,
        "no_show_recorded": booking.no_show_recorded,
        "last_status_change": booking.last_status_change,
        "version": booking.version,
    }


def insert_booking(conn: Connection, booking: Booking, now: datetime) -> None:
    """
    Insert a new booking.

    Raises:
        sqlalchemy.exc.IntegrityError: If (source, channel_booking_id) already exists
    """
    row = booking_to_row(booking)
    row["created_at"] = now
    row["updated_at"] = now
    conn.execute(insert(BookingModel).values(**row))


def save_booking(conn: Connection, booking: Booking, now: datetime) -> bool:
    """
    Write the aggregate back under optimistic locking.

    ``booking.version`` must be the version that was read; on success it is
    advanced in place.

    Returns:
        bool: True if written, False if another writer got there first
    """
    row = booking_to_row(booking)
    expected = row.pop("version")
    row.pop("id")
    row["version"] = expected + 1
    row["updated_at"] = now
    stmt = (
        update(BookingModel)
        .where(BookingModel.id == booking.id)
        .where(BookingModel.version == expected)
        .values(**row)
    )
    if conn.execute(stmt).rowcount != 1:
        return False
    booking.version = expected + 1
    return True
