from datetime import datetime
from typing import Any, Mapping, Optional

from sqlalchemy import select
from sqlalchemy.engine import Connection

from channel_core.models.bookings import Booking as BookingModel
from channel_core.schemas.bookings import Booking, BookingStatus


def row_to_booking(row: Mapping[str, Any]) -> Booking:
    """
    Build the booking aggregate from a ``bookings`` result mapping.

    Args:
        row (Mapping): Mapping from ``conn.execute(...).mappings()``

    Returns:
        Booking: Aggregate including its JSON-backed sub-documents
    """
    return Booking.model_validate(dict(row))


def get_booking(conn: Connection, booking_id: str) -> Optional[Booking]:
    """
    Fetch a booking by id.

    Args:
        conn (Connection): Active SQLAlchemy connection
        booking_id (str): Booking ID

    Returns:
        Optional[Booking]: The booking, or None if not found
    """
    row = (
        conn.execute(select(BookingModel).where(BookingModel.id == booking_id))
        .mappings()
        .fetchone()
    )
    return row_to_booking(row) if row else None


def find_by_channel_booking_id(
    conn: Connection, source: str, channel_booking_id: str
) -> Optional[Booking]:
    """Look up an OTA booking by its (source, channel booking id) identity."""
    stmt = (
        select(BookingModel)
        .where(BookingModel.source == source)
        .where(BookingModel.channel_booking_id == channel_booking_id)
    )
    row = conn.execute(stmt).mappings().fetchone()
    return row_to_booking(row) if row else None


def list_expired_holds(conn: Connection, now: datetime) -> list[Booking]:
    """Pending bookings whose hold expired before ``now``, oldest first."""
    stmt = (
        select(BookingModel)
        .where(BookingModel.status == BookingStatus.PENDING.value)
        .where(BookingModel.reserved_until.is_not(None))
        .where(BookingModel.reserved_until < now)
        .order_by(BookingModel.reserved_until)
    )
    return [row_to_booking(row) for row in conn.execute(stmt).mappings()]


def list_bookings_needing_sync(conn: Connection, hotel_id: Optional[str] = None) -> list[Booking]:
    """Bookings flagged for channel synchronization."""
    stmt = select(BookingModel).where(BookingModel.needs_sync == True)  # noqa: E712
    if hotel_id is not None:
        stmt = stmt.where(BookingModel.hotel_id == hotel_id)
    return [row_to_booking(row) for row in conn.execute(stmt).mappings()]


def list_bookings_with_pending_amendments(conn: Connection, hotel_id: str) -> list[Booking]:
    """Bookings of a hotel waiting on amendment review, for the admin queue."""
    stmt = (
        select(BookingModel)
        .where(BookingModel.hotel_id == hotel_id)
        .where(BookingModel.has_active_pending_amendments == True)  # noqa: E712
        .where(BookingModel.status == BookingStatus.MODIFIED.value)
        .order_by(BookingModel.check_in)
    )
    return [row_to_booking(row) for row in conn.execute(stmt).mappings()]
