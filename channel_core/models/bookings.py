"""SQLAlchemy model for bookings."""

from sqlalchemy import Boolean, Column, Date, Float, Index, Integer, String, text

from channel_core.config import SCHEMA
from channel_core.models.base import Base, JSONType, UTCDateTime
from channel_core.utils.datetime import utc_now


class Booking(Base):
    """
    ORM model for a booking aggregate.

    Status history, modifications, OTA amendments and per-channel sync state
    are owned by the booking and stored as JSON documents. ``needs_sync`` and
    ``has_active_pending_amendments`` are denormalized from those documents so
    the store can index them. ``version`` serializes status changes.
    """

    __tablename__ = "bookings"
    __table_args__ = (
        Index(
            "uq_bookings_source_channel_booking_id",
            "source",
            "channel_booking_id",
            unique=True,
            postgresql_where=text("channel_booking_id IS NOT NULL"),
            sqlite_where=text("channel_booking_id IS NOT NULL"),
        ),
        Index("ix_bookings_status_reserved_until", "status", "reserved_until"),
        Index("ix_bookings_pending_amendments_status", "has_active_pending_amendments", "status"),
        Index("ix_bookings_needs_sync", "needs_sync"),
        {"schema": SCHEMA},
    )

    id = Column(String(36), primary_key=True)
    hotel_id = Column(String(64), nullable=False, index=True)
    user_id = Column(String(64), nullable=True)
    room_type_id = Column(String(64), nullable=False)
    rooms = Column(JSONType, nullable=False, default=list)
    guest = Column(JSONType, nullable=False, default=dict)
    check_in = Column(Date, nullable=False)
    check_out = Column(Date, nullable=False)
    nights = Column(Integer, nullable=False)
    total_amount = Column(Float, nullable=False)
    currency = Column(String(3), nullable=False)
    status = Column(String(16), nullable=False)
    payment_status = Column(String(16), nullable=False, default="pending")
    source = Column(String(32), nullable=False)
    channel_booking_id = Column(String(128), nullable=True)

    status_history = Column(JSONType, nullable=False, default=list)
    modifications = Column(JSONType, nullable=False, default=list)
    ota_amendments = Column(JSONType, nullable=False, default=list)
    amendment_flags = Column(JSONType, nullable=False, default=dict)
    sync_status = Column(JSONType, nullable=False, default=dict)
    pending_actions = Column(JSONType, nullable=False, default=list)
    raw_booking_payload = Column(JSONType, nullable=True)

    needs_sync = Column(Boolean, nullable=False, default=False, server_default=text("FALSE"))
    has_active_pending_amendments = Column(
        Boolean, nullable=False, default=False, server_default=text("FALSE")
    )
    reserved_until = Column(UTCDateTime, nullable=True)
    actual_check_in = Column(UTCDateTime, nullable=True)
    actual_check_out = Column(UTCDateTime, nullable=True)
    no_show_recorded = Column(UTCDateTime, nullable=True)
    last_status_change = Column(UTCDateTime, nullable=True)

    version = Column(Integer, nullable=False, default=1)
    created_at = Column(UTCDateTime, nullable=False, default=utc_now)
    updated_at = Column(UTCDateTime, nullable=False, default=utc_now)
