"""SQLAlchemy model for the availability ledger."""

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    Date,
    Float,
    Index,
    Integer,
    String,
    UniqueConstraint,
    text,
)

from channel_core.config import SCHEMA
from channel_core.models.base import Base, JSONType, UTCDateTime
from channel_core.utils.datetime import utc_now


class AvailabilityRow(Base):
    """
    ORM model for one ledger row: a room type's inventory and rate on one date.

    ``version`` is bumped by every write and guards compare-and-set updates.
    ``revision`` is bumped only when sellable content changes (counts, rates,
    restrictions), so the sync engine can tell whether a row changed while a
    push was in flight. ``channel_sync`` maps channel id to
    ``{"synced_at", "record_count"}``.
    """

    __tablename__ = "availability"
    __table_args__ = (
        UniqueConstraint("hotel_id", "room_type_id", "date", name="uq_availability_hotel_room_date"),
        Index("ix_availability_dirty", "dirty"),
        Index("ix_availability_hotel_date", "hotel_id", "date"),
        CheckConstraint("sold_rooms >= 0", name="ck_availability_sold_non_negative"),
        CheckConstraint("blocked_rooms >= 0", name="ck_availability_blocked_non_negative"),
        {"schema": SCHEMA},
    )

    id = Column(String(36), primary_key=True)
    hotel_id = Column(String(64), nullable=False)
    room_type_id = Column(String(64), nullable=False)
    date = Column(Date, nullable=False)

    total_rooms = Column(Integer, nullable=False)
    sold_rooms = Column(Integer, nullable=False, default=0)
    blocked_rooms = Column(Integer, nullable=False, default=0)

    base_rate = Column(Float, nullable=False)
    selling_rate = Column(Float, nullable=False)
    currency = Column(String(3), nullable=False)

    stop_sell = Column(Boolean, nullable=False, default=False)
    closed_to_arrival = Column(Boolean, nullable=False, default=False)
    closed_to_departure = Column(Boolean, nullable=False, default=False)
    min_los = Column(Integer, nullable=False, default=1)
    max_los = Column(Integer, nullable=True)

    dirty = Column(Boolean, nullable=False, default=False, server_default=text("FALSE"))
    archived = Column(Boolean, nullable=False, default=False, server_default=text("FALSE"))
    last_synced_at = Column(UTCDateTime, nullable=True)
    last_price_update = Column(UTCDateTime, nullable=True)
    channel_sync = Column(JSONType, nullable=False, default=dict)

    version = Column(Integer, nullable=False, default=1)
    revision = Column(Integer, nullable=False, default=1)
    created_at = Column(UTCDateTime, nullable=False, default=utc_now)
    updated_at = Column(UTCDateTime, nullable=False, default=utc_now)
