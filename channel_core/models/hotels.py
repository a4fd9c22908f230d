"""SQLAlchemy models for hotels and their room types."""

from sqlalchemy import Boolean, Column, Float, Index, Integer, String, text

from channel_core.config import SCHEMA
from channel_core.models.base import Base, UTCDateTime
from channel_core.utils.datetime import utc_now


class Hotel(Base):
    """
    ORM model for a property.

    A hotel owns its room types, channels, rules and availability rows; those
    tables reference it by ``hotel_id`` only.
    """

    __tablename__ = "hotels"
    __table_args__ = {"schema": SCHEMA}

    id = Column(String(64), primary_key=True)
    name = Column(String, nullable=False)
    currency = Column(String(3), nullable=False, server_default=text("'INR'"))
    is_active = Column(Boolean, nullable=False, default=True, server_default=text("TRUE"))
    created_at = Column(UTCDateTime, nullable=False, default=utc_now)


class RoomType(Base):
    """
    ORM model for a sellable room type.

    ``total_rooms`` is the default inventory used when a ledger row is created
    lazily; the per-date figure lives on the availability row afterwards.
    """

    __tablename__ = "room_types"
    __table_args__ = (
        Index("ix_room_types_hotel_id", "hotel_id"),
        {"schema": SCHEMA},
    )

    id = Column(String(64), primary_key=True)
    hotel_id = Column(String(64), nullable=False)
    name = Column(String, nullable=False)
    base_price = Column(Float, nullable=False)
    min_price = Column(Float, nullable=True)
    max_price = Column(Float, nullable=True)
    total_rooms = Column(Integer, nullable=False)
    currency = Column(String(3), nullable=False, server_default=text("'INR'"))
    is_active = Column(Boolean, nullable=False, default=True, server_default=text("TRUE"))
    created_at = Column(UTCDateTime, nullable=False, default=utc_now)
