"""SQLAlchemy models for distribution channels and their sync bookkeeping."""

from sqlalchemy import (
    Boolean,
    Column,
    Date,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    text,
)

from channel_core.config import SCHEMA
from channel_core.models.base import Base, JSONType, UTCDateTime
from channel_core.utils.datetime import utc_now


class Channel(Base):
    """
    ORM model for a hotel's connection to one OTA.

    ``credentials_encrypted`` holds a Fernet token; only adaptors see the
    decrypted material. ``credentials_version`` increments whenever the
    credentials are replaced, which invalidates cached plaintext.
    ``last_sync`` keeps ISO timestamps keyed by rates, inventory,
    restrictions and reservations.
    """

    __tablename__ = "channels"
    __table_args__ = (
        UniqueConstraint("hotel_id", "channel_id", name="uq_channels_hotel_channel"),
        {"schema": SCHEMA},
    )

    id = Column(String(36), primary_key=True)
    hotel_id = Column(String(64), nullable=False, index=True)
    channel_id = Column(String(64), nullable=False)
    name = Column(String, nullable=False)
    category = Column(String(32), nullable=False)
    credentials_encrypted = Column(Text, nullable=True)
    credentials_version = Column(Integer, nullable=False, default=1)
    settings = Column(JSONType, nullable=False, default=dict)
    room_mappings = Column(JSONType, nullable=False, default=list)
    rate_parity = Column(JSONType, nullable=False, default=dict)
    restrictions = Column(JSONType, nullable=False, default=dict)
    last_sync = Column(JSONType, nullable=False, default=dict)
    connection_status = Column(String(16), nullable=False, default="pending")
    last_error = Column(Text, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True, server_default=text("TRUE"))
    created_at = Column(UTCDateTime, nullable=False, default=utc_now)
    updated_at = Column(UTCDateTime, nullable=False, default=utc_now)


class ReservationMapping(Base):
    """
    ORM model linking one inbound OTA reservation to the booking it produced.

    The raw channel payload is kept for reconciliation; ``modifications`` lists
    every subsequent message applied to the mapping.
    """

    __tablename__ = "reservation_mappings"
    __table_args__ = (
        UniqueConstraint(
            "channel_id", "channel_reservation_id", name="uq_reservation_mappings_channel_res"
        ),
        {"schema": SCHEMA},
    )

    id = Column(String(36), primary_key=True)
    hotel_id = Column(String(64), nullable=False)
    channel_id = Column(String(64), nullable=False)
    channel_reservation_id = Column(String(128), nullable=False)
    booking_id = Column(String(36), nullable=False, index=True)
    status = Column(String(32), nullable=False)
    modifications = Column(JSONType, nullable=False, default=list)
    raw_payload = Column(JSONType, nullable=True)
    created_at = Column(UTCDateTime, nullable=False, default=utc_now)
    updated_at = Column(UTCDateTime, nullable=False, default=utc_now)


class InventorySync(Base):
    """
    ORM model recording the last push attempt of one date to one channel.

    ``sync_status`` is one of pending, success, failed, retry. ``attempts``
    counts consecutive failures of the current episode and is reset when a
    push succeeds.
    """

    __tablename__ = "inventory_syncs"
    __table_args__ = (
        UniqueConstraint("channel_id", "room_type_id", "date", name="uq_inventory_syncs_key"),
        Index("ix_inventory_syncs_status", "sync_status"),
        {"schema": SCHEMA},
    )

    id = Column(String(36), primary_key=True)
    hotel_id = Column(String(64), nullable=False)
    channel_id = Column(String(64), nullable=False)
    room_type_id = Column(String(64), nullable=False)
    date = Column(Date, nullable=False)
    payload = Column(JSONType, nullable=True)
    sync_status = Column(String(16), nullable=False, default="pending")
    attempts = Column(Integer, nullable=False, default=0)
    last_attempt_at = Column(UTCDateTime, nullable=True)
    next_attempt_at = Column(UTCDateTime, nullable=True)
    error_message = Column(Text, nullable=True)
