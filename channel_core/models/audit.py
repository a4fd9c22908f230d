"""SQLAlchemy models for the append-only audit trail and rate parity checks."""

from sqlalchemy import Boolean, Column, Date, Float, Index, String

from channel_core.config import SCHEMA
from channel_core.models.base import Base, JSONType, UTCDateTime
from channel_core.utils.datetime import utc_now


class AuditLog(Base):
    """
    ORM model for one audit entry. Rows are inserted, never updated.

    ``id`` doubles as the correlation id handed back with terminal errors.
    """

    __tablename__ = "audit_log"
    __table_args__ = (
        Index("ix_audit_log_hotel_timestamp", "hotel_id", "timestamp"),
        Index("ix_audit_log_record", "table_name", "record_id"),
        {"schema": SCHEMA},
    )

    id = Column(String(36), primary_key=True)
    hotel_id = Column(String(64), nullable=True)
    table_name = Column(String(64), nullable=False)
    record_id = Column(String(128), nullable=True)
    change_type = Column(String(64), nullable=False)
    source = Column(String(32), nullable=False)
    old_values = Column(JSONType, nullable=True)
    new_values = Column(JSONType, nullable=True)
    tags = Column(JSONType, nullable=False, default=list)
    timestamp = Column(UTCDateTime, nullable=False, default=utc_now)


class RateParityLog(Base):
    """ORM model for a rate parity check of one room type on one date."""

    __tablename__ = "rate_parity_logs"
    __table_args__ = (
        Index("ix_rate_parity_logs_room_date", "room_type_id", "date"),
        {"schema": SCHEMA},
    )

    id = Column(String(36), primary_key=True)
    hotel_id = Column(String(64), nullable=False)
    room_type_id = Column(String(64), nullable=False)
    date = Column(Date, nullable=False)
    base_rate = Column(Float, nullable=False)
    channel_rates = Column(JSONType, nullable=False, default=dict)
    violations = Column(JSONType, nullable=False, default=list)
    overall_compliance = Column(Boolean, nullable=False)
    checked_at = Column(UTCDateTime, nullable=False, default=utc_now)
