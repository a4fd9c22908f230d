"""SQLAlchemy models for the dynamic pricing inputs."""

from sqlalchemy import Boolean, Column, Date, Float, Index, Integer, String, UniqueConstraint, text

from channel_core.config import SCHEMA
from channel_core.models.base import Base, JSONType, UTCDateTime
from channel_core.utils.datetime import utc_now


class PricingStrategy(Base):
    """
    ORM model for a pricing strategy.

    ``room_type_ids`` empty means the strategy applies to every room type.
    ``parameters`` is interpreted by ``strategy_type``.
    """

    __tablename__ = "pricing_strategies"
    __table_args__ = (
        Index("ix_pricing_strategies_hotel_active", "hotel_id", "is_active"),
        {"schema": SCHEMA},
    )

    id = Column(String(36), primary_key=True)
    hotel_id = Column(String(64), nullable=False)
    name = Column(String, nullable=False)
    strategy_type = Column(String(32), nullable=False)
    priority = Column(Integer, nullable=False, default=1)
    room_type_ids = Column(JSONType, nullable=False, default=list)
    parameters = Column(JSONType, nullable=False, default=dict)
    min_rate = Column(Float, nullable=True)
    max_rate = Column(Float, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True, server_default=text("TRUE"))
    created_at = Column(UTCDateTime, nullable=False, default=utc_now)


class DemandForecast(Base):
    """ORM model for a predicted occupancy (percent) of one room type on one date."""

    __tablename__ = "demand_forecasts"
    __table_args__ = (
        UniqueConstraint("hotel_id", "room_type_id", "date", name="uq_demand_forecasts_key"),
        {"schema": SCHEMA},
    )

    id = Column(String(36), primary_key=True)
    hotel_id = Column(String(64), nullable=False)
    room_type_id = Column(String(64), nullable=False)
    date = Column(Date, nullable=False)
    predicted_occupancy = Column(Float, nullable=False)
    confidence = Column(Float, nullable=False)
    updated_at = Column(UTCDateTime, nullable=False, default=utc_now)


class CompetitorRate(Base):
    """ORM model for one competitor rate sample; ``confidence`` is 0-100."""

    __tablename__ = "competitor_rates"
    __table_args__ = (
        Index("ix_competitor_rates_lookup", "hotel_id", "room_type_id", "date"),
        {"schema": SCHEMA},
    )

    id = Column(String(36), primary_key=True)
    hotel_id = Column(String(64), nullable=False)
    competitor_id = Column(String(64), nullable=False)
    room_type_id = Column(String(64), nullable=False)
    date = Column(Date, nullable=False)
    rate = Column(Float, nullable=False)
    currency = Column(String(3), nullable=False)
    confidence = Column(Integer, nullable=False, default=100)
    collected_at = Column(UTCDateTime, nullable=False, default=utc_now)
