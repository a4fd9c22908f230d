"""SQLAlchemy models for overbooking and stop-sell rules."""

from sqlalchemy import Boolean, Column, Date, Float, Index, Integer, String, UniqueConstraint, text

from channel_core.config import SCHEMA
from channel_core.models.base import Base, JSONType, UTCDateTime
from channel_core.utils.datetime import utc_now


class OverbookingRule(Base):
    """
    ORM model for the overbooking policy of one room type.

    Adjustment documents:
        seasonal_adjustments: [{"start_date", "end_date", "factor"}]
        day_of_week_factors: {"0".."6": factor} (Monday is 0)
        lead_time_adjustments: [{"max_days_ahead", "factor"}] (first band that fits)
        channel_overrides: {channel: max_overbooking_percent}
        fallback_actions: ["upsell", "walk_in", "notify", "auto_relocate"]
    """

    __tablename__ = "overbooking_rules"
    __table_args__ = (
        UniqueConstraint("hotel_id", "room_type_id", name="uq_overbooking_rules_hotel_room"),
        {"schema": SCHEMA},
    )

    id = Column(String(36), primary_key=True)
    hotel_id = Column(String(64), nullable=False)
    room_type_id = Column(String(64), nullable=False)
    max_overbooking_percent = Column(Float, nullable=False, default=0.0)
    seasonal_adjustments = Column(JSONType, nullable=False, default=list)
    day_of_week_factors = Column(JSONType, nullable=False, default=dict)
    lead_time_adjustments = Column(JSONType, nullable=False, default=list)
    channel_overrides = Column(JSONType, nullable=False, default=dict)
    fallback_actions = Column(JSONType, nullable=False, default=list)
    is_active = Column(Boolean, nullable=False, default=True, server_default=text("TRUE"))
    created_at = Column(UTCDateTime, nullable=False, default=utc_now)
    updated_at = Column(UTCDateTime, nullable=False, default=utc_now)


class StopSellRule(Base):
    """
    ORM model for a typed restriction rule over a date range.

    ``weekdays`` is a list of weekday numbers (Monday is 0); empty means every
    day. ``actions`` holds the optional action fields: stop_sell,
    closed_to_arrival, closed_to_departure, min_los, max_los, rate_adjustment.
    """

    __tablename__ = "stop_sell_rules"
    __table_args__ = (
        Index("ix_stop_sell_rules_hotel_active", "hotel_id", "is_active"),
        {"schema": SCHEMA},
    )

    id = Column(String(36), primary_key=True)
    hotel_id = Column(String(64), nullable=False)
    name = Column(String, nullable=False)
    rule_type = Column(String(32), nullable=False)
    priority = Column(Integer, nullable=False, default=5)
    start_date = Column(Date, nullable=False)
    end_date = Column(Date, nullable=False)
    weekdays = Column(JSONType, nullable=False, default=list)
    all_room_types = Column(Boolean, nullable=False, default=False)
    room_type_ids = Column(JSONType, nullable=False, default=list)
    all_channels = Column(Boolean, nullable=False, default=False)
    channels = Column(JSONType, nullable=False, default=list)
    actions = Column(JSONType, nullable=False, default=dict)
    is_active = Column(Boolean, nullable=False, default=True, server_default=text("TRUE"))
    created_at = Column(UTCDateTime, nullable=False, default=utc_now)
