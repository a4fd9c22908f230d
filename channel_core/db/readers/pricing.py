from datetime import date
from typing import Optional

from sqlalchemy import select
from sqlalchemy.engine import Connection

from channel_core.models.pricing import CompetitorRate, DemandForecast, PricingStrategy
from channel_core.schemas.pricing import CompetitorSample, Forecast, Strategy


def list_active_strategies(conn: Connection, hotel_id: str) -> list[Strategy]:
    """Active pricing strategies of a hotel, highest priority first."""
    stmt = (
        select(PricingStrategy)
        .where(PricingStrategy.hotel_id == hotel_id)
        .where(PricingStrategy.is_active == True)  # noqa: E712
        .order_by(PricingStrategy.priority.desc(), PricingStrategy.created_at.asc())
    )
    return [Strategy.model_validate(dict(row)) for row in conn.execute(stmt).mappings()]


def get_forecast(
    conn: Connection, hotel_id: str, room_type_id: str, day: date
) -> Optional[Forecast]:
    """Stored demand forecast for one room type and date, if any."""
    stmt = (
        select(DemandForecast)
        .where(DemandForecast.hotel_id == hotel_id)
        .where(DemandForecast.room_type_id == room_type_id)
        .where(DemandForecast.date == day)
    )
    row = conn.execute(stmt).mappings().fetchone()
    if row is None:
        return None
    return Forecast(
        hotel_id=row["hotel_id"],
        room_type_id=row["room_type_id"],
        stay_date=row["date"],
        predicted_occupancy=row["predicted_occupancy"],
        confidence=row["confidence"],
        updated_at=row["updated_at"],
    )


def list_competitor_samples(
    conn: Connection, hotel_id: str, room_type_id: str, day: date, min_confidence: int = 0
) -> list[CompetitorSample]:
    """Competitor rate samples for one room type and date at or above ``min_confidence``."""
    stmt = (
        select(CompetitorRate)
        .where(CompetitorRate.hotel_id == hotel_id)
        .where(CompetitorRate.room_type_id == room_type_id)
        .where(CompetitorRate.date == day)
        .where(CompetitorRate.confidence >= min_confidence)
    )
    return [
        CompetitorSample(competitor_id=r["competitor_id"], rate=r["rate"], confidence=r["confidence"])
        for r in conn.execute(stmt).mappings()
    ]
