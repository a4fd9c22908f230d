import uuid
from datetime import date, datetime
from typing import Any

from sqlalchemy import insert
from sqlalchemy.engine import Connection

from channel_core.db.writers._upsert import upsert_with_distinct_check
from channel_core.models.pricing import CompetitorRate, DemandForecast, PricingStrategy
from channel_core.schemas.pricing import Forecast


def upsert_forecast(conn: Connection, forecast: Forecast) -> None:
    """Store or refresh the demand forecast of one room type and date."""
    upsert_with_distinct_check(
        conn,
        DemandForecast,
        [
            {
                "id": str(uuid.uuid4()),
                "hotel_id": forecast.hotel_id,
                "room_type_id": forecast.room_type_id,
                "date": forecast.stay_date,
                "predicted_occupancy": forecast.predicted_occupancy,
                "confidence": forecast.confidence,
                "updated_at": forecast.updated_at,
            }
        ],
        conflict_columns=["hotel_id", "room_type_id", "date"],
        update_columns=["predicted_occupancy", "confidence", "updated_at"],
    )


def insert_competitor_rates(
    conn: Connection, hotel_id: str, samples: list[dict[str, Any]], now: datetime
) -> None:
    """
    Append competitor rate samples.

    Args:
        samples (list[dict]): Each with competitor_id, room_type_id, date, rate and
            optional currency and confidence (0-100)
    """
    if not samples:
        return
    rows = [
        {
            "id": str(uuid.uuid4()),
            "hotel_id": hotel_id,
            "competitor_id": s["competitor_id"],
            "room_type_id": s["room_type_id"],
            "date": s["date"] if isinstance(s["date"], date) else date.fromisoformat(s["date"]),
            "rate": float(s["rate"]),
            "currency": s.get("currency", "INR"),
            "confidence": int(s.get("confidence", 100)),
            "collected_at": now,
        }
        for s in samples
    ]
    conn.execute(insert(CompetitorRate), rows)


def insert_strategy(conn: Connection, hotel_id: str, data: dict[str, Any], now: datetime) -> str:
    """
    Insert a pricing strategy.

    Returns:
        str: The new strategy id
    """
    strategy_id = data.get("id") or str(uuid.uuid4())
    conn.execute(
        insert(PricingStrategy).values(
            id=strategy_id,
            hotel_id=hotel_id,
            name=data["name"],
            strategy_type=data["strategy_type"],
            priority=int(data.get("priority", 1)),
            room_type_ids=list(data.get("room_type_ids", [])),
            parameters=dict(data.get("parameters", {})),
            min_rate=data.get("min_rate"),
            max_rate=data.get("max_rate"),
            is_active=data.get("is_active", True),
            created_at=now,
        )
    )
    return strategy_id
