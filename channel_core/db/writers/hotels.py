import json
import logging
from typing import Any

from sqlalchemy.engine import Engine

from channel_core.config import DEBUG
from channel_core.db.writers._upsert import upsert_with_distinct_check
from channel_core.models.hotels import Hotel, RoomType
from channel_core.utils.datetime import utc_now

logger = logging.getLogger(__name__)


def upsert_hotels(engine: Engine, data: list[dict[str, Any]], dry_run: bool = False) -> None:
    """
    Upsert hotels into the database, only updating rows whose values changed.

    Args:
        engine (Engine): SQLAlchemy engine to open a transaction.
        data (list[dict[str, Any]]): Hotel dicts with id, name and optional currency.
        dry_run (bool): If True, skip DB writes and log only.
    """
    now = utc_now()
    rows: list[dict[str, Any]] = []
    for hotel in data:
        if not hotel.get("id"):
            logger.warning("Skipping hotel with missing id")
            continue
        rows.append(
            {
                "id": hotel["id"],
                "name": hotel.get("name", hotel["id"]),
                "currency": hotel.get("currency", "INR"),
                "is_active": hotel.get("is_active", True),
                "created_at": now,
            }
        )

    if not rows:
        logger.info("No hotels to upsert")
        return

    if dry_run:
        logger.info(f"[DRY RUN] Would upsert {len(rows)} hotels")
        return

    with engine.begin() as conn:
        upsert_with_distinct_check(
            conn,
            Hotel,
            rows,
            conflict_columns=["id"],
            update_columns=["name", "currency", "is_active"],
        )

    logger.info(f"Upserted {len(rows)} hotels into DB")


def upsert_room_types(
    engine: Engine, hotel_id: str, data: list[dict[str, Any]], dry_run: bool = False
) -> None:
    """
    Upsert room type definitions for a hotel.

    Args:
        engine (Engine): SQLAlchemy engine to open a transaction.
        hotel_id (str): Owning hotel.
        data (list[dict[str, Any]]): Room types with id, name, base_price, total_rooms
            and optional min_price, max_price, currency.
        dry_run (bool): If True, skip DB writes and log only.
    """
    now = utc_now()
    rows: list[dict[str, Any]] = []
    for room_type in data:
        if room_type.get("id") is None or room_type.get("base_price") is None:
            logger.warning("Skipping room type with missing id or base_price")
            continue
        rows.append(
            {
                "id": room_type["id"],
                "hotel_id": hotel_id,
                "name": room_type.get("name", room_type["id"]),
                "base_price": float(room_type["base_price"]),
                "min_price": room_type.get("min_price"),
                "max_price": room_type.get("max_price"),
                "total_rooms": int(room_type.get("total_rooms", 0)),
                "currency": room_type.get("currency", "INR"),
                "is_active": room_type.get("is_active", True),
                "created_at": now,
            }
        )

    if not rows:
        logger.info("No room types to upsert")
        return

    if dry_run:
        logger.info(f"[DRY RUN] Would upsert {len(rows)} room types for hotel {hotel_id}")
        return

    if DEBUG:
        logger.info(f"Sample room type to upsert:\n{json.dumps(rows[0], default=str, indent=2)}")

    with engine.begin() as conn:
        upsert_with_distinct_check(
            conn,
            RoomType,
            rows,
            conflict_columns=["id"],
            update_columns=[
                "name",
                "base_price",
                "min_price",
                "max_price",
                "total_rooms",
                "currency",
                "is_active",
            ],
        )

    logger.info(f"Upserted {len(rows)} room types for hotel {hotel_id}")
