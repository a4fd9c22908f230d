from typing import Any, Mapping, Optional

from sqlalchemy import select
from sqlalchemy.engine import Connection

from channel_core.models.hotels import Hotel, RoomType
from channel_core.schemas.availability import RoomTypeInfo


def _to_room_type(row: Mapping[str, Any]) -> RoomTypeInfo:
    return RoomTypeInfo(
        id=row["id"],
        hotel_id=row["hotel_id"],
        name=row["name"],
        base_price=row["base_price"],
        min_price=row["min_price"],
        max_price=row["max_price"],
        total_rooms=row["total_rooms"],
        currency=row["currency"],
    )


def get_room_type(conn: Connection, hotel_id: str, room_type_id: str) -> Optional[RoomTypeInfo]:
    """
    Fetch an active room type of a hotel.

    Args:
        conn (Connection): Active SQLAlchemy connection
        hotel_id (str): Hotel ID
        room_type_id (str): Room type ID

    Returns:
        Optional[RoomTypeInfo]: The room type, or None if unknown or inactive
    """
    stmt = (
        select(RoomType)
        .where(RoomType.id == room_type_id)
        .where(RoomType.hotel_id == hotel_id)
        .where(RoomType.is_active == True)  # noqa: E712
    )
    row = conn.execute(stmt).mappings().fetchone()
    return _to_room_type(row) if row else None


def list_room_types(conn: Connection, hotel_id: str) -> list[RoomTypeInfo]:
    """Active room types of a hotel, ordered by id."""
    stmt = (
        select(RoomType)
        .where(RoomType.hotel_id == hotel_id)
        .where(RoomType.is_active == True)  # noqa: E712
        .order_by(RoomType.id)
    )
    return [_to_room_type(row) for row in conn.execute(stmt).mappings()]


def list_active_hotel_ids(conn: Connection) -> list[str]:
    """IDs of all active hotels, ordered."""
    stmt = select(Hotel.id).where(Hotel.is_active == True).order_by(Hotel.id)  # noqa: E712
    return list(conn.execute(stmt).scalars().all())
