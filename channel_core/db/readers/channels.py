from typing import Any, Mapping, Optional

from sqlalchemy import select
from sqlalchemy.engine import Connection

from channel_core.models.channels import Channel, InventorySync, ReservationMapping
from channel_core.schemas.channels import ChannelConfig, ConnectionStatus


def row_to_channel(row: Mapping[str, Any]) -> ChannelConfig:
    """Build a ChannelConfig from a ``channels`` result mapping (credentials excluded)."""
    return ChannelConfig(
        id=row["id"],
        hotel_id=row["hotel_id"],
        channel_id=row["channel_id"],
        name=row["name"],
        category=row["category"],
        credentials_version=row["credentials_version"],
        settings=row["settings"] or {},
        room_mappings=row["room_mappings"] or [],
        rate_parity=row["rate_parity"] or {},
        restrictions=row["restrictions"] or {},
        last_sync=row["last_sync"] or {},
        connection_status=row["connection_status"],
        is_active=row["is_active"],
    )


def get_channel(conn: Connection, hotel_id: str, channel_id: str) -> Optional[ChannelConfig]:
    """
    Fetch a hotel's channel by its channel id.

    Args:
        conn (Connection): Active SQLAlchemy connection
        hotel_id (str): Hotel ID
        channel_id (str): Channel ID, unique within the hotel

    Returns:
        Optional[ChannelConfig]: The channel, or None if not registered
    """
    stmt = select(Channel).where(Channel.hotel_id == hotel_id).where(Channel.channel_id == channel_id)
    row = conn.execute(stmt).mappings().fetchone()
    return row_to_channel(row) if row else None


def list_channels(
    conn: Connection, hotel_id: str, connected_only: bool = False
) -> list[ChannelConfig]:
    """
    Active channels of a hotel, ordered by channel id.

    Args:
        conn (Connection): Active SQLAlchemy connection
        hotel_id (str): Hotel ID
        connected_only (bool): Only return channels whose connection status is connected
    """
    stmt = (
        select(Channel)
        .where(Channel.hotel_id == hotel_id)
        .where(Channel.is_active == True)  # noqa: E712
        .order_by(Channel.channel_id)
    )
    if connected_only:
        stmt = stmt.where(Channel.connection_status == ConnectionStatus.CONNECTED.value)
    return [row_to_channel(row) for row in conn.execute(stmt).mappings()]


def get_encrypted_credentials(conn: Connection, channel_pk: str) -> Optional[tuple[str, int]]:
    """
    Fetch the encrypted credential token and its version.

    Returns:
        Optional[tuple[str, int]]: (token, version) or None if no credentials stored
    """
    row = conn.execute(
        select(Channel.credentials_encrypted, Channel.credentials_version).where(
            Channel.id == channel_pk
        )
    ).fetchone()
    if row is None or row[0] is None:
        return None
    return row[0], row[1]


def get_reservation_mapping(
    conn: Connection, channel_id: str, channel_reservation_id: str
) -> Optional[dict[str, Any]]:
    """Fetch the mapping row of an inbound reservation as a dict."""
    stmt = (
        select(ReservationMapping)
        .where(ReservationMapping.channel_id == channel_id)
        .where(ReservationMapping.channel_reservation_id == channel_reservation_id)
    )
    row = conn.execute(stmt).mappings().fetchone()
    return dict(row) if row else None


def list_retrying_syncs(conn: Connection) -> list[dict[str, Any]]:
    """InventorySync rows waiting for a retry, used to rebuild backoff state on startup."""
    stmt = select(InventorySync).where(InventorySync.sync_status == "retry")
    return [dict(row) for row in conn.execute(stmt).mappings()]


def list_inventory_syncs(
    conn: Connection, channel_id: str, room_type_id: str
) -> list[dict[str, Any]]:
    """Push bookkeeping of one channel and room type, ordered by date."""
    stmt = (
        select(InventorySync)
        .where(InventorySync.channel_id == channel_id)
        .where(InventorySync.room_type_id == room_type_id)
        .order_by(InventorySync.date)
    )
    return [dict(row) for row in conn.execute(stmt).mappings()]
