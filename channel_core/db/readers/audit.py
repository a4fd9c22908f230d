from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.engine import Connection

from channel_core.models.audit import AuditLog, RateParityLog


def list_audit_entries(
    conn: Connection,
    hotel_id: Optional[str] = None,
    change_type: Optional[str] = None,
    record_id: Optional[str] = None,
    limit: int = 500,
) -> list[dict[str, Any]]:
    """
    Audit entries matching the given filters, oldest first.

    Args:
        conn (Connection): Active SQLAlchemy connection
        hotel_id (Optional[str]): Restrict to a hotel
        change_type (Optional[str]): Restrict to a change type (e.g. sync_dead_letter)
        record_id (Optional[str]): Restrict to one record
        limit (int): Maximum rows returned
    """
    stmt = select(AuditLog)
    if hotel_id is not None:
        stmt = stmt.where(AuditLog.hotel_id == hotel_id)
    if change_type is not None:
        stmt = stmt.where(AuditLog.change_type == change_type)
    if record_id is not None:
        stmt = stmt.where(AuditLog.record_id == record_id)
    stmt = stmt.order_by(AuditLog.timestamp.asc()).limit(limit)
    return [dict(row) for row in conn.execute(stmt).mappings()]


def get_audit_entry(conn: Connection, entry_id: str) -> Optional[dict[str, Any]]:
    row = conn.execute(select(AuditLog).where(AuditLog.id == entry_id)).mappings().fetchone()
    return dict(row) if row else None


def list_parity_logs(conn: Connection, hotel_id: str, room_type_id: str) -> list[dict[str, Any]]:
    """Rate parity checks of a room type, newest first."""
    stmt = (
        select(RateParityLog)
        .where(RateParityLog.hotel_id == hotel_id)
        .where(RateParityLog.room_type_id == room_type_id)
        .order_by(RateParityLog.checked_at.desc())
    )
    return [dict(row) for row in conn.execute(stmt).mappings()]
