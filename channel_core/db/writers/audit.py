import uuid
from datetime import date, datetime
from typing import Any, Optional

from sqlalchemy import insert
from sqlalchemy.engine import Connection

from channel_core.models.audit import AuditLog, RateParityLog


def insert_audit_entry(
    conn: Connection,
    table_name: str,
    change_type: str,
    source: str,
    timestamp: datetime,
    hotel_id: Optional[str] = None,
    record_id: Optional[str] = None,
    old_values: Optional[dict[str, Any]] = None,
    new_values: Optional[dict[str, Any]] = None,
    tags: Optional[list[str]] = None,
    entry_id: Optional[str] = None,
) -> str:
    """
    Append one audit entry. Entries are never updated or deleted.

    Returns:
        str: The entry id
    """
    entry_id = entry_id or str(uuid.uuid4())
    conn.execute(
        insert(AuditLog).values(
            id=entry_id,
            hotel_id=hotel_id,
            table_name=table_name,
            record_id=record_id,
            change_type=change_type,
            source=source,
            old_values=old_values,
            new_values=new_values,
            tags=tags or [],
            timestamp=timestamp,
        )
    )
    return entry_id


def insert_parity_log(
    conn: Connection,
    hotel_id: str,
    room_type_id: str,
    day: date,
    base_rate: float,
    channel_rates: dict[str, float],
    violations: list[dict[str, Any]],
    checked_at: datetime,
) -> str:
    """Append a rate parity check result."""
    log_id = str(uuid.uuid4())
    conn.execute(
        insert(RateParityLog).values(
            id=log_id,
            hotel_id=hotel_id,
            room_type_id=room_type_id,
            date=day,
            base_rate=base_rate,
            channel_rates=channel_rates,
            violations=violations,
            overall_compliance=not violations,
            checked_at=checked_at,
        )
    )
    return log_id
