"""
Audit trail for ledger, booking and sync activity.

Entries are append-only. Terminal errors surfaced to callers are written here
first so the correlation id in the error matches an entry.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

import structlog
from sqlalchemy.engine import Connection, Engine

from channel_core.db.writers.audit import insert_audit_entry
from channel_core.errors import ChannelCoreError
from channel_core.logging_config import current_correlation_id
from channel_core.utils.datetime import utc_now

logger = structlog.get_logger(__name__)

# Change types
INVENTORY_RESERVED = "inventory_reserved"
INVENTORY_RELEASED = "inventory_released"
INVENTORY_ADJUSTED = "inventory_adjusted"
RATE_UPDATED = "rate_updated"
STATUS_CHANGED = "status_changed"
BOOKING_CREATED = "booking_created"
AMENDMENT_RECEIVED = "amendment_received"
AMENDMENT_RESOLVED = "amendment_resolved"
SYNC_SUCCESS = "sync_success"
SYNC_FAILED = "sync_failed"
SYNC_DEAD_LETTER = "sync_dead_letter"
RESERVATION_REJECTED = "rejected_by_inventory"
RECONCILIATION_REQUIRED = "reconciliation_required"
RULE_CHANGED = "rule_changed"
CHANNEL_CHANGED = "channel_changed"
ERROR = "error"


class AuditTrail:
    """
    Writes audit entries, either inside a caller's transaction or in its own.
    """

    def __init__(self, engine: Engine):
        self.engine = engine

    def record(
        self,
        table_name: str,
        change_type: str,
        source: str,
        hotel_id: Optional[str] = None,
        record_id: Optional[str] = None,
        old_values: Optional[dict[str, Any]] = None,
        new_values: Optional[dict[str, Any]] = None,
        tags: Optional[list[str]] = None,
        conn: Optional[Connection] = None,
        now: Optional[datetime] = None,
        entry_id: Optional[str] = None,
    ) -> str:
        """
        Append an entry.

        Args:
            conn: Write inside this transaction; a new one is opened when None

        Returns:
            str: Entry id
        """
        kwargs: dict[str, Any] = dict(
            table_name=table_name,
            change_type=change_type,
            source=source,
            timestamp=now or utc_now(),
            hotel_id=hotel_id,
            record_id=record_id,
            old_values=old_values,
            new_values=new_values,
            tags=tags,
            entry_id=entry_id,
        )
        if conn is not None:
            return insert_audit_entry(conn, **kwargs)
        with self.engine.begin() as own_conn:
            return insert_audit_entry(own_conn, **kwargs)

    def record_error(
        self,
        error: ChannelCoreError,
        table_name: str,
        source: str,
        hotel_id: Optional[str] = None,
        record_id: Optional[str] = None,
        context: Optional[dict[str, Any]] = None,
    ) -> str:
        """
        Write an error entry and stamp its id onto the error as correlation id.

        The entry is written in its own transaction; the failing operation has
        already rolled back. The request id bound to the logging context, if
        any, is stored alongside it.
        """
        if error.correlation_id is not None:
            return error.correlation_id

        correlation_id = self.record(
            table_name=table_name,
            change_type=ERROR,
            source=source,
            hotel_id=hotel_id,
            record_id=record_id,
            new_values={
                **error.to_dict(),
                "context": context or {},
                "request_id": current_correlation_id(),
            },
            tags=["error", error.kind],
        )
        error.correlation_id = correlation_id
        logger.warning(
            "operation_failed",
            kind=error.kind,
            error=error.message,
            correlation_id=correlation_id,
            hotel_id=hotel_id,
            record_id=record_id,
        )
        return correlation_id
