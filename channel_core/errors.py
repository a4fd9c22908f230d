"""
Error taxonomy for the channel & inventory core.

Every error carries a stable ``kind`` string. Terminal errors handed back to
callers also carry a ``correlation_id`` that matches an AuditLog entry.
"""

from __future__ import annotations

from datetime import date
from typing import Any, Iterable, Optional


class ChannelCoreError(Exception):
    """Base class for all errors raised by the core."""

    kind = "error"

    def __init__(
        self,
        message: str,
        correlation_id: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.correlation_id = correlation_id
        self.details: dict[str, Any] = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Serializable view used by HTTP responses and audit entries."""
        return {
            "kind": self.kind,
            "message": self.message,
            "correlation_id": self.correlation_id,
            "details": self.details,
        }


class InvalidTransition(ChannelCoreError):
    """Booking status change rejected by the transition matrix or a business rule."""

    kind = "invalid_transition"

    def __init__(
        self,
        from_status: str,
        to_status: str,
        allowed: Iterable[str],
        reason: Optional[str] = None,
    ):
        self.from_status = from_status
        self.to_status = to_status
        self.allowed = list(allowed)
        self.reason = reason
        message = reason or (
            f"Invalid status transition from '{from_status}' to '{to_status}'. "
            f"Allowed transitions: {', '.join(self.allowed) or 'none'}"
        )
        super().__init__(
            message,
            details={"from": from_status, "to": to_status, "allowed": self.allowed},
        )


class OversoldError(ChannelCoreError):
    """A reserve would exceed the allowance or hits a stop-sell/CTA/CTD/LOS restriction."""

    kind = "oversold"

    CAPACITY = "capacity"
    STOP_SELL = "stop_sell"
    CLOSED_TO_ARRIVAL = "closed_to_arrival"
    CLOSED_TO_DEPARTURE = "closed_to_departure"
    MIN_LOS = "min_los"
    MAX_LOS = "max_los"

    def __init__(self, day: date, reason: str, message: Optional[str] = None):
        self.date = day
        self.reason = reason
        super().__init__(
            message or f"Cannot sell {day.isoformat()}: {reason}",
            details={"date": day.isoformat(), "reason": reason},
        )


class MappingMissing(ChannelCoreError):
    """A channel has no room mapping for the requested room type."""

    kind = "mapping_missing"

    def __init__(self, channel_id: str, room_type_id: str):
        self.channel_id = channel_id
        self.room_type_id = room_type_id
        super().__init__(
            f"Channel {channel_id} has no mapping for room type {room_type_id}",
            details={"channel_id": channel_id, "room_type_id": room_type_id},
        )


class AdaptorError(ChannelCoreError):
    """A channel rejected a request or could not be reached."""

    kind = "adaptor_error"

    TIMEOUT = "timeout"
    REJECTED = "rejected"
    AUTH = "auth"
    TRANSPORT = "transport"

    def __init__(self, message: str, failure_kind: str = TRANSPORT, retryable: bool = True):
        self.failure_kind = failure_kind
        self.retryable = retryable
        super().__init__(message, details={"failure_kind": failure_kind, "retryable": retryable})


class ConflictError(ChannelCoreError):
    """Optimistic version check failed on a ledger row or booking."""

    kind = "conflict"


class ValidationError(ChannelCoreError):
    """Malformed or inconsistent input from a caller."""

    kind = "validation_error"


class NotFound(ChannelCoreError):
    """A referenced entity does not exist."""

    kind = "not_found"


class IntegrityViolation(ChannelCoreError):
    """An invariant breach was detected; the offending write is refused."""

    kind = "integrity_violation"
