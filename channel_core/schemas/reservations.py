from datetime import date, datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field, model_validator


class ReservationMessageType(str, Enum):
    NEW = "new"
    MODIFIED = "modified"
    CANCELLED = "cancelled"


class NormalizedReservation(BaseModel):
    """
    A reservation message translated out of a channel's wire format.
    """

    channel_reservation_id: str = Field(..., min_length=1)
    message_type: ReservationMessageType = ReservationMessageType.NEW
    channel_room_type_id: str
    check_in: date
    check_out: date
    rooms_count: int = Field(1, ge=1)
    total_amount: float = Field(0.0, ge=0)
    currency: str = "INR"
    guest: dict[str, Any] = Field(default_factory=dict)
    payment_status: str = "pending"
    channel_amendment_id: Optional[str] = None
    received_at: Optional[datetime] = None
    raw_payload: dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="after")
    def check_stay(self) -> "NormalizedReservation":
        if self.check_out <= self.check_in:
            raise ValueError("check_out must be after check_in")
        return self


class InboundStatus(str, Enum):
    CREATED = "created"
    DUPLICATE = "duplicate"
    AMENDMENT_PENDING = "amendment_pending"
    CANCELLED = "cancelled"
    REJECTED_BY_INVENTORY = "rejected_by_inventory"
    MAPPING_MISSING = "mapping_missing"
    INVALID = "invalid"


class InboundOutcome(BaseModel):
    """Result of handling one inbound message; ``ack`` is what the channel is told."""

    channel_reservation_id: str
    status: InboundStatus
    ack: bool
    booking_id: Optional[str] = None
    reason: Optional[str] = None
