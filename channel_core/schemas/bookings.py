"""Booking aggregate and the value objects it owns."""

from datetime import date, datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


class BookingStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    MODIFIED = "modified"
    CHECKED_IN = "checked_in"
    CHECKED_OUT = "checked_out"
    CANCELLED = "cancelled"
    NO_SHOW = "no_show"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    PARTIALLY_PAID = "partially_paid"
    FAILED = "failed"
    REFUNDED = "refunded"


class ChangeSource(str, Enum):
    """Who initiated a status change."""

    DIRECT = "direct"
    OTA = "ota"
    ADMIN = "admin"
    GUEST = "guest"
    SYSTEM = "system"


class AmendmentType(str, Enum):
    BOOKING_MODIFICATION = "booking_modification"
    GUEST_DETAILS_CHANGE = "guest_details_change"
    DATES_CHANGE = "dates_change"
    RATE_CHANGE = "rate_change"
    ROOM_CHANGE = "room_change"
    CANCELLATION_REQUEST = "cancellation_request"
    SPECIAL_REQUEST_CHANGE = "special_request_change"


class AmendmentStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    PARTIALLY_APPROVED = "partially_approved"


DIRECT_SOURCE = "direct"


class BookedRoom(BaseModel):
    room_id: Optional[str] = None
    rate: float


class StatusHistoryEntry(BaseModel):
    previous_status: Optional[BookingStatus] = None
    status: BookingStatus
    timestamp: datetime
    source: ChangeSource
    user_id: Optional[str] = None
    reason: Optional[str] = None
    automatic: bool = False
    validated: bool = True


class Modification(BaseModel):
    id: str
    type: str
    timestamp: datetime
    source: ChangeSource
    user_id: Optional[str] = None
    amendment_id: Optional[str] = None
    previous_values: dict[str, Any] = Field(default_factory=dict)
    new_values: dict[str, Any] = Field(default_factory=dict)


class Approver(BaseModel):
    user_id: Optional[str] = None
    user_name: Optional[str] = None
    timestamp: datetime


class OtaAmendment(BaseModel):
    id: str
    channel_amendment_id: Optional[str] = None
    type: AmendmentType
    status: AmendmentStatus = AmendmentStatus.PENDING
    channel: str
    guest_id: Optional[str] = None
    received_at: datetime
    original_data: dict[str, Any] = Field(default_factory=dict)
    requested_changes: dict[str, Any] = Field(default_factory=dict)
    approved_changes: dict[str, Any] = Field(default_factory=dict)
    rejection_reason: Optional[str] = None
    processing_notes: Optional[str] = None
    requires_manual_approval: bool = False
    approved_by: Optional[Approver] = None
    resolved_at: Optional[datetime] = None


class AmendmentFlags(BaseModel):
    has_active_pending_amendments: bool = False
    amendment_count: int = 0
    last_amendment_date: Optional[datetime] = None
    requires_reconfirmation: bool = False
    # Index into ota_amendments of the first amendment since the last move to modified
    round_start: int = 0


class ChannelSyncEntry(BaseModel):
    channel_id: str
    status: str
    at: datetime
    error: Optional[str] = None


class BookingSyncStatus(BaseModel):
    needs_sync: bool = False
    per_channel: list[ChannelSyncEntry] = Field(default_factory=list)


class Booking(BaseModel):
    """
    In-memory booking aggregate.

    Loaded from and written back to the ``bookings`` table as a whole; the
    state machine mutates it and the booking service persists it under the
    optimistic ``version``.
    """

    id: str
    hotel_id: str
    user_id: Optional[str] = None
    room_type_id: str
    rooms: list[BookedRoom] = Field(default_factory=list)
    guest: dict[str, Any] = Field(default_factory=dict)
    check_in: date
    check_out: date
    nights: int
    total_amount: float
    currency: str
    status: BookingStatus
    payment_status: PaymentStatus = PaymentStatus.PENDING
    source: str = DIRECT_SOURCE
    channel_booking_id: Optional[str] = None
    status_history: list[StatusHistoryEntry] = Field(default_factory=list)
    modifications: list[Modification] = Field(default_factory=list)
    ota_amendments: list[OtaAmendment] = Field(default_factory=list)
    amendment_flags: AmendmentFlags = Field(default_factory=AmendmentFlags)
    sync_status: BookingSyncStatus = Field(default_factory=BookingSyncStatus)
    pending_actions: list[str] = Field(default_factory=list)
    raw_booking_payload: Optional[dict[str, Any]] = None
    reserved_until: Optional[datetime] = None
    actual_check_in: Optional[datetime] = None
    actual_check_out: Optional[datetime] = None
    no_show_recorded: Optional[datetime] = None
    last_status_change: Optional[datetime] = None
    version: int = 1

    @property
    def rooms_count(self) -> int:
        """Number of rooms the booking holds in the ledger."""
        return max(1, len(self.rooms))

    @property
    def is_ota(self) -> bool:
        return self.source != DIRECT_SOURCE

    def pending_amendments(self) -> list[OtaAmendment]:
        return [a for a in self.ota_amendments if a.status == AmendmentStatus.PENDING]

    def find_amendment(self, amendment_id: str) -> Optional[OtaAmendment]:
        for amendment in self.ota_amendments:
            if amendment.id == amendment_id:
                return amendment
        return None


class StatusChangeContext(BaseModel):
    """
    A status change request and the switches that relax business rules.
    """

    source: ChangeSource
    user_id: Optional[str] = None
    reason: Optional[str] = None
    automatic: bool = False
    bypass_amendment_check: bool = False
    early_check_in: bool = False
    bypass_cancellation_policy: bool = False
    manual_no_show: bool = False
    force_modified: bool = False
    process_refund: bool = True
    enable_automation: bool = True
    apply_no_show_penalty: bool = True


class AmendmentRequest(BaseModel):
    """An OTA-originated change request against an existing booking."""

    type: AmendmentType
    channel: str
    requested_changes: dict[str, Any]
    channel_amendment_id: Optional[str] = None
    guest_id: Optional[str] = None
    processing_notes: Optional[str] = None


class AmendmentDecision(BaseModel):
    """Resolution of a pending amendment by an approver."""

    status: AmendmentStatus
    user_id: Optional[str] = None
    user_name: Optional[str] = None
    partial_changes: Optional[dict[str, Any]] = None
    rejection_reason: Optional[str] = None
    bypass_amendment_check: bool = False


class DirectBookingRequest(BaseModel):
    """Input for a direct (non-OTA) booking hold."""

    hotel_id: str
    room_type_id: str
    check_in: date
    check_out: date
    rooms: list[BookedRoom]
    currency: str = "INR"
    user_id: Optional[str] = None
    guest: dict[str, Any] = Field(default_factory=dict)
    payment_status: PaymentStatus = PaymentStatus.PENDING
