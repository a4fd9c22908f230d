"""
Booking lifecycle rules.

Everything in this module is pure: functions take a ``Booking`` aggregate, a
request and ``now``, mutate the aggregate and return the side effects the
caller must carry out (ledger release, channel sync, refund, ...). Nothing here
touches the store, which keeps the state machine testable in isolation.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, fields
from datetime import date, datetime
from typing import Any, Callable, Optional

import structlog

from channel_core.config import Settings
from channel_core.errors import InvalidTransition, NotFound, OversoldError, ValidationError
from channel_core.schemas.bookings import (
    AmendmentDecision,
    AmendmentRequest,
    AmendmentStatus,
    AmendmentType,
    Approver,
    BookedRoom,
    Booking,
    BookingStatus,
    ChangeSource,
    Modification,
    OtaAmendment,
    PaymentStatus,
    StatusChangeContext,
    StatusHistoryEntry,
)
from channel_core.utils.datetime import start_of_day

logger = structlog.get_logger(__name__)

S = BookingStatus

TRANSITIONS: dict[BookingStatus, tuple[BookingStatus, ...]] = {
    S.PENDING: (S.CONFIRMED, S.CANCELLED, S.MODIFIED),
    S.CONFIRMED: (S.CHECKED_IN, S.CANCELLED, S.NO_SHOW, S.MODIFIED),
    S.MODIFIED: (S.CONFIRMED, S.CANCELLED, S.CHECKED_IN, S.NO_SHOW),
    S.CHECKED_IN: (S.CHECKED_OUT,),
    S.CHECKED_OUT: (),
    S.CANCELLED: (),
    S.NO_SHOW: (S.CANCELLED,),
}

TERMINAL_STATUSES = frozenset({S.CHECKED_OUT, S.CANCELLED})

# Fields an OTA amendment may touch
AMENDABLE_FIELDS = frozenset(
    {"check_in", "check_out", "rooms_count", "total_amount", "guest", "special_requests"}
)
STAY_FIELDS = frozenset({"check_in", "check_out", "rooms_count"})

AMENDMENT_WINDOW_HOURS = 2
RATE_CHANGE_MANUAL_APPROVAL_RATIO = 0.2
AUTO_APPROVABLE_TYPES = frozenset(
    {AmendmentType.SPECIAL_REQUEST_CHANGE, AmendmentType.GUEST_DETAILS_CHANGE}
)

# Pending action names written to Booking.pending_actions
ACTION_REFUND = "refund"
ACTION_FINAL_BILLING = "final_billing"
ACTION_PENALTY = "no_show_penalty"
ACTION_ROOM_STATUS = "room_status_update"
ACTION_AUTOMATION = "post_checkout_automation"


@dataclass(frozen=True)
class StatusEffects:
    """Side effects a transition requires from the caller."""

    needs_sync: bool = False
    needs_release: bool = False
    needs_refund: bool = False
    needs_room_status_update: bool = False
    needs_automation: bool = False
    needs_final_billing: bool = False
    needs_penalty: bool = False

    def merge(self, other: "StatusEffects") -> "StatusEffects":
        return StatusEffects(
            **{f.name: getattr(self, f.name) or getattr(other, f.name) for f in fields(self)}
        )

    def pending_actions(self) -> list[str]:
        """Downstream jobs to enqueue, in a stable order."""
        actions = []
        if self.needs_refund:
            actions.append(ACTION_REFUND)
        if self.needs_final_billing:
            actions.append(ACTION_FINAL_BILLING)
        if self.needs_penalty:
            actions.append(ACTION_PENALTY)
        if self.needs_room_status_update:
            actions.append(ACTION_ROOM_STATUS)
        if self.needs_automation:
            actions.append(ACTION_AUTOMATION)
        return actions


@dataclass(frozen=True)
class BookingRules:
    cancellation_grace_hours: int = 24
    no_show_grace_hours: int = 2

    @classmethod
    def from_settings(cls, settings: Settings) -> "BookingRules":
        return cls(
            cancellation_grace_hours=settings.booking_cancellation_grace_hours,
            no_show_grace_hours=settings.booking_no_show_grace_hours,
        )


@dataclass(frozen=True)
class StayChange:
    """Old and new inventory footprint of a booking, for ledger adjustment."""

    room_type_id: str
    old_check_in: date
    old_check_out: date
    old_rooms: int
    new_check_in: date
    new_check_out: date
    new_rooms: int

    @property
    def changed(self) -> bool:
        return (self.old_check_in, self.old_check_out, self.old_rooms) != (
            self.new_check_in,
            self.new_check_out,
            self.new_rooms,
        )


@dataclass(frozen=True)
class AmendmentResolution:
    amendment: OtaAmendment
    effects: StatusEffects
    stay_change: Optional[StayChange] = None


@dataclass(frozen=True)
class AutoApprovalVerdict:
    auto_approve: bool
    reason: str
    review_priority: int


def allowed_transitions(status: BookingStatus) -> list[str]:
    return [s.value for s in TRANSITIONS[status]]


def hours_until_check_in(booking: Booking, now: datetime) -> float:
    return (start_of_day(booking.check_in) - now).total_seconds() / 3600


def can_cancel(booking: Booking, now: datetime, rules: BookingRules = BookingRules()) -> bool:
    """Default cancellation policy for guest and OTA initiated cancellations."""
    if booking.status in (S.CHECKED_IN, S.CHECKED_OUT, S.CANCELLED):
        return False
    return hours_until_check_in(booking, now) > rules.cancellation_grace_hours


def validate_transition(
    booking: Booking,
    target: BookingStatus,
    context: StatusChangeContext,
    now: datetime,
    rules: BookingRules = BookingRules(),
) -> None:
    """
    Check a status change against the transition matrix and business rules.

    Raises:
        InvalidTransition: If the change is not allowed
    """
    current = booking.status
    allowed = allowed_transitions(current)

    def reject(reason: Optional[str] = None) -> InvalidTransition:
        return InvalidTransition(current.value, target.value, allowed, reason)

    if target not in TRANSITIONS[current]:
        raise reject()

    if (
        current == S.PENDING
        and booking.reserved_until is not None
        and now > booking.reserved_until
        and not (target == S.CANCELLED and context.source == ChangeSource.SYSTEM)
    ):
        raise reject(f"Hold expired at {booking.reserved_until.isoformat()}")

    if target == S.CONFIRMED:
        if booking.payment_status == PaymentStatus.FAILED:
            raise reject("Cannot confirm booking with failed payment")
        if booking.amendment_flags.has_active_pending_amendments and not context.bypass_amendment_check:
            raise reject("Cannot confirm booking with pending OTA amendments")

    elif target == S.CHECKED_IN:
        if now < start_of_day(booking.check_in) and not context.early_check_in:
            raise reject("Cannot check in before the check-in date")

    elif target == S.CANCELLED:
        if (
            context.source in (ChangeSource.GUEST, ChangeSource.OTA)
            and not context.bypass_cancellation_policy
            and not can_cancel(booking, now, rules)
        ):
            raise reject(
                f"Cancellation not permitted within {rules.cancellation_grace_hours} hours "
                "of check-in"
            )

    elif target == S.NO_SHOW:
        hours_since = -hours_until_check_in(booking, now)
        if hours_since < rules.no_show_grace_hours and not context.manual_no_show:
            raise reject(
                f"Cannot mark no-show until {rules.no_show_grace_hours} hours after check-in"
            )

    elif target == S.MODIFIED:
        if not booking.amendment_flags.has_active_pending_amendments and not context.force_modified:
            raise reject("Cannot mark booking modified without a pending amendment")


def change_status(
    booking: Booking,
    target: BookingStatus,
    context: StatusChangeContext,
    now: datetime,
    rules: BookingRules = BookingRules(),
) -> StatusEffects:
    """
    Validate and apply a status change, returning the effects to execute.

    Args:
        booking: Aggregate to mutate
        target: Desired status
        context: Who is asking and which rules they may relax
        now: Current time (aware UTC)
        rules: Grace periods

    Returns:
        StatusEffects: What the caller must do next

    Raises:
        InvalidTransition: If the change is rejected
    """
    validate_transition(booking, target, context, now, rules)

    previous = booking.status
    booking.status = target
    booking.last_status_change = now
    booking.status_history.append(
        StatusHistoryEntry(
            previous_status=previous,
            status=target,
            timestamp=now,
            source=context.source,
            user_id=context.user_id,
            reason=context.reason,
            automatic=context.automatic,
            validated=True,
        )
    )
    if target != S.PENDING:
        booking.reserved_until = None

    effects = StatusEffects()
    if target == S.CONFIRMED:
        booking.amendment_flags.requires_reconfirmation = False
        effects = StatusEffects(needs_sync=booking.is_ota)
    elif target == S.MODIFIED:
        pending = booking.pending_amendments()
        booking.amendment_flags.round_start = (
            booking.ota_amendments.index(pending[0]) if pending else len(booking.ota_amendments)
        )
        booking.amendment_flags.requires_reconfirmation = True
        effects = StatusEffects(needs_sync=True)
    elif target == S.CHECKED_IN:
        booking.actual_check_in = now
        effects = StatusEffects(needs_room_status_update=True)
    elif target == S.CHECKED_OUT:
        booking.actual_check_out = now
        effects = StatusEffects(
            needs_final_billing=True,
            needs_room_status_update=True,
            needs_automation=context.enable_automation,
        )
    elif target == S.CANCELLED:
        effects = StatusEffects(
            needs_release=True,
            needs_refund=booking.payment_status == PaymentStatus.PAID and context.process_refund,
            needs_sync=booking.is_ota,
        )
    elif target == S.NO_SHOW:
        booking.no_show_recorded = now
        effects = StatusEffects(needs_penalty=context.apply_no_show_penalty)

    _record_effects(booking, effects)
    return effects


def _record_effects(booking: Booking, effects: StatusEffects) -> None:
    if effects.needs_sync:
        booking.sync_status.needs_sync = True
    for action in effects.pending_actions():
        if action not in booking.pending_actions:
            booking.pending_actions.append(action)


def new_booking_history(
    booking: Booking, context: StatusChangeContext, now: datetime
) -> StatusHistoryEntry:
    """Seed entry for a freshly created booking."""
    entry = StatusHistoryEntry(
        previous_status=None,
        status=booking.status,
        timestamp=now,
        source=context.source,
        user_id=context.user_id,
        reason=context.reason,
        automatic=context.automatic,
        validated=True,
    )
    booking.status_history.append(entry)
    booking.last_status_change = now
    return entry


# =============================================================================
# OTA amendments
# =============================================================================


def _current_values(booking: Booking, keys: Any) -> dict[str, Any]:
    snapshot: dict[str, Any] = {}
    for key in keys:
        if key == "check_in":
            snapshot[key] = booking.check_in.isoformat()
        elif key == "check_out":
            snapshot[key] = booking.check_out.isoformat()
        elif key == "rooms_count":
            snapshot[key] = booking.rooms_count
        elif key == "total_amount":
            snapshot[key] = booking.total_amount
        elif key == "guest":
            snapshot[key] = dict(booking.guest)
        elif key == "special_requests":
            snapshot[key] = booking.guest.get("special_requests")
    return snapshot


def _parse_day(value: Any, field_name: str) -> date:
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value))
    except ValueError as e:
        raise ValidationError(f"Invalid {field_name}: {value!r}") from e


def _stay_after(booking: Booking, changes: dict[str, Any]) -> tuple[date, date, int]:
    check_in = _parse_day(changes.get("check_in", booking.check_in), "check_in")
    check_out = _parse_day(changes.get("check_out", booking.check_out), "check_out")
    rooms = int(changes.get("rooms_count", booking.rooms_count))
    if check_out <= check_in:
        raise ValidationError("Check-out date must be after check-in date")
    if rooms < 1:
        raise ValidationError("rooms_count must be at least 1")
    return check_in, check_out, rooms


def validate_amendment_request(booking: Booking, request: AmendmentRequest, now: datetime) -> bool:
    """
    Check an amendment against the amendment window and field rules.

    Returns:
        bool: True if the amendment needs manual approval

    Raises:
        ValidationError: If the amendment cannot be accepted at all
    """
    if booking.status in TERMINAL_STATUSES:
        raise ValidationError(f"Cannot amend a {booking.status.value} booking")

    unknown = set(request.requested_changes) - AMENDABLE_FIELDS
    if unknown:
        raise ValidationError(f"Unsupported amendment fields: {', '.join(sorted(unknown))}")
    if not request.requested_changes and request.type != AmendmentType.CANCELLATION_REQUEST:
        raise ValidationError("Amendment has no requested changes")

    if (
        request.type != AmendmentType.CANCELLATION_REQUEST
        and hours_until_check_in(booking, now) < AMENDMENT_WINDOW_HOURS
    ):
        raise ValidationError(
            f"Amendments must arrive at least {AMENDMENT_WINDOW_HOURS} hours before check-in"
        )

    if STAY_FIELDS & set(request.requested_changes):
        check_in, _, _ = _stay_after(booking, request.requested_changes)
        if "check_in" in request.requested_changes and check_in < now.date():
            raise ValidationError("New check-in date cannot be in the past")

    manual = False
    if "total_amount" in request.requested_changes:
        new_total = float(request.requested_changes["total_amount"])
        if new_total < 0:
            raise ValidationError("total_amount cannot be negative")
        if booking.total_amount > 0:
            ratio = abs(new_total - booking.total_amount) / booking.total_amount
            manual = ratio > RATE_CHANGE_MANUAL_APPROVAL_RATIO
    return manual


def process_ota_amendment(
    booking: Booking,
    request: AmendmentRequest,
    now: datetime,
    rules: BookingRules = BookingRules(),
) -> tuple[OtaAmendment, StatusEffects]:
    """
    Record a pending OTA amendment and move the booking to ``modified``.

    The amendment is only recorded here; approving it is an explicit
    ``resolve_amendment`` call.
    """
    requires_manual = validate_amendment_request(booking, request, now)

    amendment = OtaAmendment(
        id=str(uuid.uuid4()),
        channel_amendment_id=request.channel_amendment_id,
        type=request.type,
        status=AmendmentStatus.PENDING,
        channel=request.channel,
        guest_id=request.guest_id,
        received_at=now,
        original_data=_current_values(booking, request.requested_changes),
        requested_changes=dict(request.requested_changes),
        processing_notes=request.processing_notes,
        requires_manual_approval=requires_manual,
    )
    booking.ota_amendments.append(amendment)
    flags = booking.amendment_flags
    flags.has_active_pending_amendments = True
    flags.amendment_count += 1
    flags.last_amendment_date = now

    effects = StatusEffects()
    if booking.status != S.MODIFIED:
        if S.MODIFIED in TRANSITIONS[booking.status]:
            effects = change_status(
                booking,
                S.MODIFIED,
                StatusChangeContext(
                    source=ChangeSource.OTA,
                    reason=f"OTA amendment: {request.type.value}",
                    automatic=True,
                ),
                now,
                rules,
            )
        else:
            logger.warning(
                "amendment_recorded_without_status_change",
                booking_id=booking.id,
                status=booking.status.value,
                amendment_type=request.type.value,
            )
    return amendment, effects


def _conflicting_amendment(booking: Booking, amendment: OtaAmendment) -> Optional[OtaAmendment]:
    for earlier in booking.ota_amendments:
        if earlier.id == amendment.id:
            return None
        if earlier.status not in (AmendmentStatus.APPROVED, AmendmentStatus.PARTIALLY_APPROVED):
            continue
        # Amendments received after the approval were diffed against the amended booking
        if earlier.resolved_at is not None and amendment.received_at > earlier.resolved_at:
            continue
        if set(earlier.approved_changes) & set(amendment.requested_changes):
            return earlier
    return None


def _apply_changes(booking: Booking, changes: dict[str, Any]) -> None:
    if STAY_FIELDS & set(changes):
        check_in, check_out, rooms = _stay_after(booking, changes)
        booking.check_in = check_in
        booking.check_out = check_out
        booking.nights = (check_out - check_in).days
        if rooms != len(booking.rooms):
            template = booking.rooms[-1].rate if booking.rooms else 0.0
            if rooms > len(booking.rooms):
                booking.rooms.extend(
                    BookedRoom(rate=template) for _ in range(rooms - len(booking.rooms))
                )
            else:
                del booking.rooms[rooms:]
    if "total_amount" in changes:
        booking.total_amount = float(changes["total_amount"])
    if "guest" in changes:
        booking.guest = {**booking.guest, **dict(changes["guest"])}
    if "special_requests" in changes:
        booking.guest = {**booking.guest, "special_requests": changes["special_requests"]}


def _finish_resolution(
    booking: Booking, now: datetime, rules: BookingRules
) -> StatusEffects:
    pending = booking.pending_amendments()
    booking.amendment_flags.has_active_pending_amendments = bool(pending)
    if pending or booking.status != S.MODIFIED:
        return StatusEffects()

    accepted = any(
        a.status in (AmendmentStatus.APPROVED, AmendmentStatus.PARTIALLY_APPROVED)
        for a in booking.ota_amendments[booking.amendment_flags.round_start:]
    )
    if not accepted:
        return StatusEffects()
    try:
        return change_status(
            booking,
            S.CONFIRMED,
            StatusChangeContext(
                source=ChangeSource.SYSTEM,
                reason="All OTA amendments resolved",
                automatic=True,
                bypass_amendment_check=True,
            ),
            now,
            rules,
        )
    except InvalidTransition as e:
        logger.warning("amendment_auto_confirm_skipped", booking_id=booking.id, reason=e.message)
        return StatusEffects()


def resolve_amendment(
    booking: Booking,
    amendment_id: str,
    decision: AmendmentDecision,
    now: datetime,
    rules: BookingRules = BookingRules(),
    apply_inventory: Optional[Callable[[StayChange, bool], None]] = None,
) -> AmendmentResolution:
    """
    Approve, partially approve or reject a pending amendment.

    Amendments resolve in receipt order. An accepted amendment whose fields
    overlap one approved while it was still pending is rejected as a conflict. When
    the accepted diff changes the stay, ``apply_inventory`` is called with the
    old/new footprint and the bypass flag; an ``OversoldError`` from it turns
    the decision into a rejection.

    Raises:
        NotFound: Unknown amendment id
        ValidationError: Amendment not pending, out of order, or a partial
            approval naming fields that were never requested
    """
    amendment = booking.find_amendment(amendment_id)
    if amendment is None:
        raise NotFound(f"Amendment {amendment_id} not found on booking {booking.id}")
    if amendment.status != AmendmentStatus.PENDING:
        raise ValidationError(f"Amendment {amendment_id} is already {amendment.status.value}")
    if decision.status == AmendmentStatus.PENDING:
        raise ValidationError("Decision must approve, partially approve or reject")
    earliest = booking.pending_amendments()[0]
    if earliest.id != amendment.id:
        raise ValidationError(f"Amendment {earliest.id} was received earlier and must be resolved first")

    if decision.status == AmendmentStatus.PARTIALLY_APPROVED:
        changes = dict(decision.partial_changes or {})
        if not changes:
            raise ValidationError("Partial approval requires partial_changes")
        extra = set(changes) - set(amendment.requested_changes)
        if extra:
            raise ValidationError(f"Partial changes were never requested: {', '.join(sorted(extra))}")
    else:
        changes = dict(amendment.requested_changes)

    amendment.resolved_at = now
    amendment.approved_by = Approver(
        user_id=decision.user_id, user_name=decision.user_name, timestamp=now
    )
    effects = StatusEffects()
    stay_change: Optional[StayChange] = None

    status = decision.status
    rejection = decision.rejection_reason
    if status != AmendmentStatus.REJECTED:
        conflict = _conflicting_amendment(booking, amendment)
        if conflict is not None:
            status = AmendmentStatus.REJECTED
            rejection = f"conflicts with approved amendment {conflict.id}"

    if status != AmendmentStatus.REJECTED and amendment.type == AmendmentType.CANCELLATION_REQUEST:
        amendment.status = status
        amendment.approved_changes = changes
        booking.amendment_flags.has_active_pending_amendments = bool(booking.pending_amendments())
        effects = change_status(
            booking,
            S.CANCELLED,
            StatusChangeContext(
                source=ChangeSource.OTA,
                user_id=decision.user_id,
                reason="OTA cancellation request approved",
                bypass_cancellation_policy=True,
            ),
            now,
            rules,
        )
        return AmendmentResolution(amendment=amendment, effects=effects)

    if status != AmendmentStatus.REJECTED and STAY_FIELDS & set(changes):
        check_in, check_out, rooms = _stay_after(booking, changes)
        stay_change = StayChange(
            room_type_id=booking.room_type_id,
            old_check_in=booking.check_in,
            old_check_out=booking.check_out,
            old_rooms=booking.rooms_count,
            new_check_in=check_in,
            new_check_out=check_out,
            new_rooms=rooms,
        )
        if stay_change.changed and apply_inventory is not None:
            try:
                apply_inventory(stay_change, decision.bypass_amendment_check)
            except OversoldError as e:
                status = AmendmentStatus.REJECTED
                rejection = f"inventory_unavailable: {e.reason} on {e.date.isoformat()}"
                stay_change = None

    amendment.status = status
    if status == AmendmentStatus.REJECTED:
        amendment.rejection_reason = rejection or "rejected"
    else:
        amendment.approved_changes = changes
        previous = _current_values(booking, changes)
        _apply_changes(booking, changes)
        booking.modifications.append(
            Modification(
                id=str(uuid.uuid4()),
                type="ota_modification",
                timestamp=now,
                source=ChangeSource.OTA,
                user_id=decision.user_id,
                amendment_id=amendment.id,
                previous_values=previous,
                new_values=_current_values(booking, changes),
            )
        )
        booking.sync_status.needs_sync = True
        effects = StatusEffects(needs_sync=True)

    effects = effects.merge(_finish_resolution(booking, now, rules))
    return AmendmentResolution(amendment=amendment, effects=effects, stay_change=stay_change)


def evaluate_auto_approval(
    booking: Booking, amendment: OtaAmendment, now: datetime
) -> AutoApprovalVerdict:
    """
    Decide whether an amendment may be approved without a human.

    Returns a verdict with the review priority (1-10) the admin queue should
    use when a human has to look at it.
    """
    hours = hours_until_check_in(booking, now)
    priority = 5
    if hours < 24:
        priority = 10
    elif hours < 72:
        priority = 8
    elif hours < 168:
        priority = 6
    if booking.total_amount > 1000:
        priority += 2
    if booking.guest.get("vip"):
        priority += 3
    priority = min(priority, 10)

    if amendment.requires_manual_approval:
        return AutoApprovalVerdict(False, "manual approval required", priority)
    if booking.status == S.CHECKED_IN:
        return AutoApprovalVerdict(False, "guest already checked in", priority)
    if amendment.type == AmendmentType.DATES_CHANGE and hours < 24:
        return AutoApprovalVerdict(False, "date change within 24 hours of check-in", priority)
    if amendment.type not in AUTO_APPROVABLE_TYPES:
        return AutoApprovalVerdict(False, f"{amendment.type.value} needs review", priority)
    if "total_amount" in amendment.requested_changes:
        return AutoApprovalVerdict(False, "amendment changes the booking value", priority)
    return AutoApprovalVerdict(True, "eligible for automatic approval", priority)
