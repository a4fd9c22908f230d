"""
Inbound OTA reservations: create, amend or cancel bookings from channel
messages, exactly once per (source, channel booking id).
"""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta
from typing import Any, Optional

import structlog
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError

from channel_core import metrics
from channel_core.db.readers.bookings import find_by_channel_booking_id
from channel_core.db.readers.channels import get_reservation_mapping
from channel_core.db.writers.channels import append_mapping_modification, insert_reservation_mapping
from channel_core.errors import ChannelCoreError, OversoldError
from channel_core.schemas.bookings import (
    AmendmentRequest,
    AmendmentType,
    BookedRoom,
    Booking,
    BookingStatus,
    ChangeSource,
    PaymentStatus,
    StatusChangeContext,
)
from channel_core.schemas.channels import ChannelConfig
from channel_core.schemas.reservations import (
    InboundOutcome,
    InboundStatus,
    NormalizedReservation,
    ReservationMessageType,
)
from channel_core.services import audit
from channel_core.services.audit import AuditTrail
from channel_core.services.bookings import BookingService
from channel_core.services.ledger import AvailabilityLedger
from channel_core.utils.datetime import utc_now

logger = structlog.get_logger(__name__)


def amendment_changes(booking: Booking, reservation: NormalizedReservation) -> dict[str, Any]:
    """
    Fields of a modification message that differ from the booking.

    Returns:
        dict: Requested changes keyed by amendable field name
    """
    changes: dict[str, Any] = {}
    if reservation.check_in != booking.check_in:
        changes["check_in"] = reservation.check_in.isoformat()
    if reservation.check_out != booking.check_out:
        changes["check_out"] = reservation.check_out.isoformat()
    if reservation.rooms_count != booking.rooms_count:
        changes["rooms_count"] = reservation.rooms_count
    if reservation.total_amount and round(reservation.total_amount, 2) != round(booking.total_amount, 2):
        changes["total_amount"] = reservation.total_amount
    guest = {k: v for k, v in reservation.guest.items() if k != "special_requests"}
    current_guest = {k: v for k, v in booking.guest.items() if k != "special_requests"}
    if guest and guest != current_guest:
        changes["guest"] = reservation.guest
    requests = reservation.guest.get("special_requests")
    if requests is not None and requests != booking.guest.get("special_requests"):
        changes["special_requests"] = requests
    return changes


def amendment_type(changes: dict[str, Any]) -> AmendmentType:
    """Classify a change set the way the amendment rules expect."""
    keys = set(changes)
    if keys <= {"check_in", "check_out"}:
        return AmendmentType.DATES_CHANGE
    if keys == {"total_amount"}:
        return AmendmentType.RATE_CHANGE
    if keys == {"rooms_count"}:
        return AmendmentType.ROOM_CHANGE
    if keys == {"guest"}:
        return AmendmentType.GUEST_DETAILS_CHANGE
    if keys == {"special_requests"}:
        return AmendmentType.SPECIAL_REQUEST_CHANGE
    return AmendmentType.BOOKING_MODIFICATION


def _payment_status(value: str) -> PaymentStatus:
    try:
        return PaymentStatus(value)
    except ValueError:
        return PaymentStatus.PENDING


class InboundReservationHandler:
    """
    Applies normalized reservation messages of one channel.

    The handler never approves amendments; it records them for review.

    Args:
        engine: SQLAlchemy engine
        ledger: Availability ledger
        bookings: Booking service
        audit_trail: Audit writer
    """

    def __init__(
        self,
        engine: Engine,
        ledger: AvailabilityLedger,
        bookings: BookingService,
        audit_trail: Optional[AuditTrail] = None,
    ):
        self.engine = engine
        self.ledger = ledger
        self.bookings = bookings
        self.audit = audit_trail or ledger.audit

    def handle_batch(
        self,
        channel: ChannelConfig,
        reservations: list[NormalizedReservation],
        now: Optional[datetime] = None,
    ) -> list[InboundOutcome]:
        """Handle messages in arrival order; one failure never stops the batch."""
        return [self.handle(channel, reservation, now) for reservation in reservations]

    def handle(
        self,
        channel: ChannelConfig,
        reservation: NormalizedReservation,
        now: Optional[datetime] = None,
    ) -> InboundOutcome:
        """
        Apply one reservation message.

        Returns:
            InboundOutcome: What happened and whether the channel gets an ACK
        """
        now = now or reservation.received_at or utc_now()
        try:
            outcome = self._dispatch(channel, reservation, now)
        except ChannelCoreError as e:
            logger.warning(
                "reservation_invalid",
                channel_id=channel.channel_id,
                channel_reservation_id=reservation.channel_reservation_id,
                kind=e.kind,
                error=e.message,
            )
            self.audit.record_error(
                e,
                table_name="reservation_mappings",
                source=ChangeSource.OTA.value,
                hotel_id=channel.hotel_id,
                record_id=reservation.channel_reservation_id,
                context={"channel_id": channel.channel_id, "message_type": reservation.message_type.value},
            )
            outcome = InboundOutcome(
                channel_reservation_id=reservation.channel_reservation_id,
                status=InboundStatus.INVALID,
                ack=False,
                reason=e.message,
            )
        metrics.inbound_reservations.labels(channel=channel.category, outcome=outcome.status.value).inc()
        return outcome

    # -------------------------------------------------------------------------
    # Paths
    # -------------------------------------------------------------------------

    def _dispatch(
        self, channel: ChannelConfig, reservation: NormalizedReservation, now: datetime
    ) -> InboundOutcome:
        with self.engine.connect() as conn:
            existing = find_by_channel_booking_id(
                conn, channel.category, reservation.channel_reservation_id
            )

        if reservation.message_type == ReservationMessageType.CANCELLED:
            return self._cancel(channel, reservation, existing, now)
        if existing is not None:
            if reservation.message_type == ReservationMessageType.NEW:
                return self._outcome(reservation, InboundStatus.DUPLICATE, True, existing.id)
            return self._amend(channel, reservation, existing, now)
        return self._create(channel, reservation, now)

    def _create(
        self, channel: ChannelConfig, reservation: NormalizedReservation, now: datetime
    ) -> InboundOutcome:
        room_type_id = channel.room_type_for(reservation.channel_room_type_id)
        if room_type_id is None:
            logger.warning(
                "reservation_mapping_missing",
                channel_id=channel.channel_id,
                channel_room_type_id=reservation.channel_room_type_id,
                channel_reservation_id=reservation.channel_reservation_id,
            )
            return self._outcome(
                reservation,
                InboundStatus.MAPPING_MISSING,
                False,
                reason=f"No room mapping for {reservation.channel_room_type_id}",
            )

        booking_id = str(uuid.uuid4())
        keys = (channel.channel_id, channel.category)
        try:
            self._reserve(channel, reservation, room_type_id, booking_id, keys, now)
        except OversoldError as e:
            return self._reject(channel, reservation, room_type_id, e, now)

        nights = (reservation.check_out - reservation.check_in).days
        per_room_night = round(reservation.total_amount / nights / reservation.rooms_count, 2)
        booking = Booking(
            id=booking_id,
            hotel_id=channel.hotel_id,
            room_type_id=room_type_id,
            rooms=[BookedRoom(rate=per_room_night) for _ in range(reservation.rooms_count)],
            guest=dict(reservation.guest),
            check_in=reservation.check_in,
            check_out=reservation.check_out,
            nights=nights,
            total_amount=reservation.total_amount,
            currency=reservation.currency,
            status=BookingStatus.CONFIRMED,
            payment_status=_payment_status(reservation.payment_status),
            source=channel.category,
            channel_booking_id=reservation.channel_reservation_id,
            raw_booking_payload=reservation.raw_payload,
        )
        context = StatusChangeContext(
            source=ChangeSource.OTA,
            reason=f"Reservation from {channel.name}",
            automatic=True,
        )
        try:
            with self.engine.begin() as conn:
                self.bookings.register_new_booking(conn, booking, context, now)
                insert_reservation_mapping(
                    conn,
                    channel.hotel_id,
                    channel.channel_id,
                    reservation.channel_reservation_id,
                    booking.id,
                    status=BookingStatus.CONFIRMED.value,
                    raw_payload=reservation.raw_payload,
                    now=now,
                )
        except IntegrityError:
            # Lost a race against a concurrent delivery of the same reservation
            self._release(booking, now)
            with self.engine.connect() as conn:
                winner = find_by_channel_booking_id(
                    conn, channel.category, reservation.channel_reservation_id
                )
            logger.info(
                "reservation_duplicate_race",
                channel_id=channel.channel_id,
                channel_reservation_id=reservation.channel_reservation_id,
            )
            return self._outcome(
                reservation, InboundStatus.DUPLICATE, True, winner.id if winner else None
            )
        except Exception:
            self._release(booking, now)
            raise

        logger.info(
            "reservation_created",
            booking_id=booking.id,
            hotel_id=channel.hotel_id,
            channel_id=channel.channel_id,
            channel_reservation_id=reservation.channel_reservation_id,
            room_type_id=room_type_id,
            rooms=reservation.rooms_count,
        )
        return self._outcome(reservation, InboundStatus.CREATED, True, booking.id)

    def _reserve(
        self,
        channel: ChannelConfig,
        reservation: NormalizedReservation,
        room_type_id: str,
        booking_id: str,
        keys: tuple[str, str],
        now: datetime,
    ) -> None:
        """Reserve within capacity first; fall back to the overbooking allowance."""
        kwargs: dict[str, Any] = dict(
            hotel_id=channel.hotel_id,
            room_type_id=room_type_id,
            check_in=reservation.check_in,
            check_out=reservation.check_out,
            rooms=reservation.rooms_count,
            booking_id=booking_id,
            source=channel.category,
            channel=keys,
            now=now,
        )
        try:
            self.ledger.try_reserve(allow_overbooking=False, **kwargs)
            return
        except OversoldError as e:
            if e.reason != OversoldError.CAPACITY:
                raise
            rows = self.ledger.query(channel.hotel_id, room_type_id, e.date, e.date + timedelta(days=1))
            total = rows[0].total_rooms if rows else 0
            allowance = self.ledger.rules.effective_allowance(
                channel.hotel_id, room_type_id, e.date, keys, total, today=now.date()
            )
            if allowance.rooms <= 0:
                raise
            logger.info(
                "reservation_using_overbooking_allowance",
                channel_id=channel.channel_id,
                channel_reservation_id=reservation.channel_reservation_id,
                date=e.date.isoformat(),
                allowance=allowance.rooms,
            )
        self.ledger.try_reserve(allow_overbooking=True, **kwargs)

    def _reject(
        self,
        channel: ChannelConfig,
        reservation: NormalizedReservation,
        room_type_id: str,
        error: OversoldError,
        now: datetime,
    ) -> InboundOutcome:
        entry_id = self.audit.record(
            table_name="bookings",
            change_type=audit.RESERVATION_REJECTED,
            source=ChangeSource.OTA.value,
            hotel_id=channel.hotel_id,
            record_id=reservation.channel_reservation_id,
            new_values={
                "channel_id": channel.channel_id,
                "room_type_id": room_type_id,
                "check_in": reservation.check_in.isoformat(),
                "check_out": reservation.check_out.isoformat(),
                "rooms": reservation.rooms_count,
                "error": error.to_dict(),
            },
            tags=["inbound", "rejected", channel.category],
            now=now,
        )
        error.correlation_id = entry_id
        logger.warning(
            "reservation_rejected_by_inventory",
            channel_id=channel.channel_id,
            channel_reservation_id=reservation.channel_reservation_id,
            room_type_id=room_type_id,
            date=error.date.isoformat(),
            reason=error.reason,
            correlation_id=entry_id,
        )
        return self._outcome(
            reservation, InboundStatus.REJECTED_BY_INVENTORY, False, reason=error.message
        )

    def _amend(
        self,
        channel: ChannelConfig,
        reservation: NormalizedReservation,
        booking: Booking,
        now: datetime,
    ) -> InboundOutcome:
        if reservation.channel_amendment_id and any(
            a.channel_amendment_id == reservation.channel_amendment_id for a in booking.ota_amendments
        ):
            return self._outcome(reservation, InboundStatus.DUPLICATE, True, booking.id)

        changes = amendment_changes(booking, reservation)
        if not changes:
            return self._outcome(reservation, InboundStatus.DUPLICATE, True, booking.id)

        amendment = self.bookings.process_ota_amendment(
            booking.id,
            AmendmentRequest(
                type=amendment_type(changes),
                channel=channel.channel_id,
                requested_changes=changes,
                channel_amendment_id=reservation.channel_amendment_id,
                guest_id=reservation.guest.get("id"),
            ),
            now,
        )
        self._track(channel, reservation, BookingStatus.MODIFIED.value, {"amendment_id": amendment.id}, now)
        return self._outcome(reservation, InboundStatus.AMENDMENT_PENDING, True, booking.id)

    def _cancel(
        self,
        channel: ChannelConfig,
        reservation: NormalizedReservation,
        booking: Optional[Booking],
        now: datetime,
    ) -> InboundOutcome:
        if booking is None:
            return self._outcome(
                reservation,
                InboundStatus.INVALID,
                False,
                reason="Cancellation for an unknown reservation",
            )
        if booking.status == BookingStatus.CANCELLED:
            return self._outcome(reservation, InboundStatus.DUPLICATE, True, booking.id)

        self.bookings.change_status(
            booking.id,
            BookingStatus.CANCELLED,
            StatusChangeContext(
                source=ChangeSource.OTA,
                reason=f"Cancelled on {channel.name}",
                bypass_cancellation_policy=True,
                automatic=True,
            ),
            now,
        )
        self._track(channel, reservation, BookingStatus.CANCELLED.value, {}, now)
        logger.info(
            "reservation_cancelled",
            booking_id=booking.id,
            channel_id=channel.channel_id,
            channel_reservation_id=reservation.channel_reservation_id,
        )
        return self._outcome(reservation, InboundStatus.CANCELLED, True, booking.id)

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _track(
        self,
        channel: ChannelConfig,
        reservation: NormalizedReservation,
        status: str,
        extra: dict[str, Any],
        now: datetime,
    ) -> None:
        """Append the message to the reservation mapping, if one exists."""
        with self.engine.begin() as conn:
            mapping = get_reservation_mapping(conn, channel.channel_id, reservation.channel_reservation_id)
            if mapping is None:
                return
            append_mapping_modification(
                conn,
                mapping["id"],
                {
                    "message_type": reservation.message_type.value,
                    "received_at": now.isoformat(),
                    "payload": reservation.raw_payload,
                    **extra,
                },
                status,
                now,
            )

    def _release(self, booking: Booking, now: datetime) -> None:
        self.ledger.release(
            booking.hotel_id,
            booking.room_type_id,
            booking.check_in,
            booking.check_out,
            booking.rooms_count,
            booking.id,
            source=booking.source,
            now=now,
        )

    @staticmethod
    def _outcome(
        reservation: NormalizedReservation,
        status: InboundStatus,
        ack: bool,
        booking_id: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> InboundOutcome:
        return InboundOutcome(
            channel_reservation_id=reservation.channel_reservation_id,
            status=status,
            ack=ack,
            booking_id=booking_id,
            reason=reason,
        )
