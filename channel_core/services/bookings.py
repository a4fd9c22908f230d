"""
Booking service: persists the booking aggregate and carries out the effects
returned by the pure state machine in ``booking_state``.

Status writes are serialized per booking through the optimistic ``version``
column; a lost race reloads the booking and re-validates the change.
"""

from __future__ import annotations

import random
import time
import uuid
from datetime import date, datetime, timedelta
from typing import Callable, Optional

import structlog
from sqlalchemy.engine import Connection, Engine

from channel_core import metrics
from channel_core.config import Settings
from channel_core.db.readers.bookings import (
    get_booking,
    list_bookings_with_pending_amendments,
    list_bookings_needing_sync,
    list_expired_holds,
)
from channel_core.db.writers.bookings import insert_booking, save_booking
from channel_core.errors import ChannelCoreError, ConflictError, NotFound, ValidationError
from channel_core.schemas.bookings import (
    AmendmentDecision,
    AmendmentRequest,
    Booking,
    BookingStatus,
    ChangeSource,
    ChannelSyncEntry,
    DirectBookingRequest,
    OtaAmendment,
    PaymentStatus,
    StatusChangeContext,
)
from channel_core.services import audit, booking_state
from channel_core.services.audit import AuditTrail
from channel_core.services.booking_state import (
    AmendmentResolution,
    AutoApprovalVerdict,
    BookingRules,
    StatusEffects,
    StayChange,
)
from channel_core.services.ledger import PRIORITY_HIGH, PRIORITY_NORMAL, AvailabilityLedger, DirtyCallback
from channel_core.utils.datetime import utc_now

logger = structlog.get_logger(__name__)

SAVE_ATTEMPTS = 3
SAVE_JITTER_SECONDS = (0.01, 0.05)


class BookingService:
    """
    Booking lifecycle operations for booking, admin and OTA callers.

    Args:
        engine: SQLAlchemy engine
        ledger: Availability ledger used for holds, releases and amendments
        audit_trail: Audit writer
        settings: Grace periods and hold length
        on_sync: Enqueues a (hotel, room type) range for outbound sync
    """

    def __init__(
        self,
        engine: Engine,
        ledger: AvailabilityLedger,
        audit_trail: Optional[AuditTrail] = None,
        settings: Settings = Settings(),
        on_sync: Optional[DirtyCallback] = None,
    ):
        self.engine = engine
        self.ledger = ledger
        self.audit = audit_trail or ledger.audit
        self.settings = settings
        self.rules = BookingRules.from_settings(settings)
        self.on_sync = on_sync

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def get(self, booking_id: str) -> Booking:
        with self.engine.connect() as conn:
            booking = get_booking(conn, booking_id)
        if booking is None:
            raise NotFound(f"Booking {booking_id} not found")
        return booking

    def list_pending_amendments(self, hotel_id: str) -> list[Booking]:
        """Bookings waiting on amendment review."""
        with self.engine.connect() as conn:
            return list_bookings_with_pending_amendments(conn, hotel_id)

    def list_needing_sync(self, hotel_id: Optional[str] = None) -> list[Booking]:
        with self.engine.connect() as conn:
            return list_bookings_needing_sync(conn, hotel_id)

    # -------------------------------------------------------------------------
    # Creation
    # -------------------------------------------------------------------------

    def create_direct_booking(
        self, request: DirectBookingRequest, now: Optional[datetime] = None
    ) -> Booking:
        """
        Hold inventory and create a ``pending`` booking that expires after the
        configured hold window unless confirmed.

        Raises:
            OversoldError: The stay does not fit; nothing is created
            ValidationError: Bad dates or no rooms
        """
        now = now or utc_now()
        if not request.rooms:
            raise ValidationError("A booking needs at least one room")
        if request.check_out <= request.check_in:
            raise ValidationError("check_out must be after check_in")

        nights = (request.check_out - request.check_in).days
        booking = Booking(
            id=str(uuid.uuid4()),
            hotel_id=request.hotel_id,
            user_id=request.user_id,
            room_type_id=request.room_type_id,
            rooms=list(request.rooms),
            guest=dict(request.guest),
            check_in=request.check_in,
            check_out=request.check_out,
            nights=nights,
            total_amount=round(sum(room.rate for room in request.rooms) * nights, 2),
            currency=request.currency,
            status=BookingStatus.PENDING,
            payment_status=request.payment_status,
            reserved_until=now + timedelta(minutes=self.settings.hold_reserved_until_minutes),
        )

        self.ledger.reserve(
            booking.hotel_id,
            booking.room_type_id,
            booking.check_in,
            booking.check_out,
            booking.rooms_count,
            booking.id,
            source=booking.source,
            now=now,
        )
        context = StatusChangeContext(
            source=ChangeSource.DIRECT, user_id=request.user_id, reason="Direct booking hold"
        )
        try:
            with self.engine.begin() as conn:
                self.register_new_booking(conn, booking, context, now)
        except Exception:
            logger.error("booking_create_failed_releasing", booking_id=booking.id)
            self.ledger.release(
                booking.hotel_id,
                booking.room_type_id,
                booking.check_in,
                booking.check_out,
                booking.rooms_count,
                booking.id,
                source=booking.source,
            )
            raise
        logger.info(
            "booking_created",
            booking_id=booking.id,
            hotel_id=booking.hotel_id,
            room_type_id=booking.room_type_id,
            status=booking.status.value,
            reserved_until=booking.reserved_until.isoformat() if booking.reserved_until else None,
        )
        return booking

    def register_new_booking(
        self, conn: Connection, booking: Booking, context: StatusChangeContext, now: datetime
    ) -> None:
        """
        Seed history and insert a booking inside the caller's transaction.

        Inventory must already be held by the caller.
        """
        booking_state.new_booking_history(booking, context, now)
        if booking.status != BookingStatus.PENDING:
            booking.reserved_until = None
        if booking.is_ota and booking.status == BookingStatus.CONFIRMED:
            booking.sync_status.needs_sync = True
        insert_booking(conn, booking, now)
        self.audit.record(
            table_name="bookings",
            change_type=audit.BOOKING_CREATED,
            source=context.source.value,
            hotel_id=booking.hotel_id,
            record_id=booking.id,
            new_values={
                "status": booking.status.value,
                "room_type_id": booking.room_type_id,
                "check_in": booking.check_in.isoformat(),
                "check_out": booking.check_out.isoformat(),
                "rooms": booking.rooms_count,
                "source": booking.source,
                "channel_booking_id": booking.channel_booking_id,
            },
            tags=["booking", booking.source],
            conn=conn,
            now=now,
        )

    # -------------------------------------------------------------------------
    # Status changes
    # -------------------------------------------------------------------------

    def change_status(
        self,
        booking_id: str,
        target: BookingStatus,
        context: StatusChangeContext,
        now: Optional[datetime] = None,
    ) -> Booking:
        """
        Validate and apply a status change, then run its effects.

        Returns:
            Booking: The booking after the change

        Raises:
            InvalidTransition: The change is not allowed (recorded in the audit trail)
            NotFound: Unknown booking
            ConflictError: Concurrent writers won three times in a row
        """
        now = now or utc_now()
        effects = StatusEffects()
        previous: Optional[BookingStatus] = None

        def mutate(booking: Booking) -> None:
            nonlocal effects, previous
            previous = booking.status
            effects = booking_state.change_status(booking, target, context, now, self.rules)

        try:
            booking = self._mutate(
                booking_id,
                mutate,
                now,
                lambda b: (
                    audit.STATUS_CHANGED,
                    {"status": previous.value if previous else None},
                    {"status": b.status.value, "reason": context.reason},
                    context.source.value,
                ),
            )
        except ChannelCoreError as e:
            self.audit.record_error(
                e,
                table_name="bookings",
                source=context.source.value,
                record_id=booking_id,
                context={"target": target.value},
            )
            raise

        metrics.booking_transitions.labels(
            from_status=previous.value if previous else "", to_status=target.value
        ).inc()
        logger.info(
            "booking_status_changed",
            booking_id=booking.id,
            from_status=previous.value if previous else None,
            to_status=target.value,
            source=context.source.value,
            automatic=context.automatic,
        )
        self._run_effects(booking, effects, now)
        return booking

    def expire_holds(self, now: Optional[datetime] = None) -> int:
        """
        Cancel pending bookings whose hold expired, releasing their inventory.

        Returns:
            int: Bookings cancelled
        """
        now = now or utc_now()
        with self.engine.connect() as conn:
            expired = list_expired_holds(conn, now)

        count = 0
        for booking in expired:
            try:
                self.change_status(
                    booking.id,
                    BookingStatus.CANCELLED,
                    StatusChangeContext(
                        source=ChangeSource.SYSTEM,
                        reason="Hold expired",
                        automatic=True,
                    ),
                    now,
                )
                count += 1
            except ChannelCoreError as e:
                logger.warning("hold_expiry_failed", booking_id=booking.id, error=e.message)
        if expired:
            logger.info("holds_expired", expired=len(expired), cancelled=count)
        return count

    def update_payment_status(
        self, booking_id: str, payment_status: PaymentStatus, now: Optional[datetime] = None
    ) -> Booking:
        now = now or utc_now()

        def mutate(booking: Booking) -> None:
            booking.payment_status = payment_status

        return self._mutate(
            booking_id,
            mutate,
            now,
            lambda b: (
                audit.STATUS_CHANGED,
                None,
                {"payment_status": payment_status.value},
                ChangeSource.SYSTEM.value,
            ),
        )

    # -------------------------------------------------------------------------
    # OTA amendments
    # -------------------------------------------------------------------------

    def process_ota_amendment(
        self, booking_id: str, request: AmendmentRequest, now: Optional[datetime] = None
    ) -> OtaAmendment:
        """
        Record an OTA amendment as pending and move the booking to ``modified``.

        Returns:
            OtaAmendment: The recorded amendment
        """
        now = now or utc_now()
        result: dict[str, object] = {}

        def mutate(booking: Booking) -> None:
            amendment, effects = booking_state.process_ota_amendment(booking, request, now, self.rules)
            result["amendment"] = amendment
            result["effects"] = effects

        try:
            booking = self._mutate(
                booking_id,
                mutate,
                now,
                lambda b: (
                    audit.AMENDMENT_RECEIVED,
                    None,
                    result["amendment"].model_dump(mode="json"),  # type: ignore[attr-defined]
                    ChangeSource.OTA.value,
                ),
            )
        except ChannelCoreError as e:
            self.audit.record_error(
                e,
                table_name="bookings",
                source=ChangeSource.OTA.value,
                record_id=booking_id,
                context={"amendment_type": request.type.value, "channel": request.channel},
            )
            raise

        amendment: OtaAmendment = result["amendment"]  # type: ignore[assignment]
        logger.info(
            "ota_amendment_recorded",
            booking_id=booking.id,
            amendment_id=amendment.id,
            amendment_type=amendment.type.value,
            requires_manual_approval=amendment.requires_manual_approval,
        )
        self._run_effects(booking, result["effects"], now)  # type: ignore[arg-type]
        return amendment

    def resolve_amendment(
        self,
        booking_id: str,
        amendment_id: str,
        decision: AmendmentDecision,
        now: Optional[datetime] = None,
    ) -> AmendmentResolution:
        """
        Approve, partially approve or reject a pending amendment.

        Stay changes are applied to the ledger before the booking is saved. If
        the save loses a version race the ledger change is undone and the
        whole resolution is retried against the fresh booking.
        """
        now = now or utc_now()
        for attempt in range(1, SAVE_ATTEMPTS + 1):
            booking = self.get(booking_id)
            applied: list[StayChange] = []

            def apply_inventory(change: StayChange, bypass: bool) -> None:
                self.ledger.apply_stay_change(
                    booking.hotel_id,
                    change,
                    booking.id,
                    source=booking.source,
                    allow_overbooking=bypass,
                    now=now,
                )
                applied.append(change)

            try:
                resolution = booking_state.resolve_amendment(
                    booking, amendment_id, decision, now, self.rules, apply_inventory
                )
            except ChannelCoreError as e:
                self.audit.record_error(
                    e,
                    table_name="bookings",
                    source=ChangeSource.ADMIN.value,
                    hotel_id=booking.hotel_id,
                    record_id=booking_id,
                    context={"amendment_id": amendment_id},
                )
                raise

            try:
                with self.engine.begin() as conn:
                    saved = save_booking(conn, booking, now)
                    if saved:
                        self.audit.record(
                            table_name="bookings",
                            change_type=audit.AMENDMENT_RESOLVED,
                            source=ChangeSource.ADMIN.value,
                            hotel_id=booking.hotel_id,
                            record_id=booking.id,
                            new_values={
                                "amendment_id": amendment_id,
                                "status": resolution.amendment.status.value,
                                "approved_changes": resolution.amendment.approved_changes,
                                "rejection_reason": resolution.amendment.rejection_reason,
                                "booking_status": booking.status.value,
                            },
                            tags=["booking", "amendment"],
                            conn=conn,
                            now=now,
                        )
            except Exception:
                self._undo_stay_changes(booking, applied)
                raise

            if not saved:
                self._undo_stay_changes(booking, applied)
                metrics.ledger_conflicts.inc()
                if attempt == SAVE_ATTEMPTS:
                    raise ConflictError(f"Booking {booking_id} changed concurrently")
                time.sleep(random.uniform(*SAVE_JITTER_SECONDS))
                continue

            logger.info(
                "ota_amendment_resolved",
                booking_id=booking.id,
                amendment_id=amendment_id,
                status=resolution.amendment.status.value,
                booking_status=booking.status.value,
            )
            self._run_effects(booking, resolution.effects, now)
            return resolution

        raise ConflictError(f"Booking {booking_id} changed concurrently")  # pragma: no cover

    def evaluate_auto_approval(
        self, booking_id: str, amendment_id: str, now: Optional[datetime] = None
    ) -> AutoApprovalVerdict:
        booking = self.get(booking_id)
        amendment = booking.find_amendment(amendment_id)
        if amendment is None:
            raise NotFound(f"Amendment {amendment_id} not found on booking {booking_id}")
        return booking_state.evaluate_auto_approval(booking, amendment, now or utc_now())

    # -------------------------------------------------------------------------
    # Sync bookkeeping
    # -------------------------------------------------------------------------

    def mark_synced(
        self,
        hotel_id: str,
        room_type_id: str,
        start: date,
        end: date,
        results: dict[str, Optional[str]],
        at: Optional[datetime] = None,
    ) -> int:
        """
        Record per-channel sync outcomes on bookings whose stay overlaps the
        inclusive range [start, end] and which are flagged for sync.

        Args:
            results: channel id -> None on success, else the error message

        Returns:
            int: Bookings whose sync flag was cleared
        """
        at = at or utc_now()
        cleared = 0
        for booking in self.list_needing_sync(hotel_id):
            if booking.room_type_id != room_type_id:
                continue
            if booking.check_out <= start or booking.check_in > end:
                continue

            def mutate(b: Booking) -> None:
                for channel_id, error in results.items():
                    b.sync_status.per_channel.append(
                        ChannelSyncEntry(
                            channel_id=channel_id,
                            status="failed" if error else "success",
                            at=at,
                            error=error,
                        )
                    )
                if all(error is None for error in results.values()):
                    b.sync_status.needs_sync = False

            try:
                updated = self._mutate(booking.id, mutate, at)
            except ConflictError:
                logger.info("booking_sync_mark_deferred", booking_id=booking.id)
                continue
            if not updated.sync_status.needs_sync:
                cleared += 1
        return cleared

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _mutate(
        self,
        booking_id: str,
        mutate: Callable[[Booking], None],
        now: datetime,
        describe: Optional[Callable[[Booking], tuple]] = None,
    ) -> Booking:
        """
        Load, mutate and save a booking under its version, retrying lost races.

        ``describe`` returns (change_type, old_values, new_values, source) for
        an audit entry written in the same transaction as the save.
        """
        for attempt in range(1, SAVE_ATTEMPTS + 1):
            with self.engine.begin() as conn:
                booking = get_booking(conn, booking_id)
                if booking is None:
                    raise NotFound(f"Booking {booking_id} not found")
                mutate(booking)
                if save_booking(conn, booking, now):
                    if describe is not None:
                        change_type, old_values, new_values, source = describe(booking)
                        self.audit.record(
                            table_name="bookings",
                            change_type=change_type,
                            source=source,
                            hotel_id=booking.hotel_id,
                            record_id=booking.id,
                            old_values=old_values,
                            new_values=new_values,
                            tags=["booking"],
                            conn=conn,
                            now=now,
                        )
                    return booking
            logger.info("booking_version_conflict", booking_id=booking_id, attempt=attempt)
            if attempt < SAVE_ATTEMPTS:
                time.sleep(random.uniform(*SAVE_JITTER_SECONDS))
        raise ConflictError(f"Booking {booking_id} changed concurrently")

    def _run_effects(self, booking: Booking, effects: StatusEffects, now: datetime) -> None:
        """Carry out the side effects of a committed change."""
        last_night = booking.check_out - timedelta(days=1)
        if effects.needs_release:
            try:
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
            except ChannelCoreError as e:
                logger.error(
                    "booking_release_failed",
                    booking_id=booking.id,
                    error=e.message,
                    correlation_id=e.correlation_id,
                )
                self.audit.record(
                    table_name="availability",
                    change_type=audit.RECONCILIATION_REQUIRED,
                    source="system",
                    hotel_id=booking.hotel_id,
                    record_id=booking.id,
                    new_values={"reason": "release_failed", "error": e.to_dict()},
                    tags=["ledger", "reconciliation"],
                )
        if self.on_sync is not None and (effects.needs_sync or effects.needs_release):
            priority = PRIORITY_HIGH if booking.status == BookingStatus.CANCELLED else PRIORITY_NORMAL
            self.on_sync(booking.hotel_id, booking.room_type_id, booking.check_in, last_night, priority)
        if effects.pending_actions():
            logger.info(
                "booking_actions_queued",
                booking_id=booking.id,
                actions=effects.pending_actions(),
            )

    def _undo_stay_changes(self, booking: Booking, applied: list[StayChange]) -> None:
        for change in reversed(applied):
            inverse = StayChange(
                room_type_id=change.room_type_id,
                old_check_in=change.new_check_in,
                old_check_out=change.new_check_out,
                old_rooms=change.new_rooms,
                new_check_in=change.old_check_in,
                new_check_out=change.old_check_out,
                new_rooms=change.old_rooms,
            )
            try:
                self.ledger.apply_stay_change(
                    booking.hotel_id,
                    inverse,
                    booking.id,
                    source=booking.source,
                    allow_overbooking=True,
                    enforce_restrictions=False,
                )
            except ChannelCoreError as e:
                logger.error("amendment_inventory_undo_failed", booking_id=booking.id, error=e.message)
                self.audit.record(
                    table_name="availability",
                    change_type=audit.RECONCILIATION_REQUIRED,
                    source="system",
                    hotel_id=booking.hotel_id,
                    record_id=booking.id,
                    new_values={"reason": "amendment_undo_failed", "error": e.to_dict()},
                    tags=["ledger", "reconciliation"],
                )
