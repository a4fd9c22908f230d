"""
Integration tests for applying inbound OTA reservation messages.
"""

from __future__ import annotations

from datetime import date, datetime, time, timedelta, timezone
from typing import Any

import pytest
from prometheus_client import REGISTRY

from channel_core.db.readers.audit import list_audit_entries
from channel_core.db.readers.channels import get_reservation_mapping
from channel_core.runtime import CoreRuntime
from channel_core.schemas.bookings import AmendmentType, BookingStatus
from channel_core.schemas.channels import ChannelConfig
from channel_core.schemas.reservations import InboundStatus, NormalizedReservation, ReservationMessageType
from channel_core.schemas.rules import OverbookingPolicy
from channel_core.services import audit


@pytest.fixture
def check_in(now: datetime) -> date:
    """Arrival ten days out."""
    return now.date() + timedelta(days=10)


def message(check_in: date, **overrides: Any) -> NormalizedReservation:
    """Two-night, one-room reservation for DLX worth 2400."""
    values: dict[str, Any] = {
        "channel_reservation_id": "R-100",
        "channel_room_type_id": "DLX",
        "check_in": check_in,
        "check_out": check_in + timedelta(days=2),
        "total_amount": 2400.0,
        "guest": {"name": "Ravi Menon"},
        "payment_status": "paid",
        "raw_payload": {"id": "R-100"},
    }
    values.update(overrides)
    return NormalizedReservation(**values)


def sold(runtime: CoreRuntime, day: date) -> int:
    """Sold rooms on one deluxe date."""
    found = runtime.ledger.query("hotel-1", "deluxe", day, day + timedelta(days=1))
    return found[0].sold_rooms if found else 0


def outcome_count(outcome: str) -> float:
    """Current value of the inbound counter for the fake channel."""
    return REGISTRY.get_sample_value(
        "channel_core_inbound_reservations_total", {"channel": "fake", "outcome": outcome}
    ) or 0.0


@pytest.mark.integration
def test_new_reservation_creates_confirmed_booking(
    runtime: CoreRuntime, channel: ChannelConfig, check_in: date, now: datetime
) -> None:
    """A new message holds inventory and creates a confirmed OTA booking."""
    before = outcome_count("created")

    outcome = runtime.inbound.handle(channel, message(check_in), now)

    assert outcome.status == InboundStatus.CREATED
    assert outcome.ack is True
    booking = runtime.bookings.get(outcome.booking_id)
    assert booking.status == BookingStatus.CONFIRMED
    assert booking.source == "fake"
    assert booking.channel_booking_id == "R-100"
    assert booking.rooms[0].rate == 1200.0
    assert booking.payment_status.value == "paid"
    assert booking.sync_status.needs_sync is True
    assert sold(runtime, check_in) == 1
    with runtime.engine.connect() as conn:
        mapping = get_reservation_mapping(conn, "fake-1", "R-100")
    assert mapping["booking_id"] == booking.id
    assert mapping["raw_payload"] == {"id": "R-100"}
    assert outcome_count("created") == before + 1


@pytest.mark.integration
def test_redelivered_reservation_is_a_duplicate(
    runtime: CoreRuntime, channel: ChannelConfig, check_in: date, now: datetime
) -> None:
    """The same reservation twice yields one booking and one hold."""
    first = runtime.inbound.handle(channel, message(check_in), now)
    second = runtime.inbound.handle(channel, message(check_in), now)

    assert second.status == InboundStatus.DUPLICATE
    assert second.ack is True
    assert second.booking_id == first.booking_id
    assert sold(runtime, check_in) == 1


@pytest.mark.integration
def test_unmapped_room_type_is_not_acknowledged(
    runtime: CoreRuntime, channel: ChannelConfig, check_in: date, now: datetime
) -> None:
    """A message for a channel room type with no mapping is left for redelivery."""
    outcome = runtime.inbound.handle(channel, message(check_in, channel_room_type_id="SUITE"), now)

    assert outcome.status == InboundStatus.MAPPING_MISSING
    assert outcome.ack is False
    assert sold(runtime, check_in) == 0


@pytest.mark.integration
def test_full_inventory_rejects_and_audits(
    runtime: CoreRuntime, channel: ChannelConfig, check_in: date, now: datetime
) -> None:
    """Without an overbooking allowance a full date rejects the reservation."""
    runtime.ledger.reserve("hotel-1", "deluxe", check_in, check_in + timedelta(days=1), 10, "walk-ins", now=now)

    outcome = runtime.inbound.handle(channel, message(check_in), now)

    assert outcome.status == InboundStatus.REJECTED_BY_INVENTORY
    assert outcome.ack is False
    assert runtime.bookings.list_needing_sync("hotel-1") == []
    with runtime.engine.connect() as conn:
        [entry] = list_audit_entries(conn, change_type=audit.RESERVATION_REJECTED, record_id="R-100")
    assert entry["new_values"]["error"]["details"]["reason"] == "capacity"
    assert sold(runtime, check_in) == 10


@pytest.mark.integration
def test_overbooking_allowance_admits_channel_reservation(
    runtime: CoreRuntime, channel: ChannelConfig, check_in: date, now: datetime
) -> None:
    """A channel override lets the channel sell beyond physical capacity."""
    runtime.rules.set_overbooking_rule(
        OverbookingPolicy(hotel_id="hotel-1", room_type_id="deluxe", channel_overrides={"fake": 20})
    )
    runtime.ledger.reserve("hotel-1", "deluxe", check_in, check_in + timedelta(days=2), 10, "walk-ins", now=now)

    outcome = runtime.inbound.handle(channel, message(check_in), now)

    assert outcome.status == InboundStatus.CREATED
    assert sold(runtime, check_in) == 11


@pytest.mark.integration
def test_modification_records_pending_amendment(
    runtime: CoreRuntime, channel: ChannelConfig, check_in: date, now: datetime
) -> None:
    """A changed stay becomes a pending amendment; the ledger is untouched until approval."""
    created = runtime.inbound.handle(channel, message(check_in), now)
    modified = message(
        check_in,
        message_type=ReservationMessageType.MODIFIED,
        check_out=check_in + timedelta(days=3),
        total_amount=0,
        channel_amendment_id="AM-1",
    )

    outcome = runtime.inbound.handle(channel, modified, now)
    repeat = runtime.inbound.handle(channel, modified, now)

    assert outcome.status == InboundStatus.AMENDMENT_PENDING
    assert repeat.status == InboundStatus.DUPLICATE
    booking = runtime.bookings.get(created.booking_id)
    assert booking.status == BookingStatus.MODIFIED
    [amendment] = booking.pending_amendments()
    assert amendment.type == AmendmentType.DATES_CHANGE
    assert amendment.channel_amendment_id == "AM-1"
    assert sold(runtime, check_in + timedelta(days=2)) == 0
    with runtime.engine.connect() as conn:
        mapping = get_reservation_mapping(conn, "fake-1", "R-100")
    assert mapping["status"] == "modified"
    assert mapping["modifications"][0]["amendment_id"] == amendment.id


@pytest.mark.integration
def test_late_modification_is_invalid(
    runtime: CoreRuntime, channel: ChannelConfig, check_in: date, now: datetime
) -> None:
    """Amendments inside the amendment window are refused without an ACK."""
    runtime.inbound.handle(channel, message(check_in), now)
    late_now = datetime.combine(check_in, time(0), tzinfo=timezone.utc) - timedelta(hours=1)

    outcome = runtime.inbound.handle(
        channel,
        message(check_in, message_type=ReservationMessageType.MODIFIED, rooms_count=2),
        late_now,
    )

    assert outcome.status == InboundStatus.INVALID
    assert outcome.ack is False


@pytest.mark.integration
def test_cancellation_releases_inventory(
    runtime: CoreRuntime, channel: ChannelConfig, check_in: date, now: datetime
) -> None:
    """Cancelling releases the hold; repeats are duplicates and unknown ids are invalid."""
    created = runtime.inbound.handle(channel, message(check_in), now)
    cancel = message(check_in, message_type=ReservationMessageType.CANCELLED)

    outcome = runtime.inbound.handle(channel, cancel, now)
    repeat = runtime.inbound.handle(channel, cancel, now)
    unknown = runtime.inbound.handle(
        channel, message(check_in, channel_reservation_id="R-404", message_type=ReservationMessageType.CANCELLED), now
    )

    assert outcome.status == InboundStatus.CANCELLED
    assert runtime.bookings.get(created.booking_id).status == BookingStatus.CANCELLED
    assert sold(runtime, check_in) == 0
    assert repeat.status == InboundStatus.DUPLICATE
    assert (unknown.status, unknown.ack) == (InboundStatus.INVALID, False)


@pytest.mark.integration
def test_batch_continues_after_a_rejection(
    runtime: CoreRuntime, channel: ChannelConfig, check_in: date, now: datetime
) -> None:
    """Each message in a batch gets its own outcome, in order."""
    outcomes = runtime.inbound.handle_batch(
        channel,
        [
            message(check_in, channel_room_type_id="SUITE", channel_reservation_id="R-1"),
            message(check_in, channel_reservation_id="R-2"),
        ],
        now,
    )

    assert [o.status for o in outcomes] == [InboundStatus.MAPPING_MISSING, InboundStatus.CREATED]
