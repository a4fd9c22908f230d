"""
Integration tests for the runtime passes and loop lifecycle.
"""

from __future__ import annotations

import threading
from datetime import datetime, timedelta
from typing import Any
from unittest.mock import patch

import pytest
from sqlalchemy import select

from channel_core.errors import AdaptorError, IntegrityViolation
from channel_core.models.channels import Channel
from channel_core.runtime import CoreRuntime
from channel_core.schemas.bookings import BookedRoom, BookingStatus, DirectBookingRequest
from channel_core.schemas.channels import ChannelConfig
from channel_core.schemas.reservations import NormalizedReservation
from channel_core.schemas.rules import OverbookingPolicy
from channel_core.services.ledger import PRIORITY_HIGH, PRIORITY_NORMAL


def ota_reservation(now: datetime, reservation_id: str = "R-9") -> NormalizedReservation:
    """One-night DLX reservation a week out."""
    check_in = now.date() + timedelta(days=7)
    return NormalizedReservation(
        channel_reservation_id=reservation_id,
        channel_room_type_id="DLX",
        check_in=check_in,
        check_out=check_in + timedelta(days=1),
        total_amount=1100,
    )


@pytest.mark.integration
def test_inbound_pass_polls_due_channels(
    runtime: CoreRuntime, channel: ChannelConfig, fake_adaptor: Any, now: datetime
) -> None:
    """Pulled reservations are applied and the poll marker advances."""
    fake_adaptor.reservations = [ota_reservation(now)]

    assert runtime.run_inbound_pass(now) == 1

    [booking] = runtime.bookings.list_needing_sync("hotel-1")
    assert booking.channel_booking_id == "R-9"
    assert runtime.channels.get("hotel-1", "fake-1").last_sync["reservations"] == now
    # Not due again until the channel's poll interval elapses
    assert runtime.run_inbound_pass(now + timedelta(seconds=60)) == 0
    assert runtime.run_inbound_pass(now + timedelta(seconds=900)) == 1


@pytest.mark.integration
def test_failed_poll_records_error_and_keeps_marker(
    runtime: CoreRuntime, channel: ChannelConfig, fake_adaptor: Any, now: datetime
) -> None:
    """An adaptor failure is stored on the channel and the batch is retried next pass."""
    fake_adaptor.pull_error = AdaptorError("token expired", AdaptorError.AUTH, retryable=False)

    assert runtime.run_inbound_pass(now) == 0

    with runtime.engine.connect() as conn:
        last_error = conn.execute(select(Channel.last_error).where(Channel.id == channel.id)).scalar_one()
    assert last_error == "token expired"
    assert "reservations" not in runtime.channels.get("hotel-1", "fake-1").last_sync


@pytest.mark.integration
def test_pricing_pass_expires_stale_holds(runtime: CoreRuntime, now: datetime) -> None:
    """Unconfirmed direct holds past their deadline are cancelled by the pricing pass."""
    check_in = now.date() + timedelta(days=3)
    booking = runtime.bookings.create_direct_booking(
        DirectBookingRequest(
            hotel_id="hotel-1",
            room_type_id="deluxe",
            check_in=check_in,
            check_out=check_in + timedelta(days=1),
            rooms=[BookedRoom(rate=1000)],
            guest={"name": "Meera Iyer"},
        ),
        now,
    )

    runtime.run_pricing_pass(now + timedelta(minutes=20))

    assert runtime.bookings.get(booking.id).status == BookingStatus.CANCELLED
    [row] = runtime.ledger.query("hotel-1", "deluxe", check_in, check_in + timedelta(days=1))
    assert row.sold_rooms == 0


@pytest.mark.integration
def test_hotel_sync_request_queues_and_wakes(runtime: CoreRuntime) -> None:
    """An explicit sync request queues the hotel and triggers the coordinator."""
    with patch.object(runtime.coordinator, "trigger") as trigger:
        assert runtime.request_hotel_sync("hotel-1") == 1

    trigger.assert_called_once_with()
    assert len(runtime.coordinator.queue) == 1


@pytest.mark.integration
def test_start_and_stop_loops(runtime: CoreRuntime) -> None:
    """Loops run on their own threads until stopped; a second start is a no-op."""

    def block_until_stopped(stop: threading.Event) -> None:
        stop.wait()

    with patch.object(runtime, "run_pricing_pass"), patch.object(runtime, "run_inbound_pass"), patch.object(
        runtime.coordinator, "run_forever", side_effect=block_until_stopped
    ):
        runtime.start()
        threads = list(runtime._threads)
        runtime.start()

        assert runtime.running is True
        assert runtime._threads == threads
        assert sorted(t.name for t in threads) == [
            "channel-core-inbound",
            "channel-core-pricing",
            "channel-core-sync",
        ]

        runtime.stop(timeout=5)

    assert runtime.running is False


@pytest.mark.integration
def test_integrity_violation_promotes_group_to_high_priority(runtime: CoreRuntime, now: datetime) -> None:
    """A breached row puts its room type at the front of the sync queue."""
    day = now.date() + timedelta(days=6)
    runtime.rules.set_overbooking_rule(
        OverbookingPolicy(hotel_id="hotel-1", room_type_id="deluxe", max_overbooking_percent=20)
    )
    runtime.ledger.reserve("hotel-1", "deluxe", day, day + timedelta(days=1), 12, "group-block", now=now)
    runtime.rules.remove_overbooking_rule("hotel-1", "deluxe")
    [entry] = runtime.coordinator.queue.snapshot()
    assert entry.priority == PRIORITY_NORMAL

    with pytest.raises(IntegrityViolation):
        runtime.ledger.reserve("hotel-1", "deluxe", day, day + timedelta(days=1), 1, "walk-in", now=now)

    [entry] = runtime.coordinator.queue.snapshot()
    assert entry.priority == PRIORITY_HIGH
    assert entry.not_before is None
    assert entry.earliest <= day <= entry.latest
