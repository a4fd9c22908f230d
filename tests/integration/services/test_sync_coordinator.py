"""
Integration tests for the outbound sync coordinator against the fake adaptor.
"""

from __future__ import annotations

from datetime import date, datetime, timedelta
from typing import Any, Callable

import pytest

from channel_core.db.readers.audit import list_audit_entries
from channel_core.db.readers.channels import list_inventory_syncs
from channel_core.errors import AdaptorError
from channel_core.runtime import CoreRuntime
from channel_core.schemas.channels import ChannelConfig
from channel_core.schemas.reservations import NormalizedReservation
from channel_core.schemas.rules import RuleType, StopSellPolicy
from channel_core.services import audit
from channel_core.services.ledger import PRIORITY_HIGH
from channel_core.services.sync_engine import SyncCoordinator, SyncQueue


@pytest.fixture
def day(now: datetime) -> date:
    """A selling date ten days out."""
    return now.date() + timedelta(days=10)


def row_for(runtime: CoreRuntime, day: date) -> Any:
    """The deluxe ledger row of one date."""
    [row] = runtime.ledger.query("hotel-1", "deluxe", day, day + timedelta(days=1))
    return row


def sell(runtime: CoreRuntime, day: date, now: datetime, rooms: int = 2) -> None:
    """Sell rooms for one night, which makes the row dirty and queues it."""
    runtime.ledger.reserve("hotel-1", "deluxe", day, day + timedelta(days=1), rooms, f"bk-{rooms}", now=now)


def syncs(runtime: CoreRuntime, channel_id: str = "fake-1") -> list[dict[str, Any]]:
    """Push bookkeeping rows of the deluxe room type."""
    with runtime.engine.connect() as conn:
        return list_inventory_syncs(conn, channel_id, "deluxe")


@pytest.mark.integration
def test_dirty_row_is_pushed_and_cleared(
    runtime: CoreRuntime, channel: ChannelConfig, fake_adaptor: Any, day: date, now: datetime
) -> None:
    """A sold night is rendered with its availability and rate, then marked clean."""
    sell(runtime, day, now)

    report = runtime.coordinator.tick(now)

    assert (report.groups, report.pushes_ok, report.rows_cleared) == (1, 1, 1)
    [(channel_id, records)] = fake_adaptor.pushes
    assert channel_id == "fake-1"
    [record] = records
    assert (record.date, record.channel_room_type_id, record.availability, record.rate) == (day, "DLX", 8, 1000)
    assert record.restrictions["closed"] is False

    row = row_for(runtime, day)
    assert row.dirty is False
    assert "fake-1" in row.channel_sync
    [sync] = syncs(runtime)
    assert (sync["sync_status"], sync["attempts"]) == ("success", 0)
    assert runtime.channels.get("hotel-1", "fake-1").last_sync["inventory"] == now
    with runtime.engine.connect() as conn:
        assert list_audit_entries(conn, change_type=audit.SYNC_SUCCESS, record_id="deluxe")


@pytest.mark.integration
def test_failed_push_is_retried_with_backoff(
    runtime: CoreRuntime, channel: ChannelConfig, fake_adaptor: Any, day: date, now: datetime
) -> None:
    """A transient failure keeps the row dirty and requeues the channel after 30s, then 60s."""
    sell(runtime, day, now)
    fake_adaptor.push_error = AdaptorError("channel timed out", AdaptorError.TIMEOUT)

    report = runtime.coordinator.tick(now)

    assert report.pushes_failed == 1
    assert report.dead_lettered == 0
    assert row_for(runtime, day).dirty is True
    [retry] = runtime.coordinator.queue.snapshot()
    assert retry.not_before == now + timedelta(seconds=30)
    assert retry.channels == {"fake-1"}
    [sync] = syncs(runtime)
    assert (sync["sync_status"], sync["attempts"]) == ("retry", 1)

    # Not due yet
    assert runtime.coordinator.tick(now + timedelta(seconds=10)).groups == 0

    runtime.coordinator.tick(now + timedelta(seconds=30))

    [retry] = runtime.coordinator.queue.snapshot()
    assert retry.not_before == now + timedelta(seconds=90)
    assert syncs(runtime)[0]["attempts"] == 2

    fake_adaptor.push_error = None
    report = runtime.coordinator.tick(now + timedelta(seconds=90))

    assert report.pushes_ok == 1
    assert row_for(runtime, day).dirty is False
    assert (syncs(runtime)[0]["sync_status"], syncs(runtime)[0]["attempts"]) == ("success", 0)


@pytest.mark.integration
def test_rejected_push_is_dead_lettered_at_once(
    runtime: CoreRuntime, channel: ChannelConfig, fake_adaptor: Any, day: date, now: datetime
) -> None:
    """A non-retryable failure is abandoned without a retry."""
    sell(runtime, day, now)
    fake_adaptor.push_error = AdaptorError("room type unknown", AdaptorError.REJECTED, retryable=False)

    report = runtime.coordinator.tick(now)

    assert report.dead_lettered == 1
    assert len(runtime.coordinator.queue) == 0
    assert syncs(runtime)[0]["sync_status"] == "failed"
    with runtime.engine.connect() as conn:
        [entry] = list_audit_entries(conn, change_type=audit.SYNC_DEAD_LETTER, record_id="deluxe")
    assert entry["new_values"]["channel_id"] == "fake-1"
    assert entry["new_values"]["attempts"] == 1


@pytest.mark.integration
def test_channel_scoped_rule_is_rendered_for_that_channel_only(
    runtime: CoreRuntime, register_channel: Callable[..., ChannelConfig], fake_adaptor: Any, day: date, now: datetime
) -> None:
    """A stop-sell naming one channel closes the date on that channel's push only."""
    register_channel("fake-1")
    register_channel("fake-2")
    fake_adaptor.pushes.clear()
    sell(runtime, day, now)
    runtime.rules.create_stop_sell_rule(
        StopSellPolicy(
            hotel_id="hotel-1",
            name="Close fake-2",
            rule_type=RuleType.STOP_SELL,
            start_date=day,
            end_date=day,
            all_room_types=True,
            channels=["fake-2"],
        )
    )

    runtime.coordinator.tick(now)

    closed = {channel_id: records[0].restrictions["closed"] for channel_id, records in fake_adaptor.pushes}
    assert closed == {"fake-1": False, "fake-2": True}


@pytest.mark.integration
def test_manual_channel_waits_for_high_priority(
    runtime: CoreRuntime, register_channel: Callable[..., ChannelConfig], fake_adaptor: Any, day: date, now: datetime
) -> None:
    """Channels with auto_sync off only receive forced pushes; rows stay dirty meanwhile."""
    register_channel(auto_sync=False)
    fake_adaptor.pushes.clear()
    sell(runtime, day, now)

    runtime.coordinator.tick(now)

    assert fake_adaptor.pushes == []
    assert row_for(runtime, day).dirty is True

    runtime.coordinator.enqueue("hotel-1", "deluxe", day, day, PRIORITY_HIGH)
    runtime.coordinator.tick(now)

    assert len(fake_adaptor.pushes) == 1
    assert row_for(runtime, day).dirty is False


@pytest.mark.integration
def test_rows_settle_without_connected_channels(runtime: CoreRuntime, day: date, now: datetime) -> None:
    """With nothing to push to, dirty rows are confirmed as they are."""
    sell(runtime, day, now)

    report = runtime.coordinator.tick(now)

    assert report.pushes_ok == 0
    assert report.rows_cleared == 1
    assert row_for(runtime, day).dirty is False


@pytest.mark.integration
def test_synced_booking_loses_its_flag(
    runtime: CoreRuntime, channel: ChannelConfig, day: date, now: datetime
) -> None:
    """A successful push of a booking's dates clears the booking's sync flag."""
    outcome = runtime.inbound.handle(
        channel,
        NormalizedReservation(
            channel_reservation_id="R-1",
            channel_room_type_id="DLX",
            check_in=day,
            check_out=day + timedelta(days=2),
            total_amount=2000,
        ),
        now,
    )
    assert runtime.bookings.get(outcome.booking_id).sync_status.needs_sync is True

    runtime.coordinator.tick(now)

    assert runtime.bookings.get(outcome.booking_id).sync_status.needs_sync is False


@pytest.mark.integration
def test_rebuild_restores_dirty_rows_and_retries(
    runtime: CoreRuntime, channel: ChannelConfig, fake_adaptor: Any, day: date, now: datetime
) -> None:
    """A fresh coordinator finds dirty rows and pending retries in the store."""
    sell(runtime, day, now)
    fake_adaptor.push_error = AdaptorError("channel timed out", AdaptorError.TIMEOUT)
    runtime.coordinator.tick(now)

    restarted = SyncCoordinator(
        runtime.engine,
        runtime.ledger,
        runtime.channels,
        runtime.bookings,
        runtime.audit,
        runtime.settings,
        queue=SyncQueue(),
    )
    assert restarted.rebuild() == 2

    [entry] = restarted.queue.snapshot()
    assert entry.earliest == day
    # The dirty-row entry is unscoped, so it widens the retry to every channel
    assert entry.channels is None

    restarted.tick(now + timedelta(seconds=30))
    [sync] = syncs(runtime)
    assert sync["attempts"] == 2
