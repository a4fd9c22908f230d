"""
Unit tests for the coalescing sync queue, backoff schedule and parity check.
"""

from __future__ import annotations

from datetime import date, datetime, timedelta, timezone
from typing import Any

import pytest

from channel_core.services.ledger import PRIORITY_HIGH, PRIORITY_NORMAL
from channel_core.services.sync_engine import (
    QueueEntry,
    SyncQueue,
    backoff_delay,
    parity_violations,
)

NOW = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)


def entry(room_type_id: str = "deluxe", start: int = 10, end: int = 12, **overrides: Any) -> QueueEntry:
    """Queue entry for March ``start``..``end`` 2025."""
    values: dict[str, Any] = {
        "hotel_id": "hotel-1",
        "room_type_id": room_type_id,
        "earliest": date(2025, 3, start),
        "latest": date(2025, 3, end),
        "enqueued_at": NOW,
    }
    values.update(overrides)
    return QueueEntry(**values)


@pytest.mark.unit
def test_enqueue_coalesces_ranges_per_room_type() -> None:
    """Two enqueues for the same group widen one entry."""
    queue = SyncQueue()

    queue.enqueue(entry(start=10, end=12))
    queue.enqueue(entry(start=8, end=9, enqueued_at=NOW + timedelta(minutes=1)))
    queue.enqueue(entry(room_type_id="suite"))

    assert len(queue) == 2
    deluxe = next(e for e in queue.snapshot() if e.room_type_id == "deluxe")
    assert (deluxe.earliest, deluxe.latest) == (date(2025, 3, 8), date(2025, 3, 12))
    assert deluxe.enqueued_at == NOW


@pytest.mark.unit
def test_high_priority_merge_clears_backoff() -> None:
    """High priority work overrides a pending retry delay."""
    waiting = entry(not_before=NOW + timedelta(minutes=5), channels={"fake-1"})

    waiting.merge(entry(priority=PRIORITY_HIGH))

    assert waiting.priority == PRIORITY_HIGH
    assert waiting.not_before is None
    # Unscoped work widens the target to every channel
    assert waiting.channels is None


@pytest.mark.unit
def test_merge_unions_retry_channels() -> None:
    """Two channel-scoped retries merge their channel sets and keep the later delay."""
    first = entry(not_before=NOW + timedelta(seconds=30), channels={"a"})

    first.merge(entry(not_before=NOW + timedelta(seconds=60), channels={"b"}))

    assert first.channels == {"a", "b"}
    assert first.not_before == NOW + timedelta(seconds=60)


@pytest.mark.unit
def test_take_ready_orders_by_priority_then_age() -> None:
    """Ready entries come out high priority first, then oldest first; delayed ones stay."""
    queue = SyncQueue()
    queue.enqueue(entry(room_type_id="old", enqueued_at=NOW - timedelta(minutes=10)))
    queue.enqueue(entry(room_type_id="new", enqueued_at=NOW))
    queue.enqueue(entry(room_type_id="urgent", enqueued_at=NOW, priority=PRIORITY_HIGH))
    queue.enqueue(entry(room_type_id="later", not_before=NOW + timedelta(minutes=1)))

    ready = queue.take_ready(NOW)

    assert [e.room_type_id for e in ready] == ["urgent", "old", "new"]
    assert len(queue) == 1
    assert queue.is_in_flight(("hotel-1", "urgent"))
    assert queue.next_due() == NOW + timedelta(minutes=1)


@pytest.mark.unit
def test_work_for_in_flight_group_is_parked_until_complete() -> None:
    """New work for a group being pushed waits and re-enters on completion."""
    queue = SyncQueue()
    queue.enqueue(entry())
    [taken] = queue.take_ready(NOW)

    queue.enqueue(entry(start=20, end=21))
    assert len(queue) == 0

    queue.complete(taken.key)

    assert len(queue) == 1
    assert not queue.is_in_flight(taken.key)
    [parked] = queue.snapshot()
    assert (parked.earliest, parked.latest) == (date(2025, 3, 20), date(2025, 3, 21))


@pytest.mark.unit
def test_next_due_is_none_when_work_is_ready() -> None:
    """An entry without a delay makes the queue due now."""
    queue = SyncQueue()
    assert queue.next_due() is None

    queue.enqueue(entry(priority=PRIORITY_NORMAL))

    assert queue.next_due() is None


@pytest.mark.unit
def test_backoff_doubles_up_to_cap() -> None:
    """Exponential backoff from the base, capped."""
    assert [backoff_delay(n, 30, 3600) for n in range(1, 8)] == [30, 60, 120, 240, 480, 960, 1920]
    assert backoff_delay(10, 30, 3600) == 3600


@pytest.mark.unit
def test_parity_violations_outside_variance() -> None:
    """Channels beyond their allowed variance are reported with the signed variance."""
    violations = parity_violations(
        10000, {"a": 10000, "b": 8500, "c": 10400}, {"a": 5.0, "b": 5.0, "c": 5.0}
    )

    assert violations == [{"channel_id": "b", "rate": 8500, "variance_pct": -15.0}]


@pytest.mark.unit
def test_parity_without_base_rate() -> None:
    """A zero base rate cannot be compared against."""
    assert parity_violations(0, {"a": 100}, {"a": 5.0}) == []
