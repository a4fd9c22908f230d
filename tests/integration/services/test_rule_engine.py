"""
Integration tests for rule storage and evaluation through the RuleEngine.
"""

from __future__ import annotations

from datetime import date, datetime, timedelta
from typing import Any
from unittest.mock import Mock, call

import pytest
from sqlalchemy.engine import Engine

from channel_core.db.readers.audit import list_audit_entries
from channel_core.errors import NotFound, OversoldError, ValidationError
from channel_core.runtime import CoreRuntime
from channel_core.schemas.availability import Restrictions
from channel_core.schemas.rules import OverbookingPolicy, RuleAction, RuleType, StopSellPolicy
from channel_core.services import audit
from channel_core.services.rules import DIRECT_CHANNEL, RuleEngine

DAY = date(2025, 3, 10)


@pytest.fixture
def on_change() -> Mock:
    """Records the ranges the engine flags for resync."""
    return Mock()


@pytest.fixture
def rules(seeded_engine: Engine, on_change: Mock) -> RuleEngine:
    """Rule engine over the seeded hotel."""
    return RuleEngine(seeded_engine, on_change=on_change)


def stop_sell(**overrides: Any) -> StopSellPolicy:
    """Stop-sell on deluxe for March 8-12 2025 on every channel."""
    values: dict[str, Any] = {
        "hotel_id": "hotel-1",
        "name": "Festival",
        "rule_type": RuleType.STOP_SELL,
        "start_date": date(2025, 3, 8),
        "end_date": date(2025, 3, 12),
        "room_type_ids": ["deluxe"],
        "all_channels": True,
    }
    values.update(overrides)
    return StopSellPolicy(**values)


@pytest.mark.integration
def test_created_rule_applies_and_flags_range(rules: RuleEngine, on_change: Mock, seeded_engine: Engine) -> None:
    """A stored stop-sell closes its dates and notifies the covered range."""
    rule_id = rules.create_stop_sell_rule(stop_sell())

    assert rules.stop_sell_state("hotel-1", "deluxe", DAY, DIRECT_CHANNEL).stop_sell is True
    assert rules.stop_sell_state("hotel-1", "deluxe", date(2025, 3, 13), DIRECT_CHANNEL).stop_sell is False
    assert rules.stop_sell_state("hotel-1", "suite", DAY, DIRECT_CHANNEL).stop_sell is False
    on_change.assert_called_once_with("hotel-1", "deluxe", date(2025, 3, 8), date(2025, 3, 12))
    with seeded_engine.connect() as conn:
        [entry] = list_audit_entries(conn, change_type=audit.RULE_CHANGED, record_id=rule_id)
    assert entry["new_values"]["rule_type"] == "stop_sell"


@pytest.mark.integration
def test_channel_scoped_rule(rules: RuleEngine) -> None:
    """A rule naming a channel leaves other channels open."""
    rules.create_stop_sell_rule(stop_sell(all_channels=False, channels=["booking_com"]))

    assert rules.stop_sell_state("hotel-1", "deluxe", DAY, ("bdc-1", "booking_com")).stop_sell is True
    assert rules.stop_sell_state("hotel-1", "deluxe", DAY, ("exp-1", "expedia")).stop_sell is False


@pytest.mark.integration
def test_higher_priority_rule_wins_per_field(rules: RuleEngine) -> None:
    """Fields come from the highest priority rule that sets them; others fill in."""
    rules.create_stop_sell_rule(
        stop_sell(
            name="Short stays",
            rule_type=RuleType.MIN_LOS,
            priority=3,
            actions=RuleAction(min_los=2, max_los=7),
        )
    )
    rules.create_stop_sell_rule(
        stop_sell(name="Event", rule_type=RuleType.MIN_LOS, priority=9, actions=RuleAction(min_los=3))
    )

    restrictions = rules.restrictions_for(
        "hotel-1", "deluxe", {DAY: Restrictions(), DAY + timedelta(days=5): Restrictions(min_los=4)}, DIRECT_CHANNEL
    )

    assert (restrictions[DAY].min_los, restrictions[DAY].max_los) == (3, 7)
    # Outside every rule the row's own restrictions stand
    assert restrictions[DAY + timedelta(days=5)].min_los == 4


@pytest.mark.integration
def test_deactivated_rule_stops_applying(rules: RuleEngine, on_change: Mock) -> None:
    """Deactivation reopens the dates and flags them again."""
    rule_id = rules.create_stop_sell_rule(stop_sell())

    rules.deactivate_stop_sell_rule(rule_id)

    assert rules.stop_sell_state("hotel-1", "deluxe", DAY, DIRECT_CHANNEL).stop_sell is False
    assert on_change.call_count == 2


@pytest.mark.integration
def test_update_notifies_old_and_new_ranges(rules: RuleEngine, on_change: Mock) -> None:
    """Moving a rule flags the dates it left and the dates it now covers."""
    rule_id = rules.create_stop_sell_rule(stop_sell())

    rules.update_stop_sell_rule(rule_id, stop_sell(start_date=date(2025, 4, 1), end_date=date(2025, 4, 2)))

    assert rules.stop_sell_state("hotel-1", "deluxe", DAY, DIRECT_CHANNEL).stop_sell is False
    assert rules.stop_sell_state("hotel-1", "deluxe", date(2025, 4, 1), DIRECT_CHANNEL).stop_sell is True
    assert on_change.call_args_list[-2:] == [
        call("hotel-1", "deluxe", date(2025, 3, 8), date(2025, 3, 12)),
        call("hotel-1", "deluxe", date(2025, 4, 1), date(2025, 4, 2)),
    ]


@pytest.mark.integration
def test_unknown_rule(rules: RuleEngine) -> None:
    """Updating or deactivating a missing rule raises NotFound."""
    with pytest.raises(NotFound):
        rules.deactivate_stop_sell_rule("missing")
    with pytest.raises(NotFound):
        rules.update_stop_sell_rule("missing", stop_sell())


@pytest.mark.integration
@pytest.mark.parametrize(
    "overrides",
    [
        {"room_type_ids": []},
        {"all_channels": False},
        {"rule_type": RuleType.RATE_RESTRICTION},
        {"rule_type": RuleType.MIN_LOS, "actions": RuleAction(min_los=5, max_los=2)},
    ],
)
def test_invalid_rules_are_refused(rules: RuleEngine, on_change: Mock, overrides: dict[str, Any]) -> None:
    """Rules without targets, without actions or with inverted stay limits are refused."""
    with pytest.raises(ValidationError):
        rules.create_stop_sell_rule(stop_sell(**overrides))

    on_change.assert_not_called()


@pytest.mark.integration
def test_overbooking_rule_lifecycle(rules: RuleEngine, seeded_engine: Engine) -> None:
    """Setting, overriding per channel and removing an overbooking rule."""
    rules.set_overbooking_rule(
        OverbookingPolicy(
            hotel_id="hotel-1",
            room_type_id="deluxe",
            max_overbooking_percent=10,
            channel_overrides={"booking_com": 30},
        )
    )

    assert rules.effective_allowance("hotel-1", "deluxe", DAY, DIRECT_CHANNEL, 10, today=date(2025, 2, 1)).rooms == 1
    assert rules.effective_allowance("hotel-1", "deluxe", DAY, "booking_com", 10, today=date(2025, 2, 1)).rooms == 3

    rules.remove_overbooking_rule("hotel-1", "deluxe")

    assert rules.effective_allowance("hotel-1", "deluxe", DAY, "booking_com", 10, today=date(2025, 2, 1)).rooms == 0
    with pytest.raises(NotFound):
        rules.remove_overbooking_rule("hotel-1", "deluxe")
    with seeded_engine.connect() as conn:
        assert len(list_audit_entries(conn, change_type=audit.RULE_CHANGED, record_id="deluxe")) == 2


@pytest.mark.integration
def test_stop_sell_rule_blocks_reservations(runtime: CoreRuntime, now: datetime) -> None:
    """Through the runtime, a new rule closes the ledger and marks existing rows dirty."""
    day = now.date() + timedelta(days=10)
    runtime.ledger.reserve("hotel-1", "deluxe", day, day + timedelta(days=1), 1, "bk-1", now=now)
    runtime.coordinator.queue.take_ready(now)
    runtime.coordinator.queue.complete(("hotel-1", "deluxe"))

    runtime.rules.create_stop_sell_rule(stop_sell(start_date=day, end_date=day))

    with pytest.raises(OversoldError) as exc_info:
        runtime.ledger.reserve("hotel-1", "deluxe", day, day + timedelta(days=1), 1, "bk-2", now=now)
    assert exc_info.value.reason == "stop_sell"
    [entry] = runtime.coordinator.queue.snapshot()
    assert (entry.earliest, entry.latest) == (day, day)
