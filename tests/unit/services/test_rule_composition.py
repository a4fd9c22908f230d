"""
Unit tests for overbooking allowance and stop-sell composition.
"""

from __future__ import annotations

from datetime import date
from typing import Any

import pytest
from pydantic import ValidationError as PydanticValidationError

from channel_core.schemas.availability import Restrictions
from channel_core.schemas.rules import (
    FallbackAction,
    LeadTimeAdjustment,
    OverbookingPolicy,
    RuleAction,
    RuleType,
    SeasonalAdjustment,
    StopSellPolicy,
)
from channel_core.services.rules import (
    ANY_CHANNEL,
    DIRECT_CHANNEL,
    compose_restrictions,
    compute_allowance,
    rule_actions,
)

# A Monday
DAY = date(2025, 3, 10)
TODAY = date(2025, 2, 1)


def policy(**overrides: Any) -> OverbookingPolicy:
    """10% overbooking rule for the deluxe room type."""
    values: dict[str, Any] = {
        "hotel_id": "hotel-1",
        "room_type_id": "deluxe",
        "max_overbooking_percent": 10,
    }
    values.update(overrides)
    return OverbookingPolicy(**values)


def rule(rule_type: RuleType, actions: RuleAction | None = None, **overrides: Any) -> StopSellPolicy:
    """Rule covering March 2025, every room type and channel."""
    values: dict[str, Any] = {
        "hotel_id": "hotel-1",
        "name": f"{rule_type.value} rule",
        "rule_type": rule_type,
        "start_date": date(2025, 3, 1),
        "end_date": date(2025, 3, 31),
        "all_room_types": True,
        "all_channels": True,
        "actions": actions or RuleAction(),
    }
    values.update(overrides)
    return StopSellPolicy(**values)


@pytest.mark.unit
def test_no_policy_means_no_allowance() -> None:
    """Without a rule the allowance is zero rooms."""
    decision = compute_allowance(None, 10, DAY, DIRECT_CHANNEL, TODAY)

    assert decision.rooms == 0
    assert decision.percent == 0.0


@pytest.mark.unit
def test_base_percentage_rounds_down() -> None:
    """15% of 10 rooms allows one extra room."""
    decision = compute_allowance(policy(max_overbooking_percent=15), 10, DAY, DIRECT_CHANNEL, TODAY)

    assert decision.rooms == 1
    assert decision.percent == 15


@pytest.mark.unit
def test_inactive_policy_is_ignored() -> None:
    """A deactivated rule grants nothing."""
    decision = compute_allowance(policy(is_active=False), 10, DAY, DIRECT_CHANNEL, TODAY)

    assert decision.rooms == 0


@pytest.mark.unit
def test_channel_override_replaces_base_percentage() -> None:
    """A channel override wins over the base percentage for that channel only."""
    rules = policy(channel_overrides={"booking_com": 30})

    assert compute_allowance(rules, 10, DAY, "booking_com", TODAY).rooms == 3
    assert compute_allowance(rules, 10, DAY, "expedia", TODAY).rooms == 1


@pytest.mark.unit
def test_any_channel_uses_most_generous_percentage() -> None:
    """ANY_CHANNEL takes the largest of base and overrides."""
    rules = policy(channel_overrides={"booking_com": 30, "expedia": 5})

    assert compute_allowance(rules, 10, DAY, ANY_CHANNEL, TODAY).rooms == 3


@pytest.mark.unit
def test_factors_multiply() -> None:
    """Seasonal, weekday and lead-time factors scale the percentage together."""
    rules = policy(
        max_overbooking_percent=10,
        seasonal_adjustments=[
            SeasonalAdjustment(start_date=date(2025, 3, 1), end_date=date(2025, 3, 31), factor=2.0)
        ],
        day_of_week_factors={0: 1.5},
        lead_time_adjustments=[
            LeadTimeAdjustment(max_days_ahead=7, factor=0.0),
            LeadTimeAdjustment(max_days_ahead=60, factor=0.5),
        ],
        fallback_actions=[FallbackAction.UPSELL],
    )

    # 37 days ahead falls in the 60-day band
    decision = compute_allowance(rules, 20, DAY, DIRECT_CHANNEL, TODAY)

    assert decision.percent == pytest.approx(15.0)
    assert decision.rooms == 3
    assert decision.fallback_actions == [FallbackAction.UPSELL]


@pytest.mark.unit
def test_lead_time_band_can_close_overbooking() -> None:
    """A zero factor close to arrival removes the allowance."""
    rules = policy(lead_time_adjustments=[LeadTimeAdjustment(max_days_ahead=7, factor=0.0)])

    assert compute_allowance(rules, 10, DAY, DIRECT_CHANNEL, date(2025, 3, 8)).rooms == 0


@pytest.mark.unit
def test_rule_type_fills_implied_action() -> None:
    """A stop_sell rule with empty actions still stops sales."""
    assert rule_actions(rule(RuleType.STOP_SELL)).stop_sell is True
    assert rule_actions(rule(RuleType.CLOSED_TO_ARRIVAL)).closed_to_arrival is True
    assert rule_actions(rule(RuleType.MIN_LOS, RuleAction(min_los=3))).stop_sell is None


@pytest.mark.unit
def test_first_rule_setting_a_field_wins() -> None:
    """Rules are pre-sorted by priority; the first to set a field decides it."""
    high = rule(RuleType.MIN_LOS, RuleAction(min_los=3), priority=9)
    low = rule(RuleType.MIN_LOS, RuleAction(min_los=2, max_los=7), priority=1)

    result = compose_restrictions([high, low], DAY, "deluxe", DIRECT_CHANNEL)

    assert result.min_los == 3
    assert result.max_los == 7
    assert result.stop_sell is False


@pytest.mark.unit
def test_unmatched_rules_fall_back_to_row_restrictions() -> None:
    """Out-of-range, other-weekday and other-room rules leave the base untouched."""
    base = Restrictions(closed_to_departure=True, min_los=2)
    rules = [
        rule(RuleType.STOP_SELL, start_date=date(2025, 4, 1), end_date=date(2025, 4, 30)),
        rule(RuleType.STOP_SELL, weekdays=[5, 6]),
        rule(RuleType.STOP_SELL, all_room_types=False, room_type_ids=["suite"]),
    ]

    result = compose_restrictions(rules, DAY, "deluxe", DIRECT_CHANNEL, base)

    assert result == base


@pytest.mark.unit
def test_channel_scoped_rule() -> None:
    """A rule naming channels only applies to those channels."""
    scoped = rule(RuleType.STOP_SELL, all_channels=False, channels=["expedia"])

    assert compose_restrictions([scoped], DAY, "deluxe", "expedia").stop_sell is True
    assert compose_restrictions([scoped], DAY, "deluxe", "booking_com").stop_sell is False
    assert compose_restrictions([scoped], DAY, "deluxe", ["booking_com", "expedia"]).stop_sell is True


@pytest.mark.unit
def test_rate_adjustment_maps_to_percentage() -> None:
    """rate_adjustment becomes rate_adjustment_pct on the effective restrictions."""
    result = compose_restrictions(
        [rule(RuleType.RATE_RESTRICTION, RuleAction(rate_adjustment=-5))], DAY, "deluxe", DIRECT_CHANNEL
    )

    assert result.rate_adjustment_pct == -5.0


@pytest.mark.unit
def test_inverted_length_of_stay_is_clamped() -> None:
    """When composition yields min_los > max_los, max_los is raised to min_los."""
    result = compose_restrictions(
        [rule(RuleType.MIN_LOS, RuleAction(min_los=4))],
        DAY,
        "deluxe",
        DIRECT_CHANNEL,
        Restrictions(max_los=2),
    )

    assert result.min_los == 4
    assert result.max_los == 4


@pytest.mark.unit
def test_stop_sell_policy_validates_range() -> None:
    """End before start and out-of-range weekdays are rejected."""
    with pytest.raises(PydanticValidationError):
        rule(RuleType.STOP_SELL, start_date=date(2025, 3, 31), end_date=date(2025, 3, 1))
    with pytest.raises(PydanticValidationError):
        rule(RuleType.STOP_SELL, weekdays=[7])


@pytest.mark.unit
def test_restrictions_channel_payload() -> None:
    """Restrictions render to the canonical push block."""
    payload = Restrictions(stop_sell=True, min_los=2).to_channel_payload()

    assert payload == {
        "closed": True,
        "closed_to_arrival": False,
        "closed_to_departure": False,
        "min_length_of_stay": 2,
        "max_length_of_stay": None,
    }
