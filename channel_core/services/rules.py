"""
Overbooking allowance and stop-sell composition.

``compute_allowance`` and ``compose_restrictions`` are pure; ``RuleEngine``
loads the rules from the store and exposes rule CRUD to the admin layer.
"""

from __future__ import annotations

import math
from datetime import date
from typing import Callable, Iterable, Optional, Sequence, Union

import structlog
from sqlalchemy.engine import Connection, Engine

from channel_core.db.readers.rules import (
    get_overbooking_policy,
    get_stop_sell_policy,
    list_stop_sell_policies,
)
from channel_core.db.writers.rules import (
    deactivate_overbooking_rule,
    deactivate_stop_sell_rule,
    insert_stop_sell_rule,
    update_stop_sell_rule,
    upsert_overbooking_rule,
)
from channel_core.errors import NotFound, ValidationError
from channel_core.schemas.availability import Restrictions
from channel_core.schemas.rules import (
    AllowanceDecision,
    OverbookingPolicy,
    RuleAction,
    RuleType,
    StopSellPolicy,
)
from channel_core.services import audit
from channel_core.services.audit import AuditTrail
from channel_core.utils.datetime import utc_now

logger = structlog.get_logger(__name__)

DIRECT_CHANNEL = "direct"

# Channel argument meaning "the most generous channel", used for integrity checks
ANY_CHANNEL = None

ChannelKeys = Optional[Union[str, Sequence[str]]]

# (hotel_id, room_type_id or None for every room type, first date, last date)
RuleChangeCallback = Callable[[str, Optional[str], date, date], None]

# Field a rule type sets when its action payload leaves it out
_TYPE_DEFAULTS = {
    RuleType.STOP_SELL: ("stop_sell", True),
    RuleType.CLOSED_TO_ARRIVAL: ("closed_to_arrival", True),
    RuleType.CLOSED_TO_DEPARTURE: ("closed_to_departure", True),
}

ACTION_FIELDS = (
    "stop_sell",
    "closed_to_arrival",
    "closed_to_departure",
    "min_los",
    "max_los",
    "rate_adjustment",
)


def channel_keys(channel: ChannelKeys) -> tuple[str, ...]:
    if channel is None:
        return ()
    if isinstance(channel, str):
        return (channel,)
    return tuple(channel)


def compute_allowance(
    policy: Optional[OverbookingPolicy],
    total_rooms: int,
    day: date,
    channel: ChannelKeys,
    today: date,
) -> AllowanceDecision:
    """
    Extra rooms sellable beyond ``total_rooms`` on ``day`` for ``channel``.

    The percentage is the channel override if one exists, else the rule's
    base percentage; it is then scaled by the seasonal, day-of-week and
    lead-time factors that apply to the date. Rooms are rounded down.
    With ``ANY_CHANNEL`` the largest of the base and override percentages is
    used.
    """
    if policy is None or not policy.is_active or total_rooms <= 0:
        return AllowanceDecision()

    percent = policy.max_overbooking_percent
    if channel is ANY_CHANNEL:
        percent = max([percent, *policy.channel_overrides.values()])
    for key in channel_keys(channel):
        if key in policy.channel_overrides:
            percent = policy.channel_overrides[key]
            break

    for season in policy.seasonal_adjustments:
        if season.start_date <= day <= season.end_date:
            percent *= season.factor
            break

    percent *= policy.day_of_week_factors.get(day.weekday(), 1.0)

    days_ahead = (day - today).days
    for band in sorted(policy.lead_time_adjustments, key=lambda b: b.max_days_ahead):
        if days_ahead <= band.max_days_ahead:
            percent *= band.factor
            break

    percent = max(0.0, min(percent, 100.0))
    rooms = math.floor(total_rooms * percent / 100 + 1e-9)
    return AllowanceDecision(
        rooms=rooms, percent=percent, fallback_actions=list(policy.fallback_actions)
    )


def rule_actions(policy: StopSellPolicy) -> RuleAction:
    """Action payload of a rule with its type's implied field filled in."""
    default = _TYPE_DEFAULTS.get(policy.rule_type)
    if default is None:
        return policy.actions
    field_name, value = default
    if getattr(policy.actions, field_name) is not None:
        return policy.actions
    return policy.actions.model_copy(update={field_name: value})


def compose_restrictions(
    policies: Iterable[StopSellPolicy],
    day: date,
    room_type_id: str,
    channel: ChannelKeys,
    base: Optional[Restrictions] = None,
) -> Restrictions:
    """
    Combine the matching rules for one date into a single restriction record.

    ``policies`` must already be ordered by priority descending then creation
    time ascending. For each action field the first matching rule that sets it
    wins; fields no rule sets fall back to ``base`` (the ledger row's own
    restrictions).
    """
    keys = channel_keys(channel)
    chosen: dict[str, object] = {}
    for policy in policies:
        if not policy.matches(day, room_type_id, keys):
            continue
        actions = rule_actions(policy)
        for field_name in ACTION_FIELDS:
            value = getattr(actions, field_name)
            if value is not None and field_name not in chosen:
                chosen[field_name] = value

    result = (base or Restrictions()).model_copy()
    for field_name, value in chosen.items():
        if field_name == "rate_adjustment":
            result.rate_adjustment_pct = float(value)  # type: ignore[arg-type]
        else:
            setattr(result, field_name, value)

    if result.max_los is not None and result.min_los > result.max_los:
        logger.warning(
            "restriction_los_inverted",
            room_type_id=room_type_id,
            date=day.isoformat(),
            min_los=result.min_los,
            max_los=result.max_los,
        )
        result.max_los = result.min_los
    return result


class RuleEngine:
    """
    Store-backed rule evaluation and rule CRUD.
    """

    def __init__(
        self,
        engine: Engine,
        audit_trail: Optional[AuditTrail] = None,
        on_change: Optional[RuleChangeCallback] = None,
    ):
        self.engine = engine
        self.audit = audit_trail or AuditTrail(engine)
        self.on_change = on_change

    # -------------------------------------------------------------------------
    # Evaluation
    # -------------------------------------------------------------------------

    def effective_allowance(
        self,
        hotel_id: str,
        room_type_id: str,
        day: date,
        channel: ChannelKeys,
        total_rooms: int,
        today: Optional[date] = None,
        conn: Optional[Connection] = None,
    ) -> AllowanceDecision:
        """Overbooking allowance for one date and channel."""
        if conn is None:
            with self.engine.connect() as own_conn:
                policy = get_overbooking_policy(own_conn, hotel_id, room_type_id)
        else:
            policy = get_overbooking_policy(conn, hotel_id, room_type_id)
        return compute_allowance(policy, total_rooms, day, channel, today or utc_now().date())

    def allowances_for(
        self,
        conn: Connection,
        hotel_id: str,
        room_type_id: str,
        totals: dict[date, int],
        channel: ChannelKeys,
        today: date,
    ) -> dict[date, AllowanceDecision]:
        """Allowance per date with a single rule lookup."""
        policy = get_overbooking_policy(conn, hotel_id, room_type_id)
        return {
            day: compute_allowance(policy, total, day, channel, today)
            for day, total in totals.items()
        }

    def stop_sell_state(
        self,
        hotel_id: str,
        room_type_id: str,
        day: date,
        channel: ChannelKeys,
        base: Optional[Restrictions] = None,
        conn: Optional[Connection] = None,
    ) -> Restrictions:
        """Effective restrictions for one date and channel."""
        return self.restrictions_for(
            hotel_id, room_type_id, {day: base or Restrictions()}, channel, conn
        )[day]

    def restrictions_for(
        self,
        hotel_id: str,
        room_type_id: str,
        bases: dict[date, Restrictions],
        channel: ChannelKeys,
        conn: Optional[Connection] = None,
    ) -> dict[date, Restrictions]:
        """
        Effective restrictions for several dates with one rule query.

        Args:
            bases: Row-level restrictions per date (defaults where no row exists)
        """
        if not bases:
            return {}
        start, end = min(bases), max(bases)
        if conn is None:
            with self.engine.connect() as own_conn:
                policies = list_stop_sell_policies(own_conn, hotel_id, start, end)
        else:
            policies = list_stop_sell_policies(conn, hotel_id, start, end)
        return {
            day: compose_restrictions(policies, day, room_type_id, channel, base)
            for day, base in bases.items()
        }

    # -------------------------------------------------------------------------
    # CRUD
    # -------------------------------------------------------------------------

    def set_overbooking_rule(self, policy: OverbookingPolicy, source: str = "admin") -> None:
        """Create or replace the overbooking rule of a room type."""
        now = utc_now()
        with self.engine.begin() as conn:
            upsert_overbooking_rule(conn, policy, now)
            self.audit.record(
                table_name="overbooking_rules",
                change_type=audit.RULE_CHANGED,
                source=source,
                hotel_id=policy.hotel_id,
                record_id=policy.room_type_id,
                new_values=policy.model_dump(mode="json"),
                tags=["rules", "overbooking"],
                conn=conn,
                now=now,
            )
        logger.info(
            "overbooking_rule_set",
            hotel_id=policy.hotel_id,
            room_type_id=policy.room_type_id,
            max_overbooking_percent=policy.max_overbooking_percent,
        )

    def remove_overbooking_rule(self, hotel_id: str, room_type_id: str, source: str = "admin") -> None:
        now = utc_now()
        with self.engine.begin() as conn:
            if not deactivate_overbooking_rule(conn, hotel_id, room_type_id, now):
                raise NotFound(f"No overbooking rule for room type {room_type_id}")
            self.audit.record(
                table_name="overbooking_rules",
                change_type=audit.RULE_CHANGED,
                source=source,
                hotel_id=hotel_id,
                record_id=room_type_id,
                new_values={"is_active": False},
                tags=["rules", "overbooking"],
                conn=conn,
                now=now,
            )

    def create_stop_sell_rule(self, policy: StopSellPolicy, source: str = "admin") -> str:
        """
        Store a new stop-sell rule and flag the affected ledger dates for resync.

        Returns:
            str: Rule id
        """
        self._validate_policy(policy)
        now = utc_now()
        with self.engine.begin() as conn:
            rule_id = insert_stop_sell_rule(conn, policy, now)
            self.audit.record(
                table_name="stop_sell_rules",
                change_type=audit.RULE_CHANGED,
                source=source,
                hotel_id=policy.hotel_id,
                record_id=rule_id,
                new_values=policy.model_dump(mode="json"),
                tags=["rules", "stop_sell", policy.rule_type.value],
                conn=conn,
                now=now,
            )
        logger.info(
            "stop_sell_rule_created",
            hotel_id=policy.hotel_id,
            rule_id=rule_id,
            rule_type=policy.rule_type.value,
            priority=policy.priority,
        )
        self._notify(policy)
        return rule_id

    def update_stop_sell_rule(self, rule_id: str, policy: StopSellPolicy, source: str = "admin") -> None:
        self._validate_policy(policy)
        with self.engine.begin() as conn:
            previous = get_stop_sell_policy(conn, rule_id)
            if previous is None:
                raise NotFound(f"Stop-sell rule {rule_id} not found")
            update_stop_sell_rule(conn, rule_id, policy)
            self.audit.record(
                table_name="stop_sell_rules",
                change_type=audit.RULE_CHANGED,
                source=source,
                hotel_id=policy.hotel_id,
                record_id=rule_id,
                old_values=previous.model_dump(mode="json"),
                new_values=policy.model_dump(mode="json"),
                tags=["rules", "stop_sell"],
                conn=conn,
            )
        self._notify(previous)
        self._notify(policy)

    def deactivate_stop_sell_rule(self, rule_id: str, source: str = "admin") -> None:
        with self.engine.begin() as conn:
            previous = get_stop_sell_policy(conn, rule_id)
            if previous is None:
                raise NotFound(f"Stop-sell rule {rule_id} not found")
            deactivate_stop_sell_rule(conn, rule_id)
            self.audit.record(
                table_name="stop_sell_rules",
                change_type=audit.RULE_CHANGED,
                source=source,
                hotel_id=previous.hotel_id,
                record_id=rule_id,
                new_values={"is_active": False},
                tags=["rules", "stop_sell"],
                conn=conn,
            )
        self._notify(previous)

    def _validate_policy(self, policy: StopSellPolicy) -> None:
        if not policy.all_room_types and not policy.room_type_ids:
            raise ValidationError("Rule must name room types or set all_room_types")
        if not policy.all_channels and not policy.channels:
            raise ValidationError("Rule must name channels or set all_channels")
        actions = rule_actions(policy)
        if all(getattr(actions, f) is None for f in ACTION_FIELDS):
            raise ValidationError(f"Rule of type {policy.rule_type.value} has no actions")
        if (
            actions.min_los is not None
            and actions.max_los is not None
            and actions.min_los > actions.max_los
        ):
            raise ValidationError("min_los must not exceed max_los")

    def _notify(self, policy: StopSellPolicy) -> None:
        if self.on_change is None:
            return
        if policy.all_room_types:
            self.on_change(policy.hotel_id, None, policy.start_date, policy.end_date)
            return
        for room_type_id in policy.room_type_ids:
            self.on_change(policy.hotel_id, room_type_id, policy.start_date, policy.end_date)
