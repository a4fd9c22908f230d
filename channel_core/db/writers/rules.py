import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import insert, update
from sqlalchemy.engine import Connection

from channel_core.db.writers._upsert import upsert_with_distinct_check
from channel_core.models.rules import OverbookingRule, StopSellRule
from channel_core.schemas.rules import OverbookingPolicy, StopSellPolicy


def upsert_overbooking_rule(conn: Connection, policy: OverbookingPolicy, now: datetime) -> None:
    """
    Create or replace the overbooking rule of a room type.

    Args:
        conn (Connection): Connection inside a transaction
        policy (OverbookingPolicy): Rule to store; ``id`` is generated when absent
        now (datetime): Timestamp for created_at / updated_at
    """
    data = policy.model_dump(mode="json")
    row: dict[str, Any] = {
        "id": policy.id or str(uuid.uuid4()),
        "hotel_id": policy.hotel_id,
        "room_type_id": policy.room_type_id,
        "max_overbooking_percent": policy.max_overbooking_percent,
        "seasonal_adjustments": data["seasonal_adjustments"],
        "day_of_week_factors": data["day_of_week_factors"],
        "lead_time_adjustments": data["lead_time_adjustments"],
        "channel_overrides": data["channel_overrides"],
        "fallback_actions": data["fallback_actions"],
        "is_active": policy.is_active,
        "created_at": now,
        "updated_at": now,
    }
    upsert_with_distinct_check(
        conn,
        OverbookingRule,
        [row],
        conflict_columns=["hotel_id", "room_type_id"],
        update_columns=[
            "max_overbooking_percent",
            "seasonal_adjustments",
            "day_of_week_factors",
            "lead_time_adjustments",
            "channel_overrides",
            "fallback_actions",
            "is_active",
            "updated_at",
        ],
        distinct_columns=[
            "max_overbooking_percent",
            "seasonal_adjustments",
            "day_of_week_factors",
            "lead_time_adjustments",
            "channel_overrides",
            "fallback_actions",
            "is_active",
        ],
    )


def deactivate_overbooking_rule(
    conn: Connection, hotel_id: str, room_type_id: str, now: datetime
) -> int:
    """Soft delete the overbooking rule of a room type."""
    stmt = (
        update(OverbookingRule)
        .where(OverbookingRule.hotel_id == hotel_id)
        .where(OverbookingRule.room_type_id == room_type_id)
        .where(OverbookingRule.is_active == True)  # noqa: E712
        .values(is_active=False, updated_at=now)
    )
    return conn.execute(stmt).rowcount


def _stop_sell_values(policy: StopSellPolicy) -> dict[str, Any]:
    data = policy.model_dump(mode="json")
    return {
        "hotel_id": policy.hotel_id,
        "name": policy.name,
        "rule_type": policy.rule_type.value,
        "priority": policy.priority,
        "start_date": policy.start_date,
        "end_date": policy.end_date,
        "weekdays": data["weekdays"],
        "all_room_types": policy.all_room_types,
        "room_type_ids": data["room_type_ids"],
        "all_channels": policy.all_channels,
        "channels": data["channels"],
        "actions": policy.actions.model_dump(mode="json", exclude_none=True),
        "is_active": policy.is_active,
    }


def insert_stop_sell_rule(conn: Connection, policy: StopSellPolicy, now: datetime) -> str:
    """
    Insert a stop-sell rule.

    Returns:
        str: The new rule id
    """
    rule_id = policy.id or str(uuid.uuid4())
    conn.execute(
        insert(StopSellRule).values(id=rule_id, created_at=now, **_stop_sell_values(policy))
    )
    return rule_id


def update_stop_sell_rule(conn: Connection, rule_id: str, policy: StopSellPolicy) -> int:
    """Overwrite a stop-sell rule's definition; ``created_at`` is kept for ordering."""
    stmt = update(StopSellRule).where(StopSellRule.id == rule_id).values(**_stop_sell_values(policy))
    return conn.execute(stmt).rowcount


def deactivate_stop_sell_rule(conn: Connection, rule_id: str) -> int:
    """Soft delete a stop-sell rule."""
    stmt = update(StopSellRule).where(StopSellRule.id == rule_id).values(is_active=False)
    return conn.execute(stmt).rowcount
