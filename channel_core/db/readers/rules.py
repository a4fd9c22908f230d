from datetime import date
from typing import Optional

from sqlalchemy import select
from sqlalchemy.engine import Connection

from channel_core.models.rules import OverbookingRule, StopSellRule
from channel_core.schemas.rules import OverbookingPolicy, StopSellPolicy


def get_overbooking_policy(
    conn: Connection, hotel_id: str, room_type_id: str
) -> Optional[OverbookingPolicy]:
    """
    Fetch the active overbooking rule of a room type.

    Returns:
        Optional[OverbookingPolicy]: The rule, or None if the room type has none
    """
    stmt = (
        select(OverbookingRule)
        .where(OverbookingRule.hotel_id == hotel_id)
        .where(OverbookingRule.room_type_id == room_type_id)
        .where(OverbookingRule.is_active == True)  # noqa: E712
    )
    row = conn.execute(stmt).mappings().fetchone()
    return OverbookingPolicy.model_validate(dict(row)) if row else None


def list_stop_sell_policies(
    conn: Connection, hotel_id: str, start: date, end: date
) -> list[StopSellPolicy]:
    """
    Active stop-sell rules of a hotel overlapping the inclusive range [start, end].

    Rules come back sorted by priority descending, then creation time ascending,
    which is the order they compose in.
    """
    stmt = (
        select(StopSellRule)
        .where(StopSellRule.hotel_id == hotel_id)
        .where(StopSellRule.is_active == True)  # noqa: E712
        .where(StopSellRule.start_date <= end)
        .where(StopSellRule.end_date >= start)
        .order_by(StopSellRule.priority.desc(), StopSellRule.created_at.asc(), StopSellRule.id)
    )
    return [StopSellPolicy.model_validate(dict(row)) for row in conn.execute(stmt).mappings()]


def get_stop_sell_policy(conn: Connection, rule_id: str) -> Optional[StopSellPolicy]:
    row = conn.execute(select(StopSellRule).where(StopSellRule.id == rule_id)).mappings().fetchone()
    return StopSellPolicy.model_validate(dict(row)) if row else None
