from datetime import date, datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field, model_validator


class RuleType(str, Enum):
    STOP_SELL = "stop_sell"
    MIN_LOS = "min_los"
    CLOSED_TO_ARRIVAL = "closed_to_arrival"
    CLOSED_TO_DEPARTURE = "closed_to_departure"
    RATE_RESTRICTION = "rate_restriction"


class FallbackAction(str, Enum):
    UPSELL = "upsell"
    WALK_IN = "walk_in"
    NOTIFY = "notify"
    AUTO_RELOCATE = "auto_relocate"


class SeasonalAdjustment(BaseModel):
    start_date: date
    end_date: date
    factor: float = Field(..., ge=0)


class LeadTimeAdjustment(BaseModel):
    max_days_ahead: int = Field(..., ge=0)
    factor: float = Field(..., ge=0)


class OverbookingPolicy(BaseModel):
    """
    Overbooking rule for one room type.
    """

    id: Optional[str] = None
    hotel_id: str
    room_type_id: str
    max_overbooking_percent: float = Field(0.0, ge=0, le=100)
    seasonal_adjustments: list[SeasonalAdjustment] = Field(default_factory=list)
    day_of_week_factors: dict[int, float] = Field(default_factory=dict)
    lead_time_adjustments: list[LeadTimeAdjustment] = Field(default_factory=list)
    channel_overrides: dict[str, float] = Field(default_factory=dict)
    fallback_actions: list[FallbackAction] = Field(default_factory=list)
    is_active: bool = True


class RuleAction(BaseModel):
    """Optional action fields; ``None`` means the rule does not set the field."""

    stop_sell: Optional[bool] = None
    closed_to_arrival: Optional[bool] = None
    closed_to_departure: Optional[bool] = None
    min_los: Optional[int] = Field(None, ge=1)
    max_los: Optional[int] = Field(None, ge=1)
    rate_adjustment: Optional[float] = Field(None, description="Percent, e.g. 10 or -5")


ALL_CHANNELS = "all"


class StopSellPolicy(BaseModel):
    """
    A typed restriction rule over a date range.
    """

    id: Optional[str] = None
    hotel_id: str
    name: str
    rule_type: RuleType
    priority: int = Field(5, ge=1, le=10)
    start_date: date
    end_date: date
    weekdays: list[int] = Field(default_factory=list, description="Monday is 0; empty is every day")
    all_room_types: bool = False
    room_type_ids: list[str] = Field(default_factory=list)
    all_channels: bool = False
    channels: list[str] = Field(default_factory=list)
    actions: RuleAction = Field(default_factory=RuleAction)
    is_active: bool = True
    created_at: Optional[datetime] = None

    @model_validator(mode="after")
    def check_range(self) -> "StopSellPolicy":
        if self.end_date < self.start_date:
            raise ValueError("end_date must not be before start_date")
        if any(day < 0 or day > 6 for day in self.weekdays):
            raise ValueError("weekdays must be between 0 (Monday) and 6 (Sunday)")
        return self

    def matches(self, day: date, room_type_id: str, channel_keys: tuple[str, ...]) -> bool:
        if not self.is_active or not (self.start_date <= day <= self.end_date):
            return False
        if self.weekdays and day.weekday() not in self.weekdays:
            return False
        if not self.all_room_types and room_type_id not in self.room_type_ids:
            return False
        if self.all_channels or ALL_CHANNELS in self.channels:
            return True
        return any(key in self.channels for key in channel_keys)


class AllowanceDecision(BaseModel):
    """Extra sellable rooms an overbooking rule grants for one date and channel."""

    rooms: int = 0
    percent: float = 0.0
    fallback_actions: list[FallbackAction] = Field(default_factory=list)
