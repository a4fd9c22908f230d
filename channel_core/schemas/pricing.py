from datetime import date, datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


class StrategyType(str, Enum):
    OCCUPANCY_BASED = "occupancy_based"
    DAY_OF_WEEK = "day_of_week"
    LEAD_TIME = "lead_time"
    FIXED_MULTIPLIER = "fixed_multiplier"


class PricingMode(str, Enum):
    AUTO = "auto"
    RECOMMEND = "recommend"


class Strategy(BaseModel):
    """
    Pricing strategy. ``parameters`` by type:

    - occupancy_based: ``thresholds`` [{"min_occupancy", "adjustment_pct"}]
    - day_of_week: ``multipliers`` {"0".."6": multiplier}
    - lead_time: ``bands`` [{"max_days_ahead", "adjustment_pct"}]
    - fixed_multiplier: ``multiplier``
    """

    id: str
    hotel_id: str
    name: str
    strategy_type: StrategyType
    priority: int = 1
    room_type_ids: list[str] = Field(default_factory=list)
    parameters: dict[str, Any] = Field(default_factory=dict)
    min_rate: Optional[float] = None
    max_rate: Optional[float] = None
    is_active: bool = True
    created_at: Optional[datetime] = None

    def applies_to(self, room_type_id: str) -> bool:
        return not self.room_type_ids or room_type_id in self.room_type_ids


class Forecast(BaseModel):
    hotel_id: str
    room_type_id: str
    stay_date: date
    predicted_occupancy: float = Field(..., ge=0, le=100)
    confidence: float = Field(..., ge=0, le=100)
    updated_at: datetime


class CompetitorSample(BaseModel):
    competitor_id: str
    rate: float
    confidence: int


class PricingDecision(BaseModel):
    """Outcome of evaluating one (room type, date)."""

    room_type_id: str
    stay_date: date
    current_rate: float
    base_price: float
    strategic_rate: float
    strategy_id: Optional[str] = None
    demand_adjustment: float = 0.0
    competitor_adjustment: float = 0.0
    competitor_position: Optional[str] = None
    recommended_rate: float
    change_pct: float
    current_occupancy: float
    projected_occupancy: float
    revenue_delta: float
    score: int
    applied: bool = False
    reason: str = ""


class PricingRunReport(BaseModel):
    hotel_id: str
    mode: PricingMode
    evaluated: int = 0
    applied: int = 0
    skipped_reason: Optional[str] = None
    decisions: list[PricingDecision] = Field(default_factory=list)
