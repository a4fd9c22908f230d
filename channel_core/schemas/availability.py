from datetime import date, datetime
from typing import Any, Optional

from pydantic import BaseModel, Field


class Restrictions(BaseModel):
    """
    Effective sell restrictions for one room type, date and channel.
    """

    stop_sell: bool = Field(False, description="Block all sales on the date")
    closed_to_arrival: bool = Field(False, description="Block stays arriving on the date")
    closed_to_departure: bool = Field(False, description="Block stays departing on the date")
    min_los: int = Field(1, description="Minimum length of stay for arrivals on the date")
    max_los: Optional[int] = Field(None, description="Maximum length of stay for arrivals")
    rate_adjustment_pct: Optional[float] = Field(
        None, description="Percent adjustment applied to the published rate"
    )

    def to_channel_payload(self) -> dict[str, Any]:
        """Restriction block of a canonical push record."""
        return {
            "closed": self.stop_sell,
            "closed_to_arrival": self.closed_to_arrival,
            "closed_to_departure": self.closed_to_departure,
            "min_length_of_stay": self.min_los,
            "max_length_of_stay": self.max_los,
        }


class LedgerRow(BaseModel):
    """
    Read-only projection of an availability row.
    """

    id: str
    hotel_id: str
    room_type_id: str
    date: date
    total_rooms: int
    sold_rooms: int
    blocked_rooms: int
    base_rate: float
    selling_rate: float
    currency: str
    restrictions: Restrictions
    dirty: bool
    archived: bool = False
    last_synced_at: Optional[datetime] = None
    last_price_update: Optional[datetime] = None
    channel_sync: dict[str, dict[str, Any]] = Field(default_factory=dict)
    version: int
    revision: int

    @property
    def available(self) -> int:
        """Rooms still sellable without overbooking."""
        return max(0, self.total_rooms - self.sold_rooms - self.blocked_rooms)

    @property
    def occupancy_pct(self) -> float:
        """Sold rooms as a percentage of total rooms."""
        if self.total_rooms <= 0:
            return 0.0
        return self.sold_rooms / self.total_rooms * 100


class RoomTypeInfo(BaseModel):
    """Room type definition as read from the store."""

    id: str
    hotel_id: str
    name: str
    base_price: float
    min_price: Optional[float] = None
    max_price: Optional[float] = None
    total_rooms: int
    currency: str = "INR"
