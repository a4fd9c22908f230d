from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


class ConnectionStatus(str, Enum):
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    ERROR = "error"
    PENDING = "pending"


class ChannelSettings(BaseModel):
    """
    Per-channel sync and selling settings.
    """

    auto_sync: bool = Field(True, description="Push ledger changes automatically")
    sync_frequency_seconds: int = Field(900, ge=60, description="Reservation poll interval")
    enable_rate_sync: bool = True
    enable_inventory_sync: bool = True
    enable_restriction_sync: bool = True
    commission_pct: float = Field(18.0, ge=0, le=100)
    currency: str = Field("INR", min_length=3, max_length=3)
    default_lead_time_days: int = Field(0, ge=0)
    max_lead_time_days: int = Field(365, ge=1)
    min_los: int = Field(1, ge=1)
    max_los: int = Field(30, ge=1)


class RatePlanMapping(BaseModel):
    hotel_rate_plan_id: str = "BAR"
    channel_rate_plan_id: str


class RoomMapping(BaseModel):
    hotel_room_type_id: str
    channel_room_type_id: str
    rate_plan_mappings: list[RatePlanMapping] = Field(default_factory=list)

    @property
    def default_rate_plan(self) -> str:
        """Channel rate plan that carries the best available rate."""
        for mapping in self.rate_plan_mappings:
            if mapping.hotel_rate_plan_id == "BAR":
                return mapping.channel_rate_plan_id
        return self.rate_plan_mappings[0].channel_rate_plan_id if self.rate_plan_mappings else "BAR"


class RateParitySettings(BaseModel):
    enabled: bool = False
    variance_pct: float = Field(5.0, ge=0)
    base_channel: Optional[str] = Field(
        None, description="Channel whose rate is the reference instead of the ledger"
    )


class ChannelConfig(BaseModel):
    """
    Channel definition as read from the store, without credential material.
    """

    id: str
    hotel_id: str
    channel_id: str
    name: str
    category: str
    credentials_version: int = 1
    settings: ChannelSettings = Field(default_factory=ChannelSettings)
    room_mappings: list[RoomMapping] = Field(default_factory=list)
    rate_parity: RateParitySettings = Field(default_factory=RateParitySettings)
    restrictions: dict[str, Any] = Field(default_factory=dict)
    last_sync: dict[str, datetime] = Field(default_factory=dict)
    connection_status: ConnectionStatus = ConnectionStatus.PENDING
    is_active: bool = True

    def mapping_for(self, room_type_id: str) -> Optional[RoomMapping]:
        for mapping in self.room_mappings:
            if mapping.hotel_room_type_id == room_type_id:
                return mapping
        return None

    def room_type_for(self, channel_room_type_id: str) -> Optional[str]:
        for mapping in self.room_mappings:
            if mapping.channel_room_type_id == channel_room_type_id:
                return mapping.hotel_room_type_id
        return None


class ChannelRegistration(BaseModel):
    """Input for connecting a hotel to a channel."""

    hotel_id: str
    channel_id: str
    name: str
    category: str
    credentials: dict[str, Any]
    settings: ChannelSettings = Field(default_factory=ChannelSettings)
    room_mappings: list[RoomMapping] = Field(default_factory=list)
    rate_parity: RateParitySettings = Field(default_factory=RateParitySettings)
