"""Metadata bootstrap for environments that do not run alembic (SQLite, tests)."""

from sqlalchemy.engine import Engine

from channel_core.models.audit import AuditLog, RateParityLog  # noqa: F401
from channel_core.models.availability import AvailabilityRow  # noqa: F401
from channel_core.models.base import Base
from channel_core.models.bookings import Booking  # noqa: F401
from channel_core.models.channels import Channel, InventorySync, ReservationMapping  # noqa: F401
from channel_core.models.hotels import Hotel, RoomType  # noqa: F401
from channel_core.models.pricing import CompetitorRate, DemandForecast, PricingStrategy  # noqa: F401
from channel_core.models.rules import OverbookingRule, StopSellRule  # noqa: F401


def create_all(engine: Engine) -> None:
    """Create every table known to the ORM metadata if it does not exist."""
    Base.metadata.create_all(engine)
