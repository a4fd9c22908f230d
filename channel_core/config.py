import os
from dataclasses import dataclass

from dotenv import load_dotenv

load_dotenv()

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
DEBUG = LOG_LEVEL == "DEBUG"

DRY_RUN = os.getenv("DRY_RUN", "false").lower() == "true"

DATABASE_URL = os.getenv("DATABASE_URL")
if not DATABASE_URL:
    raise ValueError("DATABASE_URL must be set in the environment")

SCHEMA = os.getenv("DB_SCHEMA", "channel_core")

ALLOWED_ORIGINS: list[str] = [
    origin.strip() for origin in os.getenv("ALLOWED_ORIGINS", "*").split(",")
]

# Channel webhook listener (HTTP Basic auth shared by all channel categories)
WEBHOOK_USERNAME = os.getenv("WEBHOOK_USERNAME")
WEBHOOK_PASSWORD = os.getenv("WEBHOOK_PASSWORD")

# Fernet key used to encrypt channel credentials at rest
CREDENTIALS_KEY = os.getenv("CREDENTIALS_KEY")

# Channel API base URLs
BOOKINGCOM_API_BASE = os.getenv("BOOKINGCOM_API_BASE", "https://api.sandbox.booking.com")
EXPEDIA_API_BASE = os.getenv("EXPEDIA_API_BASE", "https://services.expediapartnercentral.com")

# Outbound sync
SYNC_TICK_SECONDS = int(os.getenv("SYNC_TICK_SECONDS", "300"))
SYNC_MAX_RETRIES = int(os.getenv("SYNC_MAX_RETRIES", "6"))
SYNC_BACKOFF_BASE_SECONDS = int(os.getenv("SYNC_BACKOFF_BASE_SECONDS", "30"))
SYNC_BACKOFF_CAP_SECONDS = int(os.getenv("SYNC_BACKOFF_CAP_SECONDS", "3600"))
SYNC_WORKERS_PER_CHANNEL = int(os.getenv("SYNC_WORKERS_PER_CHANNEL", "1"))
SYNC_MAX_WORKERS = 8
SYNC_MAX_IN_FLIGHT_PER_CHANNEL = int(os.getenv("SYNC_MAX_IN_FLIGHT_PER_CHANNEL", "4"))

# Deadlines
ADAPTOR_TIMEOUT_SECONDS = float(os.getenv("ADAPTOR_TIMEOUT_SECONDS", "30"))
STORE_TIMEOUT_SECONDS = float(os.getenv("STORE_TIMEOUT_SECONDS", "5"))

# Dynamic pricing
PRICING_HORIZON_DAYS = int(os.getenv("PRICING_HORIZON_DAYS", "30"))
PRICING_MIN_AUTO_APPLY_SCORE = int(os.getenv("PRICING_MIN_AUTO_APPLY_SCORE", "70"))
PRICING_MIN_CHANGE_PCT = float(os.getenv("PRICING_MIN_CHANGE_PCT", "2"))
PRICING_FORECAST_STALE_HOURS = int(os.getenv("PRICING_FORECAST_STALE_HOURS", "6"))
PRICING_TICK_SECONDS = int(os.getenv("PRICING_TICK_SECONDS", "3600"))

# Booking lifecycle
HOLD_RESERVED_UNTIL_MINUTES = int(os.getenv("HOLD_RESERVED_UNTIL_MINUTES", "15"))
BOOKING_CANCELLATION_GRACE_HOURS = int(os.getenv("BOOKING_CANCELLATION_GRACE_HOURS", "24"))
BOOKING_NO_SHOW_GRACE_HOURS = int(os.getenv("BOOKING_NO_SHOW_GRACE_HOURS", "2"))

# Ledger
LEDGER_HORIZON_DAYS = int(os.getenv("LEDGER_HORIZON_DAYS", "365"))

# Inbound dispatcher
INBOUND_POLL_SECONDS = int(os.getenv("INBOUND_POLL_SECONDS", "300"))


@dataclass(frozen=True)
class Settings:
    """
    Runtime tunables handed to every component through its constructor.

    Defaults come from the environment constants above, so production code can
    use ``Settings()`` while tests override individual values.
    """

    sync_tick_seconds: int = SYNC_TICK_SECONDS
    sync_max_retries: int = SYNC_MAX_RETRIES
    sync_backoff_base_seconds: int = SYNC_BACKOFF_BASE_SECONDS
    sync_backoff_cap_seconds: int = SYNC_BACKOFF_CAP_SECONDS
    sync_workers_per_channel: int = SYNC_WORKERS_PER_CHANNEL
    sync_max_in_flight_per_channel: int = SYNC_MAX_IN_FLIGHT_PER_CHANNEL
    adaptor_timeout_seconds: float = ADAPTOR_TIMEOUT_SECONDS
    store_timeout_seconds: float = STORE_TIMEOUT_SECONDS
    pricing_horizon_days: int = PRICING_HORIZON_DAYS
    pricing_min_auto_apply_score: int = PRICING_MIN_AUTO_APPLY_SCORE
    pricing_min_change_pct: float = PRICING_MIN_CHANGE_PCT
    pricing_forecast_stale_hours: int = PRICING_FORECAST_STALE_HOURS
    pricing_tick_seconds: int = PRICING_TICK_SECONDS
    hold_reserved_until_minutes: int = HOLD_RESERVED_UNTIL_MINUTES
    booking_cancellation_grace_hours: int = BOOKING_CANCELLATION_GRACE_HOURS
    booking_no_show_grace_hours: int = BOOKING_NO_SHOW_GRACE_HOURS
    ledger_horizon_days: int = LEDGER_HORIZON_DAYS
    inbound_poll_seconds: int = INBOUND_POLL_SECONDS

    @property
    def sync_worker_cap(self) -> int:
        """Workers per channel, never above the process-wide cap."""
        return max(1, min(self.sync_workers_per_channel, SYNC_MAX_WORKERS))
