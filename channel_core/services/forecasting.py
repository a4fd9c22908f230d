"""
Demand forecasts for the pricing controller.

A forecast predicts the occupancy percent of one room type on one stay date.
Stored forecasts younger than the staleness window are reused; otherwise one is
generated from the ledger: the occupancy of the same weekday over the four
weeks before today.
"""

from datetime import date, datetime, timedelta
from typing import Optional

import structlog
from sqlalchemy.engine import Connection, Engine

from channel_core.config import Settings
from channel_core.db.readers.availability import get_rows
from channel_core.db.readers.pricing import get_forecast
from channel_core.db.writers.pricing import upsert_forecast
from channel_core.schemas.availability import LedgerRow
from channel_core.schemas.pricing import Forecast
from channel_core.utils.datetime import ensure_utc, utc_now

logger = structlog.get_logger(__name__)

HISTORY_WEEKS = 4

# Confidence of a generated forecast by number of history samples found
BASE_CONFIDENCE = 10.0
CONFIDENCE_PER_SAMPLE = 20.0


def history_dates(day: date, today: date, weeks: int = HISTORY_WEEKS) -> list[date]:
    """
    Past dates sharing ``day``'s weekday, most recent first, all before today.

    Example:
        >>> history_dates(date(2025, 3, 20), date(2025, 3, 10), weeks=2)
        [datetime.date(2025, 3, 6), datetime.date(2025, 2, 27)]
    """
    offset = (today.weekday() - day.weekday()) % 7 or 7
    latest = today - timedelta(days=offset)
    return [latest - timedelta(weeks=i) for i in range(weeks)]


def generate_forecast(
    hotel_id: str,
    room_type_id: str,
    day: date,
    history: dict[date, LedgerRow],
    today: date,
    now: datetime,
) -> Optional[Forecast]:
    """
    Build a forecast from the ledger history.

    Args:
        history (dict[date, LedgerRow]): Ledger rows by date, covering at
            least the four weeks before today

    Returns:
        Forecast | None: None when no history row exists for the weekday
    """
    samples = [history[d].occupancy_pct for d in history_dates(day, today) if d in history]
    if not samples:
        return None

    return Forecast(
        hotel_id=hotel_id,
        room_type_id=room_type_id,
        stay_date=day,
        predicted_occupancy=round(min(100.0, sum(samples) / len(samples)), 2),
        confidence=min(100.0, BASE_CONFIDENCE + CONFIDENCE_PER_SAMPLE * len(samples)),
        updated_at=now,
    )


class DemandForecaster:
    """
    Serves fresh demand forecasts, generating and storing stale or missing ones.
    """

    def __init__(self, engine: Engine, settings: Settings = Settings()):
        self.engine = engine
        self.settings = settings

    def is_stale(self, forecast: Forecast, now: datetime) -> bool:
        age = now - ensure_utc(forecast.updated_at)
        return age > timedelta(hours=self.settings.pricing_forecast_stale_hours)

    def forecasts_for(
        self,
        hotel_id: str,
        room_type_id: str,
        days: list[date],
        now: Optional[datetime] = None,
    ) -> dict[date, Forecast]:
        """
        Forecasts for the given stay dates. Dates with neither a fresh stored
        forecast nor any history are absent from the result.

        Args:
            hotel_id (str): Hotel ID
            room_type_id (str): Room type ID
            days (list[date]): Stay dates

        Returns:
            dict[date, Forecast]: Forecast per stay date
        """
        now = now or utc_now()
        today = now.date()
        result: dict[date, Forecast] = {}
        generated = 0

        with self.engine.begin() as conn:
            history: Optional[dict[date, LedgerRow]] = None
            for day in days:
                stored = get_forecast(conn, hotel_id, room_type_id, day)
                if stored is not None and not self.is_stale(stored, now):
                    result[day] = stored
                    continue

                if history is None:
                    history = self._history(conn, hotel_id, room_type_id, today)
                forecast = generate_forecast(hotel_id, room_type_id, day, history, today, now)
                if forecast is None:
                    continue
                upsert_forecast(conn, forecast)
                result[day] = forecast
                generated += 1

        if generated:
            logger.info(
                "forecasts_generated",
                hotel_id=hotel_id,
                room_type_id=room_type_id,
                generated=generated,
            )
        return result

    @staticmethod
    def _history(conn: Connection, hotel_id: str, room_type_id: str, today: date) -> dict[date, LedgerRow]:
        start = today - timedelta(weeks=HISTORY_WEEKS)
        return {row.date: row for row in get_rows(conn, hotel_id, room_type_id, start, today)}
