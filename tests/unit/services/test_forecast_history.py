"""
Unit tests for forecast generation from ledger history.
"""

from __future__ import annotations

from datetime import date, datetime, timedelta, timezone

import pytest

from channel_core.schemas.availability import LedgerRow, Restrictions
from channel_core.schemas.pricing import Forecast
from channel_core.services.forecasting import DemandForecaster, generate_forecast, history_dates

TODAY = date(2025, 3, 10)
NOW = datetime(2025, 3, 10, 8, 0, tzinfo=timezone.utc)


def ledger_row(day: date, sold: int, total: int = 10) -> LedgerRow:
    """History row with the given occupancy."""
    return LedgerRow(
        id=f"row-{day.isoformat()}",
        hotel_id="hotel-1",
        room_type_id="deluxe",
        date=day,
        total_rooms=total,
        sold_rooms=sold,
        blocked_rooms=0,
        base_rate=1000,
        selling_rate=1000,
        currency="INR",
        restrictions=Restrictions(),
        dirty=False,
        version=1,
        revision=1,
    )


@pytest.mark.unit
def test_history_dates_share_weekday_and_precede_today() -> None:
    """History walks back week by week from the latest matching weekday before today."""
    assert history_dates(date(2025, 3, 20), TODAY, weeks=2) == [date(2025, 3, 6), date(2025, 2, 27)]


@pytest.mark.unit
def test_history_dates_for_todays_weekday_skip_today() -> None:
    """A stay on today's weekday starts from a week ago, not today."""
    assert history_dates(date(2025, 3, 17), TODAY, weeks=1) == [date(2025, 3, 3)]


@pytest.mark.unit
def test_generate_forecast_averages_history() -> None:
    """Predicted occupancy is the mean of the matching weekdays; confidence grows with samples."""
    history = {
        date(2025, 3, 6): ledger_row(date(2025, 3, 6), sold=8),
        date(2025, 2, 27): ledger_row(date(2025, 2, 27), sold=6),
        # Different weekday, ignored
        date(2025, 3, 5): ledger_row(date(2025, 3, 5), sold=1),
    }

    forecast = generate_forecast("hotel-1", "deluxe", date(2025, 3, 20), history, TODAY, NOW)

    assert forecast is not None
    assert forecast.predicted_occupancy == 70.0
    assert forecast.confidence == 50.0
    assert forecast.updated_at == NOW


@pytest.mark.unit
def test_generate_forecast_without_history_returns_none() -> None:
    """No matching history means no forecast."""
    assert generate_forecast("hotel-1", "deluxe", date(2025, 3, 20), {}, TODAY, NOW) is None


@pytest.mark.unit
def test_forecast_staleness_window() -> None:
    """Forecasts older than the staleness window are regenerated."""
    forecaster = DemandForecaster(engine=None)
    fresh = Forecast(
        hotel_id="hotel-1",
        room_type_id="deluxe",
        stay_date=date(2025, 3, 20),
        predicted_occupancy=60,
        confidence=50,
        updated_at=NOW - timedelta(hours=5),
    )
    stale = fresh.model_copy(update={"updated_at": NOW - timedelta(hours=7)})

    assert forecaster.is_stale(fresh, NOW) is False
    assert forecaster.is_stale(stale, NOW) is True
