"""UTC datetime and stay-date utilities."""

from datetime import date, datetime, time, timedelta, timezone
from typing import Iterator, Optional


def utc_now() -> datetime:
    """
    Return current UTC time as timezone-aware datetime.

    This function should be used instead of datetime.now() or datetime.utcnow()
    to ensure all timestamps are timezone-aware and stored in UTC.

    Returns:
        Timezone-aware datetime in UTC
    """
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """
    Normalize a datetime to aware UTC. Naive values are assumed to be UTC.

    Args:
        value: Datetime to normalize, or None

    Returns:
        Aware UTC datetime, or None if value was None
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def start_of_day(day: date) -> datetime:
    """Midnight UTC of the given calendar date."""
    return datetime.combine(day, time.min, tzinfo=timezone.utc)


def stay_dates(check_in: date, check_out: date) -> Iterator[date]:
    """
    Iterate the nights of a stay: the half-open range [check_in, check_out).

    Example:
        >>> list(stay_dates(date(2025, 3, 10), date(2025, 3, 12)))
        [datetime.date(2025, 3, 10), datetime.date(2025, 3, 11)]
    """
    day = check_in
    while day < check_out:
        yield day
        day += timedelta(days=1)


def parse_iso_datetime(value: Optional[str]) -> Optional[datetime]:
    """Parse an ISO-8601 timestamp (``Z`` suffix allowed) into aware UTC."""
    if not value:
        return None
    return ensure_utc(datetime.fromisoformat(value.replace("Z", "+00:00")))
