"""
ClientDesk - Clock

Injectable source of "now" for date-dependent logic.
"""

from datetime import date, datetime, time, timezone
from typing import Optional, Union


class Clock:
    """Returns the current instant as an aware UTC datetime."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class FixedClock(Clock):
    """Clock frozen at a given instant (tests, replays)."""

    def __init__(self, instant: datetime):
        self._instant = as_utc_datetime(instant)

    def now(self) -> datetime:
        return self._instant


def as_utc_datetime(value: Union[date, datetime, None]) -> Optional[datetime]:
    """
    Normalize a date or datetime to an aware UTC datetime.

    Plain dates map to midnight UTC; naive datetimes are assumed to be UTC.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)
    return datetime.combine(value, time.min, tzinfo=timezone.utc)


system_clock = Clock()


def get_clock() -> Clock:
    """FastAPI dependency returning the process clock."""
    return system_clock
