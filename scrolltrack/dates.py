"""Local-date helpers for epoch-millisecond timestamps.

Every function takes an optional ``tz``; ``None`` means the machine's local
time zone, which is what the collectors use when stamping ``local_date_string``.
"""

from __future__ import annotations

import time
from datetime import date, datetime, timedelta, tzinfo

DAY_MS = 86_400_000
HOUR_MS = 3_600_000


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


def _to_datetime(timestamp_ms: int, tz: tzinfo | None) -> datetime:
    dt = datetime.fromtimestamp(timestamp_ms / 1000, tz=tz)
    if tz is None:
        dt = dt.astimezone()
    return dt


def _day_start(date_string: str, tz: tzinfo | None) -> datetime:
    day = date.fromisoformat(date_string)
    start = datetime(day.year, day.month, day.day, tzinfo=tz)
    if tz is None:
        start = start.astimezone()
    return start


def local_date_string(timestamp_ms: int, tz: tzinfo | None = None) -> str:
    """Format a timestamp as YYYY-MM-DD in the given (or local) zone."""
    return _to_datetime(timestamp_ms, tz).strftime("%Y-%m-%d")


def local_hour(timestamp_ms: int, tz: tzinfo | None = None) -> int:
    return _to_datetime(timestamp_ms, tz).hour


def start_of_day_ms(date_string: str, tz: tzinfo | None = None) -> int:
    """Epoch milliseconds of 00:00:00.000 on the given local date."""
    return int(_day_start(date_string, tz).timestamp() * 1000)


def end_of_day_ms(date_string: str, tz: tzinfo | None = None) -> int:
    """Epoch milliseconds of 23:59:59.999 on the given local date.

    Computed from the next day's start so DST days have their real length.
    """
    next_day = (date.fromisoformat(date_string) + timedelta(days=1)).isoformat()
    return start_of_day_ms(next_day, tz) - 1
