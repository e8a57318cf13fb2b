"""Tests for local-date helpers."""

from datetime import timedelta, timezone

from scrolltrack.dates import (
    DAY_MS,
    end_of_day_ms,
    local_date_string,
    local_hour,
    start_of_day_ms,
)

UTC = timezone.utc
PLUS_TWO = timezone(timedelta(hours=2))

# 2025-01-25T00:00:00Z
JAN_25_UTC = 1_737_763_200_000


class TestDayBounds:
    def test_start_of_day_utc(self):
        assert start_of_day_ms("2025-01-25", UTC) == JAN_25_UTC

    def test_end_of_day_is_last_millisecond(self):
        assert end_of_day_ms("2025-01-25", UTC) == JAN_25_UTC + DAY_MS - 1

    def test_end_of_day_crosses_month(self):
        assert end_of_day_ms("2025-02-28", UTC) + 1 == start_of_day_ms("2025-03-01", UTC)

    def test_offset_zone_shifts_start(self):
        assert start_of_day_ms("2025-01-25", PLUS_TWO) == JAN_25_UTC - 2 * 3_600_000


class TestLocalFields:
    def test_date_string_depends_on_zone(self):
        late_evening_utc = JAN_25_UTC - 1
        assert local_date_string(late_evening_utc, UTC) == "2025-01-24"
        assert local_date_string(late_evening_utc, PLUS_TWO) == "2025-01-25"

    def test_local_hour(self):
        assert local_hour(JAN_25_UTC + 9 * 3_600_000, UTC) == 9
        assert local_hour(JAN_25_UTC + 9 * 3_600_000, PLUS_TWO) == 11
