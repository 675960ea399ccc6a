"""Tests for reelqueue.scheduling.timezone."""

from datetime import date, datetime, timezone

import pytest

from reelqueue.exceptions import ValidationError
from reelqueue.scheduling.timezone import (
    day_of_week,
    local_date_of,
    local_time_to_utc,
    parse_time_of_day,
    validate_timezone,
)


class TestParseTimeOfDay:

    @pytest.mark.parametrize(
        "value,expected",
        [("09:00", (9, 0)), ("23:59", (23, 59)), ("00:00", (0, 0)), ("18:30:00", (18, 30))],
    )
    def test_valid(self, value, expected):
        assert parse_time_of_day(value) == expected

    @pytest.mark.parametrize("value", ["", "9:00", "24:00", "12:60", "noon", "12-00", None])
    def test_invalid(self, value):
        with pytest.raises(ValidationError):
            parse_time_of_day(value)


class TestValidateTimezone:

    def test_known_zone(self):
        assert str(validate_timezone("Europe/Berlin")) == "Europe/Berlin"

    @pytest.mark.parametrize("name", ["", "Mars/Olympus_Mons", "not a zone"])
    def test_unknown_zone(self, name):
        with pytest.raises(ValidationError):
            validate_timezone(name)


class TestDayOfWeek:

    @pytest.mark.parametrize(
        "day,expected",
        [
            (date(2025, 1, 12), 0),  # Sunday
            (date(2025, 1, 13), 1),  # Monday
            (date(2025, 1, 18), 6),  # Saturday
        ],
    )
    def test_sunday_is_zero(self, day, expected):
        assert day_of_week(day) == expected


class TestLocalTimeToUtc:

    def test_new_york_winter(self):
        result = local_time_to_utc(date(2025, 1, 13), "09:00", "America/New_York")
        assert result == datetime(2025, 1, 13, 14, 0, tzinfo=timezone.utc)

    def test_new_york_summer(self):
        result = local_time_to_utc(date(2025, 7, 14), "09:00", "America/New_York")
        assert result == datetime(2025, 7, 14, 13, 0, tzinfo=timezone.utc)

    def test_positive_offset_zone(self):
        result = local_time_to_utc(date(2025, 1, 13), "09:00", "Asia/Tokyo")
        assert result == datetime(2025, 1, 13, 0, 0, tzinfo=timezone.utc)

    def test_utc_zone_is_identity(self):
        result = local_time_to_utc(date(2025, 3, 1), "18:45", "UTC")
        assert result == datetime(2025, 3, 1, 18, 45, tzinfo=timezone.utc)

    @pytest.mark.parametrize(
        "day,time_of_day,tz_name,expected",
        [
            # Fall back: 03:00 on the changeover day is already EST
            (date(2024, 11, 3), "03:00", "America/New_York", datetime(2024, 11, 3, 8, 0)),
            (date(2024, 11, 3), "09:00", "America/New_York", datetime(2024, 11, 3, 14, 0)),
            # Spring forward: 01:30 is still CET in Berlin
            (date(2024, 3, 31), "01:30", "Europe/Berlin", datetime(2024, 3, 31, 0, 30)),
            (date(2024, 3, 31), "09:00", "Europe/Berlin", datetime(2024, 3, 31, 7, 0)),
            (date(2024, 3, 10), "03:00", "America/New_York", datetime(2024, 3, 10, 7, 0)),
            (date(2024, 3, 10), "09:00", "America/New_York", datetime(2024, 3, 10, 13, 0)),
        ],
    )
    def test_transition_days(self, day, time_of_day, tz_name, expected):
        result = local_time_to_utc(day, time_of_day, tz_name)
        assert result == expected.replace(tzinfo=timezone.utc)

    def test_ambiguous_time_resolves_to_first_occurrence(self):
        # 01:30 happens twice in New York on 2024-11-03; EDT comes first
        result = local_time_to_utc(date(2024, 11, 3), "01:30", "America/New_York")
        assert result == datetime(2024, 11, 3, 5, 30, tzinfo=timezone.utc)

    def test_ambiguous_time_east_of_utc(self):
        # 02:30 happens twice in Berlin on 2024-10-27; CEST comes first
        result = local_time_to_utc(date(2024, 10, 27), "02:30", "Europe/Berlin")
        assert result == datetime(2024, 10, 27, 0, 30, tzinfo=timezone.utc)

    def test_skipped_time_moves_forward(self):
        # 02:30 does not exist in New York on 2024-03-10; it reads as 03:30 EDT
        result = local_time_to_utc(date(2024, 3, 10), "02:30", "America/New_York")
        assert result == datetime(2024, 3, 10, 7, 30, tzinfo=timezone.utc)

    def test_result_is_aware_utc(self):
        result = local_time_to_utc(date(2025, 1, 13), "09:00", "Europe/London")
        assert result.tzinfo is not None
        assert result.utcoffset().total_seconds() == 0


class TestLocalDateOf:

    def test_late_utc_evening_is_previous_day_west_of_utc(self):
        instant = datetime(2025, 1, 13, 3, 0, tzinfo=timezone.utc)
        assert local_date_of(instant, "America/New_York") == date(2025, 1, 12)

    def test_same_day_in_utc(self):
        instant = datetime(2025, 1, 13, 3, 0, tzinfo=timezone.utc)
        assert local_date_of(instant, "UTC") == date(2025, 1, 13)
