"""
Tests for recurrence arithmetic.

Tests cover:
1. add_months - day clamping, year rollover
2. next_due_at - every frequency, weekday sets, intervals
3. Wall-clock behavior in a named zone across DST
4. Strictly-later and time-of-day preservation properties

Run with: pytest tests/test_recurrence.py -v
"""

from datetime import datetime, timedelta, timezone

import pytest

from astra.reminders.recurrence import add_months, next_due_at
from astra.reminders.reminder_types import Recurrence, parse_weekdays


UTC = timezone.utc


def at(year, month, day, hour=9, minute=0):
    return datetime(year, month, day, hour, minute, tzinfo=UTC)


# =============================================================================
# MONTHS
# =============================================================================

class TestAddMonths:
    def test_clamps_to_february_non_leap(self):
        assert add_months(at(2026, 1, 31), 1) == at(2026, 2, 28)

    def test_clamps_to_february_leap(self):
        assert add_months(at(2024, 1, 31), 1) == at(2024, 2, 29)

    def test_rolls_over_year(self):
        assert add_months(at(2025, 11, 15), 3) == at(2026, 2, 15)


# =============================================================================
# FREQUENCIES
# =============================================================================

class TestNextDueAt:
    def test_hourly(self):
        assert next_due_at(at(2026, 1, 5, 23, 30), Recurrence("hourly")) == at(2026, 1, 6, 0, 30)

    def test_daily_with_interval(self):
        assert next_due_at(at(2026, 1, 5), Recurrence("daily", interval=3)) == at(2026, 1, 8)

    def test_weekly_without_days(self):
        assert next_due_at(at(2026, 1, 5), Recurrence("weekly")) == at(2026, 1, 12)

    def test_weekly_monday_to_wednesday(self):
        """Mon 09:00 with {Mon, Wed, Fri} moves to Wed 09:00 of the same week."""
        recurrence = Recurrence("weekly", weekdays=parse_weekdays(["Mon", "Wed", "Fri"]))
        assert next_due_at(at(2026, 1, 5), recurrence) == at(2026, 1, 7)

    def test_weekly_friday_to_next_monday(self):
        recurrence = Recurrence("weekly", weekdays=[0, 2, 4])
        assert next_due_at(at(2026, 1, 9), recurrence) == at(2026, 1, 12)

    def test_weekly_days_with_interval_skips_weeks(self):
        recurrence = Recurrence("weekly", interval=2, weekdays=[0, 4])
        assert next_due_at(at(2026, 1, 9), recurrence) == at(2026, 1, 19)

    def test_monthly_jan_31_to_feb_28(self):
        assert next_due_at(at(2026, 1, 31), Recurrence("monthly")) == at(2026, 2, 28)

    def test_monthly_jan_31_to_feb_29_in_leap_year(self):
        assert next_due_at(at(2024, 1, 31), Recurrence("monthly")) == at(2024, 2, 29)

    def test_yearly_from_leap_day(self):
        assert next_due_at(at(2024, 2, 29), Recurrence("yearly")) == at(2025, 2, 28)

    def test_unknown_frequency_raises(self):
        with pytest.raises(ValueError):
            next_due_at(at(2026, 1, 5), Recurrence("fortnightly"))


# =============================================================================
# TIME ZONES
# =============================================================================

class TestWallClock:
    def test_daily_keeps_local_time_across_offset_change(self):
        """Daily arithmetic runs on the zone's wall clock."""
        zoneinfo = pytest.importorskip("zoneinfo")
        try:
            chicago = zoneinfo.ZoneInfo("America/Chicago")
        except zoneinfo.ZoneInfoNotFoundError:
            pytest.skip("time zone database not available")

        before_dst = datetime(2026, 3, 7, 9, 0, tzinfo=chicago)
        result = next_due_at(before_dst.astimezone(UTC), Recurrence("daily"), chicago)

        assert result.hour == 9
        assert result.date() == before_dst.date() + timedelta(days=1)
        assert result.astimezone(UTC) - before_dst.astimezone(UTC) == timedelta(hours=23)

    def test_result_expressed_in_given_zone(self):
        plus_two = timezone(timedelta(hours=2))
        result = next_due_at(at(2026, 1, 5, 22), Recurrence("daily"), plus_two)
        assert result.utcoffset() == timedelta(hours=2)
        assert (result.day, result.hour) == (7, 0)


# =============================================================================
# PROPERTIES
# =============================================================================

class TestProperties:
    @pytest.mark.parametrize("recurrence", [
        Recurrence("hourly"),
        Recurrence("daily", interval=2),
        Recurrence("weekly"),
        Recurrence("weekly", weekdays=[1, 3, 6]),
        Recurrence("monthly"),
        Recurrence("yearly"),
    ])
    def test_strictly_later_and_keeps_time(self, recurrence):
        current = at(2026, 1, 1, 9, 15)
        for _ in range(30):
            following = next_due_at(current, recurrence)
            assert following > current
            if recurrence.frequency != "hourly":
                assert (following.hour, following.minute) == (9, 15)
            current = following

    def test_weekday_parsing_and_description(self):
        recurrence = Recurrence("weekly", weekdays=parse_weekdays(["friday", "Mon", "xyz", "mon"]))
        assert recurrence.weekdays == [0, 4]
        assert recurrence.describe() == "weekly on Mon, Fri"
        assert Recurrence("monthly", interval=2).describe() == "every 2 months"
        assert Recurrence("daily", interval=0).interval == 1
