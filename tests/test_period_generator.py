"""Period generation: weekly (Monday-first), monthly, daily and custom windows."""

from datetime import date, datetime
from types import SimpleNamespace

import pytest

from rundown.services.period_generator import (
    Period,
    current_period,
    generate_periods,
    previous_period,
    week_start,
)


def goal(cadence="weekly", start_date=None, end_date=None):
    return SimpleNamespace(cadence=cadence, start_date=start_date, end_date=end_date)


class TestWeeklyPeriods:

    def test_wednesday_maps_to_monday_through_sunday(self):
        periods = generate_periods(goal(), datetime(2024, 6, 5, 14, 30))
        assert periods == [Period(datetime(2024, 6, 3, 0, 0, 0), datetime(2024, 6, 9, 23, 59, 59))]

    def test_sunday_belongs_to_week_that_started_previous_monday(self):
        period = current_period(goal(), datetime(2024, 6, 9, 22, 0))
        assert period.start == datetime(2024, 6, 3, 0, 0, 0)
        assert period.end == datetime(2024, 6, 9, 23, 59, 59)

    def test_monday_midnight_starts_new_week(self):
        period = current_period(goal(), datetime(2024, 6, 10, 0, 0, 0))
        assert period.start == datetime(2024, 6, 10)

    def test_boundaries_are_inclusive(self):
        period = current_period(goal(), date(2024, 6, 5))
        assert period.contains(datetime(2024, 6, 3, 0, 0, 0))
        assert period.contains(datetime(2024, 6, 9, 23, 59, 59))
        assert not period.contains(datetime(2024, 6, 10, 0, 0, 0))

    def test_week_start_helper(self):
        assert week_start(date(2024, 6, 9)) == date(2024, 6, 3)
        assert week_start(date(2024, 6, 3)) == date(2024, 6, 3)

    def test_next_start_is_following_monday(self):
        period = current_period(goal(), date(2024, 6, 5))
        assert period.next_start == datetime(2024, 6, 10)

    def test_previous_period(self):
        period = previous_period(goal(), date(2024, 6, 5))
        assert period.start == datetime(2024, 5, 27)
        assert period.end == datetime(2024, 6, 2, 23, 59, 59)


class TestOtherCadences:

    def test_monthly_uses_calendar_month(self):
        period = current_period(goal("monthly"), date(2024, 2, 14))
        assert period.start == datetime(2024, 2, 1)
        assert period.end == datetime(2024, 2, 29, 23, 59, 59)

    def test_daily_is_single_day(self):
        period = current_period(goal("daily"), datetime(2024, 6, 5, 18, 0))
        assert period.start == datetime(2024, 6, 5)
        assert period.end == datetime(2024, 6, 5, 23, 59, 59)

    def test_custom_is_explicit_range_unclamped(self):
        g = goal("custom", date(2024, 1, 1), date(2024, 12, 31))
        assert generate_periods(g, date(2030, 1, 1)) == [
            Period(datetime(2024, 1, 1), datetime(2024, 12, 31, 23, 59, 59))
        ]

    def test_custom_without_dates_has_no_period(self):
        assert generate_periods(goal("custom")) == []

    def test_unknown_cadence_raises(self):
        with pytest.raises(ValueError):
            generate_periods(goal("fortnightly"), date(2024, 6, 5))

    def test_pure_for_same_inputs(self):
        g = goal("monthly")
        ref = datetime(2024, 6, 5, 9, 0)
        assert generate_periods(g, ref) == generate_periods(g, ref)


def test_sub_second_instant_at_end_of_week_is_inside_the_week():
    period = current_period(goal(), date(2024, 6, 5))
    assert period.contains(datetime(2024, 6, 9, 23, 59, 59, 999999))
