"""
Period Generator

Turns a goal's cadence into concrete evaluation windows.

Weeks run Monday 00:00:00 through Sunday 23:59:59 (Monday is day 1, so a
Sunday belongs to the week that started the previous Monday). A period
covers every instant from its start up to, not including, the next
period's start, so sub-second timestamps late on the last day still fall
inside it. Everything here is pure: the same (goal, reference) always
yields the same periods.
"""

import calendar
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from typing import List, Optional, Union

from rundown.models import utc_now


DAY_END = time(23, 59, 59)


@dataclass(frozen=True)
class Period:
    """Evaluation window (naive UTC). `end` is the last whole second, for display."""
    start: datetime
    end: datetime

    def contains(self, moment: datetime) -> bool:
        return self.start <= moment < self.next_start

    @property
    def next_start(self) -> datetime:
        """First instant after this period."""
        return datetime.combine(self.end.date() + timedelta(days=1), time.min)

    def to_dict(self) -> dict:
        return {"start": self.start.isoformat(), "end": self.end.isoformat()}


def _as_datetime(reference: Union[date, datetime, None]) -> datetime:
    if reference is None:
        return utc_now()
    if isinstance(reference, datetime):
        return reference
    return datetime.combine(reference, time.min)


def week_start(day: Union[date, datetime]) -> date:
    """Monday of the week containing `day` (Sunday maps back six days)."""
    if isinstance(day, datetime):
        day = day.date()
    return day - timedelta(days=day.weekday())


def week_period(reference: Union[date, datetime]) -> Period:
    monday = week_start(reference)
    sunday = monday + timedelta(days=6)
    return Period(datetime.combine(monday, time.min), datetime.combine(sunday, DAY_END))


def month_period(reference: Union[date, datetime]) -> Period:
    last_day = calendar.monthrange(reference.year, reference.month)[1]
    first = date(reference.year, reference.month, 1)
    last = date(reference.year, reference.month, last_day)
    return Period(datetime.combine(first, time.min), datetime.combine(last, DAY_END))


def day_period(reference: Union[date, datetime]) -> Period:
    day = reference.date() if isinstance(reference, datetime) else reference
    return Period(datetime.combine(day, time.min), datetime.combine(day, DAY_END))


def generate_periods(goal, reference: Union[date, datetime, None] = None) -> List[Period]:
    """
    Concrete period(s) to evaluate for `goal` at `reference` (default: now).

    Custom cadence returns the goal's explicit [start_date, end_date]
    unclamped, or nothing when either date is missing.
    """
    ref = _as_datetime(reference)
    cadence = goal.cadence or "weekly"

    if cadence == "weekly":
        return [week_period(ref)]
    if cadence == "monthly":
        return [month_period(ref)]
    if cadence == "daily":
        return [day_period(ref)]
    if cadence == "custom":
        if goal.start_date and goal.end_date:
            return [Period(
                datetime.combine(goal.start_date, time.min),
                datetime.combine(goal.end_date, DAY_END),
            )]
        return []
    raise ValueError(f"Unknown goal cadence: {cadence}")


def current_period(goal, reference: Union[date, datetime, None] = None) -> Optional[Period]:
    periods = generate_periods(goal, reference)
    return periods[0] if periods else None


def previous_period(goal, reference: Union[date, datetime, None] = None) -> Optional[Period]:
    """The period immediately before the one containing `reference`."""
    period = current_period(goal, reference)
    if period is None or goal.cadence == "custom":
        return None
    return current_period(goal, period.start - timedelta(seconds=1))
