from __future__ import annotations

import calendar
from datetime import date
from typing import Optional

from .models import DateRecord

FEBRUARY = 2
LEAP_DAY = 29


def is_recurring(record: DateRecord) -> bool:
    """Unknown-year records repeat every year on their month/day."""
    return not record.year_known


def project_month_day(year: int, month: int, day: int) -> date:
    """Place ``month``/``day`` in ``year``.

    Feb 29 in a non-leap year becomes Feb 28.
    """
    if month == FEBRUARY and day == LEAP_DAY and not calendar.isleap(year):
        return date(year, FEBRUARY, LEAP_DAY - 1)
    return date(year, month, day)


def comparison_instant(record: DateRecord, reference_year: Optional[int] = None) -> date:
    """Point on the timeline used to order ``record``.

    Known-year records sort on their own date. Recurring records are placed
    in ``reference_year`` (the current year unless given), whether or not
    that occurrence has already passed.
    """
    if not is_recurring(record):
        year, month, day = record.calendar_key
        return date(year, month, day)

    if reference_year is None:
        reference_year = date.today().year
    return project_month_day(reference_year, record.month, record.day)


def next_occurrence(month: int, day: int, today: date) -> date:
    """Smallest date on or after ``today`` falling on ``month``/``day``."""
    candidate = project_month_day(today.year, month, day)
    if candidate < today:
        candidate = project_month_day(today.year + 1, month, day)
    return candidate


__all__ = ["comparison_instant", "is_recurring", "next_occurrence", "project_month_day"]
