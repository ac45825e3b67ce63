from __future__ import annotations

from datetime import date, timedelta
from typing import Any, Iterable, List

from .errors import InvalidInputError
from .models import DateRecord, UpcomingDate
from .recurrence import next_occurrence


def validate_days_ahead(days_ahead: Any) -> int:
    # bool is an int subclass; True is not a horizon
    if isinstance(days_ahead, bool) or not isinstance(days_ahead, int) or days_ahead < 1:
        raise InvalidInputError(
            "days_ahead must be a positive integer",
            details={"days_ahead": days_ahead},
        )
    return days_ahead


def horizon_end(today: date, days_ahead: int) -> date:
    """Last day inside the window, capped at ``date.max``."""
    if days_ahead >= (date.max - today).days:
        return date.max
    return today + timedelta(days=days_ahead)


def order_upcoming(entries: Iterable[UpcomingDate], days_ahead: int, today: date) -> List[UpcomingDate]:
    """Drop entries past the horizon and sort soonest first, then by label."""
    horizon = horizon_end(today, days_ahead)
    kept = [entry for entry in entries if today <= entry.next_occurrence <= horizon]
    kept.sort(key=lambda entry: (entry.next_occurrence, entry.label))
    return kept


def resolve_upcoming(records: Iterable[DateRecord], days_ahead: int, today: date) -> List[UpcomingDate]:
    """Next annual occurrence of every record within ``days_ahead`` days.

    Every record is treated as an anniversary, known year or not: a birthday
    in 1990 and a recurring "0001" birthday resolve the same way.
    """
    validate_days_ahead(days_ahead)
    projected = [
        UpcomingDate(
            date_id=record.id,
            person_id=record.person_id,
            label=record.label,
            event_date=record.date,
            next_occurrence=next_occurrence(record.month, record.day, today),
        )
        for record in records
    ]
    return order_upcoming(projected, days_ahead, today)


__all__ = ["horizon_end", "order_upcoming", "resolve_upcoming", "validate_days_ahead"]
