from __future__ import annotations

from datetime import date
from typing import Iterable, List, Optional, Sequence, Tuple, TypeVar, Union

from .errors import InvalidInputError, InvalidRangeError
from .models import DateRecord, RangeFilter, TimelineOptions
from .recurrence import is_recurring

RecordT = TypeVar("RecordT", bound=DateRecord)


def validate_options(options: TimelineOptions) -> None:
    """Reject options that can never produce a meaningful query."""
    if options.start_date and options.end_date and options.start_date > options.end_date:
        raise InvalidRangeError(
            "start_date must be on or before end_date",
            details={
                "start_date": options.start_date.isoformat(),
                "end_date": options.end_date.isoformat(),
            },
        )
    if options.limit is not None and options.limit < 1:
        raise InvalidInputError("limit must be a positive integer", details={"limit": options.limit})


def _as_key(value: Optional[date]) -> Optional[Tuple[int, int, int]]:
    if value is None:
        return None
    return value.year, value.month, value.day


def filter_records(
    records: Iterable[RecordT],
    options: Union[TimelineOptions, RangeFilter],
) -> List[RecordT]:
    """Keep records inside the options' bounds, preserving input order.

    Bounds compare against the literal stored date, so an unknown-year record
    (stored in year 0001) only matches ranges reaching back to year 1.
    ``limit`` is not applied here; see ``apply_limit``.
    """
    start_key = _as_key(options.start_date)
    end_key = _as_key(options.end_date)

    kept: List[RecordT] = []
    for record in records:
        if not options.include_unknown_years and is_recurring(record):
            continue
        key = record.calendar_key
        if start_key and key < start_key:
            continue
        if end_key and key > end_key:
            continue
        kept.append(record)
    return kept


def apply_limit(records: Sequence[RecordT], limit: Optional[int]) -> List[RecordT]:
    if limit is None:
        return list(records)
    return list(records[:limit])


__all__ = ["apply_limit", "filter_records", "validate_options"]
