from __future__ import annotations

from datetime import date

import pytest

from .errors import InvalidInputError
from .models import DateRecord, UpcomingDate
from .upcoming import horizon_end, order_upcoming, resolve_upcoming, validate_days_ahead

TODAY = date(2024, 6, 1)


def _record(record_id: str, date_value: str, label: str = "Birthday") -> DateRecord:
    return DateRecord(id=record_id, person_id="p1", label=label, date=date_value)


def test_horizon_edge_is_inclusive():
    # June has 30 days: July 1 is exactly 30 days out, July 2 is 31.
    records = [_record("in", "1990-07-01"), _record("out", "1985-07-02")]
    upcoming = resolve_upcoming(records, 30, TODAY)
    assert [entry.date_id for entry in upcoming] == ["in"]
    assert upcoming[0].next_occurrence == date(2024, 7, 1)

    wider = resolve_upcoming(records, 31, TODAY)
    assert [entry.date_id for entry in wider] == ["in", "out"]


def test_today_is_included_and_passed_dates_roll_over():
    records = [
        _record("today", "0001-06-01"),
        _record("yesterday", "1970-05-31"),
    ]
    upcoming = resolve_upcoming(records, 365, TODAY)
    assert [entry.date_id for entry in upcoming] == ["today", "yesterday"]
    assert upcoming[1].next_occurrence == date(2025, 5, 31)


def test_known_years_are_treated_as_anniversaries():
    upcoming = resolve_upcoming([_record("future", "2030-06-10", "Launch")], 30, TODAY)
    assert len(upcoming) == 1
    entry = upcoming[0]
    assert entry.event_date == "2030-06-10"
    assert entry.next_occurrence == date(2024, 6, 10)


def test_ties_break_on_label():
    records = [
        _record("b", "1990-06-05", "Zoe's birthday"),
        _record("a", "0001-06-05", "Anniversary"),
        _record("c", "1991-06-03", "Name day"),
    ]
    upcoming = resolve_upcoming(records, 30, TODAY)
    assert [entry.label for entry in upcoming] == ["Name day", "Anniversary", "Zoe's birthday"]


def test_output_shape():
    entry = resolve_upcoming([_record("d1", "1990-06-02")], 7, TODAY)[0]
    assert entry == UpcomingDate(
        date_id="d1",
        person_id="p1",
        label="Birthday",
        event_date="1990-06-02",
        next_occurrence=date(2024, 6, 2),
    )


def test_order_upcoming_reapplies_horizon_to_precomputed_entries():
    entries = [
        UpcomingDate(
            date_id="late",
            person_id="p1",
            label="Late",
            event_date="0001-12-01",
            next_occurrence=date(2024, 12, 1),
        ),
        UpcomingDate(
            date_id="soon",
            person_id="p1",
            label="Soon",
            event_date="0001-06-03",
            next_occurrence=date(2024, 6, 3),
        ),
    ]
    assert [entry.date_id for entry in order_upcoming(entries, 30, TODAY)] == ["soon"]


@pytest.mark.parametrize("days_ahead", [-5, 0, True, 1.5, "30", None])
def test_invalid_days_ahead(days_ahead):
    with pytest.raises(InvalidInputError):
        validate_days_ahead(days_ahead)
    with pytest.raises(InvalidInputError):
        resolve_upcoming([], days_ahead, TODAY)


def test_valid_days_ahead():
    assert validate_days_ahead(1) == 1
    assert validate_days_ahead(30) == 30


@pytest.mark.parametrize("days_ahead", [3_000_000, 10**12])
def test_very_wide_horizon_covers_everything(days_ahead):
    records = [_record("late", "1990-05-31"), _record("soon", "0001-06-02")]
    upcoming = resolve_upcoming(records, days_ahead, TODAY)
    assert [entry.date_id for entry in upcoming] == ["soon", "late"]
    assert horizon_end(TODAY, days_ahead) == date.max


def test_horizon_end_is_exact_below_the_cap():
    assert horizon_end(TODAY, 30) == date(2024, 7, 1)
    assert horizon_end(date.max, 1) == date.max
