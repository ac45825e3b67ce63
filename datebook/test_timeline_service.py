from __future__ import annotations

import asyncio
from datetime import date
from typing import List, Optional

import pytest

from .errors import ErrorCode, RecordStoreError
from .identity import StaticIdentity
from .models import DateCreate, DateRecord, Person, PersonCreate, TimelineOptions, UpcomingDate
from .record_store import SQLiteRecordStore
from .recurrence import comparison_instant
from .timeline import TimelineService, build_timeline

TODAY = date(2024, 6, 1)


class FakeStore:
    """In-memory stand-in that returns canned rows and records every call."""

    def __init__(
        self,
        persons: Optional[List[Person]] = None,
        dates: Optional[List[DateRecord]] = None,
        upcoming: Optional[List[UpcomingDate]] = None,
        error: Optional[Exception] = None,
    ):
        self.persons = persons or []
        self.dates = dates or []
        self.upcoming = upcoming or []
        self.error = error
        self.calls: List[str] = []

    async def list_active_persons(self, user_id):
        self.calls.append("list_active_persons")
        if self.error:
            raise self.error
        return [person for person in self.persons if person.user_id == user_id]

    async def list_active_dates(self, person_ids, range_filter=None):
        self.calls.append("list_active_dates")
        if self.error:
            raise self.error
        return list(self.dates)

    async def compute_upcoming(self, user_id, days_ahead, today):
        self.calls.append("compute_upcoming")
        if self.error:
            raise self.error
        return list(self.upcoming)

    async def get_active_person(self, person_id):
        self.calls.append("get_active_person")
        return next((person for person in self.persons if person.id == person_id), None)

    async def get_active_date(self, date_id):
        self.calls.append("get_active_date")
        return next((record for record in self.dates if record.id == date_id), None)

    async def list_active_facts(self, person_id):
        self.calls.append("list_active_facts")
        return []


def _service(store, user_id: Optional[str] = "user-1") -> TimelineService:
    return TimelineService(store, identity=StaticIdentity(user_id), clock=lambda: TODAY)


def _person(person_id: str, name: str, user_id: str = "user-1", deleted_at=None) -> Person:
    return Person(id=person_id, user_id=user_id, name=name, deleted_at=deleted_at)


def _record(record_id: str, person_id: str, value: str, label: str = "Event", deleted_at=None) -> DateRecord:
    return DateRecord(id=record_id, person_id=person_id, label=label, date=value, deleted_at=deleted_at)


@pytest.fixture
def store(tmp_path) -> SQLiteRecordStore:
    return SQLiteRecordStore(tmp_path / "datebook.db")


def _seed_person(store: SQLiteRecordStore, name: str, user_id: str = "user-1") -> Person:
    return asyncio.run(store.insert_person(user_id, PersonCreate(name=name)))


def _seed_date(store: SQLiteRecordStore, person: Person, label: str, value: str) -> DateRecord:
    return asyncio.run(store.insert_date(person.id, DateCreate(label=label, date=value)))


def test_user_without_people_gets_empty_success(store: SQLiteRecordStore):
    result = asyncio.run(_service(store).get_timeline_for_user("user-1"))
    assert result.data == []
    assert result.error is None


def test_dates_of_soft_deleted_person_are_excluded(store: SQLiteRecordStore):
    pat = _seed_person(store, "Pat")
    _seed_date(store, pat, "Birthday", "1990-05-10")
    kept_person = _seed_person(store, "Robin")
    kept = _seed_date(store, kept_person, "Birthday", "1985-01-20")
    asyncio.run(store.soft_delete("persons", pat.id))

    result = asyncio.run(_service(store).get_timeline_for_user("user-1"))
    assert result.error is None
    assert [entry.id for entry in result.data] == [kept.id]
    assert result.data[0].person.name == "Robin"


def test_recurring_dates_interleave_with_fixed_dates(store: SQLiteRecordStore):
    alice = _seed_person(store, "Alice")
    bob = _seed_person(store, "Bob")
    _seed_date(store, alice, "Christmas", "0001-12-25")
    _seed_date(store, bob, "New job", "2024-01-01")
    _seed_date(store, alice, "Birthday", "1990-05-10")
    _seed_date(store, bob, "Name day", "0001-03-15")

    result = asyncio.run(_service(store).get_timeline_for_user("user-1"))
    entries = result.data
    assert [entry.label for entry in entries] == ["Birthday", "New job", "Name day", "Christmas"]
    assert [entry.person.name for entry in entries] == ["Alice", "Bob", "Bob", "Alice"]
    # stored dates are returned untouched
    assert entries[2].date == "0001-03-15"
    assert entries[2].year_known is False

    instants = [comparison_instant(entry, TODAY.year) for entry in entries]
    assert instants == sorted(instants)


def test_excluding_unknown_years(store: SQLiteRecordStore):
    person = _seed_person(store, "Casey")
    _seed_date(store, person, "Recurring", "0001-04-01")
    fixed = _seed_date(store, person, "Fixed", "2020-04-01")

    service = _service(store)
    everything = asyncio.run(service.get_timeline_for_user("user-1", {"include_unknown_years": True})).data
    known = asyncio.run(service.get_timeline_for_user("user-1", {"include_unknown_years": False})).data

    assert [entry.id for entry in known] == [fixed.id]
    assert {entry.id for entry in known} <= {entry.id for entry in everything}
    assert len(everything) == 2


def test_limit_applies_after_sorting(store: SQLiteRecordStore):
    person = _seed_person(store, "Drew")
    _seed_date(store, person, "Latest", "2022-01-01")
    _seed_date(store, person, "Middle", "2010-01-01")
    _seed_date(store, person, "Earliest", "2000-01-01")

    result = asyncio.run(_service(store).get_timeline_for_user("user-1", TimelineOptions(limit=2)))
    assert [entry.label for entry in result.data] == ["Earliest", "Middle"]


def test_month_view_matches_explicit_range(store: SQLiteRecordStore):
    person = _seed_person(store, "Eve")
    _seed_date(store, person, "End of January", "2024-01-31")
    _seed_date(store, person, "Leap day", "2024-02-29")
    _seed_date(store, person, "Start of February", "2024-02-01")
    _seed_date(store, person, "March", "2024-03-01")
    _seed_date(store, person, "Recurring", "0001-02-14")

    service = _service(store)
    month = asyncio.run(service.get_timeline_for_month("user-1", 2024, 2))
    explicit = asyncio.run(
        service.get_timeline_for_user(
            "user-1",
            {"start_date": "2024-02-01", "end_date": "2024-02-29", "include_unknown_years": True},
        )
    )
    assert month.error is None
    assert [entry.label for entry in month.data] == ["Start of February", "Leap day"]
    assert [entry.model_dump() for entry in month.data] == [entry.model_dump() for entry in explicit.data]


@pytest.mark.parametrize("year, month", [(2024, 0), (2024, 13), (0, 5), (2024, True)])
def test_month_view_rejects_invalid_month(year, month):
    fake = FakeStore()
    result = asyncio.run(_service(fake).get_timeline_for_month("user-1", year, month))
    assert result.error.code is ErrorCode.INVALID_INPUT
    assert fake.calls == []


def test_inverted_range_fails_before_any_io():
    fake = FakeStore(persons=[_person("p1", "Alice")])
    result = asyncio.run(
        _service(fake).get_timeline_for_user(
            "user-1", TimelineOptions(start_date=date(2024, 3, 1), end_date=date(2024, 2, 1))
        )
    )
    assert result.data is None
    assert result.error.code is ErrorCode.INVALID_RANGE
    assert fake.calls == []


def test_malformed_options_are_validation_errors():
    fake = FakeStore()
    result = asyncio.run(_service(fake).get_timeline_for_user("user-1", {"start_date": "yesterday"}))
    assert result.error.code is ErrorCode.VALIDATION_ERROR
    assert fake.calls == []


def test_store_failures_are_mapped():
    fake = FakeStore(error=RecordStoreError("connection refused", code="08006"))
    result = asyncio.run(_service(fake).get_timeline_for_user("user-1"))
    assert result.data is None
    assert result.error.code is ErrorCode.UPSTREAM_FAILURE
    assert result.error.details["reason"] == "connection"
    assert fake.calls == ["list_active_persons"]


def test_unexpected_failures_are_mapped():
    fake = FakeStore(error=KeyError("person_id"))
    result = asyncio.run(_service(fake).get_timeline_for_user("user-1"))
    assert result.error.code is ErrorCode.UNEXPECTED_ERROR


def test_equal_instants_keep_fetch_order():
    fake = FakeStore(
        persons=[_person("p1", "Alice"), _person("p2", "Bob")],
        dates=[
            _record("d1", "p2", "2024-01-01", "first"),
            _record("d2", "p1", "0001-01-01", "second"),
            _record("d3", "p1", "2024-01-01", "third"),
            _record("d0", "p1", "2023-12-31", "earlier"),
        ],
    )
    service = _service(fake)
    first = asyncio.run(service.get_timeline_for_user("user-1")).data
    again = asyncio.run(service.get_timeline_for_user("user-1")).data
    assert [entry.label for entry in first] == ["earlier", "first", "second", "third"]
    assert [entry.id for entry in again] == [entry.id for entry in first]


def test_person_fetch_decides_visibility():
    fake = FakeStore(
        persons=[_person("p1", "Alice")],
        dates=[
            _record("d1", "p1", "2020-01-01"),
            _record("d2", "p-deleted", "2019-01-01"),
        ],
    )
    result = asyncio.run(_service(fake).get_timeline_for_user("user-1"))
    assert [entry.id for entry in result.data] == ["d1"]


def test_build_timeline_falls_back_to_empty_name():
    entries = build_timeline([], [_record("d1", "p-missing", "2020-01-01")], reference_year=2024)
    assert entries[0].person.id == "p-missing"
    assert entries[0].person.name == ""


def test_upcoming_horizon_boundary(store: SQLiteRecordStore):
    person = _seed_person(store, "Fran")
    _seed_date(store, person, "In", "1990-07-01")
    _seed_date(store, person, "Out", "1985-07-02")

    result = asyncio.run(_service(store).get_upcoming_dates(30))
    assert result.error is None
    assert [entry.label for entry in result.data] == ["In"]
    assert result.data[0].next_occurrence == date(2024, 7, 1)


def test_upcoming_default_horizon_is_thirty_days(store: SQLiteRecordStore):
    person = _seed_person(store, "Gale")
    _seed_date(store, person, "Within", "0001-06-30")
    _seed_date(store, person, "Beyond", "0001-08-01")

    result = asyncio.run(_service(store).get_upcoming_dates())
    assert [entry.label for entry in result.data] == ["Within"]


def test_upcoming_rejects_negative_horizon_before_io():
    fake = FakeStore()
    result = asyncio.run(_service(fake).upcoming("user-1", -5))
    assert result.error.code is ErrorCode.INVALID_INPUT
    assert fake.calls == []

    result = asyncio.run(_service(fake).get_upcoming_dates(0))
    assert result.error.code is ErrorCode.INVALID_INPUT
    assert fake.calls == []


def test_upcoming_requires_signed_in_user():
    fake = FakeStore()
    result = asyncio.run(_service(fake, user_id=None).get_upcoming_dates(30))
    assert result.error.code is ErrorCode.UNAUTHORIZED
    assert fake.calls == []


def test_nothing_upcoming_is_success():
    fake = FakeStore()
    result = asyncio.run(_service(fake).get_upcoming_dates(30))
    assert result.data == []
    assert result.error is None


def test_person_detail_joins_facts_and_dates(store: SQLiteRecordStore):
    person = _seed_person(store, "Harper")
    _seed_date(store, person, "Later", "2020-01-01")
    _seed_date(store, person, "Earlier", "2000-01-01")
    service = _service(store)
    asyncio.run(service.create_fact(person.id, {"label": "Allergy", "value": "Peanuts"}))

    result = asyncio.run(service.get_person_detail(person.id))
    assert result.error is None
    detail = result.data
    assert detail.person.name == "Harper"
    assert [fact.label for fact in detail.facts] == ["Allergy"]
    assert [record.label for record in detail.dates] == ["Earlier", "Later"]


def test_dates_by_person_not_found_when_deleted_or_foreign(store: SQLiteRecordStore):
    mine = _seed_person(store, "Ira")
    theirs = _seed_person(store, "Jules", user_id="user-2")
    service = _service(store)

    assert asyncio.run(service.get_dates_by_person(theirs.id)).error.code is ErrorCode.NOT_FOUND
    assert asyncio.run(service.get_person_detail(theirs.id)).error.code is ErrorCode.NOT_FOUND

    asyncio.run(service.delete_person(mine.id))
    assert asyncio.run(service.get_dates_by_person(mine.id)).error.code is ErrorCode.NOT_FOUND


def test_create_date_validates_before_writing(store: SQLiteRecordStore):
    person = _seed_person(store, "Kai")
    service = _service(store)

    too_long = asyncio.run(service.create_date(person.id, {"label": "x" * 101, "date": "2020-01-01"}))
    assert too_long.error.code is ErrorCode.VALIDATION_ERROR

    bad_date = asyncio.run(service.create_date(person.id, {"label": "Birthday", "date": "2021-02-29"}))
    assert bad_date.error.code is ErrorCode.VALIDATION_ERROR

    assert asyncio.run(service.get_dates_by_person(person.id)).data == []


def test_deleted_date_leaves_the_timeline(store: SQLiteRecordStore):
    person = _seed_person(store, "Lee")
    service = _service(store)
    created = asyncio.run(service.create_date(person.id, {"label": "Birthday", "date": "0001-09-09"})).data
    assert created.year_known is False

    assert len(asyncio.run(service.get_timeline_for_user("user-1")).data) == 1
    deleted = asyncio.run(service.delete_date(created.id))
    assert deleted.error is None
    assert asyncio.run(service.get_timeline_for_user("user-1")).data == []

    again = asyncio.run(service.delete_date(created.id))
    assert again.error.code is ErrorCode.NOT_FOUND


def test_crud_requires_signed_in_user(store: SQLiteRecordStore):
    result = asyncio.run(_service(store, user_id=None).create_person({"name": "Morgan"}))
    assert result.error.code is ErrorCode.UNAUTHORIZED


DELETED_AT = "2024-01-01T00:00:00+00:00"


def test_store_returning_a_deleted_person_hides_their_dates():
    fake = FakeStore(
        persons=[_person("p1", "Alice", deleted_at=DELETED_AT)],
        dates=[_record("d", "p1", "2020-01-01")],
    )
    result = asyncio.run(_service(fake).get_timeline_for_user("user-1"))
    assert result.error is None
    assert result.data == []
    assert fake.calls == ["list_active_persons"]


def test_store_returning_a_deleted_date_drops_it():
    fake = FakeStore(
        persons=[_person("p1", "Alice")],
        dates=[
            _record("kept", "p1", "2020-01-01"),
            _record("gone", "p1", "2021-01-01", deleted_at=DELETED_AT),
        ],
    )
    result = asyncio.run(_service(fake).get_timeline_for_user("user-1"))
    assert [entry.id for entry in result.data] == ["kept"]

    by_person = asyncio.run(_service(fake).get_dates_by_person("p1"))
    assert [record.id for record in by_person.data] == ["kept"]


def test_deleted_person_from_store_is_not_found():
    fake = FakeStore(
        persons=[_person("p1", "Alice", deleted_at=DELETED_AT)],
        dates=[_record("d", "p1", "2020-01-01")],
    )
    service = _service(fake)
    assert asyncio.run(service.get_dates_by_person("p1")).error.code is ErrorCode.NOT_FOUND
    assert asyncio.run(service.get_person_detail("p1")).error.code is ErrorCode.NOT_FOUND
    assert asyncio.run(service.delete_date("d")).error.code is ErrorCode.NOT_FOUND
    assert asyncio.run(service.list_people()).data == []


def test_upcoming_skips_entries_of_deleted_people():
    fake = FakeStore(
        persons=[_person("p1", "Alice"), _person("p2", "Bob", deleted_at=DELETED_AT)],
        upcoming=[
            UpcomingDate(
                date_id="d2",
                person_id="p2",
                label="Hidden",
                event_date="0001-06-02",
                next_occurrence=date(2024, 6, 2),
            ),
            UpcomingDate(
                date_id="d1",
                person_id="p1",
                label="Shown",
                event_date="1990-06-03",
                next_occurrence=date(2024, 6, 3),
            ),
        ],
    )
    result = asyncio.run(_service(fake).get_upcoming_dates(30))
    assert result.error is None
    assert [entry.date_id for entry in result.data] == ["d1"]


@pytest.mark.parametrize("days_ahead", [3_000_000, 10**12])
def test_very_wide_upcoming_horizon_succeeds(store: SQLiteRecordStore, days_ahead):
    person = _seed_person(store, "Nico")
    _seed_date(store, person, "Birthday", "1990-05-31")

    result = asyncio.run(_service(store).upcoming("user-1", days_ahead))
    assert result.error is None
    assert [entry.next_occurrence for entry in result.data] == [date(2025, 5, 31)]


def test_list_people_is_scoped_to_the_signed_in_user(store: SQLiteRecordStore):
    mine = _seed_person(store, "Oak")
    _seed_person(store, "Pine", user_id="user-2")
    gone = _seed_person(store, "Elm")
    asyncio.run(store.soft_delete("persons", gone.id))

    result = asyncio.run(_service(store).list_people())
    assert [person.id for person in result.data] == [mine.id]
    assert asyncio.run(_service(store, user_id=None).list_people()).error.code is ErrorCode.UNAUTHORIZED


def test_update_date_fixes_a_mistyped_date(store: SQLiteRecordStore):
    person = _seed_person(store, "Quinn")
    record = _seed_date(store, person, "Birthday", "1909-04-12")
    service = _service(store)

    result = asyncio.run(service.update_date(record.id, {"date": "1990-04-12"}))
    assert result.error is None
    assert result.data.date == "1990-04-12"
    assert result.data.label == "Birthday"
    assert result.data.updated_at >= record.updated_at

    timeline = asyncio.run(service.get_timeline_for_user("user-1")).data
    assert [entry.date for entry in timeline] == ["1990-04-12"]


def test_update_date_can_clear_the_year(store: SQLiteRecordStore):
    person = _seed_person(store, "Rae")
    record = _seed_date(store, person, "Name day", "2020-03-15")
    result = asyncio.run(_service(store).update_date(record.id, {"date": "0001-03-15", "label": "  Name day "}))
    assert result.data.year_known is False
    assert result.data.label == "Name day"


@pytest.mark.parametrize(
    "payload",
    [{}, {"label": None}, {"label": "   "}, {"date": "2021-02-29"}, {"label": "x" * 101}],
)
def test_update_date_rejects_invalid_payloads(store: SQLiteRecordStore, payload):
    person = _seed_person(store, "Sol")
    record = _seed_date(store, person, "Birthday", "1990-01-01")

    result = asyncio.run(_service(store).update_date(record.id, payload))
    assert result.error.code is ErrorCode.VALIDATION_ERROR
    unchanged = asyncio.run(store.get_active_date(record.id))
    assert (unchanged.label, unchanged.date) == ("Birthday", "1990-01-01")


def test_updates_of_other_users_rows_are_not_found(store: SQLiteRecordStore):
    theirs = _seed_person(store, "Tao", user_id="user-2")
    record = _seed_date(store, theirs, "Birthday", "1990-01-01")
    service = _service(store)

    assert asyncio.run(service.update_person(theirs.id, {"name": "Mine now"})).error.code is ErrorCode.NOT_FOUND
    assert asyncio.run(service.update_date(record.id, {"label": "Mine now"})).error.code is ErrorCode.NOT_FOUND
    assert asyncio.run(store.get_active_person(theirs.id)).name == "Tao"


def test_update_person_and_fact(store: SQLiteRecordStore):
    person = _seed_person(store, "Uma")
    service = _service(store)
    fact = asyncio.run(service.create_fact(person.id, {"label": "Drink", "value": "Tea"})).data

    renamed = asyncio.run(service.update_person(person.id, {"name": " Uma K. ", "photo_url": "https://example.com/u.png"}))
    assert renamed.error is None
    assert renamed.data.name == "Uma K."
    assert renamed.data.photo_url == "https://example.com/u.png"

    edited = asyncio.run(service.update_fact(fact.id, {"value": "Coffee"}))
    assert edited.error is None
    assert (edited.data.label, edited.data.value) == ("Drink", "Coffee")

    asyncio.run(service.delete_fact(fact.id))
    assert asyncio.run(service.update_fact(fact.id, {"value": "Water"})).error.code is ErrorCode.NOT_FOUND
