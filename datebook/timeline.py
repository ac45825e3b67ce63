"""Timeline assembly and the service operations built on the record store."""

from __future__ import annotations

import asyncio
import calendar
import logging
from datetime import date
from typing import Any, Callable, Iterable, List, Mapping, Optional, Sequence, TypeVar, Union

from .errors import (
    InvalidInputError,
    NotFoundError,
    ServiceResponse,
    UnauthorizedError,
    create_error_response,
    handle_service_operation,
)
from .identity import ANONYMOUS, IdentityProvider
from .models import (
    DateCreate,
    DateRecord,
    DateUpdate,
    Fact,
    FactCreate,
    FactUpdate,
    Person,
    PersonCreate,
    PersonDetail,
    PersonSummary,
    PersonUpdate,
    RangeFilter,
    SoftDeletable,
    TimelineEntry,
    TimelineOptions,
    UpcomingDate,
)
from .record_store import RecordStore
from .recurrence import comparison_instant
from .timeline_filter import apply_limit, filter_records, validate_options
from .upcoming import order_upcoming, validate_days_ahead

logger = logging.getLogger("datebook.service")

OptionsInput = Union[TimelineOptions, Mapping[str, Any], None]
RowT = TypeVar("RowT", bound=SoftDeletable)


def active_only(rows: Iterable[RowT]) -> List[RowT]:
    """Drop rows whose lifecycle is not ACTIVE, whatever the store returned."""
    return [row for row in rows if row.is_active]


def to_timeline_entry(record: DateRecord, person: Optional[Person]) -> TimelineEntry:
    summary = (
        PersonSummary(id=person.id, name=person.name)
        if person is not None
        else PersonSummary(id=record.person_id, name="")
    )
    return TimelineEntry(**record.model_dump(), person=summary)


def sort_by_comparison_instant(records: Iterable[DateRecord], reference_year: int) -> List[DateRecord]:
    # list.sort is stable: equal instants keep their fetch order.
    return sorted(records, key=lambda record: comparison_instant(record, reference_year))


def build_timeline(
    persons: Sequence[Person],
    records: Iterable[DateRecord],
    options: Optional[TimelineOptions] = None,
    reference_year: Optional[int] = None,
) -> List[TimelineEntry]:
    """Filter, enrich and order date records into timeline entries.

    Recurring records are projected onto ``reference_year`` for ordering
    only; their stored date is returned untouched. Entries with the same
    comparison instant keep the order of ``records``, so repeated calls are
    deterministic only if the fetch feeding them is. ``limit`` is applied
    after sorting.
    """
    options = options or TimelineOptions()
    if reference_year is None:
        reference_year = date.today().year

    person_by_id = {person.id: person for person in persons}
    entries = [
        to_timeline_entry(record, person_by_id.get(record.person_id))
        for record in filter_records(records, options)
    ]
    ordered = sort_by_comparison_instant(entries, reference_year)
    return apply_limit(ordered, options.limit)


def month_options(year: Any, month: Any) -> TimelineOptions:
    if isinstance(year, bool) or not isinstance(year, int) or not (1 <= year <= 9999):
        raise InvalidInputError("year must be between 1 and 9999", details={"year": year})
    if isinstance(month, bool) or not isinstance(month, int) or not (1 <= month <= 12):
        raise InvalidInputError("month must be between 1 and 12", details={"month": month})
    last_day = calendar.monthrange(year, month)[1]
    return TimelineOptions(
        start_date=date(year, month, 1),
        end_date=date(year, month, last_day),
        include_unknown_years=True,
    )


def _coerce_options(options: OptionsInput) -> TimelineOptions:
    if options is None:
        return TimelineOptions()
    if isinstance(options, TimelineOptions):
        return options
    return TimelineOptions.model_validate(dict(options))


class TimelineService:
    """Read paths over a record store plus the CRUD the HTTP API needs.

    Every public coroutine returns a ``ServiceResponse``; nothing raises.
    ``clock`` supplies "today" so recurrence math can be pinned in tests.
    """

    def __init__(
        self,
        store: RecordStore,
        identity: IdentityProvider = ANONYMOUS,
        clock: Callable[[], date] = date.today,
    ):
        self._store = store
        self._identity = identity
        self._clock = clock

    # -------------------------------
    # Timeline
    # -------------------------------
    async def get_timeline_for_user(
        self, user_id: str, options: OptionsInput = None
    ) -> ServiceResponse[List[TimelineEntry]]:
        async def operation() -> List[TimelineEntry]:
            resolved = _coerce_options(options)
            validate_options(resolved)
            if not user_id:
                raise InvalidInputError("user_id is required")

            persons = active_only(await self._store.list_active_persons(user_id))
            if not persons:
                return []

            person_ids = [person.id for person in persons]
            records = await self._store.list_active_dates(person_ids, RangeFilter.from_options(resolved))
            # The person fetch decides visibility, whatever the date fetch returned.
            allowed = set(person_ids)
            visible = [record for record in active_only(records) if record.person_id in allowed]

            entries = build_timeline(persons, visible, resolved, reference_year=self._clock().year)
            logger.debug("Timeline for user %s: %d entries", user_id, len(entries))
            return entries

        return await handle_service_operation(operation, "get_timeline_for_user")

    async def get_timeline_for_month(
        self, user_id: str, year: int, month: int
    ) -> ServiceResponse[List[TimelineEntry]]:
        try:
            options = month_options(year, month)
        except InvalidInputError as exc:
            return create_error_response(exc.to_service_error())
        return await self.get_timeline_for_user(user_id, options)

    # -------------------------------
    # Upcoming
    # -------------------------------
    async def upcoming(self, user_id: str, days_ahead: int = 30) -> ServiceResponse[List[UpcomingDate]]:
        async def operation() -> List[UpcomingDate]:
            validate_days_ahead(days_ahead)
            if not user_id:
                raise InvalidInputError("user_id is required")
            today = self._clock()
            persons, entries = await asyncio.gather(
                self._store.list_active_persons(user_id),
                self._store.compute_upcoming(user_id, days_ahead, today),
            )
            allowed = {person.id for person in active_only(persons)}
            return order_upcoming(
                [entry for entry in entries if entry.person_id in allowed], days_ahead, today
            )

        return await handle_service_operation(operation, "upcoming")

    async def get_upcoming_dates(self, days_ahead: int = 30) -> ServiceResponse[List[UpcomingDate]]:
        try:
            validate_days_ahead(days_ahead)
            user_id = self._require_user()
        except (InvalidInputError, UnauthorizedError) as exc:
            return create_error_response(exc.to_service_error())
        return await self.upcoming(user_id, days_ahead)

    # -------------------------------
    # Person detail
    # -------------------------------
    async def get_dates_by_person(self, person_id: str) -> ServiceResponse[List[DateRecord]]:
        async def operation() -> List[DateRecord]:
            await self._owned_person(person_id)
            records = await self._store.list_active_dates([person_id])
            return sort_by_comparison_instant(active_only(records), self._clock().year)

        return await handle_service_operation(operation, "get_dates_by_person")

    async def get_person_detail(self, person_id: str) -> ServiceResponse[PersonDetail]:
        async def operation() -> PersonDetail:
            person = await self._owned_person(person_id)
            facts, records = await asyncio.gather(
                self._store.list_active_facts(person_id),
                self._store.list_active_dates([person_id]),
            )
            return PersonDetail(
                person=person,
                facts=active_only(facts),
                dates=sort_by_comparison_instant(active_only(records), self._clock().year),
            )

        return await handle_service_operation(operation, "get_person_detail")

    # -------------------------------
    # CRUD pass-through
    # -------------------------------
    async def list_people(self) -> ServiceResponse[List[Person]]:
        async def operation() -> List[Person]:
            user_id = self._require_user()
            return active_only(await self._store.list_active_persons(user_id))

        return await handle_service_operation(operation, "list_people")

    async def create_person(self, payload: Union[PersonCreate, Mapping[str, Any]]) -> ServiceResponse[Person]:
        async def operation() -> Person:
            validated = PersonCreate.model_validate(payload)
            user_id = self._require_user()
            return await self._store.insert_person(user_id, validated)

        return await handle_service_operation(operation, "create_person")

    async def create_fact(
        self, person_id: str, payload: Union[FactCreate, Mapping[str, Any]]
    ) -> ServiceResponse[Fact]:
        async def operation() -> Fact:
            validated = FactCreate.model_validate(payload)
            await self._owned_person(person_id)
            return await self._store.insert_fact(person_id, validated)

        return await handle_service_operation(operation, "create_fact")

    async def create_date(
        self, person_id: str, payload: Union[DateCreate, Mapping[str, Any]]
    ) -> ServiceResponse[DateRecord]:
        async def operation() -> DateRecord:
            validated = DateCreate.model_validate(payload)
            await self._owned_person(person_id)
            return await self._store.insert_date(person_id, validated)

        return await handle_service_operation(operation, "create_date")

    async def update_person(
        self, person_id: str, payload: Union[PersonUpdate, Mapping[str, Any]]
    ) -> ServiceResponse[Person]:
        async def operation() -> Person:
            validated = PersonUpdate.model_validate(payload)
            await self._owned_person(person_id)
            return await self._store.update_row("persons", person_id, validated.changes())

        return await handle_service_operation(operation, "update_person")

    async def update_date(
        self, date_id: str, payload: Union[DateUpdate, Mapping[str, Any]]
    ) -> ServiceResponse[DateRecord]:
        async def operation() -> DateRecord:
            validated = DateUpdate.model_validate(payload)
            await self._owned_date(date_id)
            return await self._store.update_row("dates", date_id, validated.changes())

        return await handle_service_operation(operation, "update_date")

    async def update_fact(
        self, fact_id: str, payload: Union[FactUpdate, Mapping[str, Any]]
    ) -> ServiceResponse[Fact]:
        async def operation() -> Fact:
            validated = FactUpdate.model_validate(payload)
            await self._owned_fact(fact_id)
            return await self._store.update_row("facts", fact_id, validated.changes())

        return await handle_service_operation(operation, "update_fact")

    async def delete_person(self, person_id: str) -> ServiceResponse[Person]:
        async def operation() -> Person:
            await self._owned_person(person_id)
            return await self._store.soft_delete("persons", person_id)

        return await handle_service_operation(operation, "delete_person")

    async def delete_date(self, date_id: str) -> ServiceResponse[DateRecord]:
        async def operation() -> DateRecord:
            await self._owned_date(date_id)
            return await self._store.soft_delete("dates", date_id)

        return await handle_service_operation(operation, "delete_date")

    async def delete_fact(self, fact_id: str) -> ServiceResponse[Fact]:
        async def operation() -> Fact:
            await self._owned_fact(fact_id)
            return await self._store.soft_delete("facts", fact_id)

        return await handle_service_operation(operation, "delete_fact")

    # -------------------------------
    # Private helpers
    # -------------------------------
    def _require_user(self) -> str:
        user_id = self._identity.current_user_id()
        if not user_id:
            raise UnauthorizedError("No signed-in user")
        return user_id

    async def _owned_person(self, person_id: str) -> Person:
        """The caller's active person, or NotFound (also for other users' people)."""
        user_id = self._require_user()
        person = await self._store.get_active_person(person_id)
        if person is None or not person.is_active or person.user_id != user_id:
            raise NotFoundError("Person not found", details={"person_id": person_id})
        return person

    async def _owned_date(self, date_id: str) -> DateRecord:
        record = await self._store.get_active_date(date_id)
        if record is None or not record.is_active:
            raise NotFoundError("Date not found", details={"date_id": date_id})
        await self._owned_person(record.person_id)
        return record

    async def _owned_fact(self, fact_id: str) -> Fact:
        fact = await self._store.get_active_fact(fact_id)
        if fact is None or not fact.is_active:
            raise NotFoundError("Fact not found", details={"fact_id": fact_id})
        await self._owned_person(fact.person_id)
        return fact


__all__ = ["TimelineService", "active_only", "build_timeline", "month_options", "to_timeline_entry"]
