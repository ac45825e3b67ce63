from __future__ import annotations

import re
from calendar import monthrange
from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, HttpUrl, field_validator, model_validator

UNKNOWN_YEAR_SENTINEL = 1
# Any leap year works here; it only decides whether Feb 29 is a valid day.
_LEAP_REFERENCE_YEAR = 2000

ISO_DATE_PATTERN = re.compile(r"(\d{4})-(\d{2})-(\d{2})")

LABEL_MAX_LENGTH = 100
NAME_MAX_LENGTH = 60
FACT_VALUE_MAX_LENGTH = 500


def split_iso_date(value: str) -> Tuple[int, int, int]:
    """Split a ``YYYY-MM-DD`` string into ``(year, month, day)``.

    The unknown-year sentinel ``0001`` is validated against a leap year so
    that recurring Feb 29 dates can be stored.
    """
    match = ISO_DATE_PATTERN.fullmatch(value.strip())
    if not match:
        raise ValueError("Date must be in YYYY-MM-DD format")

    year, month, day = (int(part) for part in match.groups())
    if year < 1:
        raise ValueError("Invalid date")
    if not (1 <= month <= 12):
        raise ValueError("Invalid date")
    calendar_year = _LEAP_REFERENCE_YEAR if year == UNKNOWN_YEAR_SENTINEL else year
    last_day = monthrange(calendar_year, month)[1]
    if not (1 <= day <= last_day):
        raise ValueError("Invalid date")
    return year, month, day


class Lifecycle(str, Enum):
    ACTIVE = "active"
    DELETED = "deleted"


class SoftDeletable(BaseModel):
    """Shared lifecycle fields of persisted rows."""

    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    deleted_at: Optional[datetime] = None

    @property
    def lifecycle(self) -> Lifecycle:
        return Lifecycle.ACTIVE if self.deleted_at is None else Lifecycle.DELETED

    @property
    def is_active(self) -> bool:
        return self.lifecycle is Lifecycle.ACTIVE


class Person(SoftDeletable):
    id: str
    user_id: str
    name: str
    photo_url: Optional[str] = None


class PersonSummary(BaseModel):
    """Minimal person projection embedded in timeline entries."""

    id: str
    name: str = ""


class Fact(SoftDeletable):
    id: str
    person_id: str
    label: str
    value: str


class DateRecord(SoftDeletable):
    """A calendar date recorded against a person.

    ``month``, ``day`` and ``year_known`` are always derived from ``date`` so
    that they can never disagree with the stored value.
    """

    id: str
    person_id: str
    label: str = Field(..., max_length=LABEL_MAX_LENGTH)
    date: str = Field(..., description="ISO date; year 0001 marks an unknown year")
    month: int = 0
    day: int = 0
    year_known: bool = True

    @model_validator(mode="before")
    @classmethod
    def _derive_calendar_fields(cls, values: Any) -> Any:
        if not isinstance(values, dict) or not values.get("date"):
            return values
        year, month, day = split_iso_date(str(values["date"]))
        return {
            **values,
            "month": month,
            "day": day,
            "year_known": year != UNKNOWN_YEAR_SENTINEL,
        }

    @property
    def calendar_key(self) -> Tuple[int, int, int]:
        """The literal stored date as a comparable tuple."""
        return split_iso_date(self.date)


class TimelineEntry(DateRecord):
    person: PersonSummary


class UpcomingDate(BaseModel):
    date_id: str
    person_id: str
    label: str
    event_date: str
    next_occurrence: date


class PersonDetail(BaseModel):
    person: Person
    facts: List[Fact] = Field(default_factory=list)
    dates: List[DateRecord] = Field(default_factory=list)


class TimelineOptions(BaseModel):
    """Caller supplied bounds for a timeline query."""

    model_config = ConfigDict(frozen=True)

    start_date: Optional[date] = Field(default=None, description="Inclusive lower bound")
    end_date: Optional[date] = Field(default=None, description="Inclusive upper bound")
    limit: Optional[int] = Field(default=None, description="Maximum number of entries returned")
    include_unknown_years: bool = Field(
        default=True,
        description="Whether recurring dates with an unknown year are included",
    )


class RangeFilter(BaseModel):
    """The part of TimelineOptions a record store may apply in its query."""

    model_config = ConfigDict(frozen=True)

    start_date: Optional[date] = None
    end_date: Optional[date] = None
    include_unknown_years: bool = True

    @classmethod
    def from_options(cls, options: TimelineOptions) -> "RangeFilter":
        return cls(
            start_date=options.start_date,
            end_date=options.end_date,
            include_unknown_years=options.include_unknown_years,
        )


def _clean_text(value: Optional[str], field_label: str, max_length: int) -> str:
    if value is None:
        raise ValueError(f"{field_label} cannot be null")
    cleaned = value.strip()
    if not cleaned:
        raise ValueError(f"{field_label} is required")
    if len(cleaned) > max_length:
        raise ValueError(f"{field_label} must be {max_length} characters or less")
    return cleaned


def _clean_date(value: Optional[str]) -> str:
    if value is None:
        raise ValueError("Date cannot be null")
    split_iso_date(value)
    return value.strip()


class PersonCreate(BaseModel):
    name: str
    photo_url: Optional[HttpUrl] = None

    @field_validator("name")
    @classmethod
    def _normalise_name(cls, value: str) -> str:
        return _clean_text(value, "Name", NAME_MAX_LENGTH)


class FactCreate(BaseModel):
    label: str
    value: str

    @field_validator("label")
    @classmethod
    def _normalise_label(cls, value: str) -> str:
        return _clean_text(value, "Label", LABEL_MAX_LENGTH)

    @field_validator("value")
    @classmethod
    def _normalise_value(cls, value: str) -> str:
        return _clean_text(value, "Value", FACT_VALUE_MAX_LENGTH)


class DateCreate(BaseModel):
    label: str
    date: str

    @field_validator("label")
    @classmethod
    def _normalise_label(cls, value: str) -> str:
        return _clean_text(value, "Label", LABEL_MAX_LENGTH)

    @field_validator("date")
    @classmethod
    def _validate_date(cls, value: str) -> str:
        return _clean_date(value)


class _PartialUpdate(BaseModel):
    """Base for PATCH payloads. Only the fields the caller sent are written,
    and an explicit ``null`` is rejected for required columns."""

    @model_validator(mode="after")
    def _require_a_field(self) -> "_PartialUpdate":
        if not self.model_fields_set:
            raise ValueError("At least one field must be provided")
        return self

    def changes(self) -> Dict[str, Any]:
        return self.model_dump(exclude_unset=True)


class PersonUpdate(_PartialUpdate):
    name: Optional[str] = None
    photo_url: Optional[HttpUrl] = None

    @field_validator("name")
    @classmethod
    def _normalise_name(cls, value: Optional[str]) -> str:
        return _clean_text(value, "Name", NAME_MAX_LENGTH)

    def changes(self) -> Dict[str, Any]:
        updates = super().changes()
        if updates.get("photo_url") is not None:
            updates["photo_url"] = str(updates["photo_url"])
        return updates


class FactUpdate(_PartialUpdate):
    label: Optional[str] = None
    value: Optional[str] = None

    @field_validator("label")
    @classmethod
    def _normalise_label(cls, value: Optional[str]) -> str:
        return _clean_text(value, "Label", LABEL_MAX_LENGTH)

    @field_validator("value")
    @classmethod
    def _normalise_value(cls, value: Optional[str]) -> str:
        return _clean_text(value, "Value", FACT_VALUE_MAX_LENGTH)


class DateUpdate(_PartialUpdate):
    label: Optional[str] = None
    date: Optional[str] = None

    @field_validator("label")
    @classmethod
    def _normalise_label(cls, value: Optional[str]) -> str:
        return _clean_text(value, "Label", LABEL_MAX_LENGTH)

    @field_validator("date")
    @classmethod
    def _validate_date(cls, value: Optional[str]) -> str:
        return _clean_date(value)


class TimelineResponse(BaseModel):
    items: List[TimelineEntry]
    total_entries: int
    generated_at: datetime


class UpcomingResponse(BaseModel):
    items: List[UpcomingDate]
    days_ahead: int
    total_entries: int
    generated_at: datetime


class ErrorBody(BaseModel):
    code: str
    message: str
    request_id: str
    details: Optional[Any] = None
