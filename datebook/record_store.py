from __future__ import annotations

import logging
import os
import sqlite3
from contextlib import contextmanager
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Protocol, Sequence, Union
from uuid import uuid4

from starlette.concurrency import run_in_threadpool

from .errors import RecordStoreError
from .models import (
    DateCreate,
    DateRecord,
    Fact,
    FactCreate,
    Person,
    PersonCreate,
    RangeFilter,
    UpcomingDate,
)
from .upcoming import resolve_upcoming

logger = logging.getLogger("datebook.store")

SoftDeletedRow = Union[Person, Fact, DateRecord]


class RecordStore(Protocol):
    """Persistence the service reads from. Failures raise ``RecordStoreError``."""

    async def list_active_persons(self, user_id: str) -> List[Person]: ...

    async def list_active_dates(
        self, person_ids: Sequence[str], range_filter: Optional[RangeFilter] = None
    ) -> List[DateRecord]: ...

    async def compute_upcoming(self, user_id: str, days_ahead: int, today: date) -> List[UpcomingDate]: ...

    async def get_active_person(self, person_id: str) -> Optional[Person]: ...

    async def get_active_date(self, date_id: str) -> Optional[DateRecord]: ...

    async def get_active_fact(self, fact_id: str) -> Optional[Fact]: ...

    async def list_active_facts(self, person_id: str) -> List[Fact]: ...

    async def insert_person(self, user_id: str, payload: PersonCreate) -> Person: ...

    async def insert_fact(self, person_id: str, payload: FactCreate) -> Fact: ...

    async def insert_date(self, person_id: str, payload: DateCreate) -> DateRecord: ...

    async def update_row(self, table: str, record_id: str, changes: Dict[str, Any]) -> SoftDeletedRow: ...

    async def soft_delete(self, table: str, record_id: str) -> SoftDeletedRow: ...


SCHEMA = """
CREATE TABLE IF NOT EXISTS persons (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    name TEXT NOT NULL CHECK (length(name) BETWEEN 1 AND 60),
    photo_url TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    deleted_at TEXT
);

CREATE TABLE IF NOT EXISTS facts (
    id TEXT PRIMARY KEY,
    person_id TEXT NOT NULL,
    label TEXT NOT NULL CHECK (length(label) BETWEEN 1 AND 100),
    value TEXT NOT NULL CHECK (length(value) BETWEEN 1 AND 500),
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    deleted_at TEXT,
    FOREIGN KEY(person_id) REFERENCES persons(id)
);

CREATE TABLE IF NOT EXISTS dates (
    id TEXT PRIMARY KEY,
    person_id TEXT NOT NULL,
    label TEXT NOT NULL CHECK (length(label) BETWEEN 1 AND 100),
    date TEXT NOT NULL,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    deleted_at TEXT,
    FOREIGN KEY(person_id) REFERENCES persons(id)
);

CREATE INDEX IF NOT EXISTS idx_persons_user ON persons(user_id);
CREATE INDEX IF NOT EXISTS idx_dates_person ON dates(person_id);
CREATE INDEX IF NOT EXISTS idx_facts_person ON facts(person_id);

CREATE VIEW IF NOT EXISTS v_persons AS
    SELECT * FROM persons WHERE deleted_at IS NULL;

CREATE VIEW IF NOT EXISTS v_dates AS
    SELECT d.* FROM dates d
    JOIN persons p ON p.id = d.person_id
    WHERE d.deleted_at IS NULL AND p.deleted_at IS NULL;

CREATE VIEW IF NOT EXISTS v_facts AS
    SELECT f.* FROM facts f
    JOIN persons p ON p.id = f.person_id
    WHERE f.deleted_at IS NULL AND p.deleted_at IS NULL;
"""

SOFT_DELETABLE_TABLES = {
    "persons": Person,
    "facts": Fact,
    "dates": DateRecord,
}

UPDATABLE_COLUMNS = {
    "persons": ("name", "photo_url"),
    "facts": ("label", "value"),
    "dates": ("label", "date"),
}

# Stays below SQLITE_MAX_VARIABLE_NUMBER on every SQLite build (999 before 3.32).
MAX_BOUND_PARAMETERS = 500

_INTEGRITY_CODES = (
    ("UNIQUE", "23505"),
    ("FOREIGN KEY", "23503"),
    ("CHECK", "23514"),
)

_OPERATIONAL_CODES = (
    ("no such table", "42P01"),
    ("readonly database", "42501"),
    ("unable to open database", "08006"),
)


def now_utc_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def translate_sqlite_error(exc: sqlite3.Error) -> RecordStoreError:
    message = str(exc)
    table = _INTEGRITY_CODES if isinstance(exc, sqlite3.IntegrityError) else _OPERATIONAL_CODES
    code = next((sqlstate for marker, sqlstate in table if marker in message), None)
    return RecordStoreError(message, code=code, details={"sqlite_error": type(exc).__name__})


class SQLiteRecordStore:
    """
    Record store backed by a local SQLite file.

    Reads go through the ``v_*`` views, which hide soft-deleted rows and
    every fact or date whose person is soft-deleted. Each call opens its own
    connection and runs in the threadpool.
    """

    def __init__(self, db_path: Optional[Union[str, Path]] = None):
        self._db_path = str(db_path or Path(__file__).parent.parent / "data" / "datebook.db")
        os.makedirs(os.path.dirname(os.path.abspath(self._db_path)), exist_ok=True)
        self.init_schema()

    @property
    def db_path(self) -> str:
        return self._db_path

    def init_schema(self) -> None:
        with self._connect() as conn:
            conn.executescript(SCHEMA)

    # -------------------------------
    # Reads
    # -------------------------------
    async def list_active_persons(self, user_id: str) -> List[Person]:
        return await run_in_threadpool(self._list_active_persons, user_id)

    async def list_active_dates(
        self, person_ids: Sequence[str], range_filter: Optional[RangeFilter] = None
    ) -> List[DateRecord]:
        return await run_in_threadpool(self._list_active_dates, list(person_ids), range_filter)

    async def compute_upcoming(self, user_id: str, days_ahead: int, today: date) -> List[UpcomingDate]:
        return await run_in_threadpool(self._compute_upcoming, user_id, days_ahead, today)

    async def get_active_person(self, person_id: str) -> Optional[Person]:
        return await run_in_threadpool(self._get_active_row, "v_persons", Person, person_id)

    async def get_active_date(self, date_id: str) -> Optional[DateRecord]:
        return await run_in_threadpool(self._get_active_row, "v_dates", DateRecord, date_id)

    async def get_active_fact(self, fact_id: str) -> Optional[Fact]:
        return await run_in_threadpool(self._get_active_row, "v_facts", Fact, fact_id)

    async def list_active_facts(self, person_id: str) -> List[Fact]:
        return await run_in_threadpool(self._list_active_facts, person_id)

    # -------------------------------
    # Writes
    # -------------------------------
    async def insert_person(self, user_id: str, payload: PersonCreate) -> Person:
        return await run_in_threadpool(self._insert_person, user_id, payload)

    async def insert_fact(self, person_id: str, payload: FactCreate) -> Fact:
        return await run_in_threadpool(self._insert_fact, person_id, payload)

    async def insert_date(self, person_id: str, payload: DateCreate) -> DateRecord:
        return await run_in_threadpool(self._insert_date, person_id, payload)

    async def update_row(self, table: str, record_id: str, changes: Dict[str, Any]) -> SoftDeletedRow:
        return await run_in_threadpool(self._update_row, table, record_id, dict(changes))

    async def soft_delete(self, table: str, record_id: str) -> SoftDeletedRow:
        return await run_in_threadpool(self._soft_delete, table, record_id)

    # -------------------------------
    # Private helpers
    # -------------------------------
    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        try:
            conn = sqlite3.connect(self._db_path)
        except sqlite3.Error as exc:
            raise translate_sqlite_error(exc) from exc
        try:
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA foreign_keys = ON;")
            yield conn
            conn.commit()
        except sqlite3.Error as exc:
            conn.rollback()
            logger.warning("SQLite call failed: %s", exc)
            raise translate_sqlite_error(exc) from exc
        finally:
            conn.close()

    def _list_active_persons(self, user_id: str) -> List[Person]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM v_persons WHERE user_id = ? ORDER BY created_at, id",
                (user_id,),
            ).fetchall()
        return [Person(**dict(row)) for row in rows]

    def _list_active_dates(self, person_ids: List[str], range_filter: Optional[RangeFilter]) -> List[DateRecord]:
        if not person_ids:
            return []
        range_clauses: List[str] = []
        range_params: List[str] = []
        if range_filter is not None:
            # Fixed-width ISO strings order the same way as the dates they hold.
            if range_filter.start_date:
                range_clauses.append("date >= ?")
                range_params.append(range_filter.start_date.isoformat())
            if range_filter.end_date:
                range_clauses.append("date <= ?")
                range_params.append(range_filter.end_date.isoformat())
            if not range_filter.include_unknown_years:
                range_clauses.append("substr(date, 1, 4) <> '0001'")

        rows: List[sqlite3.Row] = []
        with self._connect() as conn:
            for offset in range(0, len(person_ids), MAX_BOUND_PARAMETERS):
                chunk = person_ids[offset:offset + MAX_BOUND_PARAMETERS]
                placeholders = ", ".join("?" for _ in chunk)
                clauses = [f"person_id IN ({placeholders})", *range_clauses]
                query = f"SELECT * FROM v_dates WHERE {' AND '.join(clauses)}"
                rows.extend(conn.execute(query, [*chunk, *range_params]).fetchall())
        rows.sort(key=lambda row: (row["created_at"], row["id"]))
        return [DateRecord(**dict(row)) for row in rows]

    def _compute_upcoming(self, user_id: str, days_ahead: int, today: date) -> List[UpcomingDate]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT d.* FROM v_dates d
                JOIN v_persons p ON p.id = d.person_id
                WHERE p.user_id = ?
                ORDER BY d.created_at, d.id
                """,
                (user_id,),
            ).fetchall()
        return resolve_upcoming([DateRecord(**dict(row)) for row in rows], days_ahead, today)

    def _get_active_row(self, view: str, model: type, record_id: str) -> Optional[SoftDeletedRow]:
        with self._connect() as conn:
            row = conn.execute(f"SELECT * FROM {view} WHERE id = ? LIMIT 1", (record_id,)).fetchone()
        return model(**dict(row)) if row else None

    def _list_active_facts(self, person_id: str) -> List[Fact]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM v_facts WHERE person_id = ? ORDER BY created_at DESC, id",
                (person_id,),
            ).fetchall()
        return [Fact(**dict(row)) for row in rows]

    def _insert_person(self, user_id: str, payload: PersonCreate) -> Person:
        stamp = now_utc_iso()
        row = {
            "id": str(uuid4()),
            "user_id": user_id,
            "name": payload.name,
            "photo_url": str(payload.photo_url) if payload.photo_url else None,
            "created_at": stamp,
            "updated_at": stamp,
        }
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO persons (id, user_id, name, photo_url, created_at, updated_at)
                VALUES (:id, :user_id, :name, :photo_url, :created_at, :updated_at)
                """,
                row,
            )
        return Person(**row)

    def _insert_fact(self, person_id: str, payload: FactCreate) -> Fact:
        stamp = now_utc_iso()
        row = {
            "id": str(uuid4()),
            "person_id": person_id,
            "label": payload.label,
            "value": payload.value,
            "created_at": stamp,
            "updated_at": stamp,
        }
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO facts (id, person_id, label, value, created_at, updated_at)
                VALUES (:id, :person_id, :label, :value, :created_at, :updated_at)
                """,
                row,
            )
        return Fact(**row)

    def _insert_date(self, person_id: str, payload: DateCreate) -> DateRecord:
        stamp = now_utc_iso()
        row = {
            "id": str(uuid4()),
            "person_id": person_id,
            "label": payload.label,
            "date": payload.date,
            "created_at": stamp,
            "updated_at": stamp,
        }
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO dates (id, person_id, label, date, created_at, updated_at)
                VALUES (:id, :person_id, :label, :date, :created_at, :updated_at)
                """,
                row,
            )
        return DateRecord(**row)

    def _update_row(self, table: str, record_id: str, changes: Dict[str, Any]) -> SoftDeletedRow:
        model = SOFT_DELETABLE_TABLES.get(table)
        if model is None:
            raise RecordStoreError(f"Unknown table '{table}'", code="42P01")
        allowed = UPDATABLE_COLUMNS[table]
        unknown = sorted(set(changes) - set(allowed))
        if unknown:
            raise RecordStoreError(
                f"Cannot update columns {unknown} of '{table}'",
                code="42703",
                details={"columns": unknown},
            )
        columns = [column for column in allowed if column in changes]
        assignments = ", ".join(f"{column} = ?" for column in [*columns, "updated_at"])
        params = [changes[column] for column in columns] + [now_utc_iso(), record_id]
        with self._connect() as conn:
            cursor = conn.execute(
                f"UPDATE {table} SET {assignments} WHERE id = ? AND deleted_at IS NULL",
                params,
            )
            if cursor.rowcount == 0:
                raise RecordStoreError("No rows returned", code="PGRST116", details={"id": record_id})
            row = conn.execute(f"SELECT * FROM {table} WHERE id = ?", (record_id,)).fetchone()
        return model(**dict(row))

    def _soft_delete(self, table: str, record_id: str) -> SoftDeletedRow:
        model = SOFT_DELETABLE_TABLES.get(table)
        if model is None:
            raise RecordStoreError(f"Unknown table '{table}'", code="42P01")
        stamp = now_utc_iso()
        with self._connect() as conn:
            cursor = conn.execute(
                f"UPDATE {table} SET deleted_at = ?, updated_at = ? WHERE id = ? AND deleted_at IS NULL",
                (stamp, stamp, record_id),
            )
            if cursor.rowcount == 0:
                raise RecordStoreError("No rows returned", code="PGRST116", details={"id": record_id})
            row = conn.execute(f"SELECT * FROM {table} WHERE id = ?", (record_id,)).fetchone()
        return model(**dict(row))


__all__ = ["RecordStore", "SQLiteRecordStore", "translate_sqlite_error"]
