"""SQLite implementation of the grant store.

One connection per operation, committed on success and rolled back on error,
so concurrent callers working on different external ids never share a cursor.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from contextlib import contextmanager
from dataclasses import fields as dataclass_fields
from datetime import UTC, datetime
from enum import StrEnum
from pathlib import Path
from typing import Any, Iterator, TypeVar

from grantsync.errors import StoreError, TerminalRunError
from grantsync.normalize.schema import GrantCategory, GrantSourceType, Requirements
from grantsync.store.base import GrantStore
from grantsync.store.models import (
    Grant,
    IngestionRun,
    IngestionSourceType,
    RawGrant,
    RawGrantStatus,
    RecordError,
    RunStatus,
    Source,
    SyncStatus,
    utcnow,
)

logger = logging.getLogger(__name__)

_M = TypeVar("_M", Source, IngestionRun, RawGrant, Grant)

SCHEMA = """
CREATE TABLE IF NOT EXISTS sources (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL UNIQUE,
    display_name TEXT NOT NULL,
    source_type TEXT NOT NULL,
    base_url TEXT NOT NULL,
    is_active INTEGER NOT NULL,
    sync_frequency TEXT,
    last_sync_at TEXT,
    last_sync_status TEXT,
    last_sync_count INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS ingestion_runs (
    id TEXT PRIMARY KEY,
    source_id TEXT NOT NULL REFERENCES sources(id),
    source_name TEXT NOT NULL,
    status TEXT NOT NULL,
    started_at TEXT NOT NULL,
    completed_at TEXT,
    total_fetched INTEGER NOT NULL DEFAULT 0,
    total_new INTEGER NOT NULL DEFAULT 0,
    total_updated INTEGER NOT NULL DEFAULT 0,
    total_unchanged INTEGER NOT NULL DEFAULT 0,
    total_errors INTEGER NOT NULL DEFAULT 0,
    error_log TEXT NOT NULL DEFAULT '[]'
);
CREATE INDEX IF NOT EXISTS idx_ingestion_runs_started_at ON ingestion_runs(started_at);

CREATE TABLE IF NOT EXISTS grants (
    id TEXT PRIMARY KEY,
    title TEXT NOT NULL,
    category TEXT NOT NULL,
    source_type TEXT NOT NULL,
    funding_amount_min REAL NOT NULL,
    funding_amount_max REAL NOT NULL,
    deadline TEXT NOT NULL,
    external_id TEXT,
    ingestion_source_id TEXT REFERENCES sources(id),
    source_url TEXT,
    application_url TEXT,
    cfda TEXT,
    agency_code TEXT,
    description TEXT,
    eligibility_criteria TEXT,
    requirements TEXT NOT NULL DEFAULT '{}',
    is_active INTEGER NOT NULL,
    last_synced_at TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_grants_source_external ON grants(ingestion_source_id, external_id);

CREATE TABLE IF NOT EXISTS raw_grants (
    id TEXT PRIMARY KEY,
    source_id TEXT NOT NULL REFERENCES sources(id),
    external_id TEXT NOT NULL,
    raw_data TEXT NOT NULL,
    checksum TEXT NOT NULL,
    status TEXT NOT NULL,
    normalized_at TEXT,
    grant_id TEXT REFERENCES grants(id),
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    UNIQUE (source_id, external_id)
);
"""

_TABLES: dict[type, str] = {
    Source: "sources",
    IngestionRun: "ingestion_runs",
    RawGrant: "raw_grants",
    Grant: "grants",
}

_ENUM_FIELDS: dict[type, dict[str, type[StrEnum]]] = {
    Source: {"source_type": IngestionSourceType, "last_sync_status": SyncStatus},
    IngestionRun: {"status": RunStatus},
    RawGrant: {"status": RawGrantStatus},
    Grant: {"category": GrantCategory, "source_type": GrantSourceType},
}

_DATETIME_FIELDS = frozenset(
    {
        "created_at",
        "updated_at",
        "started_at",
        "completed_at",
        "last_sync_at",
        "normalized_at",
        "last_synced_at",
        "deadline",
    }
)
_BOOL_FIELDS = frozenset({"is_active"})


def _encode(name: str, value: Any) -> Any:
    if value is None:
        return None
    if name in _DATETIME_FIELDS:
        if value.tzinfo is None:
            value = value.replace(tzinfo=UTC)
        return value.astimezone(UTC).isoformat(timespec="microseconds")
    if name == "error_log":
        return json.dumps([entry.to_dict() for entry in value])
    if name in {"raw_data", "requirements"}:
        return json.dumps(value, sort_keys=True, default=str)
    if name in _BOOL_FIELDS:
        return 1 if value else 0
    if isinstance(value, StrEnum):
        return str(value)
    return value


def _decode(model: type[_M], row: sqlite3.Row) -> _M:
    enums = _ENUM_FIELDS[model]
    values: dict[str, Any] = {}
    for name in row.keys():
        value = row[name]
        if value is None:
            values[name] = None
        elif name in _DATETIME_FIELDS:
            values[name] = datetime.fromisoformat(value)
        elif name == "error_log":
            values[name] = [RecordError.from_dict(entry) for entry in json.loads(value)]
        elif name == "requirements":
            values[name] = Requirements(json.loads(value))
        elif name == "raw_data":
            values[name] = json.loads(value)
        elif name in _BOOL_FIELDS:
            values[name] = bool(value)
        elif name in enums:
            values[name] = enums[name](value)
        else:
            values[name] = value
    return model(**values)


def _column_names(model: type) -> list[str]:
    return [item.name for item in dataclass_fields(model)]


class SqliteGrantStore(GrantStore):
    """
    Grant store persisted to a single SQLite file.

    Usage:
        store = SqliteGrantStore("data/grantsync.db")
        source = store.upsert_source("grants_gov", ...)
    """

    def __init__(self, path: str | Path, *, timeout_seconds: float = 30.0) -> None:
        self.path = Path(path)
        self.timeout_seconds = timeout_seconds
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()
        logger.info("SQLite grant store ready: %s", self.path)

    def _init_db(self) -> None:
        with self.get_connection() as conn:
            conn.executescript(SCHEMA)

    @contextmanager
    def get_connection(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self.path, timeout=self.timeout_seconds)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    # Generic row helpers

    def _insert(self, conn: sqlite3.Connection, obj: Any) -> None:
        columns = _column_names(type(obj))
        sql = "INSERT INTO {table} ({cols}) VALUES ({params})".format(
            table=_TABLES[type(obj)],
            cols=", ".join(columns),
            params=", ".join(f":{name}" for name in columns),
        )
        conn.execute(sql, {name: _encode(name, getattr(obj, name)) for name in columns})

    def _select_one(self, conn: sqlite3.Connection, model: type[_M], where: str, params: tuple) -> _M | None:
        row = conn.execute(f"SELECT * FROM {_TABLES[model]} WHERE {where} LIMIT 1", params).fetchone()
        return _decode(model, row) if row is not None else None

    def _update(self, conn: sqlite3.Connection, model: type[_M], row_id: str, fields: dict[str, Any]) -> _M:
        allowed = set(_column_names(model)) - {"id"}
        unknown = set(fields) - allowed
        if unknown:
            raise StoreError(f"Unknown fields for {model.__name__}: {', '.join(sorted(unknown))}")
        if fields:
            assignments = ", ".join(f"{name} = :{name}" for name in fields)
            params = {name: _encode(name, value) for name, value in fields.items()}
            params["id"] = row_id
            conn.execute(f"UPDATE {_TABLES[model]} SET {assignments} WHERE id = :id", params)
        updated = self._select_one(conn, model, "id = ?", (row_id,))
        if updated is None:
            raise StoreError(f"Unknown {model.__name__} id: {row_id}")
        return updated

    # Sources

    def upsert_source(
        self,
        name: str,
        *,
        display_name: str,
        source_type: IngestionSourceType,
        base_url: str,
        sync_frequency: str | None = None,
    ) -> Source:
        candidate = Source(
            name=name,
            display_name=display_name,
            source_type=source_type,
            base_url=base_url,
            sync_frequency=sync_frequency,
        )
        columns = _column_names(Source)
        with self.get_connection() as conn:
            conn.execute(
                "INSERT INTO sources ({cols}) VALUES ({params}) ON CONFLICT(name) DO NOTHING".format(
                    cols=", ".join(columns),
                    params=", ".join(f":{column}" for column in columns),
                ),
                {column: _encode(column, getattr(candidate, column)) for column in columns},
            )
            source = self._select_one(conn, Source, "name = ?", (name,))
        if source is None:
            raise StoreError(f"Source {name!r} was not stored.")
        return source

    def get_source_by_name(self, name: str) -> Source | None:
        with self.get_connection() as conn:
            return self._select_one(conn, Source, "name = ?", (name,))

    def list_sources(self) -> list[Source]:
        with self.get_connection() as conn:
            rows = conn.execute("SELECT * FROM sources ORDER BY name").fetchall()
        return [_decode(Source, row) for row in rows]

    def update_source(self, source_id: str, **fields: Any) -> Source:
        with self.get_connection() as conn:
            return self._update(conn, Source, source_id, fields)

    # Ingestion runs

    def create_run(self, run: IngestionRun) -> IngestionRun:
        with self.get_connection() as conn:
            self._insert(conn, run)
        return run

    def update_run(self, run_id: str, **fields: Any) -> IngestionRun:
        with self.get_connection() as conn:
            current = self._select_one(conn, IngestionRun, "id = ?", (run_id,))
            if current is None:
                raise StoreError(f"Unknown IngestionRun id: {run_id}")
            if current.status.is_terminal:
                raise TerminalRunError(f"Ingestion run {run_id} is already {current.status}.")
            return self._update(conn, IngestionRun, run_id, fields)

    def get_run(self, run_id: str) -> IngestionRun | None:
        with self.get_connection() as conn:
            return self._select_one(conn, IngestionRun, "id = ?", (run_id,))

    def list_runs(self, limit: int = 10) -> list[IngestionRun]:
        with self.get_connection() as conn:
            rows = conn.execute(
                "SELECT * FROM ingestion_runs ORDER BY started_at DESC LIMIT ?",
                (max(limit, 0),),
            ).fetchall()
        return [_decode(IngestionRun, row) for row in rows]

    def count_runs(self, source_id: str | None = None) -> int:
        with self.get_connection() as conn:
            if source_id is None:
                row = conn.execute("SELECT COUNT(*) FROM ingestion_runs").fetchone()
            else:
                row = conn.execute("SELECT COUNT(*) FROM ingestion_runs WHERE source_id = ?", (source_id,)).fetchone()
        return int(row[0])

    # Raw grants

    def find_raw_grant(self, source_id: str, external_id: str) -> RawGrant | None:
        with self.get_connection() as conn:
            return self._select_one(
                conn, RawGrant, "source_id = ? AND external_id = ?", (source_id, external_id)
            )

    def create_raw_grant(self, raw_grant: RawGrant) -> RawGrant:
        try:
            with self.get_connection() as conn:
                self._insert(conn, raw_grant)
        except sqlite3.IntegrityError as exc:
            raise StoreError(
                f"Raw grant already exists for source={raw_grant.source_id} external_id={raw_grant.external_id}."
            ) from exc
        return raw_grant

    def update_raw_grant(self, raw_grant_id: str, **fields: Any) -> RawGrant:
        fields.setdefault("updated_at", utcnow())
        with self.get_connection() as conn:
            return self._update(conn, RawGrant, raw_grant_id, fields)

    # Grants

    def create_grant(self, grant: Grant) -> Grant:
        with self.get_connection() as conn:
            self._insert(conn, grant)
        return grant

    def update_grant(self, grant_id: str, **fields: Any) -> Grant:
        fields.setdefault("updated_at", utcnow())
        with self.get_connection() as conn:
            return self._update(conn, Grant, grant_id, fields)

    def get_grant(self, grant_id: str) -> Grant | None:
        with self.get_connection() as conn:
            return self._select_one(conn, Grant, "id = ?", (grant_id,))

    def find_grant(self, source_id: str, external_id: str) -> Grant | None:
        with self.get_connection() as conn:
            return self._select_one(
                conn, Grant, "ingestion_source_id = ? AND external_id = ?", (source_id, external_id)
            )

    def count_grants(self, source_id: str | None = None) -> int:
        with self.get_connection() as conn:
            if source_id is None:
                row = conn.execute("SELECT COUNT(*) FROM grants").fetchone()
            else:
                row = conn.execute(
                    "SELECT COUNT(*) FROM grants WHERE ingestion_source_id = ?", (source_id,)
                ).fetchone()
        return int(row[0])
