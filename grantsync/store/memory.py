from __future__ import annotations

import copy
import threading
from dataclasses import fields as dataclass_fields
from typing import Any, TypeVar

from grantsync.errors import StoreError, TerminalRunError
from grantsync.store.base import GrantStore
from grantsync.store.models import Grant, IngestionRun, IngestionSourceType, RawGrant, Source, utcnow

_T = TypeVar("_T")


class InMemoryGrantStore(GrantStore):
    """Dict-backed store; ``mutation_count`` counts every write for idempotence checks."""

    def __init__(self) -> None:
        self._sources: dict[str, Source] = {}
        self._runs: dict[str, IngestionRun] = {}
        self._raw_grants: dict[str, RawGrant] = {}
        self._raw_keys: dict[tuple[str, str], str] = {}
        self._grants: dict[str, Grant] = {}
        self._lock = threading.RLock()
        self.mutation_count = 0

    def upsert_source(
        self,
        name: str,
        *,
        display_name: str,
        source_type: IngestionSourceType,
        base_url: str,
        sync_frequency: str | None = None,
    ) -> Source:
        with self._lock:
            for source in self._sources.values():
                if source.name == name:
                    return copy.deepcopy(source)
            source = Source(
                name=name,
                display_name=display_name,
                source_type=source_type,
                base_url=base_url,
                sync_frequency=sync_frequency,
            )
            self._sources[source.id] = source
            self.mutation_count += 1
            return copy.deepcopy(source)

    def get_source_by_name(self, name: str) -> Source | None:
        with self._lock:
            for source in self._sources.values():
                if source.name == name:
                    return copy.deepcopy(source)
        return None

    def list_sources(self) -> list[Source]:
        with self._lock:
            return [copy.deepcopy(source) for source in sorted(self._sources.values(), key=lambda s: s.name)]

    def update_source(self, source_id: str, **fields: Any) -> Source:
        with self._lock:
            source = self._require(self._sources, source_id, "source")
            _apply(source, fields)
            self.mutation_count += 1
            return copy.deepcopy(source)

    def create_run(self, run: IngestionRun) -> IngestionRun:
        with self._lock:
            self._runs[run.id] = copy.deepcopy(run)
            self.mutation_count += 1
            return copy.deepcopy(run)

    def update_run(self, run_id: str, **fields: Any) -> IngestionRun:
        with self._lock:
            run = self._require(self._runs, run_id, "ingestion run")
            if run.status.is_terminal:
                raise TerminalRunError(f"Ingestion run {run_id} is already {run.status}.")
            _apply(run, fields)
            self.mutation_count += 1
            return copy.deepcopy(run)

    def get_run(self, run_id: str) -> IngestionRun | None:
        with self._lock:
            run = self._runs.get(run_id)
            return copy.deepcopy(run) if run else None

    def list_runs(self, limit: int = 10) -> list[IngestionRun]:
        with self._lock:
            ordered = sorted(self._runs.values(), key=lambda run: run.started_at, reverse=True)
            return [copy.deepcopy(run) for run in ordered[: max(limit, 0)]]

    def count_runs(self, source_id: str | None = None) -> int:
        with self._lock:
            return sum(1 for run in self._runs.values() if source_id is None or run.source_id == source_id)

    def find_raw_grant(self, source_id: str, external_id: str) -> RawGrant | None:
        with self._lock:
            raw_id = self._raw_keys.get((source_id, external_id))
            return copy.deepcopy(self._raw_grants[raw_id]) if raw_id else None

    def create_raw_grant(self, raw_grant: RawGrant) -> RawGrant:
        with self._lock:
            key = (raw_grant.source_id, raw_grant.external_id)
            if key in self._raw_keys:
                raise StoreError(f"Raw grant already exists for source={key[0]} external_id={key[1]}.")
            self._raw_grants[raw_grant.id] = copy.deepcopy(raw_grant)
            self._raw_keys[key] = raw_grant.id
            self.mutation_count += 1
            return copy.deepcopy(raw_grant)

    def update_raw_grant(self, raw_grant_id: str, **fields: Any) -> RawGrant:
        with self._lock:
            raw_grant = self._require(self._raw_grants, raw_grant_id, "raw grant")
            fields.setdefault("updated_at", utcnow())
            _apply(raw_grant, fields)
            self.mutation_count += 1
            return copy.deepcopy(raw_grant)

    def create_grant(self, grant: Grant) -> Grant:
        with self._lock:
            self._grants[grant.id] = copy.deepcopy(grant)
            self.mutation_count += 1
            return copy.deepcopy(grant)

    def update_grant(self, grant_id: str, **fields: Any) -> Grant:
        with self._lock:
            grant = self._require(self._grants, grant_id, "grant")
            fields.setdefault("updated_at", utcnow())
            _apply(grant, fields)
            self.mutation_count += 1
            return copy.deepcopy(grant)

    def get_grant(self, grant_id: str) -> Grant | None:
        with self._lock:
            grant = self._grants.get(grant_id)
            return copy.deepcopy(grant) if grant else None

    def find_grant(self, source_id: str, external_id: str) -> Grant | None:
        with self._lock:
            for grant in self._grants.values():
                if grant.ingestion_source_id == source_id and grant.external_id == external_id:
                    return copy.deepcopy(grant)
        return None

    def count_grants(self, source_id: str | None = None) -> int:
        with self._lock:
            return sum(
                1
                for grant in self._grants.values()
                if source_id is None or grant.ingestion_source_id == source_id
            )

    @staticmethod
    def _require(table: dict[str, _T], key: str, label: str) -> _T:
        try:
            return table[key]
        except KeyError:
            raise StoreError(f"Unknown {label} id: {key}") from None


def _apply(target: Any, fields: dict[str, Any]) -> None:
    allowed = {item.name for item in dataclass_fields(target)}
    unknown = set(fields) - allowed
    if unknown:
        raise StoreError(f"Unknown fields for {type(target).__name__}: {', '.join(sorted(unknown))}")
    for name, value in fields.items():
        setattr(target, name, copy.deepcopy(value))
