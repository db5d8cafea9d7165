from __future__ import annotations

import itertools
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

import pytest

from grantsync.errors import StoreError, TerminalRunError
from grantsync.ingest.base import BaseSource
from grantsync.ingest.registry import SourceConfig
from grantsync.normalize.schema import GrantCategory, GrantSourceType, NormalizedGrant, Requirements
from grantsync.pipeline.orchestrator import IngestionOrchestrator
from grantsync.store.models import (
    Grant,
    IngestionRun,
    IngestionSourceType,
    RawGrant,
    RecordError,
    RunStatus,
    SyncStatus,
)
from grantsync.store.sqlite import SqliteGrantStore


def _store(tmp_path: Path) -> SqliteGrantStore:
    return SqliteGrantStore(tmp_path / "nested" / "grantsync.db")


def _source_id(store: SqliteGrantStore) -> str:
    return store.upsert_source(
        "grants_gov",
        display_name="Grants.gov",
        source_type=IngestionSourceType.FEDERAL_API,
        base_url="https://www.grants.gov",
        sync_frequency="0 6 * * *",
    ).id


def test_upsert_source_is_idempotent_and_round_trips(tmp_path: Path) -> None:
    store = _store(tmp_path)

    first_id = _source_id(store)
    second_id = _source_id(store)

    assert first_id == second_id
    source = store.get_source_by_name("grants_gov")
    assert source is not None
    assert source.source_type == IngestionSourceType.FEDERAL_API
    assert source.is_active is True
    assert source.last_sync_status is None

    synced_at = datetime(2026, 6, 1, 6, 0, 1, 250, tzinfo=UTC)
    updated = store.update_source(first_id, last_sync_status=SyncStatus.PARTIAL, last_sync_at=synced_at, last_sync_count=7)

    assert updated.last_sync_status == SyncStatus.PARTIAL
    assert updated.last_sync_at == synced_at
    assert updated.last_sync_count == 7
    assert [item.name for item in store.list_sources()] == ["grants_gov"]


def test_grant_round_trips_requirements_and_deadline(tmp_path: Path) -> None:
    store = _store(tmp_path)
    source_id = _source_id(store)
    deadline = datetime(2026, 9, 30, 23, 59, tzinfo=UTC)
    grant = Grant(
        title="Arts Education Partnerships",
        category=GrantCategory.ARTS,
        source_type=GrantSourceType.FEDERAL,
        funding_amount_min=0.0,
        funding_amount_max=100000.0,
        deadline=deadline,
        external_id="350123",
        ingestion_source_id=source_id,
        requirements=Requirements({"eligibleApplicants": ["Districts", "Nonprofits"], "costSharing": False}),
        is_active=False,
    )

    store.create_grant(grant)
    loaded = store.find_grant(source_id, "350123")

    assert loaded is not None
    assert loaded.id == grant.id
    assert loaded.deadline == deadline
    assert loaded.category == GrantCategory.ARTS
    assert loaded.is_active is False
    assert isinstance(loaded.requirements, Requirements)
    assert loaded.requirements.get_list("eligibleApplicants") == ["Districts", "Nonprofits"]
    assert loaded.requirements.get_bool("costSharing") is False
    assert store.count_grants(source_id) == 1
    assert store.get_grant("missing") is None


def test_duplicate_raw_grant_is_rejected(tmp_path: Path) -> None:
    store = _store(tmp_path)
    source_id = _source_id(store)
    store.create_raw_grant(RawGrant(source_id=source_id, external_id="1", raw_data={"a": 1}, checksum="c1"))

    with pytest.raises(StoreError):
        store.create_raw_grant(RawGrant(source_id=source_id, external_id="1", raw_data={"a": 2}, checksum="c2"))

    raw = store.find_raw_grant(source_id, "1")
    assert raw is not None
    assert raw.raw_data == {"a": 1}


def test_terminal_run_cannot_be_updated(tmp_path: Path) -> None:
    store = _store(tmp_path)
    source_id = _source_id(store)
    run = store.create_run(IngestionRun(source_id=source_id, source_name="grants_gov"))

    finished = store.update_run(
        run.id,
        status=RunStatus.PARTIAL,
        total_errors=1,
        error_log=[RecordError(external_id="9", message="bad date")],
        completed_at=datetime(2026, 6, 1, tzinfo=UTC),
    )

    assert finished.status == RunStatus.PARTIAL
    assert finished.error_log == [RecordError(external_id="9", message="bad date")]
    with pytest.raises(TerminalRunError):
        store.update_run(run.id, status=RunStatus.SUCCESS)
    with pytest.raises(StoreError):
        store.update_run("missing", status=RunStatus.SUCCESS)


def test_update_rejects_unknown_fields(tmp_path: Path) -> None:
    store = _store(tmp_path)
    source_id = _source_id(store)

    with pytest.raises(StoreError):
        store.update_source(source_id, not_a_column=1)


def test_list_runs_is_newest_first(tmp_path: Path) -> None:
    store = _store(tmp_path)
    source_id = _source_id(store)
    base = datetime(2026, 6, 1, tzinfo=UTC)
    for offset in (2, 0, 1):
        store.create_run(
            IngestionRun(
                id=f"run-{offset}",
                source_id=source_id,
                source_name="grants_gov",
                started_at=base + timedelta(hours=offset),
            )
        )

    assert [run.id for run in store.list_runs(2)] == ["run-2", "run-1"]
    assert store.count_runs(source_id) == 3


class _StaticSource(BaseSource):
    name = "grants_gov"

    def __init__(self, records: list[dict[str, Any]]) -> None:
        super().__init__(sleep=lambda _seconds: None)
        self.records = records

    def fetch_records(self, http_client: Any) -> list[dict[str, Any]]:
        return list(self.records)

    def normalize(self, record: dict[str, Any], *, now: datetime | None = None) -> NormalizedGrant:
        return NormalizedGrant(
            title=record["title"],
            category=GrantCategory.FEDERAL,
            source_type=GrantSourceType.FEDERAL,
            funding_amount_min=0.0,
            funding_amount_max=float(record["amount"]),
            deadline=datetime(2026, 12, 31, tzinfo=UTC),
            external_id=record["id"],
        )

    def external_id(self, record: dict[str, Any]) -> str | None:
        return record.get("id")


def test_orchestrator_against_sqlite_detects_changes(tmp_path: Path) -> None:
    store = _store(tmp_path)
    ticks = itertools.count()
    source = _StaticSource([{"id": "1", "title": "One", "amount": 10}, {"id": "2", "title": "Two", "amount": 20}])
    orchestrator = IngestionOrchestrator(
        store,
        {source.name: source},
        http_client=object(),
        registry={"grants_gov": SourceConfig("grants_gov", "Grants.gov", IngestionSourceType.FEDERAL_API, "https://www.grants.gov")},
        clock=lambda: datetime(2026, 6, 1, tzinfo=UTC) + timedelta(minutes=next(ticks)),
    )

    first = orchestrator.run_ingestion("grants_gov")
    second = orchestrator.run_ingestion("grants_gov")
    source.records[1] = {"id": "2", "title": "Two (amended)", "amount": 25}
    third = orchestrator.run_ingestion("grants_gov")

    assert (first.total_new, first.total_updated, first.total_unchanged) == (2, 0, 0)
    assert (second.total_new, second.total_updated, second.total_unchanged) == (0, 0, 2)
    assert (third.total_new, third.total_updated, third.total_unchanged) == (0, 1, 1)
    assert store.count_grants() == 2
    source_id = store.get_source_by_name("grants_gov").id
    amended = store.find_grant(source_id, "2")
    assert amended is not None
    assert amended.title == "Two (amended)"
    assert [run.status for run in store.list_runs(3)] == [RunStatus.SUCCESS] * 3


def test_upsert_source_raises_when_row_cannot_be_read_back(tmp_path: Path) -> None:
    class _UnreadableSourceStore(SqliteGrantStore):
        def _select_one(self, conn, model, where, params):  # noqa: ANN001, ANN202
            return None

    store = _UnreadableSourceStore(tmp_path / "grantsync.db")

    with pytest.raises(StoreError, match="not stored"):
        _source_id(store)
