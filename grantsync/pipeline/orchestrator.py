"""Runs one named source end to end and records the outcome.

A run row is opened before fetching and closed exactly once. Failures of a
single record are isolated and logged into the run; a failure of the fetch
itself closes the run as FAILED and propagates to the caller.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Mapping

from grantsync.errors import RecordProcessingError, UnknownSourceError
from grantsync.ingest.base import BaseSource
from grantsync.ingest.registry import SOURCE_REGISTRY, SourceConfig
from grantsync.pipeline.change_detection import UpsertOutcome, upsert_if_changed
from grantsync.store.base import GrantStore
from grantsync.store.models import IngestionRun, RecordError, RunStatus, Source, SyncStatus, utcnow

logger = logging.getLogger(__name__)

_SYNC_STATUS_BY_RUN_STATUS = {
    RunStatus.SUCCESS: SyncStatus.SUCCESS,
    RunStatus.PARTIAL: SyncStatus.PARTIAL,
    RunStatus.FAILED: SyncStatus.ERROR,
}


@dataclass(slots=True)
class IngestionResult:
    run_id: str
    source_name: str
    status: RunStatus
    started_at: datetime
    completed_at: datetime
    total_fetched: int = 0
    total_new: int = 0
    total_updated: int = 0
    total_unchanged: int = 0
    total_errors: int = 0
    errors: list[RecordError] = field(default_factory=list)
    fetch_stats: dict[str, Any] = field(default_factory=dict)

    @property
    def total_succeeded(self) -> int:
        return self.total_new + self.total_updated + self.total_unchanged

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "source_name": self.source_name,
            "status": str(self.status),
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat(),
            "total_fetched": self.total_fetched,
            "total_new": self.total_new,
            "total_updated": self.total_updated,
            "total_unchanged": self.total_unchanged,
            "total_errors": self.total_errors,
            "errors": [error.to_dict() for error in self.errors],
            "fetch_stats": dict(self.fetch_stats),
        }


def resolve_run_status(*, errors: int, succeeded: int) -> RunStatus:
    if errors == 0:
        return RunStatus.SUCCESS
    if succeeded > 0:
        return RunStatus.PARTIAL
    return RunStatus.FAILED


class IngestionOrchestrator:
    def __init__(
        self,
        store: GrantStore,
        sources: Mapping[str, BaseSource],
        http_client: Any,
        *,
        registry: Mapping[str, SourceConfig] = SOURCE_REGISTRY,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.sources = dict(sources)
        self.http_client = http_client
        self.registry = registry
        self._clock = clock

    def ensure_source(self, name: str) -> Source:
        config = self.registry.get(name)
        if config is None:
            raise UnknownSourceError(name)
        return self.store.upsert_source(
            config.name,
            display_name=config.display_name,
            source_type=config.source_type,
            base_url=config.base_url,
            sync_frequency=config.sync_frequency,
        )

    def get_sources_status(self) -> list[Source]:
        return self.store.list_sources()

    def get_recent_runs(self, limit: int = 10) -> list[IngestionRun]:
        return self.store.list_runs(limit)

    def run_ingestion(self, name: str) -> IngestionResult:
        client = self._client_for(name)
        source = self.ensure_source(name)
        run = self.store.create_run(IngestionRun(source_id=source.id, source_name=name, started_at=self._clock()))
        logger.info("Ingestion run %s started for source=%s", run.id, name)

        try:
            records = client.fetch_records(self.http_client)
        except Exception as exc:
            self._fail_run(run, source, exc)
            raise

        now = self._clock()
        counts = {outcome: 0 for outcome in UpsertOutcome}
        errors: list[RecordError] = []
        for record in records:
            try:
                outcome = self._process_record(source, client, record, now=now)
            except Exception as exc:
                external_id = exc.external_id if isinstance(exc, RecordProcessingError) else _safe_external_id(client, record)
                errors.append(RecordError(external_id=external_id, message=str(exc) or type(exc).__name__))
                logger.warning("Record %s from %s failed: %s", external_id, name, exc)
                continue
            counts[outcome] += 1

        succeeded = sum(counts.values())
        status = resolve_run_status(errors=len(errors), succeeded=succeeded)
        completed_at = self._clock()
        self.store.update_run(
            run.id,
            status=status,
            completed_at=completed_at,
            total_fetched=len(records),
            total_new=counts[UpsertOutcome.NEW],
            total_updated=counts[UpsertOutcome.UPDATED],
            total_unchanged=counts[UpsertOutcome.UNCHANGED],
            total_errors=len(errors),
            error_log=errors,
        )
        self.store.update_source(
            source.id,
            last_sync_at=completed_at,
            last_sync_status=_SYNC_STATUS_BY_RUN_STATUS[status],
            last_sync_count=counts[UpsertOutcome.NEW] + counts[UpsertOutcome.UPDATED],
        )
        logger.info(
            "Ingestion run %s for %s finished %s: fetched=%d new=%d updated=%d unchanged=%d errors=%d",
            run.id,
            name,
            status,
            len(records),
            counts[UpsertOutcome.NEW],
            counts[UpsertOutcome.UPDATED],
            counts[UpsertOutcome.UNCHANGED],
            len(errors),
        )
        return IngestionResult(
            run_id=run.id,
            source_name=name,
            status=status,
            started_at=run.started_at,
            completed_at=completed_at,
            total_fetched=len(records),
            total_new=counts[UpsertOutcome.NEW],
            total_updated=counts[UpsertOutcome.UPDATED],
            total_unchanged=counts[UpsertOutcome.UNCHANGED],
            total_errors=len(errors),
            errors=errors,
            fetch_stats=client.fetch_stats.to_dict(),
        )

    def _client_for(self, name: str) -> BaseSource:
        if name not in self.registry:
            raise UnknownSourceError(name)
        client = self.sources.get(name)
        if client is None:
            raise UnknownSourceError(name, f"No client is configured for ingestion source: {name!r}")
        return client

    def _process_record(
        self,
        source: Source,
        client: BaseSource,
        record: dict[str, Any],
        *,
        now: datetime,
    ) -> UpsertOutcome:
        normalized = client.normalize(record, now=now)
        if not normalized.external_id:
            raise RecordProcessingError(None, "Record has no external id.")
        return upsert_if_changed(self.store, source.id, normalized, record, now=now)

    def _fail_run(self, run: IngestionRun, source: Source, exc: BaseException) -> None:
        completed_at = self._clock()
        message = str(exc) or type(exc).__name__
        logger.error("Ingestion run %s for %s failed during fetch: %s", run.id, source.name, message)
        self.store.update_run(
            run.id,
            status=RunStatus.FAILED,
            completed_at=completed_at,
            total_errors=1,
            error_log=[RecordError(external_id=None, message=message)],
        )
        self.store.update_source(
            source.id,
            last_sync_at=completed_at,
            last_sync_status=SyncStatus.ERROR,
            last_sync_count=0,
        )


def _safe_external_id(client: BaseSource, record: Any) -> str | None:
    try:
        return client.external_id(record)
    except Exception:  # noqa: BLE001 - id lookup is best effort for error logs
        return None
