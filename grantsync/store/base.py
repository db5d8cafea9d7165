"""Persistence contract required by the ingestion pipeline.

Implementations must be safe to call concurrently for different
``(source_id, external_id)`` keys. No cross-record transactions are assumed.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any

from grantsync.store.models import Grant, IngestionRun, IngestionSourceType, RawGrant, Source


class GrantStore(ABC):
    # Sources

    @abstractmethod
    def upsert_source(
        self,
        name: str,
        *,
        display_name: str,
        source_type: IngestionSourceType,
        base_url: str,
        sync_frequency: str | None = None,
    ) -> Source:
        """Return the source named ``name``, creating it when absent."""

    @abstractmethod
    def get_source_by_name(self, name: str) -> Source | None:
        """Find a source by its unique slug."""

    @abstractmethod
    def list_sources(self) -> list[Source]:
        """All sources ordered by name."""

    @abstractmethod
    def update_source(self, source_id: str, **fields: Any) -> Source:
        """Update fields of one source by id."""

    # Ingestion runs

    @abstractmethod
    def create_run(self, run: IngestionRun) -> IngestionRun:
        """Persist a new run row."""

    @abstractmethod
    def update_run(self, run_id: str, **fields: Any) -> IngestionRun:
        """Update a RUNNING run; terminal runs raise TerminalRunError."""

    @abstractmethod
    def get_run(self, run_id: str) -> IngestionRun | None:
        """Find one run by id."""

    @abstractmethod
    def list_runs(self, limit: int = 10) -> list[IngestionRun]:
        """Most recent runs first."""

    @abstractmethod
    def count_runs(self, source_id: str | None = None) -> int:
        """Number of runs, optionally for one source."""

    # Raw grants

    @abstractmethod
    def find_raw_grant(self, source_id: str, external_id: str) -> RawGrant | None:
        """Find the dedup record for ``(source_id, external_id)``."""

    @abstractmethod
    def create_raw_grant(self, raw_grant: RawGrant) -> RawGrant:
        """Persist a new raw grant; the composite key must be unused."""

    @abstractmethod
    def update_raw_grant(self, raw_grant_id: str, **fields: Any) -> RawGrant:
        """Update fields of one raw grant by id."""

    # Grants

    @abstractmethod
    def create_grant(self, grant: Grant) -> Grant:
        """Persist a new catalog grant."""

    @abstractmethod
    def update_grant(self, grant_id: str, **fields: Any) -> Grant:
        """Update fields of one grant by id."""

    @abstractmethod
    def get_grant(self, grant_id: str) -> Grant | None:
        """Find one grant by id."""

    @abstractmethod
    def find_grant(self, source_id: str, external_id: str) -> Grant | None:
        """Find the grant ingested from ``(source_id, external_id)``."""

    @abstractmethod
    def count_grants(self, source_id: str | None = None) -> int:
        """Number of grants, optionally for one ingestion source."""
