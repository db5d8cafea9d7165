from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod
from collections.abc import Callable, Hashable, Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from grantsync.errors import UpstreamUnavailableError
from grantsync.normalize.schema import NormalizedGrant

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class FetchStats:
    requests_attempted: int = 0
    requests_failed: int = 0
    records_seen: int = 0
    duplicates_skipped: int = 0
    missing_ids: int = 0
    detail_fallbacks: int = 0
    endpoints_used: list[str] = field(default_factory=list)
    failures: list[dict[str, str]] = field(default_factory=list)

    def add_failure(self, target: str, reason: str) -> None:
        self.requests_failed += 1
        self.failures.append({"target": target, "reason": reason})

    def to_dict(self) -> dict[str, Any]:
        return {
            "requests_attempted": self.requests_attempted,
            "requests_failed": self.requests_failed,
            "records_seen": self.records_seen,
            "duplicates_skipped": self.duplicates_skipped,
            "missing_ids": self.missing_ids,
            "detail_fallbacks": self.detail_fallbacks,
            "endpoints_used": list(self.endpoints_used),
            "failures": list(self.failures),
        }


class BaseSource(ABC):
    name: str

    def __init__(self, *, sleep: Callable[[float], None] = time.sleep) -> None:
        self.fetch_stats = FetchStats()
        self._sleep = sleep

    @abstractmethod
    def fetch_records(self, http_client: Any) -> list[dict[str, Any]]:
        """Fetch raw provider records."""

    @abstractmethod
    def normalize(self, record: dict[str, Any], *, now: datetime | None = None) -> NormalizedGrant:
        """Map one raw provider record into a NormalizedGrant."""

    @abstractmethod
    def external_id(self, record: dict[str, Any]) -> str | None:
        """Best-effort provider id of a raw record, used in error logs."""

    def reset_stats(self) -> None:
        self.fetch_stats = FetchStats()

    def _pause(self, seconds: float) -> None:
        if seconds > 0:
            self._sleep(seconds)

    def _collect_passes(
        self,
        targets: Iterable[str],
        fetch_one: Callable[[str], list[dict[str, Any]]],
        *,
        key: Callable[[dict[str, Any]], Hashable | None],
        delay_seconds: float,
    ) -> list[dict[str, Any]]:
        """Run one request per target, merging results with first-seen-wins dedup.

        A failing target is logged and recorded; the last error is raised only
        when every target failed.
        """

        records: list[dict[str, Any]] = []
        seen: set[Hashable] = set()
        last_error: UpstreamUnavailableError | None = None
        succeeded = 0

        for index, target in enumerate(targets):
            if index:
                self._pause(delay_seconds)
            self.fetch_stats.requests_attempted += 1
            try:
                batch = fetch_one(target)
            except UpstreamUnavailableError as exc:
                last_error = exc
                self.fetch_stats.add_failure(target, str(exc))
                logger.warning("%s: request for %r failed: %s", self.name, target, exc)
                continue
            succeeded += 1
            for record in batch:
                self.fetch_stats.records_seen += 1
                record_key = key(record)
                if record_key is None:
                    self.fetch_stats.missing_ids += 1
                    continue
                if record_key in seen:
                    self.fetch_stats.duplicates_skipped += 1
                    continue
                seen.add(record_key)
                records.append(record)

        if succeeded == 0 and last_error is not None:
            raise last_error
        logger.info("%s: fetched %d unique records from %d requests", self.name, len(records), succeeded)
        return records

    @staticmethod
    def utcnow() -> datetime:
        return datetime.now(tz=UTC)
