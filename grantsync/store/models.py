from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from enum import StrEnum
from typing import Any
from uuid import uuid4

from grantsync.normalize.schema import GrantCategory, GrantSourceType, Requirements


class IngestionSourceType(StrEnum):
    FEDERAL_API = "FEDERAL_API"
    STATE_CSV = "STATE_CSV"
    FOUNDATION_990 = "FOUNDATION_990"
    RESEARCH_API = "RESEARCH_API"
    SPENDING_API = "SPENDING_API"


class SyncStatus(StrEnum):
    SUCCESS = "success"
    PARTIAL = "partial"
    ERROR = "error"


class RunStatus(StrEnum):
    RUNNING = "RUNNING"
    SUCCESS = "SUCCESS"
    PARTIAL = "PARTIAL"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self is not RunStatus.RUNNING


class RawGrantStatus(StrEnum):
    FETCHED = "FETCHED"
    NORMALIZED = "NORMALIZED"


def new_id() -> str:
    return uuid4().hex


def utcnow() -> datetime:
    return datetime.now(tz=UTC)


@dataclass(slots=True)
class Source:
    name: str
    display_name: str
    source_type: IngestionSourceType
    base_url: str
    id: str = field(default_factory=new_id)
    is_active: bool = True
    sync_frequency: str | None = None
    last_sync_at: datetime | None = None
    last_sync_status: SyncStatus | None = None
    last_sync_count: int = 0
    created_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "display_name": self.display_name,
            "source_type": str(self.source_type),
            "base_url": self.base_url,
            "is_active": self.is_active,
            "sync_frequency": self.sync_frequency,
            "last_sync_at": _iso(self.last_sync_at),
            "last_sync_status": str(self.last_sync_status) if self.last_sync_status else None,
            "last_sync_count": self.last_sync_count,
            "created_at": _iso(self.created_at),
        }


@dataclass(slots=True)
class RecordError:
    external_id: str | None
    message: str

    def to_dict(self) -> dict[str, Any]:
        return {"externalId": self.external_id, "message": self.message}

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> RecordError:
        return cls(external_id=payload.get("externalId"), message=str(payload.get("message", "")))


@dataclass(slots=True)
class IngestionRun:
    source_id: str
    source_name: str
    id: str = field(default_factory=new_id)
    status: RunStatus = RunStatus.RUNNING
    started_at: datetime = field(default_factory=utcnow)
    completed_at: datetime | None = None
    total_fetched: int = 0
    total_new: int = 0
    total_updated: int = 0
    total_unchanged: int = 0
    total_errors: int = 0
    error_log: list[RecordError] = field(default_factory=list)

    def is_stale(self, max_age: timedelta, *, now: datetime | None = None) -> bool:
        """A RUNNING row older than ``max_age`` belongs to a killed process."""

        if self.status is not RunStatus.RUNNING:
            return False
        reference = now or utcnow()
        return reference - self.started_at > max_age

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "source_id": self.source_id,
            "source_name": self.source_name,
            "status": str(self.status),
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
            "total_fetched": self.total_fetched,
            "total_new": self.total_new,
            "total_updated": self.total_updated,
            "total_unchanged": self.total_unchanged,
            "total_errors": self.total_errors,
            "error_log": [entry.to_dict() for entry in self.error_log],
        }


@dataclass(slots=True)
class RawGrant:
    source_id: str
    external_id: str
    raw_data: Any
    checksum: str
    id: str = field(default_factory=new_id)
    status: RawGrantStatus = RawGrantStatus.FETCHED
    normalized_at: datetime | None = None
    grant_id: str | None = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass(slots=True)
class Grant:
    title: str
    category: GrantCategory
    source_type: GrantSourceType
    funding_amount_min: float
    funding_amount_max: float
    deadline: datetime
    id: str = field(default_factory=new_id)
    external_id: str | None = None
    ingestion_source_id: str | None = None
    source_url: str | None = None
    application_url: str | None = None
    cfda: str | None = None
    agency_code: str | None = None
    description: str | None = None
    eligibility_criteria: str | None = None
    requirements: Requirements = field(default_factory=Requirements)
    is_active: bool = True
    last_synced_at: datetime | None = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


# Fields of a Grant that ingestion rewrites when the upstream record changes.
GRANT_MUTABLE_FIELDS = (
    "title",
    "category",
    "funding_amount_min",
    "funding_amount_max",
    "deadline",
    "description",
    "eligibility_criteria",
    "requirements",
    "source_url",
    "application_url",
    "is_active",
    "last_synced_at",
)


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None
