from __future__ import annotations

import logging
from datetime import datetime
from enum import StrEnum
from typing import Any

from grantsync.normalize.checksum import generate_grant_checksum
from grantsync.normalize.schema import NormalizedGrant, Requirements
from grantsync.store.base import GrantStore
from grantsync.store.models import GRANT_MUTABLE_FIELDS, Grant, RawGrant, RawGrantStatus, utcnow

logger = logging.getLogger(__name__)


class UpsertOutcome(StrEnum):
    NEW = "NEW"
    UPDATED = "UPDATED"
    UNCHANGED = "UNCHANGED"


def grant_from_normalized(normalized: NormalizedGrant, *, source_id: str, now: datetime) -> Grant:
    return Grant(
        title=normalized.title,
        category=normalized.category,
        source_type=normalized.source_type,
        funding_amount_min=normalized.funding_amount_min,
        funding_amount_max=normalized.funding_amount_max,
        deadline=normalized.deadline,
        external_id=normalized.external_id,
        ingestion_source_id=source_id,
        source_url=normalized.source_url,
        application_url=normalized.application_url,
        cfda=normalized.cfda,
        agency_code=normalized.agency_code,
        description=normalized.description,
        eligibility_criteria=normalized.eligibility_criteria,
        requirements=Requirements(normalized.requirements),
        is_active=normalized.is_active,
        last_synced_at=now,
        created_at=now,
        updated_at=now,
    )


def _mutable_fields(normalized: NormalizedGrant, *, now: datetime) -> dict[str, Any]:
    values = {
        "title": normalized.title,
        "category": normalized.category,
        "funding_amount_min": normalized.funding_amount_min,
        "funding_amount_max": normalized.funding_amount_max,
        "deadline": normalized.deadline,
        "description": normalized.description,
        "eligibility_criteria": normalized.eligibility_criteria,
        "requirements": Requirements(normalized.requirements),
        "source_url": normalized.source_url,
        "application_url": normalized.application_url,
        "is_active": normalized.is_active,
        "last_synced_at": now,
    }
    return {name: values[name] for name in GRANT_MUTABLE_FIELDS}


def upsert_if_changed(
    store: GrantStore,
    source_id: str,
    normalized: NormalizedGrant,
    raw_payload: Any,
    *,
    now: datetime | None = None,
) -> UpsertOutcome:
    """Persist one normalized record, touching the store only when it changed.

    The raw record is written first and linked to its grant last, so a failure
    part way through leaves an unlinked raw record. The next run repairs it,
    adopting a grant already stored for the same external id or creating one,
    and counts it as NEW. An existing raw record with the same checksum and a
    live linked grant produces no writes at all.
    """

    now = now or utcnow()
    checksum = generate_grant_checksum(normalized)
    existing = store.find_raw_grant(source_id, normalized.external_id)

    if existing is None:
        raw = store.create_raw_grant(
            RawGrant(
                source_id=source_id,
                external_id=normalized.external_id,
                raw_data=raw_payload,
                checksum=checksum,
                status=RawGrantStatus.FETCHED,
                created_at=now,
                updated_at=now,
            )
        )
        grant = store.create_grant(grant_from_normalized(normalized, source_id=source_id, now=now))
        store.update_raw_grant(
            raw.id,
            grant_id=grant.id,
            status=RawGrantStatus.NORMALIZED,
            normalized_at=now,
            updated_at=now,
        )
        return UpsertOutcome.NEW

    linked = store.get_grant(existing.grant_id) if existing.grant_id else None
    if linked is None:
        orphan = store.find_grant(source_id, normalized.external_id)
        logger.warning(
            "Relinking raw grant source=%s external_id=%s (grant_id=%s missing, adopting=%s)",
            source_id,
            normalized.external_id,
            existing.grant_id,
            orphan.id if orphan else None,
        )
        if orphan is None:
            grant = store.create_grant(grant_from_normalized(normalized, source_id=source_id, now=now))
        else:
            grant = store.update_grant(orphan.id, **_mutable_fields(normalized, now=now))
        repair: dict[str, Any] = {
            "grant_id": grant.id,
            "status": RawGrantStatus.NORMALIZED,
            "normalized_at": now,
        }
        if existing.checksum != checksum:
            repair.update(raw_data=raw_payload, checksum=checksum)
        store.update_raw_grant(existing.id, **repair)
        return UpsertOutcome.NEW

    if existing.checksum == checksum:
        return UpsertOutcome.UNCHANGED

    store.update_raw_grant(
        existing.id,
        raw_data=raw_payload,
        checksum=checksum,
        status=RawGrantStatus.NORMALIZED,
        normalized_at=now,
    )
    store.update_grant(linked.id, **_mutable_fields(normalized, now=now))
    return UpsertOutcome.UPDATED
