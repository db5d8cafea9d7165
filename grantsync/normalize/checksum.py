from __future__ import annotations

import hashlib
from datetime import UTC, datetime

from grantsync.normalize.schema import NormalizedGrant

DESCRIPTION_FINGERPRINT_CHARS = 500
OPEN_ENDED_TOKEN = "open-ended"


def _normalize_text(value: str | None) -> str:
    if value is None:
        return ""
    return " ".join(value.split())


def _normalize_amount(value: float | None) -> str:
    if value is None:
        return ""
    return f"{float(value):.2f}"


def _normalize_deadline(value: datetime, *, open_ended: bool) -> str:
    if open_ended:
        return OPEN_ENDED_TOKEN
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).isoformat()


def generate_grant_checksum(grant: NormalizedGrant) -> str:
    """Fingerprint the volatile fields of a normalized grant for change detection.

    Open-ended deadlines are derived from the clock, so they hash as a fixed
    token to keep the fingerprint stable between runs.
    """

    description = (grant.description or "")[:DESCRIPTION_FINGERPRINT_CHARS]
    payload = "|".join(
        [
            _normalize_text(grant.title),
            _normalize_amount(grant.funding_amount_min),
            _normalize_amount(grant.funding_amount_max),
            _normalize_deadline(grant.deadline, open_ended=grant.open_ended),
            _normalize_text(description),
        ]
    )
    return hashlib.sha1(payload.encode("utf-8")).hexdigest()
