from __future__ import annotations

import logging
import time
from collections.abc import Callable
from datetime import datetime
from typing import Any, Mapping

from grantsync.errors import UpstreamUnavailableError
from grantsync.ingest.base import BaseSource
from grantsync.normalize.normalizer import normalize_usaspending_award
from grantsync.normalize.schema import NormalizedGrant

logger = logging.getLogger(__name__)

SPENDING_BY_AWARD_URL = "https://api.usaspending.gov/api/v2/search/spending_by_award/"
GRANT_AWARD_TYPE_CODES = ("02", "03", "04", "05")

EDUCATION_PROGRAM_CODES: tuple[str, ...] = (
    "84.010",  # Title I
    "84.027",  # IDEA Part B
    "84.367",  # Title II
    "84.365",  # English Language Acquisition
    "84.424",  # Student Support and Academic Enrichment
    "84.425",  # Education Stabilization Fund
    "10.553",  # School Breakfast
    "10.555",  # National School Lunch
    "84.181",  # Early Intervention
    "45.024",  # NEA Grants to Organizations
)

AWARD_FIELDS = [
    "Award ID",
    "Recipient Name",
    "Award Amount",
    "Total Outlays",
    "Description",
    "Start Date",
    "End Date",
    "Awarding Agency",
    "Awarding Sub Agency",
    "Award Type",
    "CFDA Number",
    "generated_internal_id",
]


class USASpendingSource(BaseSource):
    name = "usaspending"

    def __init__(
        self,
        *,
        program_codes: tuple[str, ...] = EDUCATION_PROGRAM_CODES,
        start_date: str = "2023-01-01",
        limit_per_code: int = 50,
        request_delay_seconds: float = 0.3,
        clock: Callable[[], datetime] | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        super().__init__(sleep=sleep)
        self.program_codes = program_codes
        self.start_date = start_date
        self.limit_per_code = limit_per_code
        self.request_delay_seconds = request_delay_seconds
        self._clock = clock or self.utcnow

    def fetch_records(self, http_client: Any) -> list[dict[str, Any]]:
        self.reset_stats()
        self.fetch_stats.endpoints_used.append(SPENDING_BY_AWARD_URL)
        return self._collect_passes(
            self.program_codes,
            lambda code: self.search_by_program(http_client, code),
            key=lambda award: str(award.get("Award ID") or "").strip() or None,
            delay_seconds=self.request_delay_seconds,
        )

    def search_by_program(self, http_client: Any, program_code: str) -> list[dict[str, Any]]:
        payload = {
            "filters": {
                "award_type_codes": list(GRANT_AWARD_TYPE_CODES),
                "program_numbers": [program_code],
                "time_period": [
                    {"start_date": self.start_date, "end_date": self._clock().date().isoformat()},
                ],
            },
            "fields": AWARD_FIELDS,
            "page": 1,
            "limit": self.limit_per_code,
            "sort": "Award Amount",
            "order": "desc",
        }
        body = http_client.post_json(SPENDING_BY_AWARD_URL, payload=payload)
        if not isinstance(body, Mapping) or not isinstance(body.get("results", []), list):
            raise UpstreamUnavailableError("Spending search returned an unexpected body.", url=SPENDING_BY_AWARD_URL)

        awards: list[dict[str, Any]] = []
        for result in body.get("results") or []:
            if not isinstance(result, Mapping):
                continue
            award = dict(result)
            # The program filter is exact, so a missing code is the requested one.
            if not award.get("CFDA Number"):
                award["CFDA Number"] = program_code
            awards.append(award)
        logger.debug("usaspending: %d awards for program %s", len(awards), program_code)
        return awards

    def normalize(self, record: dict[str, Any], *, now: datetime | None = None) -> NormalizedGrant:
        return normalize_usaspending_award(record, now=now)

    def external_id(self, record: dict[str, Any]) -> str | None:
        value = str(record.get("Award ID") or "").strip()
        return value or None
