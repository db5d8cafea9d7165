from __future__ import annotations

import time
from collections.abc import Callable
from datetime import datetime
from typing import Any, Mapping

from grantsync.errors import UpstreamUnavailableError
from grantsync.ingest.base import BaseSource
from grantsync.normalize.normalizer import normalize_nsf_award
from grantsync.normalize.schema import NormalizedGrant

NSF_AWARDS_URL = "https://api.nsf.gov/services/v1/awards.json"
NSF_MAX_RESULTS_PER_PAGE = 25

PRINT_FIELDS = ",".join(
    [
        "id",
        "title",
        "abstractText",
        "awardeeName",
        "awardeeCity",
        "awardeeStateCode",
        "startDate",
        "expDate",
        "estimatedTotalAmt",
        "fundsObligatedAmt",
        "piFirstName",
        "piLastName",
        "piEmail",
        "fundProgramName",
        "primaryProgram",
    ]
)

EDUCATION_KEYWORDS: tuple[str, ...] = (
    "K-12 education",
    "STEM education",
    "K-12 outreach",
    "science education",
    "teacher professional development",
    "educational technology",
    "broadening participation",
)


def lookback_start(now: datetime, *, years: int = 2) -> str:
    """First day of the same month ``years`` back, as MM/DD/YYYY."""

    return f"{now.month:02d}/01/{now.year - years}"


class NsfAwardsSource(BaseSource):
    name = "nsf_awards"

    def __init__(
        self,
        *,
        keywords: tuple[str, ...] = EDUCATION_KEYWORDS,
        results_per_keyword: int = NSF_MAX_RESULTS_PER_PAGE,
        keyword_delay_seconds: float = 0.5,
        clock: Callable[[], datetime] | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        super().__init__(sleep=sleep)
        self.keywords = keywords
        self.results_per_keyword = max(1, min(results_per_keyword, NSF_MAX_RESULTS_PER_PAGE))
        self.keyword_delay_seconds = keyword_delay_seconds
        self._clock = clock or self.utcnow

    def fetch_records(self, http_client: Any) -> list[dict[str, Any]]:
        self.reset_stats()
        self.fetch_stats.endpoints_used.append(NSF_AWARDS_URL)
        date_start = lookback_start(self._clock())
        return self._collect_passes(
            self.keywords,
            lambda keyword: self.search_awards(http_client, keyword, date_start=date_start),
            key=lambda award: str(award.get("id") or "").strip() or None,
            delay_seconds=self.keyword_delay_seconds,
        )

    def search_awards(
        self,
        http_client: Any,
        keyword: str,
        *,
        date_start: str,
        offset: int = 1,
    ) -> list[dict[str, Any]]:
        params = {
            "printFields": PRINT_FIELDS,
            "keyword": keyword,
            "dateStart": date_start,
            "offset": offset,
            "rpp": self.results_per_keyword,
        }
        body = http_client.get_json(NSF_AWARDS_URL, params=params)
        response = body.get("response") if isinstance(body, Mapping) else None
        if not isinstance(response, Mapping):
            raise UpstreamUnavailableError("Award search returned an unexpected body.", url=NSF_AWARDS_URL)
        return [dict(award) for award in response.get("award") or [] if isinstance(award, Mapping)]

    def normalize(self, record: dict[str, Any], *, now: datetime | None = None) -> NormalizedGrant:
        return normalize_nsf_award(record, now=now)

    def external_id(self, record: dict[str, Any]) -> str | None:
        value = str(record.get("id") or "").strip()
        return value or None
