from __future__ import annotations

import time
from collections.abc import Callable
from datetime import datetime
from typing import Any, Mapping

from grantsync.errors import MissingCredentialError, UpstreamUnavailableError
from grantsync.ingest.base import BaseSource
from grantsync.normalize.normalizer import normalize_sam_assistance_listing
from grantsync.normalize.schema import NormalizedGrant

SAM_ASSISTANCE_SEARCH_URL = "https://api.sam.gov/assistance-listings/v1/search"
SAM_PAGE_SIZE = 100

LISTING_KEYWORDS: tuple[str, ...] = (
    "elementary secondary education",
    "school nutrition",
    "arts education",
    "STEM education",
)

# Alternate field names seen across API versions, mapped to the listing shape
# the normalizer reads.
_FIELD_ALIASES = {
    "assistanceListingId": "assistanceListingNumber",
    "programNumber": "assistanceListingNumber",
    "title": "programTitle",
    "organizationName": "federalAgency",
    "objective": "objectives",
    "applicantEligibilityDescription": "applicantEligibility",
    "beneficiaryEligibilityDescription": "beneficiaryEligibility",
    "websiteAddress": "website",
}

_RESULT_KEYS = ("assistanceListingsData", "results", "data")


def flatten_listing(item: Mapping[str, Any]) -> dict[str, Any]:
    listing = dict(item)
    for alias, canonical in _FIELD_ALIASES.items():
        if alias in item and not listing.get(canonical):
            listing[canonical] = item[alias]
    return listing


class SamGovSource(BaseSource):
    name = "sam_gov"

    def __init__(
        self,
        *,
        api_key: str | None = None,
        keywords: tuple[str, ...] = LISTING_KEYWORDS,
        keyword_delay_seconds: float = 0.5,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        super().__init__(sleep=sleep)
        self.api_key = api_key or None
        self.keywords = keywords
        self.keyword_delay_seconds = keyword_delay_seconds

    def fetch_records(self, http_client: Any) -> list[dict[str, Any]]:
        self.reset_stats()
        if not self.api_key:
            raise MissingCredentialError(
                "sam_gov requires SAM_GOV_API_KEY to be set.",
                url=SAM_ASSISTANCE_SEARCH_URL,
            )
        self.fetch_stats.endpoints_used.append(SAM_ASSISTANCE_SEARCH_URL)
        return self._collect_passes(
            self.keywords,
            lambda keyword: self.search_listings(http_client, keyword),
            key=lambda listing: str(listing.get("assistanceListingNumber") or "").strip() or None,
            delay_seconds=self.keyword_delay_seconds,
        )

    def search_listings(self, http_client: Any, keyword: str) -> list[dict[str, Any]]:
        params = {
            "api_key": self.api_key,
            "keyword": keyword,
            "status": "active",
            "size": SAM_PAGE_SIZE,
        }
        body = http_client.get_json(SAM_ASSISTANCE_SEARCH_URL, params=params)
        if not isinstance(body, Mapping):
            raise UpstreamUnavailableError("Assistance search returned an unexpected body.", url=SAM_ASSISTANCE_SEARCH_URL)
        items: Any = []
        for result_key in _RESULT_KEYS:
            if isinstance(body.get(result_key), list):
                items = body[result_key]
                break
        return [flatten_listing(item) for item in items if isinstance(item, Mapping)]

    def normalize(self, record: dict[str, Any], *, now: datetime | None = None) -> NormalizedGrant:
        return normalize_sam_assistance_listing(record, now=now)

    def external_id(self, record: dict[str, Any]) -> str | None:
        value = str(record.get("assistanceListingNumber") or "").strip()
        return value or None
