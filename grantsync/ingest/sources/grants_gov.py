"""Federal opportunity search client.

Search pages come from the keyed modern endpoint when an API key is configured
and from the legacy public endpoint otherwise, or whenever the modern call
fails. Every hit is then expanded to a full opportunity record; hits whose
detail cannot be fetched are kept as partial records built from the hit.
"""

from __future__ import annotations

import concurrent.futures
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Mapping

from grantsync.errors import UpstreamUnavailableError
from grantsync.ingest.base import BaseSource
from grantsync.normalize.normalizer import normalize_grants_gov_opportunity
from grantsync.normalize.schema import NormalizedGrant

logger = logging.getLogger(__name__)

MODERN_SEARCH_URL = "https://api.simpler.grants.gov/v1/opportunities/search"
MODERN_DETAIL_URL = "https://api.simpler.grants.gov/v1/opportunities/{opportunity_id}"
LEGACY_SEARCH_URL = "https://api.grants.gov/v1/api/search2"
LEGACY_DETAIL_URL = "https://api.grants.gov/v1/api/fetchOpportunity"

ENDPOINT_MODERN = "modern"
ENDPOINT_LEGACY = "legacy"
DEFAULT_ROWS_PER_PAGE = 100


@dataclass(frozen=True, slots=True)
class SearchCriteria:
    keyword: str | None = None
    agency: str | None = None

    @property
    def label(self) -> str:
        parts = []
        if self.agency:
            parts.append(f"agency={self.agency}")
        if self.keyword:
            parts.append(f"keyword={self.keyword}")
        return " ".join(parts) or "all"


DEFAULT_CRITERIA: tuple[SearchCriteria, ...] = (
    SearchCriteria(agency="ED"),
    SearchCriteria(agency="USDA-FNS"),
    SearchCriteria(agency="NEA"),
    SearchCriteria(keyword="K-12 education"),
    SearchCriteria(keyword="school nutrition"),
)


@dataclass(slots=True)
class SearchPage:
    hits: list[dict[str, Any]]
    total_count: int
    endpoint: str


class GrantsGovSource(BaseSource):
    name = "grants_gov"

    def __init__(
        self,
        *,
        api_key: str | None = None,
        criteria: tuple[SearchCriteria, ...] = DEFAULT_CRITERIA,
        rows_per_page: int = DEFAULT_ROWS_PER_PAGE,
        page_delay_seconds: float = 0.2,
        detail_concurrency: int = 5,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        super().__init__(sleep=sleep)
        self.api_key = api_key or None
        self.criteria = criteria
        self.rows_per_page = max(1, rows_per_page)
        self.page_delay_seconds = page_delay_seconds
        self.detail_concurrency = max(1, detail_concurrency)

    def fetch_records(self, http_client: Any) -> list[dict[str, Any]]:
        self.reset_stats()
        by_label = {criteria.label: criteria for criteria in self.criteria}
        hits = self._collect_passes(
            by_label,
            lambda label: self.search_all(http_client, by_label[label]),
            key=lambda hit: hit.get("id") or None,
            delay_seconds=self.page_delay_seconds,
        )
        logger.info("grants_gov: %d unique search hits; fetching details", len(hits))
        return self.fetch_details(http_client, hits)

    def normalize(self, record: dict[str, Any], *, now: datetime | None = None) -> NormalizedGrant:
        return normalize_grants_gov_opportunity(record, now=now)

    def external_id(self, record: dict[str, Any]) -> str | None:
        value = record.get("opportunityId") or record.get("id")
        return str(value) if value else None

    # Search

    def search_all(self, http_client: Any, criteria: SearchCriteria) -> list[dict[str, Any]]:
        hits: list[dict[str, Any]] = []
        start_record_num = 0
        while True:
            page = self.search_page(http_client, criteria, start_record_num)
            self.fetch_stats.endpoints_used.append(page.endpoint)
            hits.extend(page.hits)
            start_record_num += self.rows_per_page
            if start_record_num >= page.total_count or not page.hits:
                break
            self._pause(self.page_delay_seconds)
        return hits

    def search_page(self, http_client: Any, criteria: SearchCriteria, start_record_num: int) -> SearchPage:
        if self.api_key:
            try:
                return self._search_modern(http_client, criteria, start_record_num)
            except UpstreamUnavailableError as exc:
                logger.warning(
                    "grants_gov: modern search %s failed for %s (%s); falling back to legacy %s",
                    MODERN_SEARCH_URL,
                    criteria.label,
                    exc,
                    LEGACY_SEARCH_URL,
                )
        return self._search_legacy(http_client, criteria, start_record_num)

    def _search_modern(self, http_client: Any, criteria: SearchCriteria, start_record_num: int) -> SearchPage:
        filters: dict[str, Any] = {"opportunity_status": {"one_of": ["posted", "forecasted"]}}
        if criteria.agency:
            filters["agency"] = {"one_of": [criteria.agency]}
        payload: dict[str, Any] = {
            "filters": filters,
            "pagination": {
                "page_offset": start_record_num // self.rows_per_page + 1,
                "page_size": self.rows_per_page,
                "sort_order": [{"order_by": "post_date", "sort_direction": "descending"}],
            },
        }
        if criteria.keyword:
            payload["query"] = criteria.keyword

        body = http_client.post_json(MODERN_SEARCH_URL, payload=payload, headers=self._modern_headers())
        if not isinstance(body, Mapping) or not isinstance(body.get("data"), list):
            raise UpstreamUnavailableError("Modern search returned an unexpected body.", url=MODERN_SEARCH_URL)
        pagination = body.get("pagination_info") or {}
        return SearchPage(
            hits=[_hit_from_modern(item) for item in body["data"] if isinstance(item, Mapping)],
            total_count=_as_int(pagination.get("total_records")),
            endpoint=ENDPOINT_MODERN,
        )

    def _search_legacy(self, http_client: Any, criteria: SearchCriteria, start_record_num: int) -> SearchPage:
        payload = {
            "rows": self.rows_per_page,
            "keyword": criteria.keyword or "",
            "oppStatuses": "forecasted|posted",
            "agencies": criteria.agency or "",
            "startRecordNum": start_record_num,
        }
        body = http_client.post_json(LEGACY_SEARCH_URL, payload=payload)
        data = body.get("data") if isinstance(body, Mapping) else None
        if not isinstance(data, Mapping):
            raise UpstreamUnavailableError("Legacy search returned an unexpected body.", url=LEGACY_SEARCH_URL)
        return SearchPage(
            hits=[_hit_from_legacy(item) for item in data.get("oppHits") or [] if isinstance(item, Mapping)],
            total_count=_as_int(data.get("hitCount")),
            endpoint=ENDPOINT_LEGACY,
        )

    # Details

    def fetch_details(self, http_client: Any, hits: list[dict[str, Any]]) -> list[dict[str, Any]]:
        if not hits:
            return []

        records: list[dict[str, Any] | None] = [None] * len(hits)
        with concurrent.futures.ThreadPoolExecutor(max_workers=self.detail_concurrency) as executor:
            futures = {
                executor.submit(self._fetch_single_detail, http_client, hit): index
                for index, hit in enumerate(hits)
            }
            for future in concurrent.futures.as_completed(futures):
                index = futures[future]
                try:
                    records[index] = future.result()
                except Exception:
                    logger.warning("grants_gov: detail worker crashed for %s", hits[index].get("id"), exc_info=True)
                    records[index] = _canonical_from_hit(hits[index])

        for record in records:
            if record is not None and record.get("_partial"):
                self.fetch_stats.detail_fallbacks += 1
        return [record for record in records if record is not None]

    def _fetch_single_detail(self, http_client: Any, hit: dict[str, Any]) -> dict[str, Any]:
        attempts: list[tuple[str, Callable[[], dict[str, Any]]]] = []
        if self.api_key and hit.get("modernId"):
            attempts.append(("modern GET", lambda: self._detail_modern(http_client, hit)))
        attempts.append(("legacy POST", lambda: self._detail_legacy(http_client, hit, method="POST")))
        attempts.append(("legacy GET", lambda: self._detail_legacy(http_client, hit, method="GET")))

        failures: list[str] = []
        for label, attempt in attempts:
            try:
                return attempt()
            except UpstreamUnavailableError as exc:
                failures.append(f"{label}: {exc}")
        logger.warning(
            "grants_gov: detail unavailable for %s; keeping search stub (%s)",
            hit.get("id"),
            "; ".join(failures),
        )
        return _canonical_from_hit(hit)

    def _detail_modern(self, http_client: Any, hit: Mapping[str, Any]) -> dict[str, Any]:
        url = MODERN_DETAIL_URL.format(opportunity_id=hit["modernId"])
        body = http_client.get_json(url, headers=self._modern_headers())
        data = body.get("data") if isinstance(body, Mapping) else None
        if not isinstance(data, Mapping):
            raise UpstreamUnavailableError("Modern detail returned an unexpected body.", url=url)
        record = _canonical_from_modern(data)
        record["opportunityId"] = str(hit["id"])
        return record

    def _detail_legacy(self, http_client: Any, hit: Mapping[str, Any], *, method: str) -> dict[str, Any]:
        opportunity_id = hit.get("legacyId") or hit["id"]
        if method == "POST":
            body = http_client.post_json(LEGACY_DETAIL_URL, payload={"opportunityId": opportunity_id})
        else:
            body = http_client.get_json(LEGACY_DETAIL_URL, params={"opportunityId": opportunity_id})
        data = body.get("data", body) if isinstance(body, Mapping) else None
        if not isinstance(data, Mapping) or not (data.get("opportunityTitle") or data.get("synopsis")):
            raise UpstreamUnavailableError("Legacy detail returned an empty record.", url=LEGACY_DETAIL_URL)
        return _canonical_from_legacy(data, hit)

    def _modern_headers(self) -> dict[str, str]:
        return {"X-API-Key": self.api_key or ""}


def _as_int(value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


def _first(values: Any) -> Any:
    if isinstance(values, (list, tuple)) and values:
        return values[0]
    return None


def _hit_from_legacy(item: Mapping[str, Any]) -> dict[str, Any]:
    opportunity_id = str(item.get("id") or "").strip()
    return {
        "id": opportunity_id,
        "legacyId": opportunity_id or None,
        "modernId": None,
        "number": item.get("number"),
        "title": item.get("title"),
        "agencyCode": item.get("agencyCode"),
        "agency": item.get("agency") or item.get("agencyName"),
        "openDate": item.get("openDate"),
        "closeDate": item.get("closeDate"),
        "oppStatus": item.get("oppStatus"),
        "docType": item.get("docType"),
        "cfdaList": list(item.get("cfdaList") or []),
    }


def _hit_from_modern(item: Mapping[str, Any]) -> dict[str, Any]:
    summary = item.get("summary") or {}
    legacy_id = item.get("legacy_opportunity_id")
    modern_id = item.get("opportunity_id")
    # Prefer the legacy id so both endpoints produce the same external id.
    opportunity_id = str(legacy_id or modern_id or "").strip()
    return {
        "id": opportunity_id,
        "legacyId": str(legacy_id) if legacy_id else None,
        "modernId": str(modern_id) if modern_id else None,
        "number": item.get("opportunity_number"),
        "title": item.get("opportunity_title"),
        "agencyCode": item.get("agency_code"),
        "agency": item.get("agency_name"),
        "openDate": summary.get("post_date"),
        "closeDate": summary.get("close_date"),
        "oppStatus": item.get("opportunity_status"),
        "docType": None,
        "cfdaList": [
            listing.get("assistance_listing_number")
            for listing in item.get("opportunity_assistance_listings") or []
            if isinstance(listing, Mapping) and listing.get("assistance_listing_number")
        ],
    }


def _canonical_from_hit(hit: Mapping[str, Any]) -> dict[str, Any]:
    return {
        "opportunityId": str(hit.get("id") or ""),
        "opportunityNumber": hit.get("number"),
        "opportunityTitle": hit.get("title"),
        "agencyCode": hit.get("agencyCode"),
        "agencyName": hit.get("agency"),
        "oppStatus": hit.get("oppStatus"),
        "postDate": hit.get("openDate"),
        "closeDate": hit.get("closeDate"),
        "cfdaList": [{"cfdaNumber": number} for number in hit.get("cfdaList") or []],
        "_partial": True,
    }


def _canonical_from_modern(opp: Mapping[str, Any]) -> dict[str, Any]:
    summary = opp.get("summary") or {}
    return {
        "opportunityId": str(opp.get("legacy_opportunity_id") or opp.get("opportunity_id") or ""),
        "opportunityNumber": opp.get("opportunity_number"),
        "opportunityTitle": opp.get("opportunity_title"),
        "agencyCode": opp.get("agency_code"),
        "agencyName": opp.get("agency_name"),
        "oppStatus": opp.get("opportunity_status"),
        "postDate": summary.get("post_date"),
        "closeDate": summary.get("close_date"),
        "awardFloor": summary.get("award_floor"),
        "awardCeiling": summary.get("award_ceiling"),
        "estimatedTotalProgramFunding": summary.get("estimated_total_program_funding"),
        "expectedNumberOfAwards": summary.get("expected_number_of_awards"),
        "costSharing": summary.get("is_cost_sharing"),
        "fundingInstrumentType": _first(summary.get("funding_instruments")),
        "categoryOfFunding": _first(summary.get("funding_categories")),
        "eligibleApplicants": list(summary.get("applicant_types") or []),
        "additionalEligibilityInfo": summary.get("applicant_eligibility_description"),
        "synopsis": {"synopsisDesc": summary.get("summary_description")},
        "cfdaList": [
            {"cfdaNumber": listing.get("assistance_listing_number"), "programTitle": listing.get("program_title")}
            for listing in opp.get("opportunity_assistance_listings") or []
            if isinstance(listing, Mapping)
        ],
    }


def _canonical_from_legacy(detail: Mapping[str, Any], hit: Mapping[str, Any]) -> dict[str, Any]:
    synopsis = detail.get("synopsis") or {}
    applicant_types = [
        entry.get("description")
        for entry in synopsis.get("applicantTypes") or []
        if isinstance(entry, Mapping) and entry.get("description")
    ]
    cfdas = [
        {"cfdaNumber": entry.get("cfdaNumber"), "programTitle": entry.get("programTitle")}
        for entry in detail.get("cfdas") or []
        if isinstance(entry, Mapping)
    ]
    return {
        "opportunityId": str(hit.get("id") or detail.get("id") or ""),
        "opportunityNumber": detail.get("opportunityNumber") or hit.get("number"),
        "opportunityTitle": detail.get("opportunityTitle") or hit.get("title"),
        "agencyCode": detail.get("owningAgencyCode") or hit.get("agencyCode"),
        "agencyName": synopsis.get("agencyName") or hit.get("agency"),
        "oppStatus": hit.get("oppStatus"),
        "postDate": hit.get("openDate") or synopsis.get("postingDate"),
        "closeDate": hit.get("closeDate") or synopsis.get("responseDate"),
        "awardFloor": synopsis.get("awardFloor"),
        "awardCeiling": synopsis.get("awardCeiling"),
        "estimatedTotalProgramFunding": synopsis.get("estimatedFunding"),
        "expectedNumberOfAwards": synopsis.get("numberOfAwards"),
        "costSharing": synopsis.get("costSharing"),
        "eligibleApplicants": applicant_types,
        "additionalEligibilityInfo": synopsis.get("applicantEligibilityDesc"),
        "synopsis": {"synopsisDesc": synopsis.get("synopsisDesc")},
        "cfdaList": cfdas or [{"cfdaNumber": number} for number in hit.get("cfdaList") or []],
    }
