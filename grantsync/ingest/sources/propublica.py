from __future__ import annotations

import time
from collections.abc import Callable
from datetime import datetime
from typing import Any, Mapping

from grantsync.errors import UpstreamUnavailableError
from grantsync.ingest.base import BaseSource
from grantsync.normalize.normalizer import normalize_propublica_foundation
from grantsync.normalize.schema import NormalizedGrant

PROPUBLICA_SEARCH_URL = "https://projects.propublica.org/nonprofits/api/v2/search.json"

FOUNDATION_SEARCH_TERMS: tuple[str, ...] = (
    "education foundation",
    "school foundation",
    "scholarship fund",
    "youth foundation",
    "learning foundation",
)


def is_likely_foundation(org: Mapping[str, Any]) -> bool:
    """NTEE major group T is philanthropy; otherwise fall back to the name."""

    ntee_code = str(org.get("ntee_code") or "").strip().upper()
    if ntee_code.startswith("T"):
        return True
    name = str(org.get("name") or "").lower()
    return "foundation" in name or "fund" in name


class ProPublicaSource(BaseSource):
    name = "propublica_990"

    def __init__(
        self,
        *,
        search_terms: tuple[str, ...] = FOUNDATION_SEARCH_TERMS,
        keyword_delay_seconds: float = 0.5,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        super().__init__(sleep=sleep)
        self.search_terms = search_terms
        self.keyword_delay_seconds = keyword_delay_seconds

    def fetch_records(self, http_client: Any) -> list[dict[str, Any]]:
        self.reset_stats()
        self.fetch_stats.endpoints_used.append(PROPUBLICA_SEARCH_URL)
        return self._collect_passes(
            self.search_terms,
            lambda term: self.search_foundations(http_client, term),
            key=lambda org: str(org.get("ein") or "").strip() or None,
            delay_seconds=self.keyword_delay_seconds,
        )

    def search_foundations(self, http_client: Any, query: str, *, state: str | None = None) -> list[dict[str, Any]]:
        params = {"q": query}
        if state:
            params["state[id]"] = state.upper()
        body = http_client.get_json(PROPUBLICA_SEARCH_URL, params=params)
        if not isinstance(body, Mapping):
            raise UpstreamUnavailableError("Nonprofit search returned an unexpected body.", url=PROPUBLICA_SEARCH_URL)
        organizations = [dict(org) for org in body.get("organizations") or [] if isinstance(org, Mapping)]
        return [org for org in organizations if is_likely_foundation(org)]

    def normalize(self, record: dict[str, Any], *, now: datetime | None = None) -> NormalizedGrant:
        return normalize_propublica_foundation(record, now=now)

    def external_id(self, record: dict[str, Any]) -> str | None:
        value = str(record.get("ein") or "").strip()
        return value or None
