from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

import pytest

from grantsync.errors import MissingCredentialError, UpstreamUnavailableError
from grantsync.ingest.sources.nsf_awards import NSF_AWARDS_URL, NsfAwardsSource, lookback_start
from grantsync.ingest.sources.propublica import ProPublicaSource, is_likely_foundation
from grantsync.ingest.sources.sam_gov import SamGovSource, flatten_listing
from grantsync.ingest.sources.usaspending import SPENDING_BY_AWARD_URL, USASpendingSource

NOW = datetime(2026, 10, 17, tzinfo=UTC)


class _ScriptedClient:
    """Answers each call from a handler keyed by the varying request field."""

    def __init__(self, handler) -> None:  # noqa: ANN001
        self.handler = handler
        self.calls: list[tuple[str, Any]] = []

    def post_json(self, url: str, *, payload: Any, headers: dict[str, str] | None = None) -> Any:
        self.calls.append((url, payload))
        return self.handler(payload)

    def get_json(self, url: str, *, params: dict[str, Any] | None = None, headers: dict[str, str] | None = None) -> Any:
        self.calls.append((url, params))
        return self.handler(params)


def test_usaspending_isolates_failed_program_codes() -> None:
    def handler(payload: dict[str, Any]) -> Any:
        code = payload["filters"]["program_numbers"][0]
        if code == "84.027":
            raise UpstreamUnavailableError("HTTP POST returned 500", status_code=500)
        return {
            "results": [
                {"Award ID": f"A-{code}", "Recipient Name": "District", "CFDA Number": None},
                {"Award ID": "A-shared", "Recipient Name": "Shared", "CFDA Number": "84.010"},
            ]
        }

    sleeps: list[float] = []
    source = USASpendingSource(
        program_codes=("84.010", "84.027", "10.553"),
        clock=lambda: NOW,
        sleep=sleeps.append,
    )
    client = _ScriptedClient(handler)

    awards = source.fetch_records(client)

    assert [award["Award ID"] for award in awards] == ["A-84.010", "A-shared", "A-10.553"]
    assert awards[2]["CFDA Number"] == "10.553"
    assert source.fetch_stats.requests_failed == 1
    assert source.fetch_stats.failures[0]["target"] == "84.027"
    assert source.fetch_stats.duplicates_skipped == 1
    assert sleeps == [0.3, 0.3]
    assert client.calls[0][0] == SPENDING_BY_AWARD_URL
    assert client.calls[0][1]["filters"]["time_period"][0]["end_date"] == "2026-10-17"


def test_usaspending_raises_when_every_code_fails() -> None:
    def handler(_payload: Any) -> Any:
        raise UpstreamUnavailableError("HTTP POST returned 503", status_code=503)

    source = USASpendingSource(program_codes=("84.010", "84.027"), clock=lambda: NOW, sleep=lambda _s: None)

    with pytest.raises(UpstreamUnavailableError):
        source.fetch_records(_ScriptedClient(handler))
    assert source.fetch_stats.requests_failed == 2


def test_nsf_lookback_start_is_first_of_month_two_years_back() -> None:
    assert lookback_start(NOW) == "10/01/2024"
    assert lookback_start(datetime(2026, 1, 31, tzinfo=UTC), years=1) == "01/01/2025"


def test_nsf_search_caps_page_size_and_reads_award_list() -> None:
    def handler(params: dict[str, Any]) -> Any:
        return {"response": {"award": [{"id": f"{params['keyword']}-1", "title": "Outreach"}]}}

    source = NsfAwardsSource(keywords=("K-12 outreach",), results_per_keyword=100, clock=lambda: NOW)
    client = _ScriptedClient(handler)

    awards = source.fetch_records(client)

    assert [award["id"] for award in awards] == ["K-12 outreach-1"]
    url, params = client.calls[0]
    assert url == NSF_AWARDS_URL
    assert params["rpp"] == 25
    assert params["dateStart"] == "10/01/2024"


def test_nsf_unexpected_body_is_upstream_error() -> None:
    source = NsfAwardsSource(keywords=("STEM education",), clock=lambda: NOW)

    with pytest.raises(UpstreamUnavailableError):
        source.fetch_records(_ScriptedClient(lambda _params: ["not", "a", "mapping"]))


def test_propublica_keeps_only_likely_foundations() -> None:
    body = {
        "organizations": [
            {"ein": 1, "name": "Springfield Education Foundation", "ntee_code": "B11"},
            {"ein": 2, "name": "Community Grantmakers", "ntee_code": "T20"},
            {"ein": 3, "name": "Springfield PTA", "ntee_code": "B94"},
        ]
    }
    source = ProPublicaSource(search_terms=("education foundation",), sleep=lambda _s: None)

    organizations = source.fetch_records(_ScriptedClient(lambda _params: body))

    assert [org["ein"] for org in organizations] == [1, 2]
    assert is_likely_foundation({"name": "Scholarship Fund of Ohio"}) is True
    assert is_likely_foundation({"name": "Booster Club"}) is False


def test_sam_gov_requires_api_key() -> None:
    source = SamGovSource(api_key=None)

    with pytest.raises(MissingCredentialError):
        source.fetch_records(_ScriptedClient(lambda _params: {}))


def test_sam_gov_flattens_alias_fields() -> None:
    listing = flatten_listing({"assistanceListingId": "84.010", "title": "Title I Grants", "programTitle": ""})

    assert listing["assistanceListingNumber"] == "84.010"
    assert listing["programTitle"] == "Title I Grants"


def test_sam_gov_reads_results_and_sends_key() -> None:
    body = {"assistanceListingsData": [{"assistanceListingId": "84.027", "title": "Special Education"}]}
    source = SamGovSource(api_key="sam-key", keywords=("special education",), sleep=lambda _s: None)
    client = _ScriptedClient(lambda _params: body)

    listings = source.fetch_records(client)

    assert [source.external_id(listing) for listing in listings] == ["84.027"]
    assert client.calls[0][1]["api_key"] == "sam-key"
