from __future__ import annotations

from dataclasses import dataclass
from typing import Mapping

from grantsync.config import IngestSettings
from grantsync.errors import UnknownSourceError
from grantsync.store.models import IngestionSourceType

from .base import BaseSource
from .sources.ca_grants import CaliforniaGrantsSource
from .sources.grants_gov import GrantsGovSource
from .sources.nsf_awards import NsfAwardsSource
from .sources.propublica import ProPublicaSource
from .sources.sam_gov import SamGovSource
from .sources.usaspending import USASpendingSource


@dataclass(frozen=True, slots=True)
class SourceConfig:
    name: str
    display_name: str
    source_type: IngestionSourceType
    base_url: str
    sync_frequency: str | None = None


SOURCE_REGISTRY: Mapping[str, SourceConfig] = {
    config.name: config
    for config in (
        SourceConfig("grants_gov", "Grants.gov", IngestionSourceType.FEDERAL_API, "https://www.grants.gov", "0 6 * * *"),
        SourceConfig("ca_grants", "California Grants Portal", IngestionSourceType.STATE_CSV, "https://grants.ca.gov", "0 6 * * *"),
        SourceConfig("usaspending", "USAspending.gov Awards", IngestionSourceType.SPENDING_API, "https://www.usaspending.gov"),
        SourceConfig("nsf_awards", "NSF Award Search", IngestionSourceType.RESEARCH_API, "https://www.nsf.gov"),
        SourceConfig(
            "propublica_990",
            "ProPublica Nonprofit Explorer",
            IngestionSourceType.FOUNDATION_990,
            "https://projects.propublica.org/nonprofits",
        ),
        SourceConfig("sam_gov", "SAM.gov Assistance Listings", IngestionSourceType.FEDERAL_API, "https://sam.gov"),
    )
}

# Sources run by the daily scheduled job.
SCHEDULED_SOURCES = ("grants_gov", "ca_grants")


def get_source_config(name: str) -> SourceConfig:
    try:
        return SOURCE_REGISTRY[name]
    except KeyError:
        raise UnknownSourceError(name) from None


def register_sources(settings: IngestSettings | None = None) -> dict[str, BaseSource]:
    settings = settings or IngestSettings.baseline()
    sources: list[BaseSource] = [
        GrantsGovSource(
            api_key=settings.grants_gov_api_key,
            page_delay_seconds=settings.page_delay_seconds,
            detail_concurrency=settings.detail_concurrency,
        ),
        CaliforniaGrantsSource(),
        USASpendingSource(request_delay_seconds=settings.keyword_delay_seconds),
        NsfAwardsSource(keyword_delay_seconds=settings.keyword_delay_seconds),
        ProPublicaSource(keyword_delay_seconds=settings.keyword_delay_seconds),
        SamGovSource(api_key=settings.sam_gov_api_key, keyword_delay_seconds=settings.keyword_delay_seconds),
    ]
    return {source.name: source for source in sources}
