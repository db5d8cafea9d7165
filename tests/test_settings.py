from __future__ import annotations

from pathlib import Path

import pytest

from grantsync.config import DEFAULT_DB_PATH, IngestSettings
from grantsync.errors import GrantSyncConfigError, UnknownSourceError
from grantsync.ingest.registry import SCHEDULED_SOURCES, SOURCE_REGISTRY, get_source_config, register_sources


def test_baseline_settings_are_valid() -> None:
    settings = IngestSettings.baseline()

    assert settings.db_path == DEFAULT_DB_PATH
    assert settings.grants_gov_api_key is None
    assert settings.detail_concurrency == 5


def test_from_env_reads_known_keys_and_ignores_blanks() -> None:
    settings = IngestSettings.from_env(
        {
            "GRANTS_GOV_API_KEY": "modern-key",
            "SAM_GOV_API_KEY": "   ",
            "GRANTSYNC_DB_PATH": "/tmp/grants.db",
            "GRANTSYNC_REQUESTS_PER_SECOND": "4",
            "GRANTSYNC_DETAIL_CONCURRENCY": "2",
        }
    )

    assert settings.grants_gov_api_key == "modern-key"
    assert settings.sam_gov_api_key is None
    assert settings.db_path == Path("/tmp/grants.db")
    assert settings.requests_per_second == 4.0
    assert settings.detail_concurrency == 2


def test_invalid_values_raise_config_error() -> None:
    with pytest.raises(GrantSyncConfigError):
        IngestSettings.from_env({"GRANTSYNC_REQUESTS_PER_SECOND": "fast"})
    with pytest.raises(GrantSyncConfigError):
        IngestSettings.from_mapping({"page_delay_seconds": -1})
    with pytest.raises(GrantSyncConfigError):
        IngestSettings.from_mapping({"request_timeout_seconds": 0})
    with pytest.raises(GrantSyncConfigError):
        IngestSettings.from_mapping({"detail_concurrency": 0})
    with pytest.raises(GrantSyncConfigError):
        IngestSettings.from_mapping({"keyword_delay_seconds": float("nan")})


def test_to_dict_masks_secrets_by_default() -> None:
    settings = IngestSettings.from_mapping({"grants_gov_api_key": "modern-key"})

    assert settings.to_dict()["grants_gov_api_key"] == "***"
    assert settings.to_dict()["sam_gov_api_key"] is None
    assert settings.to_dict(mask_secrets=False)["grants_gov_api_key"] == "modern-key"
    assert IngestSettings.from_mapping(settings.to_dict(mask_secrets=False)) == settings


def test_register_sources_covers_the_registry() -> None:
    settings = IngestSettings.from_mapping({"grants_gov_api_key": "k", "detail_concurrency": 3, "keyword_delay_seconds": 1.5})

    sources = register_sources(settings)

    assert set(sources) == set(SOURCE_REGISTRY)
    assert set(SCHEDULED_SOURCES) <= set(sources)
    assert sources["grants_gov"].api_key == "k"
    assert sources["grants_gov"].detail_concurrency == 3
    assert sources["sam_gov"].api_key is None
    assert sources["usaspending"].request_delay_seconds == 1.5
    assert sources["nsf_awards"].keyword_delay_seconds == 1.5


def test_get_source_config_rejects_unknown_names() -> None:
    assert get_source_config("ca_grants").sync_frequency == "0 6 * * *"
    with pytest.raises(UnknownSourceError):
        get_source_config("nope")
