from __future__ import annotations

import math
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping

from grantsync.errors import GrantSyncConfigError

ROOT_DIR = Path(__file__).resolve().parents[1]
DEFAULT_DB_PATH = ROOT_DIR / "data" / "grantsync.db"

_ENV_KEYS = {
    "grants_gov_api_key": "GRANTS_GOV_API_KEY",
    "sam_gov_api_key": "SAM_GOV_API_KEY",
    "db_path": "GRANTSYNC_DB_PATH",
    "requests_per_second": "GRANTSYNC_REQUESTS_PER_SECOND",
    "request_timeout_seconds": "GRANTSYNC_REQUEST_TIMEOUT_SECONDS",
    "detail_concurrency": "GRANTSYNC_DETAIL_CONCURRENCY",
    "page_delay_seconds": "GRANTSYNC_PAGE_DELAY_SECONDS",
    "keyword_delay_seconds": "GRANTSYNC_KEYWORD_DELAY_SECONDS",
}


@dataclass(frozen=True, slots=True)
class IngestSettings:
    """Runtime knobs shared by the HTTP client, the source clients and the CLI."""

    grants_gov_api_key: str | None = None
    sam_gov_api_key: str | None = None
    db_path: Path = DEFAULT_DB_PATH
    requests_per_second: float = 2.0
    request_timeout_seconds: float = 30.0
    detail_concurrency: int = 5
    page_delay_seconds: float = 0.2
    keyword_delay_seconds: float = 0.5

    def __post_init__(self) -> None:
        for field_name in (
            "requests_per_second",
            "request_timeout_seconds",
            "page_delay_seconds",
            "keyword_delay_seconds",
        ):
            value = float(getattr(self, field_name))
            if not math.isfinite(value):
                raise GrantSyncConfigError(f"Setting '{field_name}' must be finite.")
            if value < 0.0:
                raise GrantSyncConfigError(f"Setting '{field_name}' must be non-negative.")
        if self.request_timeout_seconds <= 0.0:
            raise GrantSyncConfigError("Setting 'request_timeout_seconds' must be positive.")
        if self.detail_concurrency < 1:
            raise GrantSyncConfigError("Setting 'detail_concurrency' must be at least 1.")

    @classmethod
    def baseline(cls) -> IngestSettings:
        return cls()

    @classmethod
    def from_mapping(cls, payload: Mapping[str, Any] | None) -> IngestSettings:
        values = payload or {}
        baseline = cls.baseline()
        try:
            return cls(
                grants_gov_api_key=_blank_to_none(values.get("grants_gov_api_key")),
                sam_gov_api_key=_blank_to_none(values.get("sam_gov_api_key")),
                db_path=Path(values.get("db_path") or baseline.db_path),
                requests_per_second=float(values.get("requests_per_second", baseline.requests_per_second)),
                request_timeout_seconds=float(
                    values.get("request_timeout_seconds", baseline.request_timeout_seconds)
                ),
                detail_concurrency=int(values.get("detail_concurrency", baseline.detail_concurrency)),
                page_delay_seconds=float(values.get("page_delay_seconds", baseline.page_delay_seconds)),
                keyword_delay_seconds=float(
                    values.get("keyword_delay_seconds", baseline.keyword_delay_seconds)
                ),
            )
        except (TypeError, ValueError) as exc:
            raise GrantSyncConfigError(f"Invalid ingest settings: {exc}") from exc

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> IngestSettings:
        source = os.environ if environ is None else environ
        payload = {
            field_name: source[env_key]
            for field_name, env_key in _ENV_KEYS.items()
            if source.get(env_key, "").strip()
        }
        return cls.from_mapping(payload)

    def to_dict(self, *, mask_secrets: bool = True) -> dict[str, Any]:
        return {
            "grants_gov_api_key": _mask(self.grants_gov_api_key) if mask_secrets else self.grants_gov_api_key,
            "sam_gov_api_key": _mask(self.sam_gov_api_key) if mask_secrets else self.sam_gov_api_key,
            "db_path": str(self.db_path),
            "requests_per_second": self.requests_per_second,
            "request_timeout_seconds": self.request_timeout_seconds,
            "detail_concurrency": self.detail_concurrency,
            "page_delay_seconds": self.page_delay_seconds,
            "keyword_delay_seconds": self.keyword_delay_seconds,
        }


def _mask(value: str | None) -> str | None:
    return "***" if value else None


def _blank_to_none(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None
