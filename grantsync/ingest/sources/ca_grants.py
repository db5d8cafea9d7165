from __future__ import annotations

import io
import logging
import time
from collections.abc import Callable
from datetime import datetime
from typing import Any

import pandas as pd

from grantsync.ingest.base import BaseSource
from grantsync.normalize.normalizer import normalize_california_grant
from grantsync.normalize.parsing import parse_date
from grantsync.normalize.schema import NormalizedGrant

logger = logging.getLogger(__name__)

CA_GRANTS_CSV_URL = (
    "https://data.ca.gov/dataset/e6a48de5-8c54-4643-a7b8-2b2c9d8f95f1/"
    "resource/111c8c88-21f6-453c-ae2c-b4785a0624f5/download/grants.csv"
)

# Renamed portal columns, applied only when the canonical column is absent.
COLUMN_ALIASES = {
    "Grant ID": "GrantID",
    "PortalID": "GrantID",
    "Title": "GrantTitle",
    "Grant Title": "GrantTitle",
    "Deadline": "ApplicationDeadline",
    "Application Deadline": "ApplicationDeadline",
    "Agency": "AgencyDept",
    "URL": "GrantURL",
    "Grant URL": "GrantURL",
    "Estimated Available Funds": "EstAvailFunds",
    "Eligible Applicants": "EligibleApplicants",
    "Geographic Eligibility": "GeographicEligibility",
    "Matching Funds": "MatchingFundsRequired",
}


def parse_portal_csv(text: str) -> list[dict[str, str]]:
    """Parse the portal export into string-valued rows.

    Quoted fields may contain commas, doubled quotes and newlines. Rows whose
    field count differs from the header are dropped.
    """

    if not text or not text.strip():
        return []
    try:
        frame = pd.read_csv(
            io.StringIO(text),
            dtype=str,
            keep_default_na=False,
            na_values=[],
            on_bad_lines="skip",
            skip_blank_lines=True,
        )
    except pd.errors.EmptyDataError:
        return []

    frame.columns = [str(column).strip() for column in frame.columns]
    # Short rows are padded with NaN; real empty cells stay "" without NA coercion.
    short_rows = frame.isna().any(axis=1)
    if short_rows.any():
        logger.info("ca_grants: skipping %d rows with missing fields", int(short_rows.sum()))
    frame = frame.loc[~short_rows]

    renames = {
        alias: canonical
        for alias, canonical in COLUMN_ALIASES.items()
        if alias in frame.columns and canonical not in frame.columns
    }
    frame = frame.rename(columns=renames)
    frame = frame.apply(lambda column: column.str.strip())
    return frame.to_dict(orient="records")


def is_open(row: dict[str, Any], *, now: datetime) -> bool:
    deadline = parse_date(row.get("ApplicationDeadline"))
    if deadline is None:
        return True
    return deadline > now


class CaliforniaGrantsSource(BaseSource):
    name = "ca_grants"

    def __init__(
        self,
        *,
        csv_url: str = CA_GRANTS_CSV_URL,
        clock: Callable[[], datetime] | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        super().__init__(sleep=sleep)
        self.csv_url = csv_url
        self._clock = clock or self.utcnow

    def fetch_records(self, http_client: Any) -> list[dict[str, Any]]:
        self.reset_stats()
        self.fetch_stats.requests_attempted += 1
        self.fetch_stats.endpoints_used.append(self.csv_url)
        rows = parse_portal_csv(http_client.get_text(self.csv_url))
        self.fetch_stats.records_seen = len(rows)
        now = self._clock()
        open_rows = [row for row in rows if is_open(row, now=now)]
        logger.info("ca_grants: %d of %d rows are open", len(open_rows), len(rows))
        return open_rows

    def normalize(self, record: dict[str, Any], *, now: datetime | None = None) -> NormalizedGrant:
        return normalize_california_grant(record, now=now)

    def external_id(self, record: dict[str, Any]) -> str | None:
        value = str(record.get("GrantID") or "").strip()
        return value or None
