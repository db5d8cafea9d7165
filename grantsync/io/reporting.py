from __future__ import annotations

import json
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Iterable, Mapping
from uuid import uuid4

import pandas as pd

from grantsync.store.models import IngestionRun, RunStatus, Source, utcnow

REPORT_PREFIX = "ingest_report_"
DEFAULT_STALE_AFTER = timedelta(hours=2)

RUN_COLUMNS = [
    "started_at",
    "source_name",
    "status",
    "total_fetched",
    "total_new",
    "total_updated",
    "total_unchanged",
    "total_errors",
    "completed_at",
    "stale",
]
SOURCE_COLUMNS = [
    "name",
    "display_name",
    "source_type",
    "is_active",
    "last_sync_at",
    "last_sync_status",
    "last_sync_count",
]


def write_json_atomic(payload: dict[str, Any], output_path: Path) -> None:
    output_path.parent.mkdir(parents=True, exist_ok=True)
    temp_path = output_path.parent / f"{output_path.name}.{uuid4().hex}.tmp"
    try:
        temp_path.write_text(json.dumps(payload, indent=2, sort_keys=True), encoding="utf-8")
        temp_path.replace(output_path)
    finally:
        if temp_path.exists():
            temp_path.unlink()


def report_path(report_dir: Path, generated_at: datetime) -> Path:
    return report_dir / f"{REPORT_PREFIX}{generated_at.strftime('%Y%m%dT%H%M%SZ')}.json"


def build_ingest_summary(
    results: Mapping[str, Mapping[str, Any]],
    failures: Mapping[str, str],
    *,
    generated_at: datetime | None = None,
) -> dict[str, Any]:
    """Combine per-source results and run-level failures into one report.

    ``results`` maps a source name to ``IngestionResult.to_dict()``; ``failures``
    maps a source name to the message of the exception that aborted its run.
    """

    generated_at = generated_at or utcnow()
    totals = {"fetched": 0, "new": 0, "updated": 0, "unchanged": 0, "errors": 0}
    for result in results.values():
        totals["fetched"] += int(result.get("total_fetched", 0))
        totals["new"] += int(result.get("total_new", 0))
        totals["updated"] += int(result.get("total_updated", 0))
        totals["unchanged"] += int(result.get("total_unchanged", 0))
        totals["errors"] += int(result.get("total_errors", 0))

    statuses = {name: str(result.get("status")) for name, result in results.items()}
    statuses.update({name: str(RunStatus.FAILED) for name in failures})
    failed_sources = sorted(name for name, status in statuses.items() if status == RunStatus.FAILED)

    return {
        "generated_at": generated_at.isoformat(),
        "sources_requested": sorted(statuses),
        "failed_sources": failed_sources,
        "ok": not failed_sources,
        "totals": totals,
        "results": {name: dict(result) for name, result in sorted(results.items())},
        "failures": dict(sorted(failures.items())),
    }


def runs_to_frame(
    runs: Iterable[IngestionRun],
    *,
    now: datetime | None = None,
    stale_after: timedelta = DEFAULT_STALE_AFTER,
) -> pd.DataFrame:
    reference = now or utcnow()
    rows = [
        {
            **{column: value for column, value in run.to_dict().items() if column in RUN_COLUMNS},
            "stale": run.is_stale(stale_after, now=reference),
        }
        for run in runs
    ]
    return pd.DataFrame(rows, columns=RUN_COLUMNS)


def sources_to_frame(sources: Iterable[Source]) -> pd.DataFrame:
    rows = [{column: source.to_dict()[column] for column in SOURCE_COLUMNS} for source in sources]
    return pd.DataFrame(rows, columns=SOURCE_COLUMNS)
