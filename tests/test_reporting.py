from __future__ import annotations

import json
from datetime import UTC, datetime, timedelta
from pathlib import Path

from grantsync.io.reporting import (
    build_ingest_summary,
    report_path,
    runs_to_frame,
    sources_to_frame,
    write_json_atomic,
)
from grantsync.store.models import IngestionRun, IngestionSourceType, RunStatus, Source

NOW = datetime(2026, 6, 1, 12, 0, tzinfo=UTC)


def test_write_json_atomic_leaves_no_temp_files(tmp_path: Path) -> None:
    output_path = tmp_path / "reports" / "report.json"

    write_json_atomic({"b": 1, "a": [1, 2]}, output_path)

    assert json.loads(output_path.read_text(encoding="utf-8")) == {"a": [1, 2], "b": 1}
    assert [path.name for path in output_path.parent.iterdir()] == ["report.json"]


def test_report_path_uses_compact_utc_timestamp(tmp_path: Path) -> None:
    assert report_path(tmp_path, NOW).name == "ingest_report_20260601T120000Z.json"


def test_summary_totals_and_failed_sources() -> None:
    results = {
        "grants_gov": {"status": "PARTIAL", "total_fetched": 10, "total_new": 3, "total_updated": 2, "total_unchanged": 3, "total_errors": 2},
        "ca_grants": {"status": "SUCCESS", "total_fetched": 4, "total_new": 0, "total_updated": 0, "total_unchanged": 4, "total_errors": 0},
    }

    summary = build_ingest_summary(results, {"sam_gov": "MissingCredentialError: no key"}, generated_at=NOW)

    assert summary["ok"] is False
    assert summary["failed_sources"] == ["sam_gov"]
    assert summary["sources_requested"] == ["ca_grants", "grants_gov", "sam_gov"]
    assert summary["totals"] == {"fetched": 14, "new": 3, "updated": 2, "unchanged": 7, "errors": 2}
    assert summary["generated_at"] == NOW.isoformat()


def test_summary_is_ok_when_partial_runs_only() -> None:
    summary = build_ingest_summary({"grants_gov": {"status": "PARTIAL"}}, {}, generated_at=NOW)

    assert summary["ok"] is True
    assert summary["failed_sources"] == []


def test_runs_frame_flags_stale_running_rows() -> None:
    runs = [
        IngestionRun(source_id="s", source_name="grants_gov", started_at=NOW - timedelta(hours=3)),
        IngestionRun(source_id="s", source_name="ca_grants", started_at=NOW - timedelta(minutes=5)),
        IngestionRun(
            source_id="s",
            source_name="nsf_awards",
            status=RunStatus.SUCCESS,
            started_at=NOW - timedelta(days=1),
            completed_at=NOW - timedelta(days=1) + timedelta(minutes=2),
        ),
    ]

    frame = runs_to_frame(runs, now=NOW)

    assert frame["stale"].tolist() == [True, False, False]
    assert frame["status"].tolist() == ["RUNNING", "RUNNING", "SUCCESS"]
    assert list(frame.columns)[-1] == "stale"


def test_sources_frame_has_one_row_per_source() -> None:
    sources = [
        Source(name="grants_gov", display_name="Grants.gov", source_type=IngestionSourceType.FEDERAL_API, base_url="https://www.grants.gov"),
    ]

    frame = sources_to_frame(sources)

    assert frame.loc[0, "name"] == "grants_gov"
    assert frame.loc[0, "source_type"] == "FEDERAL_API"
    assert runs_to_frame([], now=NOW).empty
