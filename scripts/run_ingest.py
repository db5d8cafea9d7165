from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import Any

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from grantsync.config import IngestSettings
from grantsync.errors import GrantSyncError
from grantsync.ingest.http import PoliteHttpClient
from grantsync.ingest.registry import SCHEDULED_SOURCES, register_sources
from grantsync.io.reporting import build_ingest_summary, report_path, write_json_atomic
from grantsync.pipeline.orchestrator import IngestionOrchestrator
from grantsync.store.base import GrantStore
from grantsync.store.models import RunStatus, utcnow
from grantsync.store.sqlite import SqliteGrantStore

logger = logging.getLogger("run_ingest")


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run grant ingestion for one or more sources.")
    parser.add_argument(
        "--source",
        action="append",
        dest="sources",
        default=None,
        help="Source name to ingest (repeatable). Defaults to the scheduled sources.",
    )
    parser.add_argument("--all", action="store_true", help="Run every registered source.")
    parser.add_argument("--db-path", type=Path, default=None)
    parser.add_argument("--report-dir", type=Path, default=ROOT_DIR / "data" / "reports")
    parser.add_argument("--requests-per-second", type=float, default=None)
    parser.add_argument("--request-timeout-seconds", type=float, default=None)
    parser.add_argument("--detail-concurrency", type=int, default=None)
    return parser.parse_args(argv)


def _resolve_repo_path(path: Path) -> Path:
    if path.is_absolute():
        return path
    return ROOT_DIR / path


def resolve_settings(args: argparse.Namespace, *, environ: dict[str, str] | None = None) -> IngestSettings:
    """Environment first, then any CLI flag that was given."""

    values = IngestSettings.from_env(environ).to_dict(mask_secrets=False)
    overrides = {
        "db_path": args.db_path,
        "requests_per_second": args.requests_per_second,
        "request_timeout_seconds": args.request_timeout_seconds,
        "detail_concurrency": args.detail_concurrency,
    }
    values.update({key: value for key, value in overrides.items() if value is not None})
    return IngestSettings.from_mapping(values)


def build_store(settings: IngestSettings) -> GrantStore:
    return SqliteGrantStore(_resolve_repo_path(Path(settings.db_path)))


def run_ingest(
    *,
    source_names: list[str] | None,
    settings: IngestSettings,
    report_dir: Path,
) -> dict[str, Any]:
    started_at = utcnow()
    store = build_store(settings)
    sources = register_sources(settings)
    names = list(source_names or SCHEDULED_SOURCES)

    client = PoliteHttpClient(
        requests_per_second=settings.requests_per_second,
        timeout_seconds=settings.request_timeout_seconds,
    )
    results: dict[str, dict[str, Any]] = {}
    failures: dict[str, str] = {}
    try:
        orchestrator = IngestionOrchestrator(store, sources, client)
        for name in names:
            try:
                result = orchestrator.run_ingestion(name)
            except Exception as exc:
                failures[name] = f"{type(exc).__name__}: {exc}"
                logger.exception("Source %s failed. Continuing with remaining sources.", name)
                continue
            results[name] = result.to_dict()
    finally:
        client.close()
        summary = build_ingest_summary(results, failures, generated_at=started_at)
        summary["config"] = settings.to_dict()
        output_path = report_path(_resolve_repo_path(report_dir), started_at)
        write_json_atomic(summary, output_path)
        summary["report_path"] = str(output_path.resolve())
    return summary


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    try:
        settings = resolve_settings(args)
    except GrantSyncError as exc:
        logger.error("Invalid configuration: %s", exc)
        return 1

    source_names = list(register_sources(settings)) if args.all else args.sources
    summary = run_ingest(source_names=source_names, settings=settings, report_dir=args.report_dir)

    for name, result in summary["results"].items():
        print(
            f"{name}: {result['status']} fetched={result['total_fetched']} new={result['total_new']} "
            f"updated={result['total_updated']} unchanged={result['total_unchanged']} errors={result['total_errors']}"
        )
    for name, message in summary["failures"].items():
        print(f"{name}: {RunStatus.FAILED} ({message})")
    print(f"Wrote ingest report: {summary['report_path']}")
    return 0 if summary["ok"] else 1


if __name__ == "__main__":
    raise SystemExit(main())
