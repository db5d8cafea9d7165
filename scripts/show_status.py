from __future__ import annotations

import argparse
import logging
import sys
from datetime import timedelta
from pathlib import Path

import pandas as pd

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from grantsync.config import IngestSettings
from grantsync.errors import GrantSyncError
from grantsync.io.reporting import runs_to_frame, sources_to_frame
from grantsync.store.sqlite import SqliteGrantStore

logger = logging.getLogger("show_status")


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Show ingestion source status and recent runs.")
    parser.add_argument("--db-path", type=Path, default=None)
    parser.add_argument("--limit", type=int, default=10)
    parser.add_argument(
        "--stale-after-minutes",
        type=int,
        default=120,
        help="RUNNING runs older than this are reported as stale.",
    )
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    try:
        settings = IngestSettings.from_env()
    except GrantSyncError as exc:
        logger.error("Invalid configuration: %s", exc)
        return 1

    db_path = args.db_path or Path(settings.db_path)
    if not db_path.is_absolute():
        db_path = ROOT_DIR / db_path
    if not db_path.exists():
        logger.error("No grant store found at %s; run scripts/run_ingest.py first.", db_path)
        return 1

    store = SqliteGrantStore(db_path)
    sources = sources_to_frame(store.list_sources())
    runs = runs_to_frame(
        store.list_runs(args.limit),
        stale_after=timedelta(minutes=args.stale_after_minutes),
    )

    with pd.option_context("display.max_columns", None, "display.width", 200):
        print("Sources")
        print(sources.to_string(index=False) if not sources.empty else "(none)")
        print()
        print(f"Recent runs (limit={args.limit})")
        print(runs.to_string(index=False) if not runs.empty else "(none)")

    stale_count = int(runs["stale"].sum()) if not runs.empty else 0
    if stale_count:
        logger.warning("%d RUNNING run(s) look abandoned.", stale_count)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
