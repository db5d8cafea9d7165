"""Run reports and status tables."""

from grantsync.io.reporting import build_ingest_summary, runs_to_frame, sources_to_frame, write_json_atomic

__all__ = ["build_ingest_summary", "runs_to_frame", "sources_to_frame", "write_json_atomic"]
