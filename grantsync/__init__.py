"""Grant ingestion pipeline: fetch, normalize, deduplicate and persist funding opportunities."""

__version__ = "0.1.0"
