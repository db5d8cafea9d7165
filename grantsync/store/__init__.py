"""Persistence for sources, ingestion runs, raw records and grants."""

from grantsync.store.base import GrantStore
from grantsync.store.memory import InMemoryGrantStore
from grantsync.store.sqlite import SqliteGrantStore

__all__ = ["GrantStore", "InMemoryGrantStore", "SqliteGrantStore"]
