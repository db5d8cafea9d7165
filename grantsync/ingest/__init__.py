from __future__ import annotations

from .base import BaseSource, FetchStats
from .http import PoliteHttpClient
from .registry import SOURCE_REGISTRY, SourceConfig, register_sources

__all__ = [
    "BaseSource",
    "FetchStats",
    "PoliteHttpClient",
    "SOURCE_REGISTRY",
    "SourceConfig",
    "register_sources",
]
