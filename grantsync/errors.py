"""grantsync exception hierarchy.

Each pipeline boundary raises its own error type so callers can tell a
caller mistake from an unreachable provider from a broken record.
"""

from __future__ import annotations


class GrantSyncError(Exception):
    """Base exception for all grantsync failures."""


class GrantSyncConfigError(GrantSyncError):
    """Raised for invalid runtime configuration."""


class UnknownSourceError(GrantSyncError):
    """Raised when a source name is not in the registry or has no client."""

    def __init__(self, source_name: str, reason: str | None = None) -> None:
        self.source_name = source_name
        message = reason or f"Unknown ingestion source: {source_name!r}"
        super().__init__(message)


class UpstreamUnavailableError(GrantSyncError):
    """Raised for network failures and non-2xx responses from a provider."""

    def __init__(
        self,
        message: str,
        *,
        url: str | None = None,
        status_code: int | None = None,
        body_excerpt: str | None = None,
    ) -> None:
        self.url = url
        self.status_code = status_code
        self.body_excerpt = body_excerpt
        super().__init__(message)


class MissingCredentialError(UpstreamUnavailableError):
    """Raised when a keyed provider is used without an API key."""


class RecordProcessingError(GrantSyncError):
    """Raised when one fetched record cannot be normalized or persisted."""

    def __init__(self, external_id: str | None, message: str) -> None:
        self.external_id = external_id
        super().__init__(message)


class StoreError(GrantSyncError):
    """Raised for persistence contract violations."""


class TerminalRunError(StoreError):
    """Raised when a finished ingestion run is updated again."""
