"""
Repository-layer exceptions for ingestion store flows.
"""

from __future__ import annotations


class StoreError(Exception):
    """Base exception for ingestion store failures."""


class PersistenceError(StoreError):
    """Raised when a store read or write fails.

    Propagates to the run coordinator, which marks the current stage failed.
    """

    def __init__(self, message: str, *, operation: str | None = None) -> None:
        super().__init__(message)
        self.operation = operation


class RecordNotFoundError(StoreError):
    """Raised when an update targets a row that no longer exists."""
