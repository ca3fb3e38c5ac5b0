"""
app/errors.py

Error taxonomy shared by the ingestion pipeline components.

Retryable errors carry ``retryable = True`` and are classified by the inference
retry policy. ``retry_cost`` is attached to the final error raised by the retry
combinator so callers can report what the failed attempts consumed.
"""

from __future__ import annotations

import uuid
from typing import Any, Sequence

from db.repositories.errors import PersistenceError, StoreError


class PipelineError(Exception):
    """Base class for ingestion pipeline errors."""

    retryable: bool = False

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.retry_cost: Any = None


class ClientConfigError(PipelineError):
    """
    Fatal request or configuration error.

    Raised for bad-request/auth responses from the inference service and for
    malformed source configuration. Never retried.
    """

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class RetryableError(PipelineError):
    """Base for errors the retry policy may retry."""

    retryable = True

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        usage: Any = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.usage = usage


class RateLimitError(RetryableError):
    """Upstream rejected the call because the caller is rate limited."""


class OverloadError(RetryableError):
    """Upstream service is overloaded or temporarily unavailable."""


class TransientIOError(RetryableError):
    """Timeouts, dropped connections and other transient failures."""


class SchemaValidationError(PipelineError):
    """Raised when inference output does not conform to the requested schema.

    Attributes:
        stage: Which validation step failed ("json_parse" or "schema").
        errors: Human-readable error descriptions.
        raw_response: The original output that failed validation.
    """

    def __init__(
        self,
        stage: str,
        errors: Sequence[str],
        raw_response: str,
    ) -> None:
        self.stage = stage
        self.errors = list(errors)
        self.raw_response = raw_response
        super().__init__(
            f"Inference output validation failed at stage '{stage}': " + "; ".join(self.errors)
        )


class FingerprintComputationError(PipelineError):
    """Raised internally when a payload fingerprint cannot be computed."""


class InvalidStateError(PipelineError):
    """Raised on an illegal run or stage transition."""

    def __init__(self, message: str, *, run_id: uuid.UUID | None = None) -> None:
        super().__init__(message)
        self.run_id = run_id


class EnrichmentFailedError(PipelineError):
    """Raised when every enrichment chunk of a run failed."""

    def __init__(self, message: str, *, failed_chunks: int, errors: Sequence[str] = ()) -> None:
        super().__init__(message)
        self.failed_chunks = failed_chunks
        self.errors = list(errors)


class ConnectorRequestError(PipelineError):
    """
    Raised when a source connector cannot fetch data after retries.
    """

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


__all__ = [
    "ClientConfigError",
    "ConnectorRequestError",
    "EnrichmentFailedError",
    "FingerprintComputationError",
    "InvalidStateError",
    "OverloadError",
    "PersistenceError",
    "PipelineError",
    "RateLimitError",
    "RetryableError",
    "SchemaValidationError",
    "StoreError",
    "TransientIOError",
]
