"""
app/metrics.py

Observability sink for stage and run metrics payloads.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any, Protocol

from app.logging_utils import log_event

logger = logging.getLogger(__name__)


class MetricsEvent:
    STAGE_COMPLETED = "stage_completed"
    STAGE_FAILED = "stage_failed"
    RUN_COMPLETED = "run_completed"
    RUN_FAILED = "run_failed"
    RUN_RESUMED = "run_resumed"


class MetricsSink(Protocol):
    def emit(self, event: str, payload: Mapping[str, Any]) -> None:
        ...


class LoggingMetricsSink:
    """
    Writes every metrics payload as one structured JSON log line.
    """

    def __init__(self, *, sink_logger: logging.Logger | None = None, level: int = logging.INFO) -> None:
        self._logger = sink_logger or logger
        self._level = level

    def emit(self, event: str, payload: Mapping[str, Any]) -> None:
        log_event(self._logger, self._level, event, **dict(payload))


class NullMetricsSink:
    def emit(self, event: str, payload: Mapping[str, Any]) -> None:
        return None
