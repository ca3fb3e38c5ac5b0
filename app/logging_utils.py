"""
app/logging_utils.py

Structured logging helpers for ingestion runs.
"""

from __future__ import annotations

import json
import logging
from typing import Any


def log_event(
    logger: logging.Logger,
    level: int,
    event: str,
    **fields: Any,
) -> None:
    """
    Emit one structured log line as compact, key-sorted JSON.

    Fields whose value is None are left out so a line only carries what the
    emitting stage actually measured.
    """

    if not logger.isEnabledFor(level):
        return
    payload = {key: value for key, value in fields.items() if value is not None}
    payload["event"] = event
    logger.log(level, json.dumps(payload, default=str, sort_keys=True, separators=(",", ":")))
