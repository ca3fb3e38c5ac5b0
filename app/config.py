"""
app/config.py

Pipeline configuration read from environment variables.

Every getter is cached; tests construct the settings dataclasses directly.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from functools import lru_cache
from typing import Callable, TypeVar

from db.config import load_env_files

logger = logging.getLogger(__name__)

NumberT = TypeVar("NumberT", int, float)

_TRUE_VALUES = frozenset({"1", "true", "yes", "on"})
_FALSE_VALUES = frozenset({"0", "false", "no", "off"})


@lru_cache(maxsize=1)
def _load_env_once() -> None:
    load_env_files()


def _env(name: str) -> str | None:
    """
    Return the stripped value of `name`, or None when unset or blank.
    """

    _load_env_once()
    value = os.getenv(name)
    if value is None or not value.strip():
        return None
    return value.strip()


def _env_bool(name: str, default: bool) -> bool:
    raw_value = _env(name)
    if raw_value is None:
        return default
    lowered = raw_value.lower()
    if lowered in _TRUE_VALUES:
        return True
    if lowered in _FALSE_VALUES:
        return False
    logger.warning("Ignoring invalid boolean setting name=%s value=%r", name, raw_value)
    return default


def _env_number(
    name: str,
    default: NumberT,
    cast: Callable[[str], NumberT],
    *,
    minimum: NumberT | None = None,
    maximum: NumberT | None = None,
) -> NumberT:
    """
    Parse a numeric setting and clamp it into `[minimum, maximum]`.

    Unparseable values fall back to `default` with a warning so a typo in a
    deployment does not stop the scheduler from starting.
    """

    raw_value = _env(name)
    value = default
    if raw_value is not None:
        try:
            value = cast(raw_value)
        except ValueError:
            logger.warning("Ignoring invalid numeric setting name=%s value=%r", name, raw_value)
    if minimum is not None and value < minimum:
        value = minimum
    if maximum is not None and value > maximum:
        value = maximum
    return value


@dataclass(frozen=True)
class InferenceSettings:
    """
    Structured-inference client and chunked executor settings.
    """

    model: str = "gpt-4o-mini"
    api_key: str | None = None
    base_url: str | None = None
    max_retries: int = 4
    base_delay_seconds: float = 2.0
    timeout_seconds: float = 60.0
    max_concurrency: int = 5
    chunk_byte_threshold: int = 8000
    tokens_per_record: int = 1500
    base_tokens: int = 1000


@dataclass(frozen=True)
class DeduplicationSettings:
    """
    Fingerprinting and change-classification settings.
    """

    amount_change_threshold: float = 0.05
    description_prefix: int = 200
    raw_fallback_prefix: int = 1000
    title_similarity: float = 0.85


@dataclass(frozen=True)
class ConnectorHTTPSettings:
    """
    Shared HTTP behavior settings for source connectors.
    """

    timeout_seconds: float = 15.0
    max_retries: int = 3
    backoff_initial_seconds: float = 0.5
    backoff_multiplier: float = 2.0
    rate_limit_per_second: float = 5.0


@dataclass(frozen=True)
class PipelineSettings:
    """
    Runtime settings for ingestion pipeline orchestration.
    """

    enrich_stale: bool = False
    max_pages: int = 50
    dedup_tokens_per_record: int = 1500
    sources_config_path: str = "config/sources.json"
    scheduler_interval_minutes: int = 360
    force_full_reprocessing: bool = False


@lru_cache(maxsize=1)
def get_inference_settings() -> InferenceSettings:
    """
    Return cached inference settings from environment variables.
    """

    return InferenceSettings(
        model=_env("INFERENCE_MODEL") or "gpt-4o-mini",
        api_key=_env("OPENAI_API_KEY"),
        base_url=_env("INFERENCE_BASE_URL"),
        max_retries=_env_number("INFERENCE_MAX_RETRIES", 4, int, minimum=0),
        base_delay_seconds=_env_number("INFERENCE_BASE_DELAY_SECONDS", 2.0, float, minimum=0.0),
        timeout_seconds=_env_number("INFERENCE_TIMEOUT_SECONDS", 60.0, float, minimum=1.0),
        max_concurrency=_env_number("INFERENCE_MAX_CONCURRENCY", 5, int, minimum=1),
        chunk_byte_threshold=_env_number("INFERENCE_CHUNK_BYTE_THRESHOLD", 8000, int, minimum=256),
        tokens_per_record=_env_number("INFERENCE_TOKENS_PER_RECORD", 1500, int, minimum=1),
        base_tokens=_env_number("INFERENCE_BASE_TOKENS", 1000, int, minimum=0),
    )


@lru_cache(maxsize=1)
def get_deduplication_settings() -> DeduplicationSettings:
    """
    Return cached deduplication settings from environment variables.
    """

    return DeduplicationSettings(
        amount_change_threshold=_env_number("DEDUP_AMOUNT_CHANGE_THRESHOLD", 0.05, float, minimum=0.0),
        description_prefix=_env_number("DEDUP_DESCRIPTION_PREFIX", 200, int, minimum=1),
        raw_fallback_prefix=_env_number("DEDUP_RAW_FALLBACK_PREFIX", 1000, int, minimum=1),
        title_similarity=_env_number("DEDUP_TITLE_SIMILARITY", 0.85, float, minimum=0.0, maximum=1.0),
    )


@lru_cache(maxsize=1)
def get_connector_http_settings() -> ConnectorHTTPSettings:
    """
    Return shared connector HTTP settings from environment variables.
    """

    return ConnectorHTTPSettings(
        timeout_seconds=_env_number("CONNECTOR_HTTP_TIMEOUT_SECONDS", 15.0, float, minimum=1.0),
        max_retries=_env_number("CONNECTOR_HTTP_MAX_RETRIES", 3, int, minimum=0),
        backoff_initial_seconds=_env_number("CONNECTOR_HTTP_BACKOFF_INITIAL_SECONDS", 0.5, float, minimum=0.1),
        backoff_multiplier=_env_number("CONNECTOR_HTTP_BACKOFF_MULTIPLIER", 2.0, float, minimum=1.0),
        rate_limit_per_second=_env_number("CONNECTOR_HTTP_RATE_LIMIT_PER_SECOND", 5.0, float, minimum=0.1),
    )


@lru_cache(maxsize=1)
def get_pipeline_settings() -> PipelineSettings:
    """
    Return ingestion pipeline settings from environment variables.
    """

    return PipelineSettings(
        enrich_stale=_env_bool("PIPELINE_ENRICH_STALE", False),
        max_pages=_env_number("PIPELINE_MAX_PAGES", 50, int, minimum=1),
        dedup_tokens_per_record=_env_number("PIPELINE_DEDUP_TOKENS_PER_RECORD", 1500, int, minimum=0),
        sources_config_path=_env("SOURCES_CONFIG_PATH") or "config/sources.json",
        scheduler_interval_minutes=_env_number("SCHEDULER_INTERVAL_MINUTES", 360, int, minimum=1),
        force_full_reprocessing=_env_bool("PIPELINE_FORCE_FULL_REPROCESSING", False),
    )
