"""
tests/test_config.py

Pytest unit tests for environment-driven settings.
"""

from __future__ import annotations

import pytest

from app.config import get_connector_http_settings, get_deduplication_settings, get_pipeline_settings
from db.config import normalize_postgres_url, postgres_connect_args, resolve_database_url


@pytest.fixture(autouse=True)
def _fresh_settings():
    getters = (get_connector_http_settings, get_deduplication_settings, get_pipeline_settings)
    for getter in getters:
        getter.cache_clear()
    yield
    for getter in getters:
        getter.cache_clear()


def test_defaults_apply_when_unset(monkeypatch) -> None:
    for name in ("PIPELINE_MAX_PAGES", "PIPELINE_ENRICH_STALE", "SOURCES_CONFIG_PATH"):
        monkeypatch.delenv(name, raising=False)

    settings = get_pipeline_settings()

    assert settings.max_pages == 50
    assert settings.enrich_stale is False
    assert settings.sources_config_path == "config/sources.json"


def test_values_are_parsed_and_clamped(monkeypatch) -> None:
    monkeypatch.setenv("CONNECTOR_HTTP_MAX_RETRIES", "-2")
    monkeypatch.setenv("CONNECTOR_HTTP_TIMEOUT_SECONDS", "30")
    monkeypatch.setenv("DEDUP_TITLE_SIMILARITY", "1.7")

    http = get_connector_http_settings()

    assert http.max_retries == 0
    assert http.timeout_seconds == 30.0
    assert get_deduplication_settings().title_similarity == 1.0


def test_invalid_values_fall_back_to_defaults(monkeypatch) -> None:
    monkeypatch.setenv("PIPELINE_MAX_PAGES", "lots")
    monkeypatch.setenv("PIPELINE_ENRICH_STALE", "maybe")
    monkeypatch.setenv("SOURCES_CONFIG_PATH", "   ")

    settings = get_pipeline_settings()

    assert settings.max_pages == 50
    assert settings.enrich_stale is False
    assert settings.sources_config_path == "config/sources.json"


def test_boolean_spellings(monkeypatch) -> None:
    monkeypatch.setenv("PIPELINE_ENRICH_STALE", "Yes")
    assert get_pipeline_settings().enrich_stale is True


def test_force_full_reprocessing_flag(monkeypatch) -> None:
    monkeypatch.delenv("PIPELINE_FORCE_FULL_REPROCESSING", raising=False)
    assert get_pipeline_settings().force_full_reprocessing is False

    get_pipeline_settings.cache_clear()
    monkeypatch.setenv("PIPELINE_FORCE_FULL_REPROCESSING", "on")
    assert get_pipeline_settings().force_full_reprocessing is True


# ---------------------------------------------------------------------------
# Database URL resolution
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    ("url", "expected"),
    [
        ("postgres://u:p@db/ingest", "postgresql+psycopg://u:p@db/ingest"),
        ("postgresql://u:p@db/ingest", "postgresql+psycopg://u:p@db/ingest"),
        ("postgresql+psycopg://u:p@db/ingest", "postgresql+psycopg://u:p@db/ingest"),
    ],
)
def test_postgres_urls_use_psycopg_driver(url, expected) -> None:
    assert normalize_postgres_url(url) == expected


def test_cloud_url_only_read_in_cloud_environments(monkeypatch) -> None:
    monkeypatch.delenv("DATABASE_URL", raising=False)
    monkeypatch.setenv("CLOUD_DATABASE_URL", "postgres://cloud/db")
    monkeypatch.setenv("LOCAL_DATABASE_URL", "postgres://local/db")

    monkeypatch.setenv("ENVIRONMENT", "local")
    assert resolve_database_url() == "postgresql+psycopg://local/db"

    monkeypatch.setenv("ENVIRONMENT", "Production")
    assert resolve_database_url() == "postgresql+psycopg://cloud/db"


def test_statement_timeout_connect_args(monkeypatch) -> None:
    monkeypatch.setenv("DB_STATEMENT_TIMEOUT_MS", "5000")
    assert postgres_connect_args() == {"options": "-c statement_timeout=5000"}

    monkeypatch.setenv("DB_STATEMENT_TIMEOUT_MS", "0")
    assert postgres_connect_args() == {}
