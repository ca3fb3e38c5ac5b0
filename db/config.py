"""
db/config.py

Environment-driven database configuration for the ingestion store.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any

_PROJECT_ROOT = Path(__file__).resolve().parents[1]
_ENV_FILES = (".env", ".env.local")
_CLOUD_LIKE_ENVIRONMENTS = frozenset({"prod", "production", "staging", "cloud"})
_DRIVER_PREFIXES = ("postgres://", "postgresql://")
_DEFAULT_STATEMENT_TIMEOUT_MS = 30000


def _parse_env_line(line: str) -> tuple[str, str] | None:
    line = line.strip()
    if not line or line.startswith("#") or "=" not in line:
        return None
    if line.startswith("export "):
        line = line[len("export "):]
    key, value = (part.strip() for part in line.split("=", 1))
    if value[:1] in {'"', "'"} and value.endswith(value[:1]):
        value = value[1:-1]
    elif " #" in value:
        value = value.split(" #", 1)[0].rstrip()
    return (key, value) if key else None


def load_env_files() -> None:
    """
    Load KEY=VALUE pairs from `.env` and `.env.local` at the project root.

    Variables already present in the process environment win, so deployment
    settings are never overridden by a stray local file.
    """

    for filename in _ENV_FILES:
        env_path = _PROJECT_ROOT / filename
        if not env_path.is_file():
            continue
        for raw_line in env_path.read_text(encoding="utf-8").splitlines():
            parsed = _parse_env_line(raw_line)
            if parsed is not None:
                os.environ.setdefault(*parsed)


def normalize_postgres_url(url: str) -> str:
    """
    Rewrite bare postgres URLs to the psycopg 3 driver form.
    """

    for prefix in _DRIVER_PREFIXES:
        if url.startswith(prefix):
            return "postgresql+psycopg://" + url[len(prefix):]
    return url


def resolve_database_url() -> str:
    """
    Resolve the ingestion store URL.

    Priority:
    1) DATABASE_URL
    2) CLOUD_DATABASE_URL when ENVIRONMENT is cloud-like
    3) LOCAL_DATABASE_URL
    """

    load_env_files()
    environment = (os.getenv("ENVIRONMENT") or "local").strip().lower()
    candidates = [os.getenv("DATABASE_URL")]
    if environment in _CLOUD_LIKE_ENVIRONMENTS:
        candidates.append(os.getenv("CLOUD_DATABASE_URL"))
    candidates.append(os.getenv("LOCAL_DATABASE_URL"))

    for url in candidates:
        if url and url.strip():
            return normalize_postgres_url(url.strip())

    raise RuntimeError(
        "No ingestion store configured. Set DATABASE_URL, or LOCAL_DATABASE_URL "
        f"(CLOUD_DATABASE_URL is only read when ENVIRONMENT is one of {sorted(_CLOUD_LIKE_ENVIRONMENTS)})."
    )


def resolve_statement_timeout_ms() -> int:
    """
    Per-statement timeout applied to every store write, in milliseconds.
    """

    load_env_files()
    raw_value = (os.getenv("DB_STATEMENT_TIMEOUT_MS") or "").strip()
    if not raw_value.lstrip("-").isdigit():
        return _DEFAULT_STATEMENT_TIMEOUT_MS
    return max(0, int(raw_value))


def postgres_connect_args() -> dict[str, Any]:
    timeout_ms = resolve_statement_timeout_ms()
    if timeout_ms <= 0:
        return {}
    return {"options": f"-c statement_timeout={timeout_ms}"}
