"""
db/session.py

SQLAlchemy engine and session factory for the ingestion store.

The engine is created lazily so importing the stores never needs a reachable
database; tests pass their own session factory instead.
"""

from __future__ import annotations

import os
from typing import Any

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from db.config import postgres_connect_args, resolve_database_url

# engine keyword -> (environment variable, default)
_POOL_OPTIONS: dict[str, tuple[str, int]] = {
    "pool_recycle": ("DB_POOL_RECYCLE", 1800),
    "pool_size": ("DB_POOL_SIZE", 5),
    "max_overflow": ("DB_MAX_OVERFLOW", 10),
}

_engine: Engine | None = None
_session_factory: sessionmaker[Session] | None = None


def _pool_options() -> dict[str, Any]:
    options: dict[str, Any] = {}
    for keyword, (env_name, default) in _POOL_OPTIONS.items():
        raw_value = (os.getenv(env_name) or "").strip()
        options[keyword] = int(raw_value) if raw_value.isdigit() else default
    return options


def create_db_engine() -> Engine:
    database_url = resolve_database_url()
    if not database_url.startswith("postgresql"):
        raise RuntimeError("The ingestion store requires a PostgreSQL URL.")

    return create_engine(
        database_url,
        echo=(os.getenv("SQL_ECHO") or "").strip().lower() in {"1", "true", "yes", "on"},
        pool_pre_ping=True,
        connect_args=postgres_connect_args(),
        **_pool_options(),
    )


def get_engine() -> Engine:
    """Return the shared engine, creating it on first call."""
    global _engine
    if _engine is None:
        _engine = create_db_engine()
    return _engine


def build_session_factory(engine: Engine) -> sessionmaker[Session]:
    # Stores hand detached snapshots back to services, so attributes must stay
    # loaded after commit.
    return sessionmaker(
        bind=engine,
        class_=Session,
        autoflush=False,
        expire_on_commit=False,
    )


def SessionLocal() -> Session:
    """Open a session on the shared engine."""
    global _session_factory
    if _session_factory is None:
        _session_factory = build_session_factory(get_engine())
    return _session_factory()
