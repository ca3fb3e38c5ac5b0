from __future__ import annotations

import os
from logging.config import fileConfig

from alembic import context
from sqlalchemy import create_engine, pool

from db.base import Base
from db.config import load_env_files, normalize_postgres_url, postgres_connect_args, resolve_database_url
from db.models import (  # noqa: F401  - imports trigger Base.metadata registration
    CanonicalRecord,
    CanonicalRecordTag,
    PipelineRun,
    RawPayloadCacheEntry,
)

config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

target_metadata = Base.metadata

# Tables owned by this project; anything else in the database is left alone
# by autogenerate.
MANAGED_TABLES = frozenset(target_metadata.tables)


def _resolve_database_url() -> str:
    """
    Resolve the migration target URL.

    Priority:
    1) `-x db_url=...`
    2) ALEMBIC_DATABASE_URL
    3) sqlalchemy.url from the active Alembic config, when one is used
    4) the application resolution order in `db.config.resolve_database_url`
    """

    load_env_files()
    candidates = (
        context.get_x_argument(as_dictionary=True).get("db_url"),
        os.getenv("ALEMBIC_DATABASE_URL"),
        config.get_main_option("sqlalchemy.url"),
    )
    for candidate in candidates:
        if candidate and candidate.strip():
            url = normalize_postgres_url(candidate.strip())
            break
    else:
        url = resolve_database_url()

    if not url.startswith("postgresql"):
        raise RuntimeError(f"Ingestion migrations target PostgreSQL only, got {url.split(':', 1)[0]!r}.")
    return url


def _include_object(obj, name, type_, reflected, compare_to) -> bool:
    if type_ == "table":
        return name in MANAGED_TABLES
    table = getattr(obj, "table", None)
    return table is None or table.name in MANAGED_TABLES


def _configure_options() -> dict:
    return {
        "target_metadata": target_metadata,
        "include_object": _include_object,
        "compare_type": True,
        "compare_server_default": True,
    }


def run_migrations_offline() -> None:
    context.configure(
        url=_resolve_database_url(),
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        **_configure_options(),
    )

    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    engine = create_engine(
        _resolve_database_url(),
        poolclass=pool.NullPool,
        connect_args=postgres_connect_args(),
    )

    with engine.connect() as connection:
        context.configure(connection=connection, **_configure_options())

        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
