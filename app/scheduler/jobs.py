"""
app/scheduler/jobs.py

APScheduler-based scheduler for periodic source ingestion.

Sources are read from the sources file (``SOURCES_CONFIG_PATH``) when the
scheduler is built. Every enabled source gets one interval job that runs a
full pipeline pass every ``SCHEDULER_INTERVAL_MINUTES``.

Lifecycle
----------
Call ``build_scheduler()`` once to get a configured ``BackgroundScheduler``.
The caller starts it and shuts it down gracefully.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable

from apscheduler.schedulers.background import BackgroundScheduler

from app.config import get_pipeline_settings
from app.connectors.source_config import load_sources
from app.domain.source import Source
from app.errors import PersistenceError, PipelineError
from app.services.ingestion_pipeline_service import (
    IngestionPipelineService,
    get_ingestion_pipeline_service,
)

logger = logging.getLogger(__name__)

ServiceFactory = Callable[[], IngestionPipelineService]


def run_source_ingestion(
    source: Source,
    service_factory: ServiceFactory = get_ingestion_pipeline_service,
) -> None:
    """
    Run one pipeline pass for ``source``.

    Failures are already recorded on the run; they are logged here so one
    failing source never stops the scheduler.
    """
    logger.info("Scheduler: ingestion starting source_id=%s", source.id)
    try:
        summary = asyncio.run(service_factory().process_source(source))
    except (PipelineError, PersistenceError) as exc:
        logger.warning(
            "Scheduler: ingestion failed source_id=%s error=%s: %s",
            source.id,
            type(exc).__name__,
            exc,
        )
        return
    logger.info(
        "Scheduler: ingestion complete source_id=%s run_id=%s status=%s",
        source.id,
        summary.run_id,
        summary.status,
    )


def build_scheduler(
    sources: list[Source] | None = None,
    *,
    interval_minutes: int | None = None,
    service_factory: ServiceFactory = get_ingestion_pipeline_service,
) -> BackgroundScheduler:
    """
    Build and register one interval job per enabled source.

    Returns a configured but *not yet started* ``BackgroundScheduler``.
    """
    settings = get_pipeline_settings()
    if sources is None:
        sources = load_sources(settings.sources_config_path)
    minutes = interval_minutes or settings.scheduler_interval_minutes

    scheduler = BackgroundScheduler(timezone="UTC")
    for source in sources:
        if not source.enabled:
            logger.info("Scheduler: source disabled, no job registered source_id=%s", source.id)
            continue
        scheduler.add_job(
            run_source_ingestion,
            trigger="interval",
            minutes=minutes,
            args=[source, service_factory],
            id=f"ingest_{source.id}",
            name=f"Ingestion for {source.name}",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
            misfire_grace_time=3600,
        )
    return scheduler
