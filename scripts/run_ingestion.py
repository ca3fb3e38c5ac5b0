"""
Run source ingestion from CLI.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import uuid

from app.config import get_pipeline_settings
from app.connectors.source_config import find_source, load_sources
from app.errors import PersistenceError, PipelineError
from app.services.ingestion_pipeline_service import get_ingestion_pipeline_service


def main() -> int:
    parser = argparse.ArgumentParser(description="Run the ingestion pipeline for configured sources.")
    parser.add_argument(
        "--source",
        dest="source",
        default=None,
        help="Source id or name from the sources file. Defaults to every enabled source.",
    )
    parser.add_argument(
        "--resume",
        dest="resume",
        default=None,
        metavar="RUN_ID",
        help="Resume a failed run. Requires --source.",
    )
    parser.add_argument(
        "--list",
        dest="list_sources",
        action="store_true",
        help="List configured sources and exit.",
    )
    parser.add_argument(
        "--config",
        dest="config",
        default=None,
        help="Path to the sources file. Defaults to SOURCES_CONFIG_PATH.",
    )
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s %(message)s")

    sources = load_sources(args.config or get_pipeline_settings().sources_config_path)
    if args.list_sources:
        payload = [
            {"id": source.id, "name": source.name, "enabled": source.enabled, "paging": source.paging}
            for source in sources
        ]
        print(json.dumps(payload, indent=2))
        return 0

    if args.resume and not args.source:
        parser.error("--resume requires --source")

    service = get_ingestion_pipeline_service()
    if args.resume:
        try:
            run_id = uuid.UUID(args.resume)
        except ValueError:
            parser.error(f"--resume expects a run id, got {args.resume!r}")
        targets = [find_source(sources, args.source)]
    elif args.source:
        targets = [find_source(sources, args.source)]
    else:
        targets = [source for source in sources if source.enabled]

    results = []
    exit_code = 0
    for source in targets:
        try:
            if args.resume:
                summary = asyncio.run(service.resume_run(run_id, source))
            else:
                summary = asyncio.run(service.process_source(source))
        except (PipelineError, PersistenceError) as exc:
            exit_code = 1
            results.append(
                {
                    "source_id": source.id,
                    "status": "failed",
                    "error": f"{type(exc).__name__}: {exc}",
                }
            )
            continue
        results.append(summary.as_dict())

    print(json.dumps(results, indent=2, default=str))
    return exit_code


if __name__ == "__main__":
    raise SystemExit(main())
