"""
app/services/ingestion_pipeline_service.py

Fetch, extract, enrich and persist one source as a tracked, resumable run.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Any

from app.config import (
    InferenceSettings,
    PipelineSettings,
    get_deduplication_settings,
    get_inference_settings,
    get_pipeline_settings,
)
from app.connectors.base import SourceConnector
from app.connectors.rest_connector import RestSourceConnector
from app.domain.pipeline import STAGE_ORDER, RunSnapshot, RunStatus, Stage, StageStatus
from app.domain.records import DecisionKind, DeduplicationDecision, RawRecord, RecordKind
from app.domain.source import Source
from app.errors import EnrichmentFailedError, InvalidStateError
from app.mappers.canonical_mapper import CanonicalRecordMerger
from app.metrics import LoggingMetricsSink, MetricsSink
from app.repositories.protocols import CanonicalRecordStore, RawPayloadStore, RunStore
from app.services.deduplication_service import ContentAddressableDeduplicator
from app.services.run_coordinator import RunCoordinator
from inference.adapter import BaseInferenceAdapter, OpenAIInferenceAdapter
from inference.executor import ChunkedInferenceExecutor

logger = logging.getLogger(__name__)

ConnectorFactory = Callable[[Source], SourceConnector]


@dataclass
class PipelineRunSummary:
    run_id: uuid.UUID
    source_id: str
    status: str
    stages: dict[str, str]
    stage_metrics: dict[str, dict[str, Any]]
    resumed_from: str | None = None
    discarded: bool = False

    @classmethod
    def from_snapshot(
        cls,
        run: RunSnapshot,
        *,
        resumed_from: Stage | None = None,
        discarded: bool = False,
    ) -> PipelineRunSummary:
        return cls(
            run_id=run.id,
            source_id=run.source_id,
            status=run.status.value,
            stages={stage.value: status.value for stage, status in run.stages.items()},
            stage_metrics=run.stage_metrics,
            resumed_from=resumed_from.value if resumed_from else None,
            discarded=discarded,
        )

    def as_dict(self) -> dict[str, Any]:
        return {
            "run_id": str(self.run_id),
            "source_id": self.source_id,
            "status": self.status,
            "stages": self.stages,
            "stage_metrics": self.stage_metrics,
            "resumed_from": self.resumed_from,
            "discarded": self.discarded,
        }


@dataclass
class _Candidate:
    fields: dict[str, Any]
    decision: DeduplicationDecision


@dataclass
class _RunContext:
    """
    In-memory working set of one run; rebuilt from checkpoints on resume.
    """

    run_id: uuid.UUID
    source: Source
    raw_records: list[RawRecord] | None = None
    candidates: list[_Candidate] | None = None
    enriched: dict[str, dict[str, Any]] = field(default_factory=dict)
    failed_ids: set[str] = field(default_factory=set)
    enrichment_loaded: bool = False
    discarded: bool = False


class IngestionPipelineService:
    """
    Drives one source through the four pipeline stages.

    Every stage transition goes through the RunCoordinator. A stage that
    raises fails the run and the error is re-raised to the caller.
    """

    def __init__(
        self,
        *,
        coordinator: RunCoordinator,
        deduplicator: ContentAddressableDeduplicator,
        merger: CanonicalRecordMerger,
        executor: ChunkedInferenceExecutor,
        raw_store: RawPayloadStore,
        record_store: CanonicalRecordStore,
        settings: PipelineSettings | None = None,
        connector_factory: ConnectorFactory | None = None,
    ) -> None:
        self._coordinator = coordinator
        self._deduplicator = deduplicator
        self._merger = merger
        self._executor = executor
        self._raw_store = raw_store
        self._record_store = record_store
        self._settings = settings or get_pipeline_settings()
        self._connector_factory = connector_factory or RestSourceConnector

    async def process_source(self, source: Source) -> PipelineRunSummary:
        if not source.enabled:
            raise InvalidStateError(f"Source {source.id} is disabled")
        run_id = self._coordinator.start_run(source.id)
        context = _RunContext(run_id=run_id, source=source)
        await self._run_stages(context, first_stage=Stage.FETCH, already_started=False)
        return PipelineRunSummary.from_snapshot(
            self._coordinator.get_run(run_id),
            discarded=context.discarded,
        )

    async def resume_run(self, run_id: uuid.UUID, source: Source) -> PipelineRunSummary:
        """
        Resume a failed run at its resume point, replaying earlier stage output
        from checkpoints.
        """

        run = self._coordinator.get_run(run_id)
        if run.source_id != source.id:
            raise InvalidStateError(
                f"Run {run_id} belongs to source {run.source_id}, not {source.id}",
                run_id=run_id,
            )
        stage = self._coordinator.resume(run_id)
        context = _RunContext(run_id=run_id, source=source)
        await self._run_stages(context, first_stage=stage, already_started=True)
        return PipelineRunSummary.from_snapshot(
            self._coordinator.get_run(run_id),
            resumed_from=stage,
            discarded=context.discarded,
        )

    async def _run_stages(self, context: _RunContext, *, first_stage: Stage, already_started: bool) -> None:
        handlers = {
            Stage.FETCH: self._fetch,
            Stage.EXTRACT: self._extract,
            Stage.ENRICH: self._enrich,
            Stage.PERSIST: self._persist,
        }
        for stage in STAGE_ORDER[STAGE_ORDER.index(first_stage):]:
            try:
                if not (already_started and stage is first_stage):
                    self._coordinator.advance_stage(context.run_id, stage, StageStatus.PROCESSING)
                metrics = await handlers[stage](context)
                if context.discarded:
                    return
                self._coordinator.advance_stage(context.run_id, stage, StageStatus.COMPLETED, metrics)
            except Exception as exc:
                logger.exception(
                    "Pipeline stage failed run_id=%s source_id=%s stage=%s",
                    context.run_id,
                    context.source.id,
                    stage.value,
                )
                self._record_failure(context.run_id, exc)
                raise

    def _record_failure(self, run_id: uuid.UUID, error: Exception) -> None:
        try:
            self._coordinator.record_error(run_id, error)
        except Exception:
            # The original error is re-raised by the caller; this one is only logged.
            logger.exception("Could not mark pipeline run failed run_id=%s", run_id)

    async def _fetch(self, context: _RunContext) -> dict[str, Any]:
        source = context.source
        connector = self._connector_factory(source)
        rules = self._deduplicator.extraction_rules(source)
        raw_records: list[RawRecord] = []
        seen_ids: set[uuid.UUID] = set()
        pages = 0
        items_seen = 0
        cache_hits = 0
        cursor: Any = None

        while pages < self._settings.max_pages:
            started = time.monotonic()
            page = await asyncio.to_thread(connector.fetch_page, cursor)
            page_ms = int((time.monotonic() - started) * 1000)
            pages += 1
            items_seen += len(page.items)

            for item in page.items:
                kind = RecordKind.LIST_ITEM
                payload: Mapping[str, Any] = item
                item_ms = page_ms
                if source.is_two_step:
                    item_id = item.get(source.id_field)
                    if item_id is None:
                        logger.warning(
                            "List item without id skipped source_id=%s id_field=%s",
                            source.id,
                            source.id_field,
                        )
                        continue
                    detail_started = time.monotonic()
                    payload = await asyncio.to_thread(connector.fetch_detail, str(item_id))
                    item_ms = int((time.monotonic() - detail_started) * 1000)
                    kind = RecordKind.DETAIL

                content_hash = self._deduplicator.fingerprint(payload, rules)
                entry = self._deduplicator.record_raw_payload(
                    source.id,
                    payload,
                    content_hash,
                    {
                        "api_endpoint": source.base_url,
                        "call_type": kind.value,
                        "execution_time_ms": item_ms,
                        "record_count": len(page.items),
                        "request_details": {"cursor": cursor, "method": source.method},
                    },
                )
                if entry.call_count > 1:
                    cache_hits += 1
                if entry.id in seen_ids:
                    continue
                seen_ids.add(entry.id)
                raw_records.append(
                    RawRecord(kind=kind, fields=dict(payload), source_id=source.id, raw_payload_id=entry.id)
                )

            if not page.has_more:
                break
            cursor = page.next_cursor
        else:
            logger.warning("Fetch stopped at page limit source_id=%s max_pages=%s", source.id, pages)

        context.raw_records = raw_records
        self._coordinator.save_checkpoint(
            context.run_id,
            Stage.FETCH,
            {"raw_payload_ids": [str(record.raw_payload_id) for record in raw_records]},
        )
        return {
            "pages": pages,
            "items": items_seen,
            "raw_records": len(raw_records),
            "cache_hits": cache_hits,
        }

    async def _extract(self, context: _RunContext) -> dict[str, Any]:
        raw_records = self._raw_records(context)
        mapping = self._merger.mapping_for(context.source.response_mapping)

        candidates: list[dict[str, Any]] = []
        seen_external_ids: set[str] = set()
        field_issues = 0
        missing_id = 0
        duplicates = 0
        for raw in raw_records:
            mapped = self._merger.map_external_to_canonical(raw, mapping)
            field_issues += len(mapped.issues)
            external_id = mapped.external_id
            if not external_id:
                missing_id += 1
                continue
            if external_id in seen_external_ids:
                duplicates += 1
                continue
            seen_external_ids.add(external_id)
            candidate = dict(mapped.fields)
            candidate["raw_payload_id"] = raw.raw_payload_id
            candidates.append(candidate)

        if missing_id:
            logger.warning(
                "Records without external id skipped source_id=%s count=%s",
                context.source.id,
                missing_id,
            )

        report = self._deduplicator.categorize(
            context.source,
            candidates,
            force_full=context.source.force_full_reprocessing or self._settings.force_full_reprocessing,
        )
        context.candidates = [
            _Candidate(fields=candidate, decision=decision)
            for candidate, decision in zip(candidates, report.decisions)
        ]
        return {
            **report.metrics,
            "field_issues": field_issues,
            "missing_external_id": missing_id,
            "duplicates_in_batch": duplicates,
        }

    async def _enrich(self, context: _RunContext) -> dict[str, Any]:
        candidates = await self._ensure_candidates(context)
        to_enrich = [
            candidate.fields
            for candidate in candidates
            if self._should_enrich(candidate.decision)
        ]

        metrics: dict[str, Any] = {"records": len(to_enrich)}
        if to_enrich:
            outcome = await self._executor.enrich(to_enrich)
            if outcome.all_failed:
                raise EnrichmentFailedError(
                    f"All {outcome.chunk_count} enrichment chunks failed",
                    failed_chunks=outcome.failed_chunks,
                    errors=outcome.error_summaries(),
                )

            run = self._coordinator.get_run(context.run_id)
            if run.status is RunStatus.FAILED:
                logger.warning(
                    "Run failed during enrichment; chunk results discarded run_id=%s chunks=%s",
                    context.run_id,
                    outcome.chunk_count,
                )
                context.discarded = True
                return metrics

            context.enriched = outcome.enriched
            context.failed_ids = set(outcome.failed_external_ids)
            metrics.update(
                {
                    "enriched": len(outcome.enriched),
                    "failed_records": len(outcome.failed_external_ids),
                    "chunks": outcome.chunk_count,
                    "failed_chunks": outcome.failed_chunks,
                    "batch_size": outcome.plan.batch_size,
                    "batch_reason": outcome.plan.reason,
                    "input_tokens": outcome.usage.input_tokens,
                    "output_tokens": outcome.usage.output_tokens,
                    "retry_tokens": outcome.retry_tokens,
                }
            )

        context.enrichment_loaded = True
        self._coordinator.save_checkpoint(
            context.run_id,
            Stage.ENRICH,
            {"enriched": context.enriched, "failed_ids": sorted(context.failed_ids)},
        )
        return metrics

    async def _persist(self, context: _RunContext) -> dict[str, Any]:
        candidates = await self._ensure_candidates(context)
        self._ensure_enrichment(context)
        source_id = context.source.id

        counts = {"inserted": 0, "updated": 0, "unchanged": 0, "stale_skipped": 0, "deferred": 0, "no_op": 0}
        for candidate in candidates:
            decision = candidate.decision
            external_id = str(candidate.fields["external_id"])
            if decision.kind is DecisionKind.UNCHANGED:
                counts["unchanged"] += 1
                continue
            if decision.kind is DecisionKind.STALE and not self._settings.enrich_stale:
                counts["stale_skipped"] += 1
                continue

            enrichment = context.enriched.get(external_id)
            merged = self._merger.apply_enrichment(candidate.fields, enrichment)
            if decision.kind is DecisionKind.NEW:
                if external_id in context.failed_ids:
                    counts["deferred"] += 1
                    continue
                self._record_store.insert(self._merger.prepare_for_insert(merged, source_id=source_id))
                counts["inserted"] += 1
                continue

            patch = self._merger.merge_for_update(decision.existing or {}, merged)
            fields = dict(patch.fields)
            if enrichment:
                fields["enrichment"] = merged["enrichment"]
            if candidate.fields.get("raw_payload_id") is not None:
                fields["raw_payload_id"] = candidate.fields["raw_payload_id"]
            if patch.is_empty and not enrichment:
                counts["no_op"] += 1
                continue
            self._record_store.update(decision.existing_id, fields, patch.changes)
            counts["updated"] += 1

        logger.info(
            "Records persisted run_id=%s source_id=%s inserted=%s updated=%s deferred=%s",
            context.run_id,
            source_id,
            counts["inserted"],
            counts["updated"],
            counts["deferred"],
        )
        return counts

    def _should_enrich(self, decision: DeduplicationDecision) -> bool:
        if decision.needs_enrichment:
            return True
        return decision.kind is DecisionKind.STALE and self._settings.enrich_stale

    def _raw_records(self, context: _RunContext) -> list[RawRecord]:
        if context.raw_records is not None:
            return context.raw_records

        checkpoint = self._coordinator.load_checkpoint(context.run_id, Stage.FETCH)
        if checkpoint is None:
            raise InvalidStateError(
                f"Run {context.run_id} has no fetch checkpoint to resume from",
                run_id=context.run_id,
            )
        entry_ids = [uuid.UUID(value) for value in checkpoint.get("raw_payload_ids", [])]
        entries = {entry.id: entry for entry in self._raw_store.get_many(entry_ids)}
        missing = [entry_id for entry_id in entry_ids if entry_id not in entries]
        if missing:
            raise InvalidStateError(
                f"Run {context.run_id} checkpoint references {len(missing)} missing raw payloads",
                run_id=context.run_id,
            )
        context.raw_records = [
            RawRecord(
                kind=RecordKind(entries[entry_id].metadata.get("call_type", RecordKind.LIST_ITEM.value)),
                fields=dict(entries[entry_id].payload),
                source_id=context.source.id,
                raw_payload_id=entry_id,
            )
            for entry_id in entry_ids
        ]
        logger.info(
            "Fetch output restored from checkpoint run_id=%s raw_records=%s",
            context.run_id,
            len(context.raw_records),
        )
        return context.raw_records

    async def _ensure_candidates(self, context: _RunContext) -> list[_Candidate]:
        if context.candidates is None:
            # Extract is replayed rather than checkpointed.
            await self._extract(context)
        return context.candidates or []

    def _ensure_enrichment(self, context: _RunContext) -> None:
        if context.enrichment_loaded:
            return
        checkpoint = self._coordinator.load_checkpoint(context.run_id, Stage.ENRICH) or {}
        context.enriched = dict(checkpoint.get("enriched") or {})
        context.failed_ids = set(checkpoint.get("failed_ids") or [])
        context.enrichment_loaded = True


def build_inference_adapter(settings: InferenceSettings) -> BaseInferenceAdapter:
    return OpenAIInferenceAdapter(
        model=settings.model,
        api_key=settings.api_key,
        base_url=settings.base_url,
    )


@lru_cache(maxsize=1)
def get_ingestion_pipeline_service() -> IngestionPipelineService:
    from app.repositories.sql_stores import SqlCanonicalRecordStore, SqlRawPayloadStore, SqlRunStore

    pipeline_settings = get_pipeline_settings()
    inference_settings = get_inference_settings()
    raw_store = SqlRawPayloadStore()
    record_store = SqlCanonicalRecordStore()
    metrics_sink: MetricsSink = LoggingMetricsSink()
    return IngestionPipelineService(
        coordinator=RunCoordinator(store=SqlRunStore(), metrics_sink=metrics_sink),
        deduplicator=ContentAddressableDeduplicator(
            raw_store=raw_store,
            record_store=record_store,
            settings=get_deduplication_settings(),
            tokens_per_record=pipeline_settings.dedup_tokens_per_record,
        ),
        merger=CanonicalRecordMerger(),
        executor=ChunkedInferenceExecutor(
            adapter=build_inference_adapter(inference_settings),
            settings=inference_settings,
        ),
        raw_store=raw_store,
        record_store=record_store,
        settings=pipeline_settings,
    )
