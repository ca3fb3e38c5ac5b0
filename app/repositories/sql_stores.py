"""
app/repositories/sql_stores.py

SQLAlchemy-backed implementations of the pipeline store interfaces.

Each call runs in its own short transaction: writes are single-record upserts,
so a failed batch leaves the records processed before the failure in place.
"""

from __future__ import annotations

import copy
import json
import logging
import uuid
from collections.abc import Callable, Iterator, Mapping, Sequence
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.domain.pipeline import STAGE_ORDER, RunSnapshot, RunStatus, Stage, StageStatus
from app.domain.records import FieldChange, RawPayloadEntry
from app.mappers.canonical_mapper import CANONICAL_FIELDS
from app.mappers.sanitizers import SanitizationError, parse_datetime
from app.repositories.protocols import normalize_title_key
from db.base import as_utc
from db.models.canonical_record import CanonicalRecord
from db.models.pipeline_run import PipelineRun
from db.models.raw_payload_cache import RawPayloadCacheEntry
from db.repositories.canonical_record_repository import CanonicalRecordRepository
from db.repositories.errors import PersistenceError
from db.repositories.pipeline_run_repository import PipelineRunRepository
from db.repositories.raw_payload_cache_repository import RawPayloadCacheRepository

logger = logging.getLogger(__name__)

SessionFactory = Callable[[], Session]

_DATETIME_COLUMNS = frozenset({"open_date", "close_date", "posted_date", "api_updated_at"})
_RECORD_EXTRA_COLUMNS = ("raw_payload_id", "enrichment", "created_at", "updated_at")


def _json_safe(value: Any) -> Any:
    return json.loads(json.dumps(value, default=str))


class _SqlStore:
    def __init__(self, session_factory: SessionFactory | None = None) -> None:
        if session_factory is None:
            from db.session import SessionLocal

            self._session_factory: SessionFactory = SessionLocal
        else:
            self._session_factory = session_factory

    @contextmanager
    def _unit_of_work(self, operation: str) -> Iterator[Session]:
        try:
            with self._session_factory() as session, session.begin():
                yield session
        except SQLAlchemyError as exc:
            logger.error("Store operation failed operation=%s error=%s", operation, exc)
            raise PersistenceError(f"{operation} failed: {exc}", operation=operation) from exc


class SqlRunStore(_SqlStore):
    def create(self, snapshot: RunSnapshot) -> None:
        with self._unit_of_work("create_run") as session:
            PipelineRunRepository(session).create_run(
                run_id=snapshot.id,
                fields=_run_fields(snapshot),
            )

    def get(self, run_id: uuid.UUID) -> RunSnapshot | None:
        with self._unit_of_work("get_run") as session:
            run = PipelineRunRepository(session).get_run(run_id)
            return None if run is None else _to_snapshot(run)

    def save(self, snapshot: RunSnapshot) -> None:
        with self._unit_of_work("save_run") as session:
            updated = PipelineRunRepository(session).update_run(
                run_id=snapshot.id,
                fields=_run_fields(snapshot),
            )
        if updated is None:
            raise PersistenceError(f"Pipeline run not found: {snapshot.id}", operation="save_run")


def _run_fields(snapshot: RunSnapshot) -> dict[str, Any]:
    fields: dict[str, Any] = {
        "source_id": snapshot.source_id,
        "status": snapshot.status.value,
        "stage_metrics": _json_safe(snapshot.stage_metrics),
        "error_details": _json_safe(snapshot.error_details) if snapshot.error_details else None,
        "failed_stage": snapshot.failed_stage.value if snapshot.failed_stage else None,
        "resumed_stage": snapshot.resumed_stage.value if snapshot.resumed_stage else None,
        "resume_count": snapshot.resume_count,
        "checkpoint_data": _json_safe(snapshot.checkpoint_data),
        "started_at": snapshot.started_at,
        "completed_at": snapshot.completed_at,
        "total_processing_time_ms": snapshot.total_processing_time_ms,
    }
    for stage in STAGE_ORDER:
        fields[f"{stage.value}_status"] = snapshot.stages[stage].value
    return fields


def _to_snapshot(run: PipelineRun) -> RunSnapshot:
    return RunSnapshot(
        id=run.id,
        source_id=run.source_id,
        status=RunStatus(run.status),
        stages={stage: StageStatus(getattr(run, f"{stage.value}_status")) for stage in STAGE_ORDER},
        started_at=as_utc(run.started_at),
        stage_metrics=copy.deepcopy(run.stage_metrics or {}),
        error_details=copy.deepcopy(run.error_details),
        failed_stage=Stage(run.failed_stage) if run.failed_stage else None,
        resumed_stage=Stage(run.resumed_stage) if run.resumed_stage else None,
        resume_count=run.resume_count or 0,
        checkpoint_data=copy.deepcopy(run.checkpoint_data or {}),
        completed_at=as_utc(run.completed_at),
        total_processing_time_ms=run.total_processing_time_ms,
    )


class SqlRawPayloadStore(_SqlStore):
    def get(self, source_id: str, content_hash: str) -> RawPayloadEntry | None:
        with self._unit_of_work("get_raw_payload") as session:
            entry = RawPayloadCacheRepository(session).get_by_hash(
                source_id=source_id,
                content_hash=content_hash,
            )
            return None if entry is None else _to_entry(entry)

    def get_many(self, entry_ids: Sequence[uuid.UUID]) -> list[RawPayloadEntry]:
        with self._unit_of_work("get_raw_payloads") as session:
            return [_to_entry(entry) for entry in RawPayloadCacheRepository(session).get_many(entry_ids)]

    def insert(self, entry: RawPayloadEntry) -> RawPayloadEntry:
        with self._unit_of_work("insert_raw_payload") as session:
            created = RawPayloadCacheRepository(session).add(
                entry_id=entry.id,
                source_id=entry.source_id,
                content_hash=entry.content_hash,
                payload=_json_safe(dict(entry.payload)),
                request_metadata=_json_safe(dict(entry.metadata)),
                seen_at=entry.first_seen_at,
            )
            return _to_entry(created)

    def update(self, entry: RawPayloadEntry) -> RawPayloadEntry:
        with self._unit_of_work("update_raw_payload") as session:
            updated = RawPayloadCacheRepository(session).record_sighting(
                entry_id=entry.id,
                seen_at=entry.last_seen_at,
                call_count=entry.call_count,
                request_metadata=_json_safe(dict(entry.metadata)),
            )
            if updated is None:
                raise PersistenceError(f"Raw payload entry not found: {entry.id}", operation="update_raw_payload")
            return _to_entry(updated)


def _to_entry(entry: RawPayloadCacheEntry) -> RawPayloadEntry:
    return RawPayloadEntry(
        id=entry.id,
        source_id=entry.source_id,
        content_hash=entry.content_hash,
        payload=copy.deepcopy(entry.payload),
        metadata=copy.deepcopy(entry.request_metadata or {}),
        first_seen_at=as_utc(entry.first_seen_at),
        last_seen_at=as_utc(entry.last_seen_at),
        call_count=entry.call_count,
    )


class SqlCanonicalRecordStore(_SqlStore):
    def find_by_external_ids(self, source_id: str, external_ids: Sequence[str]) -> dict[str, dict[str, Any]]:
        with self._unit_of_work("find_records_by_external_id") as session:
            records = CanonicalRecordRepository(session).get_by_external_ids(
                source_id=source_id,
                external_ids=list(dict.fromkeys(external_ids)),
            )
            return {record.external_id: record_to_dict(record) for record in records}

    def find_by_titles(self, source_id: str, titles: Sequence[str]) -> dict[str, dict[str, Any]]:
        keys = list(dict.fromkeys(normalize_title_key(title) for title in titles))
        with self._unit_of_work("find_records_by_title") as session:
            records = CanonicalRecordRepository(session).get_by_normalized_titles(
                source_id=source_id,
                titles=keys,
            )
            matches: dict[str, dict[str, Any]] = {}
            for record in records:
                matches.setdefault(normalize_title_key(record.title), record_to_dict(record))
            return matches

    def insert(self, fields: Mapping[str, Any]) -> dict[str, Any]:
        with self._unit_of_work("insert_record") as session:
            record = CanonicalRecordRepository(session).insert(fields=_column_values(fields))
            return record_to_dict(record)

    def update(
        self,
        record_id: Any,
        patch: Mapping[str, Any],
        changes: Sequence[FieldChange],
    ) -> dict[str, Any]:
        audit_entry = _json_safe(
            {
                "changed_at": datetime.now(timezone.utc).isoformat(),
                "changes": [change.as_dict() for change in changes],
            }
        )
        with self._unit_of_work("update_record") as session:
            record = CanonicalRecordRepository(session).update(
                record_id=record_id,
                fields=_column_values(patch),
                audit_entry=audit_entry,
            )
            if record is None:
                raise PersistenceError(f"Canonical record not found: {record_id}", operation="update_record")
            return record_to_dict(record)


def _column_values(fields: Mapping[str, Any]) -> dict[str, Any]:
    values: dict[str, Any] = {}
    for name, value in fields.items():
        if name not in CANONICAL_FIELDS and name not in _RECORD_EXTRA_COLUMNS and name != "source_id":
            continue
        if name in _DATETIME_COLUMNS and isinstance(value, str):
            try:
                value = parse_datetime(value)
            except SanitizationError:
                value = None
        if name == "enrichment" and value is not None:
            value = _json_safe(value)
        values[name] = value
    return values


def record_to_dict(record: CanonicalRecord) -> dict[str, Any]:
    result: dict[str, Any] = {"id": record.id, "source_id": record.source_id}
    for name in (*CANONICAL_FIELDS, "raw_payload_id", "enrichment"):
        value = getattr(record, name)
        if isinstance(value, datetime):
            value = as_utc(value).isoformat()
        result[name] = value
    return result
