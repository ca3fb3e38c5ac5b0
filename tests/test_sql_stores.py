"""
tests/test_sql_stores.py

SQLAlchemy store tests against an in-memory SQLite database.

Coverage:
- Run snapshots survive a store round trip and drive the coordinator
- Raw payload cache insert, sighting update and uniqueness
- Canonical record insert, lookups, audited update and tag sync
"""

from __future__ import annotations

import uuid
from dataclasses import replace
from datetime import datetime, timezone

import pytest
from sqlalchemy import select

from app.domain.pipeline import RunSnapshot, RunStatus, Stage, StageStatus
from app.domain.records import FieldChange, RawPayloadEntry
from app.errors import PersistenceError
from app.repositories.sql_stores import SqlCanonicalRecordStore, SqlRawPayloadStore, SqlRunStore
from app.services.run_coordinator import RunCoordinator
from db.models import CanonicalRecord, CanonicalRecordTag

from conftest import FakeClock

_NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def _entry(**overrides) -> RawPayloadEntry:
    fields = {
        "id": uuid.uuid4(),
        "source_id": "grants",
        "content_hash": "a" * 64,
        "payload": {"id": "G-1", "title": "Clean Energy Grant"},
        "metadata": {"api_endpoint": "https://api.example.gov", "call_type": "list_item"},
        "first_seen_at": _NOW,
        "last_seen_at": _NOW,
        "call_count": 1,
    }
    fields.update(overrides)
    return RawPayloadEntry(**fields)


def _record_fields(external_id: str, **overrides):
    fields = {
        "source_id": "grants",
        "external_id": external_id,
        "title": f"Clean Energy Grant {external_id}",
        "total_funding_available": 1_000_000.0,
        "close_date": "2026-06-30T00:00:00+00:00",
        "eligible_applicants": ["Tribes", "Cities"],
        "created_at": _NOW,
        "updated_at": _NOW,
    }
    fields.update(overrides)
    return fields


# ---------------------------------------------------------------------------
# Runs
# ---------------------------------------------------------------------------


class TestSqlRunStore:
    def test_snapshot_round_trip(self, session_factory) -> None:
        store = SqlRunStore(session_factory)
        snapshot = RunSnapshot.new(source_id="grants", started_at=_NOW)
        store.create(snapshot)

        snapshot.status = RunStatus.PROCESSING
        snapshot.stages[Stage.FETCH] = StageStatus.COMPLETED
        snapshot.stage_metrics["fetch"] = {"pages": 2}
        snapshot.checkpoint_data["fetch"] = {"raw_payload_ids": [str(uuid.uuid4())]}
        store.save(snapshot)

        loaded = store.get(snapshot.id)
        assert loaded.status is RunStatus.PROCESSING
        assert loaded.stages[Stage.FETCH] is StageStatus.COMPLETED
        assert loaded.stages[Stage.PERSIST] is StageStatus.PENDING
        assert loaded.stage_metrics == {"fetch": {"pages": 2}}
        assert loaded.checkpoint_data == snapshot.checkpoint_data
        assert loaded.started_at == _NOW

    def test_missing_run_returns_none(self, session_factory) -> None:
        assert SqlRunStore(session_factory).get(uuid.uuid4()) is None

    def test_saving_unknown_run_raises(self, session_factory) -> None:
        snapshot = RunSnapshot.new(source_id="grants", started_at=_NOW)
        with pytest.raises(PersistenceError):
            SqlRunStore(session_factory).save(snapshot)

    def test_coordinator_fail_and_resume_through_sql(self, session_factory) -> None:
        coordinator = RunCoordinator(store=SqlRunStore(session_factory), clock=FakeClock())
        run_id = coordinator.start_run("grants")
        coordinator.advance_stage(run_id, Stage.FETCH, StageStatus.PROCESSING)
        coordinator.save_checkpoint(run_id, Stage.FETCH, {"raw_payload_ids": []})
        coordinator.record_error(run_id, RuntimeError("upstream down"))

        failed = coordinator.get_run(run_id)
        assert failed.status is RunStatus.FAILED
        assert failed.error_details["type"] == "RuntimeError"

        assert coordinator.resume(run_id) is Stage.FETCH
        resumed = coordinator.get_run(run_id)
        assert resumed.status is RunStatus.PROCESSING
        assert resumed.resume_count == 1
        assert resumed.error_details is None
        assert coordinator.load_checkpoint(run_id, Stage.FETCH) == {"raw_payload_ids": []}


# ---------------------------------------------------------------------------
# Raw payload cache
# ---------------------------------------------------------------------------


class TestSqlRawPayloadStore:
    def test_insert_get_and_record_sighting(self, session_factory) -> None:
        store = SqlRawPayloadStore(session_factory)
        entry = store.insert(_entry())

        found = store.get("grants", "a" * 64)
        assert found.id == entry.id
        assert found.payload == {"id": "G-1", "title": "Clean Energy Grant"}
        assert found.first_seen_at == _NOW

        later = datetime(2026, 3, 2, tzinfo=timezone.utc)
        updated = store.update(replace(found, last_seen_at=later, call_count=2, metadata={"api_endpoint": "v2"}))

        assert updated.call_count == 2
        assert updated.last_seen_at == later
        assert updated.first_seen_at == _NOW
        assert updated.metadata == {"api_endpoint": "v2"}

    def test_get_many_keeps_requested_order(self, session_factory) -> None:
        store = SqlRawPayloadStore(session_factory)
        first = store.insert(_entry(content_hash="1" * 64))
        second = store.insert(_entry(content_hash="2" * 64))

        entries = store.get_many([second.id, uuid.uuid4(), first.id])

        assert [entry.id for entry in entries] == [second.id, first.id]

    def test_duplicate_source_hash_is_rejected(self, session_factory) -> None:
        store = SqlRawPayloadStore(session_factory)
        store.insert(_entry())
        with pytest.raises(PersistenceError):
            store.insert(_entry())


# ---------------------------------------------------------------------------
# Canonical records
# ---------------------------------------------------------------------------


class TestSqlCanonicalRecordStore:
    def test_insert_and_lookup(self, session_factory) -> None:
        store = SqlCanonicalRecordStore(session_factory)
        inserted = store.insert(_record_fields("G-1", unknown_column="ignored"))

        by_id = store.find_by_external_ids("grants", ["G-1", "G-404"])
        by_title = store.find_by_titles("grants", ["  clean energy grant g-1 "])

        assert set(by_id) == {"G-1"}
        assert by_id["G-1"]["id"] == inserted["id"]
        assert by_id["G-1"]["close_date"] == "2026-06-30T00:00:00+00:00"
        assert by_id["G-1"]["total_funding_available"] == 1_000_000.0
        assert set(by_title) == {"clean energy grant g-1"}
        assert store.find_by_external_ids("other-source", ["G-1"]) == {}

    def test_update_applies_patch_and_appends_history(self, session_factory) -> None:
        store = SqlCanonicalRecordStore(session_factory)
        inserted = store.insert(_record_fields("G-1"))

        updated = store.update(
            inserted["id"],
            {"total_funding_available": 2_000_000.0, "enrichment": {"relevance_score": 7.5}},
            [FieldChange("total_funding_available", 1_000_000.0, 2_000_000.0, "value updated")],
        )

        assert updated["total_funding_available"] == 2_000_000.0
        assert updated["enrichment"] == {"relevance_score": 7.5}
        with session_factory() as session:
            record = session.get(CanonicalRecord, inserted["id"])
            assert len(record.change_history) == 1
            assert record.change_history[0]["changes"][0]["field"] == "total_funding_available"

    def test_eligibility_tags_follow_the_record(self, session_factory) -> None:
        store = SqlCanonicalRecordStore(session_factory)
        inserted = store.insert(_record_fields("G-1"))
        store.update(inserted["id"], {"eligible_applicants": ["Cities", "Counties"]}, [])

        with session_factory() as session:
            values = session.scalars(
                select(CanonicalRecordTag.value).where(CanonicalRecordTag.record_id == inserted["id"])
            ).all()
        assert sorted(values) == ["Cities", "Counties"]

    def test_update_of_missing_record_raises(self, session_factory) -> None:
        with pytest.raises(PersistenceError):
            SqlCanonicalRecordStore(session_factory).update(uuid.uuid4(), {"title": "x"}, [])
