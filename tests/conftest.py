"""
tests/conftest.py

In-memory stores, connectors and sinks shared by the pipeline tests.
"""

from __future__ import annotations

import copy
import uuid
from collections.abc import Mapping, Sequence
from datetime import datetime, timedelta, timezone
from typing import Any

import pytest
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from app.config import DeduplicationSettings, InferenceSettings, PipelineSettings
from app.connectors.base import SourcePage
from app.domain.pipeline import RunSnapshot
from app.domain.records import FieldChange, RawPayloadEntry
from app.domain.source import Source
from app.repositories.protocols import normalize_title_key
import db.models  # noqa: F401  - registers tables on Base.metadata
from db.base import Base
from db.session import build_session_factory


class FakeClock:
    def __init__(self, start: datetime | None = None, step: timedelta = timedelta(seconds=1)) -> None:
        self.now = start or datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
        self._step = step

    def __call__(self) -> datetime:
        current = self.now
        self.now = current + self._step
        return current


class InMemoryRunStore:
    def __init__(self) -> None:
        self.runs: dict[uuid.UUID, RunSnapshot] = {}

    def create(self, snapshot: RunSnapshot) -> None:
        self.runs[snapshot.id] = snapshot.copy()

    def get(self, run_id: uuid.UUID) -> RunSnapshot | None:
        snapshot = self.runs.get(run_id)
        return snapshot.copy() if snapshot is not None else None

    def save(self, snapshot: RunSnapshot) -> None:
        self.runs[snapshot.id] = snapshot.copy()


class InMemoryRawPayloadStore:
    def __init__(self) -> None:
        self.entries: dict[uuid.UUID, RawPayloadEntry] = {}

    def get(self, source_id: str, content_hash: str) -> RawPayloadEntry | None:
        for entry in self.entries.values():
            if entry.source_id == source_id and entry.content_hash == content_hash:
                return entry
        return None

    def get_many(self, entry_ids: Sequence[uuid.UUID]) -> list[RawPayloadEntry]:
        return [self.entries[entry_id] for entry_id in entry_ids if entry_id in self.entries]

    def insert(self, entry: RawPayloadEntry) -> RawPayloadEntry:
        self.entries[entry.id] = entry
        return entry

    def update(self, entry: RawPayloadEntry) -> RawPayloadEntry:
        self.entries[entry.id] = entry
        return entry


class InMemoryCanonicalRecordStore:
    def __init__(self) -> None:
        self.records: dict[uuid.UUID, dict[str, Any]] = {}
        self.inserts = 0
        self.updates = 0

    def seed(self, **fields: Any) -> dict[str, Any]:
        record = {"id": uuid.uuid4(), "change_history": [], **fields}
        self.records[record["id"]] = record
        return copy.deepcopy(record)

    def find_by_external_ids(self, source_id: str, external_ids: Sequence[str]) -> dict[str, dict[str, Any]]:
        wanted = set(external_ids)
        return {
            record["external_id"]: copy.deepcopy(record)
            for record in self.records.values()
            if record.get("source_id") == source_id and record.get("external_id") in wanted
        }

    def find_by_titles(self, source_id: str, titles: Sequence[str]) -> dict[str, dict[str, Any]]:
        wanted = {normalize_title_key(title) for title in titles}
        matches: dict[str, dict[str, Any]] = {}
        for record in self.records.values():
            title = record.get("title")
            if record.get("source_id") != source_id or not title:
                continue
            key = normalize_title_key(title)
            if key in wanted:
                matches.setdefault(key, copy.deepcopy(record))
        return matches

    def insert(self, fields: Mapping[str, Any]) -> dict[str, Any]:
        self.inserts += 1
        record = {"id": uuid.uuid4(), "change_history": [], **fields}
        self.records[record["id"]] = record
        return copy.deepcopy(record)

    def update(
        self,
        record_id: Any,
        patch: Mapping[str, Any],
        changes: Sequence[FieldChange],
    ) -> dict[str, Any]:
        self.updates += 1
        record = self.records[record_id]
        record.update(patch)
        record["change_history"].append({"changes": [change.as_dict() for change in changes]})
        return copy.deepcopy(record)

    def by_external_id(self, external_id: str) -> dict[str, Any] | None:
        for record in self.records.values():
            if record.get("external_id") == external_id:
                return record
        return None


class FakeConnector:
    """
    Serves pre-built pages; the cursor is the page index.
    """

    def __init__(self, pages: list[list[dict[str, Any]]], details: dict[str, dict[str, Any]] | None = None) -> None:
        self._pages = pages
        self._details = details or {}
        self.page_calls: list[Any] = []
        self.detail_calls: list[str] = []

    def fetch_page(self, cursor: Any = None) -> SourcePage:
        index = int(cursor or 0)
        self.page_calls.append(cursor)
        has_more = index + 1 < len(self._pages)
        return SourcePage(
            items=list(self._pages[index]) if self._pages else [],
            has_more=has_more,
            next_cursor=index + 1 if has_more else None,
        )

    def fetch_detail(self, item_id: str) -> dict[str, Any]:
        self.detail_calls.append(item_id)
        return dict(self._details[item_id])


class RecordingMetricsSink:
    def __init__(self) -> None:
        self.events: list[tuple[str, dict[str, Any]]] = []

    def emit(self, event: str, payload: Mapping[str, Any]) -> None:
        self.events.append((event, dict(payload)))

    def names(self) -> list[str]:
        return [event for event, _ in self.events]


async def no_sleep(_: float) -> None:
    return None


def make_source(**overrides: Any) -> Source:
    fields: dict[str, Any] = {
        "id": "grants",
        "name": "Grants",
        "base_url": "https://api.example.gov/opportunities",
        "items_path": "data",
    }
    fields.update(overrides)
    return Source(**fields)


def grant_payload(external_id: str, **overrides: Any) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "id": external_id,
        "title": f"Clean Energy Grant {external_id}",
        "description": "Funding for community solar installations.",
        "agencyName": "Department of Energy",
        "totalFundingAvailable": 1_000_000,
        "closeDate": "2026-06-30T00:00:00Z",
        "status": "active",
        "updatedAt": "2026-02-01T00:00:00Z",
    }
    payload.update(overrides)
    return payload


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def run_store() -> InMemoryRunStore:
    return InMemoryRunStore()


@pytest.fixture()
def raw_store() -> InMemoryRawPayloadStore:
    return InMemoryRawPayloadStore()


@pytest.fixture()
def record_store() -> InMemoryCanonicalRecordStore:
    return InMemoryCanonicalRecordStore()


@pytest.fixture()
def metrics_sink() -> RecordingMetricsSink:
    return RecordingMetricsSink()


@pytest.fixture()
def dedup_settings() -> DeduplicationSettings:
    return DeduplicationSettings()


@pytest.fixture()
def inference_settings() -> InferenceSettings:
    return InferenceSettings(model="gpt-4o-mini", max_retries=2, base_delay_seconds=0.01, timeout_seconds=5.0)


@pytest.fixture()
def pipeline_settings() -> PipelineSettings:
    return PipelineSettings(max_pages=10)


@pytest.fixture()
def session_factory():
    """Session factory over a fresh in-memory SQLite database."""
    engine = create_engine(
        "sqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(engine)
    yield build_session_factory(engine)
    engine.dispose()
