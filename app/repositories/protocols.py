"""
app/repositories/protocols.py

Store interfaces the pipeline components depend on.
"""

from __future__ import annotations

import uuid
from collections.abc import Mapping, Sequence
from typing import Any, Protocol

from app.domain.pipeline import RunSnapshot
from app.domain.records import FieldChange, RawPayloadEntry


class RunStore(Protocol):
    def create(self, snapshot: RunSnapshot) -> None:
        ...

    def get(self, run_id: uuid.UUID) -> RunSnapshot | None:
        ...

    def save(self, snapshot: RunSnapshot) -> None:
        ...


class RawPayloadStore(Protocol):
    def get(self, source_id: str, content_hash: str) -> RawPayloadEntry | None:
        ...

    def get_many(self, entry_ids: Sequence[uuid.UUID]) -> list[RawPayloadEntry]:
        ...

    def insert(self, entry: RawPayloadEntry) -> RawPayloadEntry:
        ...

    def update(self, entry: RawPayloadEntry) -> RawPayloadEntry:
        ...


class CanonicalRecordStore(Protocol):
    def find_by_external_ids(self, source_id: str, external_ids: Sequence[str]) -> dict[str, dict[str, Any]]:
        ...

    def find_by_titles(self, source_id: str, titles: Sequence[str]) -> dict[str, dict[str, Any]]:
        """Keys are ``title.strip().lower()``."""
        ...

    def insert(self, fields: Mapping[str, Any]) -> dict[str, Any]:
        ...

    def update(
        self,
        record_id: Any,
        patch: Mapping[str, Any],
        changes: Sequence[FieldChange],
    ) -> dict[str, Any]:
        ...


def normalize_title_key(title: Any) -> str:
    return str(title).strip().lower()
