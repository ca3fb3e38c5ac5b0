"""
app/domain/records.py

Record-level domain types shared by deduplication, merging and enrichment.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Mapping


class RecordKind(str, Enum):
    LIST_ITEM = "list_item"
    DETAIL = "detail"


@dataclass(frozen=True)
class RawRecord:
    """
    One upstream payload, tagged by how it was obtained.

    ``fields`` is the payload exactly as the source returned it. Nothing in the
    pipeline relies on its shape except through extraction rules and mappings.
    """

    kind: RecordKind
    fields: Mapping[str, Any]
    source_id: str
    raw_payload_id: uuid.UUID | None = None


class DecisionKind(str, Enum):
    NEW = "new"
    UNCHANGED = "unchanged"
    CHANGED = "changed"
    STALE = "stale"


@dataclass(frozen=True)
class FieldChange:
    field: str
    old_value: Any
    new_value: Any
    note: str

    def as_dict(self) -> dict[str, Any]:
        return {
            "field": self.field,
            "old_value": self.old_value,
            "new_value": self.new_value,
            "note": self.note,
        }


@dataclass(frozen=True)
class DeduplicationDecision:
    """
    Classification of one incoming candidate against the stored record.
    """

    kind: DecisionKind
    external_id: str | None = None
    changes: tuple[FieldChange, ...] = ()
    existing: Mapping[str, Any] | None = field(default=None, compare=False, repr=False)
    match_method: str | None = None

    @property
    def existing_id(self) -> Any:
        if self.existing is None:
            return None
        return self.existing.get("id")

    @property
    def needs_enrichment(self) -> bool:
        return self.kind in {DecisionKind.NEW, DecisionKind.CHANGED}


@dataclass(frozen=True)
class RawPayloadEntry:
    """
    Cached upstream payload keyed by (source_id, content_hash).
    """

    id: uuid.UUID
    source_id: str
    content_hash: str
    payload: Mapping[str, Any]
    metadata: Mapping[str, Any]
    first_seen_at: datetime
    last_seen_at: datetime
    call_count: int = 1
