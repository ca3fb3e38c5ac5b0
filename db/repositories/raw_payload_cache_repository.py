"""
Repository for the content-addressed raw payload cache.
"""

from __future__ import annotations

import uuid
from collections.abc import Sequence
from datetime import datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from db.models.raw_payload_cache import RawPayloadCacheEntry


class RawPayloadCacheRepository:
    def __init__(self, session: Session) -> None:
        self._session = session

    def get_by_hash(self, *, source_id: str, content_hash: str) -> RawPayloadCacheEntry | None:
        stmt = select(RawPayloadCacheEntry).where(
            RawPayloadCacheEntry.source_id == source_id,
            RawPayloadCacheEntry.content_hash == content_hash,
        )
        return self._session.scalars(stmt).first()

    def get_many(self, entry_ids: Sequence[uuid.UUID]) -> list[RawPayloadCacheEntry]:
        if not entry_ids:
            return []
        stmt = select(RawPayloadCacheEntry).where(RawPayloadCacheEntry.id.in_(list(entry_ids)))
        by_id = {entry.id: entry for entry in self._session.scalars(stmt).all()}
        return [by_id[entry_id] for entry_id in entry_ids if entry_id in by_id]

    def add(
        self,
        *,
        entry_id: uuid.UUID,
        source_id: str,
        content_hash: str,
        payload: dict[str, Any],
        request_metadata: dict[str, Any],
        seen_at: datetime,
    ) -> RawPayloadCacheEntry:
        entry = RawPayloadCacheEntry(
            id=entry_id,
            source_id=source_id,
            content_hash=content_hash,
            payload=payload,
            request_metadata=request_metadata,
            first_seen_at=seen_at,
            last_seen_at=seen_at,
            call_count=1,
        )
        self._session.add(entry)
        self._session.flush()
        return entry

    def record_sighting(
        self,
        *,
        entry_id: uuid.UUID,
        seen_at: datetime,
        call_count: int,
        request_metadata: dict[str, Any],
    ) -> RawPayloadCacheEntry | None:
        entry = self._session.get(RawPayloadCacheEntry, entry_id)
        if entry is None:
            return None
        entry.last_seen_at = seen_at
        entry.call_count = call_count
        entry.request_metadata = request_metadata
        self._session.flush()
        return entry
