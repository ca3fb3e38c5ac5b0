"""
Repository for canonical record persistence and tag join-table maintenance.
"""

from __future__ import annotations

import uuid
from collections.abc import Iterable, Sequence
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.orm import Session, selectinload

from db.models.canonical_record import CanonicalRecord, CanonicalRecordTag, CanonicalRecordTagType

_TAG_SOURCES: dict[str, str] = {
    "eligible_applicants": CanonicalRecordTagType.APPLICANT,
    "eligible_project_types": CanonicalRecordTagType.PROJECT_TYPE,
    "eligible_locations": CanonicalRecordTagType.LOCATION,
}


class CanonicalRecordRepository:
    """
    Single-record reads and writes for canonical records.
    """

    def __init__(self, session: Session) -> None:
        self._session = session

    def get_by_external_ids(self, *, source_id: str, external_ids: Sequence[str]) -> list[CanonicalRecord]:
        if not external_ids:
            return []
        stmt = select(CanonicalRecord).where(
            CanonicalRecord.source_id == source_id,
            CanonicalRecord.external_id.in_(list(external_ids)),
        )
        return list(self._session.scalars(stmt).all())

    def get_by_normalized_titles(self, *, source_id: str, titles: Sequence[str]) -> list[CanonicalRecord]:
        """
        Match on ``lower(trim(title))``; callers pass titles normalized the same way.
        """

        if not titles:
            return []
        stmt = (
            select(CanonicalRecord)
            .where(
                CanonicalRecord.source_id == source_id,
                func.lower(func.trim(CanonicalRecord.title)).in_(list(titles)),
            )
            .order_by(CanonicalRecord.created_at.asc())
        )
        return list(self._session.scalars(stmt).all())

    def get(self, record_id: uuid.UUID) -> CanonicalRecord | None:
        stmt = (
            select(CanonicalRecord)
            .options(selectinload(CanonicalRecord.tag_links))
            .where(CanonicalRecord.id == record_id)
        )
        return self._session.scalars(stmt).first()

    def insert(self, *, fields: dict[str, Any]) -> CanonicalRecord:
        record = CanonicalRecord(id=uuid.uuid4(), change_history=[], **fields)
        self._session.add(record)
        self._sync_tags(record)
        self._session.flush()
        return record

    def update(
        self,
        *,
        record_id: uuid.UUID,
        fields: dict[str, Any],
        audit_entry: dict[str, Any] | None = None,
    ) -> CanonicalRecord | None:
        record = self.get(record_id)
        if record is None:
            return None
        for name, value in fields.items():
            setattr(record, name, value)
        if audit_entry is not None:
            # Reassign so the JSON column registers the change.
            record.change_history = [*(record.change_history or []), audit_entry]
        if any(name in _TAG_SOURCES for name in fields):
            self._sync_tags(record)
        self._session.flush()
        return record

    def _sync_tags(self, record: CanonicalRecord) -> None:
        wanted = set(_iter_tags(record))
        existing = {(link.tag_type, link.value): link for link in record.tag_links}
        for key, link in existing.items():
            if key not in wanted:
                record.tag_links.remove(link)
        for tag_type, value in sorted(wanted - set(existing)):
            record.tag_links.append(CanonicalRecordTag(tag_type=tag_type, value=value))


def _iter_tags(record: CanonicalRecord) -> Iterable[tuple[str, str]]:
    for attribute, tag_type in _TAG_SOURCES.items():
        for value in getattr(record, attribute) or []:
            yield tag_type, str(value)[:255]
