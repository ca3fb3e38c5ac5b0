"""
db/models/canonical_record.py

Canonical funding records and their eligibility/region tag join table.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import (
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from db.base import Base, JSONType, TimestampMixin


class CanonicalRecordTagType:
    APPLICANT = "applicant"
    PROJECT_TYPE = "project_type"
    LOCATION = "location"


class CanonicalRecord(Base, TimestampMixin):
    __tablename__ = "canonical_records"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    source_id: Mapped[str] = mapped_column(String(128), nullable=False)
    external_id: Mapped[str] = mapped_column(String(255), nullable=False)
    title: Mapped[str | None] = mapped_column(String(500), nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    url: Mapped[str | None] = mapped_column(String(2048), nullable=True)
    status: Mapped[str | None] = mapped_column(String(32), nullable=True, comment="open, closed, upcoming")
    minimum_award: Mapped[float | None] = mapped_column(Numeric(18, 2, asdecimal=False), nullable=True)
    maximum_award: Mapped[float | None] = mapped_column(Numeric(18, 2, asdecimal=False), nullable=True)
    total_funding_available: Mapped[float | None] = mapped_column(
        Numeric(18, 2, asdecimal=False),
        nullable=True,
    )
    open_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    close_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    posted_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    api_updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    eligible_applicants: Mapped[list[str] | None] = mapped_column(JSONType, nullable=True)
    eligible_project_types: Mapped[list[str] | None] = mapped_column(JSONType, nullable=True)
    eligible_activities: Mapped[list[str] | None] = mapped_column(JSONType, nullable=True)
    eligible_locations: Mapped[list[str] | None] = mapped_column(JSONType, nullable=True)
    categories: Mapped[list[str] | None] = mapped_column(JSONType, nullable=True)
    tags: Mapped[list[str] | None] = mapped_column(JSONType, nullable=True)
    agency_name: Mapped[str | None] = mapped_column(String(500), nullable=True)
    cost_share_required: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    cost_share_percentage: Mapped[float | None] = mapped_column(Float, nullable=True)
    is_national: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    actionable_summary: Mapped[str | None] = mapped_column(Text, nullable=True)
    enhanced_description: Mapped[str | None] = mapped_column(Text, nullable=True)
    relevance_score: Mapped[float | None] = mapped_column(Float, nullable=True)
    relevance_reasoning: Mapped[str | None] = mapped_column(Text, nullable=True)
    raw_payload_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("raw_payload_cache.id", ondelete="SET NULL"),
        nullable=True,
    )
    enrichment: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    change_history: Mapped[list[dict[str, Any]]] = mapped_column(
        JSONType,
        nullable=False,
        default=list,
        comment="Audit entries for each applied update patch",
    )

    tag_links: Mapped[list[CanonicalRecordTag]] = relationship(
        back_populates="record",
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        UniqueConstraint("source_id", "external_id", name="uq_canonical_records_source_external_id"),
        Index("ix_canonical_records_source_id_title", "source_id", "title"),
        Index("ix_canonical_records_close_date", "close_date"),
        Index("ix_canonical_records_status", "status"),
    )


class CanonicalRecordTag(Base):
    __tablename__ = "canonical_record_tags"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    record_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("canonical_records.id", ondelete="CASCADE"),
        nullable=False,
    )
    tag_type: Mapped[str] = mapped_column(String(32), nullable=False)
    value: Mapped[str] = mapped_column(String(255), nullable=False)

    record: Mapped[CanonicalRecord] = relationship(back_populates="tag_links")

    __table_args__ = (
        UniqueConstraint("record_id", "tag_type", "value", name="uq_canonical_record_tags_record_type_value"),
        Index("ix_canonical_record_tags_tag_type_value", "tag_type", "value"),
    )
