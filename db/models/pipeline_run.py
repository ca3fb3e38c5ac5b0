"""
db/models/pipeline_run.py

Pipeline run model with per-stage status tracking.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import DateTime, Index, Integer, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from db.base import Base, JSONType, TimestampMixin


class PipelineRun(Base, TimestampMixin):
    __tablename__ = "pipeline_runs"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    source_id: Mapped[str] = mapped_column(String(128), nullable=False)
    status: Mapped[str] = mapped_column(
        String(32),
        nullable=False,
        comment="started, processing, completed, failed",
    )
    fetch_status: Mapped[str] = mapped_column(String(32), nullable=False, default="pending")
    extract_status: Mapped[str] = mapped_column(String(32), nullable=False, default="pending")
    enrich_status: Mapped[str] = mapped_column(String(32), nullable=False, default="pending")
    persist_status: Mapped[str] = mapped_column(String(32), nullable=False, default="pending")
    stage_metrics: Mapped[dict[str, Any]] = mapped_column(
        JSONType,
        nullable=False,
        default=dict,
        comment="Per-stage metrics payloads keyed by stage name",
    )
    error_details: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    failed_stage: Mapped[str | None] = mapped_column(String(32), nullable=True)
    resumed_stage: Mapped[str | None] = mapped_column(String(32), nullable=True)
    resume_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    checkpoint_data: Mapped[dict[str, Any]] = mapped_column(
        JSONType,
        nullable=False,
        default=dict,
        comment="Stage checkpoints used to resume a failed run",
    )
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    total_processing_time_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)

    __table_args__ = (
        Index("ix_pipeline_runs_source_id", "source_id"),
        Index("ix_pipeline_runs_status", "status"),
        Index("ix_pipeline_runs_source_id_started_at", "source_id", "started_at"),
    )
