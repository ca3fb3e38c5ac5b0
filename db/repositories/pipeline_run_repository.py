"""
Repository for pipeline run lifecycle persistence and status lookup.
"""

from __future__ import annotations

import uuid
from typing import Any

from sqlalchemy import Select, select
from sqlalchemy.orm import Session

from db.models.pipeline_run import PipelineRun


class PipelineRunRepository:
    def __init__(self, session: Session) -> None:
        self._session = session

    def create_run(self, *, run_id: uuid.UUID, fields: dict[str, Any]) -> PipelineRun:
        run = PipelineRun(id=run_id, **fields)
        self._session.add(run)
        self._session.flush()
        return run

    def get_run(self, run_id: uuid.UUID) -> PipelineRun | None:
        return self._session.get(PipelineRun, run_id)

    def update_run(self, *, run_id: uuid.UUID, fields: dict[str, Any]) -> PipelineRun | None:
        run = self.get_run(run_id)
        if run is None:
            return None
        for name, value in fields.items():
            setattr(run, name, value)
        self._session.flush()
        return run

    def list_runs(
        self,
        *,
        limit: int = 100,
        source_id: str | None = None,
        status: str | None = None,
    ) -> list[PipelineRun]:
        stmt: Select[tuple[PipelineRun]] = select(PipelineRun)

        if source_id:
            stmt = stmt.where(PipelineRun.source_id == source_id)
        if status:
            stmt = stmt.where(PipelineRun.status == status)

        stmt = stmt.order_by(PipelineRun.started_at.desc()).limit(max(1, limit))
        return list(self._session.scalars(stmt).all())
