"""
app/domain/pipeline.py

Run and stage state for ingestion pipeline orchestration.
"""

from __future__ import annotations

import copy
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class RunStatus(str, Enum):
    STARTED = "started"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class StageStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class Stage(str, Enum):
    FETCH = "fetch"
    EXTRACT = "extract"
    ENRICH = "enrich"
    PERSIST = "persist"


# Stages run strictly in this order; resume scans it front to back.
STAGE_ORDER: tuple[Stage, ...] = (
    Stage.FETCH,
    Stage.EXTRACT,
    Stage.ENRICH,
    Stage.PERSIST,
)

TERMINAL_RUN_STATUSES: frozenset[RunStatus] = frozenset({RunStatus.COMPLETED, RunStatus.FAILED})


def stages_before(stage: Stage) -> tuple[Stage, ...]:
    return STAGE_ORDER[: STAGE_ORDER.index(stage)]


@dataclass
class RunSnapshot:
    """
    Full state of one ingestion run as held by the run store.
    """

    id: uuid.UUID
    source_id: str
    status: RunStatus
    stages: dict[Stage, StageStatus]
    started_at: datetime
    stage_metrics: dict[str, dict[str, Any]] = field(default_factory=dict)
    error_details: dict[str, Any] | None = None
    failed_stage: Stage | None = None
    resumed_stage: Stage | None = None
    resume_count: int = 0
    checkpoint_data: dict[str, Any] = field(default_factory=dict)
    completed_at: datetime | None = None
    total_processing_time_ms: int | None = None

    @classmethod
    def new(cls, *, source_id: str, started_at: datetime) -> RunSnapshot:
        return cls(
            id=uuid.uuid4(),
            source_id=source_id,
            status=RunStatus.STARTED,
            stages={stage: StageStatus.PENDING for stage in STAGE_ORDER},
            started_at=started_at,
        )

    def processing_stage(self) -> Stage | None:
        for stage in STAGE_ORDER:
            if self.stages[stage] is StageStatus.PROCESSING:
                return stage
        return None

    def copy(self) -> RunSnapshot:
        return copy.deepcopy(self)
