"""
app/domain package marker.
"""

from app.domain.pipeline import STAGE_ORDER, RunSnapshot, RunStatus, Stage, StageStatus
from app.domain.records import (
    DecisionKind,
    DeduplicationDecision,
    FieldChange,
    RawPayloadEntry,
    RawRecord,
    RecordKind,
)
from app.domain.source import PagingMode, Source

__all__ = [
    "STAGE_ORDER",
    "DecisionKind",
    "DeduplicationDecision",
    "FieldChange",
    "PagingMode",
    "RawPayloadEntry",
    "RawRecord",
    "RecordKind",
    "RunSnapshot",
    "RunStatus",
    "Source",
    "Stage",
    "StageStatus",
]
