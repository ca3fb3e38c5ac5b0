"""
Model package exports.

Import all SQLAlchemy models here so metadata registration and Alembic
autogeneration work without extra imports.
"""

from db.models.canonical_record import CanonicalRecord, CanonicalRecordTag, CanonicalRecordTagType
from db.models.pipeline_run import PipelineRun
from db.models.raw_payload_cache import RawPayloadCacheEntry

__all__ = [
    "CanonicalRecord",
    "CanonicalRecordTag",
    "CanonicalRecordTagType",
    "PipelineRun",
    "RawPayloadCacheEntry",
]
