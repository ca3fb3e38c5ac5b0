"""
Repository layer exports.
"""

from db.repositories.canonical_record_repository import CanonicalRecordRepository
from db.repositories.errors import PersistenceError, RecordNotFoundError, StoreError
from db.repositories.pipeline_run_repository import PipelineRunRepository
from db.repositories.raw_payload_cache_repository import RawPayloadCacheRepository

__all__ = [
    "CanonicalRecordRepository",
    "PersistenceError",
    "PipelineRunRepository",
    "RawPayloadCacheRepository",
    "RecordNotFoundError",
    "StoreError",
]
