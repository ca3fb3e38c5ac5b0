"""
app/repositories package marker.
"""

from app.repositories.protocols import CanonicalRecordStore, RawPayloadStore, RunStore
from app.repositories.sql_stores import SqlCanonicalRecordStore, SqlRawPayloadStore, SqlRunStore

__all__ = [
    "CanonicalRecordStore",
    "RawPayloadStore",
    "RunStore",
    "SqlCanonicalRecordStore",
    "SqlRawPayloadStore",
    "SqlRunStore",
]
