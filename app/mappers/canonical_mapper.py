"""
app/mappers/canonical_mapper.py

Field-name mapping and sanitization from upstream payloads to canonical records,
plus null-protected update patches for existing records.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import InvalidOperation
from typing import Any

from app.domain.records import FieldChange, RawRecord
from app.mappers.sanitizers import (
    SanitizationError,
    is_empty,
    sanitize_amount,
    sanitize_bool,
    sanitize_date,
    sanitize_identifier,
    sanitize_percentage,
    sanitize_relevance_score,
    sanitize_status,
    sanitize_string,
    sanitize_string_list,
    sanitize_title,
    sanitize_url,
)
from app.services.change_detection import values_equal
from app.services.fingerprinting import resolve_path

logger = logging.getLogger(__name__)

FIELD_SANITIZERS: dict[str, Callable[[Any], Any]] = {
    "external_id": sanitize_identifier,
    "title": sanitize_title,
    "description": sanitize_string,
    "url": sanitize_url,
    "status": sanitize_status,
    "minimum_award": sanitize_amount,
    "maximum_award": sanitize_amount,
    "total_funding_available": sanitize_amount,
    "open_date": sanitize_date,
    "close_date": sanitize_date,
    "posted_date": sanitize_date,
    "api_updated_at": sanitize_date,
    "eligible_applicants": sanitize_string_list,
    "eligible_project_types": sanitize_string_list,
    "eligible_activities": sanitize_string_list,
    "eligible_locations": sanitize_string_list,
    "categories": sanitize_string_list,
    "tags": sanitize_string_list,
    "agency_name": sanitize_string,
    "cost_share_required": sanitize_bool,
    "cost_share_percentage": sanitize_percentage,
    "is_national": sanitize_bool,
    "actionable_summary": sanitize_string,
    "enhanced_description": sanitize_string,
    "relevance_score": sanitize_relevance_score,
    "relevance_reasoning": sanitize_string,
}

CANONICAL_FIELDS: tuple[str, ...] = tuple(FIELD_SANITIZERS)

# Fields produced by enrichment rather than by the source.
ENRICHMENT_FIELDS: frozenset[str] = frozenset(
    {"actionable_summary", "enhanced_description", "relevance_score", "relevance_reasoning"}
)

# Fields never written through an update patch.
_IMMUTABLE_FIELDS: frozenset[str] = frozenset({"external_id"})

DEFAULT_EXTERNAL_TO_CANONICAL: dict[str, str] = {
    "id": "external_id",
    "title": "title",
    "description": "description",
    "url": "url",
    "status": "status",
    "minimumAward": "minimum_award",
    "maximumAward": "maximum_award",
    "totalFundingAvailable": "total_funding_available",
    "openDate": "open_date",
    "closeDate": "close_date",
    "postedDate": "posted_date",
    "updatedAt": "api_updated_at",
    "eligibleApplicants": "eligible_applicants",
    "eligibleProjectTypes": "eligible_project_types",
    "eligibleActivities": "eligible_activities",
    "eligibleLocations": "eligible_locations",
    "categories": "categories",
    "tags": "tags",
    "agencyName": "agency_name",
    "matchingRequired": "cost_share_required",
    "matchingPercentage": "cost_share_percentage",
    "isNational": "is_national",
    "actionableSummary": "actionable_summary",
    "enhancedDescription": "enhanced_description",
    "relevanceScore": "relevance_score",
    "relevanceReasoning": "relevance_reasoning",
}


@dataclass(frozen=True)
class FieldMapping:
    """
    Bidirectional dictionary between external names (or dotted paths) and
    canonical field names.
    """

    to_canonical: Mapping[str, str]

    def __post_init__(self) -> None:
        targets = list(self.to_canonical.values())
        duplicates = sorted({name for name in targets if targets.count(name) > 1})
        if duplicates:
            raise ValueError(f"Canonical fields mapped more than once: {', '.join(duplicates)}")
        unknown = sorted(set(targets) - set(FIELD_SANITIZERS))
        if unknown:
            raise ValueError(f"Unknown canonical fields in mapping: {', '.join(unknown)}")

    @property
    def to_external(self) -> dict[str, str]:
        return {canonical: external for external, canonical in self.to_canonical.items()}

    def canonical_name(self, external_name: str) -> str | None:
        return self.to_canonical.get(external_name)

    def external_name(self, canonical_name: str) -> str | None:
        return self.to_external.get(canonical_name)

    def with_overrides(self, canonical_to_external: Mapping[str, str]) -> FieldMapping:
        """
        Return a mapping where each given canonical field is read from the
        given external path instead of its default name.
        """

        if not canonical_to_external:
            return self
        overridden = set(canonical_to_external)
        merged = {
            external: canonical
            for external, canonical in self.to_canonical.items()
            if canonical not in overridden
        }
        for canonical, external in canonical_to_external.items():
            if canonical in FIELD_SANITIZERS and external:
                merged[external] = canonical
        return FieldMapping(to_canonical=merged)


DEFAULT_FIELD_MAPPING = FieldMapping(to_canonical=DEFAULT_EXTERNAL_TO_CANONICAL)


@dataclass(frozen=True)
class FieldIssue:
    field: str
    reason: str
    value: str | None = None


@dataclass
class MappedRecord:
    fields: dict[str, Any]
    issues: list[FieldIssue] = field(default_factory=list)

    @property
    def external_id(self) -> str | None:
        return self.fields.get("external_id")


@dataclass(frozen=True)
class UpdatePatch:
    fields: dict[str, Any]
    changes: tuple[FieldChange, ...]

    @property
    def is_empty(self) -> bool:
        return not self.fields


def _preview(value: Any) -> str:
    return repr(value)[:120]


def _sanitize_field(name: str, value: Any, issues: list[FieldIssue]) -> Any:
    sanitizer = FIELD_SANITIZERS[name]
    try:
        return sanitizer(value)
    except (SanitizationError, TypeError, ValueError, InvalidOperation, OverflowError) as exc:
        issues.append(FieldIssue(field=name, reason=str(exc), value=_preview(value)))
        return None


class CanonicalRecordMerger:
    """
    Maps upstream payloads to canonical records and computes update patches.
    """

    def __init__(
        self,
        *,
        mapping: FieldMapping = DEFAULT_FIELD_MAPPING,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._mapping = mapping
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def mapping_for(self, response_mapping: Mapping[str, str] | None) -> FieldMapping:
        return self._mapping.with_overrides(response_mapping or {})

    def map_external_to_canonical(
        self,
        record: RawRecord | Mapping[str, Any],
        mapping: FieldMapping | None = None,
    ) -> MappedRecord:
        """
        Rename and sanitize one upstream payload.

        A field that fails sanitization becomes ``None`` and is reported in
        ``MappedRecord.issues``; the rest of the record is still mapped.
        """

        payload = record.fields if isinstance(record, RawRecord) else record
        active = mapping or self._mapping
        found: dict[str, Any] = {}
        for external, canonical in active.to_canonical.items():
            if canonical in found:
                continue
            value = resolve_path(payload, external) if "." in external else payload.get(external)
            if value is not None:
                found[canonical] = value
        for canonical in CANONICAL_FIELDS:
            if canonical not in found and payload.get(canonical) is not None:
                found[canonical] = payload[canonical]

        issues: list[FieldIssue] = []
        fields = {name: _sanitize_field(name, value, issues) for name, value in found.items()}
        if issues:
            logger.debug(
                "Canonical mapping degraded fields external_id=%s fields=%s",
                fields.get("external_id"),
                [issue.field for issue in issues],
            )
        return MappedRecord(fields=fields, issues=issues)

    def merge_for_update(
        self,
        existing: Mapping[str, Any],
        incoming: Mapping[str, Any],
    ) -> UpdatePatch:
        """
        Minimal patch that brings ``existing`` up to date with ``incoming``.

        Empty incoming values never enter the patch, so a populated field on
        ``existing`` is never blanked.
        """

        patch: dict[str, Any] = {}
        changes: list[FieldChange] = []
        for name in CANONICAL_FIELDS:
            if name in _IMMUTABLE_FIELDS or name not in incoming:
                continue
            new_value = incoming[name]
            if is_empty(new_value):
                continue
            old_value = existing.get(name)
            if values_equal(name, old_value, new_value):
                continue
            patch[name] = new_value
            note = "value added" if is_empty(old_value) else "value updated"
            changes.append(FieldChange(name, old_value, new_value, note))
        return UpdatePatch(fields=patch, changes=tuple(changes))

    def prepare_for_insert(
        self,
        record: Mapping[str, Any],
        *,
        source_id: str,
    ) -> dict[str, Any]:
        """
        Sanitized canonical fields plus creation metadata for a new row.
        """

        issues: list[FieldIssue] = []
        prepared = {
            name: _sanitize_field(name, record[name], issues)
            for name in CANONICAL_FIELDS
            if name in record
        }
        for name in ("raw_payload_id", "enrichment"):
            if record.get(name) is not None:
                prepared[name] = record[name]
        if issues:
            logger.warning(
                "Insert sanitization degraded fields external_id=%s fields=%s",
                prepared.get("external_id"),
                [issue.field for issue in issues],
            )
        now = self._clock()
        prepared["source_id"] = source_id
        prepared["created_at"] = now
        prepared["updated_at"] = now
        return prepared

    def apply_enrichment(
        self,
        candidate: Mapping[str, Any],
        enrichment: Mapping[str, Any] | None,
    ) -> dict[str, Any]:
        """
        Overlay enrichment output onto a candidate record.

        Enrichment owns its own fields; for source fields it only fills gaps
        (list fields are unioned) and never blanks a provided value.
        """

        merged = dict(candidate)
        if not enrichment:
            return merged

        issues: list[FieldIssue] = []
        for name, value in enrichment.items():
            if name not in FIELD_SANITIZERS or name in _IMMUTABLE_FIELDS:
                continue
            cleaned = _sanitize_field(name, value, issues)
            if is_empty(cleaned):
                continue
            current = merged.get(name)
            if name in ENRICHMENT_FIELDS or is_empty(current):
                merged[name] = cleaned
            elif isinstance(current, list) and isinstance(cleaned, list):
                merged[name] = _union(current, cleaned)
        merged["enrichment"] = dict(enrichment)
        return merged


def _union(first: Iterable[str], second: Iterable[str]) -> list[str]:
    combined: list[str] = []
    for item in [*first, *second]:
        if item not in combined:
            combined.append(item)
    return combined
