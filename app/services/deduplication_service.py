"""
app/services/deduplication_service.py

Content-addressed deduplication of raw payloads and canonical candidates.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from difflib import SequenceMatcher
from typing import Any

from app.config import DeduplicationSettings, get_deduplication_settings
from app.domain.records import DecisionKind, DeduplicationDecision, RawPayloadEntry, RawRecord
from app.domain.source import Source
from app.repositories.protocols import CanonicalRecordStore, RawPayloadStore, normalize_title_key
from app.services import change_detection
from app.services.fingerprinting import (
    FieldExtractionRule,
    build_extraction_rules,
    fingerprint as compute_payload_fingerprint,
    is_fallback_fingerprint,
)

logger = logging.getLogger(__name__)

MATCH_BY_ID = "external_id"
MATCH_BY_TITLE = "title"

# Refreshed on every sighting; everything else in the metadata is kept.
VOLATILE_METADATA_FIELDS = ("api_endpoint", "execution_time_ms", "record_count", "request_details")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def title_similarity(first: Any, second: Any) -> float:
    if not first or not second:
        return 0.0
    return SequenceMatcher(None, normalize_title_key(first), normalize_title_key(second)).ratio()


@dataclass
class DeduplicationReport:
    """
    Per-candidate decisions plus batch counters, in candidate order.
    """

    decisions: list[DeduplicationDecision]
    metrics: dict[str, Any] = field(default_factory=dict)

    def of_kind(self, kind: DecisionKind) -> list[DeduplicationDecision]:
        return [decision for decision in self.decisions if decision.kind is kind]


class ContentAddressableDeduplicator:
    """
    Fingerprints raw payloads, tracks them in the raw payload cache and
    classifies canonical candidates against stored records.
    """

    def __init__(
        self,
        *,
        raw_store: RawPayloadStore,
        record_store: CanonicalRecordStore | None = None,
        settings: DeduplicationSettings | None = None,
        tokens_per_record: int = 1500,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._raw_store = raw_store
        self._record_store = record_store
        self._settings = settings or get_deduplication_settings()
        self._tokens_per_record = tokens_per_record
        self._clock = clock

    def extraction_rules(self, source: Source | None = None) -> tuple[FieldExtractionRule, ...]:
        return build_extraction_rules(
            source.response_mapping if source is not None else None,
            description_prefix=self._settings.description_prefix,
        )

    def fingerprint(
        self,
        payload: RawRecord | Mapping[str, Any],
        field_extractors: Sequence[FieldExtractionRule] | None = None,
    ) -> str:
        rules = tuple(field_extractors) if field_extractors is not None else self.extraction_rules()
        return compute_payload_fingerprint(
            payload,
            rules,
            raw_fallback_prefix=self._settings.raw_fallback_prefix,
        )

    def check_raw_cache(self, source_id: str, content_hash: str) -> RawPayloadEntry | None:
        if is_fallback_fingerprint(content_hash):
            return None
        return self._raw_store.get(source_id, content_hash)

    def record_raw_payload(
        self,
        source_id: str,
        payload: Mapping[str, Any],
        content_hash: str,
        meta: Mapping[str, Any] | None = None,
    ) -> RawPayloadEntry:
        """
        Record one sighting of ``payload``.

        A known (source_id, content_hash) only bumps ``call_count``,
        ``last_seen_at`` and the volatile metadata; the stored payload is kept.
        """

        now = self._clock()
        meta = dict(meta or {})
        existing = self.check_raw_cache(source_id, content_hash)
        if existing is not None:
            metadata = dict(existing.metadata)
            metadata.update({key: meta[key] for key in VOLATILE_METADATA_FIELDS if key in meta})
            updated = replace(
                existing,
                last_seen_at=now,
                call_count=existing.call_count + 1,
                metadata=metadata,
            )
            logger.debug(
                "Raw payload cache hit source_id=%s content_hash=%s call_count=%s",
                source_id,
                content_hash,
                updated.call_count,
            )
            return self._raw_store.update(updated)

        entry = RawPayloadEntry(
            id=uuid.uuid4(),
            source_id=source_id,
            content_hash=content_hash,
            payload=dict(payload),
            metadata=meta,
            first_seen_at=now,
            last_seen_at=now,
            call_count=1,
        )
        return self._raw_store.insert(entry)

    def classify(
        self,
        existing: Mapping[str, Any] | None,
        incoming: Mapping[str, Any],
        *,
        amount_change_threshold: float | None = None,
        match_method: str | None = None,
    ) -> DeduplicationDecision:
        threshold = (
            amount_change_threshold
            if amount_change_threshold is not None
            else self._settings.amount_change_threshold
        )
        return change_detection.classify(
            existing,
            incoming,
            amount_change_threshold=threshold,
            match_method=match_method,
        )

    def categorize(
        self,
        source: Source,
        candidates: Sequence[Mapping[str, Any]],
        *,
        force_full: bool = False,
    ) -> DeduplicationReport:
        """
        Classify a batch of canonical candidates from one source.

        Existing records are looked up by external id first. An id match is
        trusted outright when the titles are similar; otherwise an exact
        normalized title match wins, and failing that the id-matched record is
        kept so the candidate becomes an update rather than a duplicate insert.
        Failed title checks are counted as `validation_failures`.

        With `force_full`, every matched candidate is reclassified as CHANGED so
        it is enriched again and updated in place; unmatched candidates stay NEW.
        """

        if self._record_store is None:
            raise ValueError("categorize requires a canonical record store")

        threshold = (
            source.amount_change_threshold
            if source.amount_change_threshold is not None
            else self._settings.amount_change_threshold
        )
        external_ids = sorted({str(c["external_id"]) for c in candidates if c.get("external_id")})
        titles = sorted({str(c["title"]) for c in candidates if c.get("title")})
        by_id = self._record_store.find_by_external_ids(source.id, external_ids) if external_ids else {}
        by_title = self._record_store.find_by_titles(source.id, titles) if titles else {}

        metrics: dict[str, Any] = {
            "total": len(candidates),
            "id_matches": 0,
            "title_matches": 0,
            "validation_failures": 0,
            "force_full_processing_used": force_full,
            "forced": 0,
        }
        decisions: list[DeduplicationDecision] = []
        for candidate in candidates:
            existing, method = self._match(candidate, by_id, by_title, metrics)
            decision = self.classify(
                existing,
                candidate,
                amount_change_threshold=threshold,
                match_method=method,
            )
            if force_full and decision.kind in {DecisionKind.UNCHANGED, DecisionKind.STALE}:
                decision = replace(decision, kind=DecisionKind.CHANGED)
                metrics["forced"] += 1
            decisions.append(decision)

        for kind in DecisionKind:
            metrics[kind.value] = sum(1 for decision in decisions if decision.kind is kind)
        bypassed = metrics[DecisionKind.UNCHANGED.value] + metrics[DecisionKind.STALE.value]
        metrics["stale_skips"] = metrics[DecisionKind.STALE.value]
        metrics["estimated_tokens_saved"] = bypassed * self._tokens_per_record
        logger.info(
            "Deduplication categorized source_id=%s total=%s new=%s changed=%s unchanged=%s stale=%s",
            source.id,
            metrics["total"],
            metrics[DecisionKind.NEW.value],
            metrics[DecisionKind.CHANGED.value],
            metrics[DecisionKind.UNCHANGED.value],
            metrics[DecisionKind.STALE.value],
        )
        if force_full:
            logger.warning(
                "Full reprocessing forced source_id=%s forced=%s",
                source.id,
                metrics["forced"],
            )
        return DeduplicationReport(decisions=decisions, metrics=metrics)

    def _match(
        self,
        candidate: Mapping[str, Any],
        by_id: Mapping[str, Mapping[str, Any]],
        by_title: Mapping[str, Mapping[str, Any]],
        metrics: dict[str, Any],
    ) -> tuple[Mapping[str, Any] | None, str | None]:
        external_id = candidate.get("external_id")
        title = candidate.get("title")
        id_match = by_id.get(str(external_id)) if external_id else None
        if id_match is not None:
            stored_title = id_match.get("title")
            if not title or not stored_title:
                metrics["id_matches"] += 1
                return id_match, MATCH_BY_ID
            if title_similarity(title, stored_title) >= self._settings.title_similarity:
                metrics["id_matches"] += 1
                return id_match, MATCH_BY_ID
            metrics["validation_failures"] += 1
            logger.warning(
                "External id match failed title check external_id=%s incoming_title=%r stored_title=%r",
                external_id,
                title,
                stored_title,
            )

        if title:
            existing = by_title.get(normalize_title_key(title))
            if existing is not None:
                metrics["title_matches"] += 1
                return existing, MATCH_BY_TITLE

        # (source_id, external_id) is unique in the store, so a retitled
        # record is still the id-matched row and must be updated in place.
        if id_match is not None:
            metrics["id_matches"] += 1
            return id_match, MATCH_BY_ID
        return None, None
