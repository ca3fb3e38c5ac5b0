"""
tests/test_deduplication_service.py

Pytest unit tests for the raw payload cache and batch categorization.

Coverage:
- Repeat sightings bump call_count without duplicating cache entries
- Volatile metadata refresh versus preserved metadata
- Fallback hashes never hit the cache
- Id matching validated by title similarity, title fallback
- Per-source amount threshold and batch counters
- Forced full reprocessing reclassifies matched records
"""

from __future__ import annotations

import pytest

from app.domain.records import DecisionKind
from app.services.deduplication_service import (
    MATCH_BY_ID,
    MATCH_BY_TITLE,
    ContentAddressableDeduplicator,
    title_similarity,
)
from app.services.fingerprinting import fallback_fingerprint

from conftest import make_source


def _canonical(external_id: str, **overrides):
    record = {
        "source_id": "grants",
        "external_id": external_id,
        "title": f"Clean Energy Grant {external_id}",
        "total_funding_available": 1_000_000.0,
        "close_date": "2026-06-30T00:00:00+00:00",
        "api_updated_at": "2026-02-01T00:00:00+00:00",
    }
    record.update(overrides)
    return record


@pytest.fixture()
def deduplicator(raw_store, record_store, dedup_settings, clock) -> ContentAddressableDeduplicator:
    return ContentAddressableDeduplicator(
        raw_store=raw_store,
        record_store=record_store,
        settings=dedup_settings,
        tokens_per_record=1500,
        clock=clock,
    )


# ---------------------------------------------------------------------------
# Raw payload cache
# ---------------------------------------------------------------------------


class TestRawPayloadCache:
    def test_payloads_differing_only_in_volatile_fields_share_one_entry(self, deduplicator, raw_store) -> None:
        first = {"title": "Rural Broadband Grant", "amount": 5000, "retrieved_at": "2026-03-01T08:00:00Z"}
        second = {"title": "Rural Broadband Grant", "amount": 5000, "retrieved_at": "2026-03-02T08:00:00Z"}

        first_hash = deduplicator.fingerprint(first)
        second_hash = deduplicator.fingerprint(second)
        assert first_hash == second_hash

        created = deduplicator.record_raw_payload("grants", first, first_hash)
        seen_again = deduplicator.record_raw_payload("grants", second, second_hash)

        assert len(raw_store.entries) == 1
        assert seen_again.id == created.id
        assert seen_again.call_count == 2
        assert seen_again.last_seen_at > created.last_seen_at
        assert seen_again.first_seen_at == created.first_seen_at
        assert seen_again.payload == first

    def test_only_volatile_metadata_is_refreshed(self, deduplicator) -> None:
        payload = {"title": "Grant"}
        content_hash = deduplicator.fingerprint(payload)
        deduplicator.record_raw_payload(
            "grants", payload, content_hash, {"api_endpoint": "/v1", "page": 1, "record_count": 10}
        )

        updated = deduplicator.record_raw_payload(
            "grants", payload, content_hash, {"api_endpoint": "/v2", "page": 7, "record_count": 12}
        )

        assert updated.metadata == {"api_endpoint": "/v2", "page": 1, "record_count": 12}

    def test_same_hash_in_another_source_is_a_separate_entry(self, deduplicator, raw_store) -> None:
        payload = {"title": "Grant"}
        content_hash = deduplicator.fingerprint(payload)

        deduplicator.record_raw_payload("grants", payload, content_hash)
        other = deduplicator.record_raw_payload("energy", payload, content_hash)

        assert other.call_count == 1
        assert len(raw_store.entries) == 2

    def test_fallback_hash_never_hits_cache(self, deduplicator, raw_store) -> None:
        content_hash = fallback_fingerprint()
        deduplicator.record_raw_payload("grants", {"x": 1}, content_hash)

        assert deduplicator.check_raw_cache("grants", content_hash) is None
        entry = deduplicator.record_raw_payload("grants", {"x": 1}, content_hash)
        assert entry.call_count == 1
        assert len(raw_store.entries) == 2

    def test_source_mapping_feeds_extraction_rules(self, deduplicator) -> None:
        source = make_source(response_mapping={"title": "attributes.headline"})
        rules = deduplicator.extraction_rules(source)

        first = deduplicator.fingerprint({"attributes": {"headline": "A"}, "title": "x"}, rules)
        second = deduplicator.fingerprint({"attributes": {"headline": "A"}, "title": "y"}, rules)

        assert first == second


# ---------------------------------------------------------------------------
# categorize
# ---------------------------------------------------------------------------


class TestCategorize:
    def test_batch_is_split_into_decision_kinds(self, deduplicator, record_store) -> None:
        record_store.seed(**_canonical("G-1"))
        record_store.seed(**_canonical("G-2"))
        record_store.seed(**_canonical("G-3"))
        candidates = [
            _canonical("G-1"),
            _canonical("G-2", total_funding_available=2_000_000.0, api_updated_at="2026-03-01T00:00:00+00:00"),
            _canonical("G-3", total_funding_available=2_000_000.0, api_updated_at="2026-01-01T00:00:00+00:00"),
            _canonical("G-4"),
        ]

        report = deduplicator.categorize(make_source(), candidates)

        assert [decision.kind for decision in report.decisions] == [
            DecisionKind.UNCHANGED,
            DecisionKind.CHANGED,
            DecisionKind.STALE,
            DecisionKind.NEW,
        ]
        assert report.metrics["total"] == 4
        assert report.metrics["id_matches"] == 3
        assert report.metrics["new"] == 1
        assert report.metrics["stale_skips"] == 1
        assert report.metrics["estimated_tokens_saved"] == 2 * 1500
        assert [d.external_id for d in report.of_kind(DecisionKind.CHANGED)] == ["G-2"]

    def test_retitled_record_without_title_match_stays_an_update(self, deduplicator, record_store) -> None:
        stored = record_store.seed(**_canonical("G-1", title="Wastewater Treatment Loan Program"))

        candidate = _canonical("G-1", title="Youth Arts Scholarship", api_updated_at="2026-03-01T00:00:00+00:00")

        report = deduplicator.categorize(make_source(), [candidate])

        decision = report.decisions[0]
        assert decision.kind is DecisionKind.CHANGED
        assert decision.match_method == MATCH_BY_ID
        assert decision.existing_id == stored["id"]
        assert report.metrics["validation_failures"] == 1
        assert report.metrics["id_matches"] == 1
        assert report.metrics["new"] == 0

    def test_force_full_reclassifies_every_matched_record(self, deduplicator, record_store) -> None:
        record_store.seed(**_canonical("G-1"))
        record_store.seed(**_canonical("G-2"))
        candidates = [
            _canonical("G-1"),
            _canonical("G-2", total_funding_available=2_000_000.0, api_updated_at="2026-01-01T00:00:00+00:00"),
            _canonical("G-3"),
        ]

        report = deduplicator.categorize(make_source(), candidates, force_full=True)

        assert [decision.kind for decision in report.decisions] == [
            DecisionKind.CHANGED,
            DecisionKind.CHANGED,
            DecisionKind.NEW,
        ]
        assert all(decision.needs_enrichment for decision in report.decisions)
        assert report.decisions[0].existing_id is not None
        assert report.metrics["force_full_processing_used"] is True
        assert report.metrics["forced"] == 2
        assert report.metrics["estimated_tokens_saved"] == 0

    def test_rejected_id_match_falls_back_to_exact_title(self, deduplicator, record_store) -> None:
        record_store.seed(**_canonical("G-1", title="Wastewater Treatment Loan Program"))
        stored = record_store.seed(**_canonical("G-9", title="Youth Arts Scholarship"))

        report = deduplicator.categorize(make_source(), [_canonical("G-1", title="youth arts scholarship ")])

        decision = report.decisions[0]
        assert decision.match_method == MATCH_BY_TITLE
        assert decision.existing_id == stored["id"]
        assert report.metrics["title_matches"] == 1

    def test_slightly_edited_title_still_matches_by_id(self, deduplicator, record_store) -> None:
        record_store.seed(**_canonical("G-1", title="Clean Energy Grant Program 2026"))

        report = deduplicator.categorize(make_source(), [_canonical("G-1", title="Clean Energy Grants Program 2026")])

        assert report.decisions[0].match_method == MATCH_BY_ID

    def test_source_threshold_overrides_default(self, deduplicator, record_store) -> None:
        record_store.seed(**_canonical("G-1"))
        candidate = _canonical("G-1", total_funding_available=1_080_000.0, api_updated_at="2026-03-01T00:00:00+00:00")

        default = deduplicator.categorize(make_source(), [candidate])
        relaxed = deduplicator.categorize(make_source(amount_change_threshold=0.1), [candidate])

        assert default.decisions[0].kind is DecisionKind.CHANGED
        assert relaxed.decisions[0].kind is DecisionKind.UNCHANGED

    def test_requires_record_store(self, raw_store, dedup_settings) -> None:
        deduplicator = ContentAddressableDeduplicator(raw_store=raw_store, settings=dedup_settings)
        with pytest.raises(ValueError):
            deduplicator.categorize(make_source(), [])


def test_title_similarity_bounds() -> None:
    assert title_similarity("Clean Energy Grant", "clean energy grant") == 1.0
    assert title_similarity(None, "anything") == 0.0
