"""
tests/test_fingerprinting.py

Pytest unit tests for stable-field fingerprints.
"""

from __future__ import annotations

import pytest

from app.domain.records import RawRecord, RecordKind
from app.errors import FingerprintComputationError
from app.services.fingerprinting import (
    build_extraction_rules,
    compute_fingerprint,
    extract_field,
    fingerprint,
    is_fallback_fingerprint,
    normalize_amount,
    normalize_day,
    normalize_text,
)


def _payload(**overrides):
    payload = {
        "title": "Rural Broadband Grant",
        "description": "Expands broadband access in rural counties.",
        "deadline": "2026-05-01T17:00:00Z",
        "amount": "$2,500,000",
        "agency": "USDA",
        "retrieved_at": "2026-03-01T08:00:00Z",
        "internalId": 9911,
    }
    payload.update(overrides)
    return payload


class TestNormalizers:
    def test_text_is_trimmed_lowercased_and_stripped_of_punctuation(self) -> None:
        assert normalize_text("  Clean-Energy   Grant: Phase II!  ") == "clean-energy grant phase ii"

    @pytest.mark.parametrize(
        ("value", "expected"),
        [(2500000.5, "2500001"), ("$1,234.49", "1234"), (10, "10"), ("n/a", None), (None, None)],
    )
    def test_amounts_round_half_up(self, value, expected) -> None:
        assert normalize_amount(value) == expected

    def test_dates_truncate_to_utc_day(self) -> None:
        assert normalize_day("2026-05-01T23:30:00-02:00") == "2026-05-02"
        assert normalize_day("2026-05-01") == "2026-05-01"


class TestFingerprint:
    def test_volatile_fields_do_not_change_the_hash(self) -> None:
        first = fingerprint(_payload(retrieved_at="2026-03-01T08:00:00Z", internalId=1))
        second = fingerprint(_payload(retrieved_at="2026-03-02T09:30:00Z", internalId=2))
        assert first == second

    def test_key_order_does_not_change_the_hash(self) -> None:
        payload = _payload()
        reordered = dict(reversed(list(payload.items())))
        assert fingerprint(payload) == fingerprint(reordered)

    def test_stable_field_change_changes_the_hash(self) -> None:
        assert fingerprint(_payload()) != fingerprint(_payload(amount="$3,000,000"))

    def test_cosmetic_text_differences_are_normalized(self) -> None:
        assert fingerprint(_payload(title="RURAL   broadband grant.")) == fingerprint(_payload())

    def test_description_only_first_200_characters_count(self) -> None:
        base = "a" * 200
        assert fingerprint(_payload(description=base + " tail one")) == fingerprint(
            _payload(description=base + " tail two")
        )

    def test_raw_record_and_mapping_hash_the_same(self) -> None:
        payload = _payload()
        record = RawRecord(kind=RecordKind.LIST_ITEM, fields=payload, source_id="grants")
        assert fingerprint(record) == fingerprint(payload)

    def test_nested_fields_are_found_deterministically(self) -> None:
        nested = {"data": {"attributes": {"title": "Rural Broadband Grant"}}, "meta": {"agency": "USDA"}}
        rule = build_extraction_rules()[0]
        assert extract_field(nested, rule) == "Rural Broadband Grant"
        assert fingerprint(nested) == fingerprint({"meta": nested["meta"], "data": nested["data"]})

    def test_configured_mapping_path_wins(self) -> None:
        rules = build_extraction_rules({"title": "attributes.headline"})
        payload = {"title": "ignored", "attributes": {"headline": "Mapped Title"}}
        assert extract_field(payload, rules[0]) == "Mapped Title"

    def test_payload_without_stable_fields_uses_raw_fallback(self) -> None:
        first = fingerprint({"foo": 1, "bar": [1, 2]})
        second = fingerprint({"bar": [1, 2], "foo": 1})
        assert first == second
        assert not is_fallback_fingerprint(first)

    def test_uninspectable_payload_raises_internally(self) -> None:
        with pytest.raises(FingerprintComputationError):
            compute_fingerprint(["not", "a", "mapping"])  # type: ignore[arg-type]

    def test_failure_degrades_to_unique_fallback(self) -> None:
        first = fingerprint(["not", "a", "mapping"])  # type: ignore[arg-type]
        second = fingerprint(["not", "a", "mapping"])  # type: ignore[arg-type]
        assert is_fallback_fingerprint(first)
        assert first != second

    def test_out_of_range_timestamp_degrades_to_fallback(self) -> None:
        with pytest.raises(FingerprintComputationError):
            compute_fingerprint({"title": "Clean Energy Grant", "deadline": 1e300})
        content_hash = fingerprint({"title": "Clean Energy Grant", "deadline": 1e300})
        assert content_hash.startswith("error-")
        assert is_fallback_fingerprint(content_hash)
