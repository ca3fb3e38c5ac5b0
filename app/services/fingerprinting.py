"""
app/services/fingerprinting.py

Content fingerprints over the stable fields of upstream payloads.

A fingerprint hashes a small normalized subset of the payload (title, truncated
description, deadline day, rounded amount, agency). Volatile metadata such as
retrieval timestamps or internal ids never takes part, so the same logical
content always hashes the same way.
"""

from __future__ import annotations

import hashlib
import json
import logging
import re
import time
import uuid
from collections.abc import Callable, Mapping
from dataclasses import dataclass, replace
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any

from app.domain.records import RawRecord
from app.errors import FingerprintComputationError
from app.mappers.sanitizers import SanitizationError, is_empty, parse_datetime

logger = logging.getLogger(__name__)

FALLBACK_PREFIX = "error-"
_MAX_SEARCH_DEPTH = 5

_WHITESPACE = re.compile(r"\s+")
_PUNCTUATION = re.compile(r"[^\w\s-]")
_AMOUNT_DIGITS = re.compile(r"\d[\d,]*(?:\.\d+)?")


def normalize_text(value: Any) -> str | None:
    if isinstance(value, Mapping):
        value = value.get("name") or value.get("title")
    if is_empty(value):
        return None
    text = _WHITESPACE.sub(" ", str(value).strip().lower())
    text = _WHITESPACE.sub(" ", _PUNCTUATION.sub("", text)).strip()
    return text or None


def normalize_amount(value: Any) -> str | None:
    if isinstance(value, bool) or is_empty(value):
        return None
    if isinstance(value, (int, float, Decimal)):
        amount = Decimal(str(value))
    else:
        match = _AMOUNT_DIGITS.search(str(value))
        if match is None:
            return None
        amount = Decimal(match.group(0).replace(",", ""))
    if not amount.is_finite():
        return None
    return str(int(amount.quantize(Decimal("1"), rounding=ROUND_HALF_UP)))


def normalize_day(value: Any) -> str | None:
    if is_empty(value):
        return None
    try:
        parsed = parse_datetime(value)
    except SanitizationError:
        return normalize_text(value)
    return parsed.date().isoformat() if parsed is not None else None


def _description_normalizer(prefix: int) -> Callable[[Any], str | None]:
    def _normalize(value: Any) -> str | None:
        if is_empty(value):
            return None
        return normalize_text(str(value).strip()[:prefix])

    return _normalize


@dataclass(frozen=True)
class FieldExtractionRule:
    """
    How one stable field is located and normalized in a payload.

    Resolution order: the source's configured mapping path for any of
    ``mapping_keys``, then a direct lookup of ``candidates``, then a nested
    search for ``candidates``.
    """

    name: str
    mapping_keys: tuple[str, ...]
    candidates: tuple[str, ...]
    normalizer: Callable[[Any], str | None]
    configured_paths: tuple[str, ...] = ()


def build_extraction_rules(
    response_mapping: Mapping[str, str] | None = None,
    *,
    description_prefix: int = 200,
) -> tuple[FieldExtractionRule, ...]:
    """
    Extraction rule table for one source.
    """

    rules = (
        FieldExtractionRule(
            name="title",
            mapping_keys=("title",),
            candidates=(
                "title", "opportunityTitle", "name", "programTitle", "fundingTitle",
                "grantTitle", "announcementTitle", "opportunityName", "projectTitle",
            ),
            normalizer=normalize_text,
        ),
        FieldExtractionRule(
            name="description",
            mapping_keys=("description",),
            candidates=(
                "description", "summary", "abstract", "overview", "details", "synopsis",
                "opportunityDescription", "programDescription", "briefDescription",
                "fullDescription",
            ),
            normalizer=_description_normalizer(description_prefix),
        ),
        FieldExtractionRule(
            name="deadline",
            mapping_keys=("close_date",),
            candidates=(
                "deadline", "dueDate", "applicationDeadline", "submissionDeadline",
                "closeDate", "endDate", "expirationDate", "applicationDueDate",
                "proposalDeadline", "closingDate",
            ),
            normalizer=normalize_day,
        ),
        FieldExtractionRule(
            name="amount",
            mapping_keys=("total_funding_available", "maximum_award"),
            candidates=(
                "amount", "fundingAmount", "totalFunding", "maxAmount", "awardAmount",
                "grantAmount", "budget", "value", "estimatedTotalProgram", "ceiling", "floor",
            ),
            normalizer=normalize_amount,
        ),
        FieldExtractionRule(
            name="agency",
            mapping_keys=("agency_name",),
            candidates=(
                "agency", "organization", "sponsor", "fundingOrganization", "agencyName",
                "department", "office", "bureau", "fundingAgency", "sponsoringAgency", "grantor",
            ),
            normalizer=normalize_text,
        ),
    )
    if not response_mapping:
        return rules
    return tuple(
        replace(
            rule,
            configured_paths=tuple(
                response_mapping[key] for key in rule.mapping_keys if response_mapping.get(key)
            ),
        )
        for rule in rules
    )


DEFAULT_EXTRACTION_RULES = build_extraction_rules()


def resolve_path(payload: Any, path: str) -> Any:
    """
    Follow a dotted path through nested mappings and list indexes.
    """

    current = payload
    for part in path.split("."):
        if isinstance(current, Mapping):
            current = current.get(part)
        elif isinstance(current, list) and part.isdigit():
            index = int(part)
            current = current[index] if index < len(current) else None
        else:
            return None
        if current is None:
            return None
    return current


def _search_nested(payload: Any, candidates: tuple[str, ...], depth: int) -> Any:
    if depth > _MAX_SEARCH_DEPTH:
        return None
    if isinstance(payload, Mapping):
        for name in candidates:
            value = payload.get(name)
            if not is_empty(value) and not isinstance(value, (Mapping, list)):
                return value
        for key in sorted(payload, key=str):
            found = _search_nested(payload[key], candidates, depth + 1)
            if found is not None:
                return found
    elif isinstance(payload, list):
        for item in payload:
            found = _search_nested(item, candidates, depth + 1)
            if found is not None:
                return found
    return None


def extract_field(payload: Mapping[str, Any], rule: FieldExtractionRule) -> Any:
    for path in rule.configured_paths:
        value = resolve_path(payload, path)
        if not is_empty(value):
            return value
    for name in rule.candidates:
        value = payload.get(name)
        if not is_empty(value):
            return value
    return _search_nested(payload, rule.candidates, depth=0)


def _digest(value: Any) -> str:
    serialized = json.dumps(value, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(serialized.encode("utf-8")).hexdigest()


def fallback_fingerprint() -> str:
    """
    Unique, timestamp-based hash used when a fingerprint cannot be computed.
    """

    seed = f"{time.time_ns()}-{uuid.uuid4().hex}"
    return FALLBACK_PREFIX + hashlib.sha256(seed.encode("utf-8")).hexdigest()


def is_fallback_fingerprint(content_hash: str) -> bool:
    return content_hash.startswith(FALLBACK_PREFIX)


def compute_fingerprint(
    payload: RawRecord | Mapping[str, Any],
    rules: tuple[FieldExtractionRule, ...] = DEFAULT_EXTRACTION_RULES,
    *,
    raw_fallback_prefix: int = 1000,
) -> str:
    """
    Hash the normalized stable fields of ``payload``.

    Raises:
        FingerprintComputationError: If the payload cannot be inspected or serialized.
    """

    fields = payload.fields if isinstance(payload, RawRecord) else payload
    if not isinstance(fields, Mapping):
        raise FingerprintComputationError(
            f"Cannot fingerprint payload of type {type(fields).__name__}"
        )

    stable: dict[str, str] = {}
    try:
        for rule in rules:
            normalized = rule.normalizer(extract_field(fields, rule))
            if normalized:
                stable[rule.name] = normalized
        if stable:
            return _digest(stable)

        raw = json.dumps(fields, sort_keys=True, separators=(",", ":"), default=str)
        return _digest({"fallback": raw[:raw_fallback_prefix]})
    except (TypeError, ValueError, OverflowError, OSError, InvalidOperation, RecursionError) as exc:
        raise FingerprintComputationError(f"Fingerprint computation failed: {exc}") from exc


def fingerprint(
    payload: RawRecord | Mapping[str, Any],
    rules: tuple[FieldExtractionRule, ...] = DEFAULT_EXTRACTION_RULES,
    *,
    raw_fallback_prefix: int = 1000,
) -> str:
    """
    Fingerprint ``payload``, degrading to a unique fallback hash on failure.
    """

    try:
        return compute_fingerprint(payload, rules, raw_fallback_prefix=raw_fallback_prefix)
    except FingerprintComputationError as exc:
        logger.warning("Fingerprint fallback used error=%s", exc)
        return fallback_fingerprint()
