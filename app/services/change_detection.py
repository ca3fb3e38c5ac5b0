"""
app/services/change_detection.py

Type-aware comparison of canonical records.

Classification compares the critical fields with tolerance: amounts within the
relative threshold and dates on the same UTC day are equal. Merging compares
with exact type-aware equality so that any real difference reaches the store.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from datetime import datetime
from decimal import Decimal
from typing import Any

from app.domain.records import DecisionKind, DeduplicationDecision, FieldChange
from app.mappers.sanitizers import SanitizationError, is_empty, parse_amount, parse_datetime

CRITICAL_FIELDS: tuple[str, ...] = (
    "title",
    "minimum_award",
    "maximum_award",
    "total_funding_available",
    "open_date",
    "close_date",
)

AMOUNT_FIELDS: frozenset[str] = frozenset(
    {"minimum_award", "maximum_award", "total_funding_available"}
)
DATE_FIELDS: frozenset[str] = frozenset({"open_date", "close_date", "posted_date", "api_updated_at"})

DEFAULT_AMOUNT_CHANGE_THRESHOLD = Decimal("0.05")


def _as_decimal(value: Any) -> Decimal | None:
    try:
        return parse_amount(value)
    except SanitizationError:
        return None


def _as_datetime(value: Any) -> datetime | None:
    try:
        return parse_datetime(value)
    except SanitizationError:
        return None


def _as_text(value: Any) -> str:
    return str(value).strip()


def _threshold(value: Decimal | float | str | None) -> Decimal:
    if value is None:
        return DEFAULT_AMOUNT_CHANGE_THRESHOLD
    return Decimal(str(value))


def _compare_amount(field: str, old: Any, new: Any, threshold: Decimal) -> FieldChange | None:
    old_amount = _as_decimal(old)
    new_amount = _as_decimal(new)
    if old_amount is None or new_amount is None:
        if _as_text(old) == _as_text(new):
            return None
        return FieldChange(field, old, new, "amount not comparable")
    if old_amount == new_amount:
        return None
    if old_amount == 0:
        return FieldChange(field, old, new, "amount changed from zero")
    if new_amount == 0:
        return FieldChange(field, old, new, "amount changed to zero")
    relative = abs(new_amount - old_amount) / abs(old_amount)
    if relative > threshold:
        return FieldChange(field, old, new, f"amount changed by {float(relative):.2%}")
    return None


def _compare_date(field: str, old: Any, new: Any) -> FieldChange | None:
    old_dt = _as_datetime(old)
    new_dt = _as_datetime(new)
    if old_dt is None or new_dt is None:
        if _as_text(old).lower() == _as_text(new).lower():
            return None
        return FieldChange(field, old, new, "date not comparable")
    if old_dt.date() == new_dt.date():
        return None
    return FieldChange(field, old, new, f"date moved from {old_dt.date()} to {new_dt.date()}")


def compare_critical_field(
    field: str,
    old: Any,
    new: Any,
    *,
    amount_change_threshold: Decimal | float | None = None,
) -> FieldChange | None:
    """
    Return a FieldChange when ``old`` and ``new`` differ materially.

    A value on one side and nothing on the other is always material.
    """

    old_empty = is_empty(old)
    new_empty = is_empty(new)
    if old_empty and new_empty:
        return None
    if old_empty:
        return FieldChange(field, old, new, "value added")
    if new_empty:
        return FieldChange(field, old, new, "value removed")

    if field in AMOUNT_FIELDS:
        return _compare_amount(field, old, new, _threshold(amount_change_threshold))
    if field in DATE_FIELDS:
        return _compare_date(field, old, new)
    if _as_text(old).lower() == _as_text(new).lower():
        return None
    return FieldChange(field, old, new, "text changed")


def diff_critical_fields(
    existing: Mapping[str, Any],
    incoming: Mapping[str, Any],
    *,
    fields: Sequence[str] = CRITICAL_FIELDS,
    amount_change_threshold: Decimal | float | None = None,
) -> list[FieldChange]:
    changes: list[FieldChange] = []
    for field in fields:
        change = compare_critical_field(
            field,
            existing.get(field),
            incoming.get(field),
            amount_change_threshold=amount_change_threshold,
        )
        if change is not None:
            changes.append(change)
    return changes


def is_not_newer(incoming_updated_at: Any, existing_updated_at: Any) -> bool:
    """
    True when both timestamps are known and the incoming one is not newer.
    """

    incoming_dt = _as_datetime(incoming_updated_at)
    existing_dt = _as_datetime(existing_updated_at)
    if incoming_dt is None or existing_dt is None:
        return False
    return incoming_dt <= existing_dt


def classify(
    existing: Mapping[str, Any] | None,
    incoming: Mapping[str, Any],
    *,
    amount_change_threshold: Decimal | float | None = None,
    match_method: str | None = None,
) -> DeduplicationDecision:
    external_id = incoming.get("external_id")
    if existing is None:
        return DeduplicationDecision(kind=DecisionKind.NEW, external_id=external_id)

    changes = diff_critical_fields(
        existing,
        incoming,
        amount_change_threshold=amount_change_threshold,
    )
    if not changes:
        kind = DecisionKind.UNCHANGED
    elif is_not_newer(incoming.get("api_updated_at"), existing.get("api_updated_at")):
        kind = DecisionKind.STALE
    else:
        kind = DecisionKind.CHANGED

    return DeduplicationDecision(
        kind=kind,
        external_id=external_id,
        changes=tuple(changes),
        existing=existing,
        match_method=match_method,
    )


def values_equal(field: str, old: Any, new: Any) -> bool:
    """
    Exact type-aware equality used when building update patches.
    """

    if is_empty(old) and is_empty(new):
        return True
    if is_empty(old) or is_empty(new):
        return False
    if field in AMOUNT_FIELDS:
        old_amount = _as_decimal(old)
        new_amount = _as_decimal(new)
        if old_amount is not None and new_amount is not None:
            return old_amount == new_amount
    if field in DATE_FIELDS:
        old_dt = _as_datetime(old)
        new_dt = _as_datetime(new)
        if old_dt is not None and new_dt is not None:
            return old_dt == new_dt
    if isinstance(old, str) and isinstance(new, str):
        return old.strip() == new.strip()
    if isinstance(old, (list, tuple)) and isinstance(new, (list, tuple)):
        return list(old) == list(new)
    return old == new
