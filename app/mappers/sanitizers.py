"""
app/mappers/sanitizers.py

Per-field sanitizers for canonical records.

Every sanitizer is idempotent: feeding its own output back in returns the same
value. Unusable input raises ``SanitizationError``; callers decide whether that
degrades to ``None``.
"""

from __future__ import annotations

import math
import re
from collections.abc import Iterable, Mapping
from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any
from urllib.parse import urlparse

TITLE_MAX_LENGTH = 500
TEXT_MAX_LENGTH = 10000
URL_MAX_LENGTH = 2048

_TRUE_TOKENS = frozenset({"true", "yes", "y", "1", "on"})
_FALSE_TOKENS = frozenset({"false", "no", "n", "0", "off"})

STATUS_SYNONYMS: dict[str, str] = {
    "open": "open",
    "active": "open",
    "available": "open",
    "posted": "open",
    "closed": "closed",
    "inactive": "closed",
    "expired": "closed",
    "archived": "closed",
    "upcoming": "upcoming",
    "pending": "upcoming",
    "future": "upcoming",
    "forecasted": "upcoming",
}

_DATE_FORMATS: tuple[str, ...] = (
    "%Y-%m-%d",
    "%m/%d/%Y",
    "%m/%d/%Y %H:%M:%S",
    "%m/%d/%Y %I:%M:%S %p",
    "%b %d, %Y",
    "%B %d, %Y",
    "%d %B %Y",
    "%Y%m%d",
)

_AMOUNT_NOISE = re.compile(r"[$,\s]")
_WHITESPACE = re.compile(r"\s+")


class SanitizationError(ValueError):
    """Raised when a single field value cannot be sanitized."""


def is_empty(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, (list, tuple, set, dict)):
        return len(value) == 0
    return False


def parse_datetime(value: Any) -> datetime | None:
    """
    Parse common upstream date representations into an aware UTC datetime.
    """

    if value is None:
        return None
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)
    if isinstance(value, bool):
        raise SanitizationError(f"Boolean is not a date: {value!r}")
    if isinstance(value, (int, float)):
        if not math.isfinite(value):
            raise SanitizationError(f"Non-finite timestamp: {value!r}")
        seconds = value / 1000 if abs(value) >= 1e11 else value
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    if not isinstance(value, str):
        raise SanitizationError(f"Unsupported date type: {type(value).__name__}")

    text = value.strip()
    if not text:
        return None
    normalized = text[:-1] + "+00:00" if text.endswith(("Z", "z")) else text
    try:
        parsed = datetime.fromisoformat(normalized)
    except ValueError:
        parsed = None
    if parsed is None:
        for fmt in _DATE_FORMATS:
            try:
                parsed = datetime.strptime(text, fmt)
                break
            except ValueError:
                continue
    if parsed is None:
        raise SanitizationError(f"Unrecognized date: {text[:80]!r}")
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def parse_amount(value: Any) -> Decimal | None:
    """
    Parse a numeric or currency-formatted value into a Decimal.
    """

    if value is None:
        return None
    if isinstance(value, bool):
        raise SanitizationError(f"Boolean is not an amount: {value!r}")
    if isinstance(value, Decimal):
        return value
    if isinstance(value, (int, float)):
        return Decimal(str(value))
    if not isinstance(value, str):
        raise SanitizationError(f"Unsupported amount type: {type(value).__name__}")

    cleaned = _AMOUNT_NOISE.sub("", value)
    if not cleaned:
        return None
    try:
        return Decimal(cleaned)
    except InvalidOperation as exc:
        raise SanitizationError(f"Unparseable amount: {value[:80]!r}") from exc


def sanitize_string(value: Any, *, max_length: int = TEXT_MAX_LENGTH) -> str | None:
    if value is None:
        return None
    if isinstance(value, (dict, list, tuple, set)):
        raise SanitizationError(f"Expected text, got {type(value).__name__}")
    text = str(value).strip()
    if not text:
        return None
    return text[:max_length]


def sanitize_title(value: Any) -> str | None:
    text = sanitize_string(value, max_length=TITLE_MAX_LENGTH)
    if text is None:
        return None
    return _WHITESPACE.sub(" ", text)


def sanitize_url(value: Any) -> str | None:
    text = sanitize_string(value, max_length=URL_MAX_LENGTH)
    if text is None:
        return None
    if "://" not in text:
        text = f"https://{text.lstrip('/')}"
    parsed = urlparse(text)
    if parsed.scheme not in {"http", "https"} or not parsed.netloc or " " in parsed.netloc:
        raise SanitizationError(f"Invalid URL: {text[:80]!r}")
    return text


def sanitize_amount(value: Any) -> float | None:
    amount = parse_amount(value)
    if amount is None or not amount.is_finite() or amount == 0:
        return None
    return float(amount)


def sanitize_date(value: Any) -> str | None:
    parsed = parse_datetime(value)
    if parsed is None:
        return None
    return parsed.isoformat()


def sanitize_string_list(value: Any) -> list[str] | None:
    if value is None:
        return None
    if isinstance(value, str):
        items: Iterable[Any] = [value]
    elif isinstance(value, Mapping):
        raise SanitizationError("Expected a list, got an object")
    elif isinstance(value, Iterable):
        items = value
    else:
        items = [value]

    cleaned: list[str] = []
    seen: set[str] = set()
    for item in items:
        if item is None or isinstance(item, (dict, list)):
            continue
        text = str(item).strip()
        if not text or text in seen:
            continue
        seen.add(text)
        cleaned.append(text)
    return cleaned or None


def sanitize_bool(value: Any) -> bool | None:
    if value is None:
        return None
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)) and value in (0, 1):
        return bool(value)
    token = str(value).strip().lower()
    if not token:
        return None
    if token in _TRUE_TOKENS:
        return True
    if token in _FALSE_TOKENS:
        return False
    raise SanitizationError(f"Unrecognized boolean token: {token[:40]!r}")


def _bounded_number(value: Any, *, lower: float, upper: float) -> float | None:
    if value is None or (isinstance(value, str) and not value.strip()):
        return None
    if isinstance(value, bool):
        raise SanitizationError(f"Boolean is not a number: {value!r}")
    try:
        number = float(str(value).strip().rstrip("%"))
    except ValueError as exc:
        raise SanitizationError(f"Unparseable number: {str(value)[:40]!r}") from exc
    if not math.isfinite(number):
        raise SanitizationError(f"Non-finite number: {value!r}")
    return min(upper, max(lower, number))


def sanitize_percentage(value: Any) -> float | None:
    return _bounded_number(value, lower=0.0, upper=100.0)


def sanitize_relevance_score(value: Any) -> float | None:
    score = _bounded_number(value, lower=0.0, upper=10.0)
    return None if score is None else round(score, 2)


def sanitize_status(value: Any) -> str | None:
    text = sanitize_string(value, max_length=64)
    if text is None:
        return None
    status = STATUS_SYNONYMS.get(text.lower())
    if status is None:
        raise SanitizationError(f"Unknown status: {text!r}")
    return status


def sanitize_identifier(value: Any) -> str | None:
    if isinstance(value, bool):
        raise SanitizationError("Boolean is not an identifier")
    return sanitize_string(value, max_length=255)
