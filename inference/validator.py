"""Validation layer for raw structured-inference output.

Parses and validates JSON strings against a requested pydantic schema.
"""

import json
import re
from typing import Any, List, Type, TypeVar

from pydantic import BaseModel, ValidationError

from app.errors import SchemaValidationError

ModelT = TypeVar("ModelT", bound=BaseModel)

_FENCED_BLOCK = re.compile(r"```(?:json|JSON)?\s*(.*?)```", re.DOTALL)


def _json_candidate(text: str) -> str:
    """Pick the part of a model response that should hold the JSON object.

    Models occasionally wrap the object in a fenced block or add a sentence
    around it. The first fenced block wins; otherwise the span from the first
    ``{`` to the last ``}`` is used.

    Args:
        text: Raw model response string.

    Returns:
        The candidate JSON text, or the stripped input when nothing better
        is found.
    """
    stripped = text.strip()
    fenced = _FENCED_BLOCK.search(stripped)
    if fenced:
        return fenced.group(1).strip()
    start, end = stripped.find("{"), stripped.rfind("}")
    if -1 < start < end:
        return stripped[start:end + 1]
    return stripped


def _format_errors(exc: ValidationError) -> List[str]:
    return [
        f"{'.'.join(str(part) for part in error['loc']) or '<root>'}: {error['msg']}"
        for error in exc.errors()
    ]


def validate_structured_output(raw_response: str, schema: Type[ModelT]) -> ModelT:
    """Parse and validate a raw model response against ``schema``.

    Raises:
        SchemaValidationError: With ``stage="json_parse"`` when no JSON object
            can be decoded, or ``stage="schema"`` when the object does not
            conform.
    """
    candidate = _json_candidate(raw_response or "")
    try:
        data: Any = json.loads(candidate)
    except json.JSONDecodeError as exc:
        raise SchemaValidationError(
            stage="json_parse",
            errors=[f"line {exc.lineno} column {exc.colno}: {exc.msg}"],
            raw_response=raw_response,
        ) from exc

    if not isinstance(data, dict):
        raise SchemaValidationError(
            stage="schema",
            errors=[f"expected a JSON object, got {type(data).__name__}"],
            raw_response=raw_response,
        )

    try:
        return schema.model_validate(data)
    except ValidationError as exc:
        raise SchemaValidationError(
            stage="schema",
            errors=_format_errors(exc),
            raw_response=raw_response,
        ) from exc
