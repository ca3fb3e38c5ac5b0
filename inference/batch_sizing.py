"""Deterministic batch sizing for enrichment calls.

Chooses how many records go into one inference call and how many output
tokens to request, from the model's output capacity and the average content
length of the records.
"""

from dataclasses import dataclass
from typing import Dict, Optional, Tuple

REFERENCE_OUTPUT_CAPACITY = 8192
PRACTICAL_TOKEN_LIMIT = 15000
DEFAULT_TOKENS_PER_RECORD = 1500
DEFAULT_BASE_TOKENS = 1000

# (minimum average length, records per call at reference capacity, reason)
_LENGTH_TIERS: Tuple[Tuple[int, int, str], ...] = (
    (2000, 3, "very-long-descriptions"),
    (1500, 5, "long-descriptions"),
    (800, 8, "medium-descriptions"),
)
_SHORT_TIER: Tuple[int, str] = (15, "short-descriptions")

MODEL_OUTPUT_CAPACITY: Dict[str, int] = {
    "gpt-4o": 16384,
    "gpt-4o-mini": 16384,
    "gpt-4.1": 32768,
    "gpt-4.1-mini": 32768,
    "gpt-4.1-nano": 32768,
    "gpt-4-turbo": 4096,
    "gpt-3.5-turbo": 4096,
}

_UNKNOWN_MODEL_BATCH_SIZE = 2
_UNKNOWN_MODEL_MAX_TOKENS = 8192


@dataclass(frozen=True)
class BatchPlan:
    """Recommended records per call and output-token budget."""

    batch_size: int
    max_tokens: int
    reason: str
    model_capacity: int


def calculate_batch_plan(
    max_output_tokens: int,
    avg_content_length: float,
    tokens_per_record: int = DEFAULT_TOKENS_PER_RECORD,
    base_tokens: int = DEFAULT_BASE_TOKENS,
) -> BatchPlan:
    """Compute a batch plan for a model with ``max_output_tokens`` capacity.

    Args:
        max_output_tokens: Output-token capacity of the target model.
        avg_content_length: Average description length of the records.
        tokens_per_record: Estimated output tokens per enriched record.
        base_tokens: Fixed output overhead per call.

    Returns:
        The batch plan. Identical inputs always produce identical plans.

    Raises:
        ValueError: If capacity or per-record cost is not positive.
    """
    if max_output_tokens <= 0:
        raise ValueError("max_output_tokens must be positive")
    if tokens_per_record <= 0:
        raise ValueError("tokens_per_record must be positive")

    max_possible = max(1, (max_output_tokens - base_tokens) // tokens_per_record)
    capacity_multiplier = max_output_tokens / REFERENCE_OUTPUT_CAPACITY

    tier_size, reason = _SHORT_TIER
    for min_length, size, tier_reason in _LENGTH_TIERS:
        if avg_content_length > min_length:
            tier_size, reason = size, tier_reason
            break

    batch_size = max(1, min(max_possible, int(tier_size * capacity_multiplier)))

    if batch_size * tokens_per_record + base_tokens > PRACTICAL_TOKEN_LIMIT:
        batch_size = max(1, (PRACTICAL_TOKEN_LIMIT - base_tokens) // tokens_per_record)
        reason = f"{reason}-time-limited"

    max_tokens = min(
        max_output_tokens,
        PRACTICAL_TOKEN_LIMIT,
        batch_size * tokens_per_record + base_tokens,
    )
    return BatchPlan(
        batch_size=batch_size,
        max_tokens=max_tokens,
        reason=reason,
        model_capacity=max_output_tokens,
    )


def plan_for_model(
    model: str,
    avg_content_length: float,
    tokens_per_record: int = DEFAULT_TOKENS_PER_RECORD,
    base_tokens: int = DEFAULT_BASE_TOKENS,
    capacity_overrides: Optional[Dict[str, int]] = None,
) -> BatchPlan:
    """Batch plan for a named model, with a conservative plan for unknown models."""
    capacities = {**MODEL_OUTPUT_CAPACITY, **(capacity_overrides or {})}
    capacity = capacities.get(model)
    if capacity is None:
        return BatchPlan(
            batch_size=_UNKNOWN_MODEL_BATCH_SIZE,
            max_tokens=_UNKNOWN_MODEL_MAX_TOKENS,
            reason="unknown-model",
            model_capacity=_UNKNOWN_MODEL_MAX_TOKENS,
        )
    return calculate_batch_plan(capacity, avg_content_length, tokens_per_record, base_tokens)
