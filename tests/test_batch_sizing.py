"""
tests/test_batch_sizing.py

Pytest unit tests for deterministic batch sizing.
"""

from __future__ import annotations

import pytest

from inference.batch_sizing import BatchPlan, calculate_batch_plan, plan_for_model


class TestCalculateBatchPlan:
    def test_short_descriptions_at_reference_capacity(self) -> None:
        plan = calculate_batch_plan(8192, avg_content_length=300)
        assert plan == BatchPlan(batch_size=4, max_tokens=7000, reason="short-descriptions", model_capacity=8192)

    def test_large_capacity_is_bounded_by_practical_limit(self) -> None:
        plan = calculate_batch_plan(16384, avg_content_length=300)
        assert plan.batch_size == 9
        assert plan.max_tokens == 14500
        assert plan.reason == "short-descriptions-time-limited"

    @pytest.mark.parametrize(
        ("avg_length", "batch_size", "reason"),
        [
            (2500, 6, "very-long-descriptions"),
            (1800, 9, "long-descriptions"),
            (900, 9, "medium-descriptions"),
        ],
    )
    def test_length_tiers_scale_with_capacity(self, avg_length: float, batch_size: int, reason: str) -> None:
        plan = calculate_batch_plan(16384, avg_content_length=avg_length)
        assert plan.batch_size == batch_size
        assert plan.reason.startswith(reason)

    def test_tiny_capacity_still_allows_one_record(self) -> None:
        plan = calculate_batch_plan(1200, avg_content_length=100)
        assert plan.batch_size == 1
        assert plan.max_tokens == 1200

    def test_is_deterministic(self) -> None:
        first = calculate_batch_plan(32768, avg_content_length=1234.5)
        second = calculate_batch_plan(32768, avg_content_length=1234.5)
        assert first == second

    def test_rejects_non_positive_capacity(self) -> None:
        with pytest.raises(ValueError):
            calculate_batch_plan(0, avg_content_length=100)


class TestPlanForModel:
    def test_known_model_uses_capacity_table(self) -> None:
        assert plan_for_model("gpt-4o-mini", 300).model_capacity == 16384

    def test_unknown_model_gets_conservative_plan(self) -> None:
        plan = plan_for_model("some-local-model", 300)
        assert plan.batch_size == 2
        assert plan.reason == "unknown-model"

    def test_capacity_override_applies(self) -> None:
        plan = plan_for_model("some-local-model", 300, capacity_overrides={"some-local-model": 8192})
        assert plan.batch_size == 4
