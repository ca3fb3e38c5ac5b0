"""
tests/test_chunked_executor.py

Pytest unit tests for chunk splitting, bounded concurrent execution and the
enrichment facade.

Async code is driven with asyncio.run inside plain test functions.
"""

from __future__ import annotations

import asyncio
import json
from typing import Any, Optional, Type

import pytest
from pydantic import BaseModel

from app.errors import ClientConfigError
from inference.adapter import (
    BaseInferenceAdapter,
    InferenceOptions,
    InferenceResponse,
    MockInferenceAdapter,
    TokenUsage,
)
from inference.executor import (
    Chunk,
    ChunkedInferenceExecutor,
    run_chunks,
    serialized_size,
    split_into_chunks,
)
from inference.prompt_builder import extract_prompt_records

from conftest import no_sleep


def _records(count: int, pad: int = 40) -> list[dict[str, Any]]:
    return [{"external_id": f"r{index:02d}", "description": "x" * pad} for index in range(count)]


def _array_size(records: list[dict[str, Any]]) -> int:
    return len(json.dumps(records, separators=(",", ":"), sort_keys=True, ensure_ascii=False).encode("utf-8"))


# ---------------------------------------------------------------------------
# split_into_chunks
# ---------------------------------------------------------------------------


class TestSplitIntoChunks:
    def test_twelve_records_at_eight_record_threshold_pack_greedily(self) -> None:
        records = _records(12)
        size = serialized_size(records[0])
        threshold = 2 + 8 * size + 7

        chunks = split_into_chunks(records, threshold)

        assert [len(chunk.records) for chunk in chunks] == [8, 4]
        assert [chunk.index for chunk in chunks] == [0, 1]

    def test_chunk_size_matches_serialized_array_and_respects_threshold(self) -> None:
        records = [{"external_id": str(i), "description": "y" * (i * 7 % 90)} for i in range(40)]
        threshold = 600

        chunks = split_into_chunks(records, threshold)

        for chunk in chunks:
            assert chunk.byte_size == _array_size(list(chunk.records))
            assert chunk.byte_size <= threshold
        assert [record for chunk in chunks for record in chunk.records] == records

    def test_oversized_record_becomes_singleton_chunk(self) -> None:
        records = [*_records(2), {"external_id": "huge", "description": "z" * 5000}, *_records(2)]

        chunks = split_into_chunks(records, 500)

        singleton = [chunk for chunk in chunks if chunk.records[0]["external_id"] == "huge"]
        assert len(singleton) == 1
        assert len(singleton[0].records) == 1
        assert singleton[0].byte_size > 500

    def test_max_records_caps_chunk_length(self) -> None:
        chunks = split_into_chunks(_records(10), 100_000, max_records=4)
        assert [len(chunk.records) for chunk in chunks] == [4, 4, 2]

    def test_multibyte_characters_are_counted_in_bytes(self) -> None:
        record = {"external_id": "é"}
        assert serialized_size(record) == len('{"external_id":"é"}'.encode("utf-8"))

    def test_empty_input_yields_no_chunks(self) -> None:
        assert split_into_chunks([], 100) == []

    def test_singleton_size_includes_array_brackets(self) -> None:
        record = {"external_id": "edge", "description": "w" * 80}
        size = serialized_size(record)

        chunks = split_into_chunks([record, *_records(1)], size + 1)

        assert chunks[0].records == (record,)
        assert chunks[0].byte_size == size + 2 == _array_size([record])
        assert all(chunk.byte_size <= size + 1 for chunk in chunks[1:])

    @pytest.mark.parametrize("threshold", [0, -5])
    def test_non_positive_threshold_rejected(self, threshold: int) -> None:
        with pytest.raises(ValueError):
            split_into_chunks(_records(1), threshold)


# ---------------------------------------------------------------------------
# run_chunks
# ---------------------------------------------------------------------------


class TestRunChunks:
    def test_results_keep_chunk_order_despite_variable_delays(self) -> None:
        chunks = [Chunk(index=i, records=(i,), byte_size=3) for i in range(6)]
        delays = [0.05, 0.0, 0.03, 0.01, 0.04, 0.02]

        async def call(chunk: Chunk) -> int:
            await asyncio.sleep(delays[chunk.index])
            return chunk.index * 10

        results = asyncio.run(run_chunks(chunks, call, max_concurrency=3))

        assert len(results) == len(chunks)
        assert [result.index for result in results] == list(range(6))
        assert [result.data for result in results] == [0, 10, 20, 30, 40, 50]

    def test_concurrency_never_exceeds_limit(self) -> None:
        chunks = [Chunk(index=i, records=(i,), byte_size=3) for i in range(10)]
        in_flight = 0
        peak = 0

        async def call(chunk: Chunk) -> None:
            nonlocal in_flight, peak
            in_flight += 1
            peak = max(peak, in_flight)
            await asyncio.sleep(0.01)
            in_flight -= 1

        asyncio.run(run_chunks(chunks, call, max_concurrency=2))

        assert peak == 2

    def test_failed_chunk_does_not_stop_others(self) -> None:
        chunks = [Chunk(index=i, records=(i,), byte_size=3) for i in range(3)]

        async def call(chunk: Chunk) -> str:
            if chunk.index == 1:
                raise ValueError("bad chunk")
            return "ok"

        results = asyncio.run(run_chunks(chunks, call, max_concurrency=2))

        assert [result.success for result in results] == [True, False, True]
        assert isinstance(results[1].error, ValueError)

    def test_every_chunk_gets_exactly_one_result(self) -> None:
        chunks = [Chunk(index=i, records=(i,), byte_size=3) for i in range(7)]

        async def call(chunk: Chunk) -> None:
            await asyncio.sleep(0.001 * (7 - chunk.index))
            if chunk.index % 3 == 0:
                raise RuntimeError(f"chunk {chunk.index} failed")
            return None

        results = asyncio.run(run_chunks(chunks, call, max_concurrency=4))

        assert len(results) == len(chunks)
        assert [result.index for result in results] == list(range(7))
        assert [result.success for result in results] == [False, True, True, False, True, True, False]
        assert all(result.data is None for result in results)

    def test_zero_concurrency_rejected(self) -> None:
        with pytest.raises(ValueError):
            asyncio.run(run_chunks([], lambda chunk: None, max_concurrency=0))


# ---------------------------------------------------------------------------
# ChunkedInferenceExecutor.enrich
# ---------------------------------------------------------------------------


class _RejectingAdapter(BaseInferenceAdapter):
    """Rejects any prompt that mentions ``reject_id``; echoes the rest."""

    def __init__(self, reject_id: str) -> None:
        self._reject_id = reject_id
        self._echo = MockInferenceAdapter()
        self.calls = 0

    async def invoke(
        self,
        prompt: str,
        schema: Type[BaseModel],
        options: Optional[InferenceOptions] = None,
    ) -> InferenceResponse:
        self.calls += 1
        ids = {record["external_id"] for record in extract_prompt_records(prompt)}
        if self._reject_id in ids:
            raise ClientConfigError("rejected", status_code=400)
        return await self._echo.invoke(prompt, schema, options)


class TestEnrich:
    def test_enriches_every_record_in_plan_sized_chunks(self, inference_settings) -> None:
        adapter = MockInferenceAdapter(usage=TokenUsage(input_tokens=10, output_tokens=5))
        executor = ChunkedInferenceExecutor(adapter, inference_settings, sleep=no_sleep)

        outcome = asyncio.run(executor.enrich(_records(12)))

        assert outcome.plan.batch_size == 9
        assert outcome.chunk_count == 2
        assert len(adapter.calls) == 2
        assert set(outcome.enriched) == {f"r{index:02d}" for index in range(12)}
        assert outcome.failed_external_ids == set()
        assert outcome.usage == TokenUsage(input_tokens=20, output_tokens=10)
        assert outcome.enriched["r00"]["relevance_score"] == 5.0

    def test_client_error_fails_only_its_chunk(self, inference_settings) -> None:
        adapter = _RejectingAdapter(reject_id="r10")
        executor = ChunkedInferenceExecutor(adapter, inference_settings, sleep=no_sleep)

        outcome = asyncio.run(executor.enrich(_records(12)))

        assert outcome.failed_chunks == 1
        assert not outcome.all_failed
        assert outcome.failed_external_ids == {"r09", "r10", "r11"}
        assert "r00" in outcome.enriched
        # Client errors are never retried: two chunks, two calls.
        assert adapter.calls == 2

    def test_invalid_output_fails_chunk_without_retry(self, inference_settings) -> None:
        adapter = MockInferenceAdapter(
            responder=lambda prompt, schema: {"records": [{"external_id": "r00", "relevance_score": 42}]}
        )
        executor = ChunkedInferenceExecutor(adapter, inference_settings, sleep=no_sleep)

        outcome = asyncio.run(executor.enrich(_records(3)))

        assert outcome.all_failed
        assert len(adapter.calls) == 1
        assert "SchemaValidationError" in outcome.error_summaries()[0]

    def test_records_missing_from_response_are_reported_failed(self, inference_settings) -> None:
        adapter = MockInferenceAdapter(responder=lambda prompt, schema: {"records": [{"external_id": "r01"}]})
        executor = ChunkedInferenceExecutor(adapter, inference_settings, sleep=no_sleep)

        outcome = asyncio.run(executor.enrich(_records(3)))

        assert set(outcome.enriched) == {"r01"}
        assert outcome.failed_external_ids == {"r00", "r02"}

    def test_performance_metrics_track_calls_and_errors(self, inference_settings) -> None:
        executor = ChunkedInferenceExecutor(_RejectingAdapter("r00"), inference_settings, sleep=no_sleep)

        asyncio.run(executor.enrich(_records(12)))
        metrics = executor.get_performance_metrics()

        assert metrics["total_calls"] == 2
        assert metrics["total_errors"] == 1
        assert metrics["error_rate"] == 0.5
        assert metrics["total_input_tokens"] == 100
