"""Chunked, concurrency-bounded execution of inference calls.

Records are packed greedily into chunks bounded by serialized size, and the
chunks are driven through the inference service with at most
``max_concurrency`` calls in flight. Results come back in chunk order no
matter which call finishes first, and one failed chunk never prevents the
others from being collected.
"""

import asyncio
import json
import logging
import random
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Sequence, Set, cast

from app.config import InferenceSettings
from inference.adapter import BaseInferenceAdapter, InferenceOptions, InferenceResponse, TokenUsage
from inference.batch_sizing import BatchPlan, plan_for_model
from inference.prompt_builder import EnrichmentPromptBuilder, prompt_record
from inference.retry import RetryCost, call_with_retry
from inference.schema import EnrichmentBatch

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Chunk:
    """Ordered batch of records bounded by serialized size."""

    index: int
    records: tuple
    byte_size: int


@dataclass(frozen=True)
class ChunkResult:
    """Outcome of one chunk call, stored at the chunk's index."""

    index: int
    success: bool
    data: Any = None
    error: Optional[BaseException] = None
    usage: TokenUsage = field(default_factory=TokenUsage)
    retry_cost: Optional[RetryCost] = None


def serialized_size(record: Any) -> int:
    """UTF-8 byte length of ``record`` as compact JSON."""
    encoded = json.dumps(record, separators=(",", ":"), sort_keys=True, ensure_ascii=False, default=str)
    return len(encoded.encode("utf-8"))


def split_into_chunks(
    records: Sequence[Any],
    byte_threshold: int,
    max_records: Optional[int] = None,
) -> List[Chunk]:
    """Greedily pack ``records`` into chunks.

    A chunk's size is the size of its records serialized as one compact JSON
    array, brackets and separating commas included, so a singleton chunk
    measures ``serialized_size(record) + 2``. A record that would push the
    current chunk past ``byte_threshold`` (or past ``max_records``) starts a new
    chunk. A record that does not fit the threshold once bracketed still
    becomes a singleton chunk, which is the only case where ``byte_size``
    exceeds ``byte_threshold``.

    Args:
        records: Records in input order.
        byte_threshold: Maximum serialized chunk size in bytes.
        max_records: Optional cap on records per chunk.

    Returns:
        Chunks in input order, indexed from 0.
    """
    if byte_threshold <= 0:
        raise ValueError("byte_threshold must be positive")
    if max_records is not None and max_records < 1:
        raise ValueError("max_records must be at least 1")

    chunks: List[Chunk] = []
    current: List[Any] = []
    current_size = 0

    def _flush() -> None:
        chunks.append(Chunk(index=len(chunks), records=tuple(current), byte_size=current_size))

    for record in records:
        size = serialized_size(record)
        if current:
            # One comma separates it from the previous record.
            grown = current_size + 1 + size
            full = max_records is not None and len(current) >= max_records
            if grown <= byte_threshold and not full:
                current.append(record)
                current_size = grown
                continue
            _flush()
        current = [record]
        current_size = 2 + size

    if current:
        _flush()
    return chunks


async def run_chunks(
    chunks: Sequence[Chunk],
    call_fn: Callable[[Chunk], Awaitable[Any]],
    max_concurrency: int,
) -> List[ChunkResult]:
    """Run ``call_fn`` once per chunk with bounded concurrency.

    Args:
        chunks: Chunks to process.
        call_fn: Coroutine function performing one chunk call. Retries, if
            any, happen inside it.
        max_concurrency: Maximum number of calls in flight.

    Returns:
        One result per chunk; ``results[i]`` belongs to ``chunks[i]``.

    Raises:
        RuntimeError: If a call finished without recording a result.
    """
    if max_concurrency < 1:
        raise ValueError("max_concurrency must be at least 1")

    results: List[Optional[ChunkResult]] = [None] * len(chunks)
    semaphore = asyncio.Semaphore(max_concurrency)

    async def _run(position: int, chunk: Chunk) -> None:
        async with semaphore:
            try:
                outcome = await call_fn(chunk)
            except Exception as exc:
                logger.warning(
                    "Chunk call failed chunk_index=%d records=%d error=%s: %s",
                    chunk.index,
                    len(chunk.records),
                    type(exc).__name__,
                    exc,
                )
                results[position] = ChunkResult(
                    index=chunk.index,
                    success=False,
                    error=exc,
                    retry_cost=getattr(exc, "retry_cost", None),
                )
                return
        if isinstance(outcome, InferenceResponse):
            results[position] = ChunkResult(
                index=chunk.index,
                success=True,
                data=outcome.data,
                usage=outcome.usage,
                retry_cost=outcome.retry_cost,
            )
        else:
            results[position] = ChunkResult(index=chunk.index, success=True, data=outcome)

    await asyncio.gather(*(_run(position, chunk) for position, chunk in enumerate(chunks)))
    missing = [chunks[position].index for position, result in enumerate(results) if result is None]
    if missing:
        raise RuntimeError(f"Chunk calls finished without a result: chunk_indexes={missing}")
    return cast(List[ChunkResult], results)


@dataclass
class EnrichmentOutcome:
    """Aggregated result of enriching one batch of records."""

    plan: BatchPlan
    results: List[ChunkResult]
    enriched: Dict[str, Dict[str, Any]]
    failed_external_ids: Set[str]
    usage: TokenUsage
    retry_tokens: int = 0

    @property
    def chunk_count(self) -> int:
        return len(self.results)

    @property
    def failed_chunks(self) -> int:
        return sum(1 for result in self.results if not result.success)

    @property
    def all_failed(self) -> bool:
        return bool(self.results) and self.failed_chunks == len(self.results)

    def error_summaries(self) -> List[str]:
        return [
            f"chunk {result.index}: {type(result.error).__name__}: {result.error}"
            for result in self.results
            if not result.success and result.error is not None
        ]


@dataclass
class _PerformanceMetrics:
    total_calls: int = 0
    total_errors: int = 0
    retried_calls: int = 0
    total_input_tokens: int = 0
    total_output_tokens: int = 0
    total_seconds: float = 0.0


class ChunkedInferenceExecutor:
    """Enriches canonical records through the inference service in chunks."""

    def __init__(
        self,
        adapter: BaseInferenceAdapter,
        settings: InferenceSettings,
        prompt_builder: Optional[EnrichmentPromptBuilder] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        rng: Callable[[], float] = random.random,
    ) -> None:
        self._adapter = adapter
        self._settings = settings
        self._prompt_builder = prompt_builder or EnrichmentPromptBuilder()
        self._sleep = sleep
        self._rng = rng
        self._metrics = _PerformanceMetrics()

    def plan(self, records: Sequence[Mapping[str, Any]]) -> BatchPlan:
        lengths = [len(str(record.get("description") or "")) for record in records]
        avg_length = sum(lengths) / len(lengths) if lengths else 0.0
        return plan_for_model(
            self._settings.model,
            avg_length,
            tokens_per_record=self._settings.tokens_per_record,
            base_tokens=self._settings.base_tokens,
        )

    async def enrich(self, records: Sequence[Mapping[str, Any]]) -> EnrichmentOutcome:
        """Enrich ``records`` and index the output by external id.

        Records of failed chunks, and records the service left out of its
        answer, are reported in ``failed_external_ids``.
        """
        plan = self.plan(records)
        payloads = [prompt_record(record) for record in records if record.get("external_id")]
        chunks = split_into_chunks(
            payloads,
            self._settings.chunk_byte_threshold,
            max_records=plan.batch_size,
        )
        logger.info(
            "Enrichment planned records=%d chunks=%d batch_size=%d max_tokens=%d reason=%s",
            len(payloads),
            len(chunks),
            plan.batch_size,
            plan.max_tokens,
            plan.reason,
        )
        options = InferenceOptions(max_tokens=plan.max_tokens)

        async def _call(chunk: Chunk) -> InferenceResponse:
            return await self._call_chunk(chunk, options)

        results = await run_chunks(chunks, _call, self._settings.max_concurrency)

        enriched: Dict[str, Dict[str, Any]] = {}
        failed: Set[str] = set()
        usage = TokenUsage()
        retry_tokens = 0
        for chunk, result in zip(chunks, results):
            expected = {str(record["external_id"]) for record in chunk.records}
            usage = usage + result.usage
            if result.retry_cost is not None:
                retry_tokens += result.retry_cost.retry_tokens
            if not result.success:
                failed.update(expected)
                continue
            for item in result.data.records:
                if item.external_id in expected:
                    enriched[item.external_id] = item.model_dump(exclude_none=True)
            failed.update(expected - set(enriched))

        return EnrichmentOutcome(
            plan=plan,
            results=results,
            enriched=enriched,
            failed_external_ids=failed,
            usage=usage,
            retry_tokens=retry_tokens,
        )

    async def _call_chunk(self, chunk: Chunk, options: InferenceOptions) -> InferenceResponse:
        prompt = self._prompt_builder.build_prompt(chunk.records)
        started = time.monotonic()
        self._metrics.total_calls += 1
        try:
            response = await call_with_retry(
                self._adapter,
                prompt,
                EnrichmentBatch,
                max_retries=self._settings.max_retries,
                base_delay=self._settings.base_delay_seconds,
                options=options,
                timeout_seconds=self._settings.timeout_seconds,
                sleep=self._sleep,
                rng=self._rng,
            )
        except Exception as exc:
            self._metrics.total_errors += 1
            cost = getattr(exc, "retry_cost", None)
            if isinstance(cost, RetryCost) and cost.retries:
                self._metrics.retried_calls += 1
            raise
        finally:
            self._metrics.total_seconds += time.monotonic() - started

        if response.retry_cost is not None and response.retry_cost.retries:
            self._metrics.retried_calls += 1
        self._metrics.total_input_tokens += response.usage.input_tokens
        self._metrics.total_output_tokens += response.usage.output_tokens
        return response

    def get_performance_metrics(self) -> Dict[str, Any]:
        calls = self._metrics.total_calls
        return {
            "total_calls": calls,
            "total_errors": self._metrics.total_errors,
            "retried_calls": self._metrics.retried_calls,
            "total_input_tokens": self._metrics.total_input_tokens,
            "total_output_tokens": self._metrics.total_output_tokens,
            "total_seconds": round(self._metrics.total_seconds, 3),
            "average_seconds": round(self._metrics.total_seconds / calls, 3) if calls else 0.0,
            "error_rate": round(self._metrics.total_errors / calls, 4) if calls else 0.0,
        }
