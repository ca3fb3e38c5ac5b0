"""Error-class-aware retry for inference calls.

An explicit ``RetryPolicy`` (max retries, classifier, delay function) is
consumed by one generic combinator, ``retry_async``. Bad-request/auth errors
and invalid output fail immediately; rate limits, overloads and other
transient failures back off with class-specific exponential delays.
"""

import asyncio
import logging
import random
import time
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, FrozenSet, List, Optional, Tuple, Type, TypeVar

from pydantic import BaseModel

from app.errors import (
    ClientConfigError,
    OverloadError,
    RateLimitError,
    SchemaValidationError,
    TransientIOError,
)
from inference.adapter import BaseInferenceAdapter, InferenceOptions, InferenceResponse, TokenUsage

logger = logging.getLogger(__name__)

T = TypeVar("T")

JITTER_RATIO = 0.25
_MIN_OVERLOAD_BASE_SECONDS = 5.0


class ErrorClass(str, Enum):
    CLIENT = "client"
    RATE_LIMIT = "rate_limit"
    OVERLOAD = "overload"
    TRANSIENT = "transient"
    INVALID_OUTPUT = "invalid_output"


@dataclass(frozen=True)
class _DelayRule:
    multiplier: float
    cap_seconds: float


_DELAY_RULES: Dict[ErrorClass, _DelayRule] = {
    ErrorClass.RATE_LIMIT: _DelayRule(multiplier=4.0, cap_seconds=60.0),
    ErrorClass.OVERLOAD: _DelayRule(multiplier=6.0, cap_seconds=120.0),
    ErrorClass.TRANSIENT: _DelayRule(multiplier=1.0, cap_seconds=30.0),
}

_STATUS_CLASSES: Dict[int, ErrorClass] = {
    400: ErrorClass.CLIENT,
    401: ErrorClass.CLIENT,
    403: ErrorClass.CLIENT,
    404: ErrorClass.CLIENT,
    422: ErrorClass.CLIENT,
    429: ErrorClass.RATE_LIMIT,
    503: ErrorClass.OVERLOAD,
    529: ErrorClass.OVERLOAD,
}


def classify_error(error: BaseException) -> ErrorClass:
    """Map an exception onto a retry error class.

    Taxonomy errors map directly. Anything else is classified by a
    ``status_code`` attribute when present, and otherwise treated as transient.
    """
    if isinstance(error, ClientConfigError):
        return ErrorClass.CLIENT
    if isinstance(error, SchemaValidationError):
        return ErrorClass.INVALID_OUTPUT
    if isinstance(error, RateLimitError):
        return ErrorClass.RATE_LIMIT
    if isinstance(error, OverloadError):
        return ErrorClass.OVERLOAD
    if isinstance(error, TransientIOError):
        return ErrorClass.TRANSIENT
    status = getattr(error, "status_code", None)
    if isinstance(status, int) and status in _STATUS_CLASSES:
        return _STATUS_CLASSES[status]
    return ErrorClass.TRANSIENT


def base_delay_for(error_class: ErrorClass, attempt: int, base_delay: float) -> float:
    """Un-jittered delay in seconds before retrying after attempt ``attempt`` (0-based)."""
    rule = _DELAY_RULES.get(error_class)
    if rule is None:
        return 0.0
    base = base_delay
    if error_class is ErrorClass.OVERLOAD:
        base = max(base_delay * 2, _MIN_OVERLOAD_BASE_SECONDS)
    return min(base * (2 ** attempt) * rule.multiplier, rule.cap_seconds)


def compute_delay(
    error_class: ErrorClass,
    attempt: int,
    base_delay: float,
    rng: Callable[[], float] = random.random,
) -> float:
    """Capped class delay with uniform ±25% jitter."""
    delay = base_delay_for(error_class, attempt, base_delay)
    jitter = (rng() * 2.0 - 1.0) * JITTER_RATIO
    return max(0.0, delay * (1.0 + jitter))


@dataclass
class RetryCost:
    """What the failed attempts of one call consumed."""

    attempts: int = 0
    retries: int = 0
    retry_input_tokens: int = 0
    retry_output_tokens: int = 0
    elapsed_seconds: float = 0.0
    delays: List[float] = field(default_factory=list)
    error_classes: List[str] = field(default_factory=list)

    @property
    def retry_tokens(self) -> int:
        return self.retry_input_tokens + self.retry_output_tokens

    def add_failed_usage(self, usage: Any) -> None:
        if isinstance(usage, TokenUsage):
            self.retry_input_tokens += usage.input_tokens
            self.retry_output_tokens += usage.output_tokens


@dataclass(frozen=True)
class RetryPolicy:
    """Retry configuration consumed by ``retry_async``.

    ``max_retries`` counts retries after the first attempt, so a call is tried
    at most ``1 + max_retries`` times.
    """

    max_retries: int = 4
    base_delay_seconds: float = 2.0
    classifier: Callable[[BaseException], ErrorClass] = classify_error
    delay_fn: Callable[..., float] = compute_delay
    retryable_classes: FrozenSet[ErrorClass] = frozenset(
        {ErrorClass.RATE_LIMIT, ErrorClass.OVERLOAD, ErrorClass.TRANSIENT}
    )

    def should_retry(self, error_class: ErrorClass, attempt: int) -> bool:
        return error_class in self.retryable_classes and attempt < self.max_retries


async def retry_async(
    fn: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    *,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    rng: Callable[[], float] = random.random,
    clock: Callable[[], float] = time.monotonic,
) -> Tuple[T, RetryCost]:
    """Call ``fn`` until it succeeds or the policy gives up.

    Args:
        fn: Zero-argument coroutine factory; called once per attempt.
        policy: Retry policy.
        sleep: Awaitable sleep, injectable for tests.
        rng: Jitter random source returning floats in [0, 1).
        clock: Monotonic clock used for elapsed-time accounting.

    Returns:
        The result of the successful attempt and the cost of the failed ones.

    Raises:
        Exception: The last error, with ``retry_cost`` attached.
    """
    cost = RetryCost()
    started = clock()
    attempt = 0
    while True:
        cost.attempts += 1
        try:
            result = await fn()
        except Exception as exc:
            error_class = policy.classifier(exc)
            cost.error_classes.append(error_class.value)
            cost.add_failed_usage(getattr(exc, "usage", None))
            if not policy.should_retry(error_class, attempt):
                cost.elapsed_seconds = clock() - started
                exc.retry_cost = cost
                if error_class in policy.retryable_classes:
                    logger.error(
                        "Inference call exhausted retries attempts=%d error_class=%s error=%s",
                        cost.attempts,
                        error_class.value,
                        exc,
                    )
                raise
            delay = policy.delay_fn(error_class, attempt, policy.base_delay_seconds, rng)
            cost.retries += 1
            cost.delays.append(delay)
            logger.warning(
                "Inference call retry attempt=%d/%d error_class=%s wait_seconds=%.2f error=%s",
                attempt + 1,
                policy.max_retries,
                error_class.value,
                delay,
                exc,
            )
            await sleep(delay)
            attempt += 1
            continue
        cost.elapsed_seconds = clock() - started
        return result, cost


async def call_with_retry(
    adapter: BaseInferenceAdapter,
    prompt: str,
    schema: Type[BaseModel],
    *,
    max_retries: int = 4,
    base_delay: float = 2.0,
    options: Optional[InferenceOptions] = None,
    timeout_seconds: Optional[float] = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    rng: Callable[[], float] = random.random,
) -> InferenceResponse:
    """Invoke ``adapter`` under the default retry policy and a per-call timeout.

    A call that exceeds ``timeout_seconds`` surfaces as ``TransientIOError``.
    The returned response carries the retry cost of any failed attempts.
    """
    policy = RetryPolicy(max_retries=max_retries, base_delay_seconds=base_delay)

    async def _attempt() -> InferenceResponse:
        call = adapter.invoke(prompt, schema, options)
        if timeout_seconds is None:
            return await call
        try:
            return await asyncio.wait_for(call, timeout=timeout_seconds)
        except asyncio.TimeoutError as exc:
            raise TransientIOError(f"Inference call timed out after {timeout_seconds:.1f}s") from exc

    response, cost = await retry_async(_attempt, policy, sleep=sleep, rng=rng)
    return replace(response, retry_cost=cost)
