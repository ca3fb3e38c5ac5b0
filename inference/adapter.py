"""Inference adapters for structured record enrichment.

Provides an async base interface, an adapter for OpenAI-compatible APIs and a
deterministic mock for testing. Every adapter returns validated data plus
token usage, and raises only errors from the pipeline error taxonomy.
"""

import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Type

import openai
from openai import AsyncOpenAI
from pydantic import BaseModel

from app.errors import ClientConfigError, OverloadError, RateLimitError, TransientIOError
from inference.prompt_builder import extract_prompt_records
from inference.validator import validate_structured_output

_CLIENT_ERROR_STATUSES = frozenset({400, 401, 403, 404, 422})
_OVERLOAD_STATUSES = frozenset({503, 529})


@dataclass(frozen=True)
class TokenUsage:
    """Token counts reported for one call or accumulated across calls."""

    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens

    def __add__(self, other: "TokenUsage") -> "TokenUsage":
        return TokenUsage(
            input_tokens=self.input_tokens + other.input_tokens,
            output_tokens=self.output_tokens + other.output_tokens,
        )


@dataclass(frozen=True)
class InferenceOptions:
    """Per-call options passed through to the inference service."""

    max_tokens: int = 4096
    temperature: float = 0.0
    system_prompt: Optional[str] = None


@dataclass(frozen=True)
class InferenceResponse:
    """Validated output of one inference call."""

    data: BaseModel
    usage: TokenUsage = field(default_factory=TokenUsage)
    raw: str = ""
    retry_cost: Any = None


class BaseInferenceAdapter(ABC):
    """Abstract base for all inference adapters."""

    @abstractmethod
    async def invoke(
        self,
        prompt: str,
        schema: Type[BaseModel],
        options: Optional[InferenceOptions] = None,
    ) -> InferenceResponse:
        """Send a prompt and return output validated against ``schema``.

        Args:
            prompt: The fully formatted prompt string.
            schema: Pydantic model class the output must conform to.
            options: Optional per-call options.

        Returns:
            The validated data and the token usage of the call.

        Raises:
            ClientConfigError: Bad request or authentication failure.
            RateLimitError: The caller is rate limited.
            OverloadError: The service is overloaded.
            TransientIOError: Timeouts and other transient failures.
            SchemaValidationError: The output does not conform to ``schema``.
        """


class OpenAIInferenceAdapter(BaseInferenceAdapter):
    """Adapter for OpenAI-compatible chat completion APIs.

    Requests JSON-schema structured output with low temperature. The SDK's own
    retries are disabled so the pipeline retry policy stays in control.
    """

    def __init__(
        self,
        model: str = "gpt-4o-mini",
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        client: Optional[AsyncOpenAI] = None,
    ) -> None:
        """Initialise the OpenAI adapter.

        Args:
            model: Model identifier.
            api_key: API key. The SDK falls back to OPENAI_API_KEY when omitted.
            base_url: Optional base URL for OpenAI-compatible endpoints.
            client: Pre-built client, mainly for tests.
        """
        if client is None:
            client_kwargs: Dict[str, Any] = {"max_retries": 0}
            if api_key:
                client_kwargs["api_key"] = api_key
            if base_url:
                client_kwargs["base_url"] = base_url
            client = AsyncOpenAI(**client_kwargs)
        self._client = client
        self._model = model

    @property
    def model(self) -> str:
        return self._model

    async def invoke(
        self,
        prompt: str,
        schema: Type[BaseModel],
        options: Optional[InferenceOptions] = None,
    ) -> InferenceResponse:
        opts = options or InferenceOptions()
        messages: List[Dict[str, str]] = []
        if opts.system_prompt:
            messages.append({"role": "system", "content": opts.system_prompt})
        messages.append({"role": "user", "content": prompt})

        try:
            response = await self._client.chat.completions.create(
                model=self._model,
                messages=messages,
                temperature=opts.temperature,
                max_tokens=opts.max_tokens,
                response_format={
                    "type": "json_schema",
                    "json_schema": {
                        "name": schema.__name__,
                        "schema": schema.model_json_schema(),
                    },
                },
                stream=False,
            )
        except openai.RateLimitError as exc:
            raise RateLimitError(str(exc), status_code=exc.status_code) from exc
        except openai.APIStatusError as exc:
            raise _map_status_error(exc) from exc
        except openai.APIConnectionError as exc:
            raise TransientIOError(f"Inference connection failed: {exc}") from exc

        usage = TokenUsage()
        if response.usage is not None:
            usage = TokenUsage(
                input_tokens=response.usage.prompt_tokens or 0,
                output_tokens=response.usage.completion_tokens or 0,
            )
        raw = response.choices[0].message.content or ""
        data = validate_structured_output(raw, schema)
        return InferenceResponse(data=data, usage=usage, raw=raw)


def _map_status_error(exc: "openai.APIStatusError") -> Exception:
    status = exc.status_code
    if status in _CLIENT_ERROR_STATUSES:
        return ClientConfigError(f"Inference request rejected: {exc}", status_code=status)
    if status in _OVERLOAD_STATUSES:
        return OverloadError(f"Inference service overloaded: {exc}", status_code=status)
    return TransientIOError(f"Inference request failed: {exc}", status_code=status)


MockResponder = Callable[[str, Type[BaseModel]], Dict[str, Any]]


class MockInferenceAdapter(BaseInferenceAdapter):
    """Deterministic adapter for local runs and tests.

    By default it echoes back one enrichment entry per ``"external_id"`` found in
    the prompt's records section. A custom ``responder`` may return any payload.
    """

    def __init__(
        self,
        responder: Optional[MockResponder] = None,
        usage: TokenUsage = TokenUsage(input_tokens=100, output_tokens=50),
    ) -> None:
        self._responder = responder or _echo_external_ids
        self._usage = usage
        self.calls: List[str] = []

    async def invoke(
        self,
        prompt: str,
        schema: Type[BaseModel],
        options: Optional[InferenceOptions] = None,
    ) -> InferenceResponse:
        self.calls.append(prompt)
        raw = json.dumps(self._responder(prompt, schema))
        data = validate_structured_output(raw, schema)
        return InferenceResponse(data=data, usage=self._usage, raw=raw)


def _echo_external_ids(prompt: str, schema: Type[BaseModel]) -> Dict[str, Any]:
    records = extract_prompt_records(prompt)
    return {
        "records": [
            {
                "external_id": str(record["external_id"]),
                "actionable_summary": f"Summary for {record.get('title') or record['external_id']}.",
                "relevance_score": 5.0,
            }
            for record in records
            if record.get("external_id")
        ]
    }
