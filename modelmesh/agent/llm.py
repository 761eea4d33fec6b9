"""Provider adapters - one remote model call, classified on failure.

A ProviderAdapter performs exactly one attempt and either returns a
ProviderResponse or raises a classified ProviderError. Retries, deadlines,
concurrency limits and accounting are the Invoker's job, not the adapter's.

LiteLLMProvider is the production adapter: LiteLLM gives a unified
interface to every backend in the model registry, and its exception
hierarchy maps cleanly onto the four error kinds.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

import litellm
import structlog

from modelmesh.config import Settings, get_settings
from modelmesh.errors import (
    ContentPolicyError,
    PermanentProviderError,
    ProviderError,
    RateLimitError,
    TransientProviderError,
)

if TYPE_CHECKING:
    from modelmesh.agent.model_router.registry import ModelRegistry

log = structlog.get_logger(__name__)

# Checked in order; ContentPolicyViolationError subclasses BadRequestError
_TRANSIENT = (
    litellm.exceptions.ServiceUnavailableError,
    litellm.exceptions.Timeout,
    litellm.exceptions.APIConnectionError,
    litellm.exceptions.InternalServerError,
    ConnectionError,
)
_PERMANENT = (
    litellm.exceptions.AuthenticationError,
    litellm.exceptions.PermissionDeniedError,
    litellm.exceptions.NotFoundError,
    litellm.exceptions.BadRequestError,
)


@dataclass(frozen=True)
class CallParams:
    temperature: float = 0.7
    max_tokens: int = 2048


@dataclass(frozen=True)
class ProviderResponse:
    """Successful provider call."""

    text: str
    input_tokens: int
    output_tokens: int
    latency_ms: float


@runtime_checkable
class ProviderAdapter(Protocol):
    """One attempt at one model. Raises ProviderError subclasses on failure."""

    async def call(self, model_id: str, prompt: str, params: CallParams) -> ProviderResponse: ...


def _retry_after_seconds(exc: Exception) -> float | None:
    response = getattr(exc, "response", None)
    headers = getattr(response, "headers", None)
    if not headers:
        return None
    value = headers.get("retry-after")
    if value is None:
        return None
    try:
        return max(0.0, float(value))
    except (TypeError, ValueError):
        return None


def classify_exception(exc: Exception, model_id: str) -> ProviderError:
    """Map a LiteLLM (or transport) exception to the gateway taxonomy."""
    if isinstance(exc, ProviderError):
        return exc
    if isinstance(exc, litellm.exceptions.RateLimitError):
        return RateLimitError(
            f"Rate limit from {model_id}: {exc}",
            model_id=model_id,
            retry_after=_retry_after_seconds(exc),
        )
    if isinstance(exc, litellm.exceptions.ContentPolicyViolationError):
        return ContentPolicyError(f"Content refused by {model_id}: {exc}", model_id=model_id)
    if isinstance(exc, _TRANSIENT):
        return TransientProviderError(f"{model_id} unavailable: {exc}", model_id=model_id)
    if isinstance(exc, _PERMANENT):
        return PermanentProviderError(f"{model_id} rejected the request: {exc}", model_id=model_id)
    return PermanentProviderError(f"{model_id} call failed: {exc}", model_id=model_id)


class LiteLLMProvider:
    """ProviderAdapter backed by litellm.acompletion."""

    def __init__(self, registry: ModelRegistry, settings: Settings | None = None) -> None:
        self._registry = registry
        self._settings = settings or get_settings()
        # Proxy mode: route every call through a LiteLLM proxy
        if self._settings.litellm_base_url:
            litellm.api_base = self._settings.litellm_base_url
            litellm.api_key = self._settings.litellm_api_key.get_secret_value()

    async def call(self, model_id: str, prompt: str, params: CallParams) -> ProviderResponse:
        descriptor = self._registry.lookup(model_id)

        log.debug(
            "llm.completion_request",
            model_id=model_id,
            litellm_model=descriptor.litellm_model,
            max_tokens=params.max_tokens,
        )

        started = time.perf_counter()
        try:
            response: Any = await litellm.acompletion(
                model=descriptor.litellm_model,
                messages=[{"role": "user", "content": prompt}],
                temperature=params.temperature,
                max_tokens=params.max_tokens,
            )
        except Exception as exc:
            raise classify_exception(exc, model_id) from exc
        latency_ms = (time.perf_counter() - started) * 1000

        usage = getattr(response, "usage", None)
        input_tokens = getattr(usage, "prompt_tokens", 0) or 0
        output_tokens = getattr(usage, "completion_tokens", 0) or 0

        log.info(
            "llm.completion_done",
            model_id=model_id,
            prompt_tokens=input_tokens,
            completion_tokens=output_tokens,
            latency_ms=round(latency_ms, 1),
        )

        return ProviderResponse(
            text=self.extract_text(response),
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            latency_ms=latency_ms,
        )

    @staticmethod
    def extract_text(response: Any) -> str:
        """Extract the assistant text content from a completion response."""
        try:
            return response.choices[0].message.content or ""
        except (AttributeError, IndexError, KeyError):
            return ""
