"""Model registry - catalog of interchangeable backend models.

Each ModelDescriptor is immutable once registered. Registry mutation only
adds, replaces or removes whole descriptors; the backing dict is swapped
copy-on-write under a lock, so readers always see a consistent snapshot
without locking.

Costs are USD per 1k tokens. ``baseline_latency_ms`` is the expected
latency used for ranking until the performance monitor has observations.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Iterable

import structlog

from modelmesh.errors import ModelNotFoundError

log = structlog.get_logger(__name__)


class Quality(StrEnum):
    """Coarse quality tier, ordered LOW < MEDIUM < HIGH."""

    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @property
    def rank(self) -> int:
        return _QUALITY_RANK[self]

    def meets(self, minimum: Quality | None) -> bool:
        """Whether this tier is at least ``minimum`` (always true for None)."""
        return minimum is None or self.rank >= minimum.rank


_QUALITY_RANK = {Quality.HIGH: 3, Quality.MEDIUM: 2, Quality.LOW: 1}


@dataclass(frozen=True)
class ModelDescriptor:
    """Static description of a backend model.

    Attributes:
        id: Model identifier used throughout the gateway (e.g. "gpt-4o")
        provider: Backend provider name (e.g. "openai")
        context_window: Maximum input context in tokens
        cost_per_1k_input: USD per 1k input tokens
        cost_per_1k_output: USD per 1k output tokens
        capabilities: Capability tags (e.g. {"coding", "vision"})
        baseline_latency_ms: Expected latency before observations exist
        quality: Coarse quality tier
        litellm_model: Model string passed to LiteLLM; defaults to "provider/id"
    """

    id: str
    provider: str
    context_window: int
    cost_per_1k_input: float
    cost_per_1k_output: float
    capabilities: frozenset[str] = field(default_factory=frozenset)
    baseline_latency_ms: float = 2000.0
    quality: Quality = Quality.MEDIUM
    litellm_model: str = ""

    def __post_init__(self) -> None:
        """Validate descriptor after initialization."""
        if not self.id:
            raise ValueError("model id must not be empty")
        if self.context_window < 1:
            raise ValueError("context_window must be positive")
        if self.cost_per_1k_input < 0 or self.cost_per_1k_output < 0:
            raise ValueError("costs cannot be negative")
        if self.baseline_latency_ms <= 0:
            raise ValueError("baseline_latency_ms must be positive")
        if not isinstance(self.capabilities, frozenset):
            object.__setattr__(self, "capabilities", frozenset(self.capabilities))
        if not self.litellm_model:
            object.__setattr__(self, "litellm_model", f"{self.provider}/{self.id}")

    def cost_for(self, input_tokens: int, output_tokens: int) -> float:
        """Actual cost of a call with the given token counts."""
        return (
            input_tokens / 1000 * self.cost_per_1k_input
            + output_tokens / 1000 * self.cost_per_1k_output
        )

    def estimate_cost(self, input_tokens: int, output_tokens: int) -> float:
        """Estimated cost of a call before it is made."""
        return self.cost_for(input_tokens, output_tokens)

    def supports(self, tags: Iterable[str]) -> bool:
        return self.capabilities.issuperset(tags)


class ModelRegistry:
    """Thread-safe catalog of ModelDescriptors keyed by id."""

    def __init__(self, models: Iterable[ModelDescriptor] | None = None) -> None:
        self._lock = threading.Lock()
        self._models: dict[str, ModelDescriptor] = {}
        for model in models or ():
            self._models[model.id] = model

    def register(self, descriptor: ModelDescriptor) -> None:
        """Add a descriptor, replacing any existing one with the same id."""
        with self._lock:
            updated = dict(self._models)
            replaced = descriptor.id in updated
            updated[descriptor.id] = descriptor
            self._models = updated
        log.info(
            "model_registry.registered",
            model_id=descriptor.id,
            provider=descriptor.provider,
            replaced=replaced,
        )

    def unregister(self, model_id: str) -> None:
        """Remove a descriptor.

        Raises:
            ModelNotFoundError: If the id is not registered
        """
        with self._lock:
            if model_id not in self._models:
                raise ModelNotFoundError(model_id)
            updated = dict(self._models)
            del updated[model_id]
            self._models = updated
        log.info("model_registry.unregistered", model_id=model_id)

    def lookup(self, model_id: str) -> ModelDescriptor:
        """Return the descriptor for ``model_id``.

        Raises:
            ModelNotFoundError: If the id is not registered
        """
        try:
            return self._models[model_id]
        except KeyError:
            raise ModelNotFoundError(model_id) from None

    def get(self, model_id: str) -> ModelDescriptor | None:
        return self._models.get(model_id)

    def by_capability(self, tags: Iterable[str] = ()) -> list[ModelDescriptor]:
        """Return every descriptor carrying all of ``tags``, in registration order."""
        required = frozenset(tags)
        return [m for m in self._models.values() if m.supports(required)]

    def list_models(self) -> list[ModelDescriptor]:
        return list(self._models.values())

    def __contains__(self, model_id: object) -> bool:
        return model_id in self._models

    def __len__(self) -> int:
        return len(self._models)


# ------------------------------------------------------------------ #
# Default catalog
# ------------------------------------------------------------------ #

DEFAULT_MODELS: tuple[ModelDescriptor, ...] = (
    ModelDescriptor(
        id="gpt-4o",
        provider="openai",
        context_window=128_000,
        cost_per_1k_input=0.0025,
        cost_per_1k_output=0.01,
        capabilities=frozenset({"coding", "reasoning", "vision", "function-calling", "creative"}),
        baseline_latency_ms=3000,
        quality=Quality.HIGH,
    ),
    ModelDescriptor(
        id="gpt-4o-mini",
        provider="openai",
        context_window=128_000,
        cost_per_1k_input=0.00015,
        cost_per_1k_output=0.0006,
        capabilities=frozenset({"coding", "function-calling", "fast"}),
        baseline_latency_ms=1000,
        quality=Quality.MEDIUM,
    ),
    ModelDescriptor(
        id="claude-3-opus",
        provider="anthropic",
        context_window=200_000,
        cost_per_1k_input=0.015,
        cost_per_1k_output=0.075,
        capabilities=frozenset({"reasoning", "analysis", "long-context", "creative", "coding"}),
        baseline_latency_ms=4000,
        quality=Quality.HIGH,
        litellm_model="anthropic/claude-3-opus-20240229",
    ),
    ModelDescriptor(
        id="claude-3-haiku",
        provider="anthropic",
        context_window=200_000,
        cost_per_1k_input=0.00025,
        cost_per_1k_output=0.00125,
        capabilities=frozenset({"long-context", "fast"}),
        baseline_latency_ms=900,
        quality=Quality.MEDIUM,
        litellm_model="anthropic/claude-3-haiku-20240307",
    ),
    ModelDescriptor(
        id="gemini-2.5-pro",
        provider="gemini",
        context_window=1_000_000,
        cost_per_1k_input=0.00125,
        cost_per_1k_output=0.01,
        capabilities=frozenset({"reasoning", "analysis", "vision", "long-context", "coding"}),
        baseline_latency_ms=3500,
        quality=Quality.HIGH,
    ),
    ModelDescriptor(
        id="gemini-2.5-flash",
        provider="gemini",
        context_window=1_000_000,
        cost_per_1k_input=0.00001,
        cost_per_1k_output=0.00003,
        capabilities=frozenset({"vision", "long-context", "massive-context", "fast"}),
        baseline_latency_ms=800,
        quality=Quality.MEDIUM,
    ),
    ModelDescriptor(
        id="llama-3.3-70b",
        provider="groq",
        context_window=128_000,
        cost_per_1k_input=0.00059,
        cost_per_1k_output=0.00079,
        capabilities=frozenset({"reasoning", "coding", "fast"}),
        baseline_latency_ms=700,
        quality=Quality.MEDIUM,
        litellm_model="groq/llama-3.3-70b-versatile",
    ),
    ModelDescriptor(
        id="mistral-large",
        provider="mistral",
        context_window=128_000,
        cost_per_1k_input=0.002,
        cost_per_1k_output=0.006,
        capabilities=frozenset({"reasoning", "coding", "function-calling"}),
        baseline_latency_ms=2500,
        quality=Quality.HIGH,
        litellm_model="mistral/mistral-large-latest",
    ),
    ModelDescriptor(
        id="deepseek-coder",
        provider="deepseek",
        context_window=128_000,
        cost_per_1k_input=0.00014,
        cost_per_1k_output=0.00028,
        capabilities=frozenset({"coding", "code-completion", "debugging"}),
        baseline_latency_ms=2000,
        quality=Quality.MEDIUM,
    ),
    ModelDescriptor(
        id="qwen-2.5-coder-32b",
        provider="openrouter",
        context_window=32_000,
        cost_per_1k_input=0.00018,
        cost_per_1k_output=0.00018,
        capabilities=frozenset({"coding", "code-completion"}),
        baseline_latency_ms=1500,
        quality=Quality.MEDIUM,
        litellm_model="openrouter/qwen/qwen-2.5-coder-32b-instruct",
    ),
)


def default_registry() -> ModelRegistry:
    """Build a registry pre-populated with the default catalog."""
    return ModelRegistry(DEFAULT_MODELS)
