"""
Shared test fixtures for pytest.

Provides common fakes and wiring for all test modules:
- settings: Test environment configuration with instant backoff
- registry: Small model catalog with known costs and capabilities
- provider: Scripted fake ProviderAdapter (texts, delays, errors per model)
- context, optimizer, router, invoker: Collaborators sharing one RoutingContext
- orchestrator: Fully wired Orchestrator over the fake provider
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from unittest.mock import AsyncMock

import pytest

from modelmesh.agent.invocation import Invoker
from modelmesh.agent.llm import CallParams, ProviderResponse
from modelmesh.agent.model_router.budget import CostOptimizer
from modelmesh.agent.model_router.context import RoutingContext
from modelmesh.agent.model_router.registry import ModelDescriptor, ModelRegistry, Quality
from modelmesh.agent.model_router.router import ModelRouter
from modelmesh.config import Settings, get_settings
from modelmesh.orchestration.orchestrator import Orchestrator, build_orchestrator
from modelmesh.telemetry.logging import clear_context


# ------------------------------------------------------------------ #
# Session-scoped: clear settings cache between test sessions
# ------------------------------------------------------------------ #

@pytest.fixture(autouse=True, scope="session")
def _clear_settings_cache():
    """Clear the lru_cache on get_settings so test overrides take effect."""
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture(autouse=True)
def _clear_log_context():
    yield
    clear_context()


# ------------------------------------------------------------------ #
# Fake provider
# ------------------------------------------------------------------ #

TextSource = str | Callable[[str], str]


class FakeProvider:
    """Scripted ProviderAdapter.

    Per model you can script the reply text (a string or a function of the
    prompt), a delay before replying, a queue of errors raised on the next
    calls, or an error raised on every call. Unscripted models reply
    "<model_id> answer".
    """

    def __init__(self) -> None:
        self.texts: dict[str, TextSource] = {}
        self.delays: dict[str, float] = {}
        self.error_queue: dict[str, list[Exception]] = {}
        self.always_fail: dict[str, Exception] = {}
        self.calls: list[tuple[str, str]] = []
        self.params: list[CallParams] = []
        self.in_flight = 0
        self.peak_in_flight = 0

    def script(
        self,
        model_id: str,
        text: TextSource | None = None,
        *,
        delay: float = 0.0,
        errors: list[Exception] | None = None,
        fail_with: Exception | None = None,
    ) -> None:
        if text is not None:
            self.texts[model_id] = text
        if delay:
            self.delays[model_id] = delay
        if errors:
            self.error_queue[model_id] = list(errors)
        if fail_with is not None:
            self.always_fail[model_id] = fail_with

    def calls_for(self, model_id: str) -> list[str]:
        return [prompt for called, prompt in self.calls if called == model_id]

    @property
    def called_models(self) -> list[str]:
        return [model_id for model_id, _ in self.calls]

    async def call(self, model_id: str, prompt: str, params: CallParams) -> ProviderResponse:
        self.calls.append((model_id, prompt))
        self.params.append(params)
        self.in_flight += 1
        self.peak_in_flight = max(self.peak_in_flight, self.in_flight)
        try:
            delay = self.delays.get(model_id, 0.0)
            if delay:
                await asyncio.sleep(delay)
            queue = self.error_queue.get(model_id)
            if queue:
                raise queue.pop(0)
            if model_id in self.always_fail:
                raise self.always_fail[model_id]

            text = self.texts.get(model_id, f"{model_id} answer")
            if callable(text):
                text = text(prompt)
            return ProviderResponse(
                text=text,
                input_tokens=max(1, len(prompt) // 4),
                output_tokens=50,
                latency_ms=delay * 1000 or 10.0,
            )
        finally:
            self.in_flight -= 1


# ------------------------------------------------------------------ #
# Catalog and settings
# ------------------------------------------------------------------ #

def make_model(
    model_id: str,
    provider: str = "prov",
    *,
    cost_in: float = 0.001,
    cost_out: float = 0.002,
    capabilities: frozenset[str] | set[str] = frozenset({"reasoning"}),
    latency: float = 1000.0,
    quality: Quality = Quality.MEDIUM,
    context_window: int = 128_000,
) -> ModelDescriptor:
    return ModelDescriptor(
        id=model_id,
        provider=provider,
        context_window=context_window,
        cost_per_1k_input=cost_in,
        cost_per_1k_output=cost_out,
        capabilities=frozenset(capabilities),
        baseline_latency_ms=latency,
        quality=quality,
    )


@pytest.fixture
def test_models() -> list[ModelDescriptor]:
    return [
        make_model(
            "alpha",
            "prov-a",
            cost_in=0.001,
            cost_out=0.002,
            capabilities={"coding", "reasoning", "vision"},
            latency=1000,
            quality=Quality.HIGH,
        ),
        make_model(
            "beta",
            "prov-b",
            cost_in=0.002,
            cost_out=0.004,
            capabilities={"coding", "reasoning"},
            latency=1500,
            quality=Quality.HIGH,
        ),
        make_model(
            "gamma",
            "prov-c",
            cost_in=0.0005,
            cost_out=0.001,
            capabilities={"reasoning"},
            latency=800,
        ),
        make_model(
            "delta",
            "prov-d",
            cost_in=0.01,
            cost_out=0.03,
            capabilities={"coding", "reasoning", "vision", "long-context"},
            latency=3000,
            quality=Quality.HIGH,
            context_window=1_000_000,
        ),
    ]


@pytest.fixture
def registry(test_models) -> ModelRegistry:
    return ModelRegistry(test_models)


@pytest.fixture
def settings() -> Settings:
    """Test settings: instant backoff, short timeouts."""
    return Settings(
        environment="test",
        max_retries=2,
        retry_base_delay_seconds=0.0,
        retry_max_delay_seconds=0.0,
        invocation_timeout_seconds=5.0,
        max_concurrent_invocations=5,
        setup_logging=False,
    )


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def no_sleep() -> AsyncMock:
    """Backoff sleep that returns immediately and records requested delays."""
    return AsyncMock(return_value=None)


# ------------------------------------------------------------------ #
# Wired collaborators
# ------------------------------------------------------------------ #

@pytest.fixture
def context(settings, registry) -> RoutingContext:
    return RoutingContext.from_settings(settings, registry)


@pytest.fixture
def optimizer(context, settings) -> CostOptimizer:
    return CostOptimizer(context.registry, context.ledger, context.monitor, settings)


@pytest.fixture
def router(context, optimizer, settings) -> ModelRouter:
    return ModelRouter(context.registry, optimizer, context.monitor, settings)


@pytest.fixture
def invoker(provider, context, optimizer, settings, no_sleep) -> Invoker:
    return Invoker(provider, context, optimizer, settings, sleep=no_sleep)


@pytest.fixture
def orchestrator(settings, provider, registry, no_sleep) -> Orchestrator:
    return build_orchestrator(settings, provider, registry, sleep=no_sleep)


@pytest.fixture
def model_factory() -> Callable[..., ModelDescriptor]:
    """Build a ModelDescriptor with test defaults."""
    return make_model
