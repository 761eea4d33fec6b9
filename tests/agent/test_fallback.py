"""Tests for FallbackChain ordering, budget skipping and exhaustion."""

from __future__ import annotations

import pytest

from modelmesh.agent.fallback import FallbackChain
from modelmesh.agent.model_router.budget import RequestBudget
from modelmesh.errors import (
    AllModelsFailedError,
    BudgetExceededError,
    ContentPolicyError,
    PermanentProviderError,
    ProviderErrorKind,
    TransientProviderError,
)


def _chain(invoker, optimizer, registry, *model_ids: str) -> FallbackChain:
    return FallbackChain(invoker, optimizer, [registry.lookup(m) for m in model_ids])


@pytest.mark.asyncio
async def test_primary_success_stops_chain(invoker, optimizer, registry, provider):
    chain = _chain(invoker, optimizer, registry, "alpha", "beta")

    result, results = await chain.execute("hi")

    assert result.model_id == "alpha"
    assert len(results) == 1
    assert provider.called_models == ["alpha"]


@pytest.mark.asyncio
async def test_falls_back_after_primary_fails(invoker, optimizer, registry, provider):
    """Test the fallback model answers once the primary exhausts its attempts."""
    provider.script("alpha", fail_with=ContentPolicyError("refused"))
    chain = _chain(invoker, optimizer, registry, "alpha", "beta", "gamma")

    result, results = await chain.execute("hi")

    assert result.model_id == "beta"
    assert [r.success for r in results] == [False, True]
    assert results[0].error == ProviderErrorKind.CONTENT_POLICY
    assert "gamma" not in provider.called_models
    events = chain.get_fallback_events()
    assert events == [
        {"model_id": "alpha", "error_kind": "content_policy", "error_message": "refused"}
    ]


@pytest.mark.asyncio
async def test_all_models_failing_raises_with_every_failure(invoker, optimizer, registry, provider):
    provider.script("alpha", fail_with=PermanentProviderError("bad key"))
    provider.script("beta", fail_with=TransientProviderError("down"))
    chain = _chain(invoker, optimizer, registry, "alpha", "beta")

    with pytest.raises(AllModelsFailedError) as exc_info:
        await chain.execute("hi")

    failures = exc_info.value.failures
    assert [f.model_id for f in failures] == ["alpha", "beta"]
    assert [s["error"] for s in exc_info.value.summary()] == ["permanent", "transient"]
    # beta was retried max_retries times
    assert provider.called_models.count("beta") == 3


@pytest.mark.asyncio
async def test_models_over_budget_are_skipped(invoker, optimizer, registry, provider):
    budget = RequestBudget(0.0015)
    chain = _chain(invoker, optimizer, registry, "delta", "gamma")

    result, results = await chain.execute("hi", budget=budget)

    assert result.model_id == "gamma"
    assert provider.called_models == ["gamma"]
    assert budget.reserved == 0


@pytest.mark.asyncio
async def test_no_model_fitting_budget_raises_without_calls(invoker, optimizer, registry, provider):
    chain = _chain(invoker, optimizer, registry, "delta", "beta")

    with pytest.raises(BudgetExceededError):
        await chain.execute("hi", budget=RequestBudget(0.0001))

    assert provider.calls == []


@pytest.mark.asyncio
async def test_first_reservation_is_settled(invoker, optimizer, registry):
    budget = RequestBudget(1.0)
    reservation = budget.try_reserve(0.01, "alpha")
    chain = _chain(invoker, optimizer, registry, "alpha")

    result, _ = await chain.execute("hi", budget=budget, first_reservation=reservation)

    assert reservation.closed
    assert budget.reserved == 0
    assert budget.spent == pytest.approx(result.cost)


def test_empty_chain_rejected(invoker, optimizer):
    with pytest.raises(ValueError):
        FallbackChain(invoker, optimizer, [])


def test_reset_events(invoker, optimizer, registry):
    chain = _chain(invoker, optimizer, registry, "alpha")
    chain._fallback_events.append({"model_id": "alpha"})

    chain.reset_events()

    assert chain.get_fallback_events() == []
