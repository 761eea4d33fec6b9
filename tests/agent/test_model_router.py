"""Tests for ModelRouter.

Tests cover:
- Capability filtering from the task type and explicit constraints
- Override and exclusion lists, and the minimum quality tier
- Latency ceilings, including the case where no model meets them
- High error rate models moved to the end of the chain
- Budget filtering and reservation of the primary's cost
- Fallback chain padding
- Routing insights
"""

from __future__ import annotations

import pytest

from modelmesh.agent.model_router.budget import RequestBudget
from modelmesh.agent.model_router.classifier import TaskType
from modelmesh.agent.model_router.constraints import InvocationRequest, RoutingConstraints
from modelmesh.agent.model_router.registry import Quality
from modelmesh.agent.model_router.router import LATENCY_NOT_MET
from modelmesh.errors import BudgetExceededError, ModelNotFoundError, NoEligibleModelError


def _fail_n_times(monitor, model_id: str, n: int) -> None:
    for _ in range(n):
        handle = monitor.start_invocation(model_id)
        monitor.end_invocation(handle, success=False, latency_ms=10)


# ------------------------------------------------------------------ #
# Capabilities and candidate filtering
# ------------------------------------------------------------------ #


def test_coding_task_routes_to_coding_models(router):
    """Test coding tasks only consider models with the coding capability."""
    decision = router.route(TaskType.CODING)

    assert decision.model_ids == ["alpha", "beta", "delta"]
    assert decision.task_type == TaskType.CODING
    assert "requires coding" in decision.reasoning
    assert decision.reservation is not None


def test_general_task_ranks_whole_catalog(router):
    decision = router.route("general")

    assert decision.primary.id == "gamma"
    assert decision.model_ids == ["gamma", "alpha", "beta", "delta"]
    assert decision.estimated_cost == pytest.approx(0.001)
    assert decision.estimated_latency_ms == 800


def test_explicit_capabilities_are_added(router):
    constraints = RoutingConstraints(required_capabilities=frozenset({"vision"}))

    decision = router.route(TaskType.GENERAL, constraints)

    assert decision.model_ids == ["alpha", "delta"]


def test_min_quality_narrows_candidates(router):
    decision = router.route(TaskType.GENERAL, RoutingConstraints(min_quality=Quality.HIGH))

    assert decision.model_ids == ["alpha", "beta", "delta"]
    assert "quality at least high" in decision.reasoning


def test_eligible_applies_filters_without_reserving(router):
    constraints = RoutingConstraints(max_latency_ms=1200)

    eligibility = router.eligible(TaskType.CODING, constraints)

    assert [m.id for m in eligibility.candidates] == ["alpha"]
    assert eligibility.capabilities == frozenset({"coding"})
    assert not eligibility.latency_unmet
    assert router.get_routing_insights().total_decisions == 0


def test_invocation_request_fills_token_estimate_only_when_unset():
    request = InvocationRequest("x" * 400, TaskType.CODING)
    preset = InvocationRequest("x" * 400, constraints=RoutingConstraints(estimated_input_tokens=7))

    assert request.with_token_estimate().estimated_input_tokens == 100
    assert preset.with_token_estimate().estimated_input_tokens == 7


def test_routing_is_deterministic(router):
    first = router.route(TaskType.REASONING)
    second = router.route(TaskType.REASONING)

    assert first.model_ids == second.model_ids


def test_model_override_restricts_candidates_without_padding(router):
    constraints = RoutingConstraints(models=("beta", "gamma"))

    decision = router.route(TaskType.GENERAL, constraints)

    assert decision.model_ids == ["gamma", "beta"]
    assert "restricted to beta, gamma" in decision.reasoning


def test_unknown_override_model_raises(router):
    constraints = RoutingConstraints(models=("nope",))

    with pytest.raises(ModelNotFoundError):
        router.route(TaskType.GENERAL, constraints)


def test_excluded_models_never_appear(router):
    constraints = RoutingConstraints(exclude_models=frozenset({"gamma"}))

    decision = router.route(TaskType.GENERAL, constraints)

    assert "gamma" not in decision.model_ids
    assert decision.primary.id == "alpha"


def test_long_analysis_needs_long_context_model(router):
    decision = router.route(TaskType.ANALYSIS, RoutingConstraints(context_length=200_000))

    assert decision.model_ids == ["delta"]


def test_large_input_filters_by_context_window(router):
    decision = router.route(
        TaskType.GENERAL, RoutingConstraints(estimated_input_tokens=200_000)
    )

    assert decision.primary.id == "delta"
    assert "context window" in decision.reasoning
    assert decision.fallback_chain == []


@pytest.mark.parametrize(
    "constraints",
    [
        RoutingConstraints(required_capabilities=frozenset({"telepathy"})),
        RoutingConstraints(context_length=2_000_000),
        RoutingConstraints(models=("gamma",), required_capabilities=frozenset({"coding"})),
    ],
)
def test_no_eligible_model_raises(router, constraints):
    with pytest.raises(NoEligibleModelError):
        router.route(TaskType.GENERAL, constraints)


# ------------------------------------------------------------------ #
# Latency
# ------------------------------------------------------------------ #


def test_latency_ceiling_drops_slow_models(router):
    decision = router.route(TaskType.GENERAL, RoutingConstraints(max_latency_ms=900))

    assert decision.primary.id == "gamma"
    assert "latency under 900ms" in decision.reasoning
    assert not decision.reasoning.endswith(LATENCY_NOT_MET)


def test_unmeetable_latency_still_routes_and_says_so(router):
    """Test that when no model meets the latency ceiling, routing proceeds with a note."""
    decision = router.route(TaskType.GENERAL, RoutingConstraints(max_latency_ms=100))

    assert decision.primary.id == "gamma"
    assert decision.reasoning.endswith(LATENCY_NOT_MET)


# ------------------------------------------------------------------ #
# Health
# ------------------------------------------------------------------ #


def test_high_error_rate_model_moves_to_end(router, context):
    _fail_n_times(context.monitor, "gamma", 10)

    decision = router.route(TaskType.GENERAL)

    assert decision.model_ids[-1] == "gamma"
    assert decision.primary.id == "alpha"
    assert "deprioritized high error rate gamma" in decision.reasoning


def test_few_failures_do_not_demote(router, context):
    _fail_n_times(context.monitor, "gamma", 3)

    decision = router.route(TaskType.GENERAL)

    assert decision.primary.id == "gamma"


# ------------------------------------------------------------------ #
# Budget
# ------------------------------------------------------------------ #


def test_budget_filters_and_reserves_primary(router):
    budget = RequestBudget(0.0015)

    decision = router.route(TaskType.GENERAL, budget=budget)

    assert decision.model_ids == ["gamma"]
    assert budget.reserved == pytest.approx(0.001)
    assert "within budget" in decision.reasoning


def test_route_and_select_reserve_the_same_primary(router, registry):
    routed_budget = RequestBudget(0.0015)
    selected_budget = RequestBudget(0.0015)

    decision = router.route(TaskType.GENERAL, budget=routed_budget)
    selection = router.optimizer.select_optimal_model(
        registry.list_models(), budget=selected_budget
    )

    assert decision.primary.id == selection.model.id == "gamma"
    assert decision.estimated_cost == pytest.approx(selection.estimated_cost)
    assert routed_budget.reserved == pytest.approx(selected_budget.reserved)
    assert [m.id for m in selection.alternatives] == decision.model_ids[1:]


def test_per_call_cap_filters_candidates(router):
    decision = router.route(TaskType.GENERAL, RoutingConstraints(max_cost=0.003))

    assert decision.model_ids == ["gamma", "alpha"]


def test_unaffordable_request_raises_without_reserving(router):
    budget = RequestBudget(0.0001)

    with pytest.raises(BudgetExceededError):
        router.route(TaskType.GENERAL, budget=budget)

    assert budget.reserved == 0
    assert router.get_routing_insights().total_decisions == 0


# ------------------------------------------------------------------ #
# Fallback padding
# ------------------------------------------------------------------ #


def test_short_chain_is_padded_to_minimum(router):
    decision = router.route(TaskType.GENERAL, RoutingConstraints(max_latency_ms=900))

    assert decision.model_ids == ["gamma", "alpha", "beta"]


def test_padding_respects_required_capabilities(router):
    decision = router.route(TaskType.ANALYSIS, RoutingConstraints(context_length=200_000))

    assert decision.fallback_chain == []


# ------------------------------------------------------------------ #
# Insights
# ------------------------------------------------------------------ #


def test_routing_insights_recommend_diversifying(router):
    for _ in range(4):
        router.route(TaskType.CODING)

    insights = router.get_routing_insights()

    assert insights.total_decisions == 4
    assert insights.model_usage == {"alpha": 4}
    assert insights.task_types == {"coding": 4}
    assert insights.recommendations == [
        "Consider diversifying model usage. alpha used 4 times."
    ]


def test_clear_history(router):
    router.route(TaskType.GENERAL)

    router.clear_history()

    assert router.get_routing_insights().total_decisions == 0
