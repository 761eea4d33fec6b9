"""Tests for UsageLedger, RequestBudget and CostOptimizer.

Tests cover:
- Ledger totals only grow until clear()
- Budget reservations are atomic and never overspend
- Settling and releasing reservations
- Optimizer ranking, per-call caps and budget rejection
- Fallback chain construction and cost reports
"""

from __future__ import annotations

import math
from concurrent.futures import ThreadPoolExecutor

import pytest
from structlog.testing import capture_logs

from modelmesh.agent.model_router.budget import CostOptimizer, RequestBudget, UsageLedger
from modelmesh.agent.model_router.constraints import RoutingConstraints
from modelmesh.agent.model_router.context import RoutingContext
from modelmesh.agent.model_router.registry import Quality, default_registry
from modelmesh.config import Settings
from modelmesh.errors import BudgetExceededError, NoEligibleModelError


# ------------------------------------------------------------------ #
# UsageLedger
# ------------------------------------------------------------------ #


def test_ledger_accumulates_per_model_and_total():
    ledger = UsageLedger()
    ledger.record("alpha", 100, 50, 0.01)
    ledger.record("alpha", 200, 50, 0.02)
    ledger.record("beta", 10, 10, 0.005)

    entries = ledger.by_model()

    assert entries["alpha"].calls == 2
    assert entries["alpha"].total_tokens == 400
    assert ledger.total_cost == pytest.approx(0.035)
    assert ledger.total_tokens == 420


def test_ledger_snapshot_is_a_copy():
    ledger = UsageLedger()
    ledger.record("alpha", 1, 1, 0.1)

    snapshot = ledger.by_model()
    snapshot["alpha"].cost = 99.0

    assert ledger.total_cost == pytest.approx(0.1)


def test_ledger_rejects_negative_usage():
    ledger = UsageLedger()

    with pytest.raises(ValueError):
        ledger.record("alpha", -1, 0, 0.0)
    with pytest.raises(ValueError):
        ledger.record("alpha", 0, 0, -0.5)


def test_ledger_clear_resets_totals():
    ledger = UsageLedger()
    ledger.record("alpha", 1, 1, 0.1)

    ledger.clear()

    assert ledger.total_cost == 0
    assert ledger.by_model() == {}


# ------------------------------------------------------------------ #
# RequestBudget
# ------------------------------------------------------------------ #


def test_budget_without_ceiling_accepts_everything():
    budget = RequestBudget()

    reservation = budget.try_reserve(1_000_000.0, "alpha")

    assert reservation is not None
    assert math.isinf(budget.remaining)


def test_budget_rejects_negative_ceiling():
    with pytest.raises(ValueError):
        RequestBudget(-1.0)


def test_budget_reservation_over_remaining_returns_none():
    budget = RequestBudget(1.0)

    assert budget.try_reserve(0.6) is not None
    assert budget.try_reserve(0.6) is None
    assert budget.reserved == pytest.approx(0.6)
    assert budget.remaining == pytest.approx(0.4)


def test_settle_converts_hold_into_spend_once():
    budget = RequestBudget(1.0)
    reservation = budget.try_reserve(0.5, "alpha")

    reservation.settle(0.3)
    reservation.settle(0.3)

    assert reservation.closed
    assert budget.spent == pytest.approx(0.3)
    assert budget.reserved == 0
    assert budget.remaining == pytest.approx(0.7)


def test_release_returns_hold():
    budget = RequestBudget(1.0)
    reservation = budget.try_reserve(0.5, "alpha")

    reservation.release()
    reservation.settle(0.5)

    assert budget.spent == 0
    assert budget.remaining == pytest.approx(1.0)


def test_concurrent_reservations_never_overspend():
    budget = RequestBudget(1.0)

    with ThreadPoolExecutor(max_workers=8) as pool:
        reservations = list(pool.map(lambda _: budget.try_reserve(0.1), range(20)))

    granted = [r for r in reservations if r is not None]
    assert len(granted) == 10
    assert budget.reserved <= 1.0


def test_budget_logs_warning_threshold():
    budget = RequestBudget(1.0)
    reservation = budget.try_reserve(0.85)

    with capture_logs() as logs:
        reservation.settle(0.85)

    assert any(
        entry["event"] == "request_budget.warning_threshold" and entry["log_level"] == "warning"
        for entry in logs
    )


def test_budget_logs_critical_threshold():
    budget = RequestBudget(1.0)
    reservation = budget.try_reserve(0.97)

    with capture_logs() as logs:
        reservation.settle(0.97)

    assert [e["event"] for e in logs] == ["request_budget.critical_threshold"]


# ------------------------------------------------------------------ #
# CostOptimizer
# ------------------------------------------------------------------ #


def test_estimate_cost_uses_default_token_counts(optimizer, registry):
    # 1000 input + 500 output tokens by default
    assert optimizer.estimate_cost(registry.lookup("alpha")) == pytest.approx(0.002)
    assert optimizer.estimate_cost(registry.lookup("delta")) == pytest.approx(0.025)


def test_estimate_cost_uses_constraint_token_counts(optimizer, registry):
    constraints = RoutingConstraints(estimated_input_tokens=2000, expected_output_tokens=0)

    assert optimizer.estimate_cost(registry.lookup("alpha"), constraints) == pytest.approx(0.002)


def test_rank_orders_by_weighted_score(optimizer, registry):
    ranked = optimizer.rank(registry.list_models())

    assert [sm.model.id for sm in ranked] == ["gamma", "alpha", "beta", "delta"]
    assert ranked[0].score > ranked[-1].score


def test_rank_drops_models_missing_capabilities(optimizer, registry):
    constraints = RoutingConstraints(required_capabilities=frozenset({"coding"}))

    ranked = optimizer.rank(registry.list_models(), constraints)

    assert [sm.model.id for sm in ranked] == ["alpha", "beta", "delta"]


def test_rank_drops_models_below_min_quality(optimizer, registry):
    constraints = RoutingConstraints(min_quality=Quality.HIGH)

    ranked = optimizer.rank(registry.list_models(), constraints)

    assert [sm.model.id for sm in ranked] == ["alpha", "beta", "delta"]


def test_reserve_first_takes_first_fitting_candidate_in_order(optimizer, registry):
    constraints = RoutingConstraints(min_quality=Quality.HIGH)
    ordered = list(reversed(optimizer.rank(registry.list_models(), constraints)))
    beta_cost = ordered[1].estimated_cost
    budget = RequestBudget(beta_cost)

    index, reservation, rest = optimizer.reserve_first(ordered, constraints, budget)

    assert ordered[index].model.id == "beta"
    assert reservation.model_id == "beta"
    assert [sm.model.id for sm in rest] == ["alpha"]
    assert budget.reserved == pytest.approx(beta_cost)


def test_select_reports_min_quality_when_nothing_qualifies(optimizer, registry):
    gamma = registry.lookup("gamma")

    with pytest.raises(NoEligibleModelError, match="high quality"):
        optimizer.select_optimal_model([gamma], RoutingConstraints(min_quality=Quality.HIGH))


def test_rank_is_deterministic(optimizer, registry):
    first = [sm.model.id for sm in optimizer.rank(registry.list_models())]
    second = [sm.model.id for sm in optimizer.rank(list(reversed(registry.list_models())))]

    assert first == second


def test_select_reserves_chosen_model_cost(optimizer, registry):
    budget = RequestBudget(1.0)

    selection = optimizer.select_optimal_model(registry.list_models(), budget=budget)

    assert selection.model.id == "gamma"
    assert selection.reservation is not None
    assert budget.reserved == pytest.approx(selection.estimated_cost)
    assert [m.id for m in selection.alternatives] == ["alpha", "beta", "delta"]


@pytest.mark.parametrize("ceiling", [0.0005, 0.001, 0.0015, 0.003, 0.01, 0.03])
def test_selection_never_exceeds_remaining_budget(optimizer, registry, ceiling):
    budget = RequestBudget(ceiling)
    remaining_before = budget.remaining

    try:
        selection = optimizer.select_optimal_model(registry.list_models(), budget=budget)
    except BudgetExceededError:
        assert budget.reserved == 0
        return

    assert selection.estimated_cost <= remaining_before


def test_select_respects_per_call_cap(optimizer, registry):
    constraints = RoutingConstraints(
        required_capabilities=frozenset({"coding"}),
        max_cost=0.003,
    )

    selection = optimizer.select_optimal_model(registry.list_models(), constraints)

    assert selection.model.id == "alpha"
    assert [m.id for m in selection.alternatives] == []


def test_select_raises_when_nothing_fits(optimizer, registry, context):
    budget = RequestBudget(0.0001)

    with pytest.raises(BudgetExceededError) as exc_info:
        optimizer.select_optimal_model(registry.list_models(), budget=budget)

    assert exc_info.value.cheapest_estimate == pytest.approx(0.001)
    assert exc_info.value.remaining == pytest.approx(0.0001)
    assert budget.reserved == 0
    assert context.monitor.total_recorded() == 0


def test_select_raises_when_no_candidate_has_capabilities(optimizer, registry):
    constraints = RoutingConstraints(required_capabilities=frozenset({"telepathy"}))

    with pytest.raises(NoEligibleModelError):
        optimizer.select_optimal_model(registry.list_models(), constraints)


def test_ensure_affordable_holds_nothing(optimizer, registry):
    budget = RequestBudget(0.01)

    optimizer.ensure_affordable(registry.list_models(), None, budget)

    assert budget.reserved == 0
    with pytest.raises(BudgetExceededError):
        optimizer.ensure_affordable([registry.lookup("delta")], None, budget)


def test_reserve_without_budget_enforces_per_call_cap(optimizer, registry):
    constraints = RoutingConstraints(max_cost=0.001)

    assert optimizer.reserve(registry.lookup("gamma"), constraints, None) is not None
    assert optimizer.reserve(registry.lookup("alpha"), constraints, None) is None


def test_track_usage_charges_ledger(optimizer, context):
    cost = optimizer.track_usage("alpha", 1000, 1000)

    assert cost == pytest.approx(0.003)
    assert context.ledger.total_cost == pytest.approx(0.003)


def test_cost_report_breakdown(optimizer):
    optimizer.track_usage("alpha", 1000, 1000)
    optimizer.track_usage("beta", 1000, 1000)

    report = optimizer.get_cost_report()

    assert report.total_cost == pytest.approx(0.009)
    assert report.total_tokens == 4000
    assert report.by_model["alpha"].percentage == pytest.approx(100 / 3)
    assert report.by_provider == pytest.approx({"prov-a": 0.003, "prov-b": 0.006})
    assert any("beta" in r for r in report.recommendations)


# ------------------------------------------------------------------ #
# Fallback chains
# ------------------------------------------------------------------ #


def test_fallback_chain_for_test_catalog(optimizer):
    assert optimizer.create_fallback_chain("delta") == ["delta", "alpha", "beta"]


def test_fallback_chain_from_default_catalog():
    settings = Settings(environment="test")
    context = RoutingContext.from_settings(settings, default_registry())
    optimizer = CostOptimizer(context.registry, context.ledger, context.monitor, settings)

    chain = optimizer.create_fallback_chain("gpt-4o")

    assert chain[0] == "gpt-4o"
    assert len(chain) >= settings.min_fallback_chain_length
    assert len(chain) == len(set(chain))
    assert "gpt-4o-mini" in chain
