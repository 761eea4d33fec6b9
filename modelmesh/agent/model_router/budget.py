"""Cost accounting and cost-aware model selection.

- UsageLedger: cumulative cost and token counts per model. Totals only grow
  until an explicit clear().
- RequestBudget: a per-request ceiling with atomic reservations, so
  concurrent selections within one request can never jointly overspend.
- CostOptimizer: estimates per-call cost, ranks candidates by a weighted
  score of reliability, cost and latency, and selects the best candidate
  that fits the budget. It never substitutes a default model when nothing
  fits; it raises BudgetExceededError instead.
"""

from __future__ import annotations

import math
import threading
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, NoReturn

import structlog

from modelmesh.agent.model_router.constraints import RoutingConstraints
from modelmesh.agent.model_router.registry import ModelDescriptor
from modelmesh.errors import BudgetExceededError, NoEligibleModelError
from modelmesh.telemetry.prometheus import budget_rejections_total

if TYPE_CHECKING:
    from modelmesh.agent.model_router.metrics import PerformanceMonitor
    from modelmesh.agent.model_router.registry import ModelRegistry
    from modelmesh.config import Settings

log = structlog.get_logger(__name__)


# ------------------------------------------------------------------ #
# Usage ledger
# ------------------------------------------------------------------ #


@dataclass
class LedgerEntry:
    input_tokens: int = 0
    output_tokens: int = 0
    cost: float = 0.0
    calls: int = 0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


class UsageLedger:
    """Process-wide cumulative spend, per model and in total."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._entries: dict[str, LedgerEntry] = {}

    def record(self, model_id: str, input_tokens: int, output_tokens: int, cost: float) -> None:
        if input_tokens < 0 or output_tokens < 0 or cost < 0:
            raise ValueError("usage cannot be negative")
        with self._lock:
            entry = self._entries.setdefault(model_id, LedgerEntry())
            entry.input_tokens += input_tokens
            entry.output_tokens += output_tokens
            entry.cost += cost
            entry.calls += 1

    @property
    def total_cost(self) -> float:
        with self._lock:
            return sum(e.cost for e in self._entries.values())

    @property
    def total_tokens(self) -> int:
        with self._lock:
            return sum(e.total_tokens for e in self._entries.values())

    def by_model(self) -> dict[str, LedgerEntry]:
        """Snapshot copy of per-model entries."""
        with self._lock:
            return {
                model_id: LedgerEntry(e.input_tokens, e.output_tokens, e.cost, e.calls)
                for model_id, e in self._entries.items()
            }

    def clear(self) -> None:
        """Reset all totals. Used for testing."""
        with self._lock:
            self._entries.clear()
        log.debug("usage_ledger.cleared")


# ------------------------------------------------------------------ #
# Request budget
# ------------------------------------------------------------------ #


class Reservation:
    """Estimated cost held against a RequestBudget until settled or released.

    Settling or releasing twice is a no-op.
    """

    def __init__(self, budget: RequestBudget, amount: float, model_id: str) -> None:
        self._budget = budget
        self.amount = amount
        self.model_id = model_id
        self.closed = False

    def settle(self, actual_cost: float) -> None:
        """Convert the hold into actual spend."""
        if self.closed:
            return
        self.closed = True
        self._budget._settle(self, actual_cost)

    def release(self) -> None:
        """Return the held amount without spending it."""
        if self.closed:
            return
        self.closed = True
        self._budget._release(self)


class RequestBudget:
    """Spending ceiling for one orchestration request.

    ``remaining = ceiling - spent - reserved``. A budget without a ceiling
    accepts every reservation but still tracks spend.
    """

    WARNING_THRESHOLD = 0.80
    CRITICAL_THRESHOLD = 0.95

    def __init__(self, ceiling: float | None = None) -> None:
        if ceiling is not None and ceiling < 0:
            raise ValueError("budget ceiling cannot be negative")
        self._ceiling = ceiling
        self._lock = threading.Lock()
        self._spent = 0.0
        self._reserved = 0.0

    @property
    def ceiling(self) -> float | None:
        return self._ceiling

    @property
    def spent(self) -> float:
        with self._lock:
            return self._spent

    @property
    def reserved(self) -> float:
        with self._lock:
            return self._reserved

    @property
    def remaining(self) -> float:
        with self._lock:
            return self._remaining_locked()

    def _remaining_locked(self) -> float:
        if self._ceiling is None:
            return math.inf
        return max(0.0, self._ceiling - self._spent - self._reserved)

    def try_reserve(self, amount: float, model_id: str = "") -> Reservation | None:
        """Atomically hold ``amount`` if it fits the remaining budget."""
        with self._lock:
            if amount > self._remaining_locked():
                return None
            self._reserved += amount
        return Reservation(self, amount, model_id)

    def _settle(self, reservation: Reservation, actual_cost: float) -> None:
        with self._lock:
            self._reserved = max(0.0, self._reserved - reservation.amount)
            before = self._spent
            self._spent += actual_cost
            after = self._spent
        self._check_thresholds(before, after)

    def _release(self, reservation: Reservation) -> None:
        with self._lock:
            self._reserved = max(0.0, self._reserved - reservation.amount)

    def _check_thresholds(self, before: float, after: float) -> None:
        if not self._ceiling:
            return
        before_pct = before / self._ceiling
        after_pct = after / self._ceiling
        if before_pct < self.CRITICAL_THRESHOLD <= after_pct:
            log.critical(
                "request_budget.critical_threshold",
                spent=after,
                ceiling=self._ceiling,
                percentage=round(after_pct * 100, 1),
            )
        elif before_pct < self.WARNING_THRESHOLD <= after_pct:
            log.warning(
                "request_budget.warning_threshold",
                spent=after,
                ceiling=self._ceiling,
                percentage=round(after_pct * 100, 1),
            )


# ------------------------------------------------------------------ #
# Cost optimizer
# ------------------------------------------------------------------ #


@dataclass(frozen=True)
class ScoredModel:
    model: ModelDescriptor
    score: float
    estimated_cost: float
    estimated_latency_ms: float
    reliability: float


@dataclass
class Selection:
    """Result of select_optimal_model.

    Attributes:
        model: Chosen descriptor
        reason: Human-readable explanation
        score: Weighted ranking score of the chosen model
        estimated_cost: Estimated USD cost of one call
        alternatives: Remaining affordable candidates in rank order
        reservation: Budget hold for the chosen model, if a budget was given
    """

    model: ModelDescriptor
    reason: str
    score: float
    estimated_cost: float
    alternatives: list[ModelDescriptor] = field(default_factory=list)
    reservation: Reservation | None = None


@dataclass
class ModelCost:
    tokens: int
    cost: float
    calls: int
    percentage: float


@dataclass
class CostReport:
    total_cost: float
    total_tokens: int
    by_model: dict[str, ModelCost]
    by_provider: dict[str, float]
    recommendations: list[str]


class CostOptimizer:
    """Ranks candidate models and enforces per-call and per-request budgets."""

    # Cheap, broadly capable models used to pad fallback chains
    RELIABLE_FALLBACKS: tuple[str, ...] = (
        "gpt-4o-mini",
        "claude-3-haiku",
        "gemini-2.5-flash",
        "deepseek-coder",
    )
    HIGH_SPEND_USD = 100.0
    CONCENTRATION_PCT = 50.0

    def __init__(
        self,
        registry: ModelRegistry,
        ledger: UsageLedger,
        monitor: PerformanceMonitor,
        settings: Settings,
    ) -> None:
        self._registry = registry
        self._ledger = ledger
        self._monitor = monitor
        self._settings = settings

    # ------------------------------------------------------------------ #
    # Estimation
    # ------------------------------------------------------------------ #

    def token_estimates(self, constraints: RoutingConstraints | None = None) -> tuple[int, int]:
        constraints = constraints or RoutingConstraints()
        input_tokens = constraints.estimated_input_tokens
        if input_tokens is None:
            input_tokens = self._settings.default_input_tokens
        output_tokens = constraints.expected_output_tokens
        if output_tokens is None:
            output_tokens = self._settings.default_output_tokens
        return input_tokens, output_tokens

    def estimate_cost(
        self, descriptor: ModelDescriptor, constraints: RoutingConstraints | None = None
    ) -> float:
        input_tokens, output_tokens = self.token_estimates(constraints)
        return descriptor.estimate_cost(input_tokens, output_tokens)

    def estimate_latency(self, descriptor: ModelDescriptor) -> float:
        """Observed p50 once enough samples exist, else the baseline."""
        if self._monitor.has_enough_samples(descriptor.id):
            return self._monitor.get_stats(descriptor.id).p50_ms
        return descriptor.baseline_latency_ms

    # ------------------------------------------------------------------ #
    # Ranking and selection
    # ------------------------------------------------------------------ #

    def rank(
        self,
        candidates: list[ModelDescriptor],
        constraints: RoutingConstraints | None = None,
    ) -> list[ScoredModel]:
        """Order candidates best first.

        Candidates missing a required capability or below the minimum
        quality tier are removed outright. The
        rest are scored by a weighted sum of reliability, normalized cost
        and normalized latency; ties go to lower cost, then lower latency,
        then id.
        """
        constraints = constraints or RoutingConstraints()
        eligible = [
            c
            for c in candidates
            if c.supports(constraints.required_capabilities)
            and c.quality.meets(constraints.min_quality)
        ]
        if not eligible:
            return []

        costs = {m.id: self.estimate_cost(m, constraints) for m in eligible}
        latencies = {m.id: self.estimate_latency(m) for m in eligible}
        min_cost, max_cost = min(costs.values()), max(costs.values())
        min_lat, max_lat = min(latencies.values()), max(latencies.values())

        def normalize(value: float, low: float, high: float) -> float:
            return 0.0 if high == low else (value - low) / (high - low)

        s = self._settings
        scored: list[ScoredModel] = []
        for model in eligible:
            reliability = self._monitor.reliability(model.id)
            score = (
                s.score_weight_reliability * reliability
                + s.score_weight_cost * (1 - normalize(costs[model.id], min_cost, max_cost))
                + s.score_weight_latency * (1 - normalize(latencies[model.id], min_lat, max_lat))
            )
            scored.append(
                ScoredModel(
                    model=model,
                    score=round(score, 9),
                    estimated_cost=costs[model.id],
                    estimated_latency_ms=latencies[model.id],
                    reliability=reliability,
                )
            )

        scored.sort(
            key=lambda sm: (-sm.score, sm.estimated_cost, sm.estimated_latency_ms, sm.model.id)
        )
        return scored

    def fits(
        self,
        estimated_cost: float,
        constraints: RoutingConstraints | None,
        budget: RequestBudget | None,
    ) -> bool:
        """Whether a call of this estimated cost fits both limits right now."""
        if constraints is not None and constraints.max_cost is not None:
            if estimated_cost > constraints.max_cost:
                return False
        if budget is not None and estimated_cost > budget.remaining:
            return False
        return True

    def reserve(
        self,
        descriptor: ModelDescriptor,
        constraints: RoutingConstraints | None,
        budget: RequestBudget | None,
    ) -> Reservation | None:
        """Hold the estimated cost of one call on ``budget``.

        Returns None when the call does not fit. Without a budget the
        per-call cap is still enforced; a fitting call gets an unlimited
        reservation so callers can settle uniformly.
        """
        estimated = self.estimate_cost(descriptor, constraints)
        if not self.fits(estimated, constraints, None):
            return None
        target = budget if budget is not None else RequestBudget()
        return target.try_reserve(estimated, descriptor.id)

    def ensure_affordable(
        self,
        candidates: list[ModelDescriptor],
        constraints: RoutingConstraints | None,
        budget: RequestBudget | None,
    ) -> None:
        """Raise BudgetExceededError if no candidate fits. Holds nothing.

        Raises:
            BudgetExceededError: If every candidate's estimate exceeds the
                per-call cap or the remaining budget
        """
        if not candidates:
            return
        estimates = [self.estimate_cost(c, constraints) for c in candidates]
        if any(self.fits(e, constraints, budget) for e in estimates):
            return
        self._reject(min(estimates), constraints, budget)

    def select_optimal_model(
        self,
        candidates: list[ModelDescriptor],
        constraints: RoutingConstraints | None = None,
        budget: RequestBudget | None = None,
    ) -> Selection:
        """Pick the best-ranked candidate whose estimated cost fits.

        The chosen model's estimated cost is reserved on ``budget`` in the
        same step, so concurrent selections cannot jointly overspend.

        Raises:
            NoEligibleModelError: If no candidate has the required capabilities
                and minimum quality
            BudgetExceededError: If no eligible candidate fits the budget
        """
        ranked = self.rank(candidates, constraints)
        if not ranked:
            constraints = constraints or RoutingConstraints()
            message = (
                "No candidate model provides capabilities "
                f"{sorted(constraints.required_capabilities)}"
            )
            if constraints.min_quality is not None:
                message += f" at {constraints.min_quality.value} quality or better"
            raise NoEligibleModelError(message)

        index, reservation, rest = self.reserve_first(ranked, constraints, budget)
        scored = ranked[index]
        reason = (
            f"Selected {scored.model.id}: score {scored.score:.3f}, "
            f"estimated cost ${scored.estimated_cost:.6f}, "
            f"reliability {scored.reliability:.2f}"
        )
        if index > 0:
            reason += f"; {index} higher-ranked model(s) exceeded the budget"
        log.debug(
            "cost_optimizer.model_selected",
            model_id=scored.model.id,
            score=scored.score,
            estimated_cost=scored.estimated_cost,
            skipped=index,
        )
        return Selection(
            model=scored.model,
            reason=reason,
            score=scored.score,
            estimated_cost=scored.estimated_cost,
            alternatives=[sm.model for sm in rest],
            reservation=reservation,
        )

    def reserve_first(
        self,
        ordered: list[ScoredModel],
        constraints: RoutingConstraints | None,
        budget: RequestBudget | None,
    ) -> tuple[int, Reservation, list[ScoredModel]]:
        """Reserve the first candidate, in the given order, whose cost fits.

        Args:
            ordered: Non-empty candidates in preference order
            constraints: Per-call cap and token estimates
            budget: Per-request budget to reserve on

        Returns:
            Index of the reserved candidate in ``ordered``, its reservation,
            and the other candidates that fitted before the reservation was
            taken, in order

        Raises:
            BudgetExceededError: If no candidate fits, or concurrent
                reservations used the budget up first
        """
        affordable = [
            index
            for index, sm in enumerate(ordered)
            if self.fits(sm.estimated_cost, constraints, budget)
        ]
        for index in affordable:
            reservation = self.reserve(ordered[index].model, constraints, budget)
            if reservation is not None:
                rest = [ordered[i] for i in affordable if i != index]
                return index, reservation, rest
        self._reject(min(sm.estimated_cost for sm in ordered), constraints, budget)

    def _reject(
        self,
        cheapest: float,
        constraints: RoutingConstraints | None,
        budget: RequestBudget | None,
    ) -> NoReturn:
        remaining = budget.remaining if budget is not None else None
        budget_rejections_total.inc()
        log.warning(
            "cost_optimizer.budget_exceeded",
            cheapest_estimate=cheapest,
            remaining=remaining,
            max_cost=constraints.max_cost if constraints else None,
        )
        raise BudgetExceededError(
            f"No candidate fits the budget: cheapest estimate ${cheapest:.6f}, "
            f"remaining {'unlimited' if remaining is None else f'${remaining:.6f}'}",
            remaining=remaining,
            cheapest_estimate=cheapest,
        )

    # ------------------------------------------------------------------ #
    # Usage tracking and reporting
    # ------------------------------------------------------------------ #

    def track_usage(self, model_id: str, input_tokens: int, output_tokens: int) -> float:
        """Charge a finished call to the ledger.

        Returns:
            Actual cost of the call in USD
        """
        descriptor = self._registry.lookup(model_id)
        cost = descriptor.cost_for(input_tokens, output_tokens)
        self._ledger.record(model_id, input_tokens, output_tokens, cost)
        return cost

    def create_fallback_chain(self, primary_id: str) -> list[str]:
        """Ordered alternatives for a primary model, primary first.

        Primary, then the cheapest same-quality model from another provider,
        then the best cheaper model, then reliable low-cost models until the
        chain reaches the configured minimum length.
        """
        primary = self._registry.lookup(primary_id)
        models = self._registry.list_models()

        def unit_cost(m: ModelDescriptor) -> float:
            return m.estimate_cost(700, 300)

        chain = [primary.id]

        same_quality = sorted(
            (
                m
                for m in models
                if m.id != primary.id
                and m.quality == primary.quality
                and m.provider != primary.provider
            ),
            key=lambda m: (unit_cost(m), m.id),
        )
        if same_quality:
            chain.append(same_quality[0].id)

        cheaper = sorted(
            (m for m in models if m.id not in chain and unit_cost(m) < unit_cost(primary)),
            key=lambda m: (-m.quality.rank, unit_cost(m), m.id),
        )
        if cheaper:
            chain.append(cheaper[0].id)

        minimum = self._settings.min_fallback_chain_length
        for model_id in self.RELIABLE_FALLBACKS:
            if model_id in chain or model_id not in self._registry:
                continue
            # the first reliable fallback is always appended
            if len(chain) >= minimum and model_id != self.RELIABLE_FALLBACKS[0]:
                break
            chain.append(model_id)

        for m in sorted(models, key=lambda m: (unit_cost(m), m.id)):
            if len(chain) >= minimum:
                break
            if m.id not in chain:
                chain.append(m.id)

        return chain

    def get_cost_report(self) -> CostReport:
        entries = self._ledger.by_model()
        total_cost = sum(e.cost for e in entries.values())
        total_tokens = sum(e.total_tokens for e in entries.values())

        by_model: dict[str, ModelCost] = {}
        by_provider: dict[str, float] = {}
        for model_id, entry in entries.items():
            by_model[model_id] = ModelCost(
                tokens=entry.total_tokens,
                cost=entry.cost,
                calls=entry.calls,
                percentage=(entry.cost / total_cost * 100) if total_cost > 0 else 0.0,
            )
            descriptor = self._registry.get(model_id)
            provider = descriptor.provider if descriptor else model_id.split("/")[0]
            by_provider[provider] = by_provider.get(provider, 0.0) + entry.cost

        recommendations: list[str] = []
        if total_cost > self.HIGH_SPEND_USD:
            recommendations.append("Consider using more cost-effective models for simple tasks")
        concentrated = [m for m, c in by_model.items() if c.percentage > self.CONCENTRATION_PCT]
        if concentrated:
            recommendations.append(
                f"High concentration of costs in: {', '.join(concentrated)}. "
                "Consider diversifying."
            )

        return CostReport(
            total_cost=total_cost,
            total_tokens=total_tokens,
            by_model=by_model,
            by_provider=by_provider,
            recommendations=recommendations,
        )
