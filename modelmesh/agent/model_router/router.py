"""Model router - capability, latency and budget aware model selection.

For a task type and a set of constraints the router:
1. Derives required capabilities from the task type plus explicit ones
2. Narrows the registry by override/exclude lists, minimum quality and
   context window
3. Drops models that cannot meet the latency ceiling (unless none can)
4. Ranks the rest with the CostOptimizer
5. Moves models with a high observed error rate to the end
6. Drops models that do not fit the budget and reserves the primary's cost
7. Pads the fallback chain with the optimizer's fallback alternatives

The result is a primary model plus an ordered fallback chain, with a
human-readable explanation of every constraint that narrowed the choice.
"""

from __future__ import annotations

from collections import Counter, deque
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

import structlog

from modelmesh.agent.model_router.classifier import TaskType, required_capabilities
from modelmesh.agent.model_router.constraints import RoutingConstraints
from modelmesh.errors import NoEligibleModelError

if TYPE_CHECKING:
    from modelmesh.agent.model_router.budget import CostOptimizer, RequestBudget, Reservation
    from modelmesh.agent.model_router.metrics import PerformanceMonitor
    from modelmesh.agent.model_router.registry import ModelDescriptor, ModelRegistry
    from modelmesh.config import Settings

log = structlog.get_logger(__name__)

LATENCY_NOT_MET = " (latency constraint could not be met)"


@dataclass
class Eligibility:
    """Models that pass the hard routing filters, before ranking.

    Attributes:
        candidates: Eligible models in registry order
        capabilities: Task-derived plus explicitly required capability tags
        needed_context: Context window every candidate must offer
        notes: Which constraints narrowed the candidates
        latency_unmet: True when no candidate meets the latency ceiling and
            the ceiling was therefore ignored
    """

    candidates: list[ModelDescriptor]
    capabilities: frozenset[str]
    needed_context: int
    notes: list[str]
    latency_unmet: bool = False


@dataclass
class RoutingDecision:
    """Outcome of ModelRouter.route.

    Attributes:
        primary: Best model for the request
        fallback_chain: Ordered alternatives tried when the primary fails
        reasoning: Why the primary was chosen and what narrowed the candidates
        estimated_cost: Estimated USD cost of one call to the primary
        estimated_latency_ms: Expected latency of the primary
        task_type: Task type the decision was made for
        reservation: Budget hold for the primary's estimated cost
    """

    primary: ModelDescriptor
    fallback_chain: list[ModelDescriptor]
    reasoning: str
    estimated_cost: float
    estimated_latency_ms: float
    task_type: TaskType = TaskType.GENERAL
    reservation: Reservation | None = field(default=None, repr=False)

    @property
    def chain(self) -> list[ModelDescriptor]:
        return [self.primary, *self.fallback_chain]

    @property
    def model_ids(self) -> list[str]:
        return [m.id for m in self.chain]


@dataclass
class RoutingInsights:
    total_decisions: int
    model_usage: dict[str, int]
    task_types: dict[str, int]
    recommendations: list[str]


class ModelRouter:
    """Selects a primary model and fallback chain for each request."""

    DIVERSIFY_SHARE = 0.7

    def __init__(
        self,
        registry: ModelRegistry,
        optimizer: CostOptimizer,
        monitor: PerformanceMonitor,
        settings: Settings,
    ) -> None:
        self._registry = registry
        self._optimizer = optimizer
        self._monitor = monitor
        self._settings = settings
        self._history: deque[tuple[str, str]] = deque(maxlen=settings.routing_history_size)

    @property
    def optimizer(self) -> CostOptimizer:
        return self._optimizer

    def eligible(
        self,
        task_type: TaskType | str = TaskType.GENERAL,
        constraints: RoutingConstraints | None = None,
    ) -> Eligibility:
        """Narrow the registry to models that can serve the request at all.

        Applies the capability, override, exclusion, quality, context window
        and latency filters. Models are not ranked or reserved.

        Raises:
            ModelNotFoundError: If an override model is not registered
            NoEligibleModelError: If no model satisfies the capability,
                override, quality or context constraints
        """
        task_type = TaskType(task_type)
        constraints = constraints or RoutingConstraints()
        notes: list[str] = [f"{task_type.value} task"]

        caps = required_capabilities(task_type, constraints.context_length)
        caps = caps | constraints.required_capabilities
        candidates = self._registry.by_capability(caps)
        if caps:
            notes.append(f"requires {', '.join(sorted(caps))}")

        if constraints.models is not None:
            wanted = [self._registry.lookup(model_id).id for model_id in constraints.models]
            candidates = [c for c in candidates if c.id in wanted]
            notes.append(f"restricted to {', '.join(wanted)}")

        if constraints.exclude_models:
            before = len(candidates)
            candidates = [c for c in candidates if c.id not in constraints.exclude_models]
            if len(candidates) < before:
                notes.append(f"excluded {', '.join(sorted(constraints.exclude_models))}")

        if constraints.min_quality is not None:
            before = len(candidates)
            candidates = [c for c in candidates if c.quality.meets(constraints.min_quality)]
            if len(candidates) < before:
                notes.append(f"quality at least {constraints.min_quality.value}")

        needed_context = max(constraints.estimated_input_tokens or 0, constraints.context_length)
        if needed_context:
            before = len(candidates)
            candidates = [c for c in candidates if c.context_window >= needed_context]
            if len(candidates) < before:
                notes.append(f"needs a {needed_context}-token context window")

        if not candidates:
            log.warning(
                "model_router.no_eligible_models",
                task_type=task_type.value,
                capabilities=sorted(caps),
                min_quality=constraints.min_quality,
            )
            raise NoEligibleModelError(
                f"No registered model satisfies the constraints for a {task_type.value} task"
            )

        latency_unmet = False
        if constraints.max_latency_ms is not None:
            fast = [
                c
                for c in candidates
                if self._optimizer.estimate_latency(c) <= constraints.max_latency_ms
            ]
            if fast:
                if len(fast) < len(candidates):
                    notes.append(f"latency under {constraints.max_latency_ms:.0f}ms")
                candidates = fast
            else:
                latency_unmet = True

        return Eligibility(
            candidates=candidates,
            capabilities=caps,
            needed_context=needed_context,
            notes=notes,
            latency_unmet=latency_unmet,
        )

    def route(
        self,
        task_type: TaskType | str = TaskType.GENERAL,
        constraints: RoutingConstraints | None = None,
        budget: RequestBudget | None = None,
    ) -> RoutingDecision:
        """Choose a primary model and fallback chain.

        Args:
            task_type: Kind of task being served
            constraints: Cost/latency/capability limits
            budget: Per-request budget; the primary's estimated cost is
                reserved on it

        Returns:
            RoutingDecision with primary, fallbacks and reasoning

        Raises:
            ModelNotFoundError: If an override model is not registered
            NoEligibleModelError: If no model satisfies the capability,
                override, quality or context constraints
            BudgetExceededError: If no eligible model fits the budget
        """
        task_type = TaskType(task_type)
        constraints = constraints or RoutingConstraints()
        eligibility = self.eligible(task_type, constraints)
        caps = eligibility.capabilities
        notes = eligibility.notes

        ranked = self._optimizer.rank(
            eligibility.candidates,
            constraints.model_copy(update={"required_capabilities": caps}),
        )

        healthy = [sm for sm in ranked if not self._is_degraded(sm.model.id)]
        degraded = [sm for sm in ranked if self._is_degraded(sm.model.id)]
        if degraded:
            notes.append(
                f"deprioritized high error rate {', '.join(sm.model.id for sm in degraded)}"
            )
        ordered = healthy + degraded

        index, reservation, rest = self._optimizer.reserve_first(ordered, constraints, budget)
        primary = ordered[index]
        if len(rest) + 1 < len(ordered):
            notes.append("within budget")

        chain = [sm.model for sm in rest]
        self._pad_chain(
            primary.model, chain, caps, eligibility.needed_context, constraints, budget
        )

        reasoning = f"Selected {primary.model.id} because: {', '.join(notes)}"
        if eligibility.latency_unmet:
            reasoning += LATENCY_NOT_MET

        self._history.append((primary.model.id, task_type.value))
        log.info(
            "model_router.route_selected",
            task_type=task_type.value,
            model_id=primary.model.id,
            fallbacks=[m.id for m in chain],
            estimated_cost=primary.estimated_cost,
            candidate_count=len(ranked),
        )

        return RoutingDecision(
            primary=primary.model,
            fallback_chain=chain,
            reasoning=reasoning,
            estimated_cost=primary.estimated_cost,
            estimated_latency_ms=primary.estimated_latency_ms,
            task_type=task_type,
            reservation=reservation,
        )

    def _is_degraded(self, model_id: str) -> bool:
        if not self._monitor.has_enough_samples(model_id):
            return False
        stats = self._monitor.get_stats(model_id)
        return stats.error_rate >= self._settings.error_rate_deprioritize_threshold

    def _pad_chain(
        self,
        primary: ModelDescriptor,
        chain: list[ModelDescriptor],
        caps: frozenset[str],
        needed_context: int,
        constraints: RoutingConstraints,
        budget: RequestBudget | None,
    ) -> None:
        """Extend ``chain`` in place with fallback alternatives.

        Padding models pass the capability, exclusion, quality, context
        window and budget filters but not the latency ceiling.
        """
        minimum = self._settings.min_fallback_chain_length
        if constraints.models is not None or len(chain) + 1 >= minimum:
            return
        used = {primary.id, *(m.id for m in chain)}
        for model_id in self._optimizer.create_fallback_chain(primary.id)[1:]:
            if len(chain) + 1 >= minimum:
                break
            model = self._registry.get(model_id)
            if model is None or model.id in used or model.id in constraints.exclude_models:
                continue
            if not model.supports(caps) or model.context_window < needed_context:
                continue
            if not model.quality.meets(constraints.min_quality):
                continue
            estimated = self._optimizer.estimate_cost(model, constraints)
            if not self._optimizer.fits(estimated, constraints, budget):
                continue
            chain.append(model)
            used.add(model.id)

    def get_routing_insights(self) -> RoutingInsights:
        history = list(self._history)
        usage = Counter(model_id for model_id, _ in history)
        task_types = Counter(task for _, task in history)
        recommendations: list[str] = []
        if usage:
            model_id, count = usage.most_common(1)[0]
            if count > len(history) * self.DIVERSIFY_SHARE:
                recommendations.append(
                    f"Consider diversifying model usage. {model_id} used {count} times."
                )
        return RoutingInsights(
            total_decisions=len(history),
            model_usage=dict(usage),
            task_types=dict(task_types),
            recommendations=recommendations,
        )

    def clear_history(self) -> None:
        """Clear routing history. Used for testing."""
        self._history.clear()
