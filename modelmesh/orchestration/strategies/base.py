"""Shared context and helpers for orchestration strategies.

A strategy is a plain async function

    async def run_x(candidates, prompt, options, ctx) -> OrchestrationRun

looked up in the STRATEGIES table. ``candidates`` are the models the
orchestrator selected (explicit override in caller order, or the router's
primary plus fallbacks). ``ctx`` bundles the invocation primitive, router
and shared routing state, plus the per-request budget.

Every strategy drives the run's state machine:
INIT -> ROUND_IN_PROGRESS -> ROUND_COMPLETE -> ... -> [SYNTHESIZING] -> DONE
and marks FAILED before raising when no usable result exists.
"""

from __future__ import annotations

import asyncio
import itertools
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from difflib import SequenceMatcher
from typing import TYPE_CHECKING

import structlog

from modelmesh.agent.fallback import FallbackChain
from modelmesh.agent.model_router.constraints import RoutingConstraints, estimate_tokens
from modelmesh.config import VotingRule
from modelmesh.errors import AllModelsFailedError, BudgetExceededError
from modelmesh.orchestration.types import (
    AttemptState,
    InvocationResult,
    OrchestrationOptions,
    OrchestrationRun,
    Role,
    RoundRecord,
    StrategyState,
)

if TYPE_CHECKING:
    from modelmesh.agent.invocation import Invoker
    from modelmesh.agent.model_router.budget import CostOptimizer, RequestBudget, Reservation
    from modelmesh.agent.model_router.metrics import PerformanceMonitor
    from modelmesh.agent.model_router.registry import ModelDescriptor, ModelRegistry
    from modelmesh.agent.model_router.router import ModelRouter, RoutingDecision
    from modelmesh.config import Settings

log = structlog.get_logger(__name__)

OVER_BUDGET = "estimated cost exceeds the remaining budget"


@dataclass
class ChainOutcome:
    """Result of invoking a fallback chain from inside a strategy."""

    result: InvocationResult | None
    attempts: list[InvocationResult]
    error: str | None = None


@dataclass
class StrategyContext:
    """Collaborators and per-request state shared by all strategies.

    Attributes:
        invoker: Invocation primitive
        router: Model router (hierarchical subtasks, specialist routing)
        optimizer: Cost optimizer for per-call reservations
        registry: Model registry
        monitor: Performance monitor (reliability weights)
        settings: Strategy defaults
        budget: Per-request budget
        tool: Calling tool name, for per-tool metrics
        explicit_models: True when the caller named the models
        decision: Router decision that produced the candidates, if any
    """

    invoker: Invoker
    router: ModelRouter
    optimizer: CostOptimizer
    registry: ModelRegistry
    monitor: PerformanceMonitor
    settings: Settings
    budget: RequestBudget
    tool: str = "orchestrate"
    explicit_models: bool = False
    decision: RoutingDecision | None = None

    # ------------------------------------------------------------------ #
    # Resolved knobs
    # ------------------------------------------------------------------ #

    def participants(
        self, candidates: list[ModelDescriptor], options: OrchestrationOptions
    ) -> list[ModelDescriptor]:
        """Fan-out participants: every explicit model, or the top router candidates."""
        if self.explicit_models:
            return list(candidates)
        return candidates[: options.fanout or self.settings.default_fanout]

    def max_rounds(self, options: OrchestrationOptions) -> int:
        return options.max_rounds or self.settings.default_max_rounds

    def convergence_threshold(self, options: OrchestrationOptions) -> float:
        if options.convergence_threshold is not None:
            return options.convergence_threshold
        return self.settings.debate_convergence_threshold

    def voting(self, options: OrchestrationOptions) -> VotingRule:
        return options.voting or self.settings.consensus_voting

    def max_depth(self, options: OrchestrationOptions) -> int:
        return options.max_depth or self.settings.hierarchical_max_depth

    def constraints_for(
        self,
        options: OrchestrationOptions,
        prompt: str,
        models: tuple[str, ...] | None = None,
    ) -> RoutingConstraints:
        return options.constraints(estimated_input_tokens=estimate_tokens(prompt), models=models)

    # ------------------------------------------------------------------ #
    # Invocation helpers
    # ------------------------------------------------------------------ #

    async def invoke_one(
        self,
        model: ModelDescriptor,
        prompt: str,
        options: OrchestrationOptions,
        role: Role,
    ) -> InvocationResult:
        """Invoke a single model without substitution.

        A model whose estimated cost does not fit the budget is not called;
        a failed result is returned instead.
        """
        constraints = self.constraints_for(options, prompt)
        reservation = self.optimizer.reserve(model, constraints, self.budget)
        if reservation is None:
            log.info("strategy.participant_skipped_budget", model_id=model.id, role=role.value)
            return InvocationResult(
                model_id=model.id,
                role=role,
                state=AttemptState.FAILED,
                error_message=OVER_BUDGET,
            )
        return await self.invoker.invoke(
            model.id,
            prompt,
            temperature=options.temperature,
            deadline=self.invoker.new_deadline(options.timeout_seconds),
            tool=self.tool,
            role=role,
            reservation=reservation,
            deep_reasoning=options.use_deep_reasoning,
        )

    async def invoke_chain(
        self,
        models: Sequence[ModelDescriptor],
        prompt: str,
        options: OrchestrationOptions,
        role: Role,
        first_reservation: Reservation | None = None,
    ) -> ChainOutcome:
        """Invoke models in fallback order until one succeeds."""
        chain = FallbackChain(self.invoker, self.optimizer, list(models))
        try:
            result, attempts = await chain.execute(
                prompt,
                constraints=self.constraints_for(options, prompt),
                budget=self.budget,
                first_reservation=first_reservation,
                timeout_seconds=options.timeout_seconds,
                tool=self.tool,
                role=role,
                deep_reasoning=options.use_deep_reasoning,
            )
        except AllModelsFailedError as exc:
            return ChainOutcome(result=None, attempts=exc.failures, error=str(exc))
        except BudgetExceededError as exc:
            return ChainOutcome(result=None, attempts=[], error=str(exc))
        return ChainOutcome(result=result, attempts=attempts)

    async def fan_out(
        self,
        run: OrchestrationRun,
        record: RoundRecord,
        models: Sequence[ModelDescriptor],
        prompts: Sequence[str],
        options: OrchestrationOptions,
        role: Role,
    ) -> list[InvocationResult]:
        """Invoke every model concurrently and wait for all of them to settle.

        Results are recorded on the run and the round in participant order;
        failed participants are annotated, never substituted.
        """
        results = await asyncio.gather(
            *(self.invoke_one(m, p, options, role) for m, p in zip(models, prompts))
        )
        for result in results:
            run.record(result)
            record.results.append(result)
            if not result.success:
                run.record_failure(result)
        return list(results)

    async def synthesize(
        self,
        run: OrchestrationRun,
        prompt: str,
        sources: Sequence[InvocationResult],
        options: OrchestrationOptions,
    ) -> str:
        """Combine successful responses with one synthesis call.

        The synthesizer is ``options.synthesis_model`` if set, else the first
        successful participant, falling back through the other participants.
        If every synthesis attempt fails the first source's text is used.
        """
        run.transition(StrategyState.SYNTHESIZING)
        models: list[ModelDescriptor] = []
        if options.synthesis_model:
            models.append(self.registry.lookup(options.synthesis_model))
        for source in sources:
            descriptor = self.registry.lookup(source.model_id)
            if descriptor not in models:
                models.append(descriptor)

        synthesis_options = options.model_copy(
            update={"temperature": self.settings.synthesis_temperature}
        )
        outcome = await self.invoke_chain(models, prompt, synthesis_options, Role.SYNTHESIS)
        for attempt in outcome.attempts:
            run.record(attempt)

        if outcome.result is None:
            log.warning("strategy.synthesis_failed", strategy=run.strategy.value, error=outcome.error)
            if outcome.attempts:
                run.record_failure(outcome.attempts[-1])
            run.note(
                f"Synthesis failed; using {sources[0].model_id}'s answer",
                options.include_reasoning,
            )
            return sources[0].text

        run.note(
            f"Synthesized {len(sources)} responses with {outcome.result.model_id}",
            options.include_reasoning,
        )
        return outcome.result.text

    # ------------------------------------------------------------------ #
    # Terminal transitions
    # ------------------------------------------------------------------ #

    @staticmethod
    def finish(run: OrchestrationRun, text: str) -> OrchestrationRun:
        run.final_text = text
        run.transition(StrategyState.DONE)
        return run

    @staticmethod
    def fail(run: OrchestrationRun, message: str) -> AllModelsFailedError:
        """Mark the run FAILED and build the error to raise."""
        run.transition(StrategyState.FAILED)
        run.error = message
        return AllModelsFailedError(
            message,
            failures=[r for r in run.invocations if not r.success],
            run=run,
        )


StrategyFn = Callable[
    [list["ModelDescriptor"], str, OrchestrationOptions, StrategyContext],
    Awaitable[OrchestrationRun],
]


# ------------------------------------------------------------------ #
# Text similarity
# ------------------------------------------------------------------ #


def _normalize(text: str) -> str:
    return " ".join(text.lower().split())


def similarity(a: str, b: str) -> float:
    """Similarity ratio in [0, 1] of two texts, ignoring case and whitespace."""
    return SequenceMatcher(None, _normalize(a), _normalize(b)).ratio()


def mean_pairwise_similarity(texts: Sequence[str]) -> float:
    """Mean similarity over all pairs; a single text is trivially converged."""
    pairs = list(itertools.combinations(texts, 2))
    if not pairs:
        return 1.0
    return sum(similarity(a, b) for a, b in pairs) / len(pairs)
