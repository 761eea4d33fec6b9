"""Fallback chain for resilient model execution.

The FallbackChain invokes models in order until one succeeds. Each model
gets its own deadline and its own budget reservation; a model whose
estimated cost no longer fits the remaining budget is skipped without a
provider call.

Fallback strategy:
1. Try the primary (optionally with a reservation made at routing time)
2. On failure (retries exhausted), try the next model in the chain
3. Continue until success or exhaustion
4. If every model fails, raise AllModelsFailedError carrying every failure
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import structlog

from modelmesh.errors import AllModelsFailedError, BudgetExceededError
from modelmesh.orchestration.types import InvocationResult, Role

if TYPE_CHECKING:
    from modelmesh.agent.invocation import Invoker
    from modelmesh.agent.model_router.budget import CostOptimizer, RequestBudget, Reservation
    from modelmesh.agent.model_router.constraints import RoutingConstraints
    from modelmesh.agent.model_router.registry import ModelDescriptor

log = structlog.get_logger(__name__)


class FallbackChain:
    """Executes one request against an ordered list of models."""

    def __init__(
        self,
        invoker: Invoker,
        optimizer: CostOptimizer,
        models: list[ModelDescriptor],
    ) -> None:
        """Initialize fallback chain with ordered models.

        Args:
            invoker: Invocation primitive
            optimizer: Cost optimizer used to reserve budget per fallback
            models: Models in priority order (preferred first)
        """
        if not models:
            raise ValueError("FallbackChain requires at least one model")

        self._invoker = invoker
        self._optimizer = optimizer
        self._models = models
        self._fallback_events: list[dict[str, Any]] = []

    @property
    def model_ids(self) -> list[str]:
        return [m.id for m in self._models]

    async def execute(
        self,
        prompt: str,
        *,
        constraints: RoutingConstraints | None = None,
        budget: RequestBudget | None = None,
        first_reservation: Reservation | None = None,
        timeout_seconds: float | None = None,
        tool: str = "direct",
        role: Role = Role.DIRECT,
        deep_reasoning: bool = False,
    ) -> tuple[InvocationResult, list[InvocationResult]]:
        """Invoke models in order until one succeeds.

        Args:
            prompt: Prompt text
            constraints: Per-call cost cap and temperature
            budget: Request budget to reserve each attempt's estimated cost on
            first_reservation: Reservation already held for the first model
            timeout_seconds: Per-model deadline
            tool: Calling tool name
            role: Role recorded on each InvocationResult
            deep_reasoning: Prefix prompts with a step-by-step preamble

        Returns:
            Tuple of (successful result, every result in attempt order)

        Raises:
            AllModelsFailedError: If every attempted model failed
            BudgetExceededError: If no model in the chain fit the budget
        """
        temperature = constraints.temperature if constraints is not None else 0.7
        results: list[InvocationResult] = []
        skipped: list[str] = []

        for position, model in enumerate(self._models):
            if position == 0 and first_reservation is not None:
                reservation = first_reservation
            else:
                reservation = self._optimizer.reserve(model, constraints, budget)
            if reservation is None:
                skipped.append(model.id)
                log.info("fallback_chain.model_skipped_budget", model_id=model.id)
                continue

            result = await self._invoker.invoke(
                model.id,
                prompt,
                temperature=temperature,
                deadline=self._invoker.new_deadline(timeout_seconds),
                tool=tool,
                role=role,
                reservation=reservation,
                deep_reasoning=deep_reasoning,
            )
            results.append(result)

            if result.success:
                if position > 0:
                    log.info(
                        "fallback_chain.fallback_succeeded",
                        model_id=model.id,
                        preferred=self._models[0].id,
                        failed=[r.model_id for r in results if not r.success],
                    )
                return result, results

            self._fallback_events.append(
                {
                    "model_id": model.id,
                    "error_kind": result.error.value if result.error else None,
                    "error_message": result.error_message,
                }
            )
            log.warning(
                "fallback_chain.model_failed",
                model_id=model.id,
                error_kind=result.error.value if result.error else None,
                remaining_models=len(self._models) - position - 1,
            )

        if not results:
            raise BudgetExceededError(
                f"No model in the chain fit the budget: skipped {', '.join(skipped)}",
                remaining=budget.remaining if budget is not None else None,
            )

        log.error(
            "fallback_chain.all_models_failed",
            attempted=[r.model_id for r in results],
            skipped=skipped,
        )
        raise AllModelsFailedError(
            f"All {len(results)} attempted model(s) failed: "
            + "; ".join(f"{r.model_id}: {r.error_message}" for r in results),
            failures=results,
        )

    def get_fallback_events(self) -> list[dict[str, Any]]:
        return self._fallback_events.copy()

    def reset_events(self) -> None:
        """Clear fallback event history. Used for testing."""
        self._fallback_events.clear()
