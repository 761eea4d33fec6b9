"""Specialist routing: the router's single best model serves the request.

The request is classified (unless a task type is given), routed, and served
by the primary with its fallback chain. Ranking is deterministic, so
identical inputs with unchanged history select the same primary.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from modelmesh.agent.model_router.classifier import classify_task
from modelmesh.orchestration.types import (
    AttemptState,
    InvocationResult,
    OrchestrationOptions,
    OrchestrationRun,
    Role,
    Strategy,
)

if TYPE_CHECKING:
    from modelmesh.agent.model_router.registry import ModelDescriptor
    from modelmesh.orchestration.strategies.base import StrategyContext


async def run_specialist(
    candidates: list[ModelDescriptor],
    prompt: str,
    options: OrchestrationOptions,
    ctx: StrategyContext,
) -> OrchestrationRun:
    run = OrchestrationRun(strategy=Strategy.SPECIALIST, prompt=prompt)

    decision = ctx.decision
    if decision is None:
        task_type = options.task_type or classify_task(prompt)
        constraints = ctx.constraints_for(options, prompt, models=tuple(c.id for c in candidates))
        decision = ctx.router.route(task_type, constraints, ctx.budget)
    run.metadata.routing_reasoning = decision.reasoning
    run.note(decision.reasoning, options.include_reasoning)

    record = run.begin_round("specialist")
    outcome = await ctx.invoke_chain(
        decision.chain, prompt, options, Role.PARTICIPANT, first_reservation=decision.reservation
    )
    for attempt in outcome.attempts:
        run.record(attempt)
        record.results.append(attempt)

    if outcome.result is None:
        if outcome.attempts:
            for attempt in outcome.attempts:
                run.record_failure(attempt)
        else:
            run.record_failure(
                InvocationResult(
                    model_id=decision.primary.id,
                    role=Role.PARTICIPANT,
                    state=AttemptState.FAILED,
                    error_message=outcome.error,
                )
            )
        raise ctx.fail(run, outcome.error or "Specialist chain failed")

    run.complete_round()
    run.responses.append(outcome.result)
    if outcome.result.model_id != decision.primary.id:
        run.note(
            f"{decision.primary.id} failed; served by fallback {outcome.result.model_id}",
            options.include_reasoning,
        )
    return ctx.finish(run, outcome.result.text)
