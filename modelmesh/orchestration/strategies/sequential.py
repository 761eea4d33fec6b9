"""Sequential refinement: each stage refines the previous stage's output.

Stages run in strict order. A stage that fails after exhausting its
fallbacks stops the pipeline: the run keeps the completed stages, records
the failed stage and sets ``run.error``; later stages never execute.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import structlog

from modelmesh.orchestration.prompts import refine_prompt
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

log = structlog.get_logger(__name__)


async def run_sequential(
    candidates: list[ModelDescriptor],
    prompt: str,
    options: OrchestrationOptions,
    ctx: StrategyContext,
) -> OrchestrationRun:
    run = OrchestrationRun(strategy=Strategy.SEQUENTIAL, prompt=prompt)
    stages = ctx.participants(candidates, options)
    spares = [c for c in candidates if c not in stages]

    run.begin_round("stages")
    previous: str | None = None
    for index, stage_model in enumerate(stages):
        stage_prompt = prompt if previous is None else refine_prompt(previous, prompt)
        outcome = await ctx.invoke_chain([stage_model, *spares], stage_prompt, options, Role.STAGE)
        for attempt in outcome.attempts:
            run.record(attempt)
            run.rounds[0].results.append(attempt)

        if outcome.result is None:
            failed = (
                outcome.attempts[-1]
                if outcome.attempts
                else InvocationResult(
                    model_id=stage_model.id,
                    role=Role.STAGE,
                    state=AttemptState.FAILED,
                    error_message=outcome.error,
                )
            )
            run.record_failure(failed, stage=index)
            run.error = f"Stage {index + 1} ({stage_model.id}) failed: {outcome.error}"
            run.note(
                f"Stage {index + 1} failed; stopping after {len(run.responses)} stage(s)",
                options.include_reasoning,
            )
            log.warning(
                "sequential.stage_failed",
                stage=index + 1,
                model_id=stage_model.id,
                completed=len(run.responses),
            )
            break

        run.responses.append(outcome.result)
        previous = outcome.result.text
        run.note(
            f"Stage {index + 1}: {outcome.result.model_id} "
            + ("answered the prompt" if index == 0 else "refined the previous output"),
            options.include_reasoning,
        )

    if not run.responses:
        raise ctx.fail(run, run.error or "Sequential pipeline produced no output")

    run.complete_round()
    return ctx.finish(run, run.responses[-1].text)
