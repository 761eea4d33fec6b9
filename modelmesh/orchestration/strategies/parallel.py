"""Parallel fan-out: the same prompt to every participant, then synthesis."""

from __future__ import annotations

from typing import TYPE_CHECKING

from modelmesh.orchestration.prompts import synthesis_prompt
from modelmesh.orchestration.types import OrchestrationOptions, OrchestrationRun, Role, Strategy

if TYPE_CHECKING:
    from modelmesh.agent.model_router.registry import ModelDescriptor
    from modelmesh.orchestration.strategies.base import StrategyContext


async def run_parallel(
    candidates: list[ModelDescriptor],
    prompt: str,
    options: OrchestrationOptions,
    ctx: StrategyContext,
) -> OrchestrationRun:
    """Fan out, then synthesize two or more answers; a lone answer stands as is."""
    run = OrchestrationRun(strategy=Strategy.PARALLEL, prompt=prompt)
    participants = ctx.participants(candidates, options)

    record = run.begin_round("answer")
    results = await ctx.fan_out(
        run, record, participants, [prompt] * len(participants), options, Role.PARTICIPANT
    )
    successes = [r for r in results if r.success]
    run.responses.extend(successes)
    run.note(
        f"{len(successes)} of {len(participants)} participants answered",
        options.include_reasoning,
    )

    if not successes:
        raise ctx.fail(run, f"All {len(participants)} parallel participants failed")
    run.complete_round()

    if len(successes) == 1:
        return ctx.finish(run, successes[0].text)

    text = await ctx.synthesize(
        run,
        synthesis_prompt(prompt, [(r.model_id, r.text) for r in successes]),
        successes,
        options,
    )
    return ctx.finish(run, text)
