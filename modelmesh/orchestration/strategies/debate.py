"""Debate: participants critique and refine each other's positions over rounds.

Round 1 is a parallel fan-out of the original prompt. In each later round,
every participant that answered the previous round receives all of that
round's answers and refines its position. Rounds are barriers: the next
round's prompts are built only after every participant has settled.

The debate stops at ``max_rounds`` or as soon as the mean pairwise
similarity of a round's answers reaches the convergence threshold. The
final round's answers are synthesized into a conclusion.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import structlog

from modelmesh.orchestration.prompts import debate_conclusion_prompt, debate_prompt
from modelmesh.orchestration.strategies.base import mean_pairwise_similarity
from modelmesh.orchestration.types import OrchestrationOptions, OrchestrationRun, Role, Strategy

if TYPE_CHECKING:
    from modelmesh.agent.model_router.registry import ModelDescriptor
    from modelmesh.orchestration.strategies.base import StrategyContext

log = structlog.get_logger(__name__)


async def run_debate(
    candidates: list[ModelDescriptor],
    prompt: str,
    options: OrchestrationOptions,
    ctx: StrategyContext,
) -> OrchestrationRun:
    run = OrchestrationRun(strategy=Strategy.DEBATE, prompt=prompt)
    participants = ctx.participants(candidates, options)
    max_rounds = ctx.max_rounds(options)
    threshold = ctx.convergence_threshold(options)

    record = run.begin_round("opening")
    results = await ctx.fan_out(
        run, record, participants, [prompt] * len(participants), options, Role.PARTICIPANT
    )
    current = [r for r in results if r.success]
    if not current:
        raise ctx.fail(run, f"All {len(participants)} debate participants failed")
    run.complete_round()
    run.responses.extend(current)
    record.similarity = mean_pairwise_similarity([r.text for r in current])

    while (
        len(run.rounds) < max_rounds
        and len(current) >= 2
        and record.similarity is not None
        and record.similarity < threshold
    ):
        previous = [(r.model_id, r.text) for r in current]
        speakers = [ctx.registry.lookup(r.model_id) for r in current]

        record = run.begin_round("rebuttal")
        round_prompt = debate_prompt(prompt, previous, record.index + 1)
        results = await ctx.fan_out(
            run, record, speakers, [round_prompt] * len(speakers), options, Role.PARTICIPANT
        )
        run.complete_round()

        successes = [r for r in results if r.success]
        if not successes:
            run.note(
                f"Round {record.index + 1} produced no answers; concluding on round {record.index}",
                options.include_reasoning,
            )
            record.similarity = None
            break
        current = successes
        run.responses.extend(successes)
        record.similarity = mean_pairwise_similarity([r.text for r in current])
        run.note(
            f"Round {record.index + 1}: {len(current)} positions, similarity {record.similarity:.2f}",
            options.include_reasoning,
        )

    converged = record.similarity is not None and record.similarity >= threshold
    log.info(
        "debate.finished",
        rounds=len(run.rounds),
        participants=len(current),
        converged=converged,
    )
    run.note(
        f"Debate ended after {len(run.rounds)} round(s)"
        + (" on convergence" if converged else ""),
        options.include_reasoning,
    )

    if len(current) == 1:
        return ctx.finish(run, current[0].text)

    text = await ctx.synthesize(
        run,
        debate_conclusion_prompt(prompt, [(r.model_id, r.text) for r in current], len(run.rounds)),
        current,
        options,
    )
    return ctx.finish(run, text)
