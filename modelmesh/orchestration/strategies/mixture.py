"""Mixture of experts: fan out, score the answers, synthesize the best.

Each answer gets a heuristic quality score in [0, 100]. The top-K answers
(``options.top_k``, default half the participants rounded up) are kept and
synthesized into the final answer.
"""

from __future__ import annotations

import math
import re
from typing import TYPE_CHECKING

import structlog

from modelmesh.orchestration.prompts import mixture_prompt
from modelmesh.orchestration.types import OrchestrationOptions, OrchestrationRun, Role, Strategy

if TYPE_CHECKING:
    from modelmesh.agent.model_router.registry import ModelDescriptor
    from modelmesh.orchestration.strategies.base import StrategyContext

log = structlog.get_logger(__name__)

_CONCLUSION_MARKERS = ("in conclusion", "summary", "therefore")
_TERM_RE = re.compile(r"\w+")


def score_response(text: str, prompt: str) -> float:
    """Heuristic quality score of a response.

    Starts at 50 and rewards a reasonable length, paragraph structure,
    coverage of the prompt's terms, and an explicit conclusion.
    """
    score = 50.0
    words = len(text.split())
    if 100 < words < 1000:
        score += 10
    if "\n\n" in text:
        score += 10

    lowered = text.lower()
    terms = {t for t in _TERM_RE.findall(prompt.lower()) if len(t) > 3}
    score += min(20, 5 * sum(1 for t in terms if t in lowered))

    if any(marker in lowered for marker in _CONCLUSION_MARKERS):
        score += 10
    return min(score, 100.0)


async def run_mixture(
    candidates: list[ModelDescriptor],
    prompt: str,
    options: OrchestrationOptions,
    ctx: StrategyContext,
) -> OrchestrationRun:
    run = OrchestrationRun(strategy=Strategy.MIXTURE, prompt=prompt)
    participants = ctx.participants(candidates, options)

    record = run.begin_round("experts")
    results = await ctx.fan_out(
        run, record, participants, [prompt] * len(participants), options, Role.PARTICIPANT
    )
    successes = [r for r in results if r.success]
    if not successes:
        raise ctx.fail(run, f"All {len(participants)} experts failed")
    run.complete_round()

    scored = sorted(
        ((r, score_response(r.text, prompt)) for r in successes),
        key=lambda pair: pair[1],
        reverse=True,
    )
    top_k = options.top_k or math.ceil(len(participants) / 2)
    kept = scored[:top_k]
    run.responses.extend(r for r, _ in kept)
    for result, score in scored:
        run.note(f"{result.model_id} scored {score:.0f}", options.include_reasoning)
    log.info(
        "mixture.scored",
        scores={r.model_id: s for r, s in scored},
        kept=[r.model_id for r, _ in kept],
    )

    if len(kept) == 1:
        return ctx.finish(run, kept[0][0].text)

    text = await ctx.synthesize(
        run,
        mixture_prompt(prompt, [(r.model_id, s, r.text) for r, s in kept]),
        [r for r, _ in kept],
        options,
    )
    return ctx.finish(run, text)
