"""Consensus: independent answers, then a ballot among the participants.

Every participant answers the prompt. With two or more answers, each
answering participant is shown the numbered answers and replies
``VOTE: <n>``. Ballots are weighted by the voter's observed reliability
(or counted equally under the majority rule); the winning answer is the
final text. Ties go to the more reliable author, then the earlier answer.
"""

from __future__ import annotations

import re
from typing import TYPE_CHECKING

import structlog

from modelmesh.config import VotingRule
from modelmesh.orchestration.prompts import vote_prompt
from modelmesh.orchestration.types import (
    OrchestrationOptions,
    OrchestrationRun,
    Role,
    Strategy,
    Vote,
)

if TYPE_CHECKING:
    from modelmesh.agent.model_router.registry import ModelDescriptor
    from modelmesh.orchestration.strategies.base import StrategyContext

log = structlog.get_logger(__name__)

_VOTE_RE = re.compile(r"VOTE:\s*(\d+)", re.IGNORECASE)


def parse_vote(text: str, answer_count: int) -> int | None:
    """Zero-based index of the answer a ballot picks, or None if unusable."""
    match = _VOTE_RE.search(text)
    if match is None:
        return None
    choice = int(match.group(1))
    if not 1 <= choice <= answer_count:
        return None
    return choice - 1


async def run_consensus(
    candidates: list[ModelDescriptor],
    prompt: str,
    options: OrchestrationOptions,
    ctx: StrategyContext,
) -> OrchestrationRun:
    run = OrchestrationRun(strategy=Strategy.CONSENSUS, prompt=prompt)
    participants = ctx.participants(candidates, options)

    record = run.begin_round("answer")
    results = await ctx.fan_out(
        run, record, participants, [prompt] * len(participants), options, Role.PARTICIPANT
    )
    answers = [r for r in results if r.success]
    if not answers:
        raise ctx.fail(run, f"All {len(participants)} consensus participants failed")
    run.complete_round()
    run.responses.extend(answers)

    if len(answers) == 1:
        run.note("Only one answer; no ballot needed", options.include_reasoning)
        return ctx.finish(run, answers[0].text)

    voters = [ctx.registry.lookup(r.model_id) for r in answers]
    ballot_prompt = vote_prompt(prompt, [r.text for r in answers])
    record = run.begin_round("vote")
    ballots = await ctx.fan_out(
        run, record, voters, [ballot_prompt] * len(voters), options, Role.VOTE
    )
    run.complete_round()

    rule = ctx.voting(options)
    tally = [0.0] * len(answers)
    for ballot in ballots:
        weight = ctx.monitor.reliability(ballot.model_id) if rule == VotingRule.WEIGHTED else 1.0
        choice = parse_vote(ballot.text, len(answers)) if ballot.success else None
        run.votes.append(Vote(voter=ballot.model_id, choice=choice, weight=weight, raw=ballot.text))
        if choice is None:
            if ballot.success:
                log.info("consensus.invalid_ballot", voter=ballot.model_id)
                run.note(f"Ignored unparseable ballot from {ballot.model_id}", options.include_reasoning)
            continue
        tally[choice] += weight

    author_reliability = [ctx.monitor.reliability(r.model_id) for r in answers]
    if any(tally):
        winner = max(
            range(len(answers)),
            key=lambda i: (tally[i], author_reliability[i], -i),
        )
        run.note(
            f"Answer {winner + 1} from {answers[winner].model_id} won with "
            f"{tally[winner]:.2f} of {sum(tally):.2f} {rule.value} votes",
            options.include_reasoning,
        )
    else:
        winner = max(range(len(answers)), key=lambda i: (author_reliability[i], -i))
        run.note(
            f"No valid ballots; chose the most reliable author {answers[winner].model_id}",
            options.include_reasoning,
        )

    log.info(
        "consensus.decided",
        winner=answers[winner].model_id,
        tally=[round(t, 3) for t in tally],
        rule=rule.value,
    )
    return ctx.finish(run, answers[winner].text)
