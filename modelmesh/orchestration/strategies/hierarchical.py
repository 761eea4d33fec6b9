"""Hierarchical decomposition: split, route each part, combine bottom-up.

The lead model (first candidate) decomposes the prompt into numbered
sub-problems, or replies ATOMIC when no split is needed. Nodes shallower
than ``max_depth`` may be decomposed again. Each leaf is routed to its own
best-matched model; parents are then combined by the lead model, deepest
level first. Nodes live in ``run.subtasks`` as a flat list with parent
indices. Every level runs concurrently.
"""

from __future__ import annotations

import asyncio
import re
from typing import TYPE_CHECKING

import structlog

from modelmesh.agent.model_router.classifier import TaskType, classify_task
from modelmesh.errors import BudgetExceededError, NoEligibleModelError
from modelmesh.orchestration.prompts import combination_prompt, decomposition_prompt
from modelmesh.orchestration.strategies.base import ChainOutcome
from modelmesh.orchestration.types import (
    AttemptState,
    InvocationResult,
    OrchestrationOptions,
    OrchestrationRun,
    Role,
    Strategy,
    SubtaskNode,
)

if TYPE_CHECKING:
    from modelmesh.agent.model_router.registry import ModelDescriptor
    from modelmesh.orchestration.strategies.base import StrategyContext

log = structlog.get_logger(__name__)

_NUMBERED_LINE = re.compile(r"^\s*\d+[.)]\s+(.+?)\s*$")


def parse_subtasks(text: str, limit: int) -> list[str]:
    """Numbered sub-problems from a decomposition reply; empty for ATOMIC."""
    if text.strip().upper().startswith("ATOMIC"):
        return []
    subtasks = []
    for line in text.splitlines():
        match = _NUMBERED_LINE.match(line)
        if match:
            subtasks.append(match.group(1))
    return subtasks[:limit]


async def run_hierarchical(
    candidates: list[ModelDescriptor],
    prompt: str,
    options: OrchestrationOptions,
    ctx: StrategyContext,
) -> OrchestrationRun:
    run = OrchestrationRun(strategy=Strategy.HIERARCHICAL, prompt=prompt)
    lead_chain = list(candidates)
    max_depth = ctx.max_depth(options)
    limit = ctx.settings.hierarchical_max_subtasks

    run.subtasks.append(SubtaskNode(index=0, parent=None, depth=0, prompt=prompt))

    # -- decompose, level by level --------------------------------------
    record = run.begin_round("decompose")
    frontier = [0]
    leaves: list[int] = []
    while frontier:
        splittable = [i for i in frontier if run.subtasks[i].depth < max_depth]
        leaves.extend(i for i in frontier if run.subtasks[i].depth >= max_depth)
        outcomes = await asyncio.gather(
            *(
                ctx.invoke_chain(
                    lead_chain,
                    decomposition_prompt(run.subtasks[i].prompt, limit),
                    options,
                    Role.DECOMPOSE,
                )
                for i in splittable
            )
        )
        next_frontier: list[int] = []
        for index, outcome in zip(splittable, outcomes):
            _record_attempts(run, record.results, outcome)
            parts = parse_subtasks(outcome.result.text, limit) if outcome.result else []
            if not parts:
                leaves.append(index)
                continue
            parent = run.subtasks[index]
            for part in parts:
                child = SubtaskNode(
                    index=len(run.subtasks),
                    parent=index,
                    depth=parent.depth + 1,
                    prompt=part,
                )
                run.subtasks.append(child)
                parent.children.append(child.index)
                next_frontier.append(child.index)
        frontier = next_frontier
    run.complete_round()
    run.note(
        f"Decomposed into {len(run.subtasks) - 1} subtask(s), {len(leaves)} leaf task(s)",
        options.include_reasoning,
    )

    # -- solve leaves, each on its own routed model ---------------------
    record = run.begin_round("solve")
    leaves.sort()
    outcomes = await asyncio.gather(
        *(_solve_leaf(run.subtasks[i], candidates, options, ctx) for i in leaves)
    )
    for index, outcome in zip(leaves, outcomes):
        node = run.subtasks[index]
        _record_attempts(run, record.results, outcome)
        if outcome.result is not None:
            node.result = outcome.result
            node.model_id = outcome.result.model_id
            node.answer = outcome.result.text
            run.responses.append(outcome.result)
            run.note(f"Subtask {index} solved by {node.model_id}", options.include_reasoning)
        else:
            _annotate_failure(run, node, outcome, Role.SUBTASK)
    run.complete_round()

    # -- combine, deepest parents first ---------------------------------
    parents = [n for n in run.subtasks if n.children]
    if parents:
        record = run.begin_round("combine")
        for depth in sorted({n.depth for n in parents}, reverse=True):
            level = [n for n in parents if n.depth == depth]
            outcomes = await asyncio.gather(
                *(_combine(node, run, lead_chain, options, ctx) for node in level)
            )
            for node, outcome in zip(level, outcomes):
                if outcome is None:
                    continue
                _record_attempts(run, record.results, outcome)
                if outcome.result is not None:
                    node.result = outcome.result
                    node.model_id = outcome.result.model_id
                    node.answer = outcome.result.text
                else:
                    _annotate_failure(run, node, outcome, Role.COMBINE)
        run.complete_round()

    root = run.subtasks[0]
    if not root.answer:
        raise ctx.fail(run, "Hierarchical decomposition produced no combined answer")
    log.info(
        "hierarchical.finished",
        nodes=len(run.subtasks),
        leaves=len(leaves),
        answered=sum(1 for i in leaves if run.subtasks[i].answer),
    )
    return ctx.finish(run, root.answer)


async def _solve_leaf(
    node: SubtaskNode,
    candidates: list[ModelDescriptor],
    options: OrchestrationOptions,
    ctx: StrategyContext,
) -> ChainOutcome:
    """Route a leaf to its best-matched model and invoke the resulting chain."""
    models = tuple(c.id for c in candidates) if ctx.explicit_models else None
    constraints = ctx.constraints_for(options, node.prompt, models=models)
    decision = None
    for task_type in (classify_task(node.prompt), TaskType.GENERAL):
        try:
            decision = ctx.router.route(task_type, constraints, ctx.budget)
            break
        except NoEligibleModelError:
            continue
        except BudgetExceededError as exc:
            return ChainOutcome(result=None, attempts=[], error=str(exc))

    if decision is None:
        return await ctx.invoke_chain(candidates, node.prompt, options, Role.SUBTASK)
    return await ctx.invoke_chain(
        decision.chain, node.prompt, options, Role.SUBTASK, first_reservation=decision.reservation
    )


async def _combine(
    node: SubtaskNode,
    run: OrchestrationRun,
    lead_chain: list[ModelDescriptor],
    options: OrchestrationOptions,
    ctx: StrategyContext,
) -> ChainOutcome | None:
    parts = [
        (run.subtasks[c].prompt, run.subtasks[c].answer)
        for c in node.children
        if run.subtasks[c].answer
    ]
    if not parts:
        return None
    return await ctx.invoke_chain(
        lead_chain, combination_prompt(node.prompt, parts), options, Role.COMBINE
    )


def _record_attempts(
    run: OrchestrationRun, round_results: list[InvocationResult], outcome: ChainOutcome
) -> None:
    for attempt in outcome.attempts:
        run.record(attempt)
        round_results.append(attempt)


def _annotate_failure(
    run: OrchestrationRun, node: SubtaskNode, outcome: ChainOutcome, role: Role
) -> None:
    failed = (
        outcome.attempts[-1]
        if outcome.attempts
        else InvocationResult(
            model_id=node.model_id or "",
            role=role,
            state=AttemptState.FAILED,
            error_message=outcome.error,
        )
    )
    run.record_failure(failed, stage=node.index)
    log.warning("hierarchical.node_failed", node=node.index, depth=node.depth, role=role.value)
