"""Data model for invocations and orchestration runs."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field

from modelmesh.agent.model_router.classifier import TaskType
from modelmesh.agent.model_router.constraints import RoutingConstraints
from modelmesh.agent.model_router.registry import Quality
from modelmesh.config import VotingRule
from modelmesh.errors import InvalidStateTransitionError, ProviderErrorKind


class Strategy(StrEnum):
    """Multi-model execution strategies."""

    SEQUENTIAL = "sequential"
    PARALLEL = "parallel"
    DEBATE = "debate"
    CONSENSUS = "consensus"
    SPECIALIST = "specialist"
    HIERARCHICAL = "hierarchical"
    MIXTURE = "mixture"


class Role(StrEnum):
    """Why an invocation was made within a run."""

    DIRECT = "direct"
    STAGE = "stage"
    PARTICIPANT = "participant"
    SYNTHESIS = "synthesis"
    VOTE = "vote"
    DECOMPOSE = "decompose"
    SUBTASK = "subtask"
    COMBINE = "combine"


# ------------------------------------------------------------------ #
# Invocation attempt state machine
# ------------------------------------------------------------------ #


class AttemptState(StrEnum):
    PENDING = "pending"
    RETRYING = "retrying"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


_ATTEMPT_TRANSITIONS: dict[AttemptState, frozenset[AttemptState]] = {
    AttemptState.PENDING: frozenset(
        {AttemptState.RETRYING, AttemptState.SUCCEEDED, AttemptState.FAILED}
    ),
    AttemptState.RETRYING: frozenset(
        {AttemptState.RETRYING, AttemptState.SUCCEEDED, AttemptState.FAILED}
    ),
    AttemptState.SUCCEEDED: frozenset(),
    AttemptState.FAILED: frozenset(),
}


def check_attempt_transition(current: AttemptState, target: AttemptState) -> AttemptState:
    if target not in _ATTEMPT_TRANSITIONS[current]:
        raise InvalidStateTransitionError(f"Attempt cannot go from {current} to {target}")
    return target


@dataclass
class InvocationResult:
    """Outcome of one invocation, including every retry of it.

    ``cost`` is the actual cost of the successful attempt; failed
    invocations cost nothing.
    """

    model_id: str
    text: str = ""
    input_tokens: int = 0
    output_tokens: int = 0
    latency_ms: float = 0.0
    cost: float = 0.0
    success: bool = False
    error: ProviderErrorKind | None = None
    error_message: str | None = None
    attempts: int = 0
    state: AttemptState = AttemptState.PENDING
    role: Role = Role.DIRECT

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


# ------------------------------------------------------------------ #
# Strategy state machine
# ------------------------------------------------------------------ #


class StrategyState(StrEnum):
    INIT = "init"
    ROUND_IN_PROGRESS = "round_in_progress"
    ROUND_COMPLETE = "round_complete"
    SYNTHESIZING = "synthesizing"
    DONE = "done"
    FAILED = "failed"


_STRATEGY_TRANSITIONS: dict[StrategyState, frozenset[StrategyState]] = {
    StrategyState.INIT: frozenset({StrategyState.ROUND_IN_PROGRESS, StrategyState.FAILED}),
    StrategyState.ROUND_IN_PROGRESS: frozenset(
        {StrategyState.ROUND_COMPLETE, StrategyState.FAILED}
    ),
    StrategyState.ROUND_COMPLETE: frozenset(
        {
            StrategyState.ROUND_IN_PROGRESS,
            StrategyState.SYNTHESIZING,
            StrategyState.DONE,
            StrategyState.FAILED,
        }
    ),
    StrategyState.SYNTHESIZING: frozenset({StrategyState.DONE, StrategyState.FAILED}),
    StrategyState.DONE: frozenset(),
    StrategyState.FAILED: frozenset(),
}


# ------------------------------------------------------------------ #
# Run records
# ------------------------------------------------------------------ #


@dataclass
class RoundRecord:
    """One round of a multi-round strategy. Referenced by integer index."""

    index: int
    prompt_kind: str
    results: list[InvocationResult] = field(default_factory=list)
    similarity: float | None = None

    @property
    def successes(self) -> list[InvocationResult]:
        return [r for r in self.results if r.success]


@dataclass
class SubtaskNode:
    """Node of a hierarchical decomposition, stored in a flat list.

    ``parent`` is the index of the parent node, None for the root.
    """

    index: int
    parent: int | None
    depth: int
    prompt: str
    model_id: str | None = None
    result: InvocationResult | None = None
    children: list[int] = field(default_factory=list)
    answer: str = ""


@dataclass
class Vote:
    voter: str
    choice: int | None
    weight: float
    raw: str = ""


@dataclass
class StrategyFailure:
    """A participant or stage that produced no usable output."""

    model_id: str
    role: Role
    error: ProviderErrorKind | None
    message: str | None
    stage: int | None = None


@dataclass
class RunMetadata:
    total_duration_ms: float = 0.0
    models_used: list[str] = field(default_factory=list)
    routing_reasoning: str | None = None


@dataclass
class OrchestrationRun:
    """Everything that happened while executing one strategy."""

    strategy: Strategy
    prompt: str
    run_id: str = field(default_factory=lambda: f"run_{uuid.uuid4().hex[:16]}")
    invocations: list[InvocationResult] = field(default_factory=list)
    responses: list[InvocationResult] = field(default_factory=list)
    failures: list[StrategyFailure] = field(default_factory=list)
    rounds: list[RoundRecord] = field(default_factory=list)
    subtasks: list[SubtaskNode] = field(default_factory=list)
    votes: list[Vote] = field(default_factory=list)
    final_text: str = ""
    state: StrategyState = StrategyState.INIT
    state_history: list[StrategyState] = field(
        default_factory=lambda: [StrategyState.INIT]
    )
    reasoning: list[str] = field(default_factory=list)
    error: str | None = None
    metadata: RunMetadata = field(default_factory=RunMetadata)

    def transition(self, target: StrategyState) -> None:
        """Move the run's state machine.

        Raises:
            InvalidStateTransitionError: If ``target`` is not reachable
        """
        if target not in _STRATEGY_TRANSITIONS[self.state]:
            raise InvalidStateTransitionError(
                f"{self.strategy} run cannot go from {self.state} to {target}"
            )
        self.state = target
        self.state_history.append(target)

    def begin_round(self, prompt_kind: str) -> RoundRecord:
        self.transition(StrategyState.ROUND_IN_PROGRESS)
        record = RoundRecord(index=len(self.rounds), prompt_kind=prompt_kind)
        self.rounds.append(record)
        return record

    def complete_round(self) -> None:
        self.transition(StrategyState.ROUND_COMPLETE)

    def record(self, result: InvocationResult) -> InvocationResult:
        self.invocations.append(result)
        return result

    def record_failure(self, result: InvocationResult, stage: int | None = None) -> None:
        self.failures.append(
            StrategyFailure(
                model_id=result.model_id,
                role=result.role,
                error=result.error,
                message=result.error_message,
                stage=stage,
            )
        )

    def note(self, step: str, include: bool) -> None:
        if include:
            self.reasoning.append(step)

    @property
    def terminal(self) -> bool:
        return self.state in (StrategyState.DONE, StrategyState.FAILED)


# ------------------------------------------------------------------ #
# Options
# ------------------------------------------------------------------ #


class OrchestrationOptions(BaseModel):
    """Caller options for orchestrate().

    Strategy-independent: max_rounds, temperature, include_reasoning,
    budget_ceiling, use_deep_reasoning. The remaining fields tune individual
    strategies and fall back to settings when unset.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    max_rounds: int | None = Field(default=None, ge=1, le=10)
    temperature: float = Field(default=0.7, ge=0.0, le=2.0)
    include_reasoning: bool = False
    budget_ceiling: float | None = Field(default=None, ge=0)
    use_deep_reasoning: bool = False

    task_type: TaskType | None = None
    fanout: int | None = Field(default=None, ge=1, le=16)
    max_cost: float | None = Field(default=None, ge=0)
    max_latency_ms: float | None = Field(default=None, gt=0)
    required_capabilities: frozenset[str] = frozenset()
    min_quality: Quality | None = None
    timeout_seconds: float | None = Field(default=None, gt=0)
    convergence_threshold: float | None = Field(default=None, ge=0.0, le=1.0)
    voting: VotingRule | None = None
    top_k: int | None = Field(default=None, ge=1)
    max_depth: int | None = Field(default=None, ge=1, le=4)
    synthesis_model: str | None = None

    def constraints(
        self,
        estimated_input_tokens: int | None = None,
        models: tuple[str, ...] | None = None,
    ) -> RoutingConstraints:
        return RoutingConstraints(
            max_cost=self.max_cost,
            max_latency_ms=self.max_latency_ms,
            required_capabilities=self.required_capabilities,
            min_quality=self.min_quality,
            temperature=self.temperature,
            models=models,
            estimated_input_tokens=estimated_input_tokens,
        )

