"""Routing constraints attached to every invocation request."""

from __future__ import annotations

from dataclasses import dataclass, field

from pydantic import BaseModel, ConfigDict, Field

from modelmesh.agent.model_router.classifier import TaskType
from modelmesh.agent.model_router.registry import Quality


def estimate_tokens(text: str) -> int:
    """Rough token count of a prompt (about four characters per token)."""
    return max(1, len(text) // 4)


class RoutingConstraints(BaseModel):
    """Cost, latency and capability limits for choosing a model.

    ``models`` is an explicit override list: when set, only those models are
    considered. ``min_quality`` drops models below that quality tier. Token
    estimates left unset fall back to the configured defaults when costs are
    estimated.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    max_cost: float | None = Field(default=None, ge=0, description="Per-call USD cap")
    max_latency_ms: float | None = Field(default=None, gt=0)
    required_capabilities: frozenset[str] = frozenset()
    temperature: float = Field(default=0.7, ge=0.0, le=2.0)
    models: tuple[str, ...] | None = None
    exclude_models: frozenset[str] = frozenset()
    estimated_input_tokens: int | None = Field(default=None, ge=0)
    expected_output_tokens: int | None = Field(default=None, ge=0)
    context_length: int = Field(default=0, ge=0)
    min_quality: Quality | None = None


@dataclass
class InvocationRequest:
    """A prompt plus the constraints the router must satisfy to serve it."""

    prompt: str
    task_type: TaskType = TaskType.GENERAL
    constraints: RoutingConstraints = field(default_factory=RoutingConstraints)

    def with_token_estimate(self) -> RoutingConstraints:
        if self.constraints.estimated_input_tokens is not None:
            return self.constraints
        return self.constraints.model_copy(
            update={"estimated_input_tokens": estimate_tokens(self.prompt)}
        )
