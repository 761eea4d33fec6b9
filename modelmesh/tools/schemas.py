"""Argument models for the gateway tools.

Their JSON schemas are published as each tool's ``input_schema``; the
handlers validate incoming arguments against the same models.
"""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field

from modelmesh.agent.model_router.classifier import TaskType
from modelmesh.agent.model_router.constraints import RoutingConstraints
from modelmesh.orchestration.types import OrchestrationOptions, Strategy


class AskModelArgs(BaseModel):
    """Arguments of the ask_model tool."""

    model_config = ConfigDict(extra="forbid")

    prompt: str = Field(min_length=1)
    model: str | None = Field(default=None, description="Preferred model id")
    task_type: TaskType | None = None
    max_cost: float | None = Field(default=None, ge=0, description="Per-call USD cap")
    max_latency_ms: float | None = Field(default=None, gt=0)
    required_capabilities: list[str] = Field(default_factory=list)
    temperature: float = Field(default=0.7, ge=0.0, le=2.0)

    def to_constraints(self) -> RoutingConstraints:
        return RoutingConstraints(
            max_cost=self.max_cost,
            max_latency_ms=self.max_latency_ms,
            required_capabilities=frozenset(self.required_capabilities),
            temperature=self.temperature,
        )


class OrchestrateArgs(BaseModel):
    """Arguments of the orchestrate tool."""

    model_config = ConfigDict(extra="forbid")

    prompt: str = Field(min_length=1)
    strategy: Strategy = Strategy.SPECIALIST
    models: list[str] | None = Field(default=None, description="Explicit models, in order")
    options: OrchestrationOptions = Field(default_factory=OrchestrationOptions)


class GatewayMetricsArgs(BaseModel):
    """Arguments of the gateway_metrics tool."""

    model_config = ConfigDict(extra="forbid")

    include_costs: bool = True
    include_tools: bool = True
