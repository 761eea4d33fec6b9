"""modelmesh - model orchestration and routing engine.

Routes each request across interchangeable remote model backends under
cost, latency and capability constraints, and executes multi-model
strategies (sequential, parallel, debate, consensus, specialist,
hierarchical, mixture) on top of a retrying, deadline-aware invocation
primitive.

Typical use:

    from modelmesh import Strategy, build_orchestrator

    orchestrator = build_orchestrator()
    run = await orchestrator.orchestrate("Explain CRDTs", Strategy.DEBATE)
    print(run.final_text)
"""

from __future__ import annotations

from modelmesh.errors import (
    AllModelsFailedError,
    BudgetExceededError,
    GatewayError,
    ModelNotFoundError,
    NoEligibleModelError,
)
from modelmesh.orchestration.orchestrator import Orchestrator, build_orchestrator
from modelmesh.orchestration.types import OrchestrationOptions, OrchestrationRun, Strategy

__all__ = [
    "AllModelsFailedError",
    "BudgetExceededError",
    "GatewayError",
    "ModelNotFoundError",
    "NoEligibleModelError",
    "OrchestrationOptions",
    "OrchestrationRun",
    "Orchestrator",
    "Strategy",
    "build_orchestrator",
]
