"""Model routing and cost accounting for model selection.

This package chooses which backend model(s) serve a request:
- ModelRegistry: catalog of interchangeable models and their capabilities
- PerformanceMonitor: sliding-window latency and reliability per model
- CostOptimizer: cost estimation, weighted ranking and budget enforcement
- ModelRouter: primary model plus fallback chain for a task and constraints

Usage and performance state is held in a RoutingContext that is passed
explicitly to the components sharing it.
"""

from __future__ import annotations

from modelmesh.agent.model_router.budget import (
    CostOptimizer,
    CostReport,
    RequestBudget,
    Reservation,
    Selection,
    UsageLedger,
)
from modelmesh.agent.model_router.classifier import TaskType, classify_task
from modelmesh.agent.model_router.constraints import InvocationRequest, RoutingConstraints
from modelmesh.agent.model_router.context import RoutingContext
from modelmesh.agent.model_router.metrics import ModelStats, PerformanceMonitor
from modelmesh.agent.model_router.registry import (
    DEFAULT_MODELS,
    ModelDescriptor,
    ModelRegistry,
    Quality,
    default_registry,
)
from modelmesh.agent.model_router.router import Eligibility, ModelRouter, RoutingDecision

__all__ = [
    "DEFAULT_MODELS",
    "CostOptimizer",
    "CostReport",
    "Eligibility",
    "InvocationRequest",
    "ModelDescriptor",
    "ModelRegistry",
    "ModelRouter",
    "ModelStats",
    "PerformanceMonitor",
    "Quality",
    "RequestBudget",
    "Reservation",
    "RoutingConstraints",
    "RoutingContext",
    "RoutingDecision",
    "Selection",
    "TaskType",
    "UsageLedger",
    "classify_task",
    "default_registry",
]
