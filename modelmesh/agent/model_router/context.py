"""Process-wide routing state, passed explicitly to the components that share it."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

import structlog

from modelmesh.agent.model_router.budget import UsageLedger
from modelmesh.agent.model_router.metrics import PerformanceMonitor
from modelmesh.agent.model_router.registry import ModelRegistry, default_registry

if TYPE_CHECKING:
    from modelmesh.config import Settings

log = structlog.get_logger(__name__)


@dataclass
class RoutingContext:
    """Registry, usage ledger and performance monitor for one gateway instance."""

    registry: ModelRegistry
    ledger: UsageLedger
    monitor: PerformanceMonitor

    @classmethod
    def from_settings(
        cls, settings: Settings, registry: ModelRegistry | None = None
    ) -> RoutingContext:
        return cls(
            registry=registry if registry is not None else default_registry(),
            ledger=UsageLedger(),
            monitor=PerformanceMonitor(
                window=settings.performance_window,
                tool_window=settings.tool_history_window,
                min_samples_for_reliability=settings.min_samples_for_reliability,
                default_reliability=settings.default_reliability,
                slow_p95_ms=settings.slow_model_p95_ms,
            ),
        )

    def reset(self) -> None:
        """Clear accumulated usage and performance history. Used for testing."""
        self.ledger.clear()
        self.monitor.reset()
        log.debug("routing_context.reset")
