"""Gateway tool catalog: ask_model, orchestrate and gateway_metrics."""

from __future__ import annotations

import asyncio
import importlib
from typing import TYPE_CHECKING

import structlog

from modelmesh.tools.lazy_registry import LazyToolRegistry, ToolHandler, ToolLoader, ToolMetadata
from modelmesh.tools.schemas import AskModelArgs, GatewayMetricsArgs, OrchestrateArgs

if TYPE_CHECKING:
    from modelmesh.orchestration.orchestrator import Orchestrator

log = structlog.get_logger(__name__)

HANDLERS_MODULE = "modelmesh.tools.handlers"


def _lazy_handler(factory_name: str, orchestrator: Orchestrator) -> ToolLoader:
    async def loader() -> ToolHandler:
        module = await asyncio.to_thread(importlib.import_module, HANDLERS_MODULE)
        return getattr(module, factory_name)(orchestrator)

    return loader


def register_gateway_tools(
    registry: LazyToolRegistry, orchestrator: Orchestrator
) -> list[str]:
    """Register the gateway's own tools on ``registry``.

    Returns:
        Names of the registered tools
    """
    tools = [
        (
            ToolMetadata(
                name="ask_model",
                description=(
                    "Answer a prompt with one model. The model is chosen by task type "
                    "and constraints unless one is named; failures fall back to "
                    "alternative models."
                ),
                tags=frozenset({"llm", "core"}),
                input_schema=AskModelArgs.model_json_schema(),
            ),
            "make_ask_model",
        ),
        (
            ToolMetadata(
                name="orchestrate",
                description=(
                    "Run a multi-model strategy (sequential, parallel, debate, consensus, "
                    "specialist, hierarchical, mixture) and return the combined answer."
                ),
                tags=frozenset({"llm", "core", "multi-model"}),
                input_schema=OrchestrateArgs.model_json_schema(),
            ),
            "make_orchestrate",
        ),
        (
            ToolMetadata(
                name="gateway_metrics",
                description="Report request, per-tool, routing and cost metrics.",
                tags=frozenset({"observability"}),
                input_schema=GatewayMetricsArgs.model_json_schema(),
            ),
            "make_gateway_metrics",
        ),
    ]
    for metadata, factory_name in tools:
        registry.register_metadata(metadata, _lazy_handler(factory_name, orchestrator))

    names = [metadata.name for metadata, _ in tools]
    log.info("tool_catalog.registered", tools=names)
    return names
