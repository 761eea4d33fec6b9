"""Gateway tool implementations.

Imported lazily by the tool catalog the first time one of these tools is
used. Each factory binds a handler to an Orchestrator.
"""

from __future__ import annotations

from dataclasses import asdict
from typing import TYPE_CHECKING, Any

from modelmesh.tools.schemas import AskModelArgs, GatewayMetricsArgs, OrchestrateArgs

if TYPE_CHECKING:
    from modelmesh.orchestration.orchestrator import Orchestrator
    from modelmesh.tools.lazy_registry import ToolHandler


def make_ask_model(orchestrator: Orchestrator) -> ToolHandler:
    async def ask_model(arguments: dict[str, Any]) -> dict[str, Any]:
        args = AskModelArgs.model_validate(arguments)
        result = await orchestrator.ask(
            args.prompt,
            args.model,
            task_type=args.task_type,
            constraints=args.to_constraints(),
            tool="ask_model",
        )
        return {
            "text": result.text,
            "model": result.model_id,
            "input_tokens": result.input_tokens,
            "output_tokens": result.output_tokens,
            "latency_ms": result.latency_ms,
            "cost": result.cost,
            "attempts": result.attempts,
        }

    return ask_model


def make_orchestrate(orchestrator: Orchestrator) -> ToolHandler:
    async def orchestrate(arguments: dict[str, Any]) -> dict[str, Any]:
        args = OrchestrateArgs.model_validate(arguments)
        run = await orchestrator.orchestrate(
            args.prompt,
            args.strategy,
            args.models,
            args.options,
            tool="orchestrate",
        )
        return {
            "run_id": run.run_id,
            "strategy": run.strategy.value,
            "final_text": run.final_text,
            "responses": [
                {"model": r.model_id, "text": r.text, "latency_ms": r.latency_ms}
                for r in run.responses
            ],
            "failures": [
                {"model": f.model_id, "role": f.role.value, "error": f.message, "stage": f.stage}
                for f in run.failures
            ],
            "rounds": len(run.rounds),
            "reasoning": run.reasoning,
            "error": run.error,
            "metadata": {
                "total_duration_ms": run.metadata.total_duration_ms,
                "models_used": run.metadata.models_used,
                "routing_reasoning": run.metadata.routing_reasoning,
                "cost": sum(r.cost for r in run.invocations),
            },
        }

    return orchestrate


def make_gateway_metrics(orchestrator: Orchestrator) -> ToolHandler:
    async def gateway_metrics(arguments: dict[str, Any]) -> dict[str, Any]:
        args = GatewayMetricsArgs.model_validate(arguments)
        payload: dict[str, Any] = {
            "system": asdict(orchestrator.get_system_metrics()),
            "insights": orchestrator.get_performance_insights(),
            "routing": asdict(orchestrator.get_routing_insights()),
        }
        if args.include_tools:
            payload["tools"] = {
                name: asdict(metrics) for name, metrics in orchestrator.get_tool_metrics().items()
            }
        if args.include_costs:
            payload["costs"] = asdict(orchestrator.get_cost_report())
        return payload

    return gateway_metrics
