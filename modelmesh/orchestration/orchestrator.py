"""Orchestrator - public entry point for single calls and multi-model runs.

The orchestrator sits between calling tools and the model backends:
1. Candidate selection - explicit models, or the router's primary + fallbacks
2. Budget check - refuse before any provider call when nothing fits
3. Strategy execution - dispatch through the STRATEGIES table
4. Accounting - duration, models used, Prometheus counters, run log line

Only total failure or unsatisfiable upfront constraints reach the caller;
partial failure of a multi-model strategy is reported on the run.
"""

from __future__ import annotations

import time
import uuid
from collections.abc import Awaitable, Callable, Mapping, Sequence
from typing import Any

import structlog

from modelmesh.agent.fallback import FallbackChain
from modelmesh.agent.invocation import Invoker
from modelmesh.agent.llm import LiteLLMProvider, ProviderAdapter
from modelmesh.agent.model_router.budget import CostOptimizer, CostReport, RequestBudget
from modelmesh.agent.model_router.classifier import TaskType, classify_task
from modelmesh.agent.model_router.constraints import (
    InvocationRequest,
    RoutingConstraints,
    estimate_tokens,
)
from modelmesh.agent.model_router.context import RoutingContext
from modelmesh.agent.model_router.metrics import ModelStats, SystemMetrics, ToolMetrics
from modelmesh.agent.model_router.registry import ModelDescriptor, ModelRegistry
from modelmesh.agent.model_router.router import ModelRouter, RoutingDecision, RoutingInsights
from modelmesh.config import Settings, get_settings
from modelmesh.errors import AllModelsFailedError, BudgetExceededError, NoEligibleModelError
from modelmesh.orchestration.strategies import STRATEGIES, StrategyContext
from modelmesh.orchestration.types import (
    InvocationResult,
    OrchestrationOptions,
    OrchestrationRun,
    Role,
    Strategy,
)
from modelmesh.telemetry.logging import (
    bind_run_context,
    ensure_logging_configured,
    unbind_run_context,
)
from modelmesh.telemetry.prometheus import record_run

log = structlog.get_logger(__name__)


class Orchestrator:
    """Routes requests to models and executes multi-model strategies.

    One instance owns a RoutingContext (registry, usage ledger, performance
    monitor) shared by every request it serves.
    """

    def __init__(
        self,
        settings: Settings,
        context: RoutingContext,
        router: ModelRouter,
        invoker: Invoker,
    ) -> None:
        """Initialize orchestrator with shared routing state.

        Args:
            settings: Gateway configuration
            context: Registry, ledger and performance monitor
            router: Model router built on the same context
            invoker: Invocation primitive built on the same context
        """
        self._settings = settings
        self._context = context
        self._router = router
        self._optimizer = router.optimizer
        self._invoker = invoker

    @property
    def registry(self) -> ModelRegistry:
        return self._context.registry

    @property
    def router(self) -> ModelRouter:
        return self._router

    @property
    def invoker(self) -> Invoker:
        return self._invoker

    # ------------------------------------------------------------------ #
    # Single call
    # ------------------------------------------------------------------ #

    async def ask(
        self,
        prompt: str,
        model_id: str | None = None,
        *,
        task_type: TaskType | str | None = None,
        constraints: RoutingConstraints | None = None,
        tool: str = "ask_model",
    ) -> InvocationResult:
        """Answer a prompt with one model, falling back on failure.

        Args:
            prompt: Prompt text
            model_id: Preferred model; its fallback alternatives back it up.
                When omitted the router picks the model for the task type.
            task_type: Task type; classified from the prompt when omitted
            constraints: Cost, latency and capability limits
            tool: Calling tool name, for per-tool metrics

        Returns:
            The successful InvocationResult

        Raises:
            ModelNotFoundError: If ``model_id`` is not registered
            NoEligibleModelError: If no model satisfies the constraints
            BudgetExceededError: If no model fits the per-call cost cap
            AllModelsFailedError: If every model in the chain failed
        """
        request = InvocationRequest(
            prompt=prompt,
            task_type=TaskType(task_type) if task_type else classify_task(prompt),
            constraints=constraints or RoutingConstraints(),
        )
        constraints = request.with_token_estimate()
        budget = RequestBudget()

        monitor = self._context.monitor
        monitor.start_request()
        try:
            first_reservation = None
            if model_id is not None:
                primary = self.registry.lookup(model_id)
                models = [primary] + [
                    m
                    for m in self._models_for(self._optimizer.create_fallback_chain(primary.id)[1:])
                    if m.id not in constraints.exclude_models
                ]
                reasoning = f"Requested {primary.id}"
            else:
                decision = self._router.route(request.task_type, constraints, budget)
                models = decision.chain
                first_reservation = decision.reservation
                reasoning = decision.reasoning

            chain = FallbackChain(self._invoker, self._optimizer, models)
            result, attempts = await chain.execute(
                prompt,
                constraints=constraints,
                budget=budget,
                first_reservation=first_reservation,
                tool=tool,
                role=Role.DIRECT,
            )
        finally:
            monitor.end_request()

        log.info(
            "orchestrator.ask_completed",
            model_id=result.model_id,
            attempts=len(attempts),
            cost=result.cost,
            reasoning=reasoning,
        )
        return result

    # ------------------------------------------------------------------ #
    # Multi-model run
    # ------------------------------------------------------------------ #

    async def orchestrate(
        self,
        prompt: str,
        strategy: Strategy | str,
        models: Sequence[str] | None = None,
        options: OrchestrationOptions | Mapping[str, Any] | None = None,
        *,
        tool: str = "orchestrate",
    ) -> OrchestrationRun:
        """Execute a multi-model strategy.

        Args:
            prompt: Prompt text
            strategy: Strategy to execute
            models: Explicit models, in order; router candidates when omitted
            options: Run options (validated into OrchestrationOptions)
            tool: Calling tool name, for per-tool metrics

        Returns:
            Completed OrchestrationRun (state DONE)

        Raises:
            pydantic.ValidationError: If ``options`` are invalid
            ModelNotFoundError: If an explicit model is not registered
            NoEligibleModelError: If no model satisfies the constraints
            BudgetExceededError: If no candidate fits the budget; raised
                before any provider call
            AllModelsFailedError: If the strategy produced no usable result;
                the failed run is attached as ``run``
        """
        strategy = Strategy(strategy)
        if not isinstance(options, OrchestrationOptions):
            options = OrchestrationOptions.model_validate(options or {})

        run_id = f"run_{uuid.uuid4().hex[:16]}"
        bind_run_context(run_id, strategy.value)
        monitor = self._context.monitor
        monitor.start_request()
        started = time.perf_counter()
        try:
            budget = RequestBudget(options.budget_ceiling)
            candidates, explicit, decision = self._select_candidates(
                prompt, strategy, models, options, budget
            )
            ctx = StrategyContext(
                invoker=self._invoker,
                router=self._router,
                optimizer=self._optimizer,
                registry=self.registry,
                monitor=monitor,
                settings=self._settings,
                budget=budget,
                tool=tool,
                explicit_models=explicit,
                decision=decision,
            )
            log.info(
                "orchestrator.run_started",
                candidates=[c.id for c in candidates],
                budget_ceiling=options.budget_ceiling,
            )
            run = await STRATEGIES[strategy](candidates, prompt, options, ctx)
        except AllModelsFailedError as exc:
            duration = time.perf_counter() - started
            if exc.run is not None:
                exc.run.run_id = run_id
                self._stamp(exc.run, duration)
            record_run(strategy.value, "failed", duration)
            log.error("orchestrator.run_failed", error=str(exc), failures=len(exc.failures))
            raise
        except (BudgetExceededError, NoEligibleModelError) as exc:
            duration = time.perf_counter() - started
            record_run(strategy.value, "rejected", duration)
            log.warning("orchestrator.run_rejected", error_type=type(exc).__name__, error=str(exc))
            raise
        finally:
            monitor.end_request()
            unbind_run_context()

        duration = time.perf_counter() - started
        run.run_id = run_id
        self._stamp(run, duration)
        record_run(strategy.value, "success", duration)
        log.info(
            "orchestrator.run_completed",
            run_id=run_id,
            strategy=strategy.value,
            duration_ms=round(run.metadata.total_duration_ms, 1),
            models_used=run.metadata.models_used,
            invocations=len(run.invocations),
            failures=len(run.failures),
            spent=budget.spent,
        )
        return run

    def _select_candidates(
        self,
        prompt: str,
        strategy: Strategy,
        models: Sequence[str] | None,
        options: OrchestrationOptions,
        budget: RequestBudget,
    ) -> tuple[list[ModelDescriptor], bool, RoutingDecision | None]:
        """Candidate models for a run, whether they were named explicitly, and
        the routing decision behind them.

        Explicit models keep the caller's order but must pass the same
        capability, quality, context window and latency filters as routed
        ones. The decision is returned only for routed specialist runs, which
        serve the request from it directly; otherwise its reservation is
        released.
        """
        constraints = options.constraints(estimated_input_tokens=estimate_tokens(prompt))
        task_type = options.task_type or classify_task(prompt)
        if models:
            requested = self._models_for(dict.fromkeys(models))
            constraints = constraints.model_copy(
                update={"models": tuple(m.id for m in requested)}
            )
            allowed = {m.id for m in self._router.eligible(task_type, constraints).candidates}
            candidates = [m for m in requested if m.id in allowed]
            if len(candidates) < len(requested):
                log.info(
                    "orchestrator.explicit_models_filtered",
                    dropped=[m.id for m in requested if m.id not in allowed],
                )
            self._optimizer.ensure_affordable(candidates, constraints, budget)
            return candidates, True, None

        decision = self._router.route(task_type, constraints, budget)
        if strategy is Strategy.SPECIALIST:
            return decision.chain, False, decision
        if decision.reservation is not None:
            decision.reservation.release()
        return decision.chain, False, None

    def _models_for(self, model_ids: Sequence[str] | Mapping[str, None]) -> list[ModelDescriptor]:
        return [self.registry.lookup(model_id) for model_id in model_ids]

    @staticmethod
    def _stamp(run: OrchestrationRun, duration_seconds: float) -> None:
        run.metadata.total_duration_ms = duration_seconds * 1000
        run.metadata.models_used = list(
            dict.fromkeys(r.model_id for r in run.invocations if r.success)
        )

    # ------------------------------------------------------------------ #
    # Metrics
    # ------------------------------------------------------------------ #

    def get_system_metrics(self) -> SystemMetrics:
        return self._context.monitor.get_system_metrics()

    def get_tool_metrics(self) -> dict[str, ToolMetrics]:
        return self._context.monitor.get_tool_metrics()

    def get_model_stats(self, model_id: str) -> ModelStats:
        return self._context.monitor.get_stats(model_id)

    def get_cost_report(self) -> CostReport:
        return self._optimizer.get_cost_report()

    def get_routing_insights(self) -> RoutingInsights:
        return self._router.get_routing_insights()

    def get_performance_insights(self) -> list[str]:
        return self._context.monitor.insights()

    def reset(self) -> None:
        """Clear usage, performance and routing history. Used for testing."""
        self._context.reset()
        self._router.clear_history()


def build_orchestrator(
    settings: Settings | None = None,
    provider: ProviderAdapter | None = None,
    registry: ModelRegistry | None = None,
    *,
    sleep: Callable[[float], Awaitable[None]] | None = None,
) -> Orchestrator:
    """Wire an Orchestrator and its collaborators on one RoutingContext.

    Args:
        settings: Configuration; defaults to get_settings(). Logging is
            configured from it unless ``setup_logging`` is off or structlog
            is already configured
        provider: Provider adapter; defaults to LiteLLMProvider
        registry: Model catalog; defaults to the built-in catalog
        sleep: Backoff sleep override for the invoker

    Returns:
        Ready-to-use Orchestrator
    """
    settings = settings or get_settings()
    if settings.setup_logging:
        ensure_logging_configured(json_logs=settings.json_logs, log_level=settings.log_level)
    context = RoutingContext.from_settings(settings, registry)
    optimizer = CostOptimizer(context.registry, context.ledger, context.monitor, settings)
    router = ModelRouter(context.registry, optimizer, context.monitor, settings)
    if provider is None:
        provider = LiteLLMProvider(context.registry, settings)
    invoker_kwargs = {"sleep": sleep} if sleep is not None else {}
    invoker = Invoker(provider, context, optimizer, settings, **invoker_kwargs)
    log.debug(
        "orchestrator.built",
        models=len(context.registry),
        provider=type(provider).__name__,
    )
    return Orchestrator(settings, context, router, invoker)
