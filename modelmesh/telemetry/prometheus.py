"""Prometheus metrics for model invocations and orchestration runs.

Metrics exported:
- model_invocations_total: Counter of provider calls by model, status
- model_invocation_duration_seconds: Histogram of provider call latencies
- model_tokens_total: Counter of tokens consumed by model, token type
- model_cost_usd_total: Counter of estimated spend by model
- active_model_invocations: Gauge of in-flight provider calls
- orchestration_runs_total: Counter of runs by strategy, status
- orchestration_run_duration_seconds: Histogram of run durations by strategy
- budget_rejections_total: Counter of requests refused for budget

All metrics live in a custom registry so embedding applications can mount
them next to their own exporters without name clashes.
"""

from __future__ import annotations

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

REGISTRY = CollectorRegistry(auto_describe=True)


# ------------------------------------------------------------------ #
# Invocation Metrics
# ------------------------------------------------------------------ #

model_invocations_total = Counter(
    "model_invocations_total",
    "Total provider call attempts",
    ["model", "status"],
    registry=REGISTRY,
)

model_invocation_duration_seconds = Histogram(
    "model_invocation_duration_seconds",
    "Provider call latency in seconds",
    ["model"],
    buckets=[0.1, 0.25, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0, 60.0],
    registry=REGISTRY,
)

model_tokens_total = Counter(
    "model_tokens_total",
    "Total tokens consumed",
    ["model", "token_type"],
    registry=REGISTRY,
)

model_cost_usd_total = Counter(
    "model_cost_usd_total",
    "Estimated spend in USD",
    ["model"],
    registry=REGISTRY,
)

active_model_invocations = Gauge(
    "active_model_invocations",
    "Number of in-flight provider calls",
    registry=REGISTRY,
)


# ------------------------------------------------------------------ #
# Orchestration Metrics
# ------------------------------------------------------------------ #

orchestration_runs_total = Counter(
    "orchestration_runs_total",
    "Total orchestration runs",
    ["strategy", "status"],
    registry=REGISTRY,
)

orchestration_run_duration_seconds = Histogram(
    "orchestration_run_duration_seconds",
    "Orchestration run duration in seconds",
    ["strategy"],
    buckets=[0.5, 1.0, 2.0, 5.0, 10.0, 30.0, 60.0, 120.0, 300.0],
    registry=REGISTRY,
)

budget_rejections_total = Counter(
    "budget_rejections_total",
    "Requests refused because no model fit the budget",
    registry=REGISTRY,
)


# ------------------------------------------------------------------ #
# Helper Functions
# ------------------------------------------------------------------ #


def record_invocation(
    model: str,
    status: str,
    duration_seconds: float,
    input_tokens: int = 0,
    output_tokens: int = 0,
    cost: float = 0.0,
) -> None:
    """Record one provider call attempt.

    Args:
        model: Model id
        status: success, transient, rate_limited, content_policy or permanent
        duration_seconds: Call latency in seconds
        input_tokens: Input tokens consumed
        output_tokens: Output tokens generated
        cost: Estimated cost in USD
    """
    model_invocations_total.labels(model=model, status=status).inc()
    model_invocation_duration_seconds.labels(model=model).observe(duration_seconds)
    if input_tokens:
        model_tokens_total.labels(model=model, token_type="input").inc(input_tokens)
    if output_tokens:
        model_tokens_total.labels(model=model, token_type="output").inc(output_tokens)
    if cost > 0:
        model_cost_usd_total.labels(model=model).inc(cost)


def record_run(strategy: str, status: str, duration_seconds: float) -> None:
    """Record a finished orchestration run."""
    orchestration_runs_total.labels(strategy=strategy, status=status).inc()
    orchestration_run_duration_seconds.labels(strategy=strategy).observe(duration_seconds)


def render_latest() -> tuple[bytes, str]:
    """Render the registry in Prometheus exposition format.

    Returns:
        Tuple of (payload, content type)
    """
    return generate_latest(REGISTRY), CONTENT_TYPE_LATEST
