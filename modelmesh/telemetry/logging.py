"""Structured logging configuration.

Configures structlog with JSON output in production and a console renderer
in development. Orchestration runs bind ``run_id`` and ``strategy`` to the
context so every invocation log line of a run can be correlated.

Log format (production):
    {
        "timestamp": "2026-02-17T10:30:45.123456Z",
        "level": "info",
        "logger": "modelmesh.agent.invocation",
        "event": "invoker.attempt_succeeded",
        "run_id": "run_5f0c...",
        "strategy": "parallel",
        "model_id": "gpt-4o-mini",
        "latency_ms": 812.4
    }
"""

from __future__ import annotations

import logging
import sys

import structlog
from structlog.types import Processor


def configure_logging(
    *,
    json_logs: bool = False,
    log_level: str = "INFO",
) -> None:
    """Configure structured logging for the gateway.

    Args:
        json_logs: Use JSON format (True for production, False for dev)
        log_level: Minimum log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper()),
    )

    shared_processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
    ]

    if json_logs:
        processors = shared_processors + [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors = shared_processors + [
            structlog.dev.ConsoleRenderer(colors=True),
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def ensure_logging_configured(*, json_logs: bool, log_level: str) -> bool:
    """Configure logging unless structlog has already been configured.

    Returns:
        True if this call configured logging
    """
    if structlog.is_configured():
        return False
    configure_logging(json_logs=json_logs, log_level=log_level)
    return True


# ------------------------------------------------------------------ #
# Context Binding Helpers
# ------------------------------------------------------------------ #


def bind_run_context(run_id: str, strategy: str) -> None:
    """Bind orchestration run identifiers to the log context.

    Args:
        run_id: Unique identifier of the orchestration run
        strategy: Strategy name executing the run
    """
    structlog.contextvars.bind_contextvars(run_id=run_id, strategy=strategy)


def unbind_run_context() -> None:
    """Remove run identifiers bound by bind_run_context."""
    structlog.contextvars.unbind_contextvars("run_id", "strategy")


def clear_context() -> None:
    """Clear all context variables (useful for testing)."""
    structlog.contextvars.clear_contextvars()
