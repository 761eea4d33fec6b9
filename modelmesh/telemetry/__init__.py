"""Telemetry package for observability.

This package contains:
- Structured logging with run correlation (structlog)
- Prometheus metrics for invocations and orchestration runs
"""

from __future__ import annotations

from modelmesh.telemetry.logging import (
    bind_run_context,
    clear_context,
    configure_logging,
    ensure_logging_configured,
    unbind_run_context,
)

__all__ = [
    "bind_run_context",
    "clear_context",
    "configure_logging",
    "ensure_logging_configured",
    "unbind_run_context",
]
