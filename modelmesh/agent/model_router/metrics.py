"""Performance monitoring for model invocations.

The PerformanceMonitor keeps, per model, a fixed-capacity FIFO ring of the
most recent invocation outcomes and derives latency percentiles, error rate
and reliability from whatever the ring currently holds. Per-tool rings and
request counters back the system and tool metrics views.

Each model has its own series (ring, lifetime total and lock). The series
map is guarded by one lock and each series by its own; the two are never
held together. reset() swaps in an empty map, so a writer still holding an
old series finishes against it.
"""

from __future__ import annotations

import math
import threading
import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field

import structlog

from modelmesh.errors import ProviderErrorKind

log = structlog.get_logger(__name__)


@dataclass(frozen=True)
class OutcomeRecord:
    """One finished invocation attempt."""

    model_id: str
    tool: str
    latency_ms: float
    success: bool
    error: ProviderErrorKind | None = None
    timestamp: float = field(default_factory=time.time)


@dataclass
class InvocationHandle:
    """Token returned by start_invocation and consumed by end_invocation."""

    model_id: str
    tool: str
    started_at: float
    ended: bool = False


@dataclass
class _ModelSeries:
    ring: deque[OutcomeRecord]
    total: int = 0
    lock: threading.Lock = field(default_factory=threading.Lock)


@dataclass(frozen=True)
class ModelStats:
    p50_ms: float
    p95_ms: float
    error_rate: float
    sample_count: int
    success_count: int


@dataclass(frozen=True)
class ToolMetrics:
    count: int
    average_latency_ms: float
    error_rate: float


@dataclass(frozen=True)
class SystemMetrics:
    uptime_seconds: float
    active_requests: int
    total_requests: int
    peak_active_requests: int


def _percentile(sorted_values: list[float], pct: float) -> float:
    """Nearest-rank percentile of an ascending list."""
    if not sorted_values:
        return 0.0
    rank = max(1, math.ceil(pct / 100 * len(sorted_values)))
    return sorted_values[rank - 1]


class PerformanceMonitor:
    """Sliding-window performance statistics per model and per tool."""

    def __init__(
        self,
        window: int = 100,
        tool_window: int = 1000,
        min_samples_for_reliability: int = 10,
        default_reliability: float = 0.9,
        slow_p95_ms: float = 5000.0,
        clock: Callable[[], float] = time.perf_counter,
    ) -> None:
        """Initialize the monitor.

        Args:
            window: Ring capacity per model
            tool_window: Ring capacity per tool
            min_samples_for_reliability: Samples needed before observed success
                rate replaces ``default_reliability``
            default_reliability: Prior reliability for models with few samples
            slow_p95_ms: p95 latency above which insights flag a model as slow
            clock: Monotonic clock in seconds (injectable for tests)
        """
        if window < 1:
            raise ValueError("window must be positive")
        self._window = window
        self._tool_window = tool_window
        self._min_samples = min_samples_for_reliability
        self._default_reliability = default_reliability
        self._slow_p95_ms = slow_p95_ms
        self._clock = clock

        self._series_lock = threading.Lock()
        self._series: dict[str, _ModelSeries] = {}

        self._tool_lock = threading.Lock()
        self._tool_records: dict[str, deque[OutcomeRecord]] = {}

        self._request_lock = threading.Lock()
        self._started_at = clock()
        self._active_requests = 0
        self._total_requests = 0
        self._peak_active_requests = 0

    @property
    def window(self) -> int:
        return self._window

    # ------------------------------------------------------------------ #
    # Invocation outcomes
    # ------------------------------------------------------------------ #

    def start_invocation(self, model_id: str, tool: str = "direct") -> InvocationHandle:
        return InvocationHandle(model_id=model_id, tool=tool, started_at=self._clock())

    def end_invocation(
        self,
        handle: InvocationHandle,
        success: bool,
        error: ProviderErrorKind | None = None,
        latency_ms: float | None = None,
    ) -> OutcomeRecord:
        """Close an invocation handle and record its outcome.

        Args:
            handle: Handle from start_invocation
            success: Whether the attempt succeeded
            error: Error kind for failed attempts
            latency_ms: Override for the measured elapsed time

        Returns:
            The appended OutcomeRecord

        Raises:
            ValueError: If the handle was already ended
        """
        if handle.ended:
            raise ValueError(f"Invocation handle for {handle.model_id} already ended")
        handle.ended = True

        if latency_ms is None:
            latency_ms = (self._clock() - handle.started_at) * 1000
        record = OutcomeRecord(
            model_id=handle.model_id,
            tool=handle.tool,
            latency_ms=latency_ms,
            success=success,
            error=error,
        )

        series = self._series_for(handle.model_id)
        with series.lock:
            series.ring.append(record)
            series.total += 1

        with self._tool_lock:
            tool_ring = self._tool_records.get(handle.tool)
            if tool_ring is None:
                tool_ring = deque(maxlen=self._tool_window)
                self._tool_records[handle.tool] = tool_ring
            tool_ring.append(record)

        return record

    def _series_for(self, model_id: str) -> _ModelSeries:
        with self._series_lock:
            series = self._series.get(model_id)
            if series is None:
                series = _ModelSeries(ring=deque(maxlen=self._window))
                self._series[model_id] = series
            return series

    def _existing_series(self) -> dict[str, _ModelSeries]:
        with self._series_lock:
            return dict(self._series)

    def _snapshot(self, model_id: str) -> list[OutcomeRecord]:
        series = self._existing_series().get(model_id)
        if series is None:
            return []
        with series.lock:
            return list(series.ring)

    # ------------------------------------------------------------------ #
    # Derived statistics
    # ------------------------------------------------------------------ #

    def get_stats(self, model_id: str) -> ModelStats:
        """Latency percentiles and error rate over the model's current window."""
        records = self._snapshot(model_id)
        if not records:
            return ModelStats(p50_ms=0.0, p95_ms=0.0, error_rate=0.0, sample_count=0, success_count=0)

        latencies = sorted(r.latency_ms for r in records)
        successes = sum(1 for r in records if r.success)
        return ModelStats(
            p50_ms=_percentile(latencies, 50),
            p95_ms=_percentile(latencies, 95),
            error_rate=1 - successes / len(records),
            sample_count=len(records),
            success_count=successes,
        )

    def reliability(self, model_id: str) -> float:
        """Observed success rate, or the prior until enough samples exist."""
        stats = self.get_stats(model_id)
        if stats.sample_count < self._min_samples:
            return self._default_reliability
        return stats.success_count / stats.sample_count

    def has_enough_samples(self, model_id: str) -> bool:
        return self.record_count(model_id) >= self._min_samples

    def record_count(self, model_id: str) -> int:
        return len(self._snapshot(model_id))

    def total_recorded(self, model_id: str | None = None) -> int:
        """Outcomes ever recorded for one model, or for all models."""
        series = self._existing_series()
        if model_id is not None:
            series = {model_id: series[model_id]} if model_id in series else {}
        total = 0
        for entry in series.values():
            with entry.lock:
                total += entry.total
        return total

    def tracked_models(self) -> list[str]:
        return list(self._existing_series())

    # ------------------------------------------------------------------ #
    # Request lifecycle
    # ------------------------------------------------------------------ #

    def start_request(self) -> None:
        with self._request_lock:
            self._active_requests += 1
            self._total_requests += 1
            self._peak_active_requests = max(self._peak_active_requests, self._active_requests)

    def end_request(self) -> None:
        with self._request_lock:
            self._active_requests = max(0, self._active_requests - 1)

    def get_system_metrics(self) -> SystemMetrics:
        with self._request_lock:
            return SystemMetrics(
                uptime_seconds=self._clock() - self._started_at,
                active_requests=self._active_requests,
                total_requests=self._total_requests,
                peak_active_requests=self._peak_active_requests,
            )

    def get_tool_metrics(self) -> dict[str, ToolMetrics]:
        with self._tool_lock:
            snapshot = {tool: list(ring) for tool, ring in self._tool_records.items()}

        metrics: dict[str, ToolMetrics] = {}
        for tool, records in snapshot.items():
            count = len(records)
            errors = sum(1 for r in records if not r.success)
            metrics[tool] = ToolMetrics(
                count=count,
                average_latency_ms=sum(r.latency_ms for r in records) / count,
                error_rate=errors / count,
            )
        return metrics

    def insights(self, error_rate_threshold: float = 0.1) -> list[str]:
        """Human-readable warnings about slow or failing models."""
        insights: list[str] = []
        slow: list[str] = []
        failing: list[str] = []
        for model_id in self.tracked_models():
            stats = self.get_stats(model_id)
            if stats.p95_ms > self._slow_p95_ms:
                slow.append(model_id)
            if stats.error_rate > error_rate_threshold:
                failing.append(f"{model_id} ({stats.error_rate:.0%})")

        if slow:
            insights.append(f"Slow models detected: {', '.join(slow)}")
        if failing:
            insights.append(f"High error rate models: {', '.join(failing)}")
        return insights

    def reset(self) -> None:
        """Drop all records and counters. Used for testing."""
        with self._series_lock:
            self._series = {}
        with self._tool_lock:
            self._tool_records.clear()
        with self._request_lock:
            self._started_at = self._clock()
            self._active_requests = 0
            self._total_requests = 0
            self._peak_active_requests = 0
        log.debug("performance_monitor.reset")
