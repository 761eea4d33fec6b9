"""Invocation primitive - one model call with retry, deadline and accounting.

Invoker.invoke never raises for provider failures. It returns an
InvocationResult whose ``success`` flag, ``error`` kind and ``attempts``
describe what happened, so callers (fallback chains, strategies) decide
whether to advance to another model.

Per invocation:
- Transient and rate-limited errors are retried with exponential backoff
  (tenacity), honouring a provider-supplied retry-after, up to max_retries
- Content-policy and permanent errors are never retried
- Every attempt holds a slot of the global concurrency limiter and runs
  under asyncio.timeout bounded by the invocation deadline; expiry is a
  transient error
- Every attempt is recorded in the PerformanceMonitor and Prometheus
- A success is charged to the UsageLedger and settles the budget
  reservation; a final failure releases it
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING

import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)
from tenacity.stop import stop_base
from tenacity.wait import wait_base

from modelmesh.agent.llm import CallParams, ProviderResponse
from modelmesh.errors import (
    PermanentProviderError,
    ProviderError,
    RateLimitError,
    TransientProviderError,
)
from modelmesh.orchestration.types import (
    AttemptState,
    InvocationResult,
    Role,
    check_attempt_transition,
)
from modelmesh.telemetry.prometheus import active_model_invocations, record_invocation

if TYPE_CHECKING:
    from modelmesh.agent.llm import ProviderAdapter
    from modelmesh.agent.model_router.budget import CostOptimizer, Reservation
    from modelmesh.agent.model_router.context import RoutingContext
    from modelmesh.agent.model_router.metrics import InvocationHandle
    from modelmesh.agent.model_router.registry import ModelDescriptor
    from modelmesh.config import Settings

log = structlog.get_logger(__name__)

THINKING_PREFIX = "Let me think through this step by step:\n\n"

_RETRYABLE = (TransientProviderError, RateLimitError)


class Deadline:
    """Point in monotonic time by which an invocation must finish.

    ``Deadline.after`` fixes the expiry immediately. ``Deadline.on_start``
    holds a time allowance whose clock starts at the first ``start()``, which
    the invoker calls once a concurrency slot is acquired, so queueing for a
    slot does not consume the allowance.
    """

    def __init__(
        self,
        expires_at: float | None,
        clock: Callable[[], float] = time.monotonic,
        *,
        seconds: float = 0.0,
    ) -> None:
        self._expires_at = expires_at
        self._seconds = seconds
        self._clock = clock

    @classmethod
    def after(cls, seconds: float, clock: Callable[[], float] = time.monotonic) -> Deadline:
        return cls(clock() + seconds, clock)

    @classmethod
    def on_start(cls, seconds: float, clock: Callable[[], float] = time.monotonic) -> Deadline:
        return cls(None, clock, seconds=seconds)

    @property
    def started(self) -> bool:
        return self._expires_at is not None

    def start(self) -> None:
        """Fix the expiry if it is not fixed yet. Later calls are no-ops."""
        if self._expires_at is None:
            self._expires_at = self._clock() + self._seconds

    def remaining(self) -> float:
        if self._expires_at is None:
            return self._seconds
        return max(0.0, self._expires_at - self._clock())

    @property
    def expired(self) -> bool:
        return self.remaining() <= 0


class _StopOnDeadline(stop_base):
    """Stop retrying once the deadline cannot accommodate another attempt."""

    def __init__(self, deadline: Deadline) -> None:
        self._deadline = deadline

    def __call__(self, retry_state: RetryCallState) -> bool:
        remaining = self._deadline.remaining()
        if remaining <= 0:
            return True
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        return isinstance(exc, RateLimitError) and (exc.retry_after or 0) >= remaining


class _BackoffWait(wait_base):
    """Exponential backoff, or the provider's retry-after, clamped to the deadline."""

    def __init__(self, base: float, maximum: float, deadline: Deadline) -> None:
        self._exponential = wait_exponential(multiplier=base, max=maximum)
        self._deadline = deadline

    def __call__(self, retry_state: RetryCallState) -> float:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        if isinstance(exc, RateLimitError) and exc.retry_after is not None:
            delay = exc.retry_after
        else:
            delay = self._exponential(retry_state)
        return max(0.0, min(delay, self._deadline.remaining()))


class Invoker:
    """Calls one model through the provider adapter with retry and accounting."""

    def __init__(
        self,
        provider: ProviderAdapter,
        context: RoutingContext,
        optimizer: CostOptimizer,
        settings: Settings,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        """Initialize the invoker.

        Args:
            provider: Adapter performing single remote calls
            context: Shared registry, ledger and performance monitor
            optimizer: Cost optimizer used to charge successful calls
            settings: Retry, timeout and concurrency configuration
            sleep: Backoff sleep (injectable for tests)
        """
        self._provider = provider
        self._context = context
        self._optimizer = optimizer
        self._settings = settings
        self._sleep = sleep
        self._limiter = asyncio.Semaphore(settings.max_concurrent_invocations)
        self._in_flight = 0
        self._peak_in_flight = 0

    @property
    def peak_in_flight(self) -> int:
        """Highest number of simultaneous provider calls observed."""
        return self._peak_in_flight

    def new_deadline(self, seconds: float | None = None) -> Deadline:
        """Per-invocation deadline whose clock starts once a slot is acquired."""
        return Deadline.on_start(seconds or self._settings.invocation_timeout_seconds)

    async def invoke(
        self,
        model_id: str,
        prompt: str,
        *,
        temperature: float = 0.7,
        deadline: Deadline | None = None,
        tool: str = "direct",
        role: Role = Role.DIRECT,
        reservation: Reservation | None = None,
        deep_reasoning: bool = False,
    ) -> InvocationResult:
        """Invoke one model, retrying transient failures.

        Args:
            model_id: Registered model id
            prompt: Prompt text
            temperature: Sampling temperature
            deadline: Absolute deadline; defaults to the configured timeout
            tool: Calling tool name, for per-tool metrics
            role: Why this invocation is made within a run
            reservation: Budget hold to settle on success or release on failure
            deep_reasoning: Prefix the prompt with a step-by-step preamble

        Returns:
            InvocationResult; ``success`` is False when every attempt failed

        Raises:
            ModelNotFoundError: If ``model_id`` is not registered
        """
        descriptor = self._context.registry.lookup(model_id)
        deadline = deadline or self.new_deadline()
        if deep_reasoning:
            prompt = THINKING_PREFIX + prompt
        params = CallParams(temperature=temperature, max_tokens=self._settings.max_output_tokens)

        result = InvocationResult(model_id=model_id, role=role)

        retrying = AsyncRetrying(
            retry=retry_if_exception_type(_RETRYABLE),
            stop=stop_after_attempt(self._settings.max_retries + 1) | _StopOnDeadline(deadline),
            wait=_BackoffWait(
                self._settings.retry_base_delay_seconds,
                self._settings.retry_max_delay_seconds,
                deadline,
            ),
            sleep=self._sleep,
            before_sleep=self._log_retry,
            reraise=True,
        )

        async def attempt_once() -> ProviderResponse:
            result.attempts += 1
            if result.attempts > 1:
                result.state = check_attempt_transition(result.state, AttemptState.RETRYING)
            return await self._attempt(descriptor, prompt, params, deadline, tool)

        try:
            response = await retrying(attempt_once)
        except ProviderError as exc:
            result.state = check_attempt_transition(result.state, AttemptState.FAILED)
            result.error = exc.kind
            result.error_message = str(exc)
            if reservation is not None:
                reservation.release()
            log.warning(
                "invoker.invocation_failed",
                model_id=model_id,
                role=role.value,
                error_kind=exc.kind.value,
                attempts=result.attempts,
                error_message=str(exc),
            )
            return result

        cost = self._optimizer.track_usage(model_id, response.input_tokens, response.output_tokens)
        if reservation is not None:
            reservation.settle(cost)

        result.state = check_attempt_transition(result.state, AttemptState.SUCCEEDED)
        result.success = True
        result.text = response.text
        result.input_tokens = response.input_tokens
        result.output_tokens = response.output_tokens
        result.latency_ms = response.latency_ms
        result.cost = cost

        log.info(
            "invoker.invocation_succeeded",
            model_id=model_id,
            role=role.value,
            attempts=result.attempts,
            latency_ms=round(response.latency_ms, 1),
            cost=cost,
        )
        return result

    async def _attempt(
        self,
        descriptor: ModelDescriptor,
        prompt: str,
        params: CallParams,
        deadline: Deadline,
        tool: str,
    ) -> ProviderResponse:
        model_id = descriptor.id
        if deadline.expired:
            raise TransientProviderError(
                f"{model_id} deadline expired before the call", model_id=model_id
            )

        async with self._limiter:
            deadline.start()
            if deadline.expired:
                raise TransientProviderError(
                    f"{model_id} deadline expired waiting for a slot", model_id=model_id
                )
            monitor = self._context.monitor
            handle = monitor.start_invocation(model_id, tool)
            started = time.perf_counter()
            self._in_flight += 1
            self._peak_in_flight = max(self._peak_in_flight, self._in_flight)
            active_model_invocations.inc()
            try:
                async with asyncio.timeout(deadline.remaining()):
                    response = await self._provider.call(model_id, prompt, params)
            except TimeoutError as exc:
                error = TransientProviderError(f"{model_id} exceeded its deadline", model_id=model_id)
                self._record_failure(handle, error, started)
                raise error from exc
            except ProviderError as exc:
                self._record_failure(handle, exc, started)
                raise
            except asyncio.CancelledError:
                self._record_failure(
                    handle,
                    TransientProviderError(f"{model_id} call was cancelled", model_id=model_id),
                    started,
                )
                raise
            except Exception as exc:
                error = PermanentProviderError(f"{model_id} call failed: {exc}", model_id=model_id)
                self._record_failure(handle, error, started)
                raise error from exc
            finally:
                self._in_flight -= 1
                active_model_invocations.dec()

        latency_ms = response.latency_ms or (time.perf_counter() - started) * 1000
        monitor.end_invocation(handle, success=True, latency_ms=latency_ms)
        record_invocation(
            model_id,
            "success",
            latency_ms / 1000,
            input_tokens=response.input_tokens,
            output_tokens=response.output_tokens,
            cost=descriptor.cost_for(response.input_tokens, response.output_tokens),
        )
        return response

    def _record_failure(self, handle: InvocationHandle, error: ProviderError, started: float) -> None:
        latency_ms = (time.perf_counter() - started) * 1000
        self._context.monitor.end_invocation(
            handle, success=False, error=error.kind, latency_ms=latency_ms
        )
        record_invocation(handle.model_id, error.kind.value, latency_ms / 1000)
        log.debug(
            "invoker.attempt_failed",
            model_id=handle.model_id,
            error_kind=error.kind.value,
            error_message=str(error),
        )

    @staticmethod
    def _log_retry(retry_state: RetryCallState) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        log.info(
            "invoker.retrying",
            attempt=retry_state.attempt_number,
            wait_seconds=round(retry_state.next_action.sleep, 3) if retry_state.next_action else 0,
            error_type=type(exc).__name__,
        )
