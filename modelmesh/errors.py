"""Error taxonomy for the gateway.

Provider errors are classified into four kinds by the provider adapter.
The invoker retries TRANSIENT and RATE_LIMITED kinds, the fallback chain
advances past any kind, and only total exhaustion or an unsatisfiable
budget reaches the caller.
"""

from __future__ import annotations

from enum import StrEnum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from modelmesh.orchestration.types import InvocationResult, OrchestrationRun


class ProviderErrorKind(StrEnum):
    """Classification of a failed provider call."""

    TRANSIENT = "transient"
    RATE_LIMITED = "rate_limited"
    CONTENT_POLICY = "content_policy"
    PERMANENT = "permanent"


class GatewayError(Exception):
    """Base exception for all gateway failures."""


# ------------------------------------------------------------------ #
# Provider errors
# ------------------------------------------------------------------ #


class ProviderError(GatewayError):
    """A remote model call failed."""

    kind: ProviderErrorKind = ProviderErrorKind.PERMANENT
    retryable: bool = False

    def __init__(self, message: str, *, model_id: str | None = None) -> None:
        super().__init__(message)
        self.model_id = model_id


class TransientProviderError(ProviderError):
    """Network failure, 5xx, or an expired deadline. Worth retrying."""

    kind = ProviderErrorKind.TRANSIENT
    retryable = True


class RateLimitError(ProviderError):
    """Upstream rate limit. Retried after ``retry_after`` seconds when known."""

    kind = ProviderErrorKind.RATE_LIMITED
    retryable = True

    def __init__(
        self,
        message: str,
        *,
        model_id: str | None = None,
        retry_after: float | None = None,
    ) -> None:
        super().__init__(message, model_id=model_id)
        self.retry_after = retry_after


class ContentPolicyError(ProviderError):
    """The provider refused the content. Never retried on the same model."""

    kind = ProviderErrorKind.CONTENT_POLICY


class PermanentProviderError(ProviderError):
    """Authentication, bad request or unknown model. Never retried."""

    kind = ProviderErrorKind.PERMANENT


# ------------------------------------------------------------------ #
# Routing / orchestration errors
# ------------------------------------------------------------------ #


class ModelNotFoundError(GatewayError, KeyError):
    """A model id is not present in the registry."""

    def __init__(self, model_id: str) -> None:
        super().__init__(model_id)
        self.model_id = model_id

    def __str__(self) -> str:
        return f"Model {self.model_id!r} is not registered"


class NoEligibleModelError(GatewayError):
    """No registered model satisfies the capability or latency constraints."""


class BudgetExceededError(GatewayError):
    """No candidate model fits the per-call cost cap or the remaining budget."""

    def __init__(
        self,
        message: str,
        *,
        remaining: float | None = None,
        cheapest_estimate: float | None = None,
    ) -> None:
        super().__init__(message)
        self.remaining = remaining
        self.cheapest_estimate = cheapest_estimate


class AllModelsFailedError(GatewayError):
    """Every model of a fallback chain or fan-out failed.

    Attributes:
        failures: Failed invocation results, one per attempted model
        run: Partial orchestration run when raised by a strategy
    """

    def __init__(
        self,
        message: str,
        failures: list[InvocationResult] | None = None,
        run: OrchestrationRun | None = None,
    ) -> None:
        super().__init__(message)
        self.failures = failures or []
        self.run = run

    def summary(self) -> list[dict[str, Any]]:
        return [
            {
                "model_id": f.model_id,
                "error": f.error.value if f.error else None,
                "message": f.error_message,
            }
            for f in self.failures
        ]


class ToolNotFoundError(GatewayError, KeyError):
    """A tool name is not registered in the lazy tool registry."""

    def __init__(self, name: str) -> None:
        super().__init__(name)
        self.name = name

    def __str__(self) -> str:
        return f"Tool {self.name!r} is not registered"


class InvalidStateTransitionError(GatewayError):
    """A state machine was asked to make a transition it does not allow."""
