"""
Gateway configuration via pydantic-settings.

All settings are loaded from environment variables (or a .env file in dev).
Routing weights, retry policy, concurrency limits and strategy defaults live
here so nothing is hardcoded in the routing or orchestration layers.
"""

from __future__ import annotations

from enum import StrEnum
from functools import lru_cache

from pydantic import Field, SecretStr, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Environment(StrEnum):
    DEV = "dev"
    PROD = "prod"
    TEST = "test"


class VotingRule(StrEnum):
    """How consensus ballots are tallied."""

    WEIGHTED = "weighted"  # each ballot weighted by the voter's reliability
    MAJORITY = "majority"  # one ballot, one vote


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ------------------------------------------------------------------ #
    # Application
    # ------------------------------------------------------------------ #
    environment: Environment = Environment.DEV
    debug: bool = False
    log_level: str = Field(default="INFO", description="Minimum structlog level")
    json_logs: bool = Field(
        default=False,
        description="Render logs as JSON (production) instead of console output",
    )
    setup_logging: bool = Field(
        default=True,
        description="Configure structlog in build_orchestrator unless already configured",
    )

    # ------------------------------------------------------------------ #
    # LiteLLM provider adapter
    # ------------------------------------------------------------------ #
    litellm_base_url: str | None = Field(
        default=None,
        description="Optional LiteLLM proxy base URL. None calls providers directly.",
    )
    litellm_api_key: SecretStr = Field(
        default=SecretStr("sk-dev-key"),
        description="API key forwarded to LiteLLM",
    )
    max_output_tokens: int = Field(default=2048, ge=1, description="Per-call output cap")

    # ------------------------------------------------------------------ #
    # Invocation: concurrency, deadlines, retries
    # ------------------------------------------------------------------ #
    max_concurrent_invocations: int = Field(
        default=5,
        ge=1,
        le=256,
        description="Global limit on simultaneous in-flight provider calls",
    )
    invocation_timeout_seconds: float = Field(
        default=60.0,
        gt=0,
        description="Default per-invocation deadline, retries included",
    )
    max_retries: int = Field(
        default=2,
        ge=0,
        le=10,
        description="Retries after the first attempt for transient/rate-limited errors",
    )
    retry_base_delay_seconds: float = Field(default=1.0, ge=0)
    retry_max_delay_seconds: float = Field(default=10.0, ge=0)

    # ------------------------------------------------------------------ #
    # Performance monitoring
    # ------------------------------------------------------------------ #
    performance_window: int = Field(
        default=100,
        ge=1,
        description="Ring-buffer capacity of outcome records kept per model",
    )
    tool_history_window: int = Field(default=1000, ge=1)
    min_samples_for_reliability: int = Field(
        default=10,
        ge=1,
        description="Outcomes required before observed success rate replaces the prior",
    )
    default_reliability: float = Field(default=0.9, ge=0.0, le=1.0)
    error_rate_deprioritize_threshold: float = Field(
        default=0.5,
        ge=0.0,
        le=1.0,
        description="Models at or above this error rate move to the end of a route",
    )
    slow_model_p95_ms: float = Field(default=5000.0, gt=0)

    # ------------------------------------------------------------------ #
    # Routing / cost optimisation
    # ------------------------------------------------------------------ #
    score_weight_reliability: float = Field(default=0.5, ge=0.0)
    score_weight_cost: float = Field(default=0.3, ge=0.0)
    score_weight_latency: float = Field(default=0.2, ge=0.0)
    default_input_tokens: int = Field(
        default=1000,
        ge=1,
        description="Input token estimate used when the caller gives none",
    )
    default_output_tokens: int = Field(default=500, ge=1)
    min_fallback_chain_length: int = Field(default=3, ge=1)
    routing_history_size: int = Field(default=1000, ge=1)

    # ------------------------------------------------------------------ #
    # Strategy defaults
    # ------------------------------------------------------------------ #
    default_fanout: int = Field(
        default=3,
        ge=1,
        description="Participants used by fan-out strategies when no models are given",
    )
    default_max_rounds: int = Field(default=3, ge=1, le=10)
    debate_convergence_threshold: float = Field(
        default=0.85,
        ge=0.0,
        le=1.0,
        description="Mean pairwise similarity at which a debate stops early",
    )
    consensus_voting: VotingRule = VotingRule.WEIGHTED
    hierarchical_max_depth: int = Field(default=2, ge=1, le=4)
    hierarchical_max_subtasks: int = Field(default=5, ge=1, le=10)
    synthesis_temperature: float = Field(default=0.3, ge=0.0, le=2.0)

    # ------------------------------------------------------------------ #
    # Derived / Computed
    # ------------------------------------------------------------------ #
    @model_validator(mode="after")
    def _set_debug_from_env(self) -> Settings:
        if self.environment == Environment.DEV:
            self.debug = True
        return self

    @model_validator(mode="after")
    def _validate_retry_delays(self) -> Settings:
        if self.retry_max_delay_seconds < self.retry_base_delay_seconds:
            raise ValueError("retry_max_delay_seconds must be >= retry_base_delay_seconds")
        return self

    @model_validator(mode="after")
    def _validate_production_secrets(self) -> Settings:
        """Refuse to start in production with the development API key."""
        if self.environment != Environment.PROD:
            return self

        _insecure_tokens: set[str] = {"changeme", "default", "test", "sk-dev-key"}
        litellm_key_val = self.litellm_api_key.get_secret_value().lower()
        if any(token in litellm_key_val for token in _insecure_tokens):
            raise ValueError(
                "PRODUCTION STARTUP BLOCKED -- LITELLM_API_KEY contains an insecure "
                "default value. Set a real API key for production."
            )
        return self

    @property
    def is_dev(self) -> bool:
        return self.environment in (Environment.DEV, Environment.TEST)

    @property
    def is_prod(self) -> bool:
        return self.environment == Environment.PROD


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return cached settings singleton."""
    return Settings()
