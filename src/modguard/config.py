from __future__ import annotations

from typing import List, Optional

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    SecretStr,
    confloat,
    conint,
    field_validator,
    model_validator,
)
from pydantic_settings import BaseSettings, SettingsConfigDict

from .models import ProviderType


class ProviderConfig(BaseModel):
    """One interchangeable LLM provider. Read-only at request time."""

    model_config = ConfigDict(frozen=True, protected_namespaces=())

    type: ProviderType
    priority: conint(ge=1) = Field(default=1, description="1 = highest priority")
    enabled: bool = True
    model: str
    cost_per_input_token: confloat(ge=0) = 0.0
    cost_per_output_token: confloat(ge=0) = 0.0
    ab_weight: conint(ge=0, le=100) = Field(
        default=0,
        description="A/B traffic weight; A/B routing is active when any eligible provider has a weight",
    )
    base_url: Optional[str] = None

    @field_validator("type", mode="before")
    @classmethod
    def _normalize_type(cls, value: object) -> object:
        if isinstance(value, str):
            return value.strip().lower()
        return value

    def estimate_cost(self, tokens_in: int, tokens_out: int) -> float:
        return tokens_in * self.cost_per_input_token + tokens_out * self.cost_per_output_token


class BudgetConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    daily_limit_usd: confloat(ge=0) = 5.00
    monthly_limit_usd: confloat(ge=0) = 150.00
    alert_thresholds: List[conint(ge=1, le=100)] = Field(default_factory=lambda: [50, 75, 90, 100])

    @field_validator("alert_thresholds")
    @classmethod
    def _sort_thresholds(cls, value: List[int]) -> List[int]:
        return sorted(set(value))


def default_providers() -> List[ProviderConfig]:
    return [
        ProviderConfig(
            type=ProviderType.CLAUDE,
            priority=1,
            model="claude-3-5-haiku-20241022",
            cost_per_input_token=1.0 / 1_000_000,
            cost_per_output_token=5.0 / 1_000_000,
        ),
        ProviderConfig(
            type=ProviderType.OPENAI,
            priority=2,
            model="gpt-4o-mini",
            cost_per_input_token=0.15 / 1_000_000,
            cost_per_output_token=0.60 / 1_000_000,
        ),
        ProviderConfig(
            type=ProviderType.OPENAI_COMPATIBLE,
            priority=3,
            enabled=False,
            model="deepseek-chat",
            cost_per_input_token=0.27 / 1_000_000,
            cost_per_output_token=1.10 / 1_000_000,
            base_url="https://api.deepseek.com",
        ),
    ]


class ModguardConfig(BaseSettings):
    """Runtime configuration loaded from MODGUARD_* environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="MODGUARD_",
        env_nested_delimiter="__",
        frozen=True,
        extra="ignore",
        protected_namespaces=(),
    )

    # Store
    redis_url: str = Field(default="redis://localhost:6379/0")

    # Provider keys (BYO)
    anthropic_api_key: SecretStr = Field(default="", description="Required when the claude provider is enabled")
    openai_api_key: SecretStr = Field(default="", description="Required when the openai provider is enabled")
    compatible_api_key: SecretStr = Field(
        default="",
        description="Key for the OpenAI-compatible provider (DeepSeek by default)",
    )

    providers: List[ProviderConfig] = Field(default_factory=default_providers)
    budget: BudgetConfig = Field(default_factory=BudgetConfig)

    # Circuit breaker
    circuit_failure_threshold: conint(ge=1) = 5
    circuit_success_threshold: conint(ge=1) = 2
    circuit_cooldown_seconds: confloat(gt=0) = 30.0
    circuit_state_ttl_seconds: conint(ge=60) = 86_400

    # Provider calls
    call_timeout_seconds: confloat(gt=0) = 10.0
    max_attempts_per_provider: conint(ge=1) = 2
    max_total_attempts: conint(ge=1) = 4
    retry_initial_delay_seconds: confloat(ge=0) = 1.0
    retry_backoff_multiplier: confloat(ge=1) = 2.0
    retry_max_delay_seconds: confloat(ge=0) = 5.0
    max_output_tokens: conint(ge=64) = 1500
    temperature: confloat(ge=0, le=2) = 0.3
    health_check_timeout_seconds: confloat(gt=0) = 5.0
    health_cache_seconds: conint(ge=1) = 300

    # Coalescing
    lock_ttl_seconds: conint(ge=1) = 60
    coalesce_max_wait_seconds: confloat(gt=0) = 30.0
    coalesce_initial_delay_seconds: confloat(gt=0) = 0.5
    coalesce_backoff_multiplier: confloat(ge=1) = 1.5
    coalesce_max_delay_seconds: confloat(gt=0) = 1.0

    processing_deadline_seconds: confloat(gt=0) = 45.0

    # Cost
    estimated_cost_usd: confloat(ge=0) = 0.08

    # Differential cache
    cache_ttl_high_trust_seconds: conint(ge=60) = 48 * 3600
    cache_ttl_medium_trust_seconds: conint(ge=60) = 24 * 3600
    cache_ttl_low_trust_seconds: conint(ge=60) = 12 * 3600
    cache_ttl_high_risk_seconds: conint(ge=60) = 7 * 24 * 3600
    high_trust_min_score: conint(ge=0, le=100) = 60
    low_trust_max_score: conint(ge=0, le=100) = 40
    high_risk_confidence: conint(ge=0, le=100) = 80

    @model_validator(mode="after")
    def _validate(self) -> "ModguardConfig":
        seen: set[ProviderType] = set()
        for provider in self.providers:
            if provider.type in seen:
                raise ValueError(f"duplicate provider type: {provider.type.value}")
            seen.add(provider.type)

        if self.coalesce_max_delay_seconds < self.coalesce_initial_delay_seconds:
            raise ValueError("coalesce_max_delay_seconds must be >= coalesce_initial_delay_seconds")
        if self.low_trust_max_score > self.high_trust_min_score:
            raise ValueError("low_trust_max_score must be <= high_trust_min_score")
        if self.cache_ttl_high_risk_seconds < max(
            self.cache_ttl_high_trust_seconds,
            self.cache_ttl_medium_trust_seconds,
            self.cache_ttl_low_trust_seconds,
        ):
            raise ValueError("cache_ttl_high_risk_seconds must be the longest cache TTL")
        if self.lock_ttl_seconds < self.processing_deadline_seconds:
            # The owner must still hold the lock when its last provider call starts.
            raise ValueError("lock_ttl_seconds must be >= processing_deadline_seconds")
        return self

    def api_key_for(self, provider_type: ProviderType) -> str:
        if provider_type == ProviderType.CLAUDE:
            return self.anthropic_api_key.get_secret_value()
        if provider_type == ProviderType.OPENAI:
            return self.openai_api_key.get_secret_value()
        return self.compatible_api_key.get_secret_value()

    def usable_providers(self) -> List[ProviderConfig]:
        """Enabled providers that have an API key, ordered by priority."""
        usable = [p for p in self.providers if p.enabled and self.api_key_for(p.type)]
        return sorted(usable, key=lambda p: p.priority)
