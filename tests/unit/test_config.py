from __future__ import annotations

import pytest
from pydantic import ValidationError

from modguard.config import BudgetConfig, ModguardConfig, ProviderConfig
from modguard.models import ProviderType


def test_defaults() -> None:
    config = ModguardConfig()

    assert config.redis_url == "redis://localhost:6379/0"
    assert config.budget.daily_limit_usd == 5.00
    assert config.budget.monthly_limit_usd == 150.00
    assert config.budget.alert_thresholds == [50, 75, 90, 100]
    assert config.circuit_failure_threshold == 5
    assert config.circuit_success_threshold == 2
    assert config.circuit_cooldown_seconds == 30.0
    assert config.call_timeout_seconds == 10.0
    assert config.lock_ttl_seconds == 60
    assert config.processing_deadline_seconds == 45.0
    assert [p.type for p in config.providers] == [
        ProviderType.CLAUDE,
        ProviderType.OPENAI,
        ProviderType.OPENAI_COMPATIBLE,
    ]


def test_reads_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("MODGUARD_ANTHROPIC_API_KEY", "sk-ant-test")
    monkeypatch.setenv("MODGUARD_BUDGET__DAILY_LIMIT_USD", "2.5")
    monkeypatch.setenv("MODGUARD_CIRCUIT_FAILURE_THRESHOLD", "3")

    config = ModguardConfig()

    assert config.api_key_for(ProviderType.CLAUDE) == "sk-ant-test"
    assert config.budget.daily_limit_usd == 2.5
    assert config.circuit_failure_threshold == 3


def test_api_keys_are_secret() -> None:
    config = ModguardConfig(openai_api_key="sk-secret")
    assert "sk-secret" not in repr(config)
    assert config.api_key_for(ProviderType.OPENAI) == "sk-secret"


def test_rejects_duplicate_provider_types() -> None:
    with pytest.raises(ValidationError, match="duplicate provider type"):
        ModguardConfig(
            providers=[
                ProviderConfig(type="claude", priority=1, model="a"),
                ProviderConfig(type="claude", priority=2, model="b"),
            ]
        )


def test_rejects_inconsistent_cache_ttls() -> None:
    with pytest.raises(ValidationError, match="longest cache TTL"):
        ModguardConfig(cache_ttl_high_risk_seconds=3600)


def test_rejects_lock_ttl_shorter_than_processing_deadline() -> None:
    with pytest.raises(ValidationError, match="lock_ttl_seconds must be >= processing_deadline_seconds"):
        ModguardConfig(lock_ttl_seconds=30, processing_deadline_seconds=45.0)

    config = ModguardConfig(lock_ttl_seconds=45, processing_deadline_seconds=45.0)
    assert config.lock_ttl_seconds == 45


def test_rejects_out_of_range_values() -> None:
    with pytest.raises(ValidationError):
        ProviderConfig(type="openai", priority=0, model="gpt-4o-mini")
    with pytest.raises(ValidationError):
        ProviderConfig(type="openai", model="gpt-4o-mini", ab_weight=101)
    with pytest.raises(ValidationError):
        BudgetConfig(alert_thresholds=[0])


def test_provider_type_is_normalized() -> None:
    provider = ProviderConfig(type=" OpenAI ", model="gpt-4o-mini")
    assert provider.type == ProviderType.OPENAI


def test_budget_thresholds_sorted_and_deduplicated() -> None:
    assert BudgetConfig(alert_thresholds=[90, 50, 90]).alert_thresholds == [50, 90]


def test_usable_providers_need_enabled_flag_and_key() -> None:
    config = ModguardConfig(
        anthropic_api_key="ak",
        openai_api_key="ok",
        compatible_api_key="dk",
        providers=[
            ProviderConfig(type="openai", priority=1, model="gpt-4o-mini"),
            ProviderConfig(type="claude", priority=2, model="claude-3-5-haiku-20241022"),
            ProviderConfig(type="openai-compatible", priority=3, enabled=False, model="deepseek-chat"),
        ],
    )

    assert [p.type for p in config.usable_providers()] == [ProviderType.OPENAI, ProviderType.CLAUDE]


def test_estimate_cost() -> None:
    provider = ProviderConfig(
        type="openai",
        model="gpt-4o-mini",
        cost_per_input_token=0.15 / 1_000_000,
        cost_per_output_token=0.60 / 1_000_000,
    )
    assert provider.estimate_cost(1000, 500) == pytest.approx(0.00045)
