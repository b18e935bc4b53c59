from __future__ import annotations

import asyncio
import sys
import types
from types import SimpleNamespace
from unittest.mock import AsyncMock, patch

import httpx
import pytest

from modguard.analyze.llm.providers import (
    AnthropicProvider,
    OpenAICompatibleProvider,
    OpenAIProvider,
    build_providers,
    classify_exception,
)
from modguard.config import ModguardConfig, ProviderConfig
from modguard.models import FailureKind, ProviderType

def _chat_response(content: str, prompt_tokens: int = 12, completion_tokens: int = 3) -> SimpleNamespace:
    return SimpleNamespace(
        choices=[SimpleNamespace(message=SimpleNamespace(content=content))],
        usage=SimpleNamespace(prompt_tokens=prompt_tokens, completion_tokens=completion_tokens),
        model="gpt-4o-mini",
    )

def _openai_config(**overrides) -> ProviderConfig:
    data = {
        "type": "openai",
        "priority": 2,
        "model": "gpt-4o-mini",
        "cost_per_input_token": 0.15 / 1_000_000,
        "cost_per_output_token": 0.60 / 1_000_000,
    }
    data.update(overrides)
    return ProviderConfig(**data)

@pytest.mark.anyio
async def test_openai_provider_calls_chat_completions_in_json_mode() -> None:
    create_mock = AsyncMock(return_value=_chat_response('{"answers": []}'))
    fake_client = SimpleNamespace(chat=SimpleNamespace(completions=SimpleNamespace(create=create_mock)))

    provider = OpenAIProvider(_openai_config(), "sk-test", client_getter=lambda: fake_client)
    out = await provider.call(system="SYS", user="USER", max_tokens=123, temperature=0.2, timeout=10)

    create_mock.assert_awaited_once()
    kwargs = create_mock.call_args.kwargs
    assert kwargs["model"] == "gpt-4o-mini"
    assert kwargs["messages"] == [
        {"role": "system", "content": "SYS"},
        {"role": "user", "content": "USER"},
    ]
    assert kwargs["max_tokens"] == 123
    assert kwargs["temperature"] == 0.2
    assert kwargs["response_format"] == {"type": "json_object"}
    assert out.content == '{"answers": []}'
    assert out.input_tokens == 12
    assert out.output_tokens == 3

@pytest.mark.anyio
async def test_anthropic_provider_calls_messages_create(monkeypatch: pytest.MonkeyPatch) -> None:
    # Fake anthropic module with AsyncAnthropic client.
    messages_create = AsyncMock(
        return_value=SimpleNamespace(
            content=[SimpleNamespace(type="text", text="ok")],
            usage=SimpleNamespace(input_tokens=10, output_tokens=4),
            model="claude-3-5-haiku-20241022",
        )
    )

    class _AsyncAnthropic:
        def __init__(self, api_key: str, **kwargs):
            self.messages = SimpleNamespace(create=messages_create)

    fake_anthropic = types.SimpleNamespace(AsyncAnthropic=_AsyncAnthropic)
    monkeypatch.setitem(sys.modules, "anthropic", fake_anthropic)

    config = ProviderConfig(type="claude", priority=1, model="claude-3-5-haiku-20241022")
    provider = AnthropicProvider(config, "anthropic-key")
    out = await provider.call(system="SYS", user="USER", max_tokens=321, temperature=0.1, timeout=10)

    kwargs = messages_create.call_args.kwargs
    assert kwargs["model"] == "claude-3-5-haiku-20241022"
    assert kwargs["system"] == "SYS"
    assert kwargs["max_tokens"] == 321
    assert kwargs["messages"] == [{"role": "user", "content": "USER"}]
    assert out.content == "ok"
    assert out.input_tokens == 10
    assert out.output_tokens == 4

def test_compatible_provider_uses_configured_base_url() -> None:
    with patch("openai.AsyncOpenAI") as async_openai:
        async_openai.return_value = SimpleNamespace()
        config = ProviderConfig(type="openai-compatible", priority=3, model="deepseek-chat")
        provider = OpenAICompatibleProvider(config, "ds-key")

        # Force client initialization
        _ = provider.client
        async_openai.assert_called_once()
        assert async_openai.call_args.kwargs["base_url"] == "https://api.deepseek.com"

def test_compatible_provider_prefers_explicit_base_url() -> None:
    with patch("openai.AsyncOpenAI") as async_openai:
        async_openai.return_value = SimpleNamespace()
        config = ProviderConfig(
            type="openai-compatible", priority=3, model="local-model", base_url="http://localhost:8000/v1"
        )
        provider = OpenAICompatibleProvider(config, "local-key")

        _ = provider.client
        assert async_openai.call_args.kwargs["base_url"] == "http://localhost:8000/v1"

@pytest.mark.anyio
async def test_compatible_provider_shares_openai_chat_completions_call() -> None:
    create_mock = AsyncMock(return_value=_chat_response('{"answers": []}'))
    fake_client = SimpleNamespace(chat=SimpleNamespace(completions=SimpleNamespace(create=create_mock)))
    config = ProviderConfig(type="openai-compatible", priority=3, model="deepseek-chat")

    provider = OpenAICompatibleProvider(config, "ds-key", client_getter=lambda: fake_client)
    out = await provider.call(system="SYS", user="USER", max_tokens=64, temperature=0.3, timeout=10)

    assert isinstance(provider, OpenAIProvider)
    assert provider.name == "openai-compatible"
    assert create_mock.call_args.kwargs["model"] == "deepseek-chat"
    assert create_mock.call_args.kwargs["response_format"] == {"type": "json_object"}
    assert out.content == '{"answers": []}'

@pytest.mark.anyio
async def test_invoke_reports_success_with_cost() -> None:
    create_mock = AsyncMock(return_value=_chat_response("{}", prompt_tokens=1_000_000, completion_tokens=1_000_000))
    fake_client = SimpleNamespace(chat=SimpleNamespace(completions=SimpleNamespace(create=create_mock)))
    provider = OpenAIProvider(_openai_config(), "sk-test", client_getter=lambda: fake_client)

    result = await provider.invoke(system="S", user="U", max_tokens=10, temperature=0, timeout=5)

    assert result.success
    assert result.tokens_used == 2_000_000
    assert result.cost_usd == pytest.approx(0.75)
    assert result.failure_kind is None

@pytest.mark.anyio
async def test_invoke_converts_timeout_into_tagged_failure() -> None:
    async def slow(**_kwargs):
        await asyncio.sleep(1)

    fake_client = SimpleNamespace(chat=SimpleNamespace(completions=SimpleNamespace(create=slow)))
    provider = OpenAIProvider(_openai_config(), "sk-test", client_getter=lambda: fake_client)

    result = await provider.invoke(system="S", user="U", max_tokens=10, temperature=0, timeout=0.01)

    assert not result.success
    assert result.failure_kind == FailureKind.TIMEOUT
    assert "Timeout" in (result.error or "")

@pytest.mark.anyio
async def test_invoke_flags_empty_content_as_invalid_response() -> None:
    create_mock = AsyncMock(return_value=_chat_response("   "))
    fake_client = SimpleNamespace(chat=SimpleNamespace(completions=SimpleNamespace(create=create_mock)))
    provider = OpenAIProvider(_openai_config(), "sk-test", client_getter=lambda: fake_client)

    result = await provider.invoke(system="S", user="U", max_tokens=10, temperature=0, timeout=5)

    assert not result.success
    assert result.failure_kind == FailureKind.INVALID_RESPONSE

def test_classify_exception_maps_transport_and_status_errors() -> None:
    request = httpx.Request("POST", "https://api.example.com")

    def status_error(code: int) -> httpx.HTTPStatusError:
        return httpx.HTTPStatusError("boom", request=request, response=httpx.Response(code, request=request))

    assert classify_exception(asyncio.TimeoutError()) == FailureKind.TIMEOUT
    assert classify_exception(httpx.ReadTimeout("slow", request=request)) == FailureKind.TIMEOUT
    assert classify_exception(httpx.ConnectError("refused", request=request)) == FailureKind.NETWORK
    assert classify_exception(status_error(429)) == FailureKind.RATE_LIMIT
    assert classify_exception(status_error(503)) == FailureKind.SERVER_ERROR
    assert classify_exception(status_error(400)) == FailureKind.CLIENT_ERROR
    assert classify_exception(_SdkStatusError(500)) == FailureKind.SERVER_ERROR
    assert classify_exception(RuntimeError("unknown")) == FailureKind.PROVIDER_ERROR
    assert FailureKind.SERVER_ERROR.retryable
    assert not FailureKind.CLIENT_ERROR.retryable

class _SdkStatusError(Exception):
    def __init__(self, status_code: int) -> None:
        super().__init__(f"status {status_code}")
        self.status_code = status_code


@pytest.mark.anyio
async def test_health_check_uses_minimal_request() -> None:
    create_mock = AsyncMock(return_value=_chat_response('{"status": "OK"}'))
    fake_client = SimpleNamespace(chat=SimpleNamespace(completions=SimpleNamespace(create=create_mock)))
    provider = OpenAIProvider(_openai_config(), "sk-test", client_getter=lambda: fake_client)

    assert await provider.health_check(timeout=5)
    kwargs = create_mock.call_args.kwargs
    assert kwargs["max_tokens"] == 10
    assert kwargs["messages"][-1] == {"role": "user", "content": "Say OK"}

def test_build_providers_skips_disabled_and_keyless() -> None:
    config = ModguardConfig(
        anthropic_api_key="ak",
        openai_api_key="",
        compatible_api_key="dk",
    )

    adapters = build_providers(config)

    # default providers: claude (keyed), openai (no key), openai-compatible (disabled)
    assert [a.config.type for a in adapters] == [ProviderType.CLAUDE]
    assert isinstance(adapters[0], AnthropicProvider)
