from __future__ import annotations

import asyncio
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

import httpx

from ....config import ProviderConfig
from ....models import FailureKind, ProviderType

HEALTH_CHECK_PROMPT = "Say OK"
# JSON mode on OpenAI-style APIs rejects prompts that never mention JSON.
HEALTH_CHECK_SYSTEM = "You are a health check endpoint. Reply with the JSON object {\"status\": \"OK\"}."


@dataclass(frozen=True)
class ProviderResponse:
    content: str
    input_tokens: int
    output_tokens: int
    model: str


@dataclass
class ProviderCallResult:
    """Tagged outcome of one provider call. Adapters never raise past ``invoke``."""

    provider: str
    model: str
    success: bool
    content: str = ""
    input_tokens: int = 0
    output_tokens: int = 0
    cost_usd: float = 0.0
    latency_ms: int = 0
    failure_kind: Optional[FailureKind] = None
    error: Optional[str] = None

    @property
    def tokens_used(self) -> int:
        return self.input_tokens + self.output_tokens


def classify_exception(exc: BaseException) -> FailureKind:
    """Map SDK and transport exceptions onto a ``FailureKind``."""
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError, httpx.TimeoutException)):
        return FailureKind.TIMEOUT
    if isinstance(exc, httpx.HTTPStatusError):
        return classify_status(exc.response.status_code)

    status = getattr(exc, "status_code", None)
    if isinstance(status, int):
        return classify_status(status)

    # openai/anthropic raise their own APITimeoutError/APIConnectionError types
    name = type(exc).__name__
    if "Timeout" in name:
        return FailureKind.TIMEOUT
    if isinstance(exc, (httpx.TransportError, ConnectionError)) or "Connection" in name:
        return FailureKind.NETWORK
    return FailureKind.PROVIDER_ERROR


def classify_status(status: int) -> FailureKind:
    if status == 429:
        return FailureKind.RATE_LIMIT
    if status >= 500:
        return FailureKind.SERVER_ERROR
    if status >= 400:
        return FailureKind.CLIENT_ERROR
    return FailureKind.PROVIDER_ERROR


class ProviderAdapter(ABC):
    """Translate a built prompt into one vendor SDK call."""

    provider_type: ProviderType

    def __init__(self, config: ProviderConfig, api_key: str) -> None:
        self.config = config
        self.api_key = api_key
        self._client = None

    @property
    def name(self) -> str:
        return self.config.type.value

    @property
    def model(self) -> str:
        return self.config.model

    @abstractmethod
    async def call(
        self,
        *,
        system: str,
        user: str,
        max_tokens: int,
        temperature: float,
        timeout: float,
    ) -> ProviderResponse:
        """Make a single LLM call. Returns content + token usage."""

    def estimate_cost(self, tokens_in: int, tokens_out: int) -> float:
        """Estimate cost in USD from the configured per-token rates."""
        return self.config.estimate_cost(tokens_in, tokens_out)

    async def invoke(
        self,
        *,
        system: str,
        user: str,
        max_tokens: int,
        temperature: float,
        timeout: float,
    ) -> ProviderCallResult:
        start = time.time()
        try:
            response = await self.call(
                system=system,
                user=user,
                max_tokens=max_tokens,
                temperature=temperature,
                timeout=timeout,
            )
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            kind = classify_exception(exc)
            message = str(exc) or type(exc).__name__
            if kind == FailureKind.TIMEOUT:
                message = f"Timeout after {timeout}s"
            return ProviderCallResult(
                provider=self.name,
                model=self.model,
                success=False,
                latency_ms=int((time.time() - start) * 1000),
                failure_kind=kind,
                error=message,
            )

        latency_ms = int((time.time() - start) * 1000)
        if not response.content.strip():
            return ProviderCallResult(
                provider=self.name,
                model=response.model,
                success=False,
                input_tokens=response.input_tokens,
                output_tokens=response.output_tokens,
                cost_usd=self.estimate_cost(response.input_tokens, response.output_tokens),
                latency_ms=latency_ms,
                failure_kind=FailureKind.INVALID_RESPONSE,
                error="Empty response from provider",
            )

        return ProviderCallResult(
            provider=self.name,
            model=response.model,
            success=True,
            content=response.content,
            input_tokens=response.input_tokens,
            output_tokens=response.output_tokens,
            cost_usd=self.estimate_cost(response.input_tokens, response.output_tokens),
            latency_ms=latency_ms,
        )

    async def health_check(self, timeout: float = 5.0) -> bool:
        """Minimal round trip used by the out-of-band health probe."""
        result = await self.invoke(
            system=HEALTH_CHECK_SYSTEM,
            user=HEALTH_CHECK_PROMPT,
            max_tokens=10,
            temperature=0.0,
            timeout=timeout,
        )
        return result.success
