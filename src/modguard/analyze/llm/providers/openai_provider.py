from __future__ import annotations

import asyncio
from typing import Any, Callable, Optional

from ....config import ProviderConfig
from ....models import ProviderType
from .base import ProviderAdapter, ProviderResponse


def _chat_completion_response(response: Any, model: str) -> ProviderResponse:
    text = ""
    choices = getattr(response, "choices", None) or []
    if choices:
        message = getattr(choices[0], "message", None)
        text = getattr(message, "content", "") if message is not None else ""
        text = text or ""

    usage = getattr(response, "usage", None)
    input_tokens = int(getattr(usage, "prompt_tokens", 0) or 0) if usage else 0
    output_tokens = int(getattr(usage, "completion_tokens", 0) or 0) if usage else 0

    return ProviderResponse(
        content=text,
        input_tokens=input_tokens,
        output_tokens=output_tokens,
        model=str(getattr(response, "model", "") or model),
    )


class OpenAIProvider(ProviderAdapter):
    """OpenAI Chat Completions provider in JSON mode."""

    provider_type = ProviderType.OPENAI

    def __init__(
        self,
        config: ProviderConfig,
        api_key: str,
        *,
        client_getter: Optional[Callable[[], Any]] = None,
    ) -> None:
        super().__init__(config, api_key)
        self.base_url = config.base_url
        self._client_getter = client_getter

    @property
    def client(self):
        if self._client_getter is not None:
            return self._client_getter()
        if self._client is None:
            from openai import AsyncOpenAI

            kwargs = {"api_key": self.api_key, "max_retries": 0}
            if self.base_url:
                kwargs["base_url"] = self.base_url
            self._client = AsyncOpenAI(**kwargs)
        return self._client

    async def call(
        self,
        *,
        system: str,
        user: str,
        max_tokens: int,
        temperature: float,
        timeout: float,
    ) -> ProviderResponse:
        response = await asyncio.wait_for(
            self.client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": system},
                    {"role": "user", "content": user},
                ],
                max_tokens=max_tokens,
                temperature=temperature,
                response_format={"type": "json_object"},
            ),
            timeout=timeout,
        )
        return _chat_completion_response(response, self.model)
