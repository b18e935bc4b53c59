from __future__ import annotations

import asyncio

from ....models import ProviderType
from .base import ProviderAdapter, ProviderResponse


class AnthropicProvider(ProviderAdapter):
    """Anthropic Messages API provider."""

    provider_type = ProviderType.CLAUDE

    @property
    def client(self):
        if self._client is None:
            import anthropic

            self._client = anthropic.AsyncAnthropic(api_key=self.api_key, max_retries=0)
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
            self.client.messages.create(
                model=self.model,
                system=system,
                messages=[{"role": "user", "content": user}],
                max_tokens=max_tokens,
                temperature=temperature,
            ),
            timeout=timeout,
        )

        # content is a list of blocks; the answer is in the text blocks.
        content_blocks = getattr(response, "content", None) or []
        text = "".join(
            getattr(block, "text", "") or ""
            for block in content_blocks
            if getattr(block, "type", "text") == "text"
        )

        usage = getattr(response, "usage", None)
        input_tokens = int(getattr(usage, "input_tokens", 0) or 0) if usage else 0
        output_tokens = int(getattr(usage, "output_tokens", 0) or 0) if usage else 0

        return ProviderResponse(
            content=text,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            model=str(getattr(response, "model", "") or self.model),
        )
