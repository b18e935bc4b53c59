from __future__ import annotations

from typing import Any, Callable, Optional

from ....config import ProviderConfig
from ....models import ProviderType
from .openai_provider import OpenAIProvider

DEFAULT_BASE_URL = "https://api.deepseek.com"


class OpenAICompatibleProvider(OpenAIProvider):
    """Provider behind an OpenAI-compatible Chat Completions API (DeepSeek by default)."""

    provider_type = ProviderType.OPENAI_COMPATIBLE

    def __init__(
        self,
        config: ProviderConfig,
        api_key: str,
        *,
        client_getter: Optional[Callable[[], Any]] = None,
    ) -> None:
        super().__init__(config, api_key, client_getter=client_getter)
        self.base_url = config.base_url or DEFAULT_BASE_URL
