from __future__ import annotations

from typing import Callable, Dict, List

from ....config import ModguardConfig, ProviderConfig
from ....models import ProviderType
from .anthropic_provider import AnthropicProvider
from .base import (
    ProviderAdapter,
    ProviderCallResult,
    ProviderResponse,
    classify_exception,
    classify_status,
)
from .compatible_provider import OpenAICompatibleProvider
from .openai_provider import OpenAIProvider

ProviderFactory = Callable[[ProviderConfig, str], ProviderAdapter]

PROVIDERS: Dict[ProviderType, ProviderFactory] = {
    ProviderType.CLAUDE: AnthropicProvider,
    ProviderType.OPENAI: OpenAIProvider,
    ProviderType.OPENAI_COMPATIBLE: OpenAICompatibleProvider,
}


def build_providers(config: ModguardConfig) -> List[ProviderAdapter]:
    """Adapters for every enabled provider with a configured API key, by priority."""
    return [PROVIDERS[p.type](p, config.api_key_for(p.type)) for p in config.usable_providers()]


__all__ = [
    "AnthropicProvider",
    "OpenAICompatibleProvider",
    "OpenAIProvider",
    "PROVIDERS",
    "ProviderAdapter",
    "ProviderCallResult",
    "ProviderFactory",
    "ProviderResponse",
    "build_providers",
    "classify_exception",
    "classify_status",
]
