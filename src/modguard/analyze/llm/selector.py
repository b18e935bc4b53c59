from __future__ import annotations

import asyncio
from typing import Dict, Iterable, List, Optional, Sequence

from ...constants import Keys
from ...errors import StoreError
from ...logging import ModguardLogger
from ...models import ProviderType
from ...store import KeyValueStore
from ...utils import hash_bucket
from .circuit_breaker import CircuitBreaker
from .providers import ProviderAdapter

HEALTHY = "healthy"
UNHEALTHY = "unhealthy"


def _provider_name(value: object) -> str:
    if isinstance(value, ProviderType):
        return value.value
    return str(value)


class ProviderSelector:
    """Choose the next eligible provider for a request."""

    def __init__(
        self,
        providers: Sequence[ProviderAdapter],
        breaker: CircuitBreaker,
        store: KeyValueStore,
        *,
        health_cache_seconds: int = 300,
        health_check_timeout_seconds: float = 5.0,
        logger: Optional[ModguardLogger] = None,
    ) -> None:
        self.providers = sorted(providers, key=lambda p: p.config.priority)
        self.breaker = breaker
        self.store = store
        self.health_cache_seconds = health_cache_seconds
        self.health_check_timeout_seconds = health_check_timeout_seconds
        self.logger = logger or ModguardLogger(component="provider_selector")

    @staticmethod
    def _health_key(provider: str) -> str:
        return f"{Keys.HEALTH}:{provider}"

    async def is_healthy(self, provider: str) -> bool:
        """Cached health only; a missing or unreadable entry counts as healthy."""
        try:
            status = await self.store.get(self._health_key(provider))
        except StoreError as exc:
            self.logger.warning("Health status unreadable; assuming healthy", provider=provider, error=str(exc))
            return True
        return status != UNHEALTHY

    async def eligible(self, excluded: Iterable[object] = ()) -> List[ProviderAdapter]:
        """Enabled, untried, healthy providers whose circuit admits calls, by priority."""
        skip = {_provider_name(e) for e in excluded}
        candidates: List[ProviderAdapter] = []
        for provider in self.providers:
            if not provider.config.enabled or provider.name in skip:
                continue
            if await self.breaker.is_open(provider.name):
                self.logger.debug("Provider skipped", provider=provider.name, reason="circuit_open")
                continue
            if not await self.is_healthy(provider.name):
                self.logger.debug("Provider skipped", provider=provider.name, reason="unhealthy")
                continue
            candidates.append(provider)
        return candidates

    async def select(
        self,
        excluded: Iterable[object] = (),
        request_key: Optional[str] = None,
    ) -> Optional[ProviderAdapter]:
        """
        Return the next provider, or None when every provider is exhausted.

        When A/B routing is active (an eligible provider has ``ab_weight``),
        a hash of ``request_key`` picks among the weighted eligible providers.
        Ineligible providers are removed before the pick, so a weighted
        provider with an OPEN circuit hands its share to the other weighted
        candidates; with none left, selection falls back to priority order.
        """
        candidates = await self.eligible(excluded)
        if not candidates:
            return None

        weighted = [p for p in candidates if p.config.ab_weight > 0]
        if request_key and weighted:
            total = sum(p.config.ab_weight for p in weighted)
            bucket = hash_bucket(request_key, buckets=total)
            cumulative = 0
            for provider in weighted:
                cumulative += provider.config.ab_weight
                if bucket < cumulative:
                    return provider

        return candidates[0]

    async def refresh_health(self) -> Dict[str, bool]:
        """Probe every enabled provider out-of-band and cache the results."""
        enabled = [p for p in self.providers if p.config.enabled]

        async def probe(provider: ProviderAdapter) -> bool:
            try:
                return await provider.health_check(timeout=self.health_check_timeout_seconds)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                self.logger.warning("Health check failed", provider=provider.name, error=str(exc))
                return False

        results = await asyncio.gather(*(probe(p) for p in enabled))
        statuses: Dict[str, bool] = {}
        for provider, healthy in zip(enabled, results):
            statuses[provider.name] = healthy
            await self.store.set(
                self._health_key(provider.name),
                HEALTHY if healthy else UNHEALTHY,
                ttl_seconds=self.health_cache_seconds,
            )
        self.logger.info("Provider health refreshed", statuses=statuses)
        return statuses
