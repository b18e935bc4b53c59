from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Dict, Mapping, Optional


class KeyValueStore(ABC):
    """Atomic key-value contract shared by every worker.

    All cross-request coordination (locks, circuit state, budget counters,
    cache entries) goes through an implementation of this class. Operations
    raise ``StoreError`` when the backend cannot complete them.
    """

    @abstractmethod
    async def get(self, key: str) -> Optional[str]:
        """Return the value, or None when absent or expired."""

    @abstractmethod
    async def set(self, key: str, value: str, ttl_seconds: Optional[float] = None) -> None:
        """Unconditionally write ``value``; ``ttl_seconds`` of None keeps it forever."""

    @abstractmethod
    async def set_if_absent(self, key: str, value: str, ttl_seconds: float) -> bool:
        """Atomic SET NX with expiry. True when this call created the key."""

    @abstractmethod
    async def incr(self, key: str, amount: int = 1, ttl_seconds: Optional[float] = None) -> int:
        """Atomically add ``amount`` and return the new value.

        A given ``ttl_seconds`` refreshes the key's expiry.
        """

    @abstractmethod
    async def incr_float_many(
        self,
        increments: Mapping[str, float],
        ttl_seconds: Optional[float] = None,
    ) -> Dict[str, float]:
        """Apply every increment in one atomic round trip; return new values."""

    @abstractmethod
    async def compare_and_set(
        self,
        key: str,
        expected: Optional[str],
        value: str,
        ttl_seconds: Optional[float] = None,
    ) -> bool:
        """Write ``value`` only if the current value equals ``expected`` (None = absent)."""

    @abstractmethod
    async def delete(self, key: str) -> None:
        ...

    @abstractmethod
    async def delete_if_equals(self, key: str, expected: str) -> bool:
        """Delete the key only while it still holds ``expected``."""

    @abstractmethod
    async def ttl(self, key: str) -> Optional[float]:
        """Remaining lifetime in seconds; None when absent or persistent."""

    async def close(self) -> None:
        return None
