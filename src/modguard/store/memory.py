from __future__ import annotations

import asyncio
import time
from typing import Callable, Dict, Mapping, Optional, Tuple

from ..errors import StoreError
from .base import KeyValueStore

Clock = Callable[[], float]


class MemoryStore(KeyValueStore):
    """Single-process store for local runs and tests.

    Mirrors the Redis semantics the rest of the package relies on; state is
    not visible to other processes.
    """

    def __init__(self, clock: Optional[Clock] = None) -> None:
        self._clock = clock or time.time
        self._data: Dict[str, Tuple[str, Optional[float]]] = {}
        self._lock = asyncio.Lock()

    def _live(self, key: str) -> Optional[Tuple[str, Optional[float]]]:
        entry = self._data.get(key)
        if entry is None:
            return None
        _, expires_at = entry
        if expires_at is not None and self._clock() >= expires_at:
            self._data.pop(key, None)
            return None
        return entry

    def _expiry(self, ttl_seconds: Optional[float]) -> Optional[float]:
        if ttl_seconds is None:
            return None
        return self._clock() + ttl_seconds

    async def get(self, key: str) -> Optional[str]:
        async with self._lock:
            entry = self._live(key)
            return entry[0] if entry else None

    async def set(self, key: str, value: str, ttl_seconds: Optional[float] = None) -> None:
        async with self._lock:
            self._data[key] = (value, self._expiry(ttl_seconds))

    async def set_if_absent(self, key: str, value: str, ttl_seconds: float) -> bool:
        async with self._lock:
            if self._live(key) is not None:
                return False
            self._data[key] = (value, self._expiry(ttl_seconds))
            return True

    async def incr(self, key: str, amount: int = 1, ttl_seconds: Optional[float] = None) -> int:
        async with self._lock:
            entry = self._live(key)
            current, expires_at = entry if entry else ("0", None)
            try:
                new_value = int(current) + amount
            except ValueError as exc:
                raise StoreError(f"value at {key} is not an integer") from exc
            if ttl_seconds is not None:
                expires_at = self._expiry(ttl_seconds)
            self._data[key] = (str(new_value), expires_at)
            return new_value

    async def incr_float_many(
        self,
        increments: Mapping[str, float],
        ttl_seconds: Optional[float] = None,
    ) -> Dict[str, float]:
        async with self._lock:
            staged: Dict[str, Tuple[str, Optional[float]]] = {}
            results: Dict[str, float] = {}
            for key, amount in increments.items():
                entry = self._live(key)
                current, expires_at = entry if entry else ("0", None)
                try:
                    new_value = float(current) + float(amount)
                except ValueError as exc:
                    raise StoreError(f"value at {key} is not a number") from exc
                if ttl_seconds is not None:
                    expires_at = self._expiry(ttl_seconds)
                staged[key] = (repr(new_value), expires_at)
                results[key] = new_value
            self._data.update(staged)
            return results

    async def compare_and_set(
        self,
        key: str,
        expected: Optional[str],
        value: str,
        ttl_seconds: Optional[float] = None,
    ) -> bool:
        async with self._lock:
            entry = self._live(key)
            current = entry[0] if entry else None
            if current != expected:
                return False
            self._data[key] = (value, self._expiry(ttl_seconds))
            return True

    async def delete(self, key: str) -> None:
        async with self._lock:
            self._data.pop(key, None)

    async def delete_if_equals(self, key: str, expected: str) -> bool:
        async with self._lock:
            entry = self._live(key)
            if entry is None or entry[0] != expected:
                return False
            del self._data[key]
            return True

    async def ttl(self, key: str) -> Optional[float]:
        async with self._lock:
            entry = self._live(key)
            if entry is None or entry[1] is None:
                return None
            return max(0.0, entry[1] - self._clock())

    def keys(self, prefix: str = "") -> list[str]:
        """Live keys with the given prefix (debugging and tests)."""
        return sorted(k for k in list(self._data) if k.startswith(prefix) and self._live(k) is not None)
