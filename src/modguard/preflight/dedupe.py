from __future__ import annotations

import asyncio
import json
import time
from typing import Awaitable, Callable, Optional, TypeVar

from ..config import ModguardConfig
from ..constants import Keys
from ..errors import StoreError
from ..logging import ModguardLogger
from ..models import InFlightLock
from ..store import KeyValueStore
from ..utils import json_dumps

T = TypeVar("T")


class RequestCoalescer:
    """
    Deduplicate concurrent analysis requests for the same request key.

    The first caller takes an in-flight lock with set-if-absent and computes;
    later callers poll for the published result with bounded backoff.

    Current policy: FAIL OPEN if the store is unavailable. A duplicate
    provider call costs less than blocking every request on the store.
    """

    def __init__(
        self,
        store: KeyValueStore,
        *,
        lock_ttl_seconds: int = 60,
        max_wait_seconds: float = 30.0,
        initial_delay_seconds: float = 0.5,
        backoff_multiplier: float = 1.5,
        max_delay_seconds: float = 1.0,
        clock: Optional[Callable[[], float]] = None,
        logger: Optional[ModguardLogger] = None,
    ) -> None:
        self.store = store
        self.lock_ttl_seconds = lock_ttl_seconds
        self.max_wait_seconds = max_wait_seconds
        self.initial_delay_seconds = initial_delay_seconds
        self.backoff_multiplier = backoff_multiplier
        self.max_delay_seconds = max_delay_seconds
        self._clock = clock or time.time
        self.logger = logger or ModguardLogger(component="request_coalescer")

    @classmethod
    def from_config(
        cls,
        store: KeyValueStore,
        config: ModguardConfig,
        *,
        clock: Optional[Callable[[], float]] = None,
        logger: Optional[ModguardLogger] = None,
    ) -> "RequestCoalescer":
        return cls(
            store,
            lock_ttl_seconds=config.lock_ttl_seconds,
            max_wait_seconds=config.coalesce_max_wait_seconds,
            initial_delay_seconds=config.coalesce_initial_delay_seconds,
            backoff_multiplier=config.coalesce_backoff_multiplier,
            max_delay_seconds=config.coalesce_max_delay_seconds,
            clock=clock,
            logger=logger,
        )

    @staticmethod
    def lock_key(key: str) -> str:
        return f"{Keys.INFLIGHT}:{key}"

    async def acquire_lock(
        self,
        key: str,
        correlation_id: str,
        ttl: Optional[int] = None,
        *,
        cache_key: str = "",
    ) -> bool:
        """
        True when this caller owns the computation for ``key``.

        ``cache_key`` names the result the owner will publish; waiters only
        coalesce onto an owner computing the same result.
        """
        ttl_seconds = ttl or self.lock_ttl_seconds
        now = self._clock()
        record = InFlightLock(
            key=key,
            correlation_id=correlation_id,
            started_at=now,
            expires_at=now + ttl_seconds,
            cache_key=cache_key,
        )
        try:
            acquired = await self.store.set_if_absent(
                self.lock_key(key), json_dumps(record.to_dict()), ttl_seconds
            )
        except StoreError as exc:
            self.logger.warning("Coalescer lock unavailable; failing open", key=key, error=str(exc))
            return True

        self.logger.debug("Coalescer lock attempted", key=key, acquired=acquired)
        return acquired

    async def release_lock(self, key: str, correlation_id: str) -> bool:
        """Delete the lock only while ``correlation_id`` still owns it."""
        lock_key = self.lock_key(key)
        try:
            raw = await self.store.get(lock_key)
            if raw is None:
                return False
            try:
                owner = json.loads(raw).get("correlation_id")
            except (ValueError, AttributeError):
                owner = None
            if owner != correlation_id:
                self.logger.warning("Coalescer lock held by another request", key=key, owner=owner)
                return False
            released = await self.store.delete_if_equals(lock_key, raw)
        except StoreError as exc:
            # The lock TTL expires it anyway.
            self.logger.warning("Coalescer lock release failed", key=key, error=str(exc))
            return False
        self.logger.debug("Coalescer lock released", key=key, released=released)
        return released

    async def get_in_flight(self, key: str) -> Optional[InFlightLock]:
        lock_key = self.lock_key(key)
        raw = await self.store.get(lock_key)
        if raw is None:
            return None
        try:
            data = json.loads(raw)
            return InFlightLock(
                key=str(data["key"]),
                correlation_id=str(data["correlation_id"]),
                started_at=float(data["started_at"]),
                expires_at=float(data["expires_at"]),
                cache_key=str(data.get("cache_key") or ""),
            )
        except (ValueError, KeyError, TypeError):
            self.logger.warning("Corrupt in-flight lock removed", key=key)
            await self.store.delete(lock_key)
            return None

    async def _lock_held(self, key: str) -> bool:
        try:
            return await self.get_in_flight(key) is not None
        except StoreError:
            return True

    async def wait_for_result(
        self,
        key: str,
        fetch: Callable[[], Awaitable[Optional[T]]],
        *,
        max_wait: Optional[float] = None,
        deadline: Optional[float] = None,
    ) -> Optional[T]:
        """
        Poll ``fetch`` until it yields a result, the wait bound passes, or the
        owner's lock disappears without a result. Returns None on timeout.

        ``deadline`` is an absolute time on this coalescer's clock. Giving up
        never touches the owner's computation.
        """
        start = self._clock()
        end = start + (self.max_wait_seconds if max_wait is None else max_wait)
        if deadline is not None:
            end = min(end, deadline)

        delay = self.initial_delay_seconds
        polls = 0
        while True:
            result = await fetch()
            polls += 1
            if result is not None:
                self.logger.debug("Coalesced result ready", key=key, polls=polls)
                return result

            now = self._clock()
            if now >= end:
                self.logger.warning(
                    "Coalesced wait timed out",
                    key=key,
                    waited_ms=int((now - start) * 1000),
                    polls=polls,
                )
                return None

            if not await self._lock_held(key):
                # The owner may have published between the fetch and the lock check.
                result = await fetch()
                if result is None:
                    self.logger.warning("In-flight owner finished without a result", key=key, polls=polls)
                return result

            await asyncio.sleep(min(delay, max(0.0, end - now)))
            delay = min(delay * self.backoff_multiplier, self.max_delay_seconds)

    async def wait_for_release(
        self,
        key: str,
        *,
        max_wait: Optional[float] = None,
        deadline: Optional[float] = None,
    ) -> bool:
        """
        Poll until the lock for ``key`` is gone. False when the wait bound
        passes first.

        Used by callers whose result differs from the owner's, so they can
        take the lock themselves once it is free.
        """
        start = self._clock()
        end = start + (self.max_wait_seconds if max_wait is None else max_wait)
        if deadline is not None:
            end = min(end, deadline)

        delay = self.initial_delay_seconds
        while await self._lock_held(key):
            now = self._clock()
            if now >= end:
                self.logger.warning(
                    "Timed out waiting for in-flight lock",
                    key=key,
                    waited_ms=int((now - start) * 1000),
                )
                return False
            await asyncio.sleep(min(delay, max(0.0, end - now)))
            delay = min(delay * self.backoff_multiplier, self.max_delay_seconds)
        return True
