from __future__ import annotations

import logging
from typing import Dict, Mapping, Optional

import redis.asyncio as redis
from redis.exceptions import RedisError, WatchError

from ..errors import StoreError
from .base import KeyValueStore

logger = logging.getLogger(__name__)

_CAS_MAX_RETRIES = 16


def _ms(ttl_seconds: float) -> int:
    return max(1, int(ttl_seconds * 1000))


class RedisStore(KeyValueStore):
    """``KeyValueStore`` backed by Redis.

    Locks use SET NX PX, counter groups use a MULTI transaction, and
    compare-and-set uses WATCH/MULTI optimistic locking.
    """

    def __init__(self, client: redis.Redis) -> None:
        self.redis = client

    @classmethod
    def from_url(cls, url: str) -> "RedisStore":
        return cls(redis.from_url(url, decode_responses=True))

    async def get(self, key: str) -> Optional[str]:
        try:
            return await self.redis.get(key)
        except RedisError as exc:
            raise StoreError(f"get {key} failed: {exc}") from exc

    async def set(self, key: str, value: str, ttl_seconds: Optional[float] = None) -> None:
        try:
            if ttl_seconds is None:
                await self.redis.set(key, value)
            else:
                await self.redis.set(key, value, px=_ms(ttl_seconds))
        except RedisError as exc:
            raise StoreError(f"set {key} failed: {exc}") from exc

    async def set_if_absent(self, key: str, value: str, ttl_seconds: float) -> bool:
        try:
            result = await self.redis.set(key, value, nx=True, px=_ms(ttl_seconds))
        except RedisError as exc:
            raise StoreError(f"set_if_absent {key} failed: {exc}") from exc
        return bool(result)

    async def incr(self, key: str, amount: int = 1, ttl_seconds: Optional[float] = None) -> int:
        try:
            async with self.redis.pipeline(transaction=True) as pipe:
                pipe.incrby(key, amount)
                if ttl_seconds is not None:
                    pipe.pexpire(key, _ms(ttl_seconds))
                results = await pipe.execute()
        except RedisError as exc:
            raise StoreError(f"incr {key} failed: {exc}") from exc
        return int(results[0])

    async def incr_float_many(
        self,
        increments: Mapping[str, float],
        ttl_seconds: Optional[float] = None,
    ) -> Dict[str, float]:
        keys = list(increments)
        try:
            async with self.redis.pipeline(transaction=True) as pipe:
                for key in keys:
                    pipe.incrbyfloat(key, float(increments[key]))
                if ttl_seconds is not None:
                    for key in keys:
                        pipe.pexpire(key, _ms(ttl_seconds))
                results = await pipe.execute()
        except RedisError as exc:
            raise StoreError(f"incr_float_many failed: {exc}") from exc
        return {key: float(results[i]) for i, key in enumerate(keys)}

    async def compare_and_set(
        self,
        key: str,
        expected: Optional[str],
        value: str,
        ttl_seconds: Optional[float] = None,
    ) -> bool:
        try:
            async with self.redis.pipeline(transaction=True) as pipe:
                for _ in range(_CAS_MAX_RETRIES):
                    try:
                        await pipe.watch(key)
                        current = await pipe.get(key)
                        if current != expected:
                            await pipe.unwatch()
                            return False
                        pipe.multi()
                        if ttl_seconds is None:
                            pipe.set(key, value)
                        else:
                            pipe.set(key, value, px=_ms(ttl_seconds))
                        await pipe.execute()
                        return True
                    except WatchError:
                        logger.debug("compare_and_set contention on %s; retrying", key)
                        continue
        except RedisError as exc:
            raise StoreError(f"compare_and_set {key} failed: {exc}") from exc
        return False

    async def delete(self, key: str) -> None:
        try:
            await self.redis.delete(key)
        except RedisError as exc:
            raise StoreError(f"delete {key} failed: {exc}") from exc

    async def delete_if_equals(self, key: str, expected: str) -> bool:
        try:
            async with self.redis.pipeline(transaction=True) as pipe:
                for _ in range(_CAS_MAX_RETRIES):
                    try:
                        await pipe.watch(key)
                        current = await pipe.get(key)
                        if current != expected:
                            await pipe.unwatch()
                            return False
                        pipe.multi()
                        pipe.delete(key)
                        await pipe.execute()
                        return True
                    except WatchError:
                        continue
        except RedisError as exc:
            raise StoreError(f"delete_if_equals {key} failed: {exc}") from exc
        return False

    async def ttl(self, key: str) -> Optional[float]:
        try:
            remaining_ms = await self.redis.pttl(key)
        except RedisError as exc:
            raise StoreError(f"ttl {key} failed: {exc}") from exc
        if remaining_ms is None or remaining_ms < 0:
            return None
        return remaining_ms / 1000

    async def close(self) -> None:
        await self.redis.aclose()
