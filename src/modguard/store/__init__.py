"""Shared atomic key-value store backends."""

from .base import KeyValueStore
from .memory import MemoryStore
from .redis_store import RedisStore

__all__ = [
    "KeyValueStore",
    "MemoryStore",
    "RedisStore",
]
