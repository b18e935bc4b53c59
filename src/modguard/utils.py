from __future__ import annotations

import hashlib
import json
from datetime import datetime, timedelta, timezone
from typing import Any, Iterable


def sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def json_dumps(obj: Any) -> str:
    return json.dumps(obj, sort_keys=True, separators=(",", ":"))


def stable_hash(parts: Iterable[str]) -> str:
    """Hash an ordered sequence of strings without separator ambiguity."""
    return sha256_hex(json_dumps(list(parts)).encode("utf-8"))


def hash_bucket(value: str, buckets: int = 100) -> int:
    """Deterministically map a string to [0, buckets)."""
    digest = sha256_hex(value.encode("utf-8"))
    return int(digest[:8], 16) % buckets


def utc_datetime(ts: float) -> datetime:
    return datetime.fromtimestamp(ts, tz=timezone.utc)


def day_key(ts: float) -> str:
    return utc_datetime(ts).strftime("%Y-%m-%d")


def previous_day_key(ts: float) -> str:
    return (utc_datetime(ts) - timedelta(days=1)).strftime("%Y-%m-%d")


def month_key(ts: float) -> str:
    return utc_datetime(ts).strftime("%Y-%m")
