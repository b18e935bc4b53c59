from __future__ import annotations

import json
import time
from dataclasses import replace
from typing import Callable, List, Optional, Sequence

from ..config import ModguardConfig
from ..constants import Keys
from ..logging import ModguardLogger
from ..models import AIQuestion, AnalysisResult, CacheEntry, CurrentContent
from ..store import KeyValueStore
from ..utils import sha256_hex, stable_hash

RiskClassifier = Callable[[AnalysisResult], bool]

INDEX_UPDATE_ATTEMPTS = 5


def content_fingerprint(content: CurrentContent) -> str:
    return stable_hash([content.subreddit, content.title, content.body])


def cache_key(request_key: str, questions: Sequence[AIQuestion], fingerprint: str) -> str:
    question_ids = sorted(q.id for q in questions)
    digest = sha256_hex(json.dumps([request_key, question_ids, fingerprint]).encode("utf-8"))
    return f"{Keys.ANALYSIS}:{digest}"


def high_confidence_yes(threshold: int) -> RiskClassifier:
    """Flagged when any question is answered YES with at least ``threshold`` confidence."""

    def classify(result: AnalysisResult) -> bool:
        return any(a.answer == "YES" and a.confidence >= threshold for a in result.answers.values())

    return classify


class DifferentialCache:
    """Analysis results cached with a TTL chosen from risk and trust."""

    def __init__(
        self,
        store: KeyValueStore,
        *,
        ttl_high_trust_seconds: int = 48 * 3600,
        ttl_medium_trust_seconds: int = 24 * 3600,
        ttl_low_trust_seconds: int = 12 * 3600,
        ttl_high_risk_seconds: int = 7 * 24 * 3600,
        high_trust_min_score: int = 60,
        low_trust_max_score: int = 40,
        risk_classifier: Optional[RiskClassifier] = None,
        clock: Optional[Callable[[], float]] = None,
        logger: Optional[ModguardLogger] = None,
    ) -> None:
        self.store = store
        self.ttl_high_trust_seconds = ttl_high_trust_seconds
        self.ttl_medium_trust_seconds = ttl_medium_trust_seconds
        self.ttl_low_trust_seconds = ttl_low_trust_seconds
        self.ttl_high_risk_seconds = ttl_high_risk_seconds
        self.high_trust_min_score = high_trust_min_score
        self.low_trust_max_score = low_trust_max_score
        self.risk_classifier = risk_classifier or high_confidence_yes(80)
        self._clock = clock or time.time
        self.logger = logger or ModguardLogger(component="analysis_cache")

    @classmethod
    def from_config(
        cls,
        store: KeyValueStore,
        config: ModguardConfig,
        *,
        risk_classifier: Optional[RiskClassifier] = None,
        clock: Optional[Callable[[], float]] = None,
        logger: Optional[ModguardLogger] = None,
    ) -> "DifferentialCache":
        return cls(
            store,
            ttl_high_trust_seconds=config.cache_ttl_high_trust_seconds,
            ttl_medium_trust_seconds=config.cache_ttl_medium_trust_seconds,
            ttl_low_trust_seconds=config.cache_ttl_low_trust_seconds,
            ttl_high_risk_seconds=config.cache_ttl_high_risk_seconds,
            high_trust_min_score=config.high_trust_min_score,
            low_trust_max_score=config.low_trust_max_score,
            risk_classifier=risk_classifier or high_confidence_yes(config.high_risk_confidence),
            clock=clock,
            logger=logger,
        )

    def compute_ttl(self, trust_score: Optional[int], high_risk: bool) -> int:
        """
        Pure TTL policy.

        Known-bad outcomes keep the longest TTL since re-analysis adds little.
        Otherwise TTL grows with trust; an unknown score counts as borderline.
        """
        if high_risk:
            return self.ttl_high_risk_seconds
        if trust_score is None:
            return self.ttl_medium_trust_seconds
        if trust_score >= self.high_trust_min_score:
            return self.ttl_high_trust_seconds
        if trust_score >= self.low_trust_max_score:
            return self.ttl_medium_trust_seconds
        return self.ttl_low_trust_seconds

    def is_high_risk(self, result: AnalysisResult) -> bool:
        return self.risk_classifier(result)

    @staticmethod
    def index_key(request_key: str) -> str:
        return f"{Keys.ANALYSIS_INDEX}:{request_key}"

    async def get(self, key: str) -> Optional[AnalysisResult]:
        raw = await self.store.get(key)
        if raw is None:
            return None
        try:
            entry = CacheEntry.from_dict(json.loads(raw))
        except (ValueError, KeyError, TypeError) as exc:
            self.logger.warning("Corrupt cache entry removed", key=key, error=str(exc))
            await self.store.delete(key)
            return None
        if self._clock() >= entry.expires_at:
            return None
        return entry.value

    async def put(
        self,
        key: str,
        result: AnalysisResult,
        *,
        trust_score: Optional[int] = None,
        request_key: Optional[str] = None,
    ) -> AnalysisResult:
        """
        Write ``result`` with its computed TTL and return the stored copy.

        With ``request_key`` the entry is also recorded in that key's index so
        ``invalidate_request`` can find it later.
        """
        ttl = self.compute_ttl(trust_score, self.is_high_risk(result))
        stored = replace(result, cached_ttl_seconds=ttl)
        entry = CacheEntry(key=key, value=stored, expires_at=self._clock() + ttl)
        await self.store.set(key, json.dumps(entry.to_dict(), sort_keys=True), ttl_seconds=ttl)
        if request_key:
            await self._add_to_index(request_key, key)
        self.logger.debug("Cache entry written", key=key, ttl_seconds=ttl)
        return stored

    async def invalidate(self, key: str) -> None:
        await self.store.delete(key)
        self.logger.info("Cache entry invalidated", key=key)

    async def indexed_keys(self, request_key: str) -> List[str]:
        return self._decode_index(await self.store.get(self.index_key(request_key)))

    async def invalidate_request(self, request_key: str) -> int:
        """Delete every indexed entry for ``request_key``; returns how many keys were dropped."""
        keys = await self.indexed_keys(request_key)
        for key in keys:
            await self.store.delete(key)
        await self.store.delete(self.index_key(request_key))
        self.logger.info("Cache entries invalidated for request key", request_key=request_key, count=len(keys))
        return len(keys)

    async def _add_to_index(self, request_key: str, key: str) -> None:
        # Every entry expires no later than the high-risk TTL, so the index
        # lives that long from its latest write.
        index_key = self.index_key(request_key)
        for _ in range(INDEX_UPDATE_ATTEMPTS):
            raw = await self.store.get(index_key)
            keys = self._decode_index(raw)
            if key not in keys:
                keys.append(key)
            if await self.store.compare_and_set(
                index_key, raw, json.dumps(keys), ttl_seconds=self.ttl_high_risk_seconds
            ):
                return
        self.logger.warning("Cache index update lost to concurrent writers", request_key=request_key, key=key)

    def _decode_index(self, raw: Optional[str]) -> List[str]:
        if raw is None:
            return []
        try:
            keys = json.loads(raw)
        except ValueError:
            keys = None
        if not isinstance(keys, list):
            self.logger.warning("Corrupt cache index ignored")
            return []
        return [str(k) for k in keys]
