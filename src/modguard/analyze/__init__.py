"""Analysis orchestration: caching, provider failover and validation."""

from .cache import DifferentialCache, cache_key, content_fingerprint, high_confidence_yes
from .orchestrator import AnalysisOrchestrator, AnalysisOutcome

__all__ = [
    "AnalysisOrchestrator",
    "AnalysisOutcome",
    "DifferentialCache",
    "cache_key",
    "content_fingerprint",
    "high_confidence_yes",
]
