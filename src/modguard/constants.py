from __future__ import annotations

from enum import Enum


class ExitCode(int, Enum):
    """Process exit codes."""

    SUCCESS = 0
    ERROR = 2
    UNAVAILABLE = 3


class Limits:
    """Shared hard limits."""

    MAX_CONTENT_LENGTH = 5_000
    MAX_REASONING_LENGTH = 1_000
    MAX_HISTORY_ITEMS = 20
    MAX_QUESTIONS_PER_BATCH = 20
    MAX_QUESTION_LENGTH = 500


class Keys:
    """Key prefixes in the shared store."""

    ANALYSIS = "analysis"
    ANALYSIS_INDEX = "analysis:index"
    INFLIGHT = "ai:inflight"
    CIRCUIT = "circuit"
    HEALTH = "health"
    COST_DAILY = "cost:daily"
    COST_MONTHLY = "cost:monthly"
    COST_ARCHIVE = "cost:archive"
    BUDGET_ALERT = "budget:alert"
    PROMPT_METRICS = "prompt:metrics"


DAY_SECONDS = 86_400
