from __future__ import annotations

import time
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, List, Literal, Optional

AnswerValue = Literal["YES", "NO"]
HistoryItemType = Literal["post", "comment"]


class ProviderType(str, Enum):
    """Interchangeable LLM providers."""

    CLAUDE = "claude"
    OPENAI = "openai"
    OPENAI_COMPATIBLE = "openai-compatible"


class CircuitState(str, Enum):
    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


class FailureKind(str, Enum):
    """Why a provider call did not yield a usable answer."""

    TIMEOUT = "timeout"
    NETWORK = "network"
    RATE_LIMIT = "rate_limit"
    SERVER_ERROR = "server_error"
    CLIENT_ERROR = "client_error"
    PROVIDER_ERROR = "provider_error"
    INVALID_RESPONSE = "invalid_response"
    VALIDATION = "validation"
    CIRCUIT_OPEN = "circuit_open"

    @property
    def retryable(self) -> bool:
        return self in _RETRYABLE_KINDS


_RETRYABLE_KINDS = frozenset(
    {
        FailureKind.TIMEOUT,
        FailureKind.NETWORK,
        FailureKind.RATE_LIMIT,
        FailureKind.SERVER_ERROR,
    }
)


class UnavailableReason(str, Enum):
    BUDGET = "budget"
    TIMEOUT = "timeout"
    PROVIDERS_UNAVAILABLE = "providers_unavailable"
    VALIDATION = "validation"
    CONFIGURATION = "configuration"
    STORE = "store"


@dataclass(frozen=True)
class AIQuestion:
    id: str
    text: str
    context: Optional[str] = None


@dataclass(frozen=True)
class AIAnswer:
    question_id: str
    answer: AnswerValue
    confidence: int
    reasoning: str

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AIAnswer":
        return cls(
            question_id=str(data["question_id"]),
            answer=data["answer"],
            confidence=int(data["confidence"]),
            reasoning=str(data.get("reasoning", "")),
        )


@dataclass
class UserProfile:
    user_id: str
    username: str
    account_age_days: int = 0
    total_karma: int = 0
    email_verified: bool = False
    is_moderator: bool = False


@dataclass
class PostHistoryItem:
    type: HistoryItemType
    subreddit: str
    content: str


@dataclass
class PostHistorySummary:
    items: List[PostHistoryItem] = field(default_factory=list)
    total_posts: int = 0
    total_comments: int = 0


@dataclass
class CurrentContent:
    title: str
    body: str
    subreddit: str


@dataclass
class AnalysisContext:
    """Profile, history and current content supplied by the profiling subsystem."""

    profile: UserProfile
    history: PostHistorySummary
    current: CurrentContent


@dataclass
class AnalysisRequest:
    correlation_id: str
    request_key: str
    questions: List[AIQuestion]
    context: AnalysisContext
    subreddit_context: str = ""
    trust_score: Optional[int] = None
    lenient: bool = False


@dataclass(frozen=True)
class AnalysisResult:
    correlation_id: str
    provider: str
    model: str
    answers: Dict[str, AIAnswer]
    tokens_used: int
    cost_usd: float
    latency_ms: int
    cached_ttl_seconds: int
    timestamp: float
    prompt_version: str = ""
    missing_question_ids: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AnalysisResult":
        answers = {
            qid: AIAnswer.from_dict(answer)
            for qid, answer in (data.get("answers") or {}).items()
        }
        return cls(
            correlation_id=str(data["correlation_id"]),
            provider=str(data["provider"]),
            model=str(data["model"]),
            answers=answers,
            tokens_used=int(data["tokens_used"]),
            cost_usd=float(data["cost_usd"]),
            latency_ms=int(data["latency_ms"]),
            cached_ttl_seconds=int(data["cached_ttl_seconds"]),
            timestamp=float(data["timestamp"]),
            prompt_version=str(data.get("prompt_version", "")),
            missing_question_ids=list(data.get("missing_question_ids") or []),
        )


@dataclass(frozen=True)
class Unavailable:
    """Explicit fallback signal; callers handle it conservatively."""

    reason: UnavailableReason
    correlation_id: str = ""
    detail: str = ""


@dataclass
class CircuitBreakerState:
    provider: str
    state: CircuitState = CircuitState.CLOSED
    failure_count: int = 0
    success_count: int = 0
    open_until: Optional[float] = None

    def remaining_cooldown(self, now: float) -> float:
        if self.state != CircuitState.OPEN or self.open_until is None:
            return 0.0
        return max(0.0, self.open_until - now)


@dataclass
class BudgetState:
    date: str
    daily_spent: float
    per_provider_daily_spent: Dict[str, float]
    monthly_spent: float
    alerts_fired_today: List[int]
    daily_limit: float
    monthly_limit: float

    @property
    def daily_percent(self) -> float:
        if self.daily_limit <= 0:
            return 0.0
        return self.daily_spent / self.daily_limit * 100

    @property
    def monthly_percent(self) -> float:
        if self.monthly_limit <= 0:
            return 0.0
        return self.monthly_spent / self.monthly_limit * 100


@dataclass
class InFlightLock:
    key: str
    correlation_id: str
    started_at: float
    expires_at: float
    cache_key: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class CostRecord:
    correlation_id: str
    provider: str
    request_key: str
    tokens_used: int
    cost_usd: float
    timestamp: float = field(default_factory=time.time)


@dataclass(frozen=True)
class CacheEntry:
    key: str
    value: AnalysisResult
    expires_at: float

    def to_dict(self) -> Dict[str, Any]:
        return {"key": self.key, "value": self.value.to_dict(), "expires_at": self.expires_at}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CacheEntry":
        return cls(
            key=str(data["key"]),
            value=AnalysisResult.from_dict(data["value"]),
            expires_at=float(data["expires_at"]),
        )
