from __future__ import annotations

import json
import sys
from pathlib import Path
from typing import Callable, Iterable, List, Optional, Union

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

import pytest

from modguard.analyze.llm.providers.base import ProviderAdapter, ProviderResponse
from modguard.config import ModguardConfig, ProviderConfig
from modguard.models import (
    AIQuestion,
    AnalysisContext,
    AnalysisRequest,
    CurrentContent,
    PostHistoryItem,
    PostHistorySummary,
    ProviderType,
    UserProfile,
)
from modguard.store import MemoryStore

# 2025-10-09T08:53:20Z
START_TIME = 1_760_000_000.0


@pytest.fixture(params=["asyncio"])
def anyio_backend(request):
    """Restrict anyio tests to asyncio only (trio is not installed)."""
    return request.param


class FakeClock:
    def __init__(self, start: float = START_TIME) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


Scripted = Union[str, BaseException]


class ScriptedProvider(ProviderAdapter):
    """Provider that replays scripted responses; the last one repeats."""

    def __init__(
        self,
        config: ProviderConfig,
        script: Iterable[Scripted],
        *,
        cost_per_call: Optional[float] = None,
        input_tokens: int = 100,
        output_tokens: int = 50,
    ) -> None:
        super().__init__(config, api_key="test-key")
        self.script: List[Scripted] = list(script)
        self.cost_per_call = cost_per_call
        self.input_tokens = input_tokens
        self.output_tokens = output_tokens
        self.calls = 0
        self.prompts: List[str] = []

    async def call(self, *, system, user, max_tokens, temperature, timeout) -> ProviderResponse:
        self.calls += 1
        self.prompts.append(user)
        item = self.script[min(self.calls - 1, len(self.script) - 1)]
        if isinstance(item, BaseException):
            raise item
        return ProviderResponse(
            content=item,
            input_tokens=self.input_tokens,
            output_tokens=self.output_tokens,
            model=self.config.model,
        )

    def estimate_cost(self, tokens_in: int, tokens_out: int) -> float:
        if self.cost_per_call is not None:
            return self.cost_per_call
        return super().estimate_cost(tokens_in, tokens_out)


def answers_json(
    question_ids: Iterable[str],
    answer: str = "NO",
    confidence: object = 70,
    reasoning: str = "No concerning signals in history",
) -> str:
    return json.dumps(
        {
            "answers": [
                {"questionId": qid, "answer": answer, "confidence": confidence, "reasoning": reasoning}
                for qid in question_ids
            ]
        }
    )


def provider_config(provider_type: ProviderType, priority: int, **overrides) -> ProviderConfig:
    data = {
        "type": provider_type,
        "priority": priority,
        "model": f"{provider_type.value}-test-model",
        "cost_per_input_token": 0.000001,
        "cost_per_output_token": 0.000002,
    }
    data.update(overrides)
    return ProviderConfig(**data)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store(clock: FakeClock) -> MemoryStore:
    return MemoryStore(clock=clock)


@pytest.fixture
def config() -> ModguardConfig:
    return ModguardConfig(
        providers=[
            provider_config(ProviderType.CLAUDE, 1),
            provider_config(ProviderType.OPENAI, 2),
        ],
        retry_initial_delay_seconds=0.0,
        retry_max_delay_seconds=0.0,
        coalesce_initial_delay_seconds=0.01,
        coalesce_max_delay_seconds=0.02,
        call_timeout_seconds=2.0,
    )


@pytest.fixture
def make_provider() -> Callable[..., ScriptedProvider]:
    def _make(provider_type: ProviderType, priority: int, script: Iterable[Scripted], **kwargs) -> ScriptedProvider:
        overrides = kwargs.pop("config", {})
        return ScriptedProvider(provider_config(provider_type, priority, **overrides), script, **kwargs)

    return _make


@pytest.fixture
def questions() -> List[AIQuestion]:
    return [
        AIQuestion(id="dating_intent", text="Is this user seeking romantic relationships?"),
        AIQuestion(id="age_appropriate", text="Does this user appear to be over 40 years old?"),
    ]


@pytest.fixture
def context() -> AnalysisContext:
    return AnalysisContext(
        profile=UserProfile(
            user_id="t2_user1",
            username="friendly_hiker",
            account_age_days=400,
            total_karma=1200,
            email_verified=True,
        ),
        history=PostHistorySummary(
            items=[
                PostHistoryItem(type="post", subreddit="hiking", content="Great trail this weekend"),
                PostHistoryItem(type="comment", subreddit="FriendsOver40", content="Happy to chat about books"),
            ],
            total_posts=1,
            total_comments=1,
        ),
        current=CurrentContent(
            title="Looking for hiking friends",
            body="Anyone near Denver? Email me at hiker@example.com",
            subreddit="FriendsOver40",
        ),
    )


@pytest.fixture
def make_request(questions: List[AIQuestion], context: AnalysisContext) -> Callable[..., AnalysisRequest]:
    def _make(request_key: str = "t2_user1", correlation_id: str = "corr-1", **kwargs) -> AnalysisRequest:
        kwargs.setdefault("questions", questions)
        kwargs.setdefault("context", context)
        return AnalysisRequest(correlation_id=correlation_id, request_key=request_key, **kwargs)

    return _make


@pytest.fixture
def answers() -> Callable[..., str]:
    return answers_json
