from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

from ...constants import Keys, Limits
from ...models import AIQuestion, AnalysisContext, PostHistorySummary
from ...store import KeyValueStore
from ...utils import hash_bucket
from .sanitizer import ContentSanitizer

DEFAULT_PROMPT_VERSION = "custom-questions"

QUESTION_SYSTEM_PROMPT = """You are a content moderation AI analyzing a Reddit user's profile and posting history to answer specific questions about their behavior.

For each question:
- Provide a binary answer: YES or NO
- Include a confidence score from 0-100 (how certain are you?)
- Provide brief reasoning explaining your answer

Important:
- Answer ALL questions in the array
- Each answer must have: questionId, answer (YES/NO), confidence (0-100), and reasoning
- Base your answers on the user's profile, posting history, and current post
- Be objective and specific in your reasoning
- Only answer YES if you have reasonable confidence (typically 60+)
- Respond with a single JSON object and nothing else"""

OUTCOMES = ("correct", "false_positive", "false_negative")


@dataclass(frozen=True)
class PromptVersion:
    version: str
    system_prompt: str
    weight: int = 100
    enabled: bool = True


DEFAULT_PROMPT_VERSIONS: tuple[PromptVersion, ...] = (
    PromptVersion(version=DEFAULT_PROMPT_VERSION, system_prompt=QUESTION_SYSTEM_PROMPT),
)


@dataclass
class BuiltPrompt:
    system: str
    user: str
    version: str
    pii_removed: int = 0
    urls_removed: int = 0
    question_ids: List[str] = field(default_factory=list)


@dataclass
class PromptMetrics:
    version: str
    uses: int
    correct: int
    false_positives: int
    false_negatives: int

    @property
    def accuracy(self) -> float:
        total = self.correct + self.false_positives + self.false_negatives
        return self.correct / total if total else 0.0

    @property
    def false_positive_rate(self) -> float:
        total = self.correct + self.false_positives + self.false_negatives
        return self.false_positives / total if total else 0.0


class PromptBuilder:
    """Render a question batch and sanitized context into a provider-agnostic prompt."""

    def __init__(
        self,
        versions: Sequence[PromptVersion] = DEFAULT_PROMPT_VERSIONS,
        sanitizer: Optional[ContentSanitizer] = None,
    ) -> None:
        if not versions:
            raise ValueError("at least one prompt version is required")
        self.versions = list(versions)
        self.sanitizer = sanitizer or ContentSanitizer()

    def select_version(self, request_key: str) -> PromptVersion:
        """Deterministic weighted pick; the same key always gets the same version."""
        enabled = [v for v in self.versions if v.enabled and v.weight > 0]
        if not enabled:
            return self.versions[0]

        total = sum(v.weight for v in enabled)
        bucket = hash_bucket(request_key, buckets=total)
        cumulative = 0
        for version in enabled:
            cumulative += version.weight
            if bucket < cumulative:
                return version
        return enabled[-1]

    def build(
        self,
        questions: Sequence[AIQuestion],
        context: AnalysisContext,
        *,
        request_key: str,
        subreddit_context: str = "",
    ) -> BuiltPrompt:
        if not questions:
            raise ValueError("question batch is empty")
        if len(questions) > Limits.MAX_QUESTIONS_PER_BATCH:
            raise ValueError(
                f"question batch too large: {len(questions)} > {Limits.MAX_QUESTIONS_PER_BATCH}"
            )
        ids = [q.id for q in questions]
        if len(set(ids)) != len(ids):
            raise ValueError("question ids must be unique within a batch")

        version = self.select_version(request_key)

        title = self.sanitizer.sanitize(context.current.title)
        body = self.sanitizer.sanitize(context.current.body)
        history = self.sanitizer.sanitize(self.format_history(context.history))

        profile = context.profile
        sections = [
            "USER PROFILE:",
            f"- Username: {profile.username}",
            f"- Account age: {profile.account_age_days} days",
            f"- Total karma: {profile.total_karma}",
            f"- Email verified: {'Yes' if profile.email_verified else 'No'}",
            f"- Is moderator: {'Yes' if profile.is_moderator else 'No'}",
            "",
            f"POSTING HISTORY (last {Limits.MAX_HISTORY_ITEMS} posts/comments):",
            history.sanitized_content,
            "",
            "CURRENT POST:",
            f"Subreddit: {context.current.subreddit}",
            f"Title: {title.sanitized_content}",
            f"Body: {body.sanitized_content}",
        ]
        if subreddit_context:
            sections.extend(["", "COMMUNITY CONTEXT:", subreddit_context.strip()])

        sections.extend(["", "QUESTIONS:", self._format_questions(questions)])
        sections.extend(["", "RESPOND WITH JSON:", self._format_example(questions)])

        return BuiltPrompt(
            system=version.system_prompt,
            user="\n".join(sections),
            version=version.version,
            pii_removed=title.pii_removed + body.pii_removed + history.pii_removed,
            urls_removed=title.urls_removed + body.urls_removed + history.urls_removed,
            question_ids=ids,
        )

    @staticmethod
    def format_history(history: PostHistorySummary) -> str:
        recent = history.items[: Limits.MAX_HISTORY_ITEMS]
        if not recent:
            return "(No post history available)"
        return "\n\n".join(
            f"[{item.type.upper()} in r/{item.subreddit}] {item.content}" for item in recent
        )

    @staticmethod
    def _format_questions(questions: Sequence[AIQuestion]) -> str:
        blocks: List[str] = []
        for index, question in enumerate(questions, start=1):
            text = question.text[: Limits.MAX_QUESTION_LENGTH]
            block = f"{index}. Question ID: {question.id}\n   Question: {text}"
            if question.context:
                block += f"\n   Context: {question.context}"
            blocks.append(block)
        return "\n\n".join(blocks)

    @staticmethod
    def _format_example(questions: Sequence[AIQuestion]) -> str:
        answers = ",\n".join(
            "    {\n"
            f'      "questionId": "{q.id}",\n'
            '      "answer": "YES" or "NO",\n'
            '      "confidence": 0-100,\n'
            '      "reasoning": "brief explanation"\n'
            "    }"
            for q in questions
        )
        return '{\n  "answers": [\n' + answers + "\n  ]\n}"


class PromptMetricsRecorder:
    """Per-version outcome counters kept in the shared store."""

    def __init__(self, store: KeyValueStore) -> None:
        self.store = store

    @staticmethod
    def _key(version: str, field_name: str) -> str:
        return f"{Keys.PROMPT_METRICS}:{version}:{field_name}"

    async def record_use(self, version: str) -> None:
        await self.store.incr(self._key(version, "uses"))

    async def record_outcome(self, version: str, outcome: str) -> None:
        """Record a moderator-confirmed outcome for a prompt version."""
        if outcome not in OUTCOMES:
            raise ValueError(f"unknown outcome {outcome!r}; expected one of {', '.join(OUTCOMES)}")
        await self.store.incr(self._key(version, outcome))

    async def get_metrics(self, version: str) -> Optional[PromptMetrics]:
        values: Dict[str, int] = {}
        for name in ("uses",) + OUTCOMES:
            raw = await self.store.get(self._key(version, name))
            values[name] = int(raw) if raw else 0
        if not any(values.values()):
            return None
        return PromptMetrics(
            version=version,
            uses=values["uses"],
            correct=values["correct"],
            false_positives=values["false_positive"],
            false_negatives=values["false_negative"],
        )
