from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Optional, Sequence

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError

from ...constants import Limits
from ...logging import ModguardLogger
from ...models import AIAnswer


class _AnswerPayload(BaseModel):
    model_config = ConfigDict(extra="ignore")

    question_id: str = Field(validation_alias=AliasChoices("questionId", "question_id"), min_length=1)
    answer: Literal["YES", "NO"]
    confidence: int = Field(ge=0, le=100, strict=True)
    reasoning: str = Field(default="", max_length=Limits.MAX_REASONING_LENGTH)


@dataclass
class ValidationOutcome:
    valid: bool
    answers: Dict[str, AIAnswer] = field(default_factory=dict)
    missing_question_ids: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    @property
    def error_summary(self) -> str:
        return "; ".join(self.errors[:5])


class ResponseValidator:
    """Type and range check raw provider output against the answer schema."""

    def __init__(self, logger: Optional[ModguardLogger] = None) -> None:
        self.logger = logger or ModguardLogger(component="response_validator")

    def validate(
        self,
        raw: str,
        question_ids: Sequence[str],
        *,
        lenient: bool = False,
    ) -> ValidationOutcome:
        """
        Validate provider text for the requested question ids.

        Strict mode rejects the whole batch on any violation. Lenient mode
        keeps the answers that validated and reports the rest as missing;
        it is still invalid when nothing validated.
        """
        requested = list(dict.fromkeys(question_ids))
        errors: List[str] = []

        payload = self._parse(raw, errors)
        if payload is None:
            return ValidationOutcome(valid=False, missing_question_ids=requested, errors=errors)

        items = payload.get("answers")
        if not isinstance(items, list):
            errors.append("'answers' must be a list")
            return ValidationOutcome(valid=False, missing_question_ids=requested, errors=errors)

        wanted = set(requested)
        answers: Dict[str, AIAnswer] = {}
        duplicates: set[str] = set()
        unknown: List[str] = []

        for index, item in enumerate(items):
            try:
                parsed = _AnswerPayload.model_validate(item)
            except ValidationError as exc:
                errors.append(f"answer {index}: {self._describe(exc)}")
                continue

            qid = parsed.question_id
            if qid not in wanted:
                unknown.append(qid)
                continue
            if qid in answers or qid in duplicates:
                duplicates.add(qid)
                answers.pop(qid, None)
                errors.append(f"duplicate answer for question {qid}")
                continue

            answers[qid] = AIAnswer(
                question_id=qid,
                answer=parsed.answer,
                confidence=parsed.confidence,
                reasoning=parsed.reasoning,
            )

        if unknown:
            self.logger.warning("Ignoring answers for unrequested questions", question_ids=unknown)

        missing = [qid for qid in requested if qid not in answers]
        for qid in missing:
            if qid not in duplicates:
                errors.append(f"missing answer for question {qid}")

        if lenient:
            return ValidationOutcome(
                valid=bool(answers),
                answers=answers,
                missing_question_ids=missing,
                errors=errors,
            )

        if errors:
            return ValidationOutcome(valid=False, missing_question_ids=missing, errors=errors)
        return ValidationOutcome(valid=True, answers=answers)

    def _parse(self, raw: str, errors: List[str]) -> Optional[Dict[str, Any]]:
        content = self._extract_json_content(raw or "")
        if not content:
            errors.append("Empty response")
            return None
        try:
            parsed = json.loads(content)
        except json.JSONDecodeError as exc:
            errors.append(f"Invalid JSON - {exc}")
            return None
        if not isinstance(parsed, dict):
            errors.append("Response is not a JSON object")
            return None
        return parsed

    @staticmethod
    def _extract_json_content(text: str) -> str:
        """Extract JSON from a markdown code block if present."""
        match = re.search(r"```(?:json)?\s*\n(.*?)```", text, re.DOTALL)
        if match:
            return match.group(1).strip()
        stripped = text.strip()
        if stripped and not stripped.startswith("{"):
            start, end = stripped.find("{"), stripped.rfind("}")
            if start != -1 and end > start:
                return stripped[start : end + 1]
        return stripped

    @staticmethod
    def _describe(exc: ValidationError) -> str:
        parts = []
        for err in exc.errors():
            loc = ".".join(str(p) for p in err.get("loc", ()))
            parts.append(f"{loc}: {err.get('msg', 'invalid')}" if loc else err.get("msg", "invalid"))
        return ", ".join(parts)
