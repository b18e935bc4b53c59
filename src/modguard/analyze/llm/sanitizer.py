from __future__ import annotations

import re
from dataclasses import dataclass
from typing import List, Tuple

from ...constants import Limits

TRUNCATION_SUFFIX = "... [truncated]"


@dataclass
class SanitizationResult:
    original_length: int
    sanitized_length: int
    pii_removed: int
    urls_removed: int
    sanitized_content: str


class ContentSanitizer:
    """Strip PII and truncate user content before it leaves the process.

    Replacement order runs most specific first (SSN, card, phone) so the
    looser patterns do not eat parts of a stricter match.
    """

    SSN = re.compile(r"\b\d{3}-\d{2}-\d{4}\b")
    CREDIT_CARD = re.compile(r"\b\d{4}[\s-]?\d{4}[\s-]?\d{4}[\s-]?\d{4}\b")
    PHONE = re.compile(r"\b\d{3}[-.]?\d{3}[-.]?\d{4}\b")
    EMAIL = re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b")
    URL = re.compile(r"https?://\S+")

    _REPLACEMENTS: Tuple[Tuple[re.Pattern[str], str], ...] = (
        (SSN, "[SSN]"),
        (CREDIT_CARD, "[CC]"),
        (PHONE, "[PHONE]"),
        (EMAIL, "[EMAIL]"),
        (URL, "[URL]"),
    )

    def __init__(self, max_length: int = Limits.MAX_CONTENT_LENGTH) -> None:
        self.max_length = max_length

    def sanitize(self, content: str) -> SanitizationResult:
        if not content:
            return SanitizationResult(0, 0, 0, 0, "")

        # Counted on the original text; URLs are tracked separately from PII.
        pii_removed = sum(
            len(pattern.findall(content))
            for pattern in (self.SSN, self.CREDIT_CARD, self.PHONE, self.EMAIL)
        )
        urls_removed = len(self.URL.findall(content))

        sanitized = content
        for pattern, placeholder in self._REPLACEMENTS:
            sanitized = pattern.sub(placeholder, sanitized)

        if len(sanitized) > self.max_length:
            sanitized = sanitized[: self.max_length] + TRUNCATION_SUFFIX

        return SanitizationResult(
            original_length=len(content),
            sanitized_length=len(sanitized),
            pii_removed=pii_removed,
            urls_removed=urls_removed,
            sanitized_content=sanitized,
        )

    def sanitize_many(self, items: List[str]) -> Tuple[List[str], SanitizationResult]:
        """Sanitize each item and aggregate the metrics."""
        if not items:
            return [], SanitizationResult(0, 0, 0, 0, "")

        results = [self.sanitize(item) for item in items]
        sanitized = [r.sanitized_content for r in results]
        aggregate = SanitizationResult(
            original_length=sum(r.original_length for r in results),
            sanitized_length=sum(r.sanitized_length for r in results),
            pii_removed=sum(r.pii_removed for r in results),
            urls_removed=sum(r.urls_removed for r in results),
            sanitized_content="\n".join(sanitized),
        )
        return sanitized, aggregate
