"""LLM analysis utilities."""

from .circuit_breaker import CircuitBreaker
from .prompt_builder import (
    BuiltPrompt,
    PromptBuilder,
    PromptMetrics,
    PromptMetricsRecorder,
    PromptVersion,
)
from .response_validator import ResponseValidator, ValidationOutcome
from .sanitizer import ContentSanitizer, SanitizationResult
from .selector import ProviderSelector

__all__ = [
    "BuiltPrompt",
    "CircuitBreaker",
    "ContentSanitizer",
    "PromptBuilder",
    "PromptMetrics",
    "PromptMetricsRecorder",
    "PromptVersion",
    "ProviderSelector",
    "ResponseValidator",
    "SanitizationResult",
    "ValidationOutcome",
]
