from __future__ import annotations

from typing import Optional

from .models import FailureKind, UnavailableReason


class ModguardError(Exception):
    """Base exception for all modguard errors."""

    reason: UnavailableReason = UnavailableReason.PROVIDERS_UNAVAILABLE


class ConfigurationError(ModguardError):
    """No usable provider configuration; fail fast at entry."""

    reason = UnavailableReason.CONFIGURATION


class StoreError(ModguardError):
    """The shared key-value store could not complete an operation."""

    reason = UnavailableReason.STORE


class ProviderError(ModguardError):
    """A provider call failed."""

    def __init__(
        self,
        message: str = "",
        *,
        provider: Optional[str] = None,
        kind: FailureKind = FailureKind.PROVIDER_ERROR,
    ) -> None:
        super().__init__(message)
        self.provider = provider
        self.kind = kind

    @property
    def retryable(self) -> bool:
        return self.kind.retryable


class TransientProviderError(ProviderError):
    """Timeout, network error, rate limit or 5xx. Retried with backoff."""


class CircuitOpenError(ProviderError):
    """Circuit is OPEN for the provider; the call was not dispatched."""

    def __init__(self, provider: str, retry_in_seconds: float = 0.0) -> None:
        super().__init__(
            f"Circuit breaker is OPEN for provider {provider}. "
            f"Retry in {max(0, int(retry_in_seconds + 0.999))}s",
            provider=provider,
            kind=FailureKind.CIRCUIT_OPEN,
        )
        self.retry_in_seconds = retry_in_seconds


class ResponseValidationError(ProviderError):
    """Provider output failed schema validation. Counts as a provider failure."""

    reason = UnavailableReason.VALIDATION

    def __init__(self, message: str, *, provider: Optional[str] = None, errors: Optional[list[str]] = None) -> None:
        super().__init__(message, provider=provider, kind=FailureKind.VALIDATION)
        self.errors = list(errors or [])


class BudgetExceededError(ModguardError):
    """Spend ceiling reached. Hard stop, no retry."""

    reason = UnavailableReason.BUDGET

    def __init__(self, spent: float, estimate: float, limit: float, period: str = "daily") -> None:
        super().__init__(
            f"{period} budget exceeded: ${spent:.4f} spent + ${estimate:.4f} "
            f"estimated > ${limit:.4f} limit"
        )
        self.spent = spent
        self.estimate = estimate
        self.limit = limit
        self.period = period


class AllProvidersUnavailableError(ModguardError):
    """Every eligible provider failed, was open, or the attempt cap was hit."""

    reason = UnavailableReason.PROVIDERS_UNAVAILABLE

    def __init__(self, message: str, *, last_failure: Optional[FailureKind] = None) -> None:
        super().__init__(message)
        self.last_failure = last_failure


class DeadlineExceededError(ModguardError):
    """The overall processing deadline elapsed before a result was ready."""

    reason = UnavailableReason.TIMEOUT
