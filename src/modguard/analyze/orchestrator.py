from __future__ import annotations

import asyncio
import time
from typing import Callable, Dict, List, Optional, Sequence, Tuple, Union

from ..config import ModguardConfig
from ..errors import (
    AllProvidersUnavailableError,
    CircuitOpenError,
    ConfigurationError,
    DeadlineExceededError,
    ModguardError,
    ProviderError,
    ResponseValidationError,
    StoreError,
    TransientProviderError,
)
from ..logging import ModguardLogger
from ..models import (
    AnalysisRequest,
    AnalysisResult,
    BudgetState,
    CostRecord,
    FailureKind,
    Unavailable,
    UnavailableReason,
)
from ..preflight import BudgetTracker, RequestCoalescer
from ..preflight.budget import AlertCallback
from ..store import KeyValueStore
from .cache import DifferentialCache, RiskClassifier, cache_key, content_fingerprint
from .llm import (
    BuiltPrompt,
    CircuitBreaker,
    PromptBuilder,
    PromptMetricsRecorder,
    ProviderSelector,
    ResponseValidator,
    ValidationOutcome,
)
from .llm.providers import ProviderAdapter, ProviderCallResult, build_providers

AnalysisOutcome = Union[AnalysisResult, Unavailable]


class AnalysisOrchestrator:
    """
    Single entry point that turns a question batch into validated answers.

    Sequence: cache lookup, coalescing lock, cache re-check, budget check,
    prompt build, provider failover under the circuit breaker, validation,
    cost recording, cache write, lock release. Every failure path ends in an
    ``Unavailable`` outcome; ``analyze`` never raises.
    """

    def __init__(
        self,
        config: ModguardConfig,
        store: KeyValueStore,
        *,
        providers: Optional[Sequence[ProviderAdapter]] = None,
        prompt_builder: Optional[PromptBuilder] = None,
        risk_classifier: Optional[RiskClassifier] = None,
        on_budget_alert: Optional[AlertCallback] = None,
        clock: Optional[Callable[[], float]] = None,
        logger: Optional[ModguardLogger] = None,
    ) -> None:
        self.config = config
        self.store = store
        self._clock = clock or time.time
        self.logger = logger or ModguardLogger(component="orchestrator")

        adapters = list(providers) if providers is not None else build_providers(config)
        self.breaker = CircuitBreaker.from_config(
            store, config, clock=self._clock, logger=self.logger.child("circuit_breaker")
        )
        self.selector = ProviderSelector(
            adapters,
            self.breaker,
            store,
            health_cache_seconds=config.health_cache_seconds,
            health_check_timeout_seconds=config.health_check_timeout_seconds,
            logger=self.logger.child("provider_selector"),
        )
        self.coalescer = RequestCoalescer.from_config(
            store, config, clock=self._clock, logger=self.logger.child("request_coalescer")
        )
        self.budget = BudgetTracker(
            store,
            config.budget,
            providers=[p.type.value for p in config.providers],
            on_alert=on_budget_alert,
            clock=self._clock,
            logger=self.logger.child("budget_tracker"),
        )
        self.cache = DifferentialCache.from_config(
            store,
            config,
            risk_classifier=risk_classifier,
            clock=self._clock,
            logger=self.logger.child("analysis_cache"),
        )
        self.prompt_builder = prompt_builder or PromptBuilder()
        self.prompt_metrics = PromptMetricsRecorder(store)
        self.validator = ResponseValidator(logger=self.logger.child("response_validator"))

    @property
    def providers(self) -> List[ProviderAdapter]:
        return self.selector.providers

    def cache_key_for(self, request: AnalysisRequest) -> str:
        return cache_key(
            request.request_key,
            request.questions,
            content_fingerprint(request.context.current),
        )

    async def analyze(self, request: AnalysisRequest) -> AnalysisOutcome:
        log = self.logger.bind(request.correlation_id)
        try:
            return await self._analyze(request, log)
        except ModguardError as exc:
            log.warning("Analysis unavailable", reason=exc.reason.value, error=str(exc))
            return Unavailable(exc.reason, request.correlation_id, str(exc))
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            log.error("Analysis failed unexpectedly", error=str(exc), error_type=type(exc).__name__)
            return Unavailable(
                UnavailableReason.PROVIDERS_UNAVAILABLE,
                request.correlation_id,
                f"unexpected error: {type(exc).__name__}",
            )

    async def _analyze(self, request: AnalysisRequest, log: ModguardLogger) -> AnalysisOutcome:
        if not self.providers:
            raise ConfigurationError("No LLM providers configured")
        if not request.questions:
            raise ConfigurationError("Analysis request has no questions")

        deadline = self._clock() + self.config.processing_deadline_seconds
        key = self.cache_key_for(request)

        with log.stage("cache_lookup"):
            cached = await self.cache.get(key)
        if cached is not None:
            log.info("Cache hit", provider=cached.provider, request_key=request.request_key)
            return cached

        while True:
            if self._clock() >= deadline:
                return Unavailable(
                    UnavailableReason.TIMEOUT,
                    request.correlation_id,
                    "processing deadline elapsed before the request key was free",
                )
            lock_expires_at = self._clock() + self.coalescer.lock_ttl_seconds
            if await self.coalescer.acquire_lock(request.request_key, request.correlation_id, cache_key=key):
                break

            holder = await self.coalescer.get_in_flight(request.request_key)
            if holder is None:
                # Released between our attempt and the read.
                continue

            if holder.cache_key != key:
                # Same request key, different questions or content: the owner
                # will not publish our result, so wait for the lock instead.
                log.info(
                    "Request key busy with a different analysis; waiting for lock",
                    request_key=request.request_key,
                    owner=holder.correlation_id,
                )
                with log.stage("lock_wait"):
                    released = await self.coalescer.wait_for_release(request.request_key, deadline=deadline)
                if not released:
                    return Unavailable(
                        UnavailableReason.TIMEOUT,
                        request.correlation_id,
                        "timed out waiting for in-flight lock",
                    )
                continue

            log.info("Duplicate request in flight; waiting for result", request_key=request.request_key)
            with log.stage("coalesce_wait"):
                result = await self.coalescer.wait_for_result(
                    request.request_key,
                    lambda: self.cache.get(key),
                    deadline=deadline,
                )
            if result is None:
                return Unavailable(
                    UnavailableReason.TIMEOUT,
                    request.correlation_id,
                    "timed out waiting for in-flight analysis",
                )
            return result

        # Stop starting provider calls once the lock could have expired.
        deadline = min(deadline, lock_expires_at)
        try:
            return await self._compute(request, key, deadline, log)
        finally:
            await self.coalescer.release_lock(request.request_key, request.correlation_id)

    async def _compute(
        self,
        request: AnalysisRequest,
        key: str,
        deadline: float,
        log: ModguardLogger,
    ) -> AnalysisResult:
        # Another worker may have finished between our miss and the lock.
        cached = await self.cache.get(key)
        if cached is not None:
            log.info("Cache hit after lock", request_key=request.request_key)
            return cached

        with log.stage("budget_check"):
            await self.budget.ensure_affordable(self.config.estimated_cost_usd)

        with log.stage("build_prompt"):
            try:
                prompt = self.prompt_builder.build(
                    request.questions,
                    request.context,
                    request_key=request.request_key,
                    subreddit_context=request.subreddit_context,
                )
            except ValueError as exc:
                raise ConfigurationError(str(exc)) from exc
        log.info(
            "Prompt built",
            prompt_version=prompt.version,
            question_count=len(prompt.question_ids),
            pii_removed=prompt.pii_removed,
            urls_removed=prompt.urls_removed,
        )

        with log.stage("provider_call"):
            call, outcome = await self._call_with_failover(request, prompt, deadline, log)

        result = AnalysisResult(
            correlation_id=request.correlation_id,
            provider=call.provider,
            model=call.model,
            answers=outcome.answers,
            tokens_used=call.tokens_used,
            cost_usd=call.cost_usd,
            latency_ms=call.latency_ms,
            cached_ttl_seconds=0,
            timestamp=self._clock(),
            prompt_version=prompt.version,
            missing_question_ids=outcome.missing_question_ids,
        )

        await self._record_use(prompt.version, log)
        with log.stage("cache_write"):
            stored = await self.cache.put(
                key, result, trust_score=request.trust_score, request_key=request.request_key
            )
        log.info(
            "Analysis complete",
            provider=stored.provider,
            tokens_used=stored.tokens_used,
            cost_usd=round(stored.cost_usd, 6),
            cached_ttl_seconds=stored.cached_ttl_seconds,
        )
        return stored

    async def _call_with_failover(
        self,
        request: AnalysisRequest,
        prompt: BuiltPrompt,
        deadline: float,
        log: ModguardLogger,
    ) -> Tuple[ProviderCallResult, ValidationOutcome]:
        """
        Bounded retry and failover across providers.

        Each provider gets up to ``max_attempts_per_provider`` attempts with
        exponential backoff for retryable failures only; everything else
        fails over immediately. ``max_total_attempts`` caps the whole chain.
        """
        excluded: set[str] = set()
        failures: List[FailureKind] = []
        total_attempts = 0

        while total_attempts < self.config.max_total_attempts:
            provider = await self.selector.select(excluded, request.request_key)
            if provider is None:
                break
            excluded.add(provider.name)

            delay = self.config.retry_initial_delay_seconds
            for attempt in range(1, self.config.max_attempts_per_provider + 1):
                if total_attempts >= self.config.max_total_attempts:
                    break
                remaining = deadline - self._clock()
                if remaining <= 0:
                    raise DeadlineExceededError("processing deadline elapsed during provider calls")

                total_attempts += 1
                timeout = min(self.config.call_timeout_seconds, remaining)
                try:
                    return await self.breaker.execute(
                        provider.name,
                        lambda: self._attempt(provider, prompt, request, timeout),
                        timeout=timeout,
                    )
                except CircuitOpenError as exc:
                    # Opened by another worker after selection; nothing was sent.
                    total_attempts -= 1
                    failures.append(exc.kind)
                    log.info("Circuit opened before dispatch", provider=provider.name)
                    break
                except ProviderError as exc:
                    failures.append(exc.kind)
                    log.warning(
                        "Provider attempt failed",
                        provider=provider.name,
                        attempt=attempt,
                        total_attempts=total_attempts,
                        failure_kind=exc.kind.value,
                        error=str(exc),
                    )
                    if not exc.retryable:
                        break
                    if attempt < self.config.max_attempts_per_provider:
                        wait = min(delay, self.config.retry_max_delay_seconds, max(0.0, deadline - self._clock()))
                        await asyncio.sleep(wait)
                        delay *= self.config.retry_backoff_multiplier

        last = failures[-1] if failures else None
        if failures and all(kind == FailureKind.VALIDATION for kind in failures):
            raise ResponseValidationError(
                f"provider output failed validation on {len(failures)} attempt(s)"
            )
        raise AllProvidersUnavailableError(
            f"no provider produced a valid answer after {total_attempts} attempt(s)",
            last_failure=last,
        )

    async def _attempt(
        self,
        provider: ProviderAdapter,
        prompt: BuiltPrompt,
        request: AnalysisRequest,
        timeout: float,
    ) -> Tuple[ProviderCallResult, ValidationOutcome]:
        call = await provider.invoke(
            system=prompt.system,
            user=prompt.user,
            max_tokens=self.config.max_output_tokens,
            temperature=self.config.temperature,
            timeout=timeout,
        )
        if call.tokens_used:
            await self._record_cost(request, call)

        if not call.success:
            kind = call.failure_kind or FailureKind.PROVIDER_ERROR
            error_cls = TransientProviderError if kind.retryable else ProviderError
            raise error_cls(call.error or "provider call failed", provider=provider.name, kind=kind)

        outcome = self.validator.validate(call.content, prompt.question_ids, lenient=request.lenient)
        if not outcome.valid:
            raise ResponseValidationError(
                outcome.error_summary or "invalid provider response",
                provider=provider.name,
                errors=outcome.errors,
            )
        return call, outcome

    async def _record_cost(self, request: AnalysisRequest, call: ProviderCallResult) -> None:
        record = CostRecord(
            correlation_id=request.correlation_id,
            provider=call.provider,
            request_key=request.request_key,
            tokens_used=call.tokens_used,
            cost_usd=call.cost_usd,
            timestamp=self._clock(),
        )
        try:
            await self.budget.record_cost(record)
        except StoreError as exc:
            self.logger.bind(request.correlation_id).error(
                "Cost recording failed", provider=call.provider, cost_usd=call.cost_usd, error=str(exc)
            )

    async def _record_use(self, version: str, log: ModguardLogger) -> None:
        try:
            await self.prompt_metrics.record_use(version)
        except StoreError as exc:
            log.warning("Prompt metrics update failed", prompt_version=version, error=str(exc))

    async def get_budget_status(self) -> BudgetState:
        return await self.budget.get_status()

    async def invalidate_cache(self, key: str) -> None:
        await self.cache.invalidate(key)

    async def invalidate_request(self, request_key: str) -> int:
        return await self.cache.invalidate_request(request_key)

    async def refresh_provider_health(self) -> Dict[str, bool]:
        return await self.selector.refresh_health()

    async def rollover_budget(self) -> bool:
        return await self.budget.rollover()
