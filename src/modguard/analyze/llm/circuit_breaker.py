from __future__ import annotations

import asyncio
import json
import time
from typing import Awaitable, Callable, Optional, Tuple, TypeVar

from ...config import ModguardConfig
from ...constants import Keys
from ...errors import CircuitOpenError, ProviderError, TransientProviderError
from ...logging import ModguardLogger
from ...models import CircuitBreakerState, CircuitState, FailureKind
from ...store import KeyValueStore

T = TypeVar("T")


class CircuitBreaker:
    """
    Per-provider failure tracking kept in the shared store.

    CLOSED -> OPEN after ``failure_threshold`` consecutive failures.
    OPEN -> HALF_OPEN once the cooldown has elapsed.
    HALF_OPEN -> CLOSED after ``success_threshold`` consecutive successes.
    Any HALF_OPEN failure reopens the circuit and restarts the cooldown.

    Counters move by atomic ``incr``; state transitions go through
    ``compare_and_set`` so only one worker performs each transition.
    """

    def __init__(
        self,
        store: KeyValueStore,
        *,
        failure_threshold: int = 5,
        success_threshold: int = 2,
        cooldown_seconds: float = 30.0,
        call_timeout_seconds: float = 10.0,
        state_ttl_seconds: int = 86_400,
        clock: Optional[Callable[[], float]] = None,
        logger: Optional[ModguardLogger] = None,
    ) -> None:
        self.store = store
        self.failure_threshold = failure_threshold
        self.success_threshold = success_threshold
        self.cooldown_seconds = cooldown_seconds
        self.call_timeout_seconds = call_timeout_seconds
        self.state_ttl_seconds = state_ttl_seconds
        self._clock = clock or time.time
        self.logger = logger or ModguardLogger(component="circuit_breaker")

    @classmethod
    def from_config(
        cls,
        store: KeyValueStore,
        config: ModguardConfig,
        *,
        clock: Optional[Callable[[], float]] = None,
        logger: Optional[ModguardLogger] = None,
    ) -> "CircuitBreaker":
        return cls(
            store,
            failure_threshold=config.circuit_failure_threshold,
            success_threshold=config.circuit_success_threshold,
            cooldown_seconds=config.circuit_cooldown_seconds,
            call_timeout_seconds=config.call_timeout_seconds,
            state_ttl_seconds=config.circuit_state_ttl_seconds,
            clock=clock,
            logger=logger,
        )

    @staticmethod
    def _state_key(provider: str) -> str:
        return f"{Keys.CIRCUIT}:{provider}:state"

    @staticmethod
    def _failures_key(provider: str) -> str:
        return f"{Keys.CIRCUIT}:{provider}:failures"

    @staticmethod
    def _successes_key(provider: str) -> str:
        return f"{Keys.CIRCUIT}:{provider}:successes"

    @staticmethod
    def _encode(state: CircuitState, open_until: Optional[float] = None) -> str:
        return json.dumps({"state": state.value, "open_until": open_until}, sort_keys=True)

    async def _read_state(self, provider: str) -> Tuple[Optional[str], CircuitState, Optional[float]]:
        raw = await self.store.get(self._state_key(provider))
        if raw is None:
            return None, CircuitState.CLOSED, None
        try:
            data = json.loads(raw)
            state = CircuitState(data["state"])
            open_until = data.get("open_until")
            return raw, state, float(open_until) if open_until is not None else None
        except (ValueError, KeyError, TypeError):
            self.logger.warning("Corrupt circuit state ignored", provider=provider)
            return raw, CircuitState.CLOSED, None

    async def get_state(self, provider: str) -> CircuitBreakerState:
        _, state, open_until = await self._read_state(provider)
        failures = await self.store.get(self._failures_key(provider))
        successes = await self.store.get(self._successes_key(provider))
        return CircuitBreakerState(
            provider=provider,
            state=state,
            failure_count=int(failures or 0),
            success_count=int(successes or 0),
            open_until=open_until,
        )

    async def is_open(self, provider: str) -> bool:
        """True while the circuit is OPEN and its cooldown has not elapsed."""
        _, state, open_until = await self._read_state(provider)
        return state == CircuitState.OPEN and open_until is not None and self._clock() < open_until

    async def execute(
        self,
        provider: str,
        operation: Callable[[], Awaitable[T]],
        *,
        timeout: Optional[float] = None,
    ) -> T:
        """
        Run ``operation`` through the breaker for ``provider``.

        Raises CircuitOpenError without calling ``operation`` while OPEN.
        Any ProviderError, timeout or other exception from ``operation`` is
        recorded as a failure and re-raised as a ProviderError.
        """
        await self._admit(provider)

        call_timeout = self.call_timeout_seconds if timeout is None else timeout
        try:
            result = await asyncio.wait_for(operation(), timeout=call_timeout)
        except asyncio.CancelledError:
            raise
        except asyncio.TimeoutError as exc:
            await self.record_failure(provider)
            raise TransientProviderError(
                f"Timeout after {call_timeout}s",
                provider=provider,
                kind=FailureKind.TIMEOUT,
            ) from exc
        except ProviderError:
            await self.record_failure(provider)
            raise
        except Exception as exc:
            await self.record_failure(provider)
            raise ProviderError(str(exc) or type(exc).__name__, provider=provider) from exc

        await self.record_success(provider)
        return result

    async def _admit(self, provider: str) -> None:
        raw, state, open_until = await self._read_state(provider)
        if state != CircuitState.OPEN:
            return

        now = self._clock()
        if open_until is not None and now < open_until:
            raise CircuitOpenError(provider, open_until - now)

        moved = await self.store.compare_and_set(
            self._state_key(provider),
            raw,
            self._encode(CircuitState.HALF_OPEN),
            ttl_seconds=self.state_ttl_seconds,
        )
        if moved:
            await self.store.set(self._successes_key(provider), "0", ttl_seconds=self.state_ttl_seconds)
            self.logger.info("Circuit half-open", provider=provider)
            return

        # Another worker transitioned first; honour whatever it decided.
        _, state, open_until = await self._read_state(provider)
        now = self._clock()
        if state == CircuitState.OPEN and open_until is not None and now < open_until:
            raise CircuitOpenError(provider, open_until - now)

    async def record_success(self, provider: str) -> CircuitState:
        raw, state, _ = await self._read_state(provider)

        if state == CircuitState.HALF_OPEN:
            successes = await self.store.incr(
                self._successes_key(provider), ttl_seconds=self.state_ttl_seconds
            )
            if successes >= self.success_threshold:
                closed = await self.store.compare_and_set(
                    self._state_key(provider),
                    raw,
                    self._encode(CircuitState.CLOSED),
                    ttl_seconds=self.state_ttl_seconds,
                )
                if closed:
                    await self.store.set(self._failures_key(provider), "0", ttl_seconds=self.state_ttl_seconds)
                    await self.store.set(self._successes_key(provider), "0", ttl_seconds=self.state_ttl_seconds)
                    self.logger.info("Circuit closed", provider=provider, successes=successes)
                    return CircuitState.CLOSED
            return CircuitState.HALF_OPEN

        if state == CircuitState.CLOSED:
            await self.store.set(self._failures_key(provider), "0", ttl_seconds=self.state_ttl_seconds)
        return state

    async def record_failure(self, provider: str) -> CircuitState:
        raw, state, _ = await self._read_state(provider)

        if state == CircuitState.HALF_OPEN:
            return await self._open(provider, raw, reason="half_open_failure")

        failures = await self.store.incr(self._failures_key(provider), ttl_seconds=self.state_ttl_seconds)
        if state == CircuitState.OPEN:
            return state

        if failures >= self.failure_threshold:
            return await self._open(provider, raw, reason="failure_threshold", failures=failures)
        return CircuitState.CLOSED

    async def _open(self, provider: str, expected: Optional[str], **fields: object) -> CircuitState:
        open_until = self._clock() + self.cooldown_seconds
        opened = await self.store.compare_and_set(
            self._state_key(provider),
            expected,
            self._encode(CircuitState.OPEN, open_until),
            ttl_seconds=self.state_ttl_seconds,
        )
        if opened:
            await self.store.set(self._successes_key(provider), "0", ttl_seconds=self.state_ttl_seconds)
            self.logger.warning(
                "Circuit opened",
                provider=provider,
                cooldown_seconds=self.cooldown_seconds,
                **fields,
            )
            return CircuitState.OPEN
        _, state, _ = await self._read_state(provider)
        return state

    async def reset(self, provider: str) -> None:
        """Force the circuit back to CLOSED with zeroed counters."""
        await self.store.delete(self._state_key(provider))
        await self.store.delete(self._failures_key(provider))
        await self.store.delete(self._successes_key(provider))
        self.logger.info("Circuit reset", provider=provider)
