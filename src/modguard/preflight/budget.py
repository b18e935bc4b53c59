from __future__ import annotations

import inspect
import json
import time
from typing import Any, Callable, Dict, List, Optional, Sequence

from ..config import BudgetConfig
from ..constants import DAY_SECONDS, Keys
from ..errors import BudgetExceededError
from ..logging import ModguardLogger
from ..models import BudgetState, CostRecord, ProviderType
from ..store import KeyValueStore
from ..utils import day_key, month_key, previous_day_key

AlertCallback = Callable[[int, BudgetState], Any]

COUNTER_TTL_SECONDS = 35 * DAY_SECONDS
ARCHIVE_TTL_SECONDS = 90 * DAY_SECONDS
ALERT_MARKER_TTL_SECONDS = 2 * DAY_SECONDS


def _as_float(raw: Optional[str]) -> float:
    return float(raw) if raw else 0.0


class BudgetTracker:
    """
    Atomic spend accounting with daily and monthly ceilings.

    Counters are scoped by date, so a new day starts from zero without a
    destructive reset. Every cost is applied with one atomic multi-increment.
    """

    def __init__(
        self,
        store: KeyValueStore,
        config: BudgetConfig,
        *,
        providers: Sequence[str] = tuple(p.value for p in ProviderType),
        on_alert: Optional[AlertCallback] = None,
        clock: Optional[Callable[[], float]] = None,
        logger: Optional[ModguardLogger] = None,
    ) -> None:
        self.store = store
        self.config = config
        self.providers = list(providers)
        self.on_alert = on_alert
        self._clock = clock or time.time
        self.logger = logger or ModguardLogger(component="budget_tracker")

    @staticmethod
    def daily_key(date: str) -> str:
        return f"{Keys.COST_DAILY}:{date}"

    @staticmethod
    def provider_key(date: str, provider: str) -> str:
        return f"{Keys.COST_DAILY}:{date}:{provider}"

    @staticmethod
    def monthly_key(month: str) -> str:
        return f"{Keys.COST_MONTHLY}:{month}"

    @staticmethod
    def alert_key(date: str, threshold: int) -> str:
        return f"{Keys.BUDGET_ALERT}:{date}:{threshold}"

    async def can_afford(self, estimate_usd: float) -> bool:
        now = self._clock()
        daily = _as_float(await self.store.get(self.daily_key(day_key(now))))
        monthly = _as_float(await self.store.get(self.monthly_key(month_key(now))))
        return (
            daily + estimate_usd <= self.config.daily_limit_usd
            and monthly + estimate_usd <= self.config.monthly_limit_usd
        )

    async def ensure_affordable(self, estimate_usd: float) -> None:
        """Raise BudgetExceededError when ``estimate_usd`` would cross a ceiling."""
        now = self._clock()
        daily = _as_float(await self.store.get(self.daily_key(day_key(now))))
        if daily + estimate_usd > self.config.daily_limit_usd:
            raise BudgetExceededError(daily, estimate_usd, self.config.daily_limit_usd, "daily")
        monthly = _as_float(await self.store.get(self.monthly_key(month_key(now))))
        if monthly + estimate_usd > self.config.monthly_limit_usd:
            raise BudgetExceededError(monthly, estimate_usd, self.config.monthly_limit_usd, "monthly")

    async def record_cost(self, record: CostRecord) -> List[int]:
        """Apply ``record`` to all counters atomically. Returns newly fired alert thresholds."""
        date = day_key(record.timestamp)
        increments = {
            self.daily_key(date): record.cost_usd,
            self.provider_key(date, record.provider): record.cost_usd,
            self.monthly_key(month_key(record.timestamp)): record.cost_usd,
        }
        totals = await self.store.incr_float_many(increments, ttl_seconds=COUNTER_TTL_SECONDS)
        daily_total = totals[self.daily_key(date)]

        self.logger.info(
            "Cost recorded",
            provider=record.provider,
            request_key=record.request_key,
            tokens_used=record.tokens_used,
            cost_usd=round(record.cost_usd, 6),
            daily_spent=round(daily_total, 6),
        )
        return await self._check_alerts(date, daily_total)

    async def _check_alerts(self, date: str, daily_total: float) -> List[int]:
        limit = self.config.daily_limit_usd
        if limit <= 0:
            return []

        fired: List[int] = []
        for threshold in self.config.alert_thresholds:
            if daily_total < limit * threshold / 100:
                break
            first = await self.store.set_if_absent(
                self.alert_key(date, threshold), "1", ALERT_MARKER_TTL_SECONDS
            )
            if first:
                fired.append(threshold)

        if fired:
            state = await self.get_status()
            for threshold in fired:
                await self._notify(threshold, state)
        return fired

    async def _notify(self, threshold: int, state: BudgetState) -> None:
        self.logger.warning(
            "Budget alert threshold reached",
            threshold_percent=threshold,
            daily_spent=round(state.daily_spent, 6),
            daily_limit=state.daily_limit,
        )
        if self.on_alert is None:
            return
        try:
            outcome = self.on_alert(threshold, state)
            if inspect.isawaitable(outcome):
                await outcome
        except Exception as exc:
            self.logger.error("Budget alert callback failed", threshold_percent=threshold, error=str(exc))

    async def rollover(self, now: Optional[float] = None) -> bool:
        """
        Archive yesterday's totals and initialize today's counters.

        Idempotent and safe from any number of workers: both steps use
        set-if-absent, so a counter another worker already advanced is never
        overwritten. Returns True when this call wrote the archive.
        """
        ts = self._clock() if now is None else now
        yesterday = previous_day_key(ts)
        today = day_key(ts)

        snapshot: Dict[str, Any] = {
            "date": yesterday,
            "daily_spent": _as_float(await self.store.get(self.daily_key(yesterday))),
            "per_provider": {
                p: _as_float(await self.store.get(self.provider_key(yesterday, p))) for p in self.providers
            },
        }
        archived = await self.store.set_if_absent(
            f"{Keys.COST_ARCHIVE}:{yesterday}",
            json.dumps(snapshot, sort_keys=True),
            ARCHIVE_TTL_SECONDS,
        )

        await self.store.set_if_absent(self.daily_key(today), "0", COUNTER_TTL_SECONDS)
        for provider in self.providers:
            await self.store.set_if_absent(self.provider_key(today, provider), "0", COUNTER_TTL_SECONDS)

        if archived:
            self.logger.info("Budget rolled over", archived_date=yesterday, daily_spent=snapshot["daily_spent"])
        return archived

    async def get_archive(self, date: str) -> Optional[Dict[str, Any]]:
        raw = await self.store.get(f"{Keys.COST_ARCHIVE}:{date}")
        return json.loads(raw) if raw else None

    async def get_status(self, now: Optional[float] = None) -> BudgetState:
        ts = self._clock() if now is None else now
        date = day_key(ts)
        per_provider = {
            p: _as_float(await self.store.get(self.provider_key(date, p))) for p in self.providers
        }
        alerts = [
            t for t in self.config.alert_thresholds if await self.store.get(self.alert_key(date, t)) is not None
        ]
        return BudgetState(
            date=date,
            daily_spent=_as_float(await self.store.get(self.daily_key(date))),
            per_provider_daily_spent=per_provider,
            monthly_spent=_as_float(await self.store.get(self.monthly_key(month_key(ts)))),
            alerts_fired_today=alerts,
            daily_limit=self.config.daily_limit_usd,
            monthly_limit=self.config.monthly_limit_usd,
        )
