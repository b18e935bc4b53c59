from __future__ import annotations

import argparse
import asyncio
import json
import sys
import time
from dataclasses import asdict
from typing import Optional

from pydantic import ValidationError

from .analyze import AnalysisOrchestrator
from .config import ModguardConfig
from .constants import ExitCode
from .errors import ModguardError
from .logging import ModguardLogger
from .models import ProviderType
from .store import KeyValueStore, RedisStore


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="modguard", description="Operator tools for the AI analysis layer")
    sub = parser.add_subparsers(dest="command", required=True)

    budget = sub.add_parser("budget", help="Show today's spend against the budget")
    budget.add_argument("--json", action="store_true", help="Emit status as JSON")

    sub.add_parser("circuits", help="Show circuit breaker state per provider")

    reset = sub.add_parser("reset-circuit", help="Force a provider's circuit back to CLOSED")
    reset.add_argument("provider", choices=[p.value for p in ProviderType])

    invalidate = sub.add_parser("invalidate", help="Delete cached analysis results")
    target = invalidate.add_mutually_exclusive_group(required=True)
    target.add_argument("key", nargs="?", help="Cache key (analysis:<sha256>)")
    target.add_argument("--request", metavar="REQUEST_KEY", help="Drop every cached result for this request key")

    sub.add_parser("probe", help="Health-check every enabled provider and cache the result")
    sub.add_parser("rollover", help="Archive yesterday's spend and initialize today's counters")
    return parser


async def _run(args: argparse.Namespace, orchestrator: AnalysisOrchestrator) -> int:
    if args.command == "budget":
        status = await orchestrator.get_budget_status()
        if args.json:
            print(json.dumps(asdict(status), indent=2, sort_keys=True))
        else:
            print(f"Date:    {status.date}")
            print(f"Daily:   ${status.daily_spent:.4f} / ${status.daily_limit:.2f} ({status.daily_percent:.1f}%)")
            print(
                f"Monthly: ${status.monthly_spent:.4f} / ${status.monthly_limit:.2f} "
                f"({status.monthly_percent:.1f}%)"
            )
            for provider, spent in sorted(status.per_provider_daily_spent.items()):
                print(f"  {provider}: ${spent:.4f}")
            fired = ", ".join(f"{t}%" for t in status.alerts_fired_today) or "none"
            print(f"Alerts fired today: {fired}")
        return ExitCode.SUCCESS

    if args.command == "circuits":
        now = time.time()
        for provider in orchestrator.config.providers:
            state = await orchestrator.breaker.get_state(provider.type.value)
            line = (
                f"{state.provider}: {state.state.value} "
                f"failures={state.failure_count} successes={state.success_count}"
            )
            remaining = state.remaining_cooldown(now)
            if remaining:
                line += f" retry_in={remaining:.0f}s"
            print(line)
        return ExitCode.SUCCESS

    if args.command == "reset-circuit":
        await orchestrator.breaker.reset(args.provider)
        print(f"{args.provider}: CLOSED")
        return ExitCode.SUCCESS

    if args.command == "invalidate":
        if args.request:
            count = await orchestrator.invalidate_request(args.request)
            print(f"Invalidated {count} cached result(s) for {args.request}")
        else:
            await orchestrator.invalidate_cache(args.key)
            print(f"Invalidated {args.key}")
        return ExitCode.SUCCESS

    if args.command == "probe":
        statuses = await orchestrator.refresh_provider_health()
        if not statuses:
            print("No usable providers configured")
            return ExitCode.UNAVAILABLE
        for provider, healthy in statuses.items():
            print(f"{provider}: {'healthy' if healthy else 'unhealthy'}")
        return ExitCode.SUCCESS if all(statuses.values()) else ExitCode.UNAVAILABLE

    if args.command == "rollover":
        archived = await orchestrator.rollover_budget()
        print("Archived previous day" if archived else "Previous day already archived")
        return ExitCode.SUCCESS

    raise ValueError(f"unknown command: {args.command}")


async def async_main(argv: Optional[list[str]] = None, store: Optional[KeyValueStore] = None) -> int:
    args = _build_parser().parse_args(argv)
    logger = ModguardLogger(component="cli")

    try:
        config = ModguardConfig()
    except ValidationError as exc:
        print(f"Configuration error: {exc}", file=sys.stderr)
        return int(ExitCode.ERROR)

    owned_store = store is None
    kv = store if store is not None else RedisStore.from_url(config.redis_url)
    try:
        orchestrator = AnalysisOrchestrator(config, kv, logger=logger)
        return int(await _run(args, orchestrator))
    except ModguardError as exc:
        logger.error("Command failed", command=args.command, error=str(exc))
        print(f"Error: {exc}", file=sys.stderr)
        return int(ExitCode.ERROR)
    finally:
        if owned_store:
            await kv.close()


def main(argv: Optional[list[str]] = None) -> int:
    """Main entry point."""
    return asyncio.run(async_main(argv))


if __name__ == "__main__":
    sys.exit(main())
