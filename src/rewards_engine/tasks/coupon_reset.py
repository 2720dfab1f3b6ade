"""CLI + helpers for the coupon reset and subscription expiry sweeps.

External schedulers (Celery, cron) call the ``*_sync`` helpers so they can
run the sweeps without the scheduler or worker stack. The session factory
stays injectable for tests and queue runners.
"""

from __future__ import annotations

import argparse
import asyncio
import json
from datetime import datetime
from typing import Any, Callable

from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession

from rewards_engine.db.session import async_session
from rewards_engine.jobs.coupons import run_coupon_reset, run_daily_usage_prune, run_subscription_expiry

SessionFactory = Callable[[], AsyncSession]


async def run_maintenance(
    *,
    limit: int | None = None,
    expire_subscriptions: bool = True,
    prune_usage: bool = False,
    now: datetime | None = None,
    session_factory: SessionFactory | None = None,
) -> dict[str, Any]:
    """Run the sweeps once, expiring lapsed subscriptions before resetting coupons."""

    factory = session_factory or async_session
    summary: dict[str, Any] = {}
    if expire_subscriptions:
        summary["subscriptions"] = await run_subscription_expiry(
            session_factory=factory, limit=limit or 500, now=now
        )
    summary["coupons"] = await run_coupon_reset(session_factory=factory, limit=limit, now=now)
    if prune_usage:
        summary["daily_usage"] = await run_daily_usage_prune(session_factory=factory, now=now)
    logger.info("Rewards maintenance run finished", summary=summary)
    return summary


def run_maintenance_sync(
    *,
    limit: int | None = None,
    expire_subscriptions: bool = True,
    prune_usage: bool = False,
    session_factory: SessionFactory | None = None,
) -> dict[str, Any]:
    """Blocking helper for schedulers that cannot await."""

    return asyncio.run(
        run_maintenance(
            limit=limit,
            expire_subscriptions=expire_subscriptions,
            prune_usage=prune_usage,
            session_factory=session_factory,
        )
    )


def run_usage_prune_sync(
    *,
    retention_days: int | None = None,
    session_factory: SessionFactory | None = None,
) -> dict[str, Any]:
    """Blocking helper that only prunes old daily usage counters."""

    return asyncio.run(
        run_daily_usage_prune(session_factory=session_factory or async_session, retention_days=retention_days)
    )


def _parse_timestamp(value: str | None) -> datetime | None:
    if not value:
        return None
    return datetime.fromisoformat(value.strip().replace("Z", "+00:00"))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Reset coupon usages whose billing cycle has ended.")
    parser.add_argument("--limit", type=int, default=None, help="Maximum usages to process in this run.")
    parser.add_argument(
        "--skip-expiry",
        action="store_true",
        help="Do not expire lapsed subscriptions before resetting coupons.",
    )
    parser.add_argument("--prune-usage", action="store_true", help="Also delete old daily usage counters.")
    parser.add_argument("--now", default=None, help="ISO timestamp to treat as the current time.")
    return parser


def cli(argv: list[str] | None = None) -> None:
    args = build_parser().parse_args(argv)
    summary = asyncio.run(
        run_maintenance(
            limit=args.limit,
            expire_subscriptions=not args.skip_expiry,
            prune_usage=args.prune_usage,
            now=_parse_timestamp(args.now),
        )
    )
    print(json.dumps(summary, indent=2, default=str))


__all__ = ["build_parser", "cli", "run_maintenance", "run_maintenance_sync", "run_usage_prune_sync"]


if __name__ == "__main__":
    cli()
