"""Recurring sweeps for coupon cycles, subscription expiry and usage counters."""

# meta: job: rewards-maintenance

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Callable, Dict

from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession

from rewards_engine.core.settings import settings
from rewards_engine.db.transactions import TransactionRunner
from rewards_engine.db.types import ensure_utc, utcnow
from rewards_engine.engine import RewardsEngine
from rewards_engine.observability.tracing import get_tracer
from rewards_engine.services.limits import DailyLimitTracker, usage_day

SessionFactory = Callable[[], AsyncSession]


async def run_coupon_reset(
    *,
    session_factory: SessionFactory,
    limit: int | None = None,
    now: datetime | None = None,
    engine: RewardsEngine | None = None,
) -> Dict[str, Any]:
    """Roll due coupon usages into their current cycle and notify their owners."""

    engine = engine or RewardsEngine(session_factory)
    batch = limit or settings.coupon_reset_batch_size
    with get_tracer().start_as_current_span("jobs.coupon_reset") as span:
        summary = await engine.sweep_coupon_resets(now=now, limit=batch)
        span.set_attribute("rewards.coupons.reset", summary.reset)
        span.set_attribute("rewards.coupons.expired", summary.expired)

    result = summary.as_dict()
    logger.bind(summary=result).info("Coupon reset sweep completed")
    return result


async def run_subscription_expiry(
    *,
    session_factory: SessionFactory,
    limit: int = 500,
    now: datetime | None = None,
    engine: RewardsEngine | None = None,
) -> Dict[str, Any]:
    """Expire active subscriptions whose end date has passed."""

    engine = engine or RewardsEngine(session_factory)
    with get_tracer().start_as_current_span("jobs.subscription_expiry"):
        expired = await engine.expire_lapsed_subscriptions(now=now, limit=limit)

    result = {"expired": expired}
    logger.bind(summary=result).info("Subscription expiry sweep completed")
    return result


async def run_daily_usage_prune(
    *,
    session_factory: SessionFactory,
    retention_days: int | None = None,
    now: datetime | None = None,
) -> Dict[str, Any]:
    """Delete daily usage counters older than the retention window."""

    days = retention_days if retention_days is not None else settings.daily_usage_retention_days
    cutoff = usage_day(ensure_utc(now or utcnow()) - timedelta(days=days))

    runner = TransactionRunner(session_factory)
    removed = await runner.run(lambda session: DailyLimitTracker(session).prune(cutoff), unit="jobs.usage_prune")

    result = {"removed": removed, "cutoff": cutoff.isoformat()}
    logger.bind(summary=result).info("Daily usage prune completed")
    return result


__all__ = ["run_coupon_reset", "run_daily_usage_prune", "run_subscription_expiry"]
