from __future__ import annotations

from loguru import logger

from rewards_engine.celery_app import celery_app
from rewards_engine.core.settings import settings
from rewards_engine.tasks.coupon_reset import run_maintenance_sync, run_usage_prune_sync


@celery_app.task(name="rewards.reset_coupons", queue=settings.coupon_reset_task_queue)
def reset_coupons(limit: int | None = None) -> dict[str, object]:
    """Run one coupon reset sweep, expiring lapsed subscriptions first."""

    if not settings.coupon_reset_worker_enabled:
        logger.info("Coupon reset worker disabled; skipping Celery task.")
        return {"reset": 0, "expired": 0, "skipped": True}
    summary = run_maintenance_sync(
        limit=limit,
        expire_subscriptions=settings.subscription_expiry_sweep_enabled,
    )
    return dict(summary["coupons"])


@celery_app.task(name="rewards.prune_daily_usage", queue=settings.coupon_reset_task_queue)
def prune_daily_usage() -> dict[str, object]:
    """Delete daily usage counters past the retention window."""

    return run_usage_prune_sync()
