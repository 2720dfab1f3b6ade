"""Worker that periodically resets coupon usages whose billing cycle ended."""

from __future__ import annotations

import asyncio
from typing import Callable

from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession

from rewards_engine.core.settings import settings
from rewards_engine.engine import RewardsEngine
from rewards_engine.services.coupons import CouponSweepSummary

SessionFactory = Callable[[], AsyncSession]


class CouponResetWorker:
    """Runs the coupon reset sweep, and optionally the expiry sweep, on an interval."""

    def __init__(
        self,
        session_factory: SessionFactory,
        *,
        interval_seconds: int | None = None,
        batch_size: int | None = None,
        expire_subscriptions: bool | None = None,
        engine: RewardsEngine | None = None,
    ) -> None:
        self._engine = engine or RewardsEngine(session_factory)
        self.interval_seconds = interval_seconds or settings.coupon_reset_interval_seconds
        self.batch_size = batch_size or settings.coupon_reset_batch_size
        self.expire_subscriptions = (
            settings.subscription_expiry_sweep_enabled if expire_subscriptions is None else expire_subscriptions
        )
        self._stop_event = asyncio.Event()
        self._task: asyncio.Task | None = None
        self.is_running: bool = False
        self._logger = logger.bind(worker="coupon_reset")

    def start(self) -> None:
        if self._task and not self._task.done():
            return
        self._stop_event.clear()
        self._task = asyncio.create_task(self._run_loop())
        self.is_running = True
        self._logger.info("Coupon reset worker started", interval_seconds=self.interval_seconds)

    async def stop(self) -> None:
        if not self._task:
            return
        self._stop_event.set()
        await self._task
        self._task = None
        self.is_running = False
        self._logger.info("Coupon reset worker stopped")

    async def run_once(self) -> dict[str, int]:
        expired = 0
        if self.expire_subscriptions:
            expired = await self._engine.expire_lapsed_subscriptions(limit=self.batch_size)
        summary: CouponSweepSummary = await self._engine.sweep_coupon_resets(limit=self.batch_size)
        return {**summary.as_dict(), "subscriptions_expired": expired}

    async def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                summary = await self.run_once()
                self._logger.info("Coupon reset iteration", **summary)
            except Exception as exc:  # noqa: BLE001
                self._logger.exception("Coupon reset iteration failed", error=str(exc))
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval_seconds)
            except asyncio.TimeoutError:
                continue


__all__ = ["CouponResetWorker"]
