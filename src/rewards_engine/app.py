import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import AsyncIterator, Callable

from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession

from rewards_engine.core.settings import settings
from rewards_engine.db.session import async_session
from .core.logging import configure_logging
from .observability.tracing import configure_tracing
from .scheduling import RewardsJobScheduler
from .workers import CouponResetWorker


@dataclass(slots=True)
class BackgroundServices:
    scheduler: RewardsJobScheduler
    coupon_worker: CouponResetWorker


def _schedule_path() -> Path:
    path = Path(settings.rewards_schedule_config_path)
    if not path.is_absolute():
        path = Path(__file__).resolve().parent.parent.parent / path
    return path


def configure_runtime() -> None:
    configure_logging(
        service_name=settings.service_name,
        environment=settings.environment,
        version=settings.service_version,
        level=settings.log_level,
        json_output=settings.log_json,
    )
    configure_tracing(settings)


@asynccontextmanager
async def lifespan(session_factory: Callable[[], AsyncSession] | None = None) -> AsyncIterator[BackgroundServices]:
    factory = session_factory or async_session
    schedule_path = _schedule_path()
    services = BackgroundServices(
        scheduler=RewardsJobScheduler(session_factory=factory, config_path=schedule_path),
        coupon_worker=CouponResetWorker(factory),
    )

    scheduler_enabled = settings.rewards_scheduler_enabled
    if scheduler_enabled:
        try:
            services.scheduler.start()
        except FileNotFoundError as exc:
            logger.exception("Rewards job scheduler failed to start", error=str(exc))
        else:
            logger.info("Rewards job scheduler enabled", schedule_path=str(schedule_path))
    else:
        logger.info("Rewards job scheduler disabled", reason="rewards_scheduler_enabled is false")

    if settings.coupon_reset_worker_enabled and not scheduler_enabled:
        services.coupon_worker.start()
        logger.info("Coupon reset worker enabled", interval_seconds=services.coupon_worker.interval_seconds)
    elif settings.coupon_reset_worker_enabled:
        logger.info("Coupon reset worker managed via scheduler", schedule_path=str(schedule_path))
    else:
        logger.info("Coupon reset worker disabled", reason="coupon_reset_worker_enabled is false")

    try:
        yield services
    finally:
        await services.coupon_worker.stop()
        await services.scheduler.stop()


async def serve(stop_event: asyncio.Event | None = None) -> None:
    """Run background services until ``stop_event`` is set."""

    stop_event = stop_event or asyncio.Event()
    async with lifespan():
        await stop_event.wait()
