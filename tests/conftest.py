import sys
from datetime import datetime, timezone
from decimal import Decimal
from pathlib import Path
from uuid import uuid4

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine


def _configure_path() -> None:
    src_path = Path(__file__).resolve().parents[1] / "src"
    if src_path.exists():
        sys.path.insert(0, str(src_path))


_configure_path()

from rewards_engine.db.base import Base  # noqa: E402
from rewards_engine.db.session import configure_sqlite_engine  # noqa: E402
from rewards_engine.db.transactions import TransactionRunner  # noqa: E402
from rewards_engine.engine import RewardsEngine  # noqa: E402
from rewards_engine.models.catalog import CatalogProduct, ProductCategory  # noqa: E402
from rewards_engine.models.coupon import Coupon, CouponBenefitType, CouponCategory  # noqa: E402
from rewards_engine.observability.rewards import get_rewards_store  # noqa: E402
from rewards_engine.observability.scheduler import get_scheduler_store  # noqa: E402
from rewards_engine.services.notifications import InMemoryNotificationSender, RewardsNotifier  # noqa: E402


async def _build_factory(url: str):
    engine = configure_sqlite_engine(create_async_engine(url, future=True))
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    return engine, async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)


@pytest_asyncio.fixture
async def session_factory():
    engine, factory = await _build_factory("sqlite+aiosqlite:///:memory:")
    try:
        yield factory
    finally:
        await engine.dispose()


@pytest_asyncio.fixture
async def file_session_factory(tmp_path: Path):
    """File-backed database so concurrent units get their own connections."""

    engine, factory = await _build_factory(f"sqlite+aiosqlite:///{tmp_path / 'rewards.db'}")
    try:
        yield factory
    finally:
        await engine.dispose()


@pytest.fixture(autouse=True)
def _reset_observability():
    get_rewards_store().reset()
    get_scheduler_store().reset()
    yield


@pytest.fixture
def sender() -> InMemoryNotificationSender:
    return InMemoryNotificationSender()


@pytest.fixture
def notifier(sender) -> RewardsNotifier:
    return RewardsNotifier(sender)


@pytest.fixture
def rewards(session_factory, notifier) -> RewardsEngine:
    runner = TransactionRunner(session_factory, timeout_seconds=5, max_attempts=3, backoff_seconds=0.01)
    return RewardsEngine(session_factory, notifier=notifier, runner=runner)


@pytest.fixture
def now() -> datetime:
    return datetime(2024, 3, 15, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def make_product(session_factory):
    async def _make(
        *,
        name: str = "Cinema ticket",
        points_cost: int = 100,
        stock: int = 10,
        category: ProductCategory = ProductCategory.PHYSICAL,
        is_active: bool = True,
        one_time_only: bool = False,
        validity_minutes: int = 60,
        factory=None,
    ) -> CatalogProduct:
        product = CatalogProduct(
            id=uuid4(),
            name=name,
            points_cost=points_cost,
            stock=stock,
            category=category,
            is_active=is_active,
            one_time_only=one_time_only,
            validity_minutes=validity_minutes,
        )
        async with (factory or session_factory)() as session:
            session.add(product)
            await session.commit()
        return product

    return _make


@pytest.fixture
def make_coupon(session_factory):
    async def _make(
        *,
        code: str = "METRO1",
        benefit_type: CouponBenefitType = CouponBenefitType.FREE_TRIP,
        max_uses_per_cycle: int = 1,
        points_bonus: int | None = None,
        discount_percentage: Decimal | None = None,
        display_order: int = 0,
        is_active: bool = True,
        requires_premium: bool = True,
    ) -> Coupon:
        coupon = Coupon(
            id=uuid4(),
            code=code,
            title=f"Coupon {code}",
            benefit_type=benefit_type,
            category=CouponCategory.TRANSPORT,
            max_uses_per_cycle=max_uses_per_cycle,
            points_bonus=points_bonus,
            discount_percentage=discount_percentage,
            display_order=display_order,
            is_active=is_active,
            requires_premium=requires_premium,
            valid_from=datetime(2020, 1, 1, tzinfo=timezone.utc),
        )
        async with session_factory() as session:
            session.add(coupon)
            await session.commit()
        return coupon

    return _make
