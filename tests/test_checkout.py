import asyncio
import re
from datetime import timedelta
from uuid import UUID

import pytest
from sqlalchemy import func, select

from rewards_engine.core.errors import (
    AlreadyRedeemed,
    EmptyCart,
    InsufficientPoints,
    OutOfStock,
    PremiumRequired,
    ProductUnavailable,
    ValidationError,
)
from rewards_engine.db.transactions import TransactionRunner
from rewards_engine.domain.auth import AuthContext
from rewards_engine.engine import RewardsEngine
from rewards_engine.models.catalog import CartCurrency, CatalogProduct, ProductCategory
from rewards_engine.models.redemption import Redemption, RedemptionStatus
from rewards_engine.observability.rewards import get_rewards_store
from rewards_engine.services.notifications import NotificationType
from rewards_engine.services.redemptions import build_claim_code

CLAIM_CODE = re.compile(r"^R-[0-9A-F]{6}-[0-9A-Z]{4}$")


async def _stock(factory, product_id) -> int:
    async with factory() as session:
        return await session.scalar(select(CatalogProduct.stock).where(CatalogProduct.id == product_id))


async def _redemption_count(factory) -> int:
    async with factory() as session:
        return await session.scalar(select(func.count()).select_from(Redemption))


@pytest.mark.asyncio
async def test_checkout_debits_points_and_issues_claim_code(rewards, session_factory, make_product, sender, now) -> None:
    product = await make_product(name="Movie ticket", points_cost=100, stock=5)
    await rewards.award_points("user-1", "admin_adjustment", 150, now=now)
    await rewards.add_to_cart("user-1", product.id)

    result = await rewards.checkout(AuthContext(user_id="user-1"), now=now)

    redemption = result.redemption
    assert result.total_points == 100
    assert result.remaining_balance == 50
    assert redemption.status == RedemptionStatus.PENDING
    assert CLAIM_CODE.match(redemption.code)
    assert redemption.code.split("-")[1] == redemption.id.hex[-6:].upper()
    assert redemption.expires_at is None

    assert await rewards.get_balance("user-1") == 50
    assert await _stock(session_factory, product.id) == 4
    assert (await rewards.cart_summary("user-1")).item_count == 0
    assert await rewards.verify_ledger("user-1") is True

    events = sender.of_type(NotificationType.REDEMPTION_REDEEMABLE)
    assert len(events) == 1
    assert redemption.code in events[0].body
    assert get_rewards_store().snapshot().checkouts == {"ok": 1}


@pytest.mark.asyncio
async def test_insufficient_points_changes_nothing(rewards, session_factory, make_product, sender, now) -> None:
    product = await make_product(points_cost=150, stock=5)
    await rewards.award_points("user-1", "admin_adjustment", 100, now=now)
    await rewards.add_to_cart("user-1", product.id)

    with pytest.raises(InsufficientPoints) as excinfo:
        await rewards.checkout(AuthContext(user_id="user-1"), now=now)

    assert excinfo.value.context == {"required": 150, "balance": 100}
    assert await rewards.get_balance("user-1") == 100
    assert await _stock(session_factory, product.id) == 5
    assert (await rewards.cart_summary("user-1")).item_count == 1
    assert await _redemption_count(session_factory) == 0
    assert sender.sent == []
    assert get_rewards_store().snapshot().checkouts == {"insufficient_points": 1}


@pytest.mark.asyncio
async def test_empty_cart_is_rejected(rewards) -> None:
    with pytest.raises(EmptyCart):
        await rewards.checkout(AuthContext(user_id="user-1"))


@pytest.mark.asyncio
async def test_multi_item_checkout_is_all_or_nothing(rewards, session_factory, make_product, now) -> None:
    coffee = await make_product(name="Coffee", points_cost=20, stock=10)
    hoodie = await make_product(name="Hoodie", points_cost=200, stock=1, category=ProductCategory.PREMIUM)
    await rewards.award_points("user-1", "admin_adjustment", 500, now=now)
    await rewards.add_to_cart("user-1", coffee.id, quantity=2)
    await rewards.add_to_cart("user-1", hoodie.id)

    with pytest.raises(PremiumRequired):
        await rewards.checkout(AuthContext(user_id="user-1"), now=now)
    assert await _stock(session_factory, coffee.id) == 10
    assert await rewards.get_balance("user-1") == 500

    premium = AuthContext(user_id="user-1", is_premium_active=True, premium_expiry=now + timedelta(days=30))
    result = await rewards.checkout(premium, now=now)

    assert len(result.redemptions) == 2
    assert result.total_points == 240
    assert result.remaining_balance == 260
    assert len({redemption.code for redemption in result.redemptions}) == 2
    assert await _stock(session_factory, coffee.id) == 8
    assert await _stock(session_factory, hoodie.id) == 0


@pytest.mark.asyncio
async def test_product_deactivated_after_carting(rewards, session_factory, make_product, now) -> None:
    product = await make_product(stock=3)
    await rewards.award_points("user-1", "admin_adjustment", 500, now=now)
    await rewards.add_to_cart("user-1", product.id)

    async with session_factory() as session:
        row = await session.get(CatalogProduct, product.id)
        row.is_active = False
        await session.commit()

    with pytest.raises(ProductUnavailable):
        await rewards.checkout(AuthContext(user_id="user-1"), now=now)


@pytest.mark.asyncio
async def test_one_time_products_can_only_be_redeemed_once(rewards, session_factory, make_product, now) -> None:
    product = await make_product(name="Welcome kit", points_cost=10, stock=10, one_time_only=True)
    await rewards.award_points("user-1", "admin_adjustment", 100, now=now)
    auth = AuthContext(user_id="user-1")

    result = await rewards.redeem_product(auth, product.id, now=now)
    assert result.redemption.one_time_key == f"user-1:{product.id}"

    with pytest.raises(AlreadyRedeemed):
        await rewards.redeem_product(auth, product.id, now=now)

    await rewards.add_to_cart("user-1", product.id, quantity=2)
    with pytest.raises(AlreadyRedeemed):
        await rewards.checkout(auth, now=now)

    assert await rewards.get_balance("user-1") == 90
    assert await _redemption_count(session_factory) == 1


@pytest.mark.asyncio
async def test_one_time_product_rejects_multiple_units(rewards, session_factory, make_product, now) -> None:
    product = await make_product(name="Founder badge", points_cost=10, stock=10, one_time_only=True)
    await rewards.award_points("user-1", "admin_adjustment", 100, now=now)
    await rewards.add_to_cart("user-1", product.id, quantity=2)

    with pytest.raises(AlreadyRedeemed) as excinfo:
        await rewards.checkout(AuthContext(user_id="user-1"), now=now)

    assert excinfo.value.context["requested"] == 2
    assert await rewards.get_balance("user-1") == 100
    assert await _redemption_count(session_factory) == 0


@pytest.mark.asyncio
async def test_digital_redemptions_expire_after_validity_window(rewards, make_product, now) -> None:
    product = await make_product(category=ProductCategory.DIGITAL, points_cost=40, validity_minutes=30)
    await rewards.award_points("user-1", "admin_adjustment", 40, now=now)

    result = await rewards.redeem_product(AuthContext(user_id="user-1"), product.id, now=now)

    assert result.redemption.expires_at == now + timedelta(minutes=30)
    assert result.remaining_balance == 0


@pytest.mark.asyncio
async def test_fiat_items_need_confirmed_payment(rewards, make_product, now) -> None:
    product = await make_product(points_cost=0, stock=2)
    await rewards.add_to_cart("user-1", product.id, currency=CartCurrency.FIAT, unit_price=15)
    auth = AuthContext(user_id="user-1")

    with pytest.raises(ValidationError):
        await rewards.checkout(auth, now=now)

    result = await rewards.checkout(auth, payment_confirmed=True, now=now)
    assert result.total_points == 0
    assert result.redemption.points_spent == 0
    assert result.redemption.metadata_json["currency"] == "fiat"


@pytest.mark.asyncio
async def test_out_of_stock_direct_redemption(rewards, make_product, now) -> None:
    product = await make_product(stock=0)
    await rewards.award_points("user-1", "admin_adjustment", 500, now=now)

    with pytest.raises(OutOfStock):
        await rewards.redeem_product(AuthContext(user_id="user-1"), product.id, now=now)


@pytest.mark.asyncio
async def test_concurrent_checkouts_for_last_unit(file_session_factory, make_product, now) -> None:
    runner = TransactionRunner(file_session_factory, timeout_seconds=20, max_attempts=5, backoff_seconds=0.01)
    engine = RewardsEngine(file_session_factory, runner=runner)
    product = await make_product(points_cost=100, stock=1, factory=file_session_factory)
    for user_id in ("user-1", "user-2"):
        await engine.award_points(user_id, "admin_adjustment", 200, now=now)
        await engine.add_to_cart(user_id, product.id)

    results = await asyncio.gather(
        engine.checkout(AuthContext(user_id="user-1"), now=now),
        engine.checkout(AuthContext(user_id="user-2"), now=now),
        return_exceptions=True,
    )

    winners = [item for item in results if not isinstance(item, Exception)]
    losers = [item for item in results if isinstance(item, Exception)]
    assert len(winners) == 1
    assert len(losers) == 1
    assert isinstance(losers[0], OutOfStock)

    assert await _stock(file_session_factory, product.id) == 0
    assert await _redemption_count(file_session_factory) == 1
    balances = sorted([await engine.get_balance("user-1"), await engine.get_balance("user-2")])
    assert balances == [100, 200]


def test_claim_code_format() -> None:
    code = build_claim_code(UUID("12345678-1234-5678-1234-56789abcdef0"))

    assert CLAIM_CODE.match(code)
    assert code.startswith("R-BCDEF0-")
