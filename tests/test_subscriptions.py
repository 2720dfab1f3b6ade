import asyncio
from datetime import timedelta
from decimal import Decimal
from uuid import uuid4

import pytest

from rewards_engine.core.errors import SubscriptionConflict, SubscriptionNotFound, ValidationError
from rewards_engine.db.transactions import TransactionRunner
from rewards_engine.engine import RewardsEngine
from rewards_engine.models.subscription import PaymentMethod, SubscriptionPlan, SubscriptionStatus
from rewards_engine.services.notifications import NotificationType
from rewards_engine.services.subscriptions.service import PLAN_PRICING


@pytest.mark.asyncio
async def test_create_subscription_prices_plan_and_blocks_second_open_row(rewards, now) -> None:
    subscription = await rewards.create_subscription("user-1", "quarterly", "yape", payment_reference="op-1", now=now)

    assert subscription.status == SubscriptionStatus.PENDING_PAYMENT
    assert subscription.price == Decimal("49.90")
    assert subscription.currency == "PEN"
    assert subscription.end_date == now.replace(month=6)
    assert subscription.metadata_json == {"discount_percent": "16.7"}

    with pytest.raises(SubscriptionConflict):
        await rewards.create_subscription("user-1", SubscriptionPlan.MONTHLY, PaymentMethod.PLIN, now=now)


@pytest.mark.asyncio
async def test_unknown_plan_or_payment_method(rewards, now) -> None:
    with pytest.raises(ValidationError):
        await rewards.create_subscription("user-1", "weekly", "yape", now=now)
    with pytest.raises(ValidationError):
        await rewards.create_subscription("user-1", "monthly", "cash", now=now)


@pytest.mark.asyncio
async def test_confirm_payment_activates_and_provisions_coupons(rewards, make_coupon, sender, now) -> None:
    await make_coupon(code="METRO1", display_order=1)
    await make_coupon(code="BONUS5", display_order=2, is_active=False)
    pending = await rewards.create_subscription("user-1", "monthly", "card", now=now - timedelta(hours=1))

    result = await rewards.confirm_payment(pending.id, payment_reference="txn-9", now=now)

    assert result.activated is True
    subscription = result.subscription
    assert subscription.status == SubscriptionStatus.ACTIVE
    assert subscription.activated_at == now
    assert subscription.start_date == now
    assert subscription.end_date == now.replace(month=4)
    assert subscription.payment_reference == "txn-9"
    assert len(result.coupon_usages) == 1
    assert result.coupon_usages[0].cycle_number == 1

    again = await rewards.confirm_payment(pending.id, now=now)
    assert again.already_processed is True
    assert len(sender.of_type(NotificationType.PREMIUM_ACTIVATED)) == 1

    auth = await rewards.auth_context_for("user-1", now=now)
    assert auth.is_premium(now) is True
    assert auth.premium_expiry == subscription.end_date


@pytest.mark.asyncio
async def test_admin_activation_and_cancellation(rewards, now) -> None:
    with pytest.raises(SubscriptionNotFound):
        await rewards.cancel_subscription("user-1", "Changed my mind", now=now)

    result = await rewards.activate_by_admin("user-1", "yearly", actor_id="admin-7", now=now)
    assert result.subscription.payment_method == PaymentMethod.ADMIN
    assert result.subscription.payment_reference == "admin:admin-7"
    assert result.subscription.end_date == now.replace(year=2025)
    assert (await rewards.get_active_subscription("user-1", now=now)).id == result.subscription.id

    cancelled = await rewards.cancel_subscription("user-1", "Changed my mind", now=now + timedelta(days=3))
    assert cancelled.subscription.status == SubscriptionStatus.CANCELLED
    assert cancelled.subscription.cancel_reason == "Changed my mind"
    assert await rewards.get_active_subscription("user-1", now=now) is None

    renewed = await rewards.create_subscription("user-1", "monthly", "yape", now=now + timedelta(days=4))
    assert renewed.status == SubscriptionStatus.PENDING_PAYMENT


@pytest.mark.asyncio
async def test_rejected_payment_frees_the_user(rewards, now) -> None:
    pending = await rewards.create_subscription("user-1", "monthly", "plin", now=now)

    rejected = await rewards.reject_payment(pending.id, "Voucher not found", now=now)
    assert rejected.subscription.status == SubscriptionStatus.CANCELLED
    assert rejected.already_processed is False

    repeated = await rewards.reject_payment(pending.id, "Voucher not found", now=now)
    assert repeated.already_processed is True

    with pytest.raises(ValidationError):
        await rewards.confirm_payment(pending.id, now=now)
    with pytest.raises(SubscriptionNotFound):
        await rewards.reject_payment(uuid4(), "missing", now=now)

    await rewards.create_subscription("user-1", "monthly", "plin", now=now)


@pytest.mark.asyncio
async def test_expire_lapsed_subscriptions(rewards, now) -> None:
    await rewards.activate_by_admin("user-1", "monthly", now=now)
    await rewards.activate_by_admin("user-2", "yearly", now=now)

    assert await rewards.expire_lapsed_subscriptions(now=now + timedelta(days=10)) == 0
    assert await rewards.expire_lapsed_subscriptions(now=now + timedelta(days=40)) == 1

    auth = await rewards.auth_context_for("user-1", now=now + timedelta(days=40))
    assert auth.is_premium_active is False
    assert await rewards.get_active_subscription("user-2", now=now + timedelta(days=40)) is not None


@pytest.mark.asyncio
async def test_racing_creations_leave_one_open_subscription(file_session_factory, now) -> None:
    runner = TransactionRunner(file_session_factory, timeout_seconds=20, max_attempts=5, backoff_seconds=0.01)
    engine = RewardsEngine(file_session_factory, runner=runner)

    results = await asyncio.gather(
        engine.create_subscription("user-1", "monthly", "yape", now=now),
        engine.create_subscription("user-1", "quarterly", "card", now=now),
        return_exceptions=True,
    )

    assert len([item for item in results if isinstance(item, SubscriptionConflict)]) == 1
    assert len([item for item in results if not isinstance(item, Exception)]) == 1


def test_plan_pricing_table() -> None:
    assert {plan.value: (pricing.price, pricing.months) for plan, pricing in PLAN_PRICING.items()} == {
        "monthly": (Decimal("19.90"), 1),
        "quarterly": (Decimal("49.90"), 3),
        "yearly": (Decimal("179.90"), 12),
    }
