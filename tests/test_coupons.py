from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from sqlalchemy import select

from rewards_engine.core.errors import NotAvailable
from rewards_engine.models.coupon import Coupon, CouponBenefitType, CouponUsage, CouponUsageStatus
from rewards_engine.observability.rewards import get_rewards_store
from rewards_engine.services.notifications import NotificationType
from rewards_engine.services.subscriptions import current_cycle


async def _subscribe(rewards, now, plan="quarterly", user_id="user-1"):
    result = await rewards.activate_by_admin(user_id, plan, now=now)
    return result.subscription, result.coupon_usages


@pytest.mark.asyncio
async def test_use_until_cycle_cap(rewards, make_coupon, session_factory, now) -> None:
    coupon = await make_coupon(code="METRO2", max_uses_per_cycle=2)
    _, usages = await _subscribe(rewards, now)
    usage_id = usages[0].id

    available = await rewards.available_coupons("user-1", now=now)
    assert [item.id for item in available] == [usage_id]

    first = await rewards.use_coupon(usage_id, {"station": "Central"}, user_id="user-1", now=now)
    assert first.usage.usage_count == 1
    assert first.usage.status == CouponUsageStatus.AVAILABLE

    second = await rewards.use_coupon(usage_id, {"trip": 2}, user_id="user-1", now=now + timedelta(hours=1))
    assert second.usage.status == CouponUsageStatus.USED
    assert second.usage.usage_details == {"station": "Central", "trip": 2}

    with pytest.raises(NotAvailable) as excinfo:
        await rewards.use_coupon(usage_id, user_id="user-1", now=now + timedelta(hours=2))
    assert excinfo.value.context["reason"] == "used"

    assert await rewards.available_coupons("user-1", now=now) == []
    history = await rewards.coupon_history("user-1")
    assert [item.id for item in history] == [usage_id]

    async with session_factory() as session:
        total_uses = await session.scalar(select(Coupon.total_uses).where(Coupon.id == coupon.id))
    assert total_uses == 2
    assert get_rewards_store().snapshot().coupons == {"provisioned": 1, "used": 2}


@pytest.mark.asyncio
async def test_use_rejects_other_users_and_out_of_cycle_dates(rewards, make_coupon, now) -> None:
    await make_coupon()
    _, usages = await _subscribe(rewards, now)
    usage_id = usages[0].id

    with pytest.raises(NotAvailable):
        await rewards.use_coupon(usage_id, user_id="user-2", now=now)

    with pytest.raises(NotAvailable) as excinfo:
        await rewards.use_coupon(usage_id, user_id="user-1", now=now + timedelta(days=40))
    assert excinfo.value.context["reason"] == "outside_cycle"


@pytest.mark.asyncio
async def test_points_bonus_coupon_awards_through_ledger(rewards, make_coupon, now) -> None:
    await make_coupon(code="BONUS25", benefit_type=CouponBenefitType.POINTS_BONUS, points_bonus=25)
    _, usages = await _subscribe(rewards, now)

    result = await rewards.use_coupon(usages[0].id, user_id="user-1", now=now)

    assert result.points_awarded == 25
    assert result.new_balance == 25
    assert await rewards.get_balance("user-1") == 25
    history = await rewards.get_history("user-1")
    assert history.items[0].transaction_type == "earned_coupon_bonus"
    assert history.items[0].idempotency_key == f"coupon:{usages[0].id}:1:1"


@pytest.mark.asyncio
async def test_sweep_resets_used_coupons_into_the_next_cycle(rewards, make_coupon, sender, now) -> None:
    await make_coupon()
    _, usages = await _subscribe(rewards, now)
    usage_id = usages[0].id
    await rewards.use_coupon(usage_id, user_id="user-1", now=now)

    not_due = await rewards.sweep_coupon_resets(now=now + timedelta(days=5))
    assert not_due.as_dict() == {"scanned": 0, "reset": 0, "expired": 0, "skipped": 0}

    sweep_time = datetime(2024, 4, 16, 8, 0, tzinfo=timezone.utc)
    summary = await rewards.sweep_coupon_resets(now=sweep_time)
    assert summary.reset == 1

    usage = summary.reset_usages[0]
    assert usage.status == CouponUsageStatus.AVAILABLE
    assert usage.usage_count == 0
    assert usage.used_at is None
    assert usage.cycle_number == 2
    assert usage.cycle_start == datetime(2024, 4, 15, tzinfo=timezone.utc)
    assert usage.will_reset_on == datetime(2024, 5, 15, tzinfo=timezone.utc)
    assert usage.reset_count == 1

    events = sender.of_type(NotificationType.COUPON_RESET)
    assert len(events) == 1
    assert events[0].metadata["coupon_usage_ids"] == [str(usage_id)]

    again = await rewards.use_coupon(usage_id, user_id="user-1", now=sweep_time)
    assert again.usage.usage_count == 1


@pytest.mark.asyncio
async def test_sweep_skips_ahead_over_missed_cycles(rewards, make_coupon, now) -> None:
    await make_coupon()
    await _subscribe(rewards, now, plan="yearly")

    summary = await rewards.sweep_coupon_resets(now=datetime(2024, 7, 20, tzinfo=timezone.utc))

    usage = summary.reset_usages[0]
    assert usage.cycle_number == 5
    assert usage.cycle_start == datetime(2024, 7, 15, tzinfo=timezone.utc)


@pytest.mark.asyncio
async def test_sweep_follows_subscription_anchor_across_short_months(rewards, make_coupon) -> None:
    await make_coupon()
    start = datetime(2024, 1, 31, 10, 0, tzinfo=timezone.utc)
    _, usages = await _subscribe(rewards, start, plan="yearly")
    usage_id = usages[0].id
    assert usages[0].will_reset_on == datetime(2024, 3, 1, tzinfo=timezone.utc)
    await rewards.use_coupon(usage_id, user_id="user-1", now=datetime(2024, 2, 10, tzinfo=timezone.utc))

    march = await rewards.sweep_coupon_resets(now=datetime(2024, 3, 1, 8, 0, tzinfo=timezone.utc))
    usage = march.reset_usages[0]
    assert usage.cycle_number == 2
    assert usage.cycle_start == datetime(2024, 3, 1, tzinfo=timezone.utc)
    assert usage.cycle_end == datetime(2024, 3, 30, 23, 59, 59, 999999, tzinfo=timezone.utc)
    assert usage.will_reset_on == datetime(2024, 3, 31, tzinfo=timezone.utc)

    await rewards.use_coupon(usage_id, user_id="user-1", now=datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc))
    end_of_march = await rewards.sweep_coupon_resets(now=datetime(2024, 3, 31, 1, 0, tzinfo=timezone.utc))
    assert end_of_march.reset == 1
    usage = end_of_march.reset_usages[0]
    assert usage.cycle_number == 3
    assert usage.cycle_start == datetime(2024, 3, 31, tzinfo=timezone.utc)
    assert usage.will_reset_on == datetime(2024, 5, 1, tzinfo=timezone.utc)

    april = datetime(2024, 4, 10, tzinfo=timezone.utc)
    anchored = current_cycle(start, april)
    listed = await rewards.available_coupons("user-1", cycle_start=anchored.cycle_start, now=april)
    assert [item.id for item in listed] == [usage_id]


@pytest.mark.asyncio
async def test_premium_coupons_need_an_active_subscription(rewards, make_coupon, session_factory, now) -> None:
    premium = await make_coupon(code="METRO1")
    open_perk = await make_coupon(code="PERK01", requires_premium=False)
    _, usages = await _subscribe(rewards, now, plan="monthly")
    by_coupon = {item.coupon_id: item.id for item in usages}
    await rewards.cancel_subscription("user-1", "moving away", now=now + timedelta(hours=1))

    with pytest.raises(NotAvailable) as excinfo:
        await rewards.use_coupon(by_coupon[premium.id], user_id="user-1", now=now + timedelta(hours=2))
    assert excinfo.value.context["reason"] == "premium_required"

    result = await rewards.use_coupon(by_coupon[open_perk.id], user_id="user-1", now=now + timedelta(hours=2))
    assert result.usage.usage_count == 1

    async with session_factory() as session:
        usage = await session.get(CouponUsage, by_coupon[premium.id])
        total_uses = await session.scalar(select(Coupon.total_uses).where(Coupon.id == premium.id))
    assert usage.status == CouponUsageStatus.AVAILABLE
    assert usage.usage_count == 0
    assert total_uses == 0


@pytest.mark.asyncio
async def test_sweep_expires_usages_of_lapsed_subscriptions(rewards, make_coupon, sender, now) -> None:
    await make_coupon()
    _, usages = await _subscribe(rewards, now, plan="monthly")

    summary = await rewards.sweep_coupon_resets(now=now + timedelta(days=40))

    assert summary.expired == 1
    assert summary.reset == 0
    assert sender.of_type(NotificationType.COUPON_RESET) == []
    with pytest.raises(NotAvailable):
        await rewards.use_coupon(usages[0].id, now=now + timedelta(days=40))


@pytest.mark.asyncio
async def test_provisioning_is_not_duplicated(rewards, make_coupon, session_factory, now) -> None:
    from rewards_engine.services.coupons import CouponUsageTracker

    await make_coupon()
    subscription, usages = await _subscribe(rewards, now)
    await make_coupon(code="LATE01")

    async with session_factory() as session:
        tracker = CouponUsageTracker(session)
        refreshed = await tracker.provision_cycle(subscription, now=now + timedelta(days=2))
        await session.commit()

    assert len(usages) == 1
    assert len(refreshed) == 2
    assert len({item.coupon_id for item in refreshed}) == 2


def test_coupon_benefit_formatting(now) -> None:
    coupon = Coupon(
        code="OFF15",
        title="15% off",
        benefit_type=CouponBenefitType.DISCOUNT_PERCENTAGE,
        discount_percentage=Decimal("15.00"),
        is_active=True,
        valid_from=now - timedelta(days=1),
        valid_until=now + timedelta(days=1),
    )
    assert coupon.format_benefit() == "15% off"
    assert coupon.is_available_on(now) is True
    assert coupon.is_available_on(now + timedelta(days=2)) is False

    coupon.benefit_type = CouponBenefitType.DISCOUNT_FIXED
    coupon.discount_amount = Decimal("3.5")
    assert coupon.format_benefit() == "S/ 3.50 off"

    coupon.benefit_type = CouponBenefitType.CUSTOM
    assert coupon.format_benefit() == "15% off"
    coupon.custom_data = {"label": "Priority boarding"}
    assert coupon.format_benefit() == "Priority boarding"
