from uuid import uuid4

import pytest

from rewards_engine.core.settings import settings
from rewards_engine.domain.auth import AuthContext
from rewards_engine.models.redemption import Redemption, RedemptionStatus
from rewards_engine.services.notifications import NotificationType, RewardsNotifier


@pytest.mark.asyncio
async def test_delivery_failures_do_not_affect_committed_work(rewards, make_product, sender, now) -> None:
    product = await make_product(points_cost=30)
    await rewards.award_points("user-1", "admin_adjustment", 30, now=now)
    sender.fail_with = ConnectionError("push gateway down")

    result = await rewards.redeem_product(AuthContext(user_id="user-1"), product.id, now=now)

    assert result.redemption.status == RedemptionStatus.PENDING
    assert await rewards.get_balance("user-1") == 0
    assert sender.sent == []

    sender.fail_with = None
    delivered = await rewards.mark_delivered_by_code(result.redemption.code, "staff-1", now=now)
    assert delivered.changed is True
    assert [event.event_type for event in sender.sent] == [NotificationType.REDEMPTION_DELIVERED]


@pytest.mark.asyncio
async def test_muted_events_are_not_sent(sender, monkeypatch, now) -> None:
    monkeypatch.setattr(settings, "notification_muted_events", ["redemption_redeemable"])
    notifier = RewardsNotifier(sender)

    await notifier.redemption_delivered(_redemption(now))
    await notifier.redemptions_redeemable([_redemption(now)])

    assert [event.event_type for event in sender.sent] == [NotificationType.REDEMPTION_DELIVERED]


@pytest.mark.asyncio
async def test_redeemable_body_mentions_expiry(sender, now) -> None:
    notifier = RewardsNotifier(sender)
    redemption = _redemption(now)
    redemption.expires_at = now

    await notifier.redemptions_redeemable([redemption])

    assert sender.sent[0].body == "Show code R-ABC123-XY12 to claim Coffee. Valid until 2024-03-15 12:00 UTC."
    assert sender.sent[0].metadata["code"] == "R-ABC123-XY12"


def _redemption(now):
    return Redemption(
        id=uuid4(),
        user_id="user-1",
        code="R-ABC123-XY12",
        product_name="Coffee",
        status=RedemptionStatus.PENDING,
        points_spent=10,
        created_at=now,
    )
