import pytest

from rewards_engine.core.errors import ValidationError
from rewards_engine.models.points import PointsCategory


@pytest.mark.asyncio
async def test_referral_awards_both_sides_once(rewards, now) -> None:
    result = await rewards.apply_referral("user-1", "user-2", now=now)

    assert result.already_processed is False
    assert (result.referrer_points, result.referred_points) == (100, 50)
    assert (result.referrer_balance, result.referred_balance) == (100, 50)

    history = await rewards.get_history("user-2")
    assert history.items[0].transaction_type == "earned_referral_welcome"
    assert history.items[0].metadata_json == {"referrerId": "user-1"}

    repeated = await rewards.apply_referral("user-3", "user-2", now=now)
    assert repeated.already_processed is True
    assert repeated.referrer_points == 0
    assert await rewards.get_balance("user-3") == 0
    assert await rewards.get_balance("user-2") == 50


@pytest.mark.asyncio
async def test_referrer_collects_for_each_new_user(rewards, now) -> None:
    await rewards.apply_referral("user-1", "user-2", now=now)
    await rewards.apply_referral("user-1", "user-3", now=now)

    stats = await rewards.get_stats("user-1", now=now)
    assert stats.balance == 200
    assert stats.categories[PointsCategory.REFERRAL.value] == 200


@pytest.mark.asyncio
async def test_self_referral_is_rejected(rewards, now) -> None:
    with pytest.raises(ValidationError):
        await rewards.apply_referral("user-1", "user-1", now=now)
    with pytest.raises(ValidationError):
        await rewards.apply_referral("", "user-1", now=now)
