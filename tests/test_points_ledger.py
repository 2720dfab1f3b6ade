import asyncio
from datetime import timedelta

import pytest

from rewards_engine.core.errors import InsufficientFunds, LimitExceeded, ValidationError
from rewards_engine.db.transactions import TransactionRunner
from rewards_engine.engine import RewardsEngine
from rewards_engine.models.points import PointsCategory
from rewards_engine.observability.rewards import get_rewards_store
from rewards_engine.services.points import ActionRuleBook, PointsLedger, load_action_rules


@pytest.mark.asyncio
async def test_award_updates_balance_and_category(rewards, now) -> None:
    result = await rewards.award_points("user-1", "daily_login", now=now)

    assert result.new_balance == 10
    assert result.duplicate is False
    assert result.transaction.amount == 10
    assert result.transaction.transaction_type == "earned_daily_login"
    assert result.transaction.category == PointsCategory.DAILY
    assert result.transaction.balance_after == 10

    stats = await rewards.get_stats("user-1", now=now)
    assert stats.balance == 10
    assert stats.lifetime_earned == 10
    assert stats.categories["daily"] == 10
    assert stats.month_earned == 10
    assert stats.month_transactions == 1


@pytest.mark.asyncio
async def test_daily_count_cap_blocks_second_login(rewards, now) -> None:
    await rewards.award_points("user-1", "daily_login", now=now)

    with pytest.raises(LimitExceeded) as excinfo:
        await rewards.award_points("user-1", "daily_login", now=now + timedelta(hours=2))

    assert excinfo.value.context["reason"] == "daily_cap"
    assert await rewards.get_balance("user-1") == 10

    next_day = await rewards.award_points("user-1", "daily_login", now=now + timedelta(days=1))
    assert next_day.new_balance == 20


@pytest.mark.asyncio
async def test_cooldown_blocks_rapid_awards(rewards, now) -> None:
    await rewards.award_points("user-1", "watch_ad", now=now)

    with pytest.raises(LimitExceeded) as excinfo:
        await rewards.award_points("user-1", "watch_ad", now=now + timedelta(seconds=30))

    assert excinfo.value.context["reason"] == "cooldown"
    assert excinfo.value.context["retry_after_seconds"] == pytest.approx(30)

    later = await rewards.award_points("user-1", "watch_ad", now=now + timedelta(seconds=61))
    assert later.new_balance == 10
    assert get_rewards_store().snapshot().ledger["limited:watch_ad"] == 1


@pytest.mark.asyncio
async def test_daily_points_cap_counts_points_not_calls(rewards, now) -> None:
    for minute in range(4):
        await rewards.award_points("user-1", "play_game", 50, now=now + timedelta(minutes=minute * 6))

    with pytest.raises(LimitExceeded):
        await rewards.award_points("user-1", "play_game", 10, now=now + timedelta(minutes=30))

    assert await rewards.get_balance("user-1") == 200


@pytest.mark.asyncio
async def test_award_rejects_invalid_amounts(rewards, now) -> None:
    with pytest.raises(ValidationError):
        await rewards.award_points("user-1", "daily_login", 0, now=now)
    with pytest.raises(ValidationError):
        await rewards.award_points("user-1", "daily_login", 21, now=now)
    with pytest.raises(ValidationError):
        await rewards.award_points("user-1", "not_an_action", 5, now=now)

    assert await rewards.get_balance("user-1") == 0


@pytest.mark.asyncio
async def test_idempotency_key_returns_prior_outcome(rewards, now) -> None:
    first = await rewards.award_points("user-1", "survey_complete", idempotency_key="survey:42", now=now)
    second = await rewards.award_points("user-1", "survey_complete", idempotency_key="survey:42", now=now)

    assert first.duplicate is False
    assert second.duplicate is True
    assert second.transaction.id == first.transaction.id
    assert second.new_balance == 25
    assert (await rewards.get_history("user-1")).total == 1


@pytest.mark.asyncio
async def test_spend_requires_sufficient_balance(rewards, now) -> None:
    with pytest.raises(InsufficientFunds):
        await rewards.spend_points("user-1", 10, now=now)

    await rewards.award_points("user-1", "admin_adjustment", 40, reason="Goodwill", now=now)
    with pytest.raises(InsufficientFunds) as excinfo:
        await rewards.spend_points("user-1", 50, now=now)
    assert excinfo.value.context["balance"] == 40

    result = await rewards.spend_points("user-1", 15, reason="Sticker", now=now)
    assert result.new_balance == 25
    assert result.transaction.amount == -15
    assert result.transaction.transaction_type == "spent_redemption"

    stats = await rewards.get_stats("user-1", now=now)
    assert stats.lifetime_spent == 15
    assert stats.month_spent == 15
    assert await rewards.verify_ledger("user-1") is True


@pytest.mark.asyncio
async def test_history_is_paginated_newest_first(rewards, now) -> None:
    await rewards.award_points("user-1", "content_like", now=now)
    await rewards.award_points("user-1", "content_share", now=now + timedelta(minutes=1))
    await rewards.award_points("user-1", "metro_usage", now=now + timedelta(minutes=2))

    page = await rewards.get_history("user-1", page=1, limit=2)
    assert page.total == 3
    assert page.total_pages == 2
    assert page.has_next is True
    assert [item.transaction_type for item in page.items] == ["earned_metro_usage", "earned_content_share"]

    last = await rewards.get_history("user-1", page=2, limit=2)
    assert [item.transaction_type for item in last.items] == ["earned_content_like"]
    assert last.has_next is False

    with pytest.raises(ValidationError):
        await rewards.get_history("user-1", page=0)


@pytest.mark.asyncio
async def test_stats_rank_top_sources(rewards, now) -> None:
    await rewards.award_points("user-1", "survey_complete", now=now)
    await rewards.award_points("user-1", "content_like", now=now)
    await rewards.award_points("user-1", "survey_complete", now=now + timedelta(minutes=1))

    stats = await rewards.get_stats("user-1", now=now)

    assert stats.top_sources[0] == {"type": "earned_survey_complete", "points": 50, "count": 2}
    assert stats.as_dict()["month"]["earned"] == 51


@pytest.mark.asyncio
async def test_ledger_flushes_without_committing(session_factory, now) -> None:
    async with session_factory() as session:
        ledger = PointsLedger(session)
        await ledger.award("user-1", "daily_login", now=now)
        assert await ledger.get_balance("user-1") == 10
        await session.rollback()

    async with session_factory() as session:
        assert await PointsLedger(session).get_balance("user-1") == 0


@pytest.mark.asyncio
async def test_concurrent_spends_never_overdraw(file_session_factory, now) -> None:
    runner = TransactionRunner(file_session_factory, timeout_seconds=20, max_attempts=5, backoff_seconds=0.01)
    engine = RewardsEngine(file_session_factory, runner=runner)
    await engine.award_points("user-1", "admin_adjustment", 100, now=now)

    results = await asyncio.gather(
        *(engine.spend_points("user-1", 30, now=now) for _ in range(5)),
        return_exceptions=True,
    )

    succeeded = [item for item in results if not isinstance(item, Exception)]
    failed = [item for item in results if isinstance(item, InsufficientFunds)]
    assert len(succeeded) == 3
    assert len(failed) == 2
    assert await engine.get_balance("user-1") == 10
    assert await engine.verify_ledger("user-1") is True


def test_rules_file_overrides_defaults(tmp_path) -> None:
    config = tmp_path / "points.toml"
    config.write_text(
        """
[actions.watch_ad]
points = 7
daily_limit = 3
cooldown_seconds = 0

[actions.quiz_answer]
category = "game"
points = 4
daily_limit = 10
"""
    )

    rules = load_action_rules(config)
    assert rules["watch_ad"].points == 7
    assert rules["watch_ad"].daily_limit == 3
    assert rules["watch_ad"].cooldown_seconds == 0
    assert rules["watch_ad"].daily_points_cap == 100
    assert rules["quiz_answer"].category == PointsCategory.GAME

    book = ActionRuleBook.from_path(str(config))
    assert "quiz_answer" in book
    assert ActionRuleBook.from_path(None).get("daily_login").points == 10

    with pytest.raises(FileNotFoundError):
        load_action_rules(tmp_path / "missing.toml")
