import asyncio

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError, OperationalError

from rewards_engine.core.errors import InsufficientFunds, InternalError, TransactionConflict
from rewards_engine.db.transactions import TransactionRunner, is_conflict
from rewards_engine.models.points import PointsAccount
from rewards_engine.observability.rewards import get_rewards_store


def _locked() -> OperationalError:
    return OperationalError("UPDATE points_accounts", {}, Exception("database is locked"))


def _runner(session_factory, **kwargs) -> TransactionRunner:
    options = {"timeout_seconds": 5, "max_attempts": 3, "backoff_seconds": 0.001}
    options.update(kwargs)
    return TransactionRunner(session_factory, **options)


async def _account_count(session_factory) -> int:
    async with session_factory() as session:
        return await session.scalar(select(func.count()).select_from(PointsAccount))


def test_conflict_detection() -> None:
    assert is_conflict(_locked()) is True
    assert is_conflict(IntegrityError("INSERT", {}, Exception("UNIQUE constraint failed"))) is False
    assert is_conflict(ValueError("database is locked")) is False


@pytest.mark.asyncio
async def test_conflicts_are_retried_until_commit(session_factory) -> None:
    attempts = []

    async def work(session):
        attempts.append(len(attempts) + 1)
        session.add(PointsAccount(user_id=f"user-{len(attempts)}"))
        await session.flush()
        if len(attempts) < 3:
            raise _locked()
        return "done"

    assert await _runner(session_factory).run(work, unit="test.retry") == "done"
    assert attempts == [1, 2, 3]
    assert await _account_count(session_factory) == 1
    assert get_rewards_store().snapshot().transactions == {
        "retry": 2,
        "test.retry:retry": 2,
        "committed": 1,
        "test.retry:committed": 1,
    }


@pytest.mark.asyncio
async def test_exhausted_retries_raise_transaction_conflict(session_factory) -> None:
    async def work(session):
        raise _locked()

    with pytest.raises(TransactionConflict) as excinfo:
        await _runner(session_factory, max_attempts=2).run(work, unit="test.exhausted")

    assert excinfo.value.context["attempts"] == 2
    assert get_rewards_store().snapshot().transactions["conflict_exhausted"] == 1


@pytest.mark.asyncio
async def test_other_store_errors_roll_back_as_internal(session_factory) -> None:
    async def work(session):
        session.add(PointsAccount(user_id="user-1"))
        await session.flush()
        raise IntegrityError("INSERT", {}, Exception("CHECK constraint failed"))

    with pytest.raises(InternalError) as excinfo:
        await _runner(session_factory).run(work, unit="test.failed")

    assert not isinstance(excinfo.value, TransactionConflict)
    assert await _account_count(session_factory) == 0


@pytest.mark.asyncio
async def test_domain_errors_propagate_without_retry(session_factory) -> None:
    calls = []

    async def work(session):
        calls.append(1)
        session.add(PointsAccount(user_id="user-1"))
        await session.flush()
        raise InsufficientFunds("Not enough points", required=10, balance=0)

    with pytest.raises(InsufficientFunds):
        await _runner(session_factory).run(work, unit="test.domain")

    assert calls == [1]
    assert await _account_count(session_factory) == 0


@pytest.mark.asyncio
async def test_slow_units_time_out(session_factory) -> None:
    async def work(session):
        await asyncio.sleep(1)

    with pytest.raises(TransactionConflict):
        await _runner(session_factory, timeout_seconds=0.05).run(work, unit="test.slow")

    assert get_rewards_store().snapshot().transactions["test.slow:timeout"] == 1
