"""Bounded, retry-on-conflict units of work."""

from __future__ import annotations

import asyncio
import random
from typing import Awaitable, Callable, TypeVar

from loguru import logger
from sqlalchemy.exc import DBAPIError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from rewards_engine.core.errors import InternalError, RewardsError, TransactionConflict
from rewards_engine.core.settings import settings
from rewards_engine.observability.rewards import get_rewards_store

T = TypeVar("T")

# serialization_failure, deadlock_detected, lock_not_available
_CONFLICT_SQLSTATES = {"40001", "40P01", "55P03"}
_CONFLICT_MESSAGES = ("database is locked", "database table is locked", "could not serialize", "deadlock detected")


def is_conflict(exc: BaseException) -> bool:
    """Return True when the store rejected the unit because of concurrent writers."""

    if not isinstance(exc, DBAPIError) or exc.connection_invalidated:
        return False
    orig = exc.orig
    sqlstate = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    if sqlstate in _CONFLICT_SQLSTATES:
        return True
    message = str(orig).lower()
    return any(fragment in message for fragment in _CONFLICT_MESSAGES)


class TransactionRunner:
    """Run a coroutine inside one committed transaction, or not at all.

    Each attempt gets a fresh session. Store conflicts are retried with
    exponential backoff and jitter; the whole call is bounded by
    ``timeout_seconds``. Domain errors raised by the work roll the attempt
    back and propagate unchanged.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] | Callable[[], AsyncSession],
        *,
        timeout_seconds: float | None = None,
        max_attempts: int | None = None,
        backoff_seconds: float | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._timeout = timeout_seconds if timeout_seconds is not None else settings.transaction_timeout_seconds
        self._max_attempts = max(1, max_attempts or settings.transaction_max_attempts)
        self._backoff = (
            backoff_seconds if backoff_seconds is not None else settings.transaction_retry_backoff_seconds
        )
        self._store = get_rewards_store()

    async def run(self, work: Callable[[AsyncSession], Awaitable[T]], *, unit: str) -> T:
        try:
            return await asyncio.wait_for(self._run_with_retries(work, unit), timeout=self._timeout)
        except asyncio.TimeoutError as exc:
            self._store.record_transaction_event(unit, "timeout")
            logger.warning("Transaction timed out", unit=unit, timeout_seconds=self._timeout)
            raise TransactionConflict(
                "Transaction did not commit in time; retry the operation", unit=unit
            ) from exc

    async def _run_with_retries(self, work: Callable[[AsyncSession], Awaitable[T]], unit: str) -> T:
        attempt = 0
        while True:
            attempt += 1
            try:
                result = await self._attempt(work)
            except RewardsError:
                raise
            except SQLAlchemyError as exc:
                if not is_conflict(exc):
                    self._store.record_transaction_event(unit, "failed")
                    logger.error("Transaction failed", unit=unit, attempt=attempt, error=str(exc))
                    raise InternalError("Store failure; nothing was committed", unit=unit) from exc
                if attempt >= self._max_attempts:
                    self._store.record_transaction_event(unit, "conflict_exhausted")
                    logger.warning("Transaction conflict retries exhausted", unit=unit, attempts=attempt)
                    raise TransactionConflict(
                        "Concurrent update conflict; retry the operation", unit=unit, attempts=attempt
                    ) from exc
                delay = self._backoff * (2 ** (attempt - 1))
                delay += random.uniform(0, self._backoff)
                self._store.record_transaction_event(unit, "retry")
                logger.info("Retrying transaction after conflict", unit=unit, attempt=attempt, delay_seconds=delay)
                await asyncio.sleep(delay)
                continue
            self._store.record_transaction_event(unit, "committed")
            return result

    async def _attempt(self, work: Callable[[AsyncSession], Awaitable[T]]) -> T:
        async with self._session_factory() as session:
            try:
                result = await work(session)
                await session.commit()
            except BaseException:
                await session.rollback()
                raise
            return result


__all__ = ["TransactionRunner", "is_conflict"]
