"""Append-only points ledger with per-user balances."""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Mapping

from loguru import logger
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from rewards_engine.core.errors import InsufficientFunds, LimitExceeded, ValidationError
from rewards_engine.db.dialects import upsert_insert
from rewards_engine.db.types import ensure_utc, utcnow
from rewards_engine.models.points import PointsAccount, PointsTransaction
from rewards_engine.observability.rewards import get_rewards_store
from rewards_engine.services.limits.tracker import DailyLimitTracker, usage_day

from .rules import ActionRule, ActionRuleBook

MAX_HISTORY_PAGE_SIZE = 100


@dataclass(slots=True)
class LedgerResult:
    new_balance: int
    transaction: PointsTransaction
    duplicate: bool = False


@dataclass(slots=True)
class HistoryPage:
    items: list[PointsTransaction]
    page: int
    limit: int
    total: int

    @property
    def total_pages(self) -> int:
        return math.ceil(self.total / self.limit) if self.total else 0

    @property
    def has_next(self) -> bool:
        return self.page < self.total_pages


@dataclass(slots=True)
class PointsStats:
    user_id: str
    balance: int
    lifetime_earned: int
    lifetime_spent: int
    categories: dict[str, int]
    month_earned: int
    month_spent: int
    month_transactions: int
    top_sources: list[dict[str, Any]] = field(default_factory=list)

    def as_dict(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "balance": self.balance,
            "lifetime_earned": self.lifetime_earned,
            "lifetime_spent": self.lifetime_spent,
            "categories": dict(self.categories),
            "month": {
                "earned": self.month_earned,
                "spent": self.month_spent,
                "transactions": self.month_transactions,
            },
            "top_sources": list(self.top_sources),
        }


class PointsLedger:
    """Only writer of ``points_accounts`` and ``points_transactions``.

    Every balance change appends a transaction in the same database
    transaction, so ``balance == sum(amount)`` holds per user. Methods flush
    but never commit; the caller owns the unit of work.
    """

    def __init__(
        self,
        session: AsyncSession,
        *,
        rules: ActionRuleBook | None = None,
        limits: DailyLimitTracker | None = None,
    ) -> None:
        self._session = session
        self._rules = rules or ActionRuleBook()
        self._limits = limits or DailyLimitTracker(session)
        self._store = get_rewards_store()

    async def ensure_account(self, user_id: str) -> None:
        stmt = (
            upsert_insert(self._session, PointsAccount.__table__)
            .values(user_id=user_id)
            .on_conflict_do_nothing(index_elements=["user_id"])
        )
        await self._session.execute(stmt)

    async def get_account(self, user_id: str, *, for_update: bool = False) -> PointsAccount | None:
        stmt = select(PointsAccount).where(PointsAccount.user_id == user_id).execution_options(populate_existing=True)
        if for_update:
            stmt = stmt.with_for_update()
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_balance(self, user_id: str) -> int:
        result = await self._session.execute(select(PointsAccount.balance).where(PointsAccount.user_id == user_id))
        return int(result.scalar_one_or_none() or 0)

    async def award(
        self,
        user_id: str,
        action_type: str,
        amount: int | None = None,
        reason: str | None = None,
        metadata: Mapping[str, Any] | None = None,
        *,
        idempotency_key: str | None = None,
        now: datetime | None = None,
    ) -> LedgerResult:
        """Credit points for an action after enforcing its daily caps and cooldown."""

        rule = self._rules.get(action_type)
        points = rule.points if amount is None else amount
        if not isinstance(points, int) or isinstance(points, bool) or points <= 0:
            raise ValidationError("Awarded points must be a positive integer", action=action_type, amount=amount)
        if rule.max_per_award is not None and points > rule.max_per_award:
            raise ValidationError(
                f"Award exceeds the {rule.max_per_award} point limit for {action_type}",
                action=action_type,
                amount=points,
            )

        current_time = ensure_utc(now or utcnow())
        await self.ensure_account(user_id)
        await self.get_account(user_id, for_update=True)

        if idempotency_key:
            existing = await self._find_by_key(user_id, idempotency_key)
            if existing is not None:
                return await self._duplicate(existing)

        await self._enforce_caps(user_id, rule, points, current_time, metadata)

        category_column = getattr(PointsAccount, f"{rule.category.value}_points")
        stmt = (
            update(PointsAccount)
            .where(PointsAccount.user_id == user_id)
            .values(
                {
                    PointsAccount.balance: PointsAccount.balance + points,
                    PointsAccount.lifetime_earned: PointsAccount.lifetime_earned + points,
                    category_column: category_column + points,
                    PointsAccount.updated_at: current_time,
                }
            )
            .returning(PointsAccount.balance)
            .execution_options(synchronize_session=False)
        )
        new_balance = int((await self._session.execute(stmt)).scalar_one())

        entry = await self._append(
            user_id=user_id,
            amount=points,
            transaction_type=f"earned_{action_type}",
            category=rule.category,
            reason=reason,
            balance_after=new_balance,
            idempotency_key=idempotency_key,
            metadata=metadata,
            occurred_at=current_time,
        )
        self._store.record_ledger_entry("earned", points)
        logger.info(
            "Awarded points",
            user_id=user_id,
            action=action_type,
            amount=points,
            balance=new_balance,
        )
        return LedgerResult(new_balance=new_balance, transaction=entry)

    async def spend(
        self,
        user_id: str,
        amount: int,
        reason: str | None = None,
        metadata: Mapping[str, Any] | None = None,
        *,
        kind: str = "redemption",
        idempotency_key: str | None = None,
        now: datetime | None = None,
    ) -> LedgerResult:
        """Debit points; the balance check is part of the UPDATE itself."""

        if not isinstance(amount, int) or isinstance(amount, bool) or amount <= 0:
            raise ValidationError("Spent points must be a positive integer", amount=amount)

        current_time = ensure_utc(now or utcnow())
        account = await self.get_account(user_id, for_update=True)
        if account is None:
            raise InsufficientFunds("No points available", user_id=user_id, balance=0, amount=amount)

        if idempotency_key:
            existing = await self._find_by_key(user_id, idempotency_key)
            if existing is not None:
                return await self._duplicate(existing)

        stmt = (
            update(PointsAccount)
            .where(PointsAccount.user_id == user_id, PointsAccount.balance >= amount)
            .values(
                {
                    PointsAccount.balance: PointsAccount.balance - amount,
                    PointsAccount.lifetime_spent: PointsAccount.lifetime_spent + amount,
                    PointsAccount.updated_at: current_time,
                }
            )
            .returning(PointsAccount.balance)
            .execution_options(synchronize_session=False)
        )
        new_balance = (await self._session.execute(stmt)).scalar_one_or_none()
        if new_balance is None:
            balance = await self.get_balance(user_id)
            self._store.record_limit_rejection("insufficient_funds")
            raise InsufficientFunds(
                f"Balance of {balance} cannot cover {amount} points",
                user_id=user_id,
                balance=balance,
                amount=amount,
            )

        entry = await self._append(
            user_id=user_id,
            amount=-amount,
            transaction_type=f"spent_{kind}",
            category=None,
            reason=reason,
            balance_after=int(new_balance),
            idempotency_key=idempotency_key,
            metadata=metadata,
            occurred_at=current_time,
        )
        self._store.record_ledger_entry("spent", amount)
        logger.info("Spent points", user_id=user_id, amount=amount, kind=kind, balance=int(new_balance))
        return LedgerResult(new_balance=int(new_balance), transaction=entry)

    async def get_history(self, user_id: str, page: int = 1, limit: int = 20) -> HistoryPage:
        if page < 1 or not 1 <= limit <= MAX_HISTORY_PAGE_SIZE:
            raise ValidationError(
                f"page must be >= 1 and limit between 1 and {MAX_HISTORY_PAGE_SIZE}",
                page=page,
                limit=limit,
            )
        total = await self._session.scalar(
            select(func.count()).select_from(PointsTransaction).where(PointsTransaction.user_id == user_id)
        )
        stmt = (
            select(PointsTransaction)
            .where(PointsTransaction.user_id == user_id)
            .order_by(PointsTransaction.occurred_at.desc(), PointsTransaction.created_at.desc())
            .offset((page - 1) * limit)
            .limit(limit)
        )
        result = await self._session.execute(stmt)
        return HistoryPage(items=list(result.scalars().all()), page=page, limit=limit, total=int(total or 0))

    async def get_stats(self, user_id: str, *, now: datetime | None = None) -> PointsStats:
        current_time = ensure_utc(now or utcnow())
        month_start = current_time.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
        account = await self.get_account(user_id)

        month_row = (
            await self._session.execute(
                select(
                    func.coalesce(func.sum(PointsTransaction.amount).filter(PointsTransaction.amount > 0), 0),
                    func.coalesce(func.sum(PointsTransaction.amount).filter(PointsTransaction.amount < 0), 0),
                    func.count(PointsTransaction.id),
                ).where(
                    PointsTransaction.user_id == user_id,
                    PointsTransaction.occurred_at >= month_start,
                )
            )
        ).one()

        earned_total = func.sum(PointsTransaction.amount).label("total")
        sources = await self._session.execute(
            select(PointsTransaction.transaction_type, earned_total, func.count(PointsTransaction.id))
            .where(PointsTransaction.user_id == user_id, PointsTransaction.amount > 0)
            .group_by(PointsTransaction.transaction_type)
            .order_by(earned_total.desc())
            .limit(5)
        )

        return PointsStats(
            user_id=user_id,
            balance=int(account.balance) if account else 0,
            lifetime_earned=int(account.lifetime_earned) if account else 0,
            lifetime_spent=int(account.lifetime_spent) if account else 0,
            categories=account.category_breakdown() if account else {},
            month_earned=int(month_row[0] or 0),
            month_spent=abs(int(month_row[1] or 0)),
            month_transactions=int(month_row[2] or 0),
            top_sources=[
                {"type": source, "points": int(points or 0), "count": int(count)}
                for source, points, count in sources.all()
            ],
        )

    async def verify_invariant(self, user_id: str) -> bool:
        ledger_sum = await self._session.scalar(
            select(func.coalesce(func.sum(PointsTransaction.amount), 0)).where(PointsTransaction.user_id == user_id)
        )
        return int(ledger_sum or 0) == await self.get_balance(user_id)

    async def _enforce_caps(
        self,
        user_id: str,
        rule: ActionRule,
        points: int,
        now: datetime,
        metadata: Mapping[str, Any] | None,
    ) -> None:
        never_fits = rule.daily_limit == 0 or (rule.daily_points_cap is not None and points > rule.daily_points_cap)
        row = None
        if not never_fits:
            row = await self._limits.record_guarded(
                user_id,
                rule.counter_feature,
                now=now,
                points=points,
                max_count=rule.daily_limit,
                max_points=rule.daily_points_cap,
                cooldown_seconds=rule.cooldown_seconds,
                metadata=metadata,
            )
        if row is not None:
            return

        counter = await self._limits.get_counter(user_id, rule.counter_feature, usage_day(now))
        reason = "daily_cap"
        retry_after: float | None = None
        if counter is not None and counter.last_used_at is not None and rule.cooldown_seconds:
            elapsed = (now - ensure_utc(counter.last_used_at)).total_seconds()
            if elapsed < rule.cooldown_seconds:
                reason = "cooldown"
                retry_after = rule.cooldown_seconds - elapsed
        self._store.record_limit_rejection(rule.action)
        logger.info("Points award blocked", user_id=user_id, action=rule.action, reason=reason)
        raise LimitExceeded(
            f"{rule.action} is limited right now ({reason})",
            action=rule.action,
            reason=reason,
            retry_after_seconds=retry_after,
        )

    async def _find_by_key(self, user_id: str, idempotency_key: str) -> PointsTransaction | None:
        result = await self._session.execute(
            select(PointsTransaction).where(
                PointsTransaction.user_id == user_id,
                PointsTransaction.idempotency_key == idempotency_key,
            )
        )
        return result.scalar_one_or_none()

    async def _duplicate(self, existing: PointsTransaction) -> LedgerResult:
        logger.info(
            "Ledger call already applied",
            user_id=existing.user_id,
            idempotency_key=existing.idempotency_key,
        )
        self._store.record_ledger_entry("duplicate", 0)
        return LedgerResult(
            new_balance=await self.get_balance(existing.user_id),
            transaction=existing,
            duplicate=True,
        )

    async def _append(self, **values: Any) -> PointsTransaction:
        metadata = values.pop("metadata")
        entry = PointsTransaction(metadata_json=dict(metadata) if metadata else {}, **values)
        self._session.add(entry)
        await self._session.flush()
        return entry


__all__ = ["HistoryPage", "LedgerResult", "PointsLedger", "PointsStats"]
