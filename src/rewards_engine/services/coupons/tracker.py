"""Per-cycle coupon usages for premium subscribers."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Mapping
from uuid import UUID, uuid4

from loguru import logger
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from rewards_engine.core.errors import NotAvailable
from rewards_engine.db.dialects import upsert_insert
from rewards_engine.db.types import ensure_utc, utcnow
from rewards_engine.models.coupon import Coupon, CouponBenefitType, CouponUsage, CouponUsageStatus
from rewards_engine.models.subscription import PremiumSubscription, SubscriptionStatus
from rewards_engine.observability.rewards import get_rewards_store
from rewards_engine.services.points.ledger import PointsLedger
from rewards_engine.services.points.rules import ActionRuleBook
from rewards_engine.services.subscriptions.cycles import BillingCycle, current_cycle

_USAGES = CouponUsage.__table__
COUPON_BONUS_ACTION = "coupon_bonus"


@dataclass(slots=True)
class CouponUseResult:
    usage: CouponUsage
    points_awarded: int = 0
    new_balance: int | None = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "coupon_usage_id": str(self.usage.id),
            "status": self.usage.status.value,
            "usage_count": self.usage.usage_count,
            "max_uses_in_cycle": self.usage.max_uses_in_cycle,
            "points_awarded": self.points_awarded,
            "new_balance": self.new_balance,
        }


@dataclass(slots=True)
class CouponSweepSummary:
    scanned: int = 0
    reset: int = 0
    expired: int = 0
    skipped: int = 0
    reset_usages: list[CouponUsage] = field(default_factory=list)

    def as_dict(self) -> dict[str, int]:
        return {"scanned": self.scanned, "reset": self.reset, "expired": self.expired, "skipped": self.skipped}


class CouponUsageTracker:
    """Binds coupon templates to a subscriber's billing cycles.

    Each (user, coupon, subscription) gets one usage row; cycle rollovers
    mutate that row in place rather than inserting new ones.
    """

    def __init__(self, session: AsyncSession, *, rules: ActionRuleBook | None = None) -> None:
        self._session = session
        self._rules = rules
        self._store = get_rewards_store()

    async def provision_cycle(
        self,
        subscription: PremiumSubscription,
        *,
        now: datetime | None = None,
    ) -> list[CouponUsage]:
        current_time = ensure_utc(now or utcnow())
        if subscription.status != SubscriptionStatus.ACTIVE:
            return []
        cycle = current_cycle(subscription.start_date, current_time)

        existing = set(
            (
                await self._session.execute(
                    select(CouponUsage.coupon_id).where(
                        CouponUsage.user_id == subscription.user_id,
                        CouponUsage.subscription_id == subscription.id,
                    )
                )
            )
            .scalars()
            .all()
        )
        coupons = (
            await self._session.execute(
                select(Coupon).where(Coupon.is_active.is_(True)).order_by(Coupon.display_order.asc(), Coupon.code)
            )
        ).scalars().all()

        created = 0
        for coupon in coupons:
            if coupon.id in existing or not coupon.is_available_on(current_time):
                continue
            stmt = (
                upsert_insert(self._session, _USAGES)
                .values(
                    id=uuid4(),
                    user_id=subscription.user_id,
                    coupon_id=coupon.id,
                    subscription_id=subscription.id,
                    cycle_number=cycle.cycle_number,
                    cycle_start=cycle.cycle_start,
                    cycle_end=cycle.cycle_end,
                    status=CouponUsageStatus.AVAILABLE,
                    usage_count=0,
                    max_uses_in_cycle=coupon.max_uses_per_cycle,
                    will_reset_on=cycle.resets_on,
                    reset_count=0,
                    created_at=current_time,
                    updated_at=current_time,
                )
                .on_conflict_do_nothing(index_elements=["user_id", "coupon_id", "cycle_start"])
            )
            result = await self._session.execute(stmt)
            created += int(result.rowcount or 0)

        if created:
            self._store.record_coupon_event("provisioned", created)
            logger.info(
                "Provisioned coupon usages",
                user_id=subscription.user_id,
                subscription_id=str(subscription.id),
                cycle_number=cycle.cycle_number,
                created=created,
            )

        result = await self._session.execute(
            select(CouponUsage)
            .where(CouponUsage.user_id == subscription.user_id, CouponUsage.subscription_id == subscription.id)
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def get_available(
        self,
        user_id: str,
        *,
        cycle_start: datetime | None = None,
        now: datetime | None = None,
    ) -> list[CouponUsage]:
        current_time = ensure_utc(now or utcnow())
        stmt = (
            select(CouponUsage)
            .join(Coupon, Coupon.id == CouponUsage.coupon_id)
            .where(
                CouponUsage.user_id == user_id,
                CouponUsage.status == CouponUsageStatus.AVAILABLE,
                CouponUsage.cycle_end >= current_time,
                Coupon.is_active.is_(True),
            )
        )
        if cycle_start is not None:
            stmt = stmt.where(CouponUsage.cycle_start == ensure_utc(cycle_start))
        stmt = stmt.order_by(Coupon.display_order.asc(), CouponUsage.created_at.asc())
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def use(
        self,
        coupon_usage_id: UUID,
        usage_details: Mapping[str, Any] | None = None,
        *,
        user_id: str | None = None,
        now: datetime | None = None,
    ) -> CouponUseResult:
        """Consume one use of a coupon in the current cycle."""

        current_time = ensure_utc(now or utcnow())
        usage = await self._lock(coupon_usage_id)
        if usage is None or (user_id is not None and usage.user_id != user_id):
            raise NotAvailable("Coupon not found", coupon_usage_id=str(coupon_usage_id))
        self._ensure_usable(usage, current_time)

        coupon: Coupon = usage.coupon
        if coupon.requires_premium:
            subscription = None
            if usage.subscription_id is not None:
                subscription = await self._session.get(PremiumSubscription, usage.subscription_id)
            if not _subscription_active(subscription, current_time):
                raise NotAvailable(
                    "Coupon requires an active premium plan",
                    reason="premium_required",
                    coupon_usage_id=str(usage.id),
                )
        new_count = usage.usage_count + 1
        new_status = CouponUsageStatus.USED if new_count >= usage.max_uses_in_cycle else CouponUsageStatus.AVAILABLE
        details = dict(usage.usage_details or {})
        if usage_details:
            details.update(usage_details)

        result = await self._session.execute(
            update(CouponUsage)
            .where(
                CouponUsage.id == usage.id,
                CouponUsage.status == CouponUsageStatus.AVAILABLE,
                CouponUsage.usage_count == usage.usage_count,
            )
            .values(
                usage_count=new_count,
                status=new_status,
                used_at=current_time,
                usage_details=details,
                updated_at=current_time,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise NotAvailable("Coupon was used concurrently", coupon_usage_id=str(usage.id))
        await self._session.execute(
            update(Coupon)
            .where(Coupon.id == coupon.id)
            .values(total_uses=Coupon.total_uses + 1)
            .execution_options(synchronize_session=False)
        )
        await self._session.refresh(usage)

        outcome = CouponUseResult(usage=usage)
        if coupon.benefit_type == CouponBenefitType.POINTS_BONUS and coupon.points_bonus:
            awarded = await PointsLedger(self._session, rules=self._rules).award(
                usage.user_id,
                COUPON_BONUS_ACTION,
                amount=int(coupon.points_bonus),
                reason=f"Coupon {coupon.code}",
                metadata={"coupon_id": str(coupon.id), "coupon_usage_id": str(usage.id)},
                idempotency_key=f"coupon:{usage.id}:{usage.cycle_number}:{new_count}",
                now=current_time,
            )
            outcome.points_awarded = int(coupon.points_bonus)
            outcome.new_balance = awarded.new_balance

        self._store.record_coupon_event("used", 1)
        logger.info(
            "Coupon used",
            user_id=usage.user_id,
            coupon_code=coupon.code,
            coupon_usage_id=str(usage.id),
            usage_count=new_count,
            status=new_status.value,
        )
        return outcome

    async def reset_for_new_cycle(
        self,
        usage: CouponUsage,
        new_start: datetime,
        new_end: datetime,
        new_cycle_number: int,
    ) -> CouponUsage:
        cycle = BillingCycle(cycle_number=new_cycle_number, cycle_start=new_start, cycle_end=new_end)
        usage.status = CouponUsageStatus.AVAILABLE
        usage.used_at = None
        usage.usage_count = 0
        usage.cycle_number = cycle.cycle_number
        usage.cycle_start = cycle.cycle_start
        usage.cycle_end = cycle.cycle_end
        usage.will_reset_on = cycle.resets_on
        usage.reset_count = (usage.reset_count or 0) + 1
        await self._session.flush()
        return usage

    async def sweep_resets(self, *, now: datetime | None = None, limit: int = 500) -> CouponSweepSummary:
        """Roll every due usage into the cycle containing ``now``.

        Usages whose subscription is no longer active are expired instead.
        """

        current_time = ensure_utc(now or utcnow())
        stmt = (
            select(CouponUsage)
            .where(
                CouponUsage.will_reset_on <= current_time,
                CouponUsage.status != CouponUsageStatus.EXPIRED,
            )
            .order_by(CouponUsage.will_reset_on.asc(), CouponUsage.id.asc())
            .limit(limit)
            .with_for_update(skip_locked=True)
        )
        usages = (await self._session.execute(stmt)).scalars().all()
        summary = CouponSweepSummary(scanned=len(usages))

        for usage in usages:
            subscription = None
            if usage.subscription_id is not None:
                subscription = await self._session.get(PremiumSubscription, usage.subscription_id)
            if not _subscription_active(subscription, current_time):
                usage.status = CouponUsageStatus.EXPIRED
                summary.expired += 1
                continue

            cycle = current_cycle(subscription.start_date, current_time)
            try:
                async with self._session.begin_nested():
                    await self.reset_for_new_cycle(usage, cycle.cycle_start, cycle.cycle_end, cycle.cycle_number)
            except IntegrityError:
                logger.warning(
                    "Coupon usage already exists for the new cycle",
                    coupon_usage_id=str(usage.id),
                    cycle_start=cycle.cycle_start.isoformat(),
                )
                summary.skipped += 1
                continue
            summary.reset += 1
            summary.reset_usages.append(usage)

        await self._session.flush()
        if summary.reset:
            self._store.record_coupon_event("reset", summary.reset)
        if summary.expired:
            self._store.record_coupon_event("expired", summary.expired)
        logger.info("Coupon reset sweep finished", **summary.as_dict())
        return summary

    async def get_history(self, user_id: str, limit: int = 10) -> list[CouponUsage]:
        result = await self._session.execute(
            select(CouponUsage)
            .where(CouponUsage.user_id == user_id, CouponUsage.used_at.is_not(None))
            .order_by(CouponUsage.used_at.desc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def _lock(self, coupon_usage_id: UUID) -> CouponUsage | None:
        result = await self._session.execute(
            select(CouponUsage)
            .where(CouponUsage.id == coupon_usage_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    @staticmethod
    def _ensure_usable(usage: CouponUsage, now: datetime) -> None:
        context = {"coupon_usage_id": str(usage.id)}
        if usage.status != CouponUsageStatus.AVAILABLE:
            raise NotAvailable(f"Coupon is {usage.status.value}", reason=usage.status.value, **context)
        if usage.usage_count >= usage.max_uses_in_cycle:
            raise NotAvailable("Coupon has no uses left this cycle", reason="cycle_limit", **context)
        if not ensure_utc(usage.cycle_start) <= now <= ensure_utc(usage.cycle_end):
            raise NotAvailable("Coupon is outside its billing cycle", reason="outside_cycle", **context)
        if usage.coupon is None or not usage.coupon.is_available_on(now):
            raise NotAvailable("Coupon is no longer offered", reason="inactive", **context)


def _subscription_active(subscription: PremiumSubscription | None, now: datetime) -> bool:
    return (
        subscription is not None
        and subscription.status == SubscriptionStatus.ACTIVE
        and ensure_utc(subscription.end_date) > now
    )


__all__ = ["COUPON_BONUS_ACTION", "CouponSweepSummary", "CouponUseResult", "CouponUsageTracker"]
