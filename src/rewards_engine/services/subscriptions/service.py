"""Premium subscription lifecycle."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any
from uuid import UUID, uuid4

from loguru import logger
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from rewards_engine.core.errors import SubscriptionConflict, SubscriptionNotFound, ValidationError
from rewards_engine.db.types import ensure_utc, utcnow
from rewards_engine.domain.auth import AuthContext
from rewards_engine.models.coupon import CouponUsage
from rewards_engine.models.subscription import (
    OPEN_SUBSCRIPTION_STATUSES,
    PaymentMethod,
    PremiumSubscription,
    SubscriptionPlan,
    SubscriptionStatus,
)
from rewards_engine.services.coupons.tracker import CouponUsageTracker

from .cycles import add_months, start_of_day


@dataclass(frozen=True, slots=True)
class PlanPricing:
    plan: SubscriptionPlan
    price: Decimal
    months: int
    discount_percent: Decimal = Decimal("0")
    currency: str = "PEN"


PLAN_PRICING: dict[SubscriptionPlan, PlanPricing] = {
    SubscriptionPlan.MONTHLY: PlanPricing(SubscriptionPlan.MONTHLY, Decimal("19.90"), 1),
    SubscriptionPlan.QUARTERLY: PlanPricing(SubscriptionPlan.QUARTERLY, Decimal("49.90"), 3, Decimal("16.7")),
    SubscriptionPlan.YEARLY: PlanPricing(SubscriptionPlan.YEARLY, Decimal("179.90"), 12, Decimal("25")),
}


@dataclass(slots=True)
class SubscriptionResult:
    subscription: PremiumSubscription
    already_processed: bool = False
    coupon_usages: list[CouponUsage] = field(default_factory=list)

    @property
    def activated(self) -> bool:
        return self.subscription.status == SubscriptionStatus.ACTIVE and not self.already_processed

    def as_dict(self) -> dict[str, Any]:
        subscription = self.subscription
        return {
            "id": str(subscription.id),
            "user_id": subscription.user_id,
            "plan": subscription.plan.value,
            "status": subscription.status.value,
            "start_date": ensure_utc(subscription.start_date).isoformat(),
            "end_date": ensure_utc(subscription.end_date).isoformat(),
            "price": str(subscription.price),
            "currency": subscription.currency,
            "already_processed": self.already_processed,
            "coupon_usages": len(self.coupon_usages),
        }


def plan_end(start: datetime, plan: SubscriptionPlan) -> datetime:
    start = ensure_utc(start)
    return add_months(start, PLAN_PRICING[plan].months) + (start - start_of_day(start))


def _coerce_plan(plan: SubscriptionPlan | str) -> SubscriptionPlan:
    try:
        return SubscriptionPlan(plan)
    except ValueError as exc:
        raise ValidationError(f"Unknown plan {plan!r}", plan=str(plan)) from exc


class SubscriptionService:
    """Creates, activates and winds down premium subscriptions.

    At most one subscription per user is ``pending_payment`` or ``active``;
    a partial unique index enforces it, so racing creations cannot both win.
    """

    def __init__(self, session: AsyncSession, *, coupons: CouponUsageTracker | None = None) -> None:
        self._session = session
        self._coupons = coupons or CouponUsageTracker(session)

    async def create_subscription(
        self,
        user_id: str,
        plan: SubscriptionPlan | str,
        payment_method: PaymentMethod | str,
        *,
        payment_reference: str | None = None,
        now: datetime | None = None,
    ) -> PremiumSubscription:
        plan = _coerce_plan(plan)
        try:
            payment_method = PaymentMethod(payment_method)
        except ValueError as exc:
            raise ValidationError(f"Unknown payment method {payment_method!r}") from exc

        current_time = ensure_utc(now or utcnow())
        if await self._find_open(user_id) is not None:
            raise SubscriptionConflict("User already has an open subscription", user_id=user_id)

        pricing = PLAN_PRICING[plan]
        subscription = PremiumSubscription(
            id=uuid4(),
            user_id=user_id,
            plan=plan,
            status=SubscriptionStatus.PENDING_PAYMENT,
            start_date=current_time,
            end_date=plan_end(current_time, plan),
            price=pricing.price,
            currency=pricing.currency,
            payment_method=payment_method,
            payment_reference=payment_reference,
            metadata_json={"discount_percent": str(pricing.discount_percent)},
            created_at=current_time,
            updated_at=current_time,
        )
        try:
            async with self._session.begin_nested():
                self._session.add(subscription)
                await self._session.flush()
        except IntegrityError as exc:
            raise SubscriptionConflict("User already has an open subscription", user_id=user_id) from exc

        logger.info(
            "Subscription created",
            user_id=user_id,
            subscription_id=str(subscription.id),
            plan=plan.value,
            payment_method=payment_method.value,
        )
        return subscription

    async def confirm_payment(
        self,
        subscription_id: UUID,
        *,
        payment_reference: str | None = None,
        now: datetime | None = None,
    ) -> SubscriptionResult:
        """Activate a pending subscription and provision its first cycle of coupons."""

        current_time = ensure_utc(now or utcnow())
        subscription = await self._lock(subscription_id)
        if subscription.status == SubscriptionStatus.ACTIVE:
            return SubscriptionResult(subscription=subscription, already_processed=True)
        if subscription.status != SubscriptionStatus.PENDING_PAYMENT:
            raise ValidationError(
                f"Cannot confirm a {subscription.status.value} subscription",
                subscription_id=str(subscription_id),
                status=subscription.status.value,
            )

        values: dict[Any, Any] = {
            PremiumSubscription.status: SubscriptionStatus.ACTIVE,
            PremiumSubscription.activated_at: current_time,
            PremiumSubscription.start_date: current_time,
            PremiumSubscription.end_date: plan_end(current_time, subscription.plan),
            PremiumSubscription.updated_at: current_time,
        }
        if payment_reference:
            values[PremiumSubscription.payment_reference] = payment_reference
        if not await self._transition(subscription, SubscriptionStatus.PENDING_PAYMENT, values):
            return SubscriptionResult(subscription=subscription, already_processed=True)

        usages = await self._coupons.provision_cycle(subscription, now=current_time)
        logger.info(
            "Subscription activated",
            user_id=subscription.user_id,
            subscription_id=str(subscription.id),
            plan=subscription.plan.value,
            end_date=ensure_utc(subscription.end_date).isoformat(),
        )
        return SubscriptionResult(subscription=subscription, coupon_usages=usages)

    async def activate_by_admin(
        self,
        user_id: str,
        plan: SubscriptionPlan | str,
        *,
        actor_id: str | None = None,
        now: datetime | None = None,
    ) -> SubscriptionResult:
        subscription = await self.create_subscription(
            user_id,
            plan,
            PaymentMethod.ADMIN,
            payment_reference=f"admin:{actor_id}" if actor_id else "admin",
            now=now,
        )
        return await self.confirm_payment(subscription.id, now=now)

    async def reject_payment(
        self,
        subscription_id: UUID,
        reason: str,
        *,
        now: datetime | None = None,
    ) -> SubscriptionResult:
        current_time = ensure_utc(now or utcnow())
        subscription = await self._lock(subscription_id)
        if subscription.status == SubscriptionStatus.CANCELLED:
            return SubscriptionResult(subscription=subscription, already_processed=True)
        if subscription.status != SubscriptionStatus.PENDING_PAYMENT:
            raise ValidationError(
                "Only pending payments can be rejected",
                subscription_id=str(subscription_id),
                status=subscription.status.value,
            )
        values = {
            PremiumSubscription.status: SubscriptionStatus.CANCELLED,
            PremiumSubscription.cancelled_at: current_time,
            PremiumSubscription.cancel_reason: reason,
            PremiumSubscription.updated_at: current_time,
        }
        changed = await self._transition(subscription, SubscriptionStatus.PENDING_PAYMENT, values)
        logger.info("Subscription payment rejected", subscription_id=str(subscription_id), reason=reason)
        return SubscriptionResult(subscription=subscription, already_processed=not changed)

    async def cancel_subscription(
        self,
        user_id: str,
        reason: str | None = None,
        *,
        now: datetime | None = None,
    ) -> SubscriptionResult:
        current_time = ensure_utc(now or utcnow())
        result = await self._session.execute(
            select(PremiumSubscription.id).where(
                PremiumSubscription.user_id == user_id,
                PremiumSubscription.status == SubscriptionStatus.ACTIVE,
            )
        )
        subscription_id = result.scalar_one_or_none()
        if subscription_id is None:
            raise SubscriptionNotFound("No active subscription to cancel", user_id=user_id)

        subscription = await self._lock(subscription_id)
        values = {
            PremiumSubscription.status: SubscriptionStatus.CANCELLED,
            PremiumSubscription.cancelled_at: current_time,
            PremiumSubscription.cancel_reason: reason,
            PremiumSubscription.updated_at: current_time,
        }
        changed = await self._transition(subscription, SubscriptionStatus.ACTIVE, values)
        logger.info("Subscription cancelled", user_id=user_id, subscription_id=str(subscription_id), reason=reason)
        return SubscriptionResult(subscription=subscription, already_processed=not changed)

    async def expire_lapsed(self, *, now: datetime | None = None, limit: int = 500) -> list[PremiumSubscription]:
        """Mark active subscriptions whose end date has passed as expired."""

        current_time = ensure_utc(now or utcnow())
        result = await self._session.execute(
            select(PremiumSubscription)
            .where(
                PremiumSubscription.status == SubscriptionStatus.ACTIVE,
                PremiumSubscription.end_date < current_time,
            )
            .order_by(PremiumSubscription.end_date.asc())
            .limit(limit)
            .with_for_update(skip_locked=True)
        )
        expired: list[PremiumSubscription] = []
        for subscription in result.scalars().all():
            subscription.status = SubscriptionStatus.EXPIRED
            subscription.updated_at = current_time
            expired.append(subscription)
        await self._session.flush()
        if expired:
            logger.info("Expired lapsed subscriptions", count=len(expired))
        return expired

    async def get_active(self, user_id: str, *, now: datetime | None = None) -> PremiumSubscription | None:
        current_time = ensure_utc(now or utcnow())
        result = await self._session.execute(
            select(PremiumSubscription)
            .where(
                PremiumSubscription.user_id == user_id,
                PremiumSubscription.status == SubscriptionStatus.ACTIVE,
                PremiumSubscription.end_date > current_time,
            )
            .order_by(PremiumSubscription.end_date.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def auth_context_for(
        self,
        user_id: str,
        role: str = "user",
        *,
        now: datetime | None = None,
    ) -> AuthContext:
        active = await self.get_active(user_id, now=now)
        return AuthContext(
            user_id=user_id,
            role=role,
            is_premium_active=active is not None,
            premium_expiry=ensure_utc(active.end_date) if active is not None else None,
        )

    async def _find_open(self, user_id: str) -> PremiumSubscription | None:
        result = await self._session.execute(
            select(PremiumSubscription)
            .where(
                PremiumSubscription.user_id == user_id,
                PremiumSubscription.status.in_(OPEN_SUBSCRIPTION_STATUSES),
            )
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def _lock(self, subscription_id: UUID) -> PremiumSubscription:
        result = await self._session.execute(
            select(PremiumSubscription)
            .where(PremiumSubscription.id == subscription_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        subscription = result.scalar_one_or_none()
        if subscription is None:
            raise SubscriptionNotFound("Subscription not found", subscription_id=str(subscription_id))
        return subscription

    async def _transition(
        self,
        subscription: PremiumSubscription,
        expected: SubscriptionStatus,
        values: dict[Any, Any],
    ) -> bool:
        result = await self._session.execute(
            update(PremiumSubscription)
            .where(PremiumSubscription.id == subscription.id, PremiumSubscription.status == expected)
            .values(values)
            .execution_options(synchronize_session=False)
        )
        await self._session.refresh(subscription)
        return result.rowcount == 1


__all__ = ["PLAN_PRICING", "PlanPricing", "SubscriptionResult", "SubscriptionService", "plan_end"]
