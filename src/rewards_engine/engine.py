"""Entry point wiring the rewards services into committed units of work."""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Any, Awaitable, Callable, Mapping, TypeVar
from uuid import UUID

from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession

from rewards_engine.core.settings import settings
from rewards_engine.db.transactions import TransactionRunner
from rewards_engine.db.types import ensure_utc, utcnow
from rewards_engine.domain.auth import AuthContext
from rewards_engine.domain.catalog import CatalogLookup, SqlCatalogLookup
from rewards_engine.models.catalog import CartCurrency, CartItem, CartProductType
from rewards_engine.models.coupon import CouponUsage
from rewards_engine.models.redemption import Redemption, RedemptionAuditEntry, RedemptionStatus
from rewards_engine.models.subscription import PaymentMethod, PremiumSubscription, SubscriptionPlan
from rewards_engine.services.cart import CartService, CartSummary
from rewards_engine.services.coupons import CouponSweepSummary, CouponUsageTracker, CouponUseResult
from rewards_engine.services.limits import DailyLimitTracker, LimitCheck
from rewards_engine.services.notifications import RewardsNotifier
from rewards_engine.services.points import ActionRuleBook, HistoryPage, LedgerResult, PointsLedger, PointsStats
from rewards_engine.services.redemptions import (
    CheckoutResult,
    RedemptionCoordinator,
    RedemptionReporting,
    RedemptionStateMachine,
    StationInfo,
    StationStats,
    TransitionResult,
)
from rewards_engine.services.referrals import ReferralResult, ReferralService
from rewards_engine.services.subscriptions.service import SubscriptionResult, SubscriptionService

T = TypeVar("T")
SessionFactory = Callable[[], AsyncSession]


class RewardsEngine:
    """Facade the outer layers call; each write runs in one committed transaction.

    Notifications are sent only after the transaction commits and never
    affect the outcome.
    """

    def __init__(
        self,
        session_factory: SessionFactory | None = None,
        *,
        catalog: CatalogLookup | None = None,
        notifier: RewardsNotifier | None = None,
        rules: ActionRuleBook | None = None,
        runner: TransactionRunner | None = None,
    ) -> None:
        if session_factory is None:
            from rewards_engine.db.session import async_session

            session_factory = async_session
        self._session_factory = session_factory
        self._catalog = catalog or SqlCatalogLookup()
        self._notifier = notifier or RewardsNotifier()
        self._rules = rules or ActionRuleBook.from_path(settings.points_action_rules_path)
        self._runner = runner or TransactionRunner(session_factory)
        self._coordinator = RedemptionCoordinator(
            session_factory,
            catalog=self._catalog,
            notifier=self._notifier,
            runner=self._runner,
            rules=self._rules,
        )

    @property
    def notifier(self) -> RewardsNotifier:
        return self._notifier

    async def _write(self, unit: str, work: Callable[[AsyncSession], Awaitable[T]]) -> T:
        return await self._runner.run(work, unit=unit)

    async def _read(self, work: Callable[[AsyncSession], Awaitable[T]]) -> T:
        async with self._session_factory() as session:
            return await work(session)

    def _ledger(self, session: AsyncSession) -> PointsLedger:
        return PointsLedger(session, rules=self._rules)

    # Points

    async def award_points(
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
        return await self._write(
            "points.award",
            lambda session: self._ledger(session).award(
                user_id,
                action_type,
                amount,
                reason,
                metadata,
                idempotency_key=idempotency_key,
                now=now,
            ),
        )

    async def spend_points(
        self,
        user_id: str,
        amount: int,
        reason: str | None = None,
        metadata: Mapping[str, Any] | None = None,
        *,
        idempotency_key: str | None = None,
        now: datetime | None = None,
    ) -> LedgerResult:
        return await self._write(
            "points.spend",
            lambda session: self._ledger(session).spend(
                user_id,
                amount,
                reason,
                metadata,
                idempotency_key=idempotency_key,
                now=now,
            ),
        )

    async def get_balance(self, user_id: str) -> int:
        return await self._read(lambda session: self._ledger(session).get_balance(user_id))

    async def get_history(self, user_id: str, page: int = 1, limit: int = 20) -> HistoryPage:
        return await self._read(lambda session: self._ledger(session).get_history(user_id, page, limit))

    async def get_stats(self, user_id: str, *, now: datetime | None = None) -> PointsStats:
        return await self._read(lambda session: self._ledger(session).get_stats(user_id, now=now))

    async def verify_ledger(self, user_id: str) -> bool:
        return await self._read(lambda session: self._ledger(session).verify_invariant(user_id))

    # Daily limits

    async def check_limit(
        self,
        auth: AuthContext,
        feature: str,
        limit: int | None = None,
        *,
        now: datetime | None = None,
    ) -> LimitCheck:
        current_time = ensure_utc(now or utcnow())
        return await self._read(
            lambda session: DailyLimitTracker(session).check_limit(
                auth.user_id,
                feature,
                limit,
                auth.is_premium(current_time),
                today=current_time.date(),
            )
        )

    async def consume_limit(
        self,
        auth: AuthContext,
        feature: str,
        *,
        limit: int | None = None,
        metadata: Mapping[str, Any] | None = None,
        now: datetime | None = None,
    ) -> LimitCheck:
        return await self._write(
            "limits.consume",
            lambda session: DailyLimitTracker(session).consume(
                auth.user_id, feature, auth, limit=limit, now=now, metadata=metadata
            ),
        )

    async def daily_usage(self, user_id: str, *, today: date | None = None) -> dict[str, int]:
        return await self._read(lambda session: DailyLimitTracker(session).usage_for(user_id, today=today))

    # Cart

    def _cart(self, session: AsyncSession) -> CartService:
        return CartService(session, catalog=self._catalog)

    async def add_to_cart(
        self,
        user_id: str,
        product_id: UUID,
        *,
        quantity: int = 1,
        product_type: CartProductType = CartProductType.MARKETPLACE_PRODUCT,
        currency: CartCurrency = CartCurrency.POINTS,
        unit_price: Decimal | int | None = None,
        metadata: Mapping[str, Any] | None = None,
    ) -> CartItem:
        return await self._write(
            "cart.add",
            lambda session: self._cart(session).add_item(
                user_id,
                product_id,
                quantity=quantity,
                product_type=product_type,
                currency=currency,
                unit_price=unit_price,
                metadata=metadata,
            ),
        )

    async def update_cart_item(self, user_id: str, item_id: UUID, quantity: int) -> CartItem | None:
        return await self._write(
            "cart.update", lambda session: self._cart(session).update_quantity(user_id, item_id, quantity)
        )

    async def remove_from_cart(self, user_id: str, item_id: UUID) -> bool:
        return await self._write("cart.remove", lambda session: self._cart(session).remove_item(user_id, item_id))

    async def clear_cart(self, user_id: str) -> int:
        return await self._write("cart.clear", lambda session: self._cart(session).clear(user_id))

    async def cart_summary(self, user_id: str) -> CartSummary:
        return await self._read(lambda session: self._cart(session).summary(user_id))

    # Redemptions

    async def checkout(
        self,
        auth: AuthContext,
        *,
        payment_confirmed: bool = False,
        now: datetime | None = None,
    ) -> CheckoutResult:
        return await self._coordinator.checkout(auth, payment_confirmed=payment_confirmed, now=now)

    async def redeem_product(self, auth: AuthContext, product_id: UUID, *, now: datetime | None = None) -> CheckoutResult:
        return await self._coordinator.redeem_product(auth, product_id, now=now)

    async def confirm_by_code(
        self,
        code: str,
        actor_id: str,
        station: StationInfo | None = None,
        *,
        now: datetime | None = None,
    ) -> TransitionResult:
        return await self._write(
            "redemptions.confirm",
            lambda session: RedemptionStateMachine(session).confirm_by_code(code, actor_id, station, now=now),
        )

    async def mark_delivered_by_code(
        self,
        code: str,
        actor_id: str,
        station: StationInfo | None = None,
        *,
        now: datetime | None = None,
    ) -> TransitionResult:
        result = await self._write(
            "redemptions.deliver",
            lambda session: RedemptionStateMachine(session).mark_delivered_by_code(code, actor_id, station, now=now),
        )
        if result.changed:
            await self._notifier.redemption_delivered(result.redemption)
        return result

    async def self_confirm_receipt(
        self,
        redemption_id: UUID,
        user_id: str,
        *,
        now: datetime | None = None,
    ) -> TransitionResult:
        result = await self._write(
            "redemptions.self_confirm",
            lambda session: RedemptionStateMachine(session).self_confirm_receipt(redemption_id, user_id, now=now),
        )
        if result.changed:
            await self._notifier.redemption_delivered(result.redemption)
        return result

    async def scan_code(
        self,
        code: str,
        actor_id: str,
        station: StationInfo | None = None,
        *,
        now: datetime | None = None,
    ) -> TransitionResult:
        return await self._write(
            "redemptions.scan",
            lambda session: RedemptionStateMachine(session).scan_code(code, actor_id, station, now=now),
        )

    async def list_redemptions(
        self,
        user_id: str,
        *,
        status: RedemptionStatus | None = None,
        limit: int = 50,
    ) -> list[Redemption]:
        return await self._read(
            lambda session: RedemptionStateMachine(session).list_for_user(user_id, status=status, limit=limit)
        )

    async def redemption_audit(self, redemption_id: UUID) -> list[RedemptionAuditEntry]:
        return await self._read(lambda session: RedemptionStateMachine(session).list_audit(redemption_id))

    async def station_stats(self, station_code: str | None = None, *, recent: int = 20) -> StationStats:
        return await self._read(lambda session: RedemptionReporting(session).station_stats(station_code, recent=recent))

    async def export_redemptions_csv(
        self,
        station_code: str | None = None,
        *,
        since: datetime | None = None,
        until: datetime | None = None,
    ) -> str:
        return await self._read(
            lambda session: RedemptionReporting(session).export_csv(station_code, since=since, until=until)
        )

    # Subscriptions

    def _subscriptions(self, session: AsyncSession) -> SubscriptionService:
        return SubscriptionService(session, coupons=CouponUsageTracker(session, rules=self._rules))

    async def create_subscription(
        self,
        user_id: str,
        plan: SubscriptionPlan | str,
        payment_method: PaymentMethod | str,
        *,
        payment_reference: str | None = None,
        now: datetime | None = None,
    ) -> PremiumSubscription:
        return await self._write(
            "subscriptions.create",
            lambda session: self._subscriptions(session).create_subscription(
                user_id, plan, payment_method, payment_reference=payment_reference, now=now
            ),
        )

    async def confirm_payment(
        self,
        subscription_id: UUID,
        *,
        payment_reference: str | None = None,
        now: datetime | None = None,
    ) -> SubscriptionResult:
        result = await self._write(
            "subscriptions.confirm_payment",
            lambda session: self._subscriptions(session).confirm_payment(
                subscription_id, payment_reference=payment_reference, now=now
            ),
        )
        if result.activated:
            await self._notifier.premium_activated(result.subscription)
        return result

    async def activate_by_admin(
        self,
        user_id: str,
        plan: SubscriptionPlan | str,
        *,
        actor_id: str | None = None,
        now: datetime | None = None,
    ) -> SubscriptionResult:
        result = await self._write(
            "subscriptions.activate_by_admin",
            lambda session: self._subscriptions(session).activate_by_admin(user_id, plan, actor_id=actor_id, now=now),
        )
        if result.activated:
            await self._notifier.premium_activated(result.subscription)
        return result

    async def reject_payment(self, subscription_id: UUID, reason: str, *, now: datetime | None = None) -> SubscriptionResult:
        return await self._write(
            "subscriptions.reject_payment",
            lambda session: self._subscriptions(session).reject_payment(subscription_id, reason, now=now),
        )

    async def cancel_subscription(
        self,
        user_id: str,
        reason: str | None = None,
        *,
        now: datetime | None = None,
    ) -> SubscriptionResult:
        return await self._write(
            "subscriptions.cancel",
            lambda session: self._subscriptions(session).cancel_subscription(user_id, reason, now=now),
        )

    async def get_active_subscription(
        self,
        user_id: str,
        *,
        now: datetime | None = None,
    ) -> PremiumSubscription | None:
        return await self._read(lambda session: self._subscriptions(session).get_active(user_id, now=now))

    async def auth_context_for(self, user_id: str, role: str = "user", *, now: datetime | None = None) -> AuthContext:
        return await self._read(lambda session: self._subscriptions(session).auth_context_for(user_id, role, now=now))

    async def expire_lapsed_subscriptions(self, *, now: datetime | None = None, limit: int = 500) -> int:
        expired = await self._write(
            "subscriptions.expire_lapsed",
            lambda session: self._subscriptions(session).expire_lapsed(now=now, limit=limit),
        )
        return len(expired)

    # Coupons

    def _coupons(self, session: AsyncSession) -> CouponUsageTracker:
        return CouponUsageTracker(session, rules=self._rules)

    async def available_coupons(
        self,
        user_id: str,
        *,
        cycle_start: datetime | None = None,
        now: datetime | None = None,
    ) -> list[CouponUsage]:
        return await self._read(
            lambda session: self._coupons(session).get_available(user_id, cycle_start=cycle_start, now=now)
        )

    async def use_coupon(
        self,
        coupon_usage_id: UUID,
        usage_details: Mapping[str, Any] | None = None,
        *,
        user_id: str | None = None,
        now: datetime | None = None,
    ) -> CouponUseResult:
        return await self._write(
            "coupons.use",
            lambda session: self._coupons(session).use(coupon_usage_id, usage_details, user_id=user_id, now=now),
        )

    async def coupon_history(self, user_id: str, limit: int = 10) -> list[CouponUsage]:
        return await self._read(lambda session: self._coupons(session).get_history(user_id, limit))

    async def sweep_coupon_resets(self, *, now: datetime | None = None, limit: int = 500) -> CouponSweepSummary:
        summary = await self._write(
            "coupons.sweep_resets",
            lambda session: self._coupons(session).sweep_resets(now=now, limit=limit),
        )
        if summary.reset_usages:
            await self._notifier.coupons_reset(summary.reset_usages)
        return summary

    # Referrals

    async def apply_referral(self, referrer_id: str, referred_user_id: str, *, now: datetime | None = None) -> ReferralResult:
        result = await self._write(
            "referrals.apply",
            lambda session: ReferralService(session, rules=self._rules).apply_referral(
                referrer_id, referred_user_id, now=now
            ),
        )
        if not result.already_processed:
            logger.info("Referral bonuses committed", referrer_id=referrer_id, referred_user_id=referred_user_id)
        return result


__all__ = ["RewardsEngine"]
