"""Fire-and-forget notifications emitted after rewards transactions commit."""

from __future__ import annotations

from typing import Iterable

from loguru import logger

from rewards_engine.core.settings import settings
from rewards_engine.models.coupon import CouponUsage
from rewards_engine.models.redemption import Redemption
from rewards_engine.models.subscription import PremiumSubscription

from .backend import (
    InMemoryNotificationSender,
    LoggingNotificationSender,
    NotificationEvent,
    NotificationSender,
    NotificationType,
)


class RewardsNotifier:
    """Builds rewards notifications and shields callers from delivery failures."""

    def __init__(self, sender: NotificationSender | None = None) -> None:
        self._sender = sender or self._build_default_sender()
        self._muted = {item for item in settings.notification_muted_events}

    @property
    def sender(self) -> NotificationSender:
        return self._sender

    async def premium_activated(self, subscription: PremiumSubscription) -> None:
        await self._dispatch(
            NotificationEvent(
                event_type=NotificationType.PREMIUM_ACTIVATED,
                user_id=subscription.user_id,
                title="Premium activated",
                body=f"Your {subscription.plan.value} plan is active until {subscription.end_date:%Y-%m-%d}.",
                metadata={"subscription_id": str(subscription.id), "plan": subscription.plan.value},
            )
        )

    async def redemptions_redeemable(self, redemptions: Iterable[Redemption]) -> None:
        for redemption in redemptions:
            body = f"Show code {redemption.code} to claim {redemption.product_name or 'your reward'}."
            if redemption.expires_at is not None:
                body += f" Valid until {redemption.expires_at:%Y-%m-%d %H:%M} UTC."
            await self._dispatch(
                NotificationEvent(
                    event_type=NotificationType.REDEMPTION_REDEEMABLE,
                    user_id=redemption.user_id,
                    title="Your reward is ready",
                    body=body,
                    metadata={"redemption_id": str(redemption.id), "code": redemption.code},
                )
            )

    async def redemption_delivered(self, redemption: Redemption) -> None:
        await self._dispatch(
            NotificationEvent(
                event_type=NotificationType.REDEMPTION_DELIVERED,
                user_id=redemption.user_id,
                title="Reward delivered",
                body=f"Redemption {redemption.code} was delivered.",
                metadata={"redemption_id": str(redemption.id)},
            )
        )

    async def coupons_reset(self, usages: Iterable[CouponUsage]) -> None:
        per_user: dict[str, list[CouponUsage]] = {}
        for usage in usages:
            per_user.setdefault(usage.user_id, []).append(usage)
        for user_id, items in per_user.items():
            await self._dispatch(
                NotificationEvent(
                    event_type=NotificationType.COUPON_RESET,
                    user_id=user_id,
                    title="Your coupons are available again",
                    body=f"{len(items)} coupon(s) renewed for your new billing cycle.",
                    metadata={
                        "coupon_usage_ids": [str(item.id) for item in items],
                        "cycle_end": items[0].cycle_end.isoformat(),
                    },
                )
            )

    async def _dispatch(self, event: NotificationEvent) -> None:
        if event.event_type.value in self._muted:
            return
        try:
            await self._sender.send(event)
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                "Notification delivery failed",
                event_type=event.event_type.value,
                user_id=event.user_id,
                error=str(exc),
            )

    @staticmethod
    def _build_default_sender() -> NotificationSender:
        if settings.notification_backend == "memory":
            return InMemoryNotificationSender()
        return LoggingNotificationSender()
