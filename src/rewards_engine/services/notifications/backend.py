"""Delivery backends for rewards notifications."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Protocol

from loguru import logger


class NotificationType(str, Enum):
    PREMIUM_ACTIVATED = "premium_activated"
    REDEMPTION_REDEEMABLE = "redemption_redeemable"
    REDEMPTION_DELIVERED = "redemption_delivered"
    COUPON_RESET = "coupon_reset"


@dataclass(slots=True)
class NotificationEvent:
    """Payload handed to the delivery layer."""

    event_type: NotificationType
    user_id: str
    title: str
    body: str
    metadata: Dict[str, Any] = field(default_factory=dict)


class NotificationSender(Protocol):
    """Minimal protocol for the external notification delivery service."""

    async def send(self, event: NotificationEvent) -> None:
        ...


class LoggingNotificationSender:
    """Default sender that records events in the structured log stream."""

    async def send(self, event: NotificationEvent) -> None:
        logger.info(
            "Notification dispatched",
            event_type=event.event_type.value,
            user_id=event.user_id,
            title=event.title,
            metadata=event.metadata,
        )


@dataclass
class InMemoryNotificationSender:
    """Test sender storing events; set ``fail_with`` to simulate an outage."""

    sent: List[NotificationEvent] = field(default_factory=list)
    fail_with: Exception | None = None

    async def send(self, event: NotificationEvent) -> None:
        if self.fail_with is not None:
            raise self.fail_with
        self.sent.append(event)

    def of_type(self, event_type: NotificationType) -> List[NotificationEvent]:
        return [event for event in self.sent if event.event_type == event_type]
