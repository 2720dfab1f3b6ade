"""Notification helpers."""

from .backend import (  # noqa: F401
    InMemoryNotificationSender,
    LoggingNotificationSender,
    NotificationEvent,
    NotificationSender,
    NotificationType,
)
from .service import RewardsNotifier  # noqa: F401
