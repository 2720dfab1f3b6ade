"""Premium subscription model."""

from __future__ import annotations

from enum import Enum
from uuid import uuid4

from sqlalchemy import Column, Index, JSON, Numeric, String, Text, func, text
from sqlalchemy.dialects.postgresql import UUID

from rewards_engine.db.base import Base
from rewards_engine.db.types import AwareDateTime, utcnow
from rewards_engine.models._columns import enum_type


class SubscriptionPlan(str, Enum):
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    YEARLY = "yearly"


class SubscriptionStatus(str, Enum):
    PENDING_PAYMENT = "pending_payment"
    ACTIVE = "active"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


OPEN_SUBSCRIPTION_STATUSES = (SubscriptionStatus.ACTIVE, SubscriptionStatus.PENDING_PAYMENT)

_OPEN_STATUS_FILTER = text("status IN ('active', 'pending_payment')")


class PaymentMethod(str, Enum):
    YAPE = "yape"
    PLIN = "plin"
    CARD = "card"
    ADMIN = "admin"


class PremiumSubscription(Base):
    """Premium plan purchased by a user; at most one open row per user."""

    __tablename__ = "premium_subscriptions"
    __table_args__ = (
        Index(
            "uq_premium_subscriptions_open_user",
            "user_id",
            unique=True,
            sqlite_where=_OPEN_STATUS_FILTER,
            postgresql_where=_OPEN_STATUS_FILTER,
        ),
        Index("ix_premium_subscriptions_status_end", "status", "end_date"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    user_id = Column(String(64), nullable=False, index=True)
    plan = Column(enum_type(SubscriptionPlan, "subscription_plan"), nullable=False)
    status = Column(
        enum_type(SubscriptionStatus, "subscription_status"),
        nullable=False,
        default=SubscriptionStatus.PENDING_PAYMENT,
        server_default=SubscriptionStatus.PENDING_PAYMENT.value,
    )
    start_date = Column(AwareDateTime(), nullable=False)
    end_date = Column(AwareDateTime(), nullable=False)
    price = Column(Numeric(10, 2), nullable=False)
    currency = Column(String(3), nullable=False, default="PEN", server_default="PEN")
    payment_method = Column(enum_type(PaymentMethod, "subscription_payment_method"), nullable=False)
    payment_reference = Column(String(128), nullable=True)
    activated_at = Column(AwareDateTime(), nullable=True)
    cancelled_at = Column(AwareDateTime(), nullable=True)
    cancel_reason = Column(Text, nullable=True)
    metadata_json = Column("metadata", JSON, nullable=True)
    created_at = Column(AwareDateTime(), default=utcnow, server_default=func.now(), nullable=False)
    updated_at = Column(AwareDateTime(), default=utcnow, onupdate=utcnow, server_default=func.now(), nullable=False)
