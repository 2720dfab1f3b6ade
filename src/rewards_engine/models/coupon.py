"""Benefit coupon templates and their per-cycle usages."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from enum import Enum
from uuid import uuid4

from sqlalchemy import (
    Boolean,
    Column,
    ForeignKey,
    Index,
    Integer,
    JSON,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    func,
    true,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship

from rewards_engine.db.base import Base
from rewards_engine.db.types import AwareDateTime, ensure_utc, utcnow
from rewards_engine.models._columns import enum_type


class CouponBenefitType(str, Enum):
    DISCOUNT_PERCENTAGE = "discount_percentage"
    DISCOUNT_FIXED = "discount_fixed"
    FREE_TRIP = "free_trip"
    POINTS_BONUS = "points_bonus"
    CUSTOM = "custom"


class CouponCategory(str, Enum):
    TRANSPORT = "transport"
    DISCOUNT = "discount"
    SPECIAL = "special"
    BONUS = "bonus"


class CouponUsageStatus(str, Enum):
    AVAILABLE = "available"
    USED = "used"
    EXPIRED = "expired"


class Coupon(Base):
    """Admin-defined benefit template, not tied to any user."""

    __tablename__ = "coupons"
    __table_args__ = (UniqueConstraint("code", name="uq_coupons_code"),)

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    code = Column(String(32), nullable=False)
    title = Column(String(120), nullable=False)
    description = Column(Text, nullable=True)
    benefit_type = Column(enum_type(CouponBenefitType, "coupon_benefit_type"), nullable=False)
    discount_percentage = Column(Numeric(5, 2), nullable=True)
    discount_amount = Column(Numeric(10, 2), nullable=True)
    points_bonus = Column(Integer, nullable=True)
    custom_data = Column(JSON, nullable=True)
    category = Column(
        enum_type(CouponCategory, "coupon_category"),
        nullable=False,
        default=CouponCategory.TRANSPORT,
    )
    valid_from = Column(AwareDateTime(), nullable=False, default=utcnow)
    valid_until = Column(AwareDateTime(), nullable=True)
    max_uses_per_cycle = Column(Integer, nullable=False, default=1, server_default="1")
    requires_premium = Column(Boolean, nullable=False, default=True, server_default=true())
    is_active = Column(Boolean, nullable=False, default=True, server_default=true())
    display_order = Column(Integer, nullable=False, default=0, server_default="0")
    total_uses = Column(Integer, nullable=False, default=0, server_default="0")
    created_by = Column(String(64), nullable=True)
    created_at = Column(AwareDateTime(), default=utcnow, server_default=func.now(), nullable=False)
    updated_at = Column(AwareDateTime(), default=utcnow, onupdate=utcnow, server_default=func.now(), nullable=False)

    def is_available_on(self, moment: datetime) -> bool:
        if not self.is_active:
            return False
        moment = ensure_utc(moment)
        if self.valid_from and moment < ensure_utc(self.valid_from):
            return False
        if self.valid_until and moment > ensure_utc(self.valid_until):
            return False
        return True

    def format_benefit(self) -> str:
        if self.benefit_type == CouponBenefitType.DISCOUNT_PERCENTAGE:
            return f"{_trim(self.discount_percentage)}% off"
        if self.benefit_type == CouponBenefitType.DISCOUNT_FIXED:
            return f"S/ {Decimal(self.discount_amount or 0):.2f} off"
        if self.benefit_type == CouponBenefitType.FREE_TRIP:
            return "Free trip"
        if self.benefit_type == CouponBenefitType.POINTS_BONUS:
            return f"+{self.points_bonus or 0} points"
        label = (self.custom_data or {}).get("label")
        return str(label) if label else self.title


def _trim(value: Decimal | int | None) -> str:
    return format(Decimal(value or 0).normalize(), "f")


class CouponUsage(Base):
    """Per user and billing cycle instance of a coupon."""

    __tablename__ = "coupon_usages"
    __table_args__ = (
        UniqueConstraint("user_id", "coupon_id", "cycle_start", name="uq_coupon_usages_user_coupon_cycle"),
        Index("ix_coupon_usages_will_reset_on", "will_reset_on"),
        Index("ix_coupon_usages_user_status", "user_id", "status"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    user_id = Column(String(64), nullable=False)
    coupon_id = Column(UUID(as_uuid=True), ForeignKey("coupons.id", ondelete="CASCADE"), nullable=False)
    subscription_id = Column(
        UUID(as_uuid=True),
        ForeignKey("premium_subscriptions.id", ondelete="SET NULL"),
        nullable=True,
    )
    cycle_number = Column(Integer, nullable=False, default=1, server_default="1")
    cycle_start = Column(AwareDateTime(), nullable=False)
    cycle_end = Column(AwareDateTime(), nullable=False)
    status = Column(
        enum_type(CouponUsageStatus, "coupon_usage_status"),
        nullable=False,
        default=CouponUsageStatus.AVAILABLE,
        server_default=CouponUsageStatus.AVAILABLE.value,
    )
    used_at = Column(AwareDateTime(), nullable=True)
    usage_count = Column(Integer, nullable=False, default=0, server_default="0")
    max_uses_in_cycle = Column(Integer, nullable=False, default=1, server_default="1")
    usage_details = Column(JSON, nullable=True)
    will_reset_on = Column(AwareDateTime(), nullable=False)
    reset_count = Column(Integer, nullable=False, default=0, server_default="0")
    created_at = Column(AwareDateTime(), default=utcnow, server_default=func.now(), nullable=False)
    updated_at = Column(AwareDateTime(), default=utcnow, onupdate=utcnow, server_default=func.now(), nullable=False)

    coupon = relationship("Coupon", lazy="selectin")
