"""Points ledger and daily usage models."""

from __future__ import annotations

from enum import Enum
from uuid import uuid4

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    Date,
    Index,
    Integer,
    JSON,
    String,
    UniqueConstraint,
    false,
    func,
)
from sqlalchemy.dialects.postgresql import UUID

from rewards_engine.db.base import Base
from rewards_engine.db.types import AwareDateTime, utcnow
from rewards_engine.models._columns import enum_type


class PointsCategory(str, Enum):
    """Earning sources tracked as per-account subtotals."""

    GAME = "game"
    ADS = "ads"
    REFERRAL = "referral"
    DAILY = "daily"
    ADMIN = "admin"


class PointsAccount(Base):
    """Running balance for one user; only the ledger writes it."""

    __tablename__ = "points_accounts"
    __table_args__ = (
        UniqueConstraint("user_id", name="uq_points_accounts_user_id"),
        CheckConstraint("balance >= 0", name="ck_points_accounts_balance_non_negative"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    user_id = Column(String(64), nullable=False)
    balance = Column(Integer, nullable=False, default=0, server_default="0")
    lifetime_earned = Column(Integer, nullable=False, default=0, server_default="0")
    lifetime_spent = Column(Integer, nullable=False, default=0, server_default="0")
    game_points = Column(Integer, nullable=False, default=0, server_default="0")
    ads_points = Column(Integer, nullable=False, default=0, server_default="0")
    referral_points = Column(Integer, nullable=False, default=0, server_default="0")
    daily_points = Column(Integer, nullable=False, default=0, server_default="0")
    admin_points = Column(Integer, nullable=False, default=0, server_default="0")
    created_at = Column(AwareDateTime(), default=utcnow, server_default=func.now(), nullable=False)
    updated_at = Column(AwareDateTime(), default=utcnow, onupdate=utcnow, server_default=func.now(), nullable=False)

    def category_breakdown(self) -> dict[str, int]:
        return {category.value: getattr(self, f"{category.value}_points") or 0 for category in PointsCategory}


class PointsTransaction(Base):
    """Immutable ledger entry; the balance is the sum of these amounts."""

    __tablename__ = "points_transactions"
    __table_args__ = (
        UniqueConstraint("user_id", "idempotency_key", name="uq_points_transactions_idempotency"),
        Index("ix_points_transactions_user_occurred", "user_id", "occurred_at"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    user_id = Column(String(64), nullable=False)
    amount = Column(Integer, nullable=False)
    transaction_type = Column(String(64), nullable=False)
    category = Column(enum_type(PointsCategory, "points_category"), nullable=True)
    reason = Column(String(255), nullable=True)
    balance_after = Column(Integer, nullable=False)
    idempotency_key = Column(String(128), nullable=True)
    metadata_json = Column("metadata", JSON, nullable=True)
    occurred_at = Column(AwareDateTime(), default=utcnow, nullable=False)
    created_at = Column(AwareDateTime(), default=utcnow, server_default=func.now(), nullable=False)

    @property
    def is_credit(self) -> bool:
        return self.amount > 0


class DailyUsageCounter(Base):
    """Per user, feature and day counter; a new date starts a new row."""

    __tablename__ = "daily_usage"
    __table_args__ = (
        UniqueConstraint("user_id", "feature", "usage_date", name="uq_daily_usage_user_feature_date"),
        Index("ix_daily_usage_usage_date", "usage_date"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    user_id = Column(String(64), nullable=False)
    feature = Column(String(64), nullable=False)
    usage_date = Column(Date, nullable=False)
    usage_count = Column(Integer, nullable=False, default=0, server_default="0")
    points_earned = Column(Integer, nullable=False, default=0, server_default="0")
    is_premium = Column(Boolean, nullable=False, default=False, server_default=false())
    last_used_at = Column(AwareDateTime(), nullable=True)
    metadata_json = Column("metadata", JSON, nullable=True)
    created_at = Column(AwareDateTime(), default=utcnow, server_default=func.now(), nullable=False)
    updated_at = Column(AwareDateTime(), default=utcnow, onupdate=utcnow, server_default=func.now(), nullable=False)
