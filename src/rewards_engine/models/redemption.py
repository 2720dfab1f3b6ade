"""Redemption records and their append-only audit trail."""

from __future__ import annotations

from enum import Enum
from uuid import uuid4

from sqlalchemy import (
    Column,
    ForeignKey,
    Index,
    Integer,
    JSON,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import UUID

from rewards_engine.db.base import Base
from rewards_engine.db.types import AwareDateTime, utcnow
from rewards_engine.models._columns import enum_type
from rewards_engine.models.catalog import ProductCategory


class RedemptionStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    DELIVERED = "delivered"


REDEMPTION_STATUS_ORDER = {
    RedemptionStatus.PENDING: 0,
    RedemptionStatus.CONFIRMED: 1,
    RedemptionStatus.DELIVERED: 2,
}


class AuditAction(str, Enum):
    CONFIRM = "confirm"
    DELIVER = "deliver"
    SCAN = "scan"


class AuditOutcome(str, Enum):
    OK = "ok"
    DUPLICATE = "duplicate"
    EXPIRED = "expired"
    INVALID = "invalid"
    ERROR = "error"


class Redemption(Base):
    """A user's exchange of points for a catalog item."""

    __tablename__ = "redemptions"
    __table_args__ = (
        UniqueConstraint("code", name="uq_redemptions_code"),
        UniqueConstraint("one_time_key", name="uq_redemptions_one_time_key"),
        Index("ix_redemptions_user_created", "user_id", "created_at"),
        Index("ix_redemptions_station_code", "station_code"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    user_id = Column(String(64), nullable=False)
    product_id = Column(UUID(as_uuid=True), ForeignKey("catalog_products.id"), nullable=False)
    product_name = Column(String(255), nullable=True)
    product_category = Column(enum_type(ProductCategory, "redemption_product_category"), nullable=False)
    quantity = Column(Integer, nullable=False, default=1, server_default="1")
    points_spent = Column(Integer, nullable=False)
    status = Column(
        enum_type(RedemptionStatus, "redemption_status"),
        nullable=False,
        default=RedemptionStatus.PENDING,
        server_default=RedemptionStatus.PENDING.value,
    )
    code = Column(String(32), nullable=True)
    one_time_key = Column(String(160), nullable=True)
    expires_at = Column(AwareDateTime(), nullable=True)
    confirmed_at = Column(AwareDateTime(), nullable=True)
    confirmed_by = Column(String(64), nullable=True)
    delivered_at = Column(AwareDateTime(), nullable=True)
    delivered_by = Column(String(64), nullable=True)
    station_name = Column(String(120), nullable=True)
    station_code = Column(String(64), nullable=True)
    device_id = Column(String(120), nullable=True)
    metadata_json = Column("metadata", JSON, nullable=True)
    created_at = Column(AwareDateTime(), default=utcnow, server_default=func.now(), nullable=False)
    updated_at = Column(AwareDateTime(), default=utcnow, onupdate=utcnow, server_default=func.now(), nullable=False)


class RedemptionAuditEntry(Base):
    """One audit record per transition attempt, ordered by sequence."""

    __tablename__ = "redemption_audit_entries"
    __table_args__ = (
        UniqueConstraint("redemption_id", "sequence", name="uq_redemption_audit_entries_sequence"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    redemption_id = Column(
        UUID(as_uuid=True),
        ForeignKey("redemptions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    sequence = Column(Integer, nullable=False)
    action = Column(enum_type(AuditAction, "redemption_audit_action"), nullable=False)
    outcome = Column(enum_type(AuditOutcome, "redemption_audit_outcome"), nullable=False)
    actor_id = Column(String(64), nullable=True)
    station_code = Column(String(64), nullable=True)
    device_id = Column(String(120), nullable=True)
    note = Column(Text, nullable=True)
    occurred_at = Column(AwareDateTime(), default=utcnow, nullable=False)
