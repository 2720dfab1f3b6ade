"""Catalog slice read by checkout, and cart reservations."""

from __future__ import annotations

from enum import Enum
from uuid import uuid4

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    ForeignKey,
    Integer,
    JSON,
    Numeric,
    String,
    UniqueConstraint,
    false,
    func,
    true,
)
from sqlalchemy.dialects.postgresql import UUID

from rewards_engine.db.base import Base
from rewards_engine.db.types import AwareDateTime, utcnow
from rewards_engine.models._columns import enum_type


class ProductCategory(str, Enum):
    DIGITAL = "digital"
    PHYSICAL = "physical"
    PREMIUM = "premium"


class CartProductType(str, Enum):
    """Kinds of purchasable items a cart row can reference."""

    MARKETPLACE_PRODUCT = "marketplace_product"
    MICROINSURANCE = "microinsurance"
    PREMIUM_SERVICE = "premium_service"


class CartCurrency(str, Enum):
    POINTS = "points"
    FIAT = "fiat"


class CatalogProduct(Base):
    """Catalog row owned by the catalog service; the core reads it and decrements stock."""

    __tablename__ = "catalog_products"
    __table_args__ = (CheckConstraint("stock >= 0", name="ck_catalog_products_stock_non_negative"),)

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    name = Column(String(255), nullable=False)
    category = Column(enum_type(ProductCategory, "product_category"), nullable=False)
    points_cost = Column(Integer, nullable=False)
    stock = Column(Integer, nullable=False, default=0, server_default="0")
    is_active = Column(Boolean, nullable=False, default=True, server_default=true())
    one_time_only = Column(Boolean, nullable=False, default=False, server_default=false())
    validity_minutes = Column(Integer, nullable=False, default=60, server_default="60")
    created_at = Column(AwareDateTime(), default=utcnow, server_default=func.now(), nullable=False)
    updated_at = Column(AwareDateTime(), default=utcnow, onupdate=utcnow, server_default=func.now(), nullable=False)


class CartItem(Base):
    """Pending reservation of a product by a user, cleared on checkout."""

    __tablename__ = "cart_items"
    __table_args__ = (
        UniqueConstraint("user_id", "product_id", "product_type", name="uq_cart_items_user_product_type"),
        CheckConstraint("quantity > 0", name="ck_cart_items_quantity_positive"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    user_id = Column(String(64), nullable=False, index=True)
    product_id = Column(UUID(as_uuid=True), ForeignKey("catalog_products.id", ondelete="CASCADE"), nullable=False)
    product_type = Column(
        enum_type(CartProductType, "cart_product_type"),
        nullable=False,
        default=CartProductType.MARKETPLACE_PRODUCT,
    )
    quantity = Column(Integer, nullable=False, default=1, server_default="1")
    unit_price = Column(Numeric(12, 2), nullable=False)
    currency = Column(enum_type(CartCurrency, "cart_currency"), nullable=False, default=CartCurrency.POINTS)
    metadata_json = Column("metadata", JSON, nullable=True)
    created_at = Column(AwareDateTime(), default=utcnow, server_default=func.now(), nullable=False)
    updated_at = Column(AwareDateTime(), default=utcnow, onupdate=utcnow, server_default=func.now(), nullable=False)
