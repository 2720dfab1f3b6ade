"""Rewards core tables.

Revision ID: 20260301_01
Revises:
Create Date: 2026-03-01
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision: str = "20260301_01"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

UUID = postgresql.UUID(as_uuid=True)
OPEN_SUBSCRIPTIONS = sa.text("status IN ('active', 'pending_payment')")


def _timestamps(*, updated: bool = True) -> list[sa.Column]:
    columns = [sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False)]
    if updated:
        columns.append(
            sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False)
        )
    return columns


def upgrade() -> None:
    op.create_table(
        "points_accounts",
        sa.Column("id", UUID, primary_key=True),
        sa.Column("user_id", sa.String(64), nullable=False),
        sa.Column("balance", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("lifetime_earned", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("lifetime_spent", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("game_points", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("ads_points", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("referral_points", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("daily_points", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("admin_points", sa.Integer(), nullable=False, server_default="0"),
        *_timestamps(),
        sa.UniqueConstraint("user_id", name="uq_points_accounts_user_id"),
        sa.CheckConstraint("balance >= 0", name="ck_points_accounts_balance_non_negative"),
    )

    op.create_table(
        "points_transactions",
        sa.Column("id", UUID, primary_key=True),
        sa.Column("user_id", sa.String(64), nullable=False),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("transaction_type", sa.String(64), nullable=False),
        sa.Column(
            "category",
            sa.Enum("game", "ads", "referral", "daily", "admin", name="points_category"),
            nullable=True,
        ),
        sa.Column("reason", sa.String(255), nullable=True),
        sa.Column("balance_after", sa.Integer(), nullable=False),
        sa.Column("idempotency_key", sa.String(128), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=True),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False),
        *_timestamps(updated=False),
        sa.UniqueConstraint("user_id", "idempotency_key", name="uq_points_transactions_idempotency"),
    )
    op.create_index("ix_points_transactions_user_occurred", "points_transactions", ["user_id", "occurred_at"])

    op.create_table(
        "daily_usage",
        sa.Column("id", UUID, primary_key=True),
        sa.Column("user_id", sa.String(64), nullable=False),
        sa.Column("feature", sa.String(64), nullable=False),
        sa.Column("usage_date", sa.Date(), nullable=False),
        sa.Column("usage_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("points_earned", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("is_premium", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("last_used_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("user_id", "feature", "usage_date", name="uq_daily_usage_user_feature_date"),
    )
    op.create_index("ix_daily_usage_usage_date", "daily_usage", ["usage_date"])

    op.create_table(
        "catalog_products",
        sa.Column("id", UUID, primary_key=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("category", sa.Enum("digital", "physical", "premium", name="product_category"), nullable=False),
        sa.Column("points_cost", sa.Integer(), nullable=False),
        sa.Column("stock", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("one_time_only", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("validity_minutes", sa.Integer(), nullable=False, server_default="60"),
        *_timestamps(),
        sa.CheckConstraint("stock >= 0", name="ck_catalog_products_stock_non_negative"),
    )

    op.create_table(
        "cart_items",
        sa.Column("id", UUID, primary_key=True),
        sa.Column("user_id", sa.String(64), nullable=False),
        sa.Column(
            "product_id",
            UUID,
            sa.ForeignKey("catalog_products.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "product_type",
            sa.Enum("marketplace_product", "microinsurance", "premium_service", name="cart_product_type"),
            nullable=False,
        ),
        sa.Column("quantity", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("unit_price", sa.Numeric(12, 2), nullable=False),
        sa.Column("currency", sa.Enum("points", "fiat", name="cart_currency"), nullable=False),
        sa.Column("metadata", sa.JSON(), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("user_id", "product_id", "product_type", name="uq_cart_items_user_product_type"),
        sa.CheckConstraint("quantity > 0", name="ck_cart_items_quantity_positive"),
    )
    op.create_index("ix_cart_items_user_id", "cart_items", ["user_id"])

    op.create_table(
        "redemptions",
        sa.Column("id", UUID, primary_key=True),
        sa.Column("user_id", sa.String(64), nullable=False),
        sa.Column("product_id", UUID, sa.ForeignKey("catalog_products.id"), nullable=False),
        sa.Column("product_name", sa.String(255), nullable=True),
        sa.Column(
            "product_category",
            sa.Enum("digital", "physical", "premium", name="redemption_product_category"),
            nullable=False,
        ),
        sa.Column("quantity", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("points_spent", sa.Integer(), nullable=False),
        sa.Column(
            "status",
            sa.Enum("pending", "confirmed", "delivered", name="redemption_status"),
            nullable=False,
            server_default="pending",
        ),
        sa.Column("code", sa.String(32), nullable=True),
        sa.Column("one_time_key", sa.String(160), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("confirmed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("confirmed_by", sa.String(64), nullable=True),
        sa.Column("delivered_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("delivered_by", sa.String(64), nullable=True),
        sa.Column("station_name", sa.String(120), nullable=True),
        sa.Column("station_code", sa.String(64), nullable=True),
        sa.Column("device_id", sa.String(120), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("code", name="uq_redemptions_code"),
        sa.UniqueConstraint("one_time_key", name="uq_redemptions_one_time_key"),
    )
    op.create_index("ix_redemptions_user_created", "redemptions", ["user_id", "created_at"])
    op.create_index("ix_redemptions_station_code", "redemptions", ["station_code"])

    op.create_table(
        "redemption_audit_entries",
        sa.Column("id", UUID, primary_key=True),
        sa.Column(
            "redemption_id",
            UUID,
            sa.ForeignKey("redemptions.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("sequence", sa.Integer(), nullable=False),
        sa.Column("action", sa.Enum("confirm", "deliver", "scan", name="redemption_audit_action"), nullable=False),
        sa.Column(
            "outcome",
            sa.Enum("ok", "duplicate", "expired", "invalid", "error", name="redemption_audit_outcome"),
            nullable=False,
        ),
        sa.Column("actor_id", sa.String(64), nullable=True),
        sa.Column("station_code", sa.String(64), nullable=True),
        sa.Column("device_id", sa.String(120), nullable=True),
        sa.Column("note", sa.Text(), nullable=True),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("redemption_id", "sequence", name="uq_redemption_audit_entries_sequence"),
    )
    op.create_index(
        "ix_redemption_audit_entries_redemption_id", "redemption_audit_entries", ["redemption_id"]
    )

    op.create_table(
        "premium_subscriptions",
        sa.Column("id", UUID, primary_key=True),
        sa.Column("user_id", sa.String(64), nullable=False),
        sa.Column("plan", sa.Enum("monthly", "quarterly", "yearly", name="subscription_plan"), nullable=False),
        sa.Column(
            "status",
            sa.Enum("pending_payment", "active", "cancelled", "expired", name="subscription_status"),
            nullable=False,
            server_default="pending_payment",
        ),
        sa.Column("start_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("end_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("price", sa.Numeric(10, 2), nullable=False),
        sa.Column("currency", sa.String(3), nullable=False, server_default="PEN"),
        sa.Column(
            "payment_method",
            sa.Enum("yape", "plin", "card", "admin", name="subscription_payment_method"),
            nullable=False,
        ),
        sa.Column("payment_reference", sa.String(128), nullable=True),
        sa.Column("activated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancel_reason", sa.Text(), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_premium_subscriptions_user_id", "premium_subscriptions", ["user_id"])
    op.create_index("ix_premium_subscriptions_status_end", "premium_subscriptions", ["status", "end_date"])
    op.create_index(
        "uq_premium_subscriptions_open_user",
        "premium_subscriptions",
        ["user_id"],
        unique=True,
        postgresql_where=OPEN_SUBSCRIPTIONS,
        sqlite_where=OPEN_SUBSCRIPTIONS,
    )

    op.create_table(
        "coupons",
        sa.Column("id", UUID, primary_key=True),
        sa.Column("code", sa.String(32), nullable=False),
        sa.Column("title", sa.String(120), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column(
            "benefit_type",
            sa.Enum(
                "discount_percentage",
                "discount_fixed",
                "free_trip",
                "points_bonus",
                "custom",
                name="coupon_benefit_type",
            ),
            nullable=False,
        ),
        sa.Column("discount_percentage", sa.Numeric(5, 2), nullable=True),
        sa.Column("discount_amount", sa.Numeric(10, 2), nullable=True),
        sa.Column("points_bonus", sa.Integer(), nullable=True),
        sa.Column("custom_data", sa.JSON(), nullable=True),
        sa.Column(
            "category",
            sa.Enum("transport", "discount", "special", "bonus", name="coupon_category"),
            nullable=False,
        ),
        sa.Column("valid_from", sa.DateTime(timezone=True), nullable=False),
        sa.Column("valid_until", sa.DateTime(timezone=True), nullable=True),
        sa.Column("max_uses_per_cycle", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("requires_premium", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("display_order", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_uses", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_by", sa.String(64), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("code", name="uq_coupons_code"),
    )

    op.create_table(
        "coupon_usages",
        sa.Column("id", UUID, primary_key=True),
        sa.Column("user_id", sa.String(64), nullable=False),
        sa.Column("coupon_id", UUID, sa.ForeignKey("coupons.id", ondelete="CASCADE"), nullable=False),
        sa.Column(
            "subscription_id",
            UUID,
            sa.ForeignKey("premium_subscriptions.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("cycle_number", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("cycle_start", sa.DateTime(timezone=True), nullable=False),
        sa.Column("cycle_end", sa.DateTime(timezone=True), nullable=False),
        sa.Column(
            "status",
            sa.Enum("available", "used", "expired", name="coupon_usage_status"),
            nullable=False,
            server_default="available",
        ),
        sa.Column("used_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("usage_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_uses_in_cycle", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("usage_details", sa.JSON(), nullable=True),
        sa.Column("will_reset_on", sa.DateTime(timezone=True), nullable=False),
        sa.Column("reset_count", sa.Integer(), nullable=False, server_default="0"),
        *_timestamps(),
        sa.UniqueConstraint("user_id", "coupon_id", "cycle_start", name="uq_coupon_usages_user_coupon_cycle"),
    )
    op.create_index("ix_coupon_usages_will_reset_on", "coupon_usages", ["will_reset_on"])
    op.create_index("ix_coupon_usages_user_status", "coupon_usages", ["user_id", "status"])


def downgrade() -> None:
    op.drop_table("coupon_usages")
    op.drop_table("coupons")
    op.drop_index("uq_premium_subscriptions_open_user", table_name="premium_subscriptions")
    op.drop_table("premium_subscriptions")
    op.drop_table("redemption_audit_entries")
    op.drop_table("redemptions")
    op.drop_table("cart_items")
    op.drop_table("catalog_products")
    op.drop_table("daily_usage")
    op.drop_table("points_transactions")
    op.drop_table("points_accounts")

    bind = op.get_bind()
    for enum_name in (
        "coupon_usage_status",
        "coupon_category",
        "coupon_benefit_type",
        "subscription_payment_method",
        "subscription_status",
        "subscription_plan",
        "redemption_audit_outcome",
        "redemption_audit_action",
        "redemption_status",
        "redemption_product_category",
        "cart_currency",
        "cart_product_type",
        "product_category",
        "points_category",
    ):
        sa.Enum(name=enum_name).drop(bind, checkfirst=True)
