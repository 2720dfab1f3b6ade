"""Coupon usage tracking."""

from .tracker import COUPON_BONUS_ACTION, CouponSweepSummary, CouponUsageTracker, CouponUseResult  # noqa: F401
