"""Background workers for rewards maintenance."""

from .coupon_reset import CouponResetWorker

__all__ = ["CouponResetWorker"]
