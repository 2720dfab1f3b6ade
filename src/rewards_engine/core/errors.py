"""Typed failures raised by the rewards core."""

from __future__ import annotations

from typing import Any


class RewardsError(RuntimeError):
    """Base class for every failure the rewards core reports to callers."""

    code = "rewards_error"
    retryable = False

    def __init__(self, message: str | None = None, **context: Any) -> None:
        super().__init__(message or self.code)
        self.context = context

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": self.code,
            "message": str(self),
            "retryable": self.retryable,
            **self.context,
        }


class InsufficientFunds(RewardsError):
    code = "insufficient_funds"


class InsufficientPoints(RewardsError):
    code = "insufficient_points"


class OutOfStock(RewardsError):
    code = "out_of_stock"


class ProductUnavailable(RewardsError):
    code = "product_unavailable"


class AlreadyRedeemed(RewardsError):
    code = "already_redeemed"


class PremiumRequired(RewardsError):
    code = "premium_required"


class LimitExceeded(RewardsError):
    """Raised when a daily cap or cooldown blocks an action."""

    code = "limit_exceeded"


class RedemptionNotFound(RewardsError):
    code = "redemption_not_found"


class RedemptionNotDigital(RewardsError):
    code = "redemption_not_digital"


class NotAvailable(RewardsError):
    """Raised when a coupon usage cannot be consumed."""

    code = "coupon_not_available"


class ValidationError(RewardsError):
    code = "validation_error"


class EmptyCart(ValidationError):
    code = "empty_cart"


class SubscriptionConflict(ValidationError):
    code = "subscription_conflict"


class SubscriptionNotFound(ValidationError):
    code = "subscription_not_found"


class InternalError(RewardsError):
    """Raised when the store fails mid-transaction; nothing was committed."""

    code = "internal_error"


class TransactionConflict(InternalError):
    code = "transaction_conflict"
    retryable = True


__all__ = [
    "AlreadyRedeemed",
    "EmptyCart",
    "InsufficientFunds",
    "InsufficientPoints",
    "InternalError",
    "LimitExceeded",
    "NotAvailable",
    "OutOfStock",
    "PremiumRequired",
    "ProductUnavailable",
    "RedemptionNotDigital",
    "RedemptionNotFound",
    "RewardsError",
    "SubscriptionConflict",
    "SubscriptionNotFound",
    "TransactionConflict",
    "ValidationError",
]
