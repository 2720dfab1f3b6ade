"""SQLAlchemy models package."""

from .catalog import CartCurrency, CartItem, CartProductType, CatalogProduct, ProductCategory  # noqa: F401
from .coupon import (  # noqa: F401
    Coupon,
    CouponBenefitType,
    CouponCategory,
    CouponUsage,
    CouponUsageStatus,
)
from .points import DailyUsageCounter, PointsAccount, PointsCategory, PointsTransaction  # noqa: F401
from .redemption import (  # noqa: F401
    AuditAction,
    AuditOutcome,
    Redemption,
    RedemptionAuditEntry,
    RedemptionStatus,
)
from .subscription import (  # noqa: F401
    OPEN_SUBSCRIPTION_STATUSES,
    PaymentMethod,
    PremiumSubscription,
    SubscriptionPlan,
    SubscriptionStatus,
)
