"""Cart services."""

from .service import CartService, CartSummary  # noqa: F401
