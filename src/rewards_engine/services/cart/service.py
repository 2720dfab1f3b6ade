"""Cart reservations awaiting checkout."""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Mapping
from uuid import UUID, uuid4

from loguru import logger
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from rewards_engine.core.errors import OutOfStock, ProductUnavailable, ValidationError
from rewards_engine.db.dialects import upsert_insert
from rewards_engine.db.types import utcnow
from rewards_engine.domain.catalog import CatalogLookup, ProductSnapshot, SqlCatalogLookup
from rewards_engine.models.catalog import CartCurrency, CartItem, CartProductType

_CART = CartItem.__table__


@dataclass(slots=True)
class CartSummary:
    items: list[CartItem]
    total_points: int
    total_fiat: Decimal
    item_count: int

    def as_dict(self) -> dict[str, Any]:
        return {
            "items": [
                {
                    "id": str(item.id),
                    "product_id": str(item.product_id),
                    "product_type": item.product_type.value,
                    "quantity": item.quantity,
                    "unit_price": str(item.unit_price),
                    "currency": item.currency.value,
                }
                for item in self.items
            ],
            "total_points": self.total_points,
            "total_fiat": str(self.total_fiat),
            "item_count": self.item_count,
        }


def _validate_quantity(quantity: int) -> None:
    if not isinstance(quantity, int) or isinstance(quantity, bool) or quantity < 0:
        raise ValidationError("Quantity must be a non-negative integer", quantity=quantity)


class CartService:
    """Maintains one row per (user, product, type); re-adding bumps the quantity."""

    def __init__(self, session: AsyncSession, *, catalog: CatalogLookup | None = None) -> None:
        self._session = session
        self._catalog = catalog or SqlCatalogLookup()

    async def add_item(
        self,
        user_id: str,
        product_id: UUID,
        *,
        quantity: int = 1,
        product_type: CartProductType = CartProductType.MARKETPLACE_PRODUCT,
        currency: CartCurrency = CartCurrency.POINTS,
        unit_price: Decimal | int | None = None,
        metadata: Mapping[str, Any] | None = None,
    ) -> CartItem:
        _validate_quantity(quantity)
        if quantity == 0:
            raise ValidationError("Quantity must be at least 1", quantity=quantity)
        product = await self._require_product(product_id)
        price = Decimal(unit_price) if unit_price is not None else Decimal(product.points_cost)

        now = utcnow()
        stmt = (
            upsert_insert(self._session, _CART)
            .values(
                id=uuid4(),
                user_id=user_id,
                product_id=product_id,
                product_type=product_type,
                quantity=quantity,
                unit_price=price,
                currency=currency,
                metadata=dict(metadata) if metadata else None,
                created_at=now,
                updated_at=now,
            )
            .on_conflict_do_update(
                index_elements=[_CART.c.user_id, _CART.c.product_id, _CART.c.product_type],
                set_={"quantity": _CART.c.quantity + quantity, "updated_at": now},
            )
            .returning(_CART.c.id, _CART.c.quantity)
        )
        item_id, new_quantity = (await self._session.execute(stmt)).one()
        self._ensure_stock(product, int(new_quantity))

        item = await self._get_item(user_id, item_id)
        logger.info(
            "Cart item added",
            user_id=user_id,
            product_id=str(product_id),
            quantity=int(new_quantity),
        )
        return item

    async def update_quantity(self, user_id: str, item_id: UUID, quantity: int) -> CartItem | None:
        """Set an item's quantity; zero removes the row."""

        _validate_quantity(quantity)
        item = await self._get_item(user_id, item_id)
        if quantity == 0:
            await self._session.delete(item)
            await self._session.flush()
            return None
        product = await self._require_product(item.product_id)
        self._ensure_stock(product, quantity)
        item.quantity = quantity
        await self._session.flush()
        return item

    async def remove_item(self, user_id: str, item_id: UUID) -> bool:
        result = await self._session.execute(
            delete(CartItem)
            .where(CartItem.id == item_id, CartItem.user_id == user_id)
            .execution_options(synchronize_session=False)
        )
        return bool(result.rowcount)

    async def clear(self, user_id: str) -> int:
        result = await self._session.execute(
            delete(CartItem).where(CartItem.user_id == user_id).execution_options(synchronize_session=False)
        )
        return int(result.rowcount or 0)

    async def list_items(self, user_id: str) -> list[CartItem]:
        result = await self._session.execute(
            select(CartItem)
            .where(CartItem.user_id == user_id)
            .order_by(CartItem.created_at.asc(), CartItem.id.asc())
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def summary(self, user_id: str) -> CartSummary:
        items = await self.list_items(user_id)
        total_points = sum(
            int(item.unit_price) * item.quantity for item in items if item.currency == CartCurrency.POINTS
        )
        total_fiat = sum(
            (Decimal(item.unit_price) * item.quantity for item in items if item.currency == CartCurrency.FIAT),
            Decimal("0"),
        )
        return CartSummary(
            items=items,
            total_points=total_points,
            total_fiat=total_fiat,
            item_count=sum(item.quantity for item in items),
        )

    async def _get_item(self, user_id: str, item_id: UUID) -> CartItem:
        result = await self._session.execute(
            select(CartItem)
            .where(CartItem.id == item_id, CartItem.user_id == user_id)
            .execution_options(populate_existing=True)
        )
        item = result.scalar_one_or_none()
        if item is None:
            raise ValidationError("Cart item not found", item_id=str(item_id))
        return item

    async def _require_product(self, product_id: UUID) -> ProductSnapshot:
        product = await self._catalog.get_product(self._session, product_id)
        if product is None or not product.active:
            raise ProductUnavailable("Product is not available", product_id=str(product_id))
        return product

    @staticmethod
    def _ensure_stock(product: ProductSnapshot, quantity: int) -> None:
        if quantity > product.stock:
            raise OutOfStock(
                f"Only {product.stock} unit(s) of {product.name} left",
                product_id=str(product.id),
                available=product.stock,
                requested=quantity,
            )


__all__ = ["CartService", "CartSummary"]
