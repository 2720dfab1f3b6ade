"""Read access to catalog products plus the guarded stock decrement."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from rewards_engine.models.catalog import CatalogProduct, ProductCategory


@dataclass(frozen=True, slots=True)
class ProductSnapshot:
    id: UUID
    name: str
    active: bool
    stock: int
    points_cost: int
    category: ProductCategory
    one_time_only: bool = False
    validity_minutes: int = 60


class CatalogLookup(Protocol):
    """What checkout needs from the catalog owner."""

    async def get_product(self, session: AsyncSession, product_id: UUID) -> ProductSnapshot | None:
        ...

    async def reserve_stock(self, session: AsyncSession, product_id: UUID, quantity: int) -> bool:
        ...


class SqlCatalogLookup:
    """Catalog lookup backed by the shared ``catalog_products`` table."""

    async def get_product(self, session: AsyncSession, product_id: UUID) -> ProductSnapshot | None:
        result = await session.execute(select(CatalogProduct).where(CatalogProduct.id == product_id))
        product = result.scalar_one_or_none()
        if product is None:
            return None
        return ProductSnapshot(
            id=product.id,
            name=product.name,
            active=bool(product.is_active),
            stock=int(product.stock or 0),
            points_cost=int(product.points_cost),
            category=ProductCategory(product.category),
            one_time_only=bool(product.one_time_only),
            validity_minutes=int(product.validity_minutes or 60),
        )

    async def reserve_stock(self, session: AsyncSession, product_id: UUID, quantity: int) -> bool:
        """Decrement stock only if the product is active and enough units remain."""

        stmt = (
            update(CatalogProduct)
            .where(
                CatalogProduct.id == product_id,
                CatalogProduct.is_active.is_(True),
                CatalogProduct.stock >= quantity,
            )
            .values(stock=CatalogProduct.stock - quantity)
            .execution_options(synchronize_session=False)
        )
        result = await session.execute(stmt)
        return result.rowcount == 1
