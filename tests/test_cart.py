from decimal import Decimal

import pytest

from rewards_engine.core.errors import OutOfStock, ProductUnavailable, ValidationError
from rewards_engine.models.catalog import CartCurrency, CartProductType


@pytest.mark.asyncio
async def test_adding_same_product_bumps_quantity(rewards, make_product) -> None:
    product = await make_product(points_cost=120, stock=5)

    first = await rewards.add_to_cart("user-1", product.id)
    second = await rewards.add_to_cart("user-1", product.id, quantity=2)

    assert second.id == first.id
    assert second.quantity == 3
    assert second.unit_price == Decimal("120")

    summary = await rewards.cart_summary("user-1")
    assert summary.total_points == 360
    assert summary.item_count == 3
    assert summary.as_dict()["items"][0]["currency"] == "points"


@pytest.mark.asyncio
async def test_adding_beyond_stock_leaves_cart_unchanged(rewards, make_product) -> None:
    product = await make_product(stock=2)
    await rewards.add_to_cart("user-1", product.id)

    with pytest.raises(OutOfStock) as excinfo:
        await rewards.add_to_cart("user-1", product.id, quantity=2)

    assert excinfo.value.context["available"] == 2
    summary = await rewards.cart_summary("user-1")
    assert [item.quantity for item in summary.items] == [1]


@pytest.mark.asyncio
async def test_inactive_or_missing_products_are_rejected(rewards, make_product) -> None:
    product = await make_product(is_active=False)

    with pytest.raises(ProductUnavailable):
        await rewards.add_to_cart("user-1", product.id)
    with pytest.raises(ValidationError):
        await rewards.add_to_cart("user-1", product.id, quantity=0)


@pytest.mark.asyncio
async def test_update_remove_and_clear(rewards, make_product) -> None:
    coffee = await make_product(name="Coffee", points_cost=30, stock=10)
    ticket = await make_product(name="Ticket", points_cost=80, stock=10)
    coffee_item = await rewards.add_to_cart("user-1", coffee.id)
    ticket_item = await rewards.add_to_cart("user-1", ticket.id)

    updated = await rewards.update_cart_item("user-1", coffee_item.id, 4)
    assert updated is not None and updated.quantity == 4
    with pytest.raises(OutOfStock):
        await rewards.update_cart_item("user-1", coffee_item.id, 11)

    assert await rewards.update_cart_item("user-1", ticket_item.id, 0) is None
    assert (await rewards.cart_summary("user-1")).total_points == 120

    assert await rewards.remove_from_cart("user-2", coffee_item.id) is False
    assert await rewards.remove_from_cart("user-1", coffee_item.id) is True

    await rewards.add_to_cart("user-1", coffee.id)
    await rewards.add_to_cart("user-1", ticket.id)
    assert await rewards.clear_cart("user-1") == 2
    assert (await rewards.cart_summary("user-1")).item_count == 0


@pytest.mark.asyncio
async def test_fiat_items_are_totalled_separately(rewards, make_product) -> None:
    product = await make_product(points_cost=0, stock=3)

    await rewards.add_to_cart(
        "user-1",
        product.id,
        product_type=CartProductType.MICROINSURANCE,
        currency=CartCurrency.FIAT,
        unit_price=Decimal("12.50"),
        quantity=2,
    )

    summary = await rewards.cart_summary("user-1")
    assert summary.total_points == 0
    assert summary.total_fiat == Decimal("25.00")
