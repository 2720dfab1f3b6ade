"""Atomic checkout: points debit, stock decrement, redemption and claim code."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Callable, Sequence
from uuid import UUID, uuid4

from loguru import logger
from sqlalchemy import delete, exists, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from rewards_engine.core.errors import (
    AlreadyRedeemed,
    EmptyCart,
    InsufficientFunds,
    InsufficientPoints,
    OutOfStock,
    PremiumRequired,
    ProductUnavailable,
    RewardsError,
    TransactionConflict,
    ValidationError,
)
from rewards_engine.core.settings import settings
from rewards_engine.db.transactions import TransactionRunner
from rewards_engine.db.types import ensure_utc, utcnow
from rewards_engine.domain.auth import AuthContext
from rewards_engine.domain.catalog import CatalogLookup, ProductSnapshot, SqlCatalogLookup
from rewards_engine.models.catalog import CartCurrency, CartItem, CartProductType, ProductCategory
from rewards_engine.models.redemption import Redemption, RedemptionStatus
from rewards_engine.observability.rewards import get_rewards_store
from rewards_engine.observability.tracing import get_tracer
from rewards_engine.services.notifications import RewardsNotifier
from rewards_engine.services.points.ledger import PointsLedger
from rewards_engine.services.points.rules import ActionRuleBook

from .claim_codes import assign_claim_code


@dataclass(slots=True)
class CheckoutRequest:
    product_id: UUID
    quantity: int = 1
    currency: CartCurrency = CartCurrency.POINTS
    unit_price: Decimal | None = None
    product_type: CartProductType = CartProductType.MARKETPLACE_PRODUCT


@dataclass(slots=True)
class CheckoutLine:
    request: CheckoutRequest
    product: ProductSnapshot
    points: int


@dataclass(slots=True)
class CheckoutResult:
    redemptions: list[Redemption]
    remaining_balance: int
    total_points: int
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def redemption(self) -> Redemption:
        return self.redemptions[0]

    def as_dict(self) -> dict[str, Any]:
        return {
            "redemptions": [
                {
                    "id": str(redemption.id),
                    "code": redemption.code,
                    "product_id": str(redemption.product_id),
                    "quantity": redemption.quantity,
                    "points_spent": redemption.points_spent,
                    "status": redemption.status.value,
                    "expires_at": redemption.expires_at.isoformat() if redemption.expires_at else None,
                }
                for redemption in self.redemptions
            ],
            "remaining_balance": self.remaining_balance,
            "total_points": self.total_points,
        }


def one_time_key(user_id: str, product_id: UUID) -> str:
    return f"{user_id}:{product_id}"


class RedemptionCoordinator:
    """Runs each checkout as one all-or-nothing unit of work.

    Preconditions are read first so the caller gets a precise error, then
    re-enforced by the writes themselves (guarded UPDATEs and unique
    indexes) so a concurrent request that slipped past the reads still fails
    with the same typed error and leaves nothing behind.
    """

    def __init__(
        self,
        session_factory: Callable[[], AsyncSession],
        *,
        catalog: CatalogLookup | None = None,
        notifier: RewardsNotifier | None = None,
        runner: TransactionRunner | None = None,
        rules: ActionRuleBook | None = None,
        claim_code_attempts: int | None = None,
    ) -> None:
        self._catalog = catalog or SqlCatalogLookup()
        self._notifier = notifier or RewardsNotifier()
        self._runner = runner or TransactionRunner(session_factory)
        self._rules = rules
        self._claim_code_attempts = claim_code_attempts or settings.claim_code_max_attempts
        self._store = get_rewards_store()

    async def checkout(
        self,
        auth: AuthContext,
        *,
        payment_confirmed: bool = False,
        now: datetime | None = None,
    ) -> CheckoutResult:
        """Check out the caller's whole cart."""

        current_time = ensure_utc(now or utcnow())

        async def unit(session: AsyncSession) -> CheckoutResult:
            items = await self._load_cart(session, auth.user_id)
            if not items:
                raise EmptyCart("Cart is empty", user_id=auth.user_id)
            requests = [
                CheckoutRequest(
                    product_id=item.product_id,
                    quantity=item.quantity,
                    currency=item.currency,
                    unit_price=Decimal(item.unit_price) if item.unit_price is not None else None,
                    product_type=item.product_type,
                )
                for item in items
            ]
            lines = await self._plan(session, auth, requests, payment_confirmed, current_time)
            await self._claim_cart(session, auth.user_id, items)
            return await self._apply(session, auth, lines, current_time, source="cart")

        return await self._execute(unit, auth, "redemptions.checkout")

    async def redeem_product(
        self,
        auth: AuthContext,
        product_id: UUID,
        *,
        quantity: int = 1,
        now: datetime | None = None,
    ) -> CheckoutResult:
        """Redeem one catalog product directly, without a cart."""

        current_time = ensure_utc(now or utcnow())

        async def unit(session: AsyncSession) -> CheckoutResult:
            request = CheckoutRequest(product_id=product_id, quantity=quantity)
            lines = await self._plan(session, auth, [request], False, current_time)
            return await self._apply(session, auth, lines, current_time, source="direct")

        return await self._execute(unit, auth, "redemptions.redeem_product")

    async def _execute(self, unit, auth: AuthContext, name: str) -> CheckoutResult:
        with get_tracer().start_as_current_span(name) as span:
            span.set_attribute("rewards.user_id", auth.user_id)
            try:
                result = await self._runner.run(unit, unit=name)
            except RewardsError as exc:
                self._store.record_checkout(exc.code)
                span.set_attribute("rewards.outcome", exc.code)
                logger.info("Checkout rejected", user_id=auth.user_id, unit=name, code=exc.code, detail=str(exc))
                raise
            span.set_attribute("rewards.outcome", "ok")

        self._store.record_checkout("ok")
        logger.info(
            "Checkout committed",
            user_id=auth.user_id,
            unit=name,
            redemptions=[str(redemption.id) for redemption in result.redemptions],
            total_points=result.total_points,
            remaining_balance=result.remaining_balance,
        )
        await self._notifier.redemptions_redeemable(result.redemptions)
        return result

    async def _load_cart(self, session: AsyncSession, user_id: str) -> list[CartItem]:
        result = await session.execute(
            select(CartItem).where(CartItem.user_id == user_id).order_by(CartItem.created_at.asc(), CartItem.id.asc())
        )
        return list(result.scalars().all())

    async def _plan(
        self,
        session: AsyncSession,
        auth: AuthContext,
        requests: Sequence[CheckoutRequest],
        payment_confirmed: bool,
        now: datetime,
    ) -> list[CheckoutLine]:
        lines: list[CheckoutLine] = []
        requested_units: dict[UUID, int] = {}
        for request in requests:
            if request.quantity < 1:
                raise ValidationError("Quantity must be at least 1", product_id=str(request.product_id))
            product = await self._catalog.get_product(session, request.product_id)
            if product is None or not product.active:
                raise ProductUnavailable("Product is no longer available", product_id=str(request.product_id))

            requested_units[product.id] = requested_units.get(product.id, 0) + request.quantity
            if product.stock < requested_units[product.id]:
                raise OutOfStock(
                    f"{product.name} is out of stock",
                    product_id=str(product.id),
                    available=product.stock,
                    requested=requested_units[product.id],
                )
            if product.category == ProductCategory.PREMIUM and not auth.is_premium(now):
                raise PremiumRequired(f"{product.name} requires an active premium plan", product_id=str(product.id))
            if product.one_time_only:
                if requested_units[product.id] > 1:
                    raise AlreadyRedeemed(
                        f"{product.name} can only be redeemed once",
                        product_id=str(product.id),
                        requested=requested_units[product.id],
                    )
                if await self._already_redeemed(session, auth.user_id, product.id):
                    raise AlreadyRedeemed(f"{product.name} was already redeemed", product_id=str(product.id))
            if request.currency == CartCurrency.FIAT:
                if not payment_confirmed:
                    raise ValidationError("Payment must be confirmed for fiat-priced items", product_id=str(product.id))
                points = 0
            else:
                points = product.points_cost * request.quantity
            lines.append(CheckoutLine(request=request, product=product, points=points))

        total = sum(line.points for line in lines)
        balance = await PointsLedger(session, rules=self._rules).get_balance(auth.user_id)
        if total > balance:
            raise InsufficientPoints(
                f"Checkout needs {total} points but only {balance} are available",
                required=total,
                balance=balance,
            )
        return lines

    async def _already_redeemed(self, session: AsyncSession, user_id: str, product_id: UUID) -> bool:
        stmt = select(exists().where(Redemption.one_time_key == one_time_key(user_id, product_id)))
        return bool(await session.scalar(stmt))

    async def _claim_cart(self, session: AsyncSession, user_id: str, items: Sequence[CartItem]) -> None:
        ids = [item.id for item in items]
        result = await session.execute(
            delete(CartItem)
            .where(CartItem.user_id == user_id, CartItem.id.in_(ids))
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != len(ids):
            raise TransactionConflict("Cart changed during checkout; retry the operation", user_id=user_id)

    async def _apply(
        self,
        session: AsyncSession,
        auth: AuthContext,
        lines: Sequence[CheckoutLine],
        now: datetime,
        *,
        source: str,
    ) -> CheckoutResult:
        ledger = PointsLedger(session, rules=self._rules)
        total = sum(line.points for line in lines)
        if total > 0:
            try:
                spent = await ledger.spend(
                    auth.user_id,
                    total,
                    reason="Catalog redemption",
                    metadata={
                        "source": source,
                        "products": [str(line.product.id) for line in lines],
                    },
                    now=now,
                )
            except InsufficientFunds as exc:
                raise InsufficientPoints(str(exc), required=total, balance=exc.context.get("balance")) from exc
            remaining = spent.new_balance
        else:
            remaining = await ledger.get_balance(auth.user_id)

        redemptions: list[Redemption] = []
        for line in lines:
            product = line.product
            if not await self._catalog.reserve_stock(session, product.id, line.request.quantity):
                latest = await self._catalog.get_product(session, product.id)
                if latest is None or not latest.active:
                    raise ProductUnavailable("Product is no longer available", product_id=str(product.id))
                raise OutOfStock(f"{product.name} is out of stock", product_id=str(product.id), available=latest.stock)

            redemption = Redemption(
                id=uuid4(),
                user_id=auth.user_id,
                product_id=product.id,
                product_name=product.name,
                product_category=product.category,
                quantity=line.request.quantity,
                points_spent=line.points,
                status=RedemptionStatus.PENDING,
                one_time_key=one_time_key(auth.user_id, product.id) if product.one_time_only else None,
                expires_at=(
                    now + timedelta(minutes=product.validity_minutes)
                    if product.category == ProductCategory.DIGITAL
                    else None
                ),
                metadata_json={
                    "source": source,
                    "currency": line.request.currency.value,
                    "product_type": line.request.product_type.value,
                },
                created_at=now,
                updated_at=now,
            )
            try:
                async with session.begin_nested():
                    session.add(redemption)
                    await session.flush()
            except IntegrityError as exc:
                raise AlreadyRedeemed(f"{product.name} was already redeemed", product_id=str(product.id)) from exc

            await assign_claim_code(session, redemption, max_attempts=self._claim_code_attempts)
            redemptions.append(redemption)

        return CheckoutResult(redemptions=redemptions, remaining_balance=remaining, total_points=total)


__all__ = ["CheckoutRequest", "CheckoutResult", "RedemptionCoordinator", "one_time_key"]
