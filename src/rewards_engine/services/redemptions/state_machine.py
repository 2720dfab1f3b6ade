"""Redemption lifecycle transitions and their audit trail."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any
from uuid import UUID

from loguru import logger
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from rewards_engine.core.errors import RedemptionNotDigital, RedemptionNotFound, ValidationError
from rewards_engine.db.types import ensure_utc, utcnow
from rewards_engine.models.catalog import ProductCategory
from rewards_engine.models.redemption import (
    AuditAction,
    AuditOutcome,
    Redemption,
    RedemptionAuditEntry,
    RedemptionStatus,
)
from rewards_engine.observability.rewards import get_rewards_store

from .audit import AuditAppender, AuditRecord, SqlAuditAppender


@dataclass(frozen=True, slots=True)
class StationInfo:
    """Point of service where a claim code is presented."""

    code: str | None = None
    name: str | None = None
    device_id: str | None = None


@dataclass(slots=True)
class TransitionResult:
    redemption: Redemption
    outcome: AuditOutcome
    already_processed: bool = False
    message: str = ""

    @property
    def changed(self) -> bool:
        return self.outcome == AuditOutcome.OK and not self.already_processed

    def as_dict(self) -> dict[str, Any]:
        return {
            "redemption_id": str(self.redemption.id),
            "code": self.redemption.code,
            "status": self.redemption.status.value,
            "outcome": self.outcome.value,
            "already_processed": self.already_processed,
            "message": self.message,
        }


class RedemptionStateMachine:
    """Moves redemptions forward only: pending, confirmed, delivered.

    Repeating a transition is not an error; it returns the current state with
    ``already_processed`` set and records a ``duplicate`` audit entry.
    Status writes are guarded by the expected current status, so two scanners
    racing on one code produce exactly one ``ok`` entry.
    """

    _ALLOWED_TRANSITIONS: dict[RedemptionStatus, set[RedemptionStatus]] = {
        RedemptionStatus.PENDING: {RedemptionStatus.CONFIRMED, RedemptionStatus.DELIVERED},
        RedemptionStatus.CONFIRMED: {RedemptionStatus.DELIVERED},
        RedemptionStatus.DELIVERED: set(),
    }

    def __init__(self, session: AsyncSession, *, audit: AuditAppender | None = None) -> None:
        self._session = session
        self._audit = audit or SqlAuditAppender()
        self._store = get_rewards_store()

    async def confirm_by_code(
        self,
        code: str,
        actor_id: str,
        station: StationInfo | None = None,
        *,
        now: datetime | None = None,
    ) -> TransitionResult:
        current_time = ensure_utc(now or utcnow())
        redemption = await self._lock_by_code(code)
        station = station or StationInfo()

        if redemption.status != RedemptionStatus.PENDING:
            return await self._duplicate(redemption, AuditAction.CONFIRM, actor_id, station, current_time)
        if self._is_expired(redemption, current_time):
            return await self._expired(redemption, AuditAction.CONFIRM, actor_id, station, current_time)

        values = {
            Redemption.confirmed_at: current_time,
            Redemption.confirmed_by: actor_id,
            **self._station_values(station),
        }
        if not await self._advance(redemption, RedemptionStatus.CONFIRMED, values):
            return await self._duplicate(redemption, AuditAction.CONFIRM, actor_id, station, current_time)
        return await self._ok(redemption, AuditAction.CONFIRM, actor_id, station, current_time, "Redemption confirmed")

    async def mark_delivered_by_code(
        self,
        code: str,
        actor_id: str,
        station: StationInfo | None = None,
        *,
        now: datetime | None = None,
    ) -> TransitionResult:
        current_time = ensure_utc(now or utcnow())
        redemption = await self._lock_by_code(code)
        station = station or StationInfo()

        if redemption.status == RedemptionStatus.DELIVERED:
            return await self._duplicate(redemption, AuditAction.DELIVER, actor_id, station, current_time)
        if self._is_expired(redemption, current_time):
            return await self._expired(redemption, AuditAction.DELIVER, actor_id, station, current_time)

        values: dict[Any, Any] = {
            Redemption.delivered_at: current_time,
            Redemption.delivered_by: actor_id,
            **self._station_values(station),
        }
        if redemption.status == RedemptionStatus.PENDING:
            values[Redemption.confirmed_at] = current_time
            values[Redemption.confirmed_by] = actor_id
        if not await self._advance(redemption, RedemptionStatus.DELIVERED, values):
            return await self._duplicate(redemption, AuditAction.DELIVER, actor_id, station, current_time)
        return await self._ok(redemption, AuditAction.DELIVER, actor_id, station, current_time, "Redemption delivered")

    async def self_confirm_receipt(
        self,
        redemption_id: UUID,
        user_id: str,
        *,
        now: datetime | None = None,
    ) -> TransitionResult:
        """Let the owner mark a digital redemption as received."""

        current_time = ensure_utc(now or utcnow())
        redemption = await self._lock(Redemption.id == redemption_id, Redemption.user_id == user_id)
        if redemption is None:
            raise RedemptionNotFound("Redemption not found", redemption_id=str(redemption_id))
        if redemption.product_category != ProductCategory.DIGITAL:
            raise RedemptionNotDigital(
                "Only digital redemptions can be confirmed by their owner",
                redemption_id=str(redemption_id),
                category=redemption.product_category.value,
            )

        station = StationInfo()
        if redemption.status == RedemptionStatus.DELIVERED:
            return await self._duplicate(redemption, AuditAction.DELIVER, user_id, station, current_time)
        if self._is_expired(redemption, current_time):
            return await self._expired(redemption, AuditAction.DELIVER, user_id, station, current_time)
        values: dict[Any, Any] = {Redemption.delivered_at: current_time, Redemption.delivered_by: user_id}
        if not await self._advance(redemption, RedemptionStatus.DELIVERED, values):
            return await self._duplicate(redemption, AuditAction.DELIVER, user_id, station, current_time)
        return await self._ok(
            redemption, AuditAction.DELIVER, user_id, station, current_time, "Receipt confirmed by owner"
        )

    async def scan_code(
        self,
        code: str,
        actor_id: str,
        station: StationInfo | None = None,
        *,
        now: datetime | None = None,
    ) -> TransitionResult:
        """Validate a presented code without changing its status."""

        current_time = ensure_utc(now or utcnow())
        redemption = await self._lock_by_code(code)
        station = station or StationInfo()
        if redemption.status != RedemptionStatus.PENDING:
            outcome, message = AuditOutcome.DUPLICATE, f"Already {redemption.status.value}"
        elif self._is_expired(redemption, current_time):
            outcome, message = AuditOutcome.EXPIRED, "Claim code expired"
        else:
            outcome, message = AuditOutcome.OK, "Claim code valid"
        await self._record(redemption, AuditAction.SCAN, outcome, actor_id, station, current_time, message)
        return TransitionResult(
            redemption=redemption,
            outcome=outcome,
            already_processed=outcome == AuditOutcome.DUPLICATE,
            message=message,
        )

    async def get_by_code(self, code: str) -> Redemption | None:
        result = await self._session.execute(select(Redemption).where(Redemption.code == self._normalize(code)))
        return result.scalar_one_or_none()

    async def list_for_user(
        self,
        user_id: str,
        *,
        status: RedemptionStatus | None = None,
        limit: int = 50,
    ) -> list[Redemption]:
        stmt = select(Redemption).where(Redemption.user_id == user_id)
        if status is not None:
            stmt = stmt.where(Redemption.status == status)
        stmt = stmt.order_by(Redemption.created_at.desc()).limit(limit)
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def list_audit(self, redemption_id: UUID) -> list[RedemptionAuditEntry]:
        return await self._audit.list_entries(self._session, redemption_id)

    @staticmethod
    def _normalize(code: str) -> str:
        normalized = (code or "").strip().upper()
        if not normalized:
            raise ValidationError("Claim code is required")
        return normalized

    async def _lock(self, *criteria: Any) -> Redemption | None:
        stmt = (
            select(Redemption)
            .where(*criteria)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def _lock_by_code(self, code: str) -> Redemption:
        normalized = self._normalize(code)
        redemption = await self._lock(Redemption.code == normalized)
        if redemption is None:
            self._store.record_transition("lookup", "not_found")
            raise RedemptionNotFound("No redemption matches this code", code=normalized)
        return redemption

    @staticmethod
    def _is_expired(redemption: Redemption, now: datetime) -> bool:
        return (
            redemption.status == RedemptionStatus.PENDING
            and redemption.expires_at is not None
            and ensure_utc(redemption.expires_at) < now
        )

    @staticmethod
    def _station_values(station: StationInfo) -> dict[Any, Any]:
        values: dict[Any, Any] = {}
        if station.code:
            values[Redemption.station_code] = station.code
        if station.name:
            values[Redemption.station_name] = station.name
        if station.device_id:
            values[Redemption.device_id] = station.device_id
        return values

    async def _advance(self, redemption: Redemption, target: RedemptionStatus, values: dict[Any, Any]) -> bool:
        current = redemption.status
        if target not in self._ALLOWED_TRANSITIONS.get(current, set()):
            return False
        result = await self._session.execute(
            update(Redemption)
            .where(Redemption.id == redemption.id, Redemption.status == current)
            .values({Redemption.status: target, **values})
            .execution_options(synchronize_session=False)
        )
        await self._session.refresh(redemption)
        if result.rowcount != 1:
            return False
        logger.info(
            "Redemption status transitioned",
            redemption_id=str(redemption.id),
            from_status=current.value,
            to_status=target.value,
        )
        return True

    async def _record(
        self,
        redemption: Redemption,
        action: AuditAction,
        outcome: AuditOutcome,
        actor_id: str | None,
        station: StationInfo,
        now: datetime,
        note: str,
    ) -> None:
        await self._audit.append(
            self._session,
            redemption.id,
            AuditRecord(
                action=action,
                outcome=outcome,
                actor_id=actor_id,
                station_code=station.code,
                device_id=station.device_id,
                note=note,
                occurred_at=now,
            ),
        )
        self._store.record_transition(action.value, outcome.value)

    async def _ok(self, redemption, action, actor_id, station, now, message: str) -> TransitionResult:
        await self._record(redemption, action, AuditOutcome.OK, actor_id, station, now, message)
        return TransitionResult(redemption=redemption, outcome=AuditOutcome.OK, message=message)

    async def _duplicate(self, redemption, action, actor_id, station, now) -> TransitionResult:
        message = f"Already processed ({redemption.status.value})"
        await self._record(redemption, action, AuditOutcome.DUPLICATE, actor_id, station, now, message)
        logger.info(
            "Redemption transition already applied",
            redemption_id=str(redemption.id),
            action=action.value,
            status=redemption.status.value,
        )
        return TransitionResult(
            redemption=redemption,
            outcome=AuditOutcome.DUPLICATE,
            already_processed=True,
            message=message,
        )

    async def _expired(self, redemption, action, actor_id, station, now) -> TransitionResult:
        message = "Claim code expired"
        await self._record(redemption, action, AuditOutcome.EXPIRED, actor_id, station, now, message)
        return TransitionResult(redemption=redemption, outcome=AuditOutcome.EXPIRED, message=message)


__all__ = ["RedemptionStateMachine", "StationInfo", "TransitionResult"]
