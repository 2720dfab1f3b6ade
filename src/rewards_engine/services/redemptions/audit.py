"""Append-only audit trail for redemptions."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Protocol
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from rewards_engine.db.types import utcnow
from rewards_engine.models.redemption import AuditAction, AuditOutcome, RedemptionAuditEntry


@dataclass(slots=True)
class AuditRecord:
    action: AuditAction
    outcome: AuditOutcome
    actor_id: str | None = None
    station_code: str | None = None
    device_id: str | None = None
    note: str | None = None
    occurred_at: datetime | None = None


class AuditAppender(Protocol):
    async def append(self, session: AsyncSession, redemption_id: UUID, record: AuditRecord) -> RedemptionAuditEntry:
        ...

    async def list_entries(self, session: AsyncSession, redemption_id: UUID) -> list[RedemptionAuditEntry]:
        ...


class SqlAuditAppender:
    """Stores entries in ``redemption_audit_entries`` with a per-redemption sequence.

    Callers hold the redemption row lock while appending, which keeps the
    sequence gap-free.
    """

    async def append(self, session: AsyncSession, redemption_id: UUID, record: AuditRecord) -> RedemptionAuditEntry:
        last = await session.scalar(
            select(func.coalesce(func.max(RedemptionAuditEntry.sequence), 0)).where(
                RedemptionAuditEntry.redemption_id == redemption_id
            )
        )
        entry = RedemptionAuditEntry(
            redemption_id=redemption_id,
            sequence=int(last or 0) + 1,
            action=record.action,
            outcome=record.outcome,
            actor_id=record.actor_id,
            station_code=record.station_code,
            device_id=record.device_id,
            note=record.note,
            occurred_at=record.occurred_at or utcnow(),
        )
        session.add(entry)
        await session.flush()
        return entry

    async def list_entries(self, session: AsyncSession, redemption_id: UUID) -> list[RedemptionAuditEntry]:
        result = await session.execute(
            select(RedemptionAuditEntry)
            .where(RedemptionAuditEntry.redemption_id == redemption_id)
            .order_by(RedemptionAuditEntry.sequence.asc())
        )
        return list(result.scalars().all())


__all__ = ["AuditAppender", "AuditRecord", "SqlAuditAppender"]
