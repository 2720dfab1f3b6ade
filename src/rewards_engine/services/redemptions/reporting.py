"""Station-facing redemption stats and CSV export."""

from __future__ import annotations

import csv
from dataclasses import dataclass, field
from datetime import datetime
from io import StringIO
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from rewards_engine.db.types import ensure_utc
from rewards_engine.models.redemption import Redemption, RedemptionStatus

CSV_HEADER = [
    "code",
    "status",
    "pointsSpent",
    "createdAt",
    "confirmedAt",
    "deliveredAt",
    "station.code",
    "station.name",
]


@dataclass(slots=True)
class StationStats:
    station_code: str | None
    total: int = 0
    pending: int = 0
    confirmed: int = 0
    delivered: int = 0
    points_spent: int = 0
    recent: list[Redemption] = field(default_factory=list)

    def as_dict(self) -> dict[str, Any]:
        return {
            "station_code": self.station_code,
            "total": self.total,
            "pending": self.pending,
            "confirmed": self.confirmed,
            "delivered": self.delivered,
            "points_spent": self.points_spent,
            "recent": [
                {
                    "id": str(item.id),
                    "code": item.code,
                    "status": item.status.value,
                    "product_name": item.product_name,
                    "points_spent": item.points_spent,
                    "created_at": item.created_at.isoformat() if item.created_at else None,
                }
                for item in self.recent
            ],
        }


def _iso(value: datetime | None) -> str:
    return ensure_utc(value).isoformat() if value else ""


class RedemptionReporting:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def station_stats(self, station_code: str | None = None, *, recent: int = 20) -> StationStats:
        criteria = []
        if station_code:
            criteria.append(Redemption.station_code == station_code)

        stmt = (
            select(Redemption.status, func.count(), func.coalesce(func.sum(Redemption.points_spent), 0))
            .where(*criteria)
            .group_by(Redemption.status)
        )
        stats = StationStats(station_code=station_code)
        for status, count, points in (await self._session.execute(stmt)).all():
            status = RedemptionStatus(status)
            setattr(stats, status.value, int(count))
            stats.total += int(count)
            stats.points_spent += int(points)

        recent_stmt = select(Redemption).where(*criteria).order_by(Redemption.created_at.desc()).limit(recent)
        stats.recent = list((await self._session.execute(recent_stmt)).scalars().all())
        return stats

    async def export_csv(
        self,
        station_code: str | None = None,
        *,
        since: datetime | None = None,
        until: datetime | None = None,
    ) -> str:
        """Render redemptions as CSV, oldest first."""

        stmt = select(Redemption)
        if station_code:
            stmt = stmt.where(Redemption.station_code == station_code)
        if since is not None:
            stmt = stmt.where(Redemption.created_at >= ensure_utc(since))
        if until is not None:
            stmt = stmt.where(Redemption.created_at <= ensure_utc(until))
        stmt = stmt.order_by(Redemption.created_at.asc(), Redemption.id.asc())
        rows = (await self._session.execute(stmt)).scalars().all()

        output = StringIO()
        writer = csv.writer(output)
        writer.writerow(CSV_HEADER)
        for redemption in rows:
            writer.writerow(
                [
                    redemption.code or "",
                    redemption.status.value,
                    redemption.points_spent,
                    _iso(redemption.created_at),
                    _iso(redemption.confirmed_at),
                    _iso(redemption.delivered_at),
                    redemption.station_code or "",
                    redemption.station_name or "",
                ]
            )
        return output.getvalue()


__all__ = ["CSV_HEADER", "RedemptionReporting", "StationStats"]
