"""Per-user, per-feature, per-day usage counters."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Any, Mapping
from uuid import uuid4

from loguru import logger
from sqlalchemy import and_, delete, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from rewards_engine.core.errors import InternalError, LimitExceeded, ValidationError
from rewards_engine.db.dialects import upsert_insert
from rewards_engine.db.types import ensure_utc, utcnow
from rewards_engine.domain.auth import AuthContext
from rewards_engine.models.points import DailyUsageCounter
from rewards_engine.observability.rewards import get_rewards_store

UNLIMITED = -1

FREE_USER_DAILY_LIMITS: dict[str, int] = {
    "job_search": 5,
    "job_application": 2,
    "microcourse_access": 3,
    "certificate_download": 0,
    "irl_event": 0,
}

_COUNTERS = DailyUsageCounter.__table__


@dataclass(slots=True)
class LimitCheck:
    can_use: bool
    current_usage: int
    limit: int

    @property
    def remaining(self) -> int | None:
        if self.limit == UNLIMITED:
            return None
        return max(self.limit - self.current_usage, 0)

    def as_dict(self) -> dict[str, Any]:
        return {
            "can_use": self.can_use,
            "current_usage": self.current_usage,
            "limit": self.limit,
            "remaining": self.remaining,
        }


def usage_day(moment: datetime | None = None) -> date:
    """Counters roll over at midnight UTC."""

    return ensure_utc(moment or utcnow()).date()


class DailyLimitTracker:
    """Tracks daily feature usage; premium callers are counted but never capped."""

    def __init__(self, session: AsyncSession, *, limits: Mapping[str, int] | None = None) -> None:
        self._session = session
        self._limits = dict(limits if limits is not None else FREE_USER_DAILY_LIMITS)
        self._store = get_rewards_store()

    def limit_for(self, feature: str, limit: int | None = None) -> int:
        if limit is not None:
            return limit
        if feature not in self._limits:
            raise ValidationError(f"No daily limit configured for feature '{feature}'", feature=feature)
        return self._limits[feature]

    async def get_counter(self, user_id: str, feature: str, day: date) -> DailyUsageCounter | None:
        stmt = select(DailyUsageCounter).where(
            DailyUsageCounter.user_id == user_id,
            DailyUsageCounter.feature == feature,
            DailyUsageCounter.usage_date == day,
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def check_limit(
        self,
        user_id: str,
        feature: str,
        limit: int | None = None,
        is_premium_override: bool = False,
        *,
        today: date | None = None,
    ) -> LimitCheck:
        if is_premium_override:
            return LimitCheck(can_use=True, current_usage=0, limit=UNLIMITED)

        effective_limit = self.limit_for(feature, limit)
        counter = await self.get_counter(user_id, feature, today or usage_day())
        current = int(counter.usage_count) if counter else 0
        return LimitCheck(can_use=current < effective_limit, current_usage=current, limit=effective_limit)

    async def increment(
        self,
        user_id: str,
        feature: str,
        metadata: Mapping[str, Any] | None = None,
        *,
        is_premium: bool = False,
        points: int = 0,
        now: datetime | None = None,
    ) -> int:
        """Add one use for today in a single upsert and return the new count."""

        row = await self.record_guarded(
            user_id,
            feature,
            now=now,
            points=points,
            is_premium=is_premium,
            metadata=metadata,
        )
        if row is None:
            raise InternalError("Usage counter upsert returned no row", feature=feature)
        return row[0]

    async def consume(
        self,
        user_id: str,
        feature: str,
        auth: AuthContext,
        *,
        limit: int | None = None,
        now: datetime | None = None,
        metadata: Mapping[str, Any] | None = None,
    ) -> LimitCheck:
        """Check and count one use atomically; raise ``LimitExceeded`` at the cap."""

        current_time = ensure_utc(now or utcnow())
        if auth.is_premium(current_time):
            count = await self.increment(user_id, feature, metadata, is_premium=True, now=current_time)
            return LimitCheck(can_use=True, current_usage=count, limit=UNLIMITED)

        effective_limit = self.limit_for(feature, limit)
        row = None
        if effective_limit > 0:
            row = await self.record_guarded(
                user_id,
                feature,
                now=current_time,
                max_count=effective_limit,
                metadata=metadata,
            )
        if row is None:
            self._store.record_limit_rejection(feature)
            logger.info("Daily limit reached", user_id=user_id, feature=feature, limit=effective_limit)
            raise LimitExceeded(
                f"Daily limit of {effective_limit} reached for {feature}",
                feature=feature,
                limit=effective_limit,
            )
        return LimitCheck(can_use=row[0] < effective_limit, current_usage=row[0], limit=effective_limit)

    async def record_guarded(
        self,
        user_id: str,
        feature: str,
        *,
        now: datetime | None = None,
        points: int = 0,
        max_count: int | None = None,
        max_points: int | None = None,
        cooldown_seconds: int = 0,
        is_premium: bool = False,
        metadata: Mapping[str, Any] | None = None,
    ) -> tuple[int, int] | None:
        """Upsert today's counter only if the caps still allow it.

        The cap and cooldown conditions live in the ``ON CONFLICT ... WHERE``
        clause, so concurrent callers cannot both pass a check that only one of
        them should. Returns ``(usage_count, points_earned)`` or ``None`` when
        the guard rejected the update. Callers reject first-use requests that
        can never fit (a zero cap, or more points than the points cap).
        """

        current_time = ensure_utc(now or utcnow())
        guards = []
        if max_count is not None:
            guards.append(_COUNTERS.c.usage_count < max_count)
        if max_points is not None:
            guards.append(_COUNTERS.c.points_earned + points <= max_points)
        if cooldown_seconds > 0:
            cutoff = current_time - timedelta(seconds=cooldown_seconds)
            guards.append(or_(_COUNTERS.c.last_used_at.is_(None), _COUNTERS.c.last_used_at <= cutoff))

        stmt = upsert_insert(self._session, _COUNTERS).values(
            id=uuid4(),
            user_id=user_id,
            feature=feature,
            usage_date=usage_day(current_time),
            usage_count=1,
            points_earned=points,
            is_premium=is_premium,
            last_used_at=current_time,
            metadata=dict(metadata) if metadata else None,
            created_at=current_time,
            updated_at=current_time,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[_COUNTERS.c.user_id, _COUNTERS.c.feature, _COUNTERS.c.usage_date],
            set_={
                "usage_count": _COUNTERS.c.usage_count + 1,
                "points_earned": _COUNTERS.c.points_earned + points,
                "last_used_at": current_time,
                "is_premium": is_premium,
                "updated_at": current_time,
            },
            where=and_(*guards) if guards else None,
        ).returning(_COUNTERS.c.usage_count, _COUNTERS.c.points_earned)

        result = await self._session.execute(stmt)
        row = result.first()
        if row is None:
            return None
        return int(row[0]), int(row[1])

    async def usage_for(self, user_id: str, *, today: date | None = None) -> dict[str, int]:
        stmt = select(DailyUsageCounter.feature, DailyUsageCounter.usage_count).where(
            DailyUsageCounter.user_id == user_id,
            DailyUsageCounter.usage_date == (today or usage_day()),
        )
        result = await self._session.execute(stmt)
        return {feature: int(count) for feature, count in result.all()}

    async def prune(self, before: date) -> int:
        """Delete counters for days strictly before ``before``."""

        result = await self._session.execute(
            delete(DailyUsageCounter)
            .where(DailyUsageCounter.usage_date < before)
            .execution_options(synchronize_session=False)
        )
        removed = int(result.rowcount or 0)
        logger.info("Pruned daily usage counters", before=before.isoformat(), removed=removed)
        return removed


__all__ = ["DailyLimitTracker", "FREE_USER_DAILY_LIMITS", "LimitCheck", "UNLIMITED", "usage_day"]
