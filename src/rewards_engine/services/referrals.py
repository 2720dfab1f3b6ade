"""One-time referral bonuses for both sides of an invite."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any

from loguru import logger
from sqlalchemy import exists, select
from sqlalchemy.ext.asyncio import AsyncSession

from rewards_engine.core.errors import ValidationError
from rewards_engine.core.settings import settings
from rewards_engine.db.types import ensure_utc, utcnow
from rewards_engine.models.points import PointsTransaction
from rewards_engine.services.points.ledger import PointsLedger
from rewards_engine.services.points.rules import ActionRuleBook

REFERRER_ACTION = "referral_signup"
REFERRED_ACTION = "referral_welcome"


@dataclass(slots=True)
class ReferralResult:
    referrer_id: str
    referred_user_id: str
    already_processed: bool = False
    referrer_points: int = 0
    referred_points: int = 0
    referrer_balance: int | None = None
    referred_balance: int | None = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "referrer_id": self.referrer_id,
            "referred_user_id": self.referred_user_id,
            "already_processed": self.already_processed,
            "referrer_points": self.referrer_points,
            "referred_points": self.referred_points,
            "referrer_balance": self.referrer_balance,
            "referred_balance": self.referred_balance,
        }


def _welcome_key(referred_user_id: str) -> str:
    return f"referral:{referred_user_id}:welcome"


def _signup_key(referred_user_id: str) -> str:
    return f"referral:{referred_user_id}:referrer"


class ReferralService:
    def __init__(
        self,
        session: AsyncSession,
        *,
        rules: ActionRuleBook | None = None,
        referrer_points: int | None = None,
        referred_points: int | None = None,
    ) -> None:
        self._session = session
        self._ledger = PointsLedger(session, rules=rules)
        self._referrer_points = referrer_points or settings.referral_referrer_points
        self._referred_points = referred_points or settings.referral_referred_points

    async def has_claimed(self, referred_user_id: str) -> bool:
        stmt = select(
            exists().where(
                PointsTransaction.user_id == referred_user_id,
                PointsTransaction.idempotency_key == _welcome_key(referred_user_id),
            )
        )
        return bool(await self._session.scalar(stmt))

    async def apply_referral(
        self,
        referrer_id: str,
        referred_user_id: str,
        *,
        now: datetime | None = None,
    ) -> ReferralResult:
        if not referrer_id or not referred_user_id:
            raise ValidationError("Both referrer and referred user are required")
        if referrer_id == referred_user_id:
            raise ValidationError("Users cannot refer themselves", user_id=referrer_id)

        current_time = ensure_utc(now or utcnow())
        result = ReferralResult(referrer_id=referrer_id, referred_user_id=referred_user_id)
        if await self.has_claimed(referred_user_id):
            logger.info("Referral already processed", referrer_id=referrer_id, referred_user_id=referred_user_id)
            result.already_processed = True
            return result

        referrer = await self._ledger.award(
            referrer_id,
            REFERRER_ACTION,
            amount=self._referrer_points,
            reason="Referral bonus",
            metadata={"referredUserId": referred_user_id},
            idempotency_key=_signup_key(referred_user_id),
            now=current_time,
        )
        referred = await self._ledger.award(
            referred_user_id,
            REFERRED_ACTION,
            amount=self._referred_points,
            reason="Welcome bonus",
            metadata={"referrerId": referrer_id},
            idempotency_key=_welcome_key(referred_user_id),
            now=current_time,
        )

        result.already_processed = referred.duplicate
        result.referrer_points = 0 if referrer.duplicate else self._referrer_points
        result.referred_points = 0 if referred.duplicate else self._referred_points
        result.referrer_balance = referrer.new_balance
        result.referred_balance = referred.new_balance
        logger.info(
            "Referral applied",
            referrer_id=referrer_id,
            referred_user_id=referred_user_id,
            referrer_points=result.referrer_points,
            referred_points=result.referred_points,
        )
        return result


__all__ = ["REFERRED_ACTION", "REFERRER_ACTION", "ReferralResult", "ReferralService"]
