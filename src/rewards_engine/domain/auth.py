from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from rewards_engine.db.types import ensure_utc, utcnow


@dataclass(frozen=True, slots=True)
class AuthContext:
    """Caller identity supplied by the auth layer; the core never authenticates."""

    user_id: str
    role: str = "user"
    is_premium_active: bool = False
    premium_expiry: datetime | None = None

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"

    def is_premium(self, now: datetime | None = None) -> bool:
        if not self.is_premium_active:
            return False
        if self.premium_expiry is None:
            return True
        return ensure_utc(self.premium_expiry) > (ensure_utc(now) if now else utcnow())
