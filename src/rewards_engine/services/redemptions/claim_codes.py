"""Human-readable claim codes for redemptions."""

from __future__ import annotations

import secrets
import string
from uuid import UUID

from loguru import logger
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.attributes import set_committed_value

from rewards_engine.core.errors import InternalError
from rewards_engine.models.redemption import Redemption

_BASE36 = string.digits + string.ascii_uppercase
_SUFFIX_LENGTH = 4
_SHORT_ID_LENGTH = 6


def build_claim_code(redemption_id: UUID) -> str:
    """Return ``R-<last 6 of the id>-<4 random base-36 chars>`` in upper case."""

    short_id = redemption_id.hex[-_SHORT_ID_LENGTH:].upper()
    suffix = "".join(secrets.choice(_BASE36) for _ in range(_SUFFIX_LENGTH))
    return f"R-{short_id}-{suffix}"


async def assign_claim_code(session: AsyncSession, redemption: Redemption, *, max_attempts: int) -> str:
    """Store a unique code on the redemption, retrying on collisions.

    Each attempt runs in a savepoint so a unique-index violation only undoes
    that attempt, not the surrounding checkout.
    """

    for attempt in range(1, max_attempts + 1):
        candidate = build_claim_code(redemption.id)
        try:
            async with session.begin_nested():
                await session.execute(
                    update(Redemption)
                    .where(Redemption.id == redemption.id)
                    .values(code=candidate)
                    .execution_options(synchronize_session=False)
                )
        except IntegrityError:
            logger.warning("Claim code collision", redemption_id=str(redemption.id), attempt=attempt)
            continue
        set_committed_value(redemption, "code", candidate)
        return candidate

    raise InternalError(
        "Could not allocate a unique claim code",
        redemption_id=str(redemption.id),
        attempts=max_attempts,
    )


__all__ = ["assign_claim_code", "build_claim_code"]
