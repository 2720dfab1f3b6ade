"""Calendar arithmetic for monthly billing cycles."""

from __future__ import annotations

import calendar
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from rewards_engine.core.errors import ValidationError
from rewards_engine.db.types import ensure_utc

_END_OF_DAY = timedelta(microseconds=1)


@dataclass(frozen=True, slots=True)
class BillingCycle:
    cycle_number: int
    cycle_start: datetime
    cycle_end: datetime

    def contains(self, moment: datetime) -> bool:
        return self.cycle_start <= ensure_utc(moment) <= self.cycle_end

    @property
    def resets_on(self) -> datetime:
        """Midnight after the cycle ends, when its coupons roll over."""

        return self.cycle_end + _END_OF_DAY


def start_of_day(value: datetime) -> datetime:
    value = ensure_utc(value)
    return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)


def add_months(anchor: datetime, months: int) -> datetime:
    """Same day ``months`` later; days missing from a short month roll to the 1st after it."""

    anchor = start_of_day(anchor)
    years, month_index = divmod(anchor.month - 1 + months, 12)
    year, month = anchor.year + years, month_index + 1
    days_in_month = calendar.monthrange(year, month)[1]
    if anchor.day <= days_in_month:
        return anchor.replace(year=year, month=month)
    return datetime(year, month, days_in_month, tzinfo=timezone.utc) + timedelta(days=1)


def current_cycle(subscription_start: datetime, now: datetime) -> BillingCycle:
    anchor = start_of_day(subscription_start)
    now = ensure_utc(now)
    if now < anchor:
        raise ValidationError(
            "Date precedes the subscription start",
            subscription_start=anchor.isoformat(),
            now=now.isoformat(),
        )

    offset = max((now.year - anchor.year) * 12 + now.month - anchor.month, 0)
    while offset > 0 and add_months(anchor, offset) > now:
        offset -= 1
    while add_months(anchor, offset + 1) <= now:
        offset += 1

    return BillingCycle(
        cycle_number=offset + 1,
        cycle_start=add_months(anchor, offset),
        cycle_end=add_months(anchor, offset + 1) - _END_OF_DAY,
    )


def next_cycle(current_cycle_end: datetime, current_number: int = 0) -> BillingCycle:
    start = start_of_day(current_cycle_end) + timedelta(days=1)
    return BillingCycle(
        cycle_number=current_number + 1,
        cycle_start=start,
        cycle_end=add_months(start, 1) - _END_OF_DAY,
    )


def is_date_in_cycle(moment: datetime, cycle: BillingCycle) -> bool:
    return cycle.contains(moment)


__all__ = ["BillingCycle", "add_months", "current_cycle", "is_date_in_cycle", "next_cycle", "start_of_day"]
