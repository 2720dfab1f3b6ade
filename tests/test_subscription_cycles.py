from datetime import datetime, timedelta, timezone

import pytest

from rewards_engine.core.errors import ValidationError
from rewards_engine.services.subscriptions import add_months, current_cycle, is_date_in_cycle, next_cycle


def utc(*args) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


def test_add_months_rolls_missing_days_forward() -> None:
    assert add_months(utc(2024, 1, 15, 9, 30), 1) == utc(2024, 2, 15)
    assert add_months(utc(2024, 1, 31), 1) == utc(2024, 3, 1)
    assert add_months(utc(2023, 1, 31), 1) == utc(2023, 3, 1)
    assert add_months(utc(2024, 1, 31), 2) == utc(2024, 3, 31)
    assert add_months(utc(2023, 12, 10), 1) == utc(2024, 1, 10)
    assert add_months(utc(2024, 2, 29), 12) == utc(2025, 3, 1)


def test_current_cycle_for_month_end_anchor() -> None:
    cycle = current_cycle(utc(2024, 1, 31, 18, 0), utc(2024, 3, 15))

    assert cycle.cycle_number == 2
    assert cycle.cycle_start == utc(2024, 3, 1)
    assert cycle.cycle_end == utc(2024, 3, 30, 23, 59, 59, 999999)
    assert cycle.resets_on == utc(2024, 3, 31)

    first = current_cycle(utc(2024, 1, 31), utc(2024, 2, 10))
    assert first.cycle_number == 1
    assert first.cycle_end == utc(2024, 2, 29, 23, 59, 59, 999999)


@pytest.mark.parametrize(
    "now, expected_number",
    [
        (utc(2024, 1, 15), 1),
        (utc(2024, 2, 14, 23, 59), 1),
        (utc(2024, 2, 15), 2),
        (utc(2025, 1, 20), 13),
    ],
)
def test_current_cycle_always_contains_now(now, expected_number) -> None:
    cycle = current_cycle(utc(2024, 1, 15, 10, 0), now)

    assert cycle.cycle_number == expected_number
    assert cycle.cycle_start <= now <= cycle.cycle_end
    assert is_date_in_cycle(now, cycle)


def test_current_cycle_rejects_dates_before_start() -> None:
    with pytest.raises(ValidationError):
        current_cycle(utc(2024, 5, 1), utc(2024, 4, 30, 23, 59))


def test_next_cycle_starts_the_day_after() -> None:
    cycle = next_cycle(utc(2024, 2, 14, 23, 59, 59, 999999), 1)

    assert cycle.cycle_number == 2
    assert cycle.cycle_start == utc(2024, 2, 15)
    assert cycle.cycle_end == utc(2024, 3, 14, 23, 59, 59, 999999)
    assert not is_date_in_cycle(cycle.cycle_end + timedelta(microseconds=1), cycle)

    following = next_cycle(cycle.cycle_end, cycle.cycle_number)
    assert following.cycle_start == cycle.resets_on
