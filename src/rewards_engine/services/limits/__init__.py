"""Daily usage limits."""

from .tracker import FREE_USER_DAILY_LIMITS, UNLIMITED, DailyLimitTracker, LimitCheck, usage_day  # noqa: F401
