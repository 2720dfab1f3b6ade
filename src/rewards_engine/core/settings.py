from functools import lru_cache
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="allow")

    environment: Literal["development", "staging", "production"] = "development"
    service_name: str = "rewards-engine"
    service_version: str = "0.1.0"
    database_url: str = "sqlite+aiosqlite:///./rewards.db"
    database_echo: bool = False
    redis_url: str = "redis://localhost:6379/0"
    celery_broker_url: str | None = None
    celery_result_backend: str | None = None
    celery_default_queue: str = "rewards-default"

    # Unit-of-work guarantees
    transaction_timeout_seconds: float = 10.0
    transaction_max_attempts: int = 5
    transaction_retry_backoff_seconds: float = 0.05
    claim_code_max_attempts: int = 5

    # Points ledger
    points_action_rules_path: str | None = None
    daily_usage_retention_days: int = 90

    # Referrals
    referral_referrer_points: int = 100
    referral_referred_points: int = 50

    # Coupon cycle sweep
    coupon_reset_worker_enabled: bool = False
    coupon_reset_interval_seconds: int = 15 * 60
    coupon_reset_batch_size: int = 500
    coupon_reset_task_queue: str = "rewards-coupons"
    subscription_expiry_sweep_enabled: bool = True

    # Scheduler
    rewards_scheduler_enabled: bool = False
    rewards_schedule_config_path: str = "config/schedules.toml"

    # Logging
    log_level: str = "INFO"
    log_json: bool = True

    # Notifications
    notification_backend: Literal["log", "memory"] = "log"
    notification_muted_events: list[str] = Field(default_factory=list)

    @field_validator("notification_muted_events", mode="before")
    @classmethod
    def _parse_event_list(cls, value: object) -> list[str]:
        if value is None:
            return []
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        if isinstance(value, (list, tuple, set)):
            return [str(item).strip() for item in value if str(item).strip()]
        return []

    # Tracing
    otel_enabled: bool = False
    otel_exporter_otlp_endpoint: str | None = None
    otel_exporter_otlp_headers: str | None = None
    otel_sample_ratio: float = 1.0


@lru_cache
def get_settings() -> Settings:
    return Settings()  # type: ignore[arg-type]


settings = get_settings()
