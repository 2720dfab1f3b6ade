"""Schedule file loader for rewards maintenance jobs."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import tomllib


@dataclass(slots=True)
class JobDefinition:
    id: str
    task: str
    cron: str
    kwargs: dict[str, Any] = field(default_factory=dict)
    enabled: bool = True
    max_attempts: int = 1
    base_backoff_seconds: float = 5.0
    backoff_multiplier: float = 2.0
    max_backoff_seconds: float = 60.0
    jitter_seconds: float = 1.0


@dataclass(slots=True)
class ScheduleConfig:
    timezone: str
    jobs: list[JobDefinition]

    @property
    def enabled_jobs(self) -> list[JobDefinition]:
        return [job for job in self.jobs if job.enabled]


def _number(payload: dict[str, Any], key: str, default: float) -> float:
    value = payload.get(key, default)
    return float(value if value is not None else default)


def load_job_definitions(config_path: Path) -> ScheduleConfig:
    """Read ``[jobs.<id>]`` tables; entries without a task or cron are skipped."""

    if not config_path.exists():
        raise FileNotFoundError(f"Schedule config not found: {config_path}")

    data = tomllib.loads(config_path.read_text())
    jobs: list[JobDefinition] = []
    for key, payload in (data.get("jobs") or {}).items():
        if not isinstance(payload, dict):
            continue
        task, cron = payload.get("task"), payload.get("cron")
        if not isinstance(task, str) or not isinstance(cron, str):
            continue
        kwargs = payload.get("kwargs")
        jobs.append(
            JobDefinition(
                id=str(payload.get("id") or key),
                task=task,
                cron=cron,
                kwargs=dict(kwargs) if isinstance(kwargs, dict) else {},
                enabled=bool(payload.get("enabled", True)),
                max_attempts=max(int(payload.get("max_attempts", 1) or 1), 1),
                base_backoff_seconds=max(_number(payload, "base_backoff_seconds", 5.0), 0.0),
                backoff_multiplier=max(_number(payload, "backoff_multiplier", 2.0), 1.0),
                max_backoff_seconds=max(_number(payload, "max_backoff_seconds", 60.0), 0.0),
                jitter_seconds=max(_number(payload, "jitter_seconds", 1.0), 0.0),
            )
        )

    return ScheduleConfig(timezone=str(data.get("timezone", "UTC")), jobs=jobs)


__all__ = ["JobDefinition", "ScheduleConfig", "load_job_definitions"]
