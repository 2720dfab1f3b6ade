"""Run history for scheduled rewards jobs."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from threading import Lock
from typing import Dict


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


@dataclass
class JobRunState:
    job_id: str
    task: str
    counters: Dict[str, int] = field(
        default_factory=lambda: {"runs": 0, "success": 0, "failures": 0, "attempt_failures": 0, "retries": 0}
    )
    runtime_seconds: float = 0.0
    consecutive_failures: int = 0
    last_started_at: datetime | None = None
    last_success_at: datetime | None = None
    last_error_at: datetime | None = None
    last_error: str | None = None
    last_attempts: int = 0
    last_summary: Dict[str, object] | None = None

    def as_dict(self) -> Dict[str, object]:
        return {
            "job_id": self.job_id,
            "task": self.task,
            "counters": dict(self.counters),
            "runtime_seconds": round(self.runtime_seconds, 6),
            "consecutive_failures": self.consecutive_failures,
            "last_started_at": _iso(self.last_started_at),
            "last_success_at": _iso(self.last_success_at),
            "last_error_at": _iso(self.last_error_at),
            "last_error": self.last_error,
            "last_attempts": self.last_attempts,
            "last_summary": self.last_summary,
        }


class SchedulerObservabilityStore:
    """Tracks dispatches, retries and outcomes of scheduled jobs."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._jobs: Dict[str, JobRunState] = {}

    def _state(self, job_id: str, task: str) -> JobRunState:
        state = self._jobs.get(job_id)
        if state is None:
            state = self._jobs[job_id] = JobRunState(job_id=job_id, task=task)
        return state

    def record_dispatch(self, job_id: str, task: str) -> None:
        with self._lock:
            state = self._state(job_id, task)
            state.counters["runs"] += 1
            state.last_started_at = _utcnow()
            state.last_attempts = 0

    def record_retry(self, job_id: str, task: str, *, attempts: int, error: str) -> None:
        with self._lock:
            state = self._state(job_id, task)
            state.counters["attempt_failures"] += 1
            state.counters["retries"] += 1
            state.last_attempts = attempts
            state.last_error = error

    def record_success(
        self,
        job_id: str,
        task: str,
        *,
        runtime_seconds: float,
        attempts: int,
        summary: Dict[str, object] | None = None,
    ) -> None:
        with self._lock:
            state = self._state(job_id, task)
            state.counters["success"] += 1
            state.runtime_seconds += runtime_seconds
            state.consecutive_failures = 0
            state.last_success_at = _utcnow()
            state.last_attempts = attempts
            state.last_error = None
            state.last_summary = summary

    def record_failure(self, job_id: str, task: str, *, runtime_seconds: float, attempts: int, error: str) -> None:
        with self._lock:
            state = self._state(job_id, task)
            state.counters["failures"] += 1
            state.counters["attempt_failures"] += 1
            state.runtime_seconds += runtime_seconds
            state.consecutive_failures += 1
            state.last_error_at = _utcnow()
            state.last_error = error
            state.last_attempts = attempts

    def snapshot(self) -> Dict[str, Dict[str, object]]:
        with self._lock:
            return {job_id: state.as_dict() for job_id, state in self._jobs.items()}

    def reset(self) -> None:
        with self._lock:
            self._jobs.clear()


_SCHEDULER_STORE = SchedulerObservabilityStore()


def get_scheduler_store() -> SchedulerObservabilityStore:
    return _SCHEDULER_STORE


__all__ = ["JobRunState", "SchedulerObservabilityStore", "get_scheduler_store"]
