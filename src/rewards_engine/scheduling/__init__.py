"""Scheduling for recurring rewards maintenance."""

from .config import JobDefinition, ScheduleConfig, load_job_definitions
from .runner import RewardsJobScheduler

__all__ = ["JobDefinition", "RewardsJobScheduler", "ScheduleConfig", "load_job_definitions"]
