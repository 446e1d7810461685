"""Background workers and scheduled jobs."""
from .jobs import build_jobs, register_jobs
from .scheduler import JobScheduler, ScheduledJob, SchedulerError

__all__ = ["build_jobs", "JobScheduler", "register_jobs", "ScheduledJob", "SchedulerError"]
