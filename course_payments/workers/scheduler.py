"""
In-process job scheduler.

Jobs run either every ``interval_seconds`` or once a day at
``daily_at_hour`` in a given timezone. Each job has its own loop task;
``shutdown`` lets in-flight runs finish before returning.
"""
import asyncio
import signal
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional
from zoneinfo import ZoneInfo

import structlog

from course_payments.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

JobFunc = Callable[[], Awaitable[Any]]


class SchedulerError(Exception):
    """Raised for unknown or conflicting job registrations."""

    pass


def seconds_until_hour(hour: int, tz_name: str, now: Optional[datetime] = None) -> float:
    """
    Seconds until the next ``hour``:00 in timezone ``tz_name``.

    Args:
        hour: Hour of day (0-23)
        tz_name: IANA timezone name
        now: Current time (timezone-aware); defaults to the current time

    Returns:
        float: Seconds until next run
    """
    tz = ZoneInfo(tz_name)
    now = now.astimezone(tz) if now is not None else datetime.now(tz)
    next_run = now.replace(hour=hour, minute=0, second=0, microsecond=0)

    # If we've passed today's run time, schedule for tomorrow
    if now >= next_run:
        next_run += timedelta(days=1)

    return (next_run - now).total_seconds()


@dataclass
class ScheduledJob:
    """A named periodic job."""

    name: str
    func: JobFunc
    interval_seconds: Optional[float] = None
    daily_at_hour: Optional[int] = None
    timezone: str = "UTC"

    def __post_init__(self) -> None:
        if (self.interval_seconds is None) == (self.daily_at_hour is None):
            raise SchedulerError(
                f"Job {self.name} needs exactly one of interval_seconds or daily_at_hour"
            )
        if self.interval_seconds is not None and self.interval_seconds <= 0:
            raise SchedulerError(f"Job {self.name} interval must be positive")
        if self.daily_at_hour is not None and not 0 <= self.daily_at_hour <= 23:
            raise SchedulerError(f"Job {self.name} hour must be between 0 and 23")

    def seconds_until_next_run(self, now: Optional[datetime] = None) -> float:
        if self.interval_seconds is not None:
            return float(self.interval_seconds)
        return seconds_until_hour(self.daily_at_hour, self.timezone, now)  # type: ignore[arg-type]


class JobScheduler:
    """Registry and runner for scheduled jobs."""

    def __init__(self) -> None:
        self.jobs: Dict[str, ScheduledJob] = {}
        self._tasks: Dict[str, asyncio.Task] = {}
        self._stop_events: Dict[str, asyncio.Event] = {}
        self._last_runs: Dict[str, Dict[str, Any]] = {}
        self._shutdown = asyncio.Event()
        self._shutdown_task: Optional[asyncio.Task] = None

    def register(self, job: ScheduledJob) -> None:
        if job.name in self.jobs:
            raise SchedulerError(f"Job already registered: {job.name}")
        self.jobs[job.name] = job
        logger.info(
            "scheduled_job_registered",
            job=job.name,
            interval_seconds=job.interval_seconds,
            daily_at_hour=job.daily_at_hour,
            timezone=job.timezone,
        )

    def _get(self, name: str) -> ScheduledJob:
        try:
            return self.jobs[name]
        except KeyError:
            raise SchedulerError(f"Unknown job: {name}") from None

    async def _execute(self, job: ScheduledJob) -> Any:
        start_time = time.time()
        started_at = datetime.now(ZoneInfo(job.timezone))
        logger.info("scheduled_job_started", job=job.name)

        try:
            result = await job.func()
        except Exception as e:
            duration = time.time() - start_time
            metrics.record_job_run(job.name, "failure", duration)
            self._last_runs[job.name] = {
                "started_at": started_at.isoformat(),
                "status": "failure",
                "duration_seconds": duration,
                "error": str(e),
            }
            logger.error("scheduled_job_failed", job=job.name, error=str(e))
            raise

        duration = time.time() - start_time
        metrics.record_job_run(job.name, "success", duration)
        self._last_runs[job.name] = {
            "started_at": started_at.isoformat(),
            "status": "success",
            "duration_seconds": duration,
            "result": result,
        }
        logger.info("scheduled_job_completed", job=job.name, result=result, duration_seconds=duration)
        return result

    async def _loop(self, job: ScheduledJob, stop_event: asyncio.Event) -> None:
        # Interval jobs run once immediately; daily jobs wait for their hour
        delay = 0.0 if job.interval_seconds is not None else job.seconds_until_next_run()

        while not stop_event.is_set():
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=delay)
                break
            except asyncio.TimeoutError:
                pass

            try:
                await self._execute(job)
            except Exception:
                # Logged by _execute
                pass

            delay = job.seconds_until_next_run()

        logger.info("scheduled_job_loop_stopped", job=job.name)

    def start(self, name: str) -> None:
        """Start the loop of one job (no-op if it is already running)."""
        job = self._get(name)
        task = self._tasks.get(name)
        if task is not None and not task.done():
            return

        stop_event = asyncio.Event()
        self._stop_events[name] = stop_event
        self._tasks[name] = asyncio.create_task(self._loop(job, stop_event), name=f"job:{name}")
        logger.info("scheduled_job_loop_started", job=name)

    def start_all(self) -> None:
        for name in self.jobs:
            self.start(name)

    async def stop(self, name: str) -> None:
        """Stop one job's loop, waiting for a run in progress to finish."""
        self._get(name)
        task = self._tasks.pop(name, None)
        stop_event = self._stop_events.pop(name, None)
        if stop_event is not None:
            stop_event.set()
        if task is not None:
            await task

    async def shutdown(self, timeout: Optional[float] = None) -> None:
        """
        Stop every loop and drain in-flight runs.

        Runs still going after ``timeout`` seconds are cancelled.
        """
        logger.info("scheduler_shutdown_started", running=sorted(self._tasks))
        for stop_event in self._stop_events.values():
            stop_event.set()

        tasks: List[asyncio.Task] = list(self._tasks.values())
        if tasks:
            _, pending = await asyncio.wait(tasks, timeout=timeout)
            for task in pending:
                task.cancel()
            if pending:
                logger.warning("scheduler_shutdown_cancelled_jobs", count=len(pending))
                await asyncio.gather(*pending, return_exceptions=True)

        self._tasks.clear()
        self._stop_events.clear()
        self._shutdown.set()
        logger.info("scheduler_shutdown_completed")

    async def wait_closed(self) -> None:
        """Block until :meth:`shutdown` has completed."""
        await self._shutdown.wait()

    async def run_now(self, name: str) -> Any:
        """
        Run a job once, outside its schedule.

        Raises:
            SchedulerError: If the job is unknown
        """
        return await self._execute(self._get(name))

    def status(self) -> Dict[str, Dict[str, Any]]:
        """Per-job schedule, running state and last run."""
        return {
            name: {
                "running": name in self._tasks and not self._tasks[name].done(),
                "interval_seconds": job.interval_seconds,
                "daily_at_hour": job.daily_at_hour,
                "timezone": job.timezone,
                "last_run": self._last_runs.get(name),
            }
            for name, job in self.jobs.items()
        }

    def install_signal_handlers(self, loop: asyncio.AbstractEventLoop) -> None:
        """Shut down gracefully on SIGINT and SIGTERM."""

        def _on_signal(sig: signal.Signals) -> None:
            logger.info("scheduler_shutdown_signal_received", signal=sig.name)
            if self._shutdown_task is None:
                self._shutdown_task = loop.create_task(self.shutdown())

        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, _on_signal, sig)
