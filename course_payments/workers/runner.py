"""
Worker entry point.

Runs the scheduled jobs (pending order expiry, subscription expiry and the
outbox publisher) until SIGINT/SIGTERM, or a single job once with ``--job``.
"""
import argparse
import asyncio
from typing import List, Optional

import structlog

from course_payments.database.connection import init_db
from course_payments.monitoring.logging import setup_logging
from course_payments.services import build_container
from course_payments.workers.jobs import register_jobs
from course_payments.workers.scheduler import JobScheduler

logger = structlog.get_logger(__name__)


async def run_worker(job_name: Optional[str] = None) -> None:
    """
    Start the worker.

    Args:
        job_name: Run only this job once and exit
    """
    setup_logging()
    container = build_container()
    await init_db(container.db_engine)

    scheduler = JobScheduler()
    register_jobs(scheduler, container)

    try:
        if job_name is not None:
            result = await scheduler.run_now(job_name)
            logger.info("worker_single_run_completed", job=job_name, result=result)
            return

        logger.info("worker_starting", jobs=sorted(scheduler.jobs))
        scheduler.install_signal_handlers(asyncio.get_running_loop())
        scheduler.start_all()
        await scheduler.wait_closed()
    finally:
        await container.close()
        logger.info("worker_stopped")


def main(argv: Optional[List[str]] = None) -> None:
    parser = argparse.ArgumentParser(description="Course payments worker")
    parser.add_argument("--job", default=None, help="Run a single job once and exit")
    args = parser.parse_args(argv)

    asyncio.run(run_worker(job_name=args.job))


if __name__ == "__main__":
    main()
