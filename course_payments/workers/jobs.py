"""Scheduled jobs of the worker process."""
from typing import List

import structlog

from course_payments.services import ServiceContainer
from course_payments.workers.scheduler import JobScheduler, ScheduledJob

logger = structlog.get_logger(__name__)

EXPIRE_PENDING_ORDERS = "expire_pending_orders"
EXPIRE_SUBSCRIPTIONS = "expire_subscriptions"
PUBLISH_OUTBOX = "publish_outbox"


def build_jobs(container: ServiceContainer) -> List[ScheduledJob]:
    """Jobs bound to ``container``'s services."""
    settings = container.settings

    async def expire_pending_orders() -> int:
        return await container.engine.expire_pending_orders()

    async def expire_subscriptions() -> int:
        expired = await container.subscriptions.expire_subscriptions()
        return len(expired)

    async def publish_outbox() -> int:
        processed = await container.outbox.process_batch()
        await container.outbox.get_pending_count()
        return processed

    return [
        ScheduledJob(
            EXPIRE_PENDING_ORDERS,
            expire_pending_orders,
            interval_seconds=settings.expiry_job_interval_seconds,
            timezone=settings.scheduler_timezone,
        ),
        ScheduledJob(
            EXPIRE_SUBSCRIPTIONS,
            expire_subscriptions,
            daily_at_hour=settings.subscription_expiry_hour,
            timezone=settings.scheduler_timezone,
        ),
        ScheduledJob(
            PUBLISH_OUTBOX,
            publish_outbox,
            interval_seconds=settings.outbox_poll_interval_seconds,
            timezone=settings.scheduler_timezone,
        ),
    ]


def register_jobs(scheduler: JobScheduler, container: ServiceContainer) -> None:
    for job in build_jobs(container):
        scheduler.register(job)
