"""
Transactional outbox.

Order side effects (emails, staff alerts, enrollment retries) are written as
outbox rows in the same transaction as the order change and dispatched later,
so a failing collaborator can never roll back a transition.
"""
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from course_payments.database.models import OutboxEvent
from course_payments.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

OutboxHandler = Callable[[Dict[str, Any]], Awaitable[Optional[bool]]]

ORDER_COMPLETED = "order.completed"
ORDER_FAILED = "order.failed"
ORDER_LATE_APPROVAL = "order.late_approval"
ENROLLMENT_RETRY = "enrollment.retry"
SUBSCRIPTION_EXPIRED = "subscription.expired"


@dataclass(frozen=True)
class OutboxMessage:
    """Event to be written to the outbox alongside a domain change."""

    event_type: str
    payload: Dict[str, Any] = field(default_factory=dict)
    aggregate_type: str = "order"


def write_outbox_event(db: AsyncSession, aggregate_id: str, message: OutboxMessage) -> OutboxEvent:
    """Add an outbox row to the session; committed with the caller's transaction."""
    event = OutboxEvent(
        aggregate_id=aggregate_id,
        aggregate_type=message.aggregate_type,
        event_type=message.event_type,
        payload=message.payload,
        published=False,
    )
    db.add(event)
    return event


class OutboxPublisher:
    """
    Dispatches outbox rows to registered handlers.

    A row is marked published only after its handler succeeds; failed rows
    keep their place and are retried on the next batch.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        batch_size: int = 100,
    ):
        """
        Initialize outbox publisher.

        Args:
            session_factory: Session factory for the outbox table
            batch_size: Number of events to process per batch
        """
        self.session_factory = session_factory
        self.batch_size = batch_size
        self.handlers: Dict[str, OutboxHandler] = {}

        logger.info("outbox_publisher_initialized", batch_size=batch_size)

    def register_handler(self, event_type: str, handler: OutboxHandler) -> None:
        """Route ``event_type`` rows to ``handler``."""
        self.handlers[event_type] = handler
        logger.info("outbox_handler_registered", event_type=event_type)

    async def _default_handler(self, event_data: Dict[str, Any]) -> None:
        logger.info(
            "outbox_event_without_handler",
            event_type=event_data.get("event_type"),
            aggregate_id=event_data.get("aggregate_id"),
        )

    async def _fetch_unpublished_events(self, db: AsyncSession) -> List[OutboxEvent]:
        stmt = (
            select(OutboxEvent)
            .where(OutboxEvent.published == False)  # noqa: E712
            .order_by(OutboxEvent.created_at, OutboxEvent.id)
            .limit(self.batch_size)
        )
        result = await db.execute(stmt)
        return list(result.scalars().all())

    async def _publish_event(self, event: OutboxEvent) -> Optional[str]:
        """
        Hand a single event to its handler.

        Returns:
            Optional[str]: None on success, otherwise the failure description
        """
        event_data = {
            "id": event.id,
            "aggregate_id": event.aggregate_id,
            "aggregate_type": event.aggregate_type,
            "event_type": event.event_type,
            "payload": event.payload,
            "created_at": event.created_at.isoformat(),
        }
        handler = self.handlers.get(event.event_type, self._default_handler)
        start_time = time.time()

        try:
            delivered = await handler(event_data)
        except Exception as e:
            logger.error(
                "outbox_event_publish_failed",
                event_id=event.id,
                event_type=event.event_type,
                error=str(e),
            )
            return str(e) or type(e).__name__

        if delivered is False:
            logger.warning(
                "outbox_event_not_delivered",
                event_id=event.id,
                event_type=event.event_type,
            )
            return "handler reported failure"

        metrics.record_outbox_event_published(event.event_type, time.time() - start_time)
        logger.info(
            "outbox_event_published",
            event_id=event.id,
            event_type=event.event_type,
            aggregate_id=event.aggregate_id,
        )
        return None

    async def _mark_as_published(self, db: AsyncSession, event_ids: List[int]) -> None:
        if not event_ids:
            return

        stmt = (
            update(OutboxEvent)
            .where(OutboxEvent.id.in_(event_ids))
            .values(published=True, published_at=datetime.now(timezone.utc))
            .execution_options(synchronize_session=False)
        )
        await db.execute(stmt)

    async def _record_failures(self, db: AsyncSession, failures: Dict[int, str]) -> None:
        for event_id, error in failures.items():
            stmt = (
                update(OutboxEvent)
                .where(OutboxEvent.id == event_id)
                .values(attempts=OutboxEvent.attempts + 1, last_error=error[:1000])
                .execution_options(synchronize_session=False)
            )
            await db.execute(stmt)

    async def process_batch(self) -> int:
        """
        Process a batch of unpublished events.

        Returns:
            int: Number of events published
        """
        async with self.session_factory() as db:
            try:
                events = await self._fetch_unpublished_events(db)
                if not events:
                    return 0

                logger.info("outbox_batch_processing_started", batch_size=len(events))

                published_ids: List[int] = []
                failures: Dict[int, str] = {}
                for event in events:
                    error = await self._publish_event(event)
                    if error is None:
                        published_ids.append(event.id)
                    else:
                        failures[event.id] = error

                await self._mark_as_published(db, published_ids)
                await self._record_failures(db, failures)
                await db.commit()

                logger.info(
                    "outbox_batch_processed",
                    total=len(events),
                    published=len(published_ids),
                    failed=len(failures),
                )
                return len(published_ids)

            except SQLAlchemyError as e:
                logger.error("outbox_batch_processing_error", error=str(e))
                await db.rollback()
                return 0

    async def get_pending_count(self) -> int:
        """
        Get count of pending unpublished events.

        Returns:
            int: Number of unpublished events
        """
        async with self.session_factory() as db:
            stmt = (
                select(func.count())
                .select_from(OutboxEvent)
                .where(OutboxEvent.published == False)  # noqa: E712
            )
            count = (await db.execute(stmt)).scalar_one()
        metrics.set_outbox_queue_depth(count)
        return count
