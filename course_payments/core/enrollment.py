"""
Enrollment granting.

Grants are keyed by (buyer, item) and rely on the unique constraint instead
of an application lock: an insert that conflicts means the buyer is already
enrolled and counts as success. Each item commits on its own so a failing
item never blocks the rest.
"""
from dataclasses import dataclass, field
from typing import Iterable, List

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from course_payments.database.connection import insert_for
from course_payments.database.models import Enrollment, Order, utcnow
from course_payments.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


@dataclass
class GrantReport:
    """Per-item result of a grant run."""

    order_id: str
    granted: List[str] = field(default_factory=list)
    already_enrolled: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)

    @property
    def complete(self) -> bool:
        return not self.failed

    def as_dict(self) -> dict:
        return {
            "order_id": self.order_id,
            "granted": self.granted,
            "already_enrolled": self.already_enrolled,
            "failed": self.failed,
        }


class EnrollmentGranter:
    """Grants course access for completed orders, exactly once per (buyer, item)."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def _grant_one(self, buyer_id: str, item_id: str, order_id: str) -> bool:
        """Insert one enrollment; returns False if it already existed."""
        async with self.session_factory() as db:
            stmt = (
                insert_for(db, Enrollment)
                .values(
                    buyer_id=buyer_id,
                    item_id=item_id,
                    order_id=order_id,
                    granted_at=utcnow(),
                )
                .on_conflict_do_nothing(index_elements=["buyer_id", "item_id"])
            )
            result = await db.execute(stmt)
            await db.commit()
            return result.rowcount == 1

    async def grant_items(
        self, order_id: str, buyer_id: str, item_ids: Iterable[str]
    ) -> GrantReport:
        """
        Grant enrollments for ``item_ids``.

        Safe to call any number of times, concurrently or not; always converges
        to one row per (buyer, item). Failures are reported, never raised.
        """
        report = GrantReport(order_id=order_id)

        for item_id in item_ids:
            try:
                inserted = await self._grant_one(buyer_id, item_id, order_id)
            except SQLAlchemyError as e:
                logger.warning(
                    "enrollment_grant_failed",
                    order_id=order_id,
                    buyer_id=buyer_id,
                    item_id=item_id,
                    error=str(e),
                )
                report.failed.append(item_id)
                continue

            if inserted:
                report.granted.append(item_id)
            else:
                report.already_enrolled.append(item_id)

        metrics.record_enrollment_grant("granted", len(report.granted))
        metrics.record_enrollment_grant("already_enrolled", len(report.already_enrolled))
        metrics.record_enrollment_grant("failed", len(report.failed))

        logger.info(
            "enrollments_granted",
            order_id=order_id,
            buyer_id=buyer_id,
            granted=len(report.granted),
            already_enrolled=len(report.already_enrolled),
            failed=len(report.failed),
        )
        return report

    async def grant_enrollments(self, order: Order) -> GrantReport:
        """Grant every line item of a completed order."""
        return await self.grant_items(order.id, order.buyer_id, order.item_ids)
