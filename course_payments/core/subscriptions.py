"""Subscription expiry routine, run daily by the scheduler."""
from datetime import datetime, timezone
from typing import List, Optional

import structlog
from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from course_payments.core.order_store import InfrastructureError
from course_payments.core.outbox import SUBSCRIPTION_EXPIRED, OutboxMessage, write_outbox_event
from course_payments.database.models import UserSubscription, utcnow

logger = structlog.get_logger(__name__)


class SubscriptionExpirer:
    """Marks active subscriptions whose period has ended as expired."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def expire_subscriptions(self, now: Optional[datetime] = None) -> List[str]:
        """
        Expire subscriptions past ``current_period_end``.

        Each expiry writes a ``subscription.expired`` outbox event in the same
        transaction so the buyer is notified exactly once.

        Returns:
            List[str]: Ids of the subscriptions expired by this run
        """
        now = now or datetime.now(timezone.utc)
        expired: List[str] = []

        try:
            async with self.session_factory() as db:
                stmt = select(UserSubscription).where(
                    UserSubscription.status == "active",
                    UserSubscription.current_period_end < now,
                )
                candidates = list((await db.execute(stmt)).scalars().all())

                for subscription in candidates:
                    result = await db.execute(
                        update(UserSubscription)
                        .where(
                            UserSubscription.id == subscription.id,
                            UserSubscription.status == "active",
                        )
                        .values(status="expired", updated_at=utcnow())
                        .execution_options(synchronize_session=False)
                    )
                    if result.rowcount != 1:
                        continue
                    write_outbox_event(
                        db,
                        subscription.id,
                        OutboxMessage(
                            SUBSCRIPTION_EXPIRED,
                            {
                                "subscription_id": subscription.id,
                                "buyer_id": subscription.buyer_id,
                                "plan_name": subscription.plan_name,
                            },
                            aggregate_type="subscription",
                        ),
                    )
                    expired.append(subscription.id)

                await db.commit()
        except SQLAlchemyError as e:
            logger.error("subscription_expiry_failed", error=str(e))
            raise InfrastructureError(f"Subscription expiry failed: {e}") from e

        logger.info("subscriptions_expired", count=len(expired))
        return expired
