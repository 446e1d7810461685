"""
Tests for the outbox publisher, its handlers and subscription expiry.
"""
from datetime import datetime, timedelta, timezone
from typing import Any
from unittest.mock import AsyncMock

import pytest
from sqlalchemy import select

from course_payments.core.enrollment import EnrollmentGranter
from course_payments.core.order_store import AuditEvent
from course_payments.core.outbox import (
    ENROLLMENT_RETRY,
    ORDER_COMPLETED,
    ORDER_FAILED,
    SUBSCRIPTION_EXPIRED,
    OutboxMessage,
    OutboxPublisher,
)
from course_payments.core.subscriptions import SubscriptionExpirer
from course_payments.database.models import Enrollment, OutboxEvent, UserSubscription
from course_payments.services import register_outbox_handlers


async def outbox_rows(session_factory: Any) -> list:
    async with session_factory() as db:
        return list(
            (await db.execute(select(OutboxEvent).order_by(OutboxEvent.id))).scalars().all()
        )


@pytest.fixture
def publisher(session_factory: Any) -> OutboxPublisher:
    return OutboxPublisher(session_factory, batch_size=10)


class TestOutboxPublisher:
    """Test suite for outbox dispatch."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_publishes_to_registered_handler(
        self, publisher: OutboxPublisher, store: Any, make_order: Any, session_factory: Any
    ) -> None:
        order = await make_order()
        await store.record_event(
            order.id,
            AuditEvent("note", {}),
            [OutboxMessage(ORDER_COMPLETED, {"order_id": order.id})],
        )
        handler = AsyncMock(return_value=True)
        publisher.register_handler(ORDER_COMPLETED, handler)

        assert await publisher.get_pending_count() == 1
        assert await publisher.process_batch() == 1

        handler.assert_awaited_once()
        event_data = handler.await_args.args[0]
        assert event_data["event_type"] == ORDER_COMPLETED
        assert event_data["payload"] == {"order_id": order.id}
        assert await publisher.get_pending_count() == 0
        rows = await outbox_rows(session_factory)
        assert rows[0].published is True
        assert rows[0].published_at is not None

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_failed_handler_keeps_event_for_retry(
        self, publisher: OutboxPublisher, store: Any, make_order: Any, session_factory: Any
    ) -> None:
        order = await make_order()
        await store.record_event(
            order.id,
            AuditEvent("note", {}),
            [
                OutboxMessage(ORDER_FAILED, {"order_id": order.id}),
                OutboxMessage(ORDER_COMPLETED, {"order_id": order.id}),
            ],
        )
        publisher.register_handler(ORDER_FAILED, AsyncMock(side_effect=RuntimeError("smtp down")))
        publisher.register_handler(ORDER_COMPLETED, AsyncMock(return_value=False))

        assert await publisher.process_batch() == 0
        assert await publisher.process_batch() == 0

        rows = await outbox_rows(session_factory)
        assert [r.published for r in rows] == [False, False]
        assert [r.attempts for r in rows] == [2, 2]
        assert rows[0].last_error == "smtp down"
        assert rows[1].last_error == "handler reported failure"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_event_without_handler_is_published(
        self, publisher: OutboxPublisher, store: Any, make_order: Any
    ) -> None:
        order = await make_order()
        await store.record_event(
            order.id, AuditEvent("note", {}), [OutboxMessage("order.archived", {})]
        )

        assert await publisher.process_batch() == 1

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_empty_outbox(self, publisher: OutboxPublisher) -> None:
        assert await publisher.process_batch() == 0


class TestOutboxHandlers:
    """Test suite for the handlers wired by the service container."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_notifications_routed_to_dispatcher(
        self,
        publisher: OutboxPublisher,
        mock_dispatcher: AsyncMock,
        granter: EnrollmentGranter,
        store: Any,
        make_order: Any,
    ) -> None:
        register_outbox_handlers(publisher, mock_dispatcher, granter)
        order = await make_order()
        await store.record_event(
            order.id,
            AuditEvent("note", {}),
            [OutboxMessage(ORDER_COMPLETED, {"order_id": order.id})],
        )

        assert await publisher.process_batch() == 1

        mock_dispatcher.handle_outbox_event.assert_awaited_once()

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_enrollment_retry_grants_missing_items(
        self,
        publisher: OutboxPublisher,
        mock_dispatcher: AsyncMock,
        granter: EnrollmentGranter,
        store: Any,
        make_order: Any,
        session_factory: Any,
    ) -> None:
        register_outbox_handlers(publisher, mock_dispatcher, granter)
        order = await make_order()
        await store.record_event(
            order.id,
            AuditEvent("enrollment_partial_failure", {}),
            [
                OutboxMessage(
                    ENROLLMENT_RETRY,
                    {"order_id": order.id, "buyer_id": order.buyer_id, "item_ids": ["course_x"]},
                )
            ],
        )

        assert await publisher.process_batch() == 1

        async with session_factory() as db:
            rows = (await db.execute(select(Enrollment))).scalars().all()
        assert [(e.buyer_id, e.item_id) for e in rows] == [("buyer_1", "course_x")]
        mock_dispatcher.handle_outbox_event.assert_not_called()


class TestSubscriptionExpiry:
    """Test suite for the subscription expiry routine."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_expires_lapsed_subscriptions_once(self, session_factory: Any) -> None:
        now = datetime.now(timezone.utc)
        async with session_factory() as db:
            db.add_all(
                [
                    UserSubscription(
                        id="sub_old",
                        buyer_id="buyer_1",
                        plan_name="monthly",
                        current_period_end=now - timedelta(days=1),
                    ),
                    UserSubscription(
                        id="sub_live",
                        buyer_id="buyer_2",
                        plan_name="monthly",
                        current_period_end=now + timedelta(days=10),
                    ),
                ]
            )
            await db.commit()
        expirer = SubscriptionExpirer(session_factory)

        assert await expirer.expire_subscriptions(now) == ["sub_old"]
        assert await expirer.expire_subscriptions(now) == []

        async with session_factory() as db:
            statuses = {
                s.id: s.status
                for s in (await db.execute(select(UserSubscription))).scalars().all()
            }
        assert statuses == {"sub_old": "expired", "sub_live": "active"}

        rows = await outbox_rows(session_factory)
        assert [(r.event_type, r.aggregate_type, r.aggregate_id) for r in rows] == [
            (SUBSCRIPTION_EXPIRED, "subscription", "sub_old")
        ]
        assert rows[0].payload["plan_name"] == "monthly"
