"""
Service wiring shared by the API and the worker.

Builds the store, engine, adapters and outbox publisher around one session
factory and registers the outbox handlers.
"""
from dataclasses import dataclass
from typing import Any, Dict, Optional

import redis.asyncio as aioredis
import structlog
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from course_payments.config import Settings, get_settings
from course_payments.core.enrollment import EnrollmentGranter
from course_payments.core.notifier import OrderChangeNotifier
from course_payments.core.order_store import OrderStore
from course_payments.core.outbox import (
    ENROLLMENT_RETRY,
    ORDER_COMPLETED,
    ORDER_FAILED,
    ORDER_LATE_APPROVAL,
    SUBSCRIPTION_EXPIRED,
    OutboxPublisher,
)
from course_payments.core.reconciliation import ReconciliationEngine
from course_payments.core.status_observer import StatusObserver
from course_payments.core.subscriptions import SubscriptionExpirer
from course_payments.database.connection import build_engine, build_session_factory
from course_payments.integrations.gateway_client import GatewayClient
from course_payments.integrations.gateway_return import GatewayReturnAdapter
from course_payments.integrations.manual_confirmation import ManualConfirmationAdapter
from course_payments.integrations.notifications import NotificationDispatcher
from course_payments.integrations.webhook_handler import GatewayWebhookAdapter
from course_payments.monitoring.health import HealthCheck

logger = structlog.get_logger(__name__)


@dataclass
class ServiceContainer:
    """Everything a request handler or scheduled job needs."""

    settings: Settings
    session_factory: async_sessionmaker[AsyncSession]
    notifier: OrderChangeNotifier
    store: OrderStore
    granter: EnrollmentGranter
    engine: ReconciliationEngine
    observer: StatusObserver
    gateway_client: GatewayClient
    webhook_adapter: GatewayWebhookAdapter
    return_adapter: GatewayReturnAdapter
    manual_adapter: ManualConfirmationAdapter
    dispatcher: NotificationDispatcher
    outbox: OutboxPublisher
    subscriptions: SubscriptionExpirer
    health: HealthCheck
    redis_client: Optional[aioredis.Redis] = None
    db_engine: Optional[AsyncEngine] = None

    async def close(self) -> None:
        """Release network clients and the database engine."""
        await self.gateway_client.close()
        await self.dispatcher.close()
        if self.redis_client is not None:
            await self.redis_client.aclose()
        if self.db_engine is not None:
            await self.db_engine.dispose()
        logger.info("service_container_closed")


def register_outbox_handlers(
    outbox: OutboxPublisher,
    dispatcher: NotificationDispatcher,
    granter: EnrollmentGranter,
) -> None:
    """Route each outbox event type to its side effect."""

    async def retry_enrollment(event_data: Dict[str, Any]) -> bool:
        payload = event_data["payload"]
        report = await granter.grant_items(
            payload["order_id"], payload["buyer_id"], payload["item_ids"]
        )
        return report.complete

    for event_type in (ORDER_COMPLETED, ORDER_FAILED, ORDER_LATE_APPROVAL, SUBSCRIPTION_EXPIRED):
        outbox.register_handler(event_type, dispatcher.handle_outbox_event)
    outbox.register_handler(ENROLLMENT_RETRY, retry_enrollment)


def build_container(
    settings: Optional[Settings] = None,
    session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    redis_client: Optional[aioredis.Redis] = None,
    gateway_client: Optional[GatewayClient] = None,
    dispatcher: Optional[NotificationDispatcher] = None,
) -> ServiceContainer:
    """
    Assemble the service graph.

    Args:
        settings: Settings (defaults to the cached settings)
        session_factory: Session factory; a new engine is built from settings when omitted
        redis_client: Redis client for webhook deduplication; created from
            ``redis_url`` when omitted and the URL is set
        gateway_client: Gateway API client
        dispatcher: Notification dispatcher

    Returns:
        ServiceContainer: Wired services
    """
    settings = settings or get_settings()

    db_engine: Optional[AsyncEngine] = None
    if session_factory is None:
        db_engine = build_engine(settings.database_url)
        session_factory = build_session_factory(db_engine)

    if redis_client is None and settings.redis_url:
        redis_client = aioredis.from_url(
            settings.redis_url,
            encoding="utf-8",
            decode_responses=True,
        )

    notifier = OrderChangeNotifier()
    store = OrderStore(session_factory, notifier=notifier)
    granter = EnrollmentGranter(session_factory)
    engine = ReconciliationEngine(store, granter)
    gateway_client = gateway_client or GatewayClient()
    dispatcher = dispatcher or NotificationDispatcher()

    outbox = OutboxPublisher(session_factory, batch_size=settings.outbox_batch_size)
    register_outbox_handlers(outbox, dispatcher, granter)

    webhook_adapter = GatewayWebhookAdapter(engine, gateway_client, redis_client=redis_client)

    container = ServiceContainer(
        settings=settings,
        session_factory=session_factory,
        notifier=notifier,
        store=store,
        granter=granter,
        engine=engine,
        observer=StatusObserver(store, notifier),
        gateway_client=gateway_client,
        webhook_adapter=webhook_adapter,
        return_adapter=GatewayReturnAdapter(store, engine, gateway_client, webhook_adapter),
        manual_adapter=ManualConfirmationAdapter(store, engine),
        dispatcher=dispatcher,
        outbox=outbox,
        subscriptions=SubscriptionExpirer(session_factory),
        health=HealthCheck(session_factory, redis_client=redis_client),
        redis_client=redis_client,
        db_engine=db_engine,
    )
    logger.info("service_container_built", dedup_enabled=redis_client is not None)
    return container
