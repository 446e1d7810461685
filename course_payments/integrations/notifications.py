"""Fire-and-forget buyer and staff notifications."""
from typing import Any, Dict, Optional

import httpx
import structlog

from course_payments.config import get_settings
from course_payments.core.outbox import (
    ORDER_COMPLETED,
    ORDER_FAILED,
    ORDER_LATE_APPROVAL,
    SUBSCRIPTION_EXPIRED,
)
from course_payments.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

NOTIFICATION_KINDS = {
    ORDER_COMPLETED: "payment_confirmation",
    ORDER_FAILED: "payment_rejected",
    ORDER_LATE_APPROVAL: "staff_late_approval",
    SUBSCRIPTION_EXPIRED: "subscription_expired",
}


class NotificationDispatcher:
    """
    Posts notification requests to the email service.

    Delivery failures are logged and reported as ``False``; they never raise.
    Without a configured URL, notifications are only logged.
    """

    def __init__(
        self,
        http_client: Optional[httpx.AsyncClient] = None,
        notification_url: Optional[str] = None,
    ) -> None:
        settings = get_settings()
        self.notification_url = (
            notification_url if notification_url is not None else settings.notification_url
        )
        self.http_client = http_client or httpx.AsyncClient(
            timeout=settings.notification_timeout_seconds
        )

    async def dispatch(self, kind: str, payload: Dict[str, Any]) -> bool:
        """Send one notification; returns whether it was accepted."""
        if not self.notification_url:
            logger.info("notification_logged_only", kind=kind, **_summary(payload))
            metrics.record_notification(kind, "logged")
            return True

        try:
            response = await self.http_client.post(
                self.notification_url, json={"kind": kind, "payload": payload}
            )
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.warning("notification_dispatch_failed", kind=kind, error=str(e))
            metrics.record_notification(kind, "failed")
            return False

        metrics.record_notification(kind, "sent")
        logger.info("notification_sent", kind=kind, **_summary(payload))
        return True

    async def send_payment_confirmation(self, payload: Dict[str, Any]) -> bool:
        return await self.dispatch(NOTIFICATION_KINDS[ORDER_COMPLETED], payload)

    async def send_payment_rejected(self, payload: Dict[str, Any]) -> bool:
        return await self.dispatch(NOTIFICATION_KINDS[ORDER_FAILED], payload)

    async def send_staff_alert(self, payload: Dict[str, Any]) -> bool:
        return await self.dispatch(NOTIFICATION_KINDS[ORDER_LATE_APPROVAL], payload)

    async def send_subscription_expired(self, payload: Dict[str, Any]) -> bool:
        return await self.dispatch(NOTIFICATION_KINDS[SUBSCRIPTION_EXPIRED], payload)

    async def handle_outbox_event(self, event_data: Dict[str, Any]) -> bool:
        """Outbox handler: map the event type to a notification kind and send it."""
        kind = NOTIFICATION_KINDS.get(event_data["event_type"])
        if kind is None:
            logger.warning("notification_kind_unknown", event_type=event_data["event_type"])
            return True
        return await self.dispatch(kind, event_data.get("payload") or {})

    async def close(self) -> None:
        await self.http_client.aclose()


def _summary(payload: Dict[str, Any]) -> Dict[str, Any]:
    return {k: payload[k] for k in ("order_id", "buyer_id", "subscription_id") if k in payload}
