"""
Payment gateway webhook adapter with signature verification and deduplication.

Implements:
- HMAC-SHA256 ``x-signature`` verification
- Event deduplication using Redis
- Routing of notification kinds to normalizers; unknown kinds are dropped
- Normalization of single-payment and aggregate (merchant order) events
  into canonical outcomes for the reconciliation engine
"""
import hashlib
import hmac
import json
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

import redis.asyncio as aioredis
import structlog

from course_payments.config import get_settings
from course_payments.core.outcomes import CanonicalOutcome, Outcome
from course_payments.core.reconciliation import ReconciliationEngine, ResultKind
from course_payments.integrations.gateway_client import GatewayClient, GatewayError

logger = structlog.get_logger(__name__)

PAYMENT_EVENT = "payment"
MERCHANT_ORDER_EVENT = "merchant_order"

# Gateway payment statuses; anything not listed is treated as pending
_STATUS_MAP: Dict[str, Outcome] = {
    "approved": Outcome.APPROVED,
    "rejected": Outcome.REJECTED,
    "cancelled": Outcome.CANCELLED,
    "pending": Outcome.PENDING,
    "in_process": Outcome.PENDING,
    "authorized": Outcome.PENDING,
    "in_mediation": Outcome.PENDING,
}


class WebhookError(Exception):
    """Raised when a webhook delivery is malformed or fails verification."""

    pass


@dataclass(frozen=True)
class WebhookNotification:
    """Parsed gateway notification."""

    kind: str
    resource_id: str
    event_id: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)

    @property
    def dedup_key(self) -> Optional[str]:
        """Redis key for the delivery, or None when it carries no notification id."""
        return self.event_id


NotificationHandler = Callable[[WebhookNotification], Awaitable[CanonicalOutcome]]


class GatewayWebhookAdapter:
    """
    Turns gateway webhook deliveries into canonical outcomes.

    Notifications only carry a resource id; the adapter fetches the payment
    or merchant order from the gateway and normalizes it. The engine never
    talks to the gateway itself.
    """

    def __init__(
        self,
        engine: ReconciliationEngine,
        gateway_client: GatewayClient,
        redis_client: Optional[aioredis.Redis] = None,
        webhook_secret: Optional[str] = None,
    ):
        """
        Initialize webhook adapter.

        Args:
            engine: Reconciliation engine receiving canonical outcomes
            gateway_client: Client used to resolve notification resources
            redis_client: Optional Redis client for event deduplication
            webhook_secret: Signing secret (signature check skipped when empty)
        """
        self.settings = get_settings()
        self.engine = engine
        self.gateway_client = gateway_client
        self.redis_client = redis_client
        self.webhook_secret = (
            webhook_secret if webhook_secret is not None else self.settings.gateway_webhook_secret
        )
        self.event_handlers: Dict[str, NotificationHandler] = {}

        self.register_handler(PAYMENT_EVENT, self.handle_payment)
        self.register_handler(MERCHANT_ORDER_EVENT, self.handle_merchant_order)

    def register_handler(self, kind: str, handler: NotificationHandler) -> None:
        """
        Register a normalizer for a notification kind.

        Args:
            kind: Notification kind (``type`` or ``topic`` field)
            handler: Async callable returning a canonical outcome
        """
        self.event_handlers[kind] = handler
        logger.info("webhook_handler_registered", event_kind=kind)

    @staticmethod
    def parse_notification(body: bytes) -> WebhookNotification:
        """
        Parse a raw webhook body.

        Accepts ``{"type": ..., "data": {"id": ...}}`` and the older
        ``{"topic": ..., "resource": ".../<id>"}`` form.

        Raises:
            WebhookError: If the body is not a well-formed notification
        """
        try:
            payload = json.loads(body)
        except (ValueError, UnicodeDecodeError) as e:
            raise WebhookError(f"Webhook body is not valid JSON: {e}")

        if not isinstance(payload, dict):
            raise WebhookError("Webhook body must be a JSON object")

        kind = payload.get("type") or payload.get("topic")
        if not isinstance(kind, str) or not kind:
            raise WebhookError("Webhook body has no event kind")

        resource_id = ""
        data = payload.get("data")
        if isinstance(data, dict) and data.get("id") is not None:
            resource_id = str(data["id"])
        elif isinstance(payload.get("resource"), str):
            resource_id = payload["resource"].rstrip("/").rsplit("/", 1)[-1]

        event_id = payload.get("id")
        return WebhookNotification(
            kind=kind,
            resource_id=resource_id,
            event_id=str(event_id) if event_id is not None else None,
            raw=payload,
        )

    def verify_signature(
        self,
        notification: WebhookNotification,
        signature: Optional[str],
        request_id: Optional[str],
    ) -> None:
        """
        Verify the ``x-signature`` header (``ts=<ts>,v1=<hex hmac>``).

        The signed manifest is ``id:<data.id>;request-id:<x-request-id>;ts:<ts>;``.

        Raises:
            WebhookError: If the signature is missing or does not match
        """
        if not self.webhook_secret:
            return

        if not signature:
            raise WebhookError("Missing webhook signature")

        parts: Dict[str, str] = {}
        for item in signature.split(","):
            key, _, value = item.strip().partition("=")
            parts[key] = value
        ts, received = parts.get("ts"), parts.get("v1")
        if not ts or not received:
            raise WebhookError("Malformed webhook signature")

        manifest = f"id:{notification.resource_id};"
        if request_id:
            manifest += f"request-id:{request_id};"
        manifest += f"ts:{ts};"

        expected = hmac.new(
            self.webhook_secret.encode(), manifest.encode(), hashlib.sha256
        ).hexdigest()
        if not hmac.compare_digest(expected, received):
            logger.error("webhook_signature_verification_failed", event_kind=notification.kind)
            raise WebhookError("Invalid webhook signature")

        logger.info("webhook_signature_verified", event_kind=notification.kind)

    async def is_event_processed(self, key: Optional[str]) -> bool:
        """Check whether a notification was already handled."""
        if self.redis_client is None or key is None:
            return False
        try:
            return bool(await self.redis_client.exists(f"webhook:processed:{key}"))
        except Exception as e:
            logger.warning("webhook_dedup_check_error", error=str(e), key=key)
            # If Redis is down, process the event anyway; the engine is idempotent
            return False

    async def mark_event_processed(self, key: Optional[str]) -> None:
        """Remember a handled notification for the configured TTL."""
        if self.redis_client is None or key is None:
            return
        try:
            await self.redis_client.setex(
                f"webhook:processed:{key}", self.settings.webhook_dedup_ttl_seconds, "1"
            )
        except Exception as e:
            logger.warning("webhook_mark_processed_error", error=str(e), key=key)

    @staticmethod
    def map_status(status: Optional[str]) -> Outcome:
        """Map a gateway payment status onto a canonical outcome."""
        outcome = _STATUS_MAP.get((status or "").lower())
        if outcome is None:
            logger.warning("webhook_unmapped_payment_status", status=status)
            return Outcome.PENDING
        return outcome

    def normalize_payment(
        self, payment: Dict[str, Any], correlation_id: Optional[str] = None
    ) -> CanonicalOutcome:
        """
        Normalize a single payment.

        Raises:
            WebhookError: If the payment carries no id
        """
        if payment.get("id") is None:
            raise WebhookError("Gateway payment has no id")

        payment_id = str(payment["id"])
        status = payment.get("status")
        return CanonicalOutcome(
            order_reference=str(payment.get("external_reference") or payment_id),
            outcome=self.map_status(status),
            provider_payment_id=payment_id,
            raw_provider_status=status,
            provider="gateway",
            correlation_id=correlation_id,
        )

    def normalize_merchant_order(
        self, merchant_order: Dict[str, Any], correlation_id: Optional[str] = None
    ) -> CanonicalOutcome:
        """
        Normalize an aggregate merchant order.

        Any approved attempt makes the order approved with that attempt's id;
        if every attempt was rejected or cancelled it is rejected; otherwise
        it is still pending.

        Raises:
            WebhookError: If the merchant order has neither a reference nor an id
        """
        reference = merchant_order.get("external_reference") or merchant_order.get("id")
        if reference is None:
            raise WebhookError("Merchant order has no reference")

        attempts: List[Dict[str, Any]] = [
            p for p in merchant_order.get("payments") or [] if isinstance(p, dict)
        ]
        outcomes = [(p, self.map_status(p.get("status"))) for p in attempts]

        approved = next((p for p, o in outcomes if o is Outcome.APPROVED), None)
        if approved is not None:
            outcome, chosen = Outcome.APPROVED, approved
        elif outcomes and all(o in (Outcome.REJECTED, Outcome.CANCELLED) for _, o in outcomes):
            outcome, chosen = Outcome.REJECTED, attempts[-1]
        else:
            outcome, chosen = Outcome.PENDING, attempts[-1] if attempts else None

        return CanonicalOutcome(
            order_reference=str(reference),
            outcome=outcome,
            provider_payment_id=str(chosen["id"]) if chosen and chosen.get("id") is not None else None,
            raw_provider_status=merchant_order.get("order_status") or merchant_order.get("status"),
            provider="gateway",
            correlation_id=correlation_id,
        )

    async def handle_payment(self, notification: WebhookNotification) -> CanonicalOutcome:
        """Fetch and normalize the payment a notification refers to."""
        if not notification.resource_id:
            raise WebhookError("Payment notification has no payment id")
        payment = await self.gateway_client.get_payment(notification.resource_id)
        return self.normalize_payment(payment, correlation_id=notification.event_id)

    async def handle_merchant_order(self, notification: WebhookNotification) -> CanonicalOutcome:
        """Fetch and normalize the merchant order a notification refers to."""
        if not notification.resource_id:
            raise WebhookError("Merchant order notification has no id")
        merchant_order = await self.gateway_client.get_merchant_order(notification.resource_id)
        return self.normalize_merchant_order(merchant_order, correlation_id=notification.event_id)

    async def process_notification(self, notification: WebhookNotification) -> Dict[str, Any]:
        """
        Process a verified notification.

        Returns:
            Dict[str, Any]: Processing result; every return value is acknowledged with 200

        Raises:
            WebhookError: If the notification cannot be normalized
            GatewayError: If the gateway could not be reached (retryable)
            InfrastructureError: If the order could not be persisted (retryable)
        """
        key = notification.dedup_key
        log = logger.bind(event_kind=notification.kind, resource_id=notification.resource_id)

        if await self.is_event_processed(key):
            log.info("webhook_event_already_processed")
            return {"status": "duplicate", "event_kind": notification.kind}

        handler = self.event_handlers.get(notification.kind)
        if handler is None:
            log.info("webhook_event_ignored")
            await self.mark_event_processed(key)
            return {
                "status": "ignored",
                "event_kind": notification.kind,
                "message": f"Unhandled event kind: {notification.kind}",
            }

        try:
            outcome = await handler(notification)
        except GatewayError as e:
            if e.retryable:
                raise
            # The gateway does not know this resource; redelivery cannot help
            log.warning("webhook_resource_not_resolvable", error=str(e))
            await self.mark_event_processed(key)
            return {
                "status": "ignored",
                "event_kind": notification.kind,
                "message": "Resource could not be resolved",
            }

        result = await self.engine.reconcile(outcome)
        # A pending outcome may be followed by a settled one under the same id
        if outcome.outcome is not Outcome.PENDING:
            await self.mark_event_processed(key)

        status = "orphaned" if result.kind is ResultKind.ORPHANED else "processed"
        log.info(
            "webhook_event_processed",
            status=status,
            order_id=result.order_id,
            result_kind=result.kind.value,
        )
        return {
            "status": status,
            "event_kind": notification.kind,
            "order_id": result.order_id,
            "result": result.as_dict(),
        }
