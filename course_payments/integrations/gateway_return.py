"""
Buyer return from a redirect-based gateway checkout.

When the gateway sends the buyer back it appends the payment id. The
payment is looked up at the gateway, never trusted from the query string,
and applied to the order through the same engine as webhooks.
"""
from typing import Optional

import structlog

from course_payments.config import get_settings
from course_payments.core.order_store import OrderNotFoundError, OrderStore
from course_payments.core.reconciliation import ReconciliationEngine, ReconciliationResult
from course_payments.integrations.gateway_client import GatewayClient
from course_payments.integrations.webhook_handler import GatewayWebhookAdapter, WebhookError
from course_payments.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


class GatewayReturnError(Exception):
    """Raised when a return cannot be applied to the order it names."""

    pass


class GatewayReturnAdapter:
    """Confirms a gateway payment the buyer came back with."""

    def __init__(
        self,
        store: OrderStore,
        engine: ReconciliationEngine,
        gateway_client: GatewayClient,
        webhook_adapter: GatewayWebhookAdapter,
    ):
        self.settings = get_settings()
        self.store = store
        self.engine = engine
        self.gateway_client = gateway_client
        self.webhook_adapter = webhook_adapter

    async def confirm_return(
        self, order_id: str, payment_id: str, correlation_id: Optional[str] = None
    ) -> ReconciliationResult:
        """
        Fetch ``payment_id`` and reconcile it against ``order_id``.

        The order is left untouched when it is not a gateway order or the
        payment belongs to a different order.

        Raises:
            OrderNotFoundError: If the order does not exist
            GatewayReturnError: If the payment cannot back this order
            GatewayError: If the gateway lookup failed
        """
        payment_id = (payment_id or "").strip()
        if not payment_id:
            raise GatewayReturnError("Missing payment id")

        order = await self.store.get_order(order_id)
        if order is None:
            raise OrderNotFoundError(order_id)

        log = logger.bind(order_id=order.id, provider_payment_id=payment_id)
        if order.payment_method in self.settings.get_manual_payment_methods():
            metrics.record_gateway_return("refused")
            log.warning("gateway_return_for_manual_order", payment_method=order.payment_method)
            raise GatewayReturnError(f"Order {order.id} is not paid through the gateway")

        payment = await self.gateway_client.get_payment(payment_id)
        try:
            outcome = self.webhook_adapter.normalize_payment(payment, correlation_id=correlation_id)
        except WebhookError as e:
            raise GatewayReturnError(str(e)) from e

        reference = payment.get("external_reference")
        if reference is None or str(reference) not in (order.id, order.order_number):
            metrics.record_gateway_return("mismatched")
            log.warning("gateway_return_reference_mismatch", external_reference=reference)
            raise GatewayReturnError(f"Payment {payment_id} does not belong to order {order.id}")

        result = await self.engine.reconcile(outcome)
        metrics.record_gateway_return("reconciled")
        log.info(
            "gateway_return_reconciled",
            result_kind=result.kind.value,
            status=result.status.value if result.status else None,
        )
        return result
