"""
API routes for checkout, payment ingress and order status.
"""
import json
import time
from typing import Any, AsyncIterator, Dict, Optional

import structlog
from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, Response, status
from fastapi.responses import StreamingResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from course_payments.core.order_store import (
    InfrastructureError,
    LineItem,
    OrderNotFoundError,
    OrderValidationError,
)
from course_payments.integrations.gateway_client import GatewayError
from course_payments.integrations.gateway_return import GatewayReturnError
from course_payments.integrations.manual_confirmation import ManualConfirmationError
from course_payments.integrations.webhook_handler import WebhookError
from course_payments.monitoring.metrics import metrics
from course_payments.services import ServiceContainer

from .dependencies import get_container, require_validation_api_key
from .schemas import (
    CreateOrderRequest,
    GatewayReturnRequest,
    HealthCheckResponse,
    ManualConfirmRequest,
    ManualConfirmResponse,
    ManualVerdictRequest,
    OrderResponse,
    OrderStatusResponse,
    ReconciliationResponse,
    WebhookResponse,
)

logger = structlog.get_logger(__name__)

# Create routers
checkout_router = APIRouter(prefix="/checkout", tags=["checkout"])
webhook_router = APIRouter(prefix="/webhooks", tags=["webhooks"])
gateway_router = APIRouter(prefix="/payments/gateway", tags=["gateway payments"])
manual_router = APIRouter(prefix="/payments/manual", tags=["manual payments"])
orders_router = APIRouter(prefix="/orders", tags=["orders"])
monitoring_router = APIRouter(tags=["monitoring"])


def _unavailable(error: Exception) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        detail=f"Temporarily unavailable: {error}",
    )


def _not_found(error: OrderNotFoundError) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_404_NOT_FOUND,
        detail=f"Order not found: {error.reference}",
    )


@checkout_router.post(
    "/orders",
    response_model=OrderResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create an order",
    description="Create a pending order when checkout begins",
)
async def create_order(
    request: CreateOrderRequest,
    container: ServiceContainer = Depends(get_container),
) -> Dict[str, Any]:
    """
    Create a pending order.

    Items the buyer is already enrolled in are refused with 409.
    """
    item_ids = [item.item_id for item in request.items]
    logger.info(
        "api_create_order_request",
        buyer_id=request.buyer_id,
        item_count=len(item_ids),
        amount_cents=request.amount_cents,
        payment_method=request.payment_method,
    )

    try:
        owned = await container.store.owned_items(request.buyer_id, item_ids)
        if owned:
            logger.info("api_create_order_items_owned", buyer_id=request.buyer_id, item_ids=owned)
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail={"message": "Buyer already owns some items", "item_ids": owned},
            )

        order = await container.store.create_pending_order(
            buyer_id=request.buyer_id,
            items=[LineItem(item.item_id, item.unit_price_cents) for item in request.items],
            payment_method=request.payment_method,
            amount_cents=request.amount_cents,
            currency=request.currency,
        )

    except OrderValidationError as e:
        logger.warning("api_create_order_validation_error", error=str(e))
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    except InfrastructureError as e:
        logger.error("api_create_order_error", error=str(e))
        raise _unavailable(e)

    return {
        "order_id": order.id,
        "order_number": order.order_number,
        "buyer_id": order.buyer_id,
        "amount_cents": order.total_cents,
        "currency": order.currency,
        "payment_method": order.payment_method,
        "payment_status": order.payment_status,
        "created_at": order.created_at.isoformat(),
    }


@webhook_router.post(
    "/gateway",
    response_model=WebhookResponse,
    summary="Gateway webhook endpoint",
    description="Handle payment gateway notifications",
)
async def gateway_webhook(
    request: Request,
    x_signature: Optional[str] = Header(default=None, alias="x-signature"),
    x_request_id: Optional[str] = Header(default=None, alias="x-request-id"),
    container: ServiceContainer = Depends(get_container),
) -> Dict[str, Any]:
    """
    Handle gateway notifications.

    Orphaned and unknown events are acknowledged with 200 so the gateway
    stops redelivering them; persistence or gateway outages answer 503 so
    it tries again.
    """
    start_time = time.time()
    adapter = container.webhook_adapter

    try:
        body = await request.body()
        notification = adapter.parse_notification(body)
        adapter.verify_signature(notification, x_signature, x_request_id)

        logger.info(
            "api_webhook_received",
            event_kind=notification.kind,
            resource_id=notification.resource_id,
        )

        result = await adapter.process_notification(notification)

    except WebhookError as e:
        logger.error("api_webhook_error", error=str(e))
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    except (InfrastructureError, GatewayError) as e:
        logger.error("api_webhook_retryable_error", error=str(e), error_type=type(e).__name__)
        raise _unavailable(e)

    duration = time.time() - start_time
    metrics.record_webhook_event(notification.kind, result["status"], duration)
    return result


@gateway_router.post(
    "/return",
    response_model=ReconciliationResponse,
    summary="Confirm a gateway return",
    description="Apply the payment a buyer was redirected back with",
)
async def confirm_gateway_return(
    request: GatewayReturnRequest,
    x_request_id: Optional[str] = Header(default=None, alias="x-request-id"),
    container: ServiceContainer = Depends(get_container),
) -> Dict[str, Any]:
    """
    Reconcile the payment named in a gateway redirect.

    The payment is fetched from the gateway before anything is applied; a
    payment for another order answers 400 and leaves the order unchanged.
    """
    try:
        result = await container.return_adapter.confirm_return(
            request.order_id, request.payment_id, correlation_id=x_request_id
        )
    except OrderNotFoundError as e:
        raise _not_found(e)
    except GatewayReturnError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except GatewayError as e:
        if not e.retryable:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
        logger.error("api_gateway_return_error", order_id=request.order_id, error=str(e))
        raise _unavailable(e)
    except InfrastructureError as e:
        logger.error("api_gateway_return_error", order_id=request.order_id, error=str(e))
        raise _unavailable(e)

    return result.as_dict()


@manual_router.post(
    "/confirm",
    response_model=ManualConfirmResponse,
    summary="Submit a manual payment",
    description="Record the wallet transaction id a buyer paid with",
)
async def confirm_manual_payment(
    request: ManualConfirmRequest,
    container: ServiceContainer = Depends(get_container),
) -> Dict[str, Any]:
    """Record a manual payment reference; the order stays pending until validated."""
    try:
        result = await container.manual_adapter.submit(
            request.order_id, request.payment_method, request.transaction_id
        )
    except OrderNotFoundError as e:
        raise _not_found(e)
    except InfrastructureError as e:
        logger.error("api_manual_confirm_error", order_id=request.order_id, error=str(e))
        raise _unavailable(e)

    if result.status is None:
        # Refused before reaching the order
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=result.as_dict())
    return result.as_dict()


@manual_router.post(
    "/verdict",
    response_model=ReconciliationResponse,
    summary="Apply a validation verdict",
    description="Receipt matcher or staff decision on a manual payment",
    dependencies=[Depends(require_validation_api_key)],
)
async def apply_manual_verdict(
    request: ManualVerdictRequest,
    container: ServiceContainer = Depends(get_container),
) -> Dict[str, Any]:
    """Apply an approved/rejected verdict to a manual payment order."""
    try:
        result = await container.manual_adapter.apply_verdict(
            request.order_id,
            request.status,
            rejection_reason=request.rejection_reason,
            reported_amount_cents=request.reported_amount_cents,
            transaction_id=request.transaction_id,
        )
    except OrderNotFoundError as e:
        raise _not_found(e)
    except ManualConfirmationError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except InfrastructureError as e:
        logger.error("api_manual_verdict_error", order_id=request.order_id, error=str(e))
        raise _unavailable(e)

    return result.as_dict()


@orders_router.get(
    "/{order_id}/status",
    response_model=OrderStatusResponse,
    summary="Get order status",
    description="Current payment status, optionally waiting for a terminal status",
)
async def get_order_status(
    order_id: str,
    wait: bool = Query(default=False, description="Wait for completed/failed"),
    locale: Optional[str] = Query(default=None, description="Message language (en, es)"),
    accept_language: Optional[str] = Header(default=None, alias="Accept-Language"),
    container: ServiceContainer = Depends(get_container),
) -> Dict[str, Any]:
    """Get order status by ID."""
    locale = locale or accept_language
    try:
        if wait:
            view = await container.observer.wait_for_terminal(order_id, locale=locale)
        else:
            view = await container.observer.get_order_status(order_id, locale=locale)
    except OrderNotFoundError as e:
        raise _not_found(e)

    return view.as_dict()


@orders_router.get(
    "/{order_id}/events",
    summary="Stream order status",
    description="Server-sent events with the current and then the terminal status",
)
async def stream_order_status(
    order_id: str,
    locale: Optional[str] = Query(default=None, description="Message language (en, es)"),
    accept_language: Optional[str] = Header(default=None, alias="Accept-Language"),
    container: ServiceContainer = Depends(get_container),
) -> StreamingResponse:
    """Stream status updates until the order is terminal or the wait times out."""
    locale = locale or accept_language
    try:
        await container.observer.get_order_status(order_id, locale=locale)
    except OrderNotFoundError as e:
        raise _not_found(e)

    async def event_stream() -> AsyncIterator[str]:
        async for view in container.observer.watch(order_id, locale=locale):
            yield f"event: status\ndata: {json.dumps(view.as_dict())}\n\n"

    return StreamingResponse(
        event_stream(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache"},
    )


@monitoring_router.get(
    "/health",
    response_model=HealthCheckResponse,
    summary="Health check",
    description="Check overall system health",
)
async def health(container: ServiceContainer = Depends(get_container)) -> Dict[str, Any]:
    """Health check endpoint for monitoring."""
    return await container.health.check_all()


@monitoring_router.get(
    "/health/live",
    response_model=HealthCheckResponse,
    summary="Liveness probe",
    description="Kubernetes liveness probe endpoint",
)
async def liveness(container: ServiceContainer = Depends(get_container)) -> Dict[str, Any]:
    """Liveness probe endpoint."""
    return await container.health.liveness()


@monitoring_router.get(
    "/health/ready",
    response_model=HealthCheckResponse,
    summary="Readiness probe",
    description="Kubernetes readiness probe endpoint",
)
async def readiness(container: ServiceContainer = Depends(get_container)) -> Dict[str, Any]:
    """Readiness probe endpoint."""
    result = await container.health.readiness()
    if result["status"] == "unhealthy":
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=result)
    return result


@monitoring_router.get(
    "/metrics",
    summary="Prometheus metrics",
    description="Expose Prometheus metrics",
    include_in_schema=False,  # Don't include in OpenAPI docs
)
async def prometheus_metrics() -> Response:
    """Expose Prometheus metrics."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
