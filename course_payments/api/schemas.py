"""
Pydantic schemas for API request/response models.
"""
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class LineItemRequest(BaseModel):
    """A purchased item in a checkout request."""

    model_config = ConfigDict(populate_by_name=True)

    item_id: str = Field(..., min_length=1, alias="itemId", description="Course or product id")
    unit_price_cents: int = Field(
        ..., ge=0, alias="unitPriceCents", description="Unit price in minor units"
    )


class CreateOrderRequest(BaseModel):
    """Request schema for starting a checkout."""

    model_config = ConfigDict(
        populate_by_name=True,
        json_schema_extra={
            "examples": [
                {
                    "buyerId": "user_42",
                    "items": [{"itemId": "course_x", "unitPriceCents": 4900}],
                    "paymentMethod": "mercadopago",
                    "amountCents": 4900,
                    "currency": "PEN",
                }
            ]
        },
    )

    buyer_id: str = Field(..., min_length=1, alias="buyerId", description="Buyer identifier")
    items: List[LineItemRequest] = Field(..., description="Line items")
    payment_method: str = Field(..., alias="paymentMethod", description="Requested payment method")
    amount_cents: int = Field(..., alias="amountCents", description="Order total in minor units")
    currency: str = Field(..., min_length=3, max_length=3, description="Currency code (e.g., PEN)")

    @field_validator("currency")
    @classmethod
    def validate_currency(cls, v: str) -> str:
        """Validate currency format."""
        return v.upper()


class OrderResponse(BaseModel):
    """Response schema for a created order."""

    order_id: str = Field(..., description="Order ID")
    order_number: str = Field(..., description="Human-readable order number")
    buyer_id: str = Field(..., description="Buyer identifier")
    amount_cents: int = Field(..., description="Order total in minor units")
    currency: str = Field(..., description="Currency code")
    payment_method: str = Field(..., description="Requested payment method")
    payment_status: str = Field(..., description="Payment status")
    created_at: str = Field(..., description="Creation timestamp (ISO 8601)")


class ManualConfirmRequest(BaseModel):
    """Buyer-supplied manual payment reference."""

    model_config = ConfigDict(
        populate_by_name=True,
        json_schema_extra={
            "examples": [{"orderId": "ord_2", "paymentMethod": "yape", "transactionId": "ABC123"}]
        },
    )

    order_id: str = Field(..., min_length=1, alias="orderId", description="Order ID")
    payment_method: str = Field(..., alias="paymentMethod", description="Wallet used (yape, plin)")
    transaction_id: str = Field(..., alias="transactionId", description="Wallet transaction id")


class GatewayReturnRequest(BaseModel):
    """Payment id the gateway appended when sending the buyer back."""

    model_config = ConfigDict(
        populate_by_name=True,
        json_schema_extra={"examples": [{"orderId": "ord_1", "paymentId": "1001"}]},
    )

    order_id: str = Field(..., min_length=1, alias="orderId", description="Order ID")
    payment_id: str = Field(..., min_length=1, alias="paymentId", description="Gateway payment id")


class ManualConfirmResponse(BaseModel):
    """Response schema for a manual confirmation."""

    success: bool = Field(..., description="Whether the submission was accepted")
    error: Optional[str] = Field(default=None, description="Rejection code when not accepted")
    status: Optional[str] = Field(default=None, description="Resulting payment status")


class ManualVerdictRequest(BaseModel):
    """Validation verdict from the receipt matcher or staff."""

    model_config = ConfigDict(
        populate_by_name=True,
        json_schema_extra={
            "examples": [
                {"orderId": "ord_2", "status": "approved", "reportedAmountCents": 4900},
                {"orderId": "ord_2", "status": "rejected", "rejectionReason": "receipt_unreadable"},
            ]
        },
    )

    order_id: str = Field(..., min_length=1, alias="orderId", description="Order ID")
    status: str = Field(..., pattern="^(approved|rejected)$", description="Verdict")
    rejection_reason: Optional[str] = Field(
        default=None, alias="rejectionReason", description="Rejection code"
    )
    reported_amount_cents: Optional[int] = Field(
        default=None, ge=0, alias="reportedAmountCents", description="Amount read from the receipt"
    )
    transaction_id: Optional[str] = Field(
        default=None, alias="transactionId", description="Transaction id read from the receipt"
    )


class ReconciliationResponse(BaseModel):
    """Result of applying an outcome to an order."""

    kind: str = Field(..., description="transitioned, unchanged, orphaned or stale_approval")
    order_id: Optional[str] = Field(default=None, description="Order ID")
    status: Optional[str] = Field(default=None, description="Resulting payment status")
    previous_status: Optional[str] = Field(default=None, description="Status before the outcome")
    rejection_reason: Optional[str] = Field(default=None, description="Rejection code")


class OrderStatusResponse(BaseModel):
    """Buyer-facing order status."""

    order_id: str = Field(..., description="Order ID")
    order_number: str = Field(..., description="Human-readable order number")
    payment_status: str = Field(..., description="pending, completed or failed")
    rejection_reason: Optional[str] = Field(default=None, description="Rejection code")
    message: Optional[str] = Field(default=None, description="Localized status message")
    timed_out: bool = Field(default=False, description="Gave up waiting for a terminal status")


class WebhookResponse(BaseModel):
    """Response schema for webhook processing."""

    status: str = Field(..., description="processed, duplicate, ignored or orphaned")
    event_kind: Optional[str] = Field(default=None, description="Notification kind")
    order_id: Optional[str] = Field(default=None, description="Order ID")
    message: Optional[str] = Field(default=None, description="Processing message")
    result: Optional[Dict[str, Any]] = Field(default=None, description="Reconciliation result")


class HealthCheckResponse(BaseModel):
    """Response schema for health check."""

    status: str = Field(..., description="Overall health status")
    checks: Optional[Dict[str, Any]] = Field(default=None, description="Individual check results")
    message: Optional[str] = Field(default=None, description="Status message")
