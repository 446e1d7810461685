"""FastAPI application and routes."""
from .main import app, create_app
from .schemas import (
    CreateOrderRequest,
    ManualConfirmRequest,
    ManualVerdictRequest,
    OrderStatusResponse,
    WebhookResponse,
)

__all__ = [
    "app",
    "create_app",
    "CreateOrderRequest",
    "ManualConfirmRequest",
    "ManualVerdictRequest",
    "OrderStatusResponse",
    "WebhookResponse",
]
