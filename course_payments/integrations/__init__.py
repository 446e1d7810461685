"""External integrations: gateway, manual confirmation and notifications."""
from .gateway_client import GatewayClient, GatewayError, GatewayErrorType
from .manual_confirmation import ConfirmationResult, ManualConfirmationAdapter
from .notifications import NotificationDispatcher
from .webhook_handler import GatewayWebhookAdapter, WebhookError

__all__ = [
    "ConfirmationResult",
    "GatewayClient",
    "GatewayError",
    "GatewayErrorType",
    "GatewayWebhookAdapter",
    "ManualConfirmationAdapter",
    "NotificationDispatcher",
    "WebhookError",
]
