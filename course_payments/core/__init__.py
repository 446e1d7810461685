"""Core order reconciliation logic."""
from .enrollment import EnrollmentGranter, GrantReport
from .notifier import OrderChangeNotifier
from .order_store import (
    InfrastructureError,
    LineItem,
    OrderNotFoundError,
    OrderStore,
    OrderValidationError,
)
from .outbox import OutboxPublisher
from .outcomes import CanonicalOutcome, Outcome, PaymentStatus, RejectionReason
from .reconciliation import ReconciliationEngine, ReconciliationResult, ResultKind
from .status_observer import OrderStatusView, StatusObserver
from .subscriptions import SubscriptionExpirer

__all__ = [
    "CanonicalOutcome",
    "EnrollmentGranter",
    "GrantReport",
    "InfrastructureError",
    "LineItem",
    "OrderChangeNotifier",
    "OrderNotFoundError",
    "OrderStatusView",
    "OrderStore",
    "OrderValidationError",
    "Outcome",
    "OutboxPublisher",
    "PaymentStatus",
    "ReconciliationEngine",
    "ReconciliationResult",
    "RejectionReason",
    "ResultKind",
    "StatusObserver",
    "SubscriptionExpirer",
]
