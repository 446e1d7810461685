"""Database package: models, engine and session management."""
from .connection import build_engine, build_session_factory, init_db, insert_for
from .models import (
    Base,
    Enrollment,
    ManualReceipt,
    Order,
    OutboxEvent,
    PaymentEvent,
    PaymentRecord,
    UserSubscription,
)

__all__ = [
    "Base",
    "Enrollment",
    "ManualReceipt",
    "Order",
    "OutboxEvent",
    "PaymentEvent",
    "PaymentRecord",
    "UserSubscription",
    "build_engine",
    "build_session_factory",
    "init_db",
    "insert_for",
]
