"""SQLAlchemy database models for course order reconciliation."""
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# SQLite only autoincrements INTEGER primary keys
BigIntPK = BigInteger().with_variant(Integer, "sqlite")
JSONType = JSON().with_variant(JSONB(), "postgresql")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class Base(DeclarativeBase):
    """Base class for all database models."""

    pass


class Order(Base):
    """
    Buyer-facing order.

    Line items are embedded as JSON (``[{"item_id": ..., "unit_price_cents": ...}]``).
    ``payment_status`` only moves out of ``pending`` once; ``completed`` and
    ``failed`` are terminal and enforced by conditional updates in the order store.
    """

    __tablename__ = "orders"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=new_id)
    order_number: Mapped[str] = mapped_column(String(32), unique=True, nullable=False)
    order_sequence: Mapped[int] = mapped_column(Integer, unique=True, nullable=False)
    buyer_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    items: Mapped[List[Dict[str, Any]]] = mapped_column(JSONType, nullable=False)
    total_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")
    payment_method: Mapped[str] = mapped_column(String(32), nullable=False)
    payment_status: Mapped[str] = mapped_column(
        String(16), nullable=False, default="pending", index=True
    )
    provider_payment_id: Mapped[str | None] = mapped_column(
        String(255), nullable=True, index=True
    )
    rejection_reason: Mapped[str | None] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, index=True
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )

    __table_args__ = (
        CheckConstraint("total_cents > 0", name="positive_total"),
        CheckConstraint(
            "payment_status IN ('pending', 'completed', 'failed')",
            name="valid_payment_status",
        ),
        CheckConstraint("length(currency) = 3", name="valid_currency"),
        Index("idx_orders_buyer_status", "buyer_id", "payment_status"),
        Index("idx_orders_status_created", "payment_status", "created_at"),
    )

    @property
    def item_ids(self) -> List[str]:
        return [item["item_id"] for item in self.items]

    def __repr__(self) -> str:
        """String representation of Order."""
        return (
            f"<Order(id={self.id}, number={self.order_number}, "
            f"buyer={self.buyer_id}, status={self.payment_status})>"
        )


class Enrollment(Base):
    """
    Access grant linking a buyer to a purchased item.

    Exactly one row per (buyer, item); concurrent grants are resolved by the
    unique constraint.
    """

    __tablename__ = "enrollments"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    buyer_id: Mapped[str] = mapped_column(String(64), nullable=False)
    item_id: Mapped[str] = mapped_column(String(64), nullable=False)
    order_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("orders.id"), nullable=False, index=True
    )
    granted_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )

    __table_args__ = (
        UniqueConstraint("buyer_id", "item_id", name="uq_enrollment_buyer_item"),
    )

    def __repr__(self) -> str:
        """String representation of Enrollment."""
        return f"<Enrollment(buyer={self.buyer_id}, item={self.item_id}, order={self.order_id})>"


class ManualReceipt(Base):
    """
    Wallet transaction id claimed by an order.

    A transaction id can back one order only; the primary key settles
    concurrent claims.
    """

    __tablename__ = "manual_receipts"

    transaction_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    order_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("orders.id"), nullable=False, index=True
    )
    payment_method: Mapped[str] = mapped_column(String(20), nullable=False)
    claimed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )

    def __repr__(self) -> str:
        return f"<ManualReceipt(txn={self.transaction_id}, order={self.order_id})>"


class PaymentRecord(Base):
    """
    Denormalized payment audit row, one per order (upserted).

    Kept for reconciliation traceability, separate from the buyer-facing order.
    """

    __tablename__ = "payment_records"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    order_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("orders.id"), unique=True, nullable=False
    )
    provider: Mapped[str] = mapped_column(String(32), nullable=False)
    provider_payment_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    payment_method: Mapped[str] = mapped_column(String(32), nullable=False)
    raw_status: Mapped[str | None] = mapped_column(String(64), nullable=True)
    recorded_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )

    def __repr__(self) -> str:
        """String representation of PaymentRecord."""
        return (
            f"<PaymentRecord(order_id={self.order_id}, provider={self.provider}, "
            f"provider_payment_id={self.provider_payment_id})>"
        )


class PaymentEvent(Base):
    """
    Reconciliation audit trail.

    One immutable row per decision taken for an order (transition, no-op,
    stale approval, manual submission).
    """

    __tablename__ = "payment_events"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    order_id: Mapped[str] = mapped_column(String(64), nullable=False)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    event_data: Mapped[Dict[str, Any]] = mapped_column(JSONType, nullable=False)
    # Set only for events that must be written at most once
    dedup_key: Mapped[str | None] = mapped_column(String(512), nullable=True, unique=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )

    __table_args__ = (
        Index("idx_payment_events_order_id", "order_id"),
        Index("idx_payment_events_type", "event_type"),
    )

    def __repr__(self) -> str:
        """String representation of PaymentEvent."""
        return f"<PaymentEvent(id={self.id}, order_id={self.order_id}, type={self.event_type})>"


class OutboxEvent(Base):
    """
    Transactional outbox events table.

    Written in the same transaction as the order change they describe and
    published later by the outbox worker.
    """

    __tablename__ = "outbox_events"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    aggregate_id: Mapped[str] = mapped_column(String(64), nullable=False)
    aggregate_type: Mapped[str] = mapped_column(String(100), nullable=False)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    payload: Mapped[Dict[str, Any]] = mapped_column(JSONType, nullable=False)
    published: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, index=True)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    published_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index(
            "idx_outbox_unpublished",
            "published",
            "created_at",
            postgresql_where=text("NOT published"),
        ),
        Index("idx_outbox_aggregate", "aggregate_id", "aggregate_type"),
    )

    def __repr__(self) -> str:
        """String representation of OutboxEvent."""
        return (
            f"<OutboxEvent(id={self.id}, type={self.event_type}, "
            f"published={self.published})>"
        )


class UserSubscription(Base):
    """Recurring plan subscription; expired by the scheduled subscription job."""

    __tablename__ = "user_subscriptions"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=new_id)
    buyer_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    plan_name: Mapped[str] = mapped_column(String(100), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="active")
    current_period_end: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('active', 'expired', 'cancelled')",
            name="valid_subscription_status",
        ),
        Index("idx_subscriptions_status_period", "status", "current_period_end"),
    )

    def __repr__(self) -> str:
        """String representation of UserSubscription."""
        return (
            f"<UserSubscription(id={self.id}, buyer={self.buyer_id}, "
            f"plan={self.plan_name}, status={self.status})>"
        )
