"""
Order store: the single source of truth for order payment status.

Every status write goes through :meth:`OrderStore.apply_status_transition`,
a single conditional UPDATE that only matches rows still in ``pending``.
Two concurrent deliveries for the same order therefore race inside the
database, and exactly one of them wins.
"""
import asyncio
import re
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Sequence

import structlog
from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_fixed,
)

from course_payments.config import get_settings
from course_payments.core.notifier import OrderChange, OrderChangeNotifier
from course_payments.core.outbox import OutboxMessage, write_outbox_event
from course_payments.core.outcomes import PaymentStatus
from course_payments.database.connection import insert_for
from course_payments.database.models import (
    Enrollment,
    ManualReceipt,
    Order,
    PaymentEvent,
    PaymentRecord,
    new_id,
    utcnow,
)
from course_payments.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

SleepFunc = Callable[[float], Awaitable[None]]

_CURRENCY_RE = re.compile(r"^[A-Z]{3}$")


class OrderValidationError(Exception):
    """Raised when an order cannot be created from the given input."""

    pass


class OrderNotFoundError(Exception):
    """Raised when no order matches a reference."""

    def __init__(self, reference: str):
        super().__init__(f"No order matches reference {reference!r}")
        self.reference = reference


class InfrastructureError(Exception):
    """Raised when persistence fails; the caller should retry later."""

    pass


@dataclass(frozen=True)
class LineItem:
    """Purchased item snapshot embedded in an order."""

    item_id: str
    unit_price_cents: int

    def as_dict(self) -> Dict[str, Any]:
        return {"item_id": self.item_id, "unit_price_cents": self.unit_price_cents}


@dataclass(frozen=True)
class AuditEvent:
    """Payment event audit row written with a transition."""

    event_type: str
    data: Dict[str, Any]


class OrderStore:
    """
    Durable order storage with idempotent, race-free status transitions.

    Lookups accept any of the three order references (id, order number,
    provider payment id). Terminal orders are never modified.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        notifier: Optional[OrderChangeNotifier] = None,
    ):
        """
        Initialize order store.

        Args:
            session_factory: Session factory; each operation uses its own session
            notifier: Optional change notifier told about committed transitions
        """
        self.settings = get_settings()
        self.session_factory = session_factory
        self.notifier = notifier

    @staticmethod
    def _validate_order_request(
        buyer_id: str,
        items: Sequence[LineItem],
        payment_method: str,
        amount_cents: int,
        currency: str,
    ) -> None:
        """
        Validate order creation input.

        Raises:
            OrderValidationError: If any field is invalid
        """
        if not buyer_id:
            raise OrderValidationError("Buyer id is required")
        if not items:
            raise OrderValidationError("Order must contain at least one item")
        if amount_cents <= 0:
            raise OrderValidationError("Order amount must be positive")
        if not _CURRENCY_RE.match(currency):
            raise OrderValidationError(f"Invalid currency code: {currency}")
        if not payment_method:
            raise OrderValidationError("Payment method is required")

        seen = set()
        for item in items:
            if not item.item_id:
                raise OrderValidationError("Line item id is required")
            if item.unit_price_cents < 0:
                raise OrderValidationError(f"Negative price for item {item.item_id}")
            if item.item_id in seen:
                raise OrderValidationError(f"Duplicate line item {item.item_id}")
            seen.add(item.item_id)

    async def create_pending_order(
        self,
        buyer_id: str,
        items: Sequence[LineItem],
        payment_method: str,
        amount_cents: int,
        currency: str,
        order_id: Optional[str] = None,
    ) -> Order:
        """
        Create an order in ``pending`` with the next sequential order number.

        Args:
            buyer_id: Buyer identifier
            items: Purchased line items
            payment_method: Requested payment method
            amount_cents: Order total in minor units
            currency: ISO 4217 currency code
            order_id: Optional explicit order id (generated when omitted)

        Returns:
            Order: The persisted pending order

        Raises:
            OrderValidationError: If items is empty, amount is not positive, etc.
            InfrastructureError: If the order could not be persisted
        """
        currency = currency.upper()
        payment_method = payment_method.lower()
        self._validate_order_request(buyer_id, items, payment_method, amount_cents, currency)
        order_id = order_id or new_id()

        # Order numbers are max+1; a concurrent checkout taking the same number retries
        retrying = AsyncRetrying(
            stop=stop_after_attempt(5),
            retry=retry_if_exception_type(IntegrityError),
            reraise=True,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    order = await self._insert_order(
                        order_id, buyer_id, items, payment_method, amount_cents, currency
                    )
        except SQLAlchemyError as e:
            logger.error("order_create_failed", buyer_id=buyer_id, error=str(e))
            raise InfrastructureError(f"Failed to create order: {e}") from e

        metrics.record_order_created(payment_method, currency)
        logger.info(
            "order_created",
            order_id=order.id,
            order_number=order.order_number,
            buyer_id=buyer_id,
            amount_cents=amount_cents,
            currency=currency,
            payment_method=payment_method,
        )
        return order

    async def _insert_order(
        self,
        order_id: str,
        buyer_id: str,
        items: Sequence[LineItem],
        payment_method: str,
        amount_cents: int,
        currency: str,
    ) -> Order:
        async with self.session_factory() as db:
            stmt = select(func.coalesce(func.max(Order.order_sequence), 0))
            sequence = (await db.execute(stmt)).scalar_one() + 1
            now = utcnow()
            order = Order(
                id=order_id,
                order_number=f"{self.settings.order_number_prefix}-{sequence:06d}",
                order_sequence=sequence,
                buyer_id=buyer_id,
                items=[item.as_dict() for item in items],
                total_cents=amount_cents,
                currency=currency,
                payment_method=payment_method,
                payment_status=PaymentStatus.PENDING.value,
                created_at=now,
                updated_at=now,
            )
            db.add(order)
            db.add(
                PaymentEvent(
                    order_id=order_id,
                    event_type="order_created",
                    event_data={"amount_cents": amount_cents, "currency": currency},
                )
            )
            await db.commit()
            return order

    async def get_order(self, order_id: str) -> Optional[Order]:
        """Fetch an order by id only."""
        async with self.session_factory() as db:
            return await db.get(Order, order_id)

    async def find_order(self, reference: str) -> Order:
        """
        Resolve an order by id, then order number, then provider payment id.

        Raises:
            OrderNotFoundError: If no order matches
            InfrastructureError: If the lookup itself failed
        """
        try:
            async with self.session_factory() as db:
                for column in (Order.id, Order.order_number, Order.provider_payment_id):
                    stmt = (
                        select(Order)
                        .where(column == reference)
                        .order_by(Order.created_at.desc())
                        .limit(1)
                    )
                    order = (await db.execute(stmt)).scalars().first()
                    if order is not None:
                        return order
        except SQLAlchemyError as e:
            logger.error("order_lookup_failed", reference=reference, error=str(e))
            raise InfrastructureError(f"Order lookup failed: {e}") from e

        raise OrderNotFoundError(reference)

    async def find_order_with_retry(
        self,
        reference: str,
        delay_seconds: Optional[float] = None,
        sleep: Optional[SleepFunc] = None,
    ) -> Order:
        """
        Resolve an order, retrying once after a short fixed delay on a miss.

        Covers events that arrive before the order-creation write is visible.

        Raises:
            OrderNotFoundError: If the order is still missing after the retry
        """
        if delay_seconds is None:
            delay_seconds = self.settings.order_lookup_retry_delay_seconds

        def _log_retry(retry_state: RetryCallState) -> None:
            metrics.record_lookup_retry("retried")
            logger.info(
                "order_lookup_miss_retrying",
                reference=reference,
                delay_seconds=delay_seconds,
            )

        retrying = AsyncRetrying(
            stop=stop_after_attempt(2),
            wait=wait_fixed(delay_seconds),
            retry=retry_if_exception_type(OrderNotFoundError),
            before_sleep=_log_retry,
            sleep=sleep or asyncio.sleep,
            reraise=True,
        )

        attempts = 0
        try:
            async for attempt in retrying:
                with attempt:
                    attempts += 1
                    order = await self.find_order(reference)
        except OrderNotFoundError:
            metrics.record_lookup_retry("orphaned")
            raise

        if attempts > 1:
            metrics.record_lookup_retry("recovered")
            logger.info("order_lookup_recovered_after_retry", reference=reference)
        return order

    async def claim_receipt(self, order_id: str, payment_method: str, transaction_id: str) -> bool:
        """
        Claim a wallet transaction id for ``order_id``.

        Returns:
            bool: True if the id is now (or already was) held by this order,
            False if another order holds it

        Raises:
            InfrastructureError: If the claim could not be written
        """
        try:
            async with self.session_factory() as db:
                stmt = (
                    insert_for(db, ManualReceipt)
                    .values(
                        transaction_id=transaction_id,
                        order_id=order_id,
                        payment_method=payment_method,
                        claimed_at=utcnow(),
                    )
                    .on_conflict_do_nothing(index_elements=["transaction_id"])
                )
                await db.execute(stmt)
                await db.commit()
                owner = await db.scalar(
                    select(ManualReceipt.order_id).where(
                        ManualReceipt.transaction_id == transaction_id
                    )
                )
        except SQLAlchemyError as e:
            logger.error("receipt_claim_failed", order_id=order_id, error=str(e))
            raise InfrastructureError(f"Failed to claim receipt for {order_id}: {e}") from e

        if owner != order_id:
            logger.warning(
                "receipt_held_by_other_order", order_id=order_id, holder_order_id=owner
            )
            return False
        return True

    async def owned_items(self, buyer_id: str, item_ids: Iterable[str]) -> List[str]:
        """Return the subset of ``item_ids`` the buyer is already enrolled in."""
        item_ids = list(item_ids)
        if not item_ids:
            return []
        async with self.session_factory() as db:
            stmt = select(Enrollment.item_id).where(
                Enrollment.buyer_id == buyer_id, Enrollment.item_id.in_(item_ids)
            )
            return sorted((await db.execute(stmt)).scalars().all())

    async def list_expired_pending(
        self, cutoff: datetime, payment_methods: Sequence[str], limit: int = 500
    ) -> List[Order]:
        """Pending orders created before ``cutoff`` using one of ``payment_methods``."""
        async with self.session_factory() as db:
            stmt = (
                select(Order)
                .where(
                    Order.payment_status == PaymentStatus.PENDING.value,
                    Order.created_at < cutoff,
                    Order.payment_method.in_(list(payment_methods)),
                )
                .order_by(Order.created_at)
                .limit(limit)
            )
            return list((await db.execute(stmt)).scalars().all())

    async def apply_status_transition(
        self,
        order_id: str,
        new_status: PaymentStatus,
        provider_payment_id: Optional[str] = None,
        rejection_reason: Optional[str] = None,
        *,
        audit: Optional[AuditEvent] = None,
        payment_record: Optional[Dict[str, Any]] = None,
        outbox_messages: Sequence[OutboxMessage] = (),
    ) -> bool:
        """
        Atomically move a pending order to ``new_status``.

        A transition to ``pending`` only records a newly known provider
        reference. Terminal orders are left untouched and the call is a no-op.
        The audit row, payment record upsert and outbox messages commit in
        the same transaction as the status change, and only if it applied.

        Returns:
            bool: True if the row changed, False for a no-op

        Raises:
            InfrastructureError: If the write failed
        """
        values: Dict[str, Any] = {"updated_at": utcnow()}
        stmt = update(Order).where(
            Order.id == order_id,
            Order.payment_status == PaymentStatus.PENDING.value,
        )

        if new_status is PaymentStatus.PENDING:
            if not provider_payment_id:
                return False
            stmt = stmt.where(
                or_(
                    Order.provider_payment_id.is_(None),
                    Order.provider_payment_id != provider_payment_id,
                )
            )
            values["provider_payment_id"] = provider_payment_id
        else:
            values["payment_status"] = new_status.value
            if provider_payment_id:
                values["provider_payment_id"] = provider_payment_id
            if rejection_reason:
                values["rejection_reason"] = rejection_reason

        stmt = stmt.values(**values).execution_options(synchronize_session=False)

        try:
            async with self.session_factory() as db:
                result = await db.execute(stmt)
                applied = result.rowcount == 1
                if applied:
                    if audit is not None:
                        db.add(
                            PaymentEvent(
                                order_id=order_id,
                                event_type=audit.event_type,
                                event_data=audit.data,
                            )
                        )
                    if payment_record is not None:
                        await self._upsert_payment_record(db, order_id, payment_record)
                    for message in outbox_messages:
                        write_outbox_event(db, order_id, message)
                await db.commit()
        except SQLAlchemyError as e:
            logger.error(
                "order_transition_write_failed",
                order_id=order_id,
                new_status=new_status.value,
                error=str(e),
            )
            raise InfrastructureError(f"Failed to update order {order_id}: {e}") from e

        if applied and self.notifier is not None:
            self.notifier.publish(
                OrderChange(
                    order_id=order_id,
                    status=new_status.value,
                    rejection_reason=rejection_reason,
                )
            )
        return applied

    async def _upsert_payment_record(
        self, db: AsyncSession, order_id: str, record: Dict[str, Any]
    ) -> None:
        values = dict(record, order_id=order_id, recorded_at=utcnow())
        stmt = insert_for(db, PaymentRecord).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=["order_id"],
            set_={
                key: stmt.excluded[key]
                for key in values
                if key != "order_id"
            },
        )
        await db.execute(stmt)

    async def record_event(
        self,
        order_id: str,
        audit: AuditEvent,
        outbox_messages: Sequence[OutboxMessage] = (),
        dedup_key: Optional[str] = None,
    ) -> bool:
        """
        Write an audit row (and optional outbox messages) without touching the order.

        With ``dedup_key`` the write happens at most once per key; later calls
        with the same key write nothing.

        Returns:
            bool: False if an event with ``dedup_key`` already existed
        """
        try:
            async with self.session_factory() as db:
                db.add(
                    PaymentEvent(
                        order_id=order_id,
                        event_type=audit.event_type,
                        event_data=audit.data,
                        dedup_key=dedup_key,
                    )
                )
                for message in outbox_messages:
                    write_outbox_event(db, order_id, message)
                await db.commit()
        except IntegrityError as e:
            if dedup_key is None:
                logger.error("order_event_write_failed", order_id=order_id, error=str(e))
                raise InfrastructureError(f"Failed to record event for {order_id}: {e}") from e
            logger.info("order_event_already_recorded", order_id=order_id, dedup_key=dedup_key)
            return False
        except SQLAlchemyError as e:
            logger.error("order_event_write_failed", order_id=order_id, error=str(e))
            raise InfrastructureError(f"Failed to record event for {order_id}: {e}") from e
        return True

    async def get_payment_record(self, order_id: str) -> Optional[PaymentRecord]:
        async with self.session_factory() as db:
            stmt = select(PaymentRecord).where(PaymentRecord.order_id == order_id)
            return (await db.execute(stmt)).scalars().first()

    async def list_events(self, order_id: str) -> List[PaymentEvent]:
        """Audit trail for an order, oldest first."""
        async with self.session_factory() as db:
            stmt = (
                select(PaymentEvent)
                .where(PaymentEvent.order_id == order_id)
                .order_by(PaymentEvent.id)
            )
            return list((await db.execute(stmt)).scalars().all())
