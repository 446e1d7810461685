"""
Reconciliation engine: the order payment state machine.

Transition table (current status x canonical outcome):

    pending   + approved            -> completed  (record payment, grant enrollments)
    pending   + rejected/cancelled  -> failed     (record rejection reason)
    pending   + pending             -> pending    (record provider reference if new)
    completed + any                 -> completed  (no-op; approvals re-run the idempotent granter)
    failed    + approved            -> failed     (stale approval: audited, staff alerted)
    failed    + other               -> failed     (no-op)

Every path is safe to replay: providers deliver at least once and in any order.
Domain outcomes come back as :class:`ReconciliationResult`; persistence
failures are raised as :class:`InfrastructureError` so callers can ask the
provider to redeliver.
"""
import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional

import structlog

from course_payments.config import get_settings
from course_payments.core.enrollment import EnrollmentGranter, GrantReport
from course_payments.core.order_store import (
    AuditEvent,
    InfrastructureError,
    OrderNotFoundError,
    OrderStore,
)
from course_payments.core.outbox import (
    ENROLLMENT_RETRY,
    ORDER_COMPLETED,
    ORDER_FAILED,
    ORDER_LATE_APPROVAL,
    OutboxMessage,
)
from course_payments.core.outcomes import (
    CanonicalOutcome,
    Outcome,
    PaymentStatus,
    RejectionReason,
)
from course_payments.database.models import Order
from course_payments.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

__all__ = [
    "InfrastructureError",
    "ReconciliationEngine",
    "ReconciliationResult",
    "ResultKind",
]


class ResultKind(str, Enum):
    """What the engine did with an outcome."""

    TRANSITIONED = "transitioned"
    UNCHANGED = "unchanged"
    ORPHANED = "orphaned"
    STALE_APPROVAL = "stale_approval"


@dataclass(frozen=True)
class ReconciliationResult:
    """Terminal domain result of reconciling one canonical outcome."""

    kind: ResultKind
    order_id: Optional[str] = None
    status: Optional[PaymentStatus] = None
    previous_status: Optional[PaymentStatus] = None
    rejection_reason: Optional[str] = None
    enrollment: Optional[GrantReport] = None

    def as_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "order_id": self.order_id,
            "status": self.status.value if self.status else None,
            "previous_status": self.previous_status.value if self.previous_status else None,
            "rejection_reason": self.rejection_reason,
        }


_DEFAULT_REJECTIONS = {
    Outcome.REJECTED: RejectionReason.GATEWAY_REJECTED.value,
    Outcome.CANCELLED: RejectionReason.GATEWAY_CANCELLED.value,
}


class ReconciliationEngine:
    """Applies canonical outcomes to orders, idempotently."""

    def __init__(
        self,
        store: OrderStore,
        granter: EnrollmentGranter,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    ):
        """
        Initialize reconciliation engine.

        Args:
            store: Order store
            granter: Enrollment granter invoked on completion
            sleep: Sleep used between order lookup attempts
        """
        self.settings = get_settings()
        self.store = store
        self.granter = granter
        self._sleep = sleep or asyncio.sleep

    @staticmethod
    def next_status(current: PaymentStatus, outcome: Outcome) -> PaymentStatus:
        """Resulting status for ``outcome`` applied to an order in ``current``."""
        if current.is_terminal:
            return current
        if outcome is Outcome.APPROVED:
            return PaymentStatus.COMPLETED
        if outcome in (Outcome.REJECTED, Outcome.CANCELLED):
            return PaymentStatus.FAILED
        return PaymentStatus.PENDING

    async def reconcile(self, outcome: CanonicalOutcome) -> ReconciliationResult:
        """
        Resolve the referenced order and apply ``outcome`` to it.

        Raises:
            InfrastructureError: If the store could not be read or written
        """
        log = logger.bind(**outcome.as_log_fields())

        try:
            order = await self.store.find_order_with_retry(
                outcome.order_reference, sleep=self._sleep
            )
        except OrderNotFoundError:
            log.warning("reconciliation_order_not_found")
            metrics.record_order_transition("unknown", "unknown", ResultKind.ORPHANED.value)
            return ReconciliationResult(kind=ResultKind.ORPHANED)

        return await self._decide(order, outcome)

    async def _decide(self, order: Order, outcome: CanonicalOutcome) -> ReconciliationResult:
        current = PaymentStatus(order.payment_status)

        if current is PaymentStatus.FAILED and outcome.outcome is Outcome.APPROVED:
            return await self._handle_late_approval(order, outcome)

        if current.is_terminal:
            return await self._handle_duplicate(order, outcome)

        target = self.next_status(current, outcome.outcome)
        if target is PaymentStatus.COMPLETED:
            return await self._complete(order, outcome)
        if target is PaymentStatus.FAILED:
            return await self._fail(order, outcome)
        return await self._keep_pending(order, outcome)

    async def _reload_and_decide(
        self, order: Order, outcome: CanonicalOutcome
    ) -> ReconciliationResult:
        """A concurrent delivery won the conditional update; decide against its result."""
        fresh = await self.store.get_order(order.id)
        if fresh is None or fresh.payment_status == PaymentStatus.PENDING.value:
            raise InfrastructureError(f"Order {order.id} changed concurrently but is not terminal")
        logger.info(
            "reconciliation_lost_race",
            order_id=order.id,
            status=fresh.payment_status,
            outcome=outcome.outcome.value,
        )
        return await self._decide(fresh, outcome)

    async def _complete(self, order: Order, outcome: CanonicalOutcome) -> ReconciliationResult:
        payload = {
            "order_id": order.id,
            "order_number": order.order_number,
            "buyer_id": order.buyer_id,
            "item_ids": order.item_ids,
            "amount_cents": order.total_cents,
            "currency": order.currency,
            "payment_method": order.payment_method,
        }
        applied = await self.store.apply_status_transition(
            order.id,
            PaymentStatus.COMPLETED,
            provider_payment_id=outcome.provider_payment_id,
            audit=AuditEvent(
                "status_changed",
                {
                    "from": PaymentStatus.PENDING.value,
                    "to": PaymentStatus.COMPLETED.value,
                    **outcome.as_log_fields(),
                },
            ),
            payment_record={
                "provider": outcome.provider,
                "provider_payment_id": outcome.provider_payment_id,
                "amount_cents": order.total_cents,
                "currency": order.currency,
                "payment_method": order.payment_method,
                "raw_status": outcome.raw_provider_status,
            },
            outbox_messages=[OutboxMessage(ORDER_COMPLETED, payload)],
        )
        if not applied:
            return await self._reload_and_decide(order, outcome)

        metrics.record_order_transition(
            PaymentStatus.PENDING.value, PaymentStatus.COMPLETED.value, ResultKind.TRANSITIONED.value
        )
        logger.info(
            "order_completed",
            order_id=order.id,
            order_number=order.order_number,
            provider_payment_id=outcome.provider_payment_id,
        )

        report = await self._grant(order)
        return ReconciliationResult(
            kind=ResultKind.TRANSITIONED,
            order_id=order.id,
            status=PaymentStatus.COMPLETED,
            previous_status=PaymentStatus.PENDING,
            enrollment=report,
        )

    async def _fail(self, order: Order, outcome: CanonicalOutcome) -> ReconciliationResult:
        reason = outcome.rejection_reason or _DEFAULT_REJECTIONS[outcome.outcome]
        applied = await self.store.apply_status_transition(
            order.id,
            PaymentStatus.FAILED,
            provider_payment_id=outcome.provider_payment_id,
            rejection_reason=reason,
            audit=AuditEvent(
                "status_changed",
                {
                    "from": PaymentStatus.PENDING.value,
                    "to": PaymentStatus.FAILED.value,
                    "rejection_reason": reason,
                    **outcome.as_log_fields(),
                },
            ),
            outbox_messages=[
                OutboxMessage(
                    ORDER_FAILED,
                    {
                        "order_id": order.id,
                        "order_number": order.order_number,
                        "buyer_id": order.buyer_id,
                        "rejection_reason": reason,
                    },
                )
            ],
        )
        if not applied:
            return await self._reload_and_decide(order, outcome)

        metrics.record_order_transition(
            PaymentStatus.PENDING.value, PaymentStatus.FAILED.value, ResultKind.TRANSITIONED.value
        )
        logger.info(
            "order_failed",
            order_id=order.id,
            order_number=order.order_number,
            rejection_reason=reason,
        )
        return ReconciliationResult(
            kind=ResultKind.TRANSITIONED,
            order_id=order.id,
            status=PaymentStatus.FAILED,
            previous_status=PaymentStatus.PENDING,
            rejection_reason=reason,
        )

    async def _keep_pending(self, order: Order, outcome: CanonicalOutcome) -> ReconciliationResult:
        updated = await self.store.apply_status_transition(
            order.id,
            PaymentStatus.PENDING,
            provider_payment_id=outcome.provider_payment_id,
            audit=AuditEvent("provider_reference_recorded", outcome.as_log_fields()),
        )
        if not updated:
            fresh = await self.store.get_order(order.id)
            if fresh is not None and fresh.payment_status != PaymentStatus.PENDING.value:
                return await self._decide(fresh, outcome)

        metrics.record_order_transition(
            PaymentStatus.PENDING.value, PaymentStatus.PENDING.value, ResultKind.UNCHANGED.value
        )
        logger.info(
            "order_still_pending",
            order_id=order.id,
            provider_reference_updated=updated,
            raw_provider_status=outcome.raw_provider_status,
        )
        return ReconciliationResult(
            kind=ResultKind.UNCHANGED,
            order_id=order.id,
            status=PaymentStatus.PENDING,
            previous_status=PaymentStatus.PENDING,
        )

    async def _handle_duplicate(
        self, order: Order, outcome: CanonicalOutcome
    ) -> ReconciliationResult:
        current = PaymentStatus(order.payment_status)
        report = None
        if current is PaymentStatus.COMPLETED and outcome.outcome is Outcome.APPROVED:
            # Replays converge enrollments left incomplete by an earlier partial failure
            report = await self._grant(order)

        metrics.record_order_transition(current.value, current.value, ResultKind.UNCHANGED.value)
        logger.info(
            "reconciliation_duplicate_ignored",
            order_id=order.id,
            status=current.value,
            outcome=outcome.outcome.value,
        )
        return ReconciliationResult(
            kind=ResultKind.UNCHANGED,
            order_id=order.id,
            status=current,
            previous_status=current,
            rejection_reason=order.rejection_reason,
            enrollment=report,
        )

    async def _handle_late_approval(
        self, order: Order, outcome: CanonicalOutcome
    ) -> ReconciliationResult:
        """
        Approval for an order already marked failed.

        The order stays failed. The first report per provider payment id is
        audited and raises a staff alert so the payment can be refunded or
        the order reopened by hand.
        """
        details = {
            "order_id": order.id,
            "order_number": order.order_number,
            "buyer_id": order.buyer_id,
            "rejection_reason": order.rejection_reason,
            "amount_cents": order.total_cents,
            "currency": order.currency,
            **outcome.as_log_fields(),
        }
        first_report = await self.store.record_event(
            order.id,
            AuditEvent("late_approval", details),
            [OutboxMessage(ORDER_LATE_APPROVAL, details)],
            dedup_key=f"late_approval:{order.id}:{outcome.provider_payment_id or ''}",
        )
        already_reported = not first_report

        metrics.record_order_transition(
            PaymentStatus.FAILED.value, PaymentStatus.FAILED.value, ResultKind.STALE_APPROVAL.value
        )
        logger.warning(
            "late_approval_for_failed_order",
            order_id=order.id,
            provider_payment_id=outcome.provider_payment_id,
            rejection_reason=order.rejection_reason,
            already_reported=already_reported,
        )
        return ReconciliationResult(
            kind=ResultKind.STALE_APPROVAL,
            order_id=order.id,
            status=PaymentStatus.FAILED,
            previous_status=PaymentStatus.FAILED,
            rejection_reason=order.rejection_reason,
        )

    async def _grant(self, order: Order) -> GrantReport:
        report = await self.granter.grant_enrollments(order)
        if report.complete:
            return report

        logger.warning(
            "enrollment_partial_failure",
            order_id=order.id,
            failed_items=report.failed,
        )
        try:
            await self.store.record_event(
                order.id,
                AuditEvent("enrollment_partial_failure", report.as_dict()),
                [
                    OutboxMessage(
                        ENROLLMENT_RETRY,
                        {
                            "order_id": order.id,
                            "buyer_id": order.buyer_id,
                            "item_ids": report.failed,
                        },
                    )
                ],
            )
        except InfrastructureError as e:
            # The order is already completed; a replayed approval re-runs the granter
            logger.error(
                "enrollment_retry_enqueue_failed",
                order_id=order.id,
                error=str(e),
            )
        return report

    async def expire_pending_orders(self, now: Optional[datetime] = None) -> int:
        """
        Fail manual-channel orders whose receipt was never validated in time.

        Returns:
            int: Number of orders moved to failed
        """
        now = now or datetime.now(timezone.utc)
        cutoff = now - timedelta(hours=self.settings.pending_order_ttl_hours)
        orders = await self.store.list_expired_pending(
            cutoff, self.settings.get_manual_payment_methods()
        )

        expired = 0
        for order in orders:
            result = await self._decide(
                order,
                CanonicalOutcome(
                    order_reference=order.id,
                    outcome=Outcome.REJECTED,
                    provider="expiry",
                    raw_provider_status="expired",
                    rejection_reason=RejectionReason.VALIDATION_EXPIRED.value,
                ),
            )
            if result.kind is ResultKind.TRANSITIONED:
                expired += 1

        logger.info(
            "pending_orders_expired",
            cutoff=cutoff.isoformat(),
            candidates=len(orders),
            expired=expired,
        )
        return expired
