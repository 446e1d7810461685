"""
Manual payment confirmation channel.

Buyers paying by wallet transfer submit the transaction id they were given.
The submission only records the reference; the order stays pending until
a validation verdict arrives from the automated receipt matcher or from
staff. Submissions for orders not paid by wallet transfer are refused
without touching the order. Problems that can be detected on submission
(the other wallet was used, or the transaction id already backs another
order) reject the order at once.
"""
from dataclasses import dataclass
from typing import Any, Dict, Optional

import structlog

from course_payments.config import get_settings
from course_payments.core.order_store import OrderNotFoundError, OrderStore
from course_payments.core.outcomes import (
    CanonicalOutcome,
    Outcome,
    PaymentStatus,
    RejectionReason,
    normalize_rejection_code,
)
from course_payments.core.reconciliation import ReconciliationEngine, ReconciliationResult
from course_payments.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

INVALID_TRANSACTION_ID = "invalid_transaction_id"


class ManualConfirmationError(Exception):
    """Raised for a malformed validation verdict."""

    pass


@dataclass(frozen=True)
class ConfirmationResult:
    """Response to a buyer's manual confirmation."""

    success: bool
    error: Optional[str] = None
    status: Optional[str] = None

    def as_dict(self) -> Dict[str, Any]:
        return {"success": self.success, "error": self.error, "status": self.status}


class ManualConfirmationAdapter:
    """Normalizes buyer submissions and validation verdicts into canonical outcomes."""

    def __init__(self, store: OrderStore, engine: ReconciliationEngine):
        self.settings = get_settings()
        self.store = store
        self.engine = engine

    @staticmethod
    def _result_from(result: ReconciliationResult) -> ConfirmationResult:
        if result.status is PaymentStatus.FAILED:
            return ConfirmationResult(
                success=False, error=result.rejection_reason, status=result.status.value
            )
        return ConfirmationResult(
            success=True, status=result.status.value if result.status else None
        )

    async def submit(
        self, order_id: str, payment_method: str, transaction_id: str
    ) -> ConfirmationResult:
        """
        Record a buyer-supplied transaction id against a pending order.

        Raises:
            OrderNotFoundError: If the order does not exist
        """
        txn = (transaction_id or "").strip()
        if not txn or len(txn) > self.settings.transaction_id_max_length:
            metrics.record_manual_submission("invalid")
            return ConfirmationResult(success=False, error=INVALID_TRANSACTION_ID)

        order = await self.store.get_order(order_id)
        if order is None:
            raise OrderNotFoundError(order_id)

        log = logger.bind(order_id=order.id, payment_method=payment_method)
        status = PaymentStatus(order.payment_status)
        if status.is_terminal:
            log.info("manual_confirmation_for_terminal_order", status=status.value)
            return ConfirmationResult(
                success=status is PaymentStatus.COMPLETED,
                error=order.rejection_reason,
                status=status.value,
            )

        method = (payment_method or "").strip().lower()
        manual_methods = self.settings.get_manual_payment_methods()
        if order.payment_method not in manual_methods or method not in manual_methods:
            log.warning("manual_confirmation_refused", order_method=order.payment_method)
            metrics.record_manual_submission("refused")
            return ConfirmationResult(
                success=False, error=RejectionReason.WRONG_PAYMENT_METHOD.value
            )

        rejection: Optional[RejectionReason] = None
        if method != order.payment_method:
            rejection = RejectionReason.WRONG_PAYMENT_METHOD
        elif not await self.store.claim_receipt(order.id, method, txn):
            rejection = RejectionReason.RECEIPT_ALREADY_USED

        if rejection is not None:
            log.warning("manual_confirmation_rejected", rejection_reason=rejection.value)
            metrics.record_manual_submission("rejected")
            result = await self.engine.reconcile(
                CanonicalOutcome(
                    order_reference=order.id,
                    outcome=Outcome.REJECTED,
                    provider=method or "manual",
                    raw_provider_status="submitted",
                    rejection_reason=rejection.value,
                )
            )
            return self._result_from(result)

        result = await self.engine.reconcile(
            CanonicalOutcome(
                order_reference=order.id,
                outcome=Outcome.PENDING,
                provider_payment_id=txn,
                provider=method,
                raw_provider_status="submitted",
            )
        )
        metrics.record_manual_submission("accepted")
        log.info("manual_confirmation_recorded", status=result.status.value if result.status else None)
        return self._result_from(result)

    async def apply_verdict(
        self,
        order_id: str,
        status: str,
        rejection_reason: Optional[str] = None,
        reported_amount_cents: Optional[int] = None,
        transaction_id: Optional[str] = None,
    ) -> ReconciliationResult:
        """
        Apply a receipt validation verdict from the matcher or staff.

        An approval whose reported amount differs from the order total is
        downgraded to a ``receipt_mismatch`` rejection.

        Raises:
            OrderNotFoundError: If the order does not exist
            ManualConfirmationError: If the verdict status is not approved/rejected
        """
        verdict = (status or "").strip().lower()
        if verdict not in (Outcome.APPROVED.value, Outcome.REJECTED.value):
            raise ManualConfirmationError(f"Unknown verdict status: {status}")

        order = await self.store.get_order(order_id)
        if order is None:
            raise OrderNotFoundError(order_id)

        outcome = Outcome(verdict)
        reason: Optional[str] = None
        if outcome is Outcome.APPROVED:
            if reported_amount_cents is not None and reported_amount_cents != order.total_cents:
                logger.warning(
                    "manual_verdict_amount_mismatch",
                    order_id=order.id,
                    expected_cents=order.total_cents,
                    reported_cents=reported_amount_cents,
                )
                outcome = Outcome.REJECTED
                reason = RejectionReason.RECEIPT_MISMATCH.value
        else:
            reason = (
                normalize_rejection_code(rejection_reason)
                or RejectionReason.VALIDATION_ERROR.value
            )

        metrics.record_manual_verdict(outcome.value)
        logger.info(
            "manual_verdict_received",
            order_id=order.id,
            verdict=verdict,
            outcome=outcome.value,
            rejection_reason=reason,
        )
        return await self.engine.reconcile(
            CanonicalOutcome(
                order_reference=order.id,
                outcome=outcome,
                provider_payment_id=(transaction_id or "").strip() or order.provider_payment_id,
                provider=order.payment_method,
                raw_provider_status=f"verdict:{verdict}",
                rejection_reason=reason,
            )
        )
