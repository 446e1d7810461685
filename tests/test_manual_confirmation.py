"""
Tests for the manual (wallet transfer) confirmation channel.
"""
from typing import Any

import pytest
from sqlalchemy import func, select

from course_payments.core.order_store import OrderNotFoundError, OrderStore
from course_payments.core.outcomes import CanonicalOutcome, Outcome
from course_payments.core.reconciliation import ReconciliationEngine, ResultKind
from course_payments.database.models import Enrollment
from course_payments.integrations.manual_confirmation import (
    INVALID_TRANSACTION_ID,
    ManualConfirmationAdapter,
    ManualConfirmationError,
)


@pytest.fixture
def adapter(store: OrderStore, engine: ReconciliationEngine) -> ManualConfirmationAdapter:
    return ManualConfirmationAdapter(store, engine)


async def enrollment_count(session_factory: Any) -> int:
    async with session_factory() as db:
        return (await db.execute(select(func.count()).select_from(Enrollment))).scalar_one()


class TestSubmit:
    """Test suite for buyer submissions."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_submission_records_reference_and_stays_pending(
        self, adapter: ManualConfirmationAdapter, make_order: Any, store: OrderStore
    ) -> None:
        order = await make_order(payment_method="yape", order_id="ord_2")

        result = await adapter.submit(order.id, "yape", " ABC123 ")

        assert result.success is True
        assert result.status == "pending"
        fresh = await store.get_order(order.id)
        assert fresh.payment_status == "pending"
        assert fresh.provider_payment_id == "ABC123"

    @pytest.mark.integration
    @pytest.mark.asyncio
    @pytest.mark.parametrize("transaction_id", ["", "   ", "X" * 200])
    async def test_invalid_transaction_id_rejected_without_touching_order(
        self,
        adapter: ManualConfirmationAdapter,
        make_order: Any,
        store: OrderStore,
        transaction_id: str,
    ) -> None:
        order = await make_order(payment_method="yape")

        result = await adapter.submit(order.id, "yape", transaction_id)

        assert result.success is False
        assert result.error == INVALID_TRANSACTION_ID
        assert (await store.get_order(order.id)).payment_status == "pending"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_unknown_order_raises(self, adapter: ManualConfirmationAdapter) -> None:
        with pytest.raises(OrderNotFoundError):
            await adapter.submit("missing", "yape", "ABC123")

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_other_wallet_fails_order(
        self, adapter: ManualConfirmationAdapter, make_order: Any, store: OrderStore
    ) -> None:
        order = await make_order(payment_method="yape")

        result = await adapter.submit(order.id, "plin", "ABC123")

        assert result.success is False
        assert result.error == "wrong_payment_method"
        fresh = await store.get_order(order.id)
        assert fresh.payment_status == "failed"
        assert fresh.rejection_reason == "wrong_payment_method"

    @pytest.mark.integration
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "order_method,submitted_method",
        [("mercadopago", "yape"), ("mercadopago", "mercadopago"), ("yape", "mercadopago")],
    )
    async def test_non_wallet_submission_refused_without_touching_order(
        self,
        adapter: ManualConfirmationAdapter,
        make_order: Any,
        store: OrderStore,
        engine: ReconciliationEngine,
        order_method: str,
        submitted_method: str,
    ) -> None:
        order = await make_order(payment_method=order_method)

        result = await adapter.submit(order.id, submitted_method, "ANYTHING")

        assert result.success is False
        assert result.error == "wrong_payment_method"
        assert result.status is None
        assert (await store.get_order(order.id)).payment_status == "pending"

        approval = await engine.reconcile(
            CanonicalOutcome(order_reference=order.id, outcome=Outcome.APPROVED)
        )
        assert approval.kind is ResultKind.TRANSITIONED
        assert (await store.get_order(order.id)).payment_status == "completed"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_transaction_id_used_on_another_order(
        self, adapter: ManualConfirmationAdapter, make_order: Any, store: OrderStore
    ) -> None:
        first = await make_order(payment_method="yape")
        second = await make_order(payment_method="yape", buyer_id="buyer_2")
        await adapter.submit(first.id, "yape", "ABC123")

        result = await adapter.submit(second.id, "yape", "ABC123")

        assert result.success is False
        assert result.error == "receipt_already_used"
        assert (await store.get_order(first.id)).payment_status == "pending"
        assert (await store.get_order(second.id)).payment_status == "failed"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_resubmitting_same_reference_is_accepted(
        self, adapter: ManualConfirmationAdapter, make_order: Any
    ) -> None:
        order = await make_order(payment_method="plin")

        first = await adapter.submit(order.id, "plin", "TX-1")
        second = await adapter.submit(order.id, "plin", "TX-1")

        assert first.success is True
        assert second.success is True

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_submission_for_failed_order_reports_reason(
        self, adapter: ManualConfirmationAdapter, make_order: Any
    ) -> None:
        order = await make_order(payment_method="yape")
        await adapter.apply_verdict(order.id, "rejected", rejection_reason="receipt_unreadable")

        result = await adapter.submit(order.id, "yape", "ABC999")

        assert result.success is False
        assert result.status == "failed"
        assert result.error == "receipt_unreadable"


class TestApplyVerdict:
    """Test suite for validation verdicts."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_approval_with_matching_amount_completes(
        self,
        adapter: ManualConfirmationAdapter,
        make_order: Any,
        store: OrderStore,
        session_factory: Any,
    ) -> None:
        order = await make_order(payment_method="yape")
        await adapter.submit(order.id, "yape", "ABC123")

        result = await adapter.apply_verdict(order.id, "approved", reported_amount_cents=4900)

        assert result.kind is ResultKind.TRANSITIONED
        fresh = await store.get_order(order.id)
        assert fresh.payment_status == "completed"
        assert fresh.provider_payment_id == "ABC123"
        record = await store.get_payment_record(order.id)
        assert record.provider == "yape"
        assert await enrollment_count(session_factory) == 1

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_amount_mismatch_fails_without_enrollment(
        self,
        adapter: ManualConfirmationAdapter,
        make_order: Any,
        store: OrderStore,
        session_factory: Any,
    ) -> None:
        """Buyer paid 10.00 by wallet for a 49.00 order."""
        order = await make_order(payment_method="yape", order_id="ord_2")
        submitted = await adapter.submit(order.id, "yape", "ABC123")
        assert submitted.success is True

        result = await adapter.apply_verdict(order.id, "approved", reported_amount_cents=1000)

        assert result.kind is ResultKind.TRANSITIONED
        assert result.rejection_reason == "receipt_mismatch"
        fresh = await store.get_order(order.id)
        assert fresh.payment_status == "failed"
        assert fresh.rejection_reason == "receipt_mismatch"
        assert await enrollment_count(session_factory) == 0

    @pytest.mark.integration
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "raw_reason, expected",
        [
            ("comprobante_incorrecto", "receipt_mismatch"),
            ("RECEIPT_UNREADABLE", "receipt_unreadable"),
            (None, "validation_error"),
            ("bank_said_no", "bank_said_no"),
        ],
    )
    async def test_rejection_codes_are_normalized(
        self,
        adapter: ManualConfirmationAdapter,
        make_order: Any,
        store: OrderStore,
        raw_reason: Any,
        expected: str,
    ) -> None:
        order = await make_order(payment_method="plin")

        await adapter.apply_verdict(order.id, "rejected", rejection_reason=raw_reason)

        assert (await store.get_order(order.id)).rejection_reason == expected

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_unknown_verdict_rejected(
        self, adapter: ManualConfirmationAdapter, make_order: Any
    ) -> None:
        order = await make_order(payment_method="yape")

        with pytest.raises(ManualConfirmationError):
            await adapter.apply_verdict(order.id, "maybe")

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_verdict_for_unknown_order_raises(
        self, adapter: ManualConfirmationAdapter
    ) -> None:
        with pytest.raises(OrderNotFoundError):
            await adapter.apply_verdict("missing", "approved")

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_approval_after_rejection_is_stale(
        self, adapter: ManualConfirmationAdapter, make_order: Any, store: OrderStore
    ) -> None:
        order = await make_order(payment_method="yape")
        await adapter.apply_verdict(order.id, "rejected", rejection_reason="receipt_unreadable")

        result = await adapter.apply_verdict(order.id, "approved", transaction_id="ABC123")

        assert result.kind is ResultKind.STALE_APPROVAL
        assert (await store.get_order(order.id)).payment_status == "failed"
