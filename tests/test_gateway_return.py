"""
Tests for buyer returns from the gateway checkout.
"""
from typing import Any
from unittest.mock import AsyncMock

import pytest

from course_payments.core.order_store import OrderNotFoundError, OrderStore
from course_payments.core.reconciliation import ReconciliationEngine, ResultKind
from course_payments.integrations.gateway_client import GatewayError, GatewayErrorType
from course_payments.integrations.gateway_return import GatewayReturnAdapter, GatewayReturnError
from course_payments.integrations.webhook_handler import GatewayWebhookAdapter


@pytest.fixture
def return_adapter(
    store: OrderStore, engine: ReconciliationEngine, mock_gateway_client: AsyncMock
) -> GatewayReturnAdapter:
    webhook_adapter = GatewayWebhookAdapter(engine, mock_gateway_client)
    return GatewayReturnAdapter(store, engine, mock_gateway_client, webhook_adapter)


class TestConfirmReturn:
    """Test suite for GatewayReturnAdapter.confirm_return."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_approved_payment_completes_order(
        self,
        return_adapter: GatewayReturnAdapter,
        mock_gateway_client: AsyncMock,
        gateway_payment: Any,
        make_order: Any,
        store: OrderStore,
    ) -> None:
        order = await make_order(order_id="ord_1")
        mock_gateway_client.get_payment.return_value = gateway_payment(external_reference="ord_1")

        result = await return_adapter.confirm_return(order.id, "1001")

        assert result.kind is ResultKind.TRANSITIONED
        assert result.status.value == "completed"
        mock_gateway_client.get_payment.assert_awaited_once_with("1001")
        fresh = await store.get_order(order.id)
        assert fresh.payment_status == "completed"
        assert fresh.provider_payment_id == "1001"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_order_number_reference_accepted(
        self,
        return_adapter: GatewayReturnAdapter,
        mock_gateway_client: AsyncMock,
        gateway_payment: Any,
        make_order: Any,
    ) -> None:
        order = await make_order()
        mock_gateway_client.get_payment.return_value = gateway_payment(
            status="in_process", external_reference=order.order_number
        )

        result = await return_adapter.confirm_return(order.id, "1001")

        assert result.status.value == "pending"

    @pytest.mark.integration
    @pytest.mark.asyncio
    @pytest.mark.parametrize("external_reference", ["ord_other", None])
    async def test_payment_for_another_order_leaves_order_alone(
        self,
        return_adapter: GatewayReturnAdapter,
        mock_gateway_client: AsyncMock,
        gateway_payment: Any,
        make_order: Any,
        store: OrderStore,
        external_reference: Any,
    ) -> None:
        order = await make_order(order_id="ord_1")
        await make_order(order_id="ord_other", buyer_id="buyer_2")
        mock_gateway_client.get_payment.return_value = gateway_payment(
            external_reference=external_reference
        )

        with pytest.raises(GatewayReturnError):
            await return_adapter.confirm_return(order.id, "1001")

        assert (await store.get_order("ord_1")).payment_status == "pending"
        assert (await store.get_order("ord_other")).payment_status == "pending"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_manual_order_refused_without_gateway_call(
        self, return_adapter: GatewayReturnAdapter, mock_gateway_client: AsyncMock, make_order: Any
    ) -> None:
        order = await make_order(payment_method="yape")

        with pytest.raises(GatewayReturnError):
            await return_adapter.confirm_return(order.id, "1001")

        mock_gateway_client.get_payment.assert_not_awaited()

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_unknown_order(self, return_adapter: GatewayReturnAdapter) -> None:
        with pytest.raises(OrderNotFoundError):
            await return_adapter.confirm_return("missing", "1001")

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_blank_payment_id_rejected(
        self, return_adapter: GatewayReturnAdapter, make_order: Any
    ) -> None:
        order = await make_order()

        with pytest.raises(GatewayReturnError):
            await return_adapter.confirm_return(order.id, "  ")

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_gateway_outage_propagates(
        self, return_adapter: GatewayReturnAdapter, mock_gateway_client: AsyncMock, make_order: Any
    ) -> None:
        order = await make_order()
        mock_gateway_client.get_payment.side_effect = GatewayError(
            "unavailable", GatewayErrorType.TRANSIENT, status_code=503
        )

        with pytest.raises(GatewayError):
            await return_adapter.confirm_return(order.id, "1001")
