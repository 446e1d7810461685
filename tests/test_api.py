"""
Integration tests for the HTTP API.
"""
import json
from typing import Any, Dict
from unittest.mock import AsyncMock

import pytest
from httpx import AsyncClient

from course_payments.core.outcomes import CanonicalOutcome, Outcome
from course_payments.integrations.gateway_client import GatewayError, GatewayErrorType

VALIDATION_API_KEY = "test-validation-key"

CHECKOUT_BODY: Dict[str, Any] = {
    "buyerId": "buyer_1",
    "items": [{"itemId": "course_x", "unitPriceCents": 4900}],
    "paymentMethod": "mercadopago",
    "amountCents": 4900,
    "currency": "usd",
}


def payment_notification(resource_id: str = "1001", event_id: int = 555) -> bytes:
    return json.dumps({"id": event_id, "type": "payment", "data": {"id": resource_id}}).encode()


class TestCheckout:
    """Test suite for order creation."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_create_order(self, client: AsyncClient) -> None:
        response = await client.post("/checkout/orders", json=CHECKOUT_BODY)

        assert response.status_code == 201
        data = response.json()
        assert data["order_number"] == "PI-000001"
        assert data["payment_status"] == "pending"
        assert data["currency"] == "USD"
        assert "X-Request-ID" in response.headers

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_non_positive_amount_rejected(self, client: AsyncClient) -> None:
        response = await client.post("/checkout/orders", json={**CHECKOUT_BODY, "amountCents": 0})

        assert response.status_code == 400

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_owned_item_conflict(self, client: AsyncClient, container: Any) -> None:
        created = (await client.post("/checkout/orders", json=CHECKOUT_BODY)).json()
        await container.engine.reconcile(
            CanonicalOutcome(order_reference=created["order_id"], outcome=Outcome.APPROVED)
        )

        response = await client.post("/checkout/orders", json=CHECKOUT_BODY)

        assert response.status_code == 409
        assert response.json()["detail"]["item_ids"] == ["course_x"]


class TestGatewayWebhook:
    """Test suite for the gateway webhook endpoint."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_malformed_body(self, client: AsyncClient) -> None:
        response = await client.post("/webhooks/gateway", content=b"{not json")

        assert response.status_code == 400

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_unknown_kind_acknowledged(self, client: AsyncClient) -> None:
        body = json.dumps({"type": "point_integration_wh", "data": {"id": "1"}}).encode()

        response = await client.post("/webhooks/gateway", content=body)

        assert response.status_code == 200
        assert response.json()["status"] == "ignored"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_approved_payment_completes_order(
        self,
        client: AsyncClient,
        mock_gateway_client: AsyncMock,
        gateway_payment: Any,
        container: Any,
    ) -> None:
        created = (await client.post("/checkout/orders", json=CHECKOUT_BODY)).json()
        mock_gateway_client.get_payment.return_value = gateway_payment(
            external_reference=created["order_id"]
        )

        response = await client.post("/webhooks/gateway", content=payment_notification())

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "processed"
        assert data["result"]["status"] == "completed"
        order = await container.store.get_order(created["order_id"])
        assert order.payment_status == "completed"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_orphan_acknowledged(
        self, client: AsyncClient, mock_gateway_client: AsyncMock, gateway_payment: Any
    ) -> None:
        mock_gateway_client.get_payment.return_value = gateway_payment(
            external_reference="ord_unknown"
        )

        response = await client.post("/webhooks/gateway", content=payment_notification())

        assert response.status_code == 200
        assert response.json()["status"] == "orphaned"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_gateway_outage_asks_for_redelivery(
        self, client: AsyncClient, mock_gateway_client: AsyncMock
    ) -> None:
        mock_gateway_client.get_payment.side_effect = GatewayError(
            "unavailable", GatewayErrorType.TRANSIENT, status_code=503
        )

        response = await client.post("/webhooks/gateway", content=payment_notification())

        assert response.status_code == 503

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_bad_signature_rejected(self, client: AsyncClient, container: Any) -> None:
        container.webhook_adapter.webhook_secret = "whsec_gateway_test"

        response = await client.post(
            "/webhooks/gateway",
            content=payment_notification(),
            headers={"x-signature": "ts=1,v1=deadbeef", "x-request-id": "req-1"},
        )

        assert response.status_code == 400


class TestManualPayments:
    """Test suite for the manual confirmation endpoints."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_submit_then_mismatched_verdict(self, client: AsyncClient) -> None:
        created = (
            await client.post("/checkout/orders", json={**CHECKOUT_BODY, "paymentMethod": "yape"})
        ).json()
        order_id = created["order_id"]

        submitted = await client.post(
            "/payments/manual/confirm",
            json={"orderId": order_id, "paymentMethod": "yape", "transactionId": "ABC123"},
        )
        assert submitted.status_code == 200
        assert submitted.json() == {"success": True, "error": None, "status": "pending"}

        verdict = await client.post(
            "/payments/manual/verdict",
            json={"orderId": order_id, "status": "approved", "reportedAmountCents": 1000},
            headers={"X-API-Key": VALIDATION_API_KEY},
        )
        assert verdict.status_code == 200
        assert verdict.json()["status"] == "failed"
        assert verdict.json()["rejection_reason"] == "receipt_mismatch"

        status_response = await client.get(f"/orders/{order_id}/status", params={"locale": "es"})
        assert status_response.json()["rejection_reason"] == "receipt_mismatch"
        assert "no coincide" in status_response.json()["message"]

    @pytest.mark.integration
    @pytest.mark.asyncio
    @pytest.mark.parametrize("headers", [{}, {"X-API-Key": "wrong"}])
    async def test_verdict_requires_api_key(
        self, client: AsyncClient, headers: Dict[str, str]
    ) -> None:
        response = await client.post(
            "/payments/manual/verdict",
            json={"orderId": "ord_1", "status": "approved"},
            headers=headers,
        )

        assert response.status_code == 401

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_verdict_status_validated(self, client: AsyncClient) -> None:
        response = await client.post(
            "/payments/manual/verdict",
            json={"orderId": "ord_1", "status": "maybe"},
            headers={"X-API-Key": VALIDATION_API_KEY},
        )

        assert response.status_code == 422

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_confirm_unknown_order(self, client: AsyncClient) -> None:
        response = await client.post(
            "/payments/manual/confirm",
            json={"orderId": "missing", "paymentMethod": "yape", "transactionId": "ABC123"},
        )

        assert response.status_code == 404


    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_gateway_order_refuses_manual_submission(
        self, client: AsyncClient, container: Any
    ) -> None:
        created = (await client.post("/checkout/orders", json=CHECKOUT_BODY)).json()

        response = await client.post(
            "/payments/manual/confirm",
            json={"orderId": created["order_id"], "paymentMethod": "yape", "transactionId": "X1"},
        )

        assert response.status_code == 400
        assert response.json()["detail"]["error"] == "wrong_payment_method"
        order = await container.store.get_order(created["order_id"])
        assert order.payment_status == "pending"


class TestGatewayReturn:
    """Test suite for the gateway redirect return endpoint."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_return_completes_order(
        self, client: AsyncClient, mock_gateway_client: AsyncMock, gateway_payment: Any
    ) -> None:
        created = (await client.post("/checkout/orders", json=CHECKOUT_BODY)).json()
        mock_gateway_client.get_payment.return_value = gateway_payment(
            external_reference=created["order_id"]
        )

        response = await client.post(
            "/payments/gateway/return",
            json={"orderId": created["order_id"], "paymentId": "1001"},
        )

        assert response.status_code == 200
        assert response.json()["status"] == "completed"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_foreign_payment_rejected(
        self, client: AsyncClient, mock_gateway_client: AsyncMock, gateway_payment: Any
    ) -> None:
        created = (await client.post("/checkout/orders", json=CHECKOUT_BODY)).json()
        mock_gateway_client.get_payment.return_value = gateway_payment(
            external_reference="ord_someone_else"
        )

        response = await client.post(
            "/payments/gateway/return",
            json={"orderId": created["order_id"], "paymentId": "1001"},
        )

        assert response.status_code == 400

    @pytest.mark.integration
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "error_type,expected", [(GatewayErrorType.TRANSIENT, 503), (GatewayErrorType.PERMANENT, 400)]
    )
    async def test_gateway_errors(
        self,
        client: AsyncClient,
        mock_gateway_client: AsyncMock,
        error_type: GatewayErrorType,
        expected: int,
    ) -> None:
        created = (await client.post("/checkout/orders", json=CHECKOUT_BODY)).json()
        mock_gateway_client.get_payment.side_effect = GatewayError("gateway said no", error_type)

        response = await client.post(
            "/payments/gateway/return",
            json={"orderId": created["order_id"], "paymentId": "1001"},
        )

        assert response.status_code == expected

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_unknown_order(self, client: AsyncClient) -> None:
        response = await client.post(
            "/payments/gateway/return", json={"orderId": "missing", "paymentId": "1001"}
        )

        assert response.status_code == 404


class TestOrderStatus:
    """Test suite for order status endpoints."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_unknown_order(self, client: AsyncClient) -> None:
        response = await client.get("/orders/missing/status")

        assert response.status_code == 404

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_pending_status_with_accept_language(self, client: AsyncClient) -> None:
        created = (await client.post("/checkout/orders", json=CHECKOUT_BODY)).json()

        response = await client.get(
            f"/orders/{created['order_id']}/status", headers={"Accept-Language": "es-PE"}
        )

        assert response.status_code == 200
        data = response.json()
        assert data["payment_status"] == "pending"
        assert data["message"] == "Estamos confirmando tu pago."
        assert data["timed_out"] is False

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_event_stream_for_terminal_order(
        self, client: AsyncClient, container: Any
    ) -> None:
        created = (await client.post("/checkout/orders", json=CHECKOUT_BODY)).json()
        await container.engine.reconcile(
            CanonicalOutcome(order_reference=created["order_id"], outcome=Outcome.APPROVED)
        )

        response = await client.get(f"/orders/{created['order_id']}/events")

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/event-stream")
        events = [chunk for chunk in response.text.split("\n\n") if chunk]
        assert len(events) == 1
        assert events[0].startswith("event: status\ndata: ")
        payload = json.loads(events[0].split("data: ", 1)[1])
        assert payload["payment_status"] == "completed"


class TestMonitoring:
    """Test suite for health and metrics endpoints."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_health(self, client: AsyncClient) -> None:
        response = await client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_liveness_and_readiness(self, client: AsyncClient) -> None:
        assert (await client.get("/health/live")).status_code == 200
        assert (await client.get("/health/ready")).status_code == 200

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_metrics(self, client: AsyncClient) -> None:
        await client.post("/checkout/orders", json=CHECKOUT_BODY)

        response = await client.get("/metrics")

        assert response.status_code == 200
        assert "orders_created_total" in response.text

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_root(self, client: AsyncClient) -> None:
        response = await client.get("/")

        assert response.json()["status"] == "operational"
