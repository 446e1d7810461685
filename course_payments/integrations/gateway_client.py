"""
Payment gateway REST client with retry logic and error classification.

Implements:
- Exponential backoff for transient errors (tenacity)
- Circuit breaker pattern
- Bearer-token authenticated lookups of payments and merchant orders
"""
import time
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx
import structlog
from tenacity import (
    retry,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from course_payments.config import get_settings
from course_payments.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


class GatewayErrorType(Enum):
    """Classification of gateway errors for retry logic."""

    TRANSIENT = "transient"  # Retry these
    PERMANENT = "permanent"  # Don't retry these
    RATE_LIMIT = "rate_limit"  # Retry with longer backoff


class GatewayError(Exception):
    """Base exception for gateway API errors."""

    def __init__(
        self,
        message: str,
        error_type: GatewayErrorType,
        status_code: Optional[int] = None,
    ):
        """
        Initialize gateway error.

        Args:
            message: Error message
            error_type: Classification of error
            status_code: HTTP status returned by the gateway, if any
        """
        super().__init__(message)
        self.error_type = error_type
        self.status_code = status_code

    @property
    def retryable(self) -> bool:
        return self.error_type is not GatewayErrorType.PERMANENT


def _is_retryable(error: BaseException) -> bool:
    return isinstance(error, GatewayError) and error.retryable


class CircuitBreaker:
    """
    Circuit breaker for gateway API calls.

    Stops calling the gateway for ``timeout`` seconds after
    ``failure_threshold`` consecutive failures.
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        timeout: int = 60,
        success_threshold: int = 2,
    ):
        self.failure_threshold = failure_threshold
        self.timeout = timeout
        self.success_threshold = success_threshold
        self.failure_count = 0
        self.success_count = 0
        self.last_failure_time: Optional[float] = None
        self.state = "closed"  # closed, open, half_open

    async def call(self, func: Callable[..., Awaitable[Any]], *args: Any, **kwargs: Any) -> Any:
        """
        Await ``func`` with circuit breaker protection.

        Raises:
            GatewayError: If circuit is open
        """
        if self.state == "open":
            if (
                self.last_failure_time
                and time.time() - self.last_failure_time > self.timeout
            ):
                self._set_state("half_open")
                self.success_count = 0
            else:
                raise GatewayError("Circuit breaker is open", GatewayErrorType.TRANSIENT)

        try:
            result = await func(*args, **kwargs)
        except GatewayError as e:
            # Permanent errors (e.g. unknown payment id) say nothing about gateway health
            if e.retryable:
                self.on_failure()
            raise
        self.on_success()
        return result

    def _set_state(self, state: str) -> None:
        self.state = state
        metrics.set_circuit_breaker_state(state)
        logger.info("circuit_breaker_state_changed", state=state)

    def on_success(self) -> None:
        """Record successful call."""
        self.failure_count = 0
        if self.state == "half_open":
            self.success_count += 1
            if self.success_count >= self.success_threshold:
                self._set_state("closed")

    def on_failure(self) -> None:
        """Record failed call."""
        self.failure_count += 1
        self.last_failure_time = time.time()
        if self.failure_count >= self.failure_threshold and self.state != "open":
            logger.warning("circuit_breaker_opened", failure_count=self.failure_count)
            self._set_state("open")


class GatewayClient:
    """
    Read-only client for the payment gateway API.

    Used by the webhook adapter to resolve notification ids into the
    payment or merchant order they describe.
    """

    def __init__(
        self,
        http_client: Optional[httpx.AsyncClient] = None,
        circuit_breaker: Optional[CircuitBreaker] = None,
    ) -> None:
        settings = get_settings()
        self.settings = settings
        self.http_client = http_client or httpx.AsyncClient(
            base_url=settings.gateway_api_base_url,
            timeout=settings.gateway_timeout_seconds,
            headers={"Authorization": f"Bearer {settings.gateway_access_token}"},
        )
        self.circuit_breaker = circuit_breaker or CircuitBreaker()

        logger.info("gateway_client_initialized", base_url=settings.gateway_api_base_url)

    @staticmethod
    def _classify_status(status_code: int) -> GatewayErrorType:
        """
        Classify an HTTP error status for retry logic.

        Args:
            status_code: HTTP status code

        Returns:
            GatewayErrorType: Error classification
        """
        if status_code == 429:
            return GatewayErrorType.RATE_LIMIT
        if status_code >= 500 or status_code == 408:
            return GatewayErrorType.TRANSIENT
        return GatewayErrorType.PERMANENT

    async def _get(self, operation: str, path: str) -> Dict[str, Any]:
        start_time = time.time()
        try:
            response = await self.http_client.get(path)
        except httpx.TransportError as e:
            metrics.record_gateway_api_error(GatewayErrorType.TRANSIENT.value)
            logger.error("gateway_api_transport_error", operation=operation, error=str(e))
            raise GatewayError(str(e), GatewayErrorType.TRANSIENT) from e

        duration = time.time() - start_time
        metrics.record_gateway_api_call(operation, str(response.status_code), duration)

        if response.is_error:
            error_type = self._classify_status(response.status_code)
            metrics.record_gateway_api_error(error_type.value)
            logger.error(
                "gateway_api_error",
                operation=operation,
                status_code=response.status_code,
                error_type=error_type.value,
            )
            raise GatewayError(
                f"Gateway {operation} failed with HTTP {response.status_code}",
                error_type,
                status_code=response.status_code,
            )

        try:
            return response.json()
        except ValueError as e:
            raise GatewayError(
                f"Gateway {operation} returned invalid JSON", GatewayErrorType.TRANSIENT
            ) from e

    @retry(
        retry=retry_if_exception(_is_retryable),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=8),
        reraise=True,
    )
    async def get_payment(self, payment_id: str) -> Dict[str, Any]:
        """
        Retrieve a single payment.

        Raises:
            GatewayError: If retrieval fails
        """
        logger.info("retrieving_gateway_payment", payment_id=payment_id)
        return await self.circuit_breaker.call(
            self._get, "get_payment", f"/v1/payments/{payment_id}"
        )

    @retry(
        retry=retry_if_exception(_is_retryable),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=8),
        reraise=True,
    )
    async def get_merchant_order(self, merchant_order_id: str) -> Dict[str, Any]:
        """
        Retrieve an aggregate merchant order with all its payment attempts.

        Raises:
            GatewayError: If retrieval fails
        """
        logger.info("retrieving_gateway_merchant_order", merchant_order_id=merchant_order_id)
        return await self.circuit_breaker.call(
            self._get, "get_merchant_order", f"/merchant_orders/{merchant_order_id}"
        )

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        await self.http_client.aclose()
