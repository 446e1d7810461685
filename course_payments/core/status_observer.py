"""
Buyer-facing order status.

Two independent observers feed one terminal-state predicate: a push
subscription on the in-process change notifier, and a bounded poll against
the store. Whichever sees a terminal status first wins and the other is
cancelled. If neither does before the maximum wait, the watch reports
"still pending" and the order itself is left alone.
"""
import asyncio
import time
from dataclasses import dataclass, replace
from typing import Any, AsyncIterator, Dict, Optional, Tuple

import structlog

from course_payments.config import get_settings
from course_payments.core.notifier import OrderChange, OrderChangeNotifier
from course_payments.core.order_store import OrderNotFoundError, OrderStore
from course_payments.core.outcomes import PaymentStatus, RejectionReason
from course_payments.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

DEFAULT_LOCALE = "en"

REJECTION_MESSAGES: Dict[str, Dict[str, str]] = {
    "en": {
        RejectionReason.RECEIPT_MISMATCH.value: (
            "The receipt does not match your order (amount, operation code or recipient)."
        ),
        RejectionReason.RECEIPT_UNREADABLE.value: (
            "We could not read your receipt. Please submit a clearer image."
        ),
        RejectionReason.RECEIPT_ALREADY_USED.value: (
            "This receipt has already been used for another order."
        ),
        RejectionReason.VALIDATION_ERROR.value: (
            "We could not validate your payment because of a system error. Please contact support."
        ),
        RejectionReason.WRONG_PAYMENT_METHOD.value: (
            "The payment method submitted does not match the one selected for this order."
        ),
        RejectionReason.VALIDATION_EXPIRED.value: (
            "The time to validate this payment has expired. Please place a new order."
        ),
        RejectionReason.GATEWAY_REJECTED.value: (
            "Your payment was declined by the payment provider."
        ),
        RejectionReason.GATEWAY_CANCELLED.value: "Your payment was cancelled.",
    },
    "es": {
        RejectionReason.RECEIPT_MISMATCH.value: (
            "El comprobante no coincide con tu pedido (monto, código de operación o destinatario)."
        ),
        RejectionReason.RECEIPT_UNREADABLE.value: (
            "No pudimos leer tu comprobante. Envía una imagen más clara."
        ),
        RejectionReason.RECEIPT_ALREADY_USED.value: (
            "Este comprobante ya fue utilizado en otro pedido."
        ),
        RejectionReason.VALIDATION_ERROR.value: (
            "Ocurrió un error al validar tu pago. Contacta a soporte."
        ),
        RejectionReason.WRONG_PAYMENT_METHOD.value: (
            "El método de pago enviado no coincide con el seleccionado para este pedido."
        ),
        RejectionReason.VALIDATION_EXPIRED.value: (
            "El tiempo para validar este pago ha expirado. Realiza un nuevo pedido."
        ),
        RejectionReason.GATEWAY_REJECTED.value: "Tu pago fue rechazado por la pasarela de pago.",
        RejectionReason.GATEWAY_CANCELLED.value: "Tu pago fue cancelado.",
    },
}

GENERIC_REJECTION_MESSAGES = {
    "en": "Your payment could not be confirmed. Please contact support with code: {code}.",
    "es": "No pudimos confirmar tu pago. Contacta a soporte con el código: {code}.",
}

STATUS_MESSAGES = {
    "en": {
        PaymentStatus.PENDING.value: "We are confirming your payment.",
        PaymentStatus.COMPLETED.value: "Payment confirmed. Your courses are ready.",
    },
    "es": {
        PaymentStatus.PENDING.value: "Estamos confirmando tu pago.",
        PaymentStatus.COMPLETED.value: "Pago confirmado. Tus cursos ya están disponibles.",
    },
}

STILL_PENDING_MESSAGES = {
    "en": "Your payment is still being confirmed. Please check back later.",
    "es": "Tu pago aún está en verificación. Vuelve a consultar más tarde.",
}


def _locale(locale: Optional[str]) -> str:
    if locale and locale.split("-")[0].lower() in REJECTION_MESSAGES:
        return locale.split("-")[0].lower()
    return DEFAULT_LOCALE


def rejection_message(code: Optional[str], locale: Optional[str] = None) -> str:
    """Buyer-facing text for a rejection code; unknown codes keep the raw code."""
    lang = _locale(locale)
    if code and code in REJECTION_MESSAGES[lang]:
        return REJECTION_MESSAGES[lang][code]
    return GENERIC_REJECTION_MESSAGES[lang].format(code=code or "unknown")


@dataclass(frozen=True)
class OrderStatusView:
    """Status as shown to the buyer."""

    order_id: str
    order_number: str
    status: str
    rejection_reason: Optional[str] = None
    message: Optional[str] = None
    timed_out: bool = False

    @property
    def is_terminal(self) -> bool:
        return is_terminal(self.status)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "order_id": self.order_id,
            "order_number": self.order_number,
            "payment_status": self.status,
            "rejection_reason": self.rejection_reason,
            "message": self.message,
            "timed_out": self.timed_out,
        }


def is_terminal(status: str) -> bool:
    """Terminal-state predicate shared by the push and poll observers."""
    return PaymentStatus(status).is_terminal


class StatusObserver:
    """Exposes order status to the buyer via push notifications with a polling fallback."""

    def __init__(
        self,
        store: OrderStore,
        notifier: OrderChangeNotifier,
        poll_interval_seconds: Optional[float] = None,
        max_wait_seconds: Optional[float] = None,
    ):
        settings = get_settings()
        self.store = store
        self.notifier = notifier
        self.poll_interval_seconds = (
            poll_interval_seconds
            if poll_interval_seconds is not None
            else settings.status_poll_interval_seconds
        )
        self.max_wait_seconds = (
            max_wait_seconds if max_wait_seconds is not None else settings.status_poll_max_wait_seconds
        )

    async def get_order_status(self, order_id: str, locale: Optional[str] = None) -> OrderStatusView:
        """
        Current status of an order.

        Raises:
            OrderNotFoundError: If the order does not exist
        """
        order = await self.store.get_order(order_id)
        if order is None:
            raise OrderNotFoundError(order_id)

        lang = _locale(locale)
        if order.payment_status == PaymentStatus.FAILED.value:
            message = rejection_message(order.rejection_reason, lang)
        else:
            message = STATUS_MESSAGES[lang][order.payment_status]

        return OrderStatusView(
            order_id=order.id,
            order_number=order.order_number,
            status=order.payment_status,
            rejection_reason=order.rejection_reason,
            message=message,
        )

    async def _await_push(
        self,
        order_id: str,
        queue: "asyncio.Queue[OrderChange]",
        locale: Optional[str],
    ) -> Tuple[OrderStatusView, str]:
        while True:
            change = await queue.get()
            if is_terminal(change.status):
                return await self.get_order_status(order_id, locale), "push"

    async def _poll(
        self,
        order_id: str,
        interval: float,
        max_wait: float,
        locale: Optional[str],
    ) -> Tuple[OrderStatusView, str]:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + max_wait

        while True:
            remaining = deadline - loop.time()
            await asyncio.sleep(max(0.0, min(interval, remaining)))
            view = await self.get_order_status(order_id, locale)
            if view.is_terminal:
                return view, "poll"
            if loop.time() >= deadline:
                return (
                    replace(
                        view,
                        timed_out=True,
                        message=STILL_PENDING_MESSAGES[_locale(locale)],
                    ),
                    "timeout",
                )

    async def wait_for_terminal(
        self,
        order_id: str,
        locale: Optional[str] = None,
        poll_interval_seconds: Optional[float] = None,
        max_wait_seconds: Optional[float] = None,
    ) -> OrderStatusView:
        """
        Wait until the order reaches a terminal status or the maximum wait elapses.

        Returns:
            OrderStatusView: Terminal view, or the pending view with ``timed_out=True``

        Raises:
            OrderNotFoundError: If the order does not exist
        """
        interval = poll_interval_seconds or self.poll_interval_seconds
        max_wait = max_wait_seconds if max_wait_seconds is not None else self.max_wait_seconds
        started = time.monotonic()

        # Subscribe before the first read so a transition in between is not missed
        async with self.notifier.subscribe(order_id) as queue:
            current = await self.get_order_status(order_id, locale)
            if current.is_terminal:
                metrics.record_status_watch("immediate", 0.0)
                return current

            push = asyncio.create_task(self._await_push(order_id, queue, locale))
            poll = asyncio.create_task(self._poll(order_id, interval, max_wait, locale))
            try:
                done, _ = await asyncio.wait({push, poll}, return_when=asyncio.FIRST_COMPLETED)
            finally:
                for task in (push, poll):
                    if not task.done():
                        task.cancel()
                await asyncio.gather(push, poll, return_exceptions=True)

        winner = push if push in done else poll
        view, resolved_by = winner.result()
        metrics.record_status_watch(resolved_by, time.monotonic() - started)
        logger.info(
            "order_status_watch_resolved",
            order_id=order_id,
            status=view.status,
            resolved_by=resolved_by,
        )
        return view

    async def watch(
        self,
        order_id: str,
        locale: Optional[str] = None,
        poll_interval_seconds: Optional[float] = None,
        max_wait_seconds: Optional[float] = None,
    ) -> AsyncIterator[OrderStatusView]:
        """Yield the current status, then the terminal (or timed out) status."""
        current = await self.get_order_status(order_id, locale)
        yield current
        if current.is_terminal:
            return
        yield await self.wait_for_terminal(
            order_id,
            locale=locale,
            poll_interval_seconds=poll_interval_seconds,
            max_wait_seconds=max_wait_seconds,
        )
