"""
Canonical payment vocabulary shared by adapters, the engine and the observer.

Adapters translate provider payloads into :class:`CanonicalOutcome`; the
reconciliation engine only ever sees this normalized form.
"""
from dataclasses import dataclass
from enum import Enum
from typing import Dict, FrozenSet, Optional


class PaymentStatus(str, Enum):
    """Order payment status. ``completed`` and ``failed`` are terminal."""

    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES: FrozenSet[PaymentStatus] = frozenset(
    {PaymentStatus.COMPLETED, PaymentStatus.FAILED}
)


class Outcome(str, Enum):
    """Normalized result reported by any payment channel."""

    APPROVED = "approved"
    REJECTED = "rejected"
    CANCELLED = "cancelled"
    PENDING = "pending"


class PaymentMethod(str, Enum):
    """Payment methods offered at checkout."""

    MERCADOPAGO = "mercadopago"
    PAYPAL = "paypal"
    CARD = "card"
    GOOGLE_PAY = "google_pay"
    YAPE = "yape"
    PLIN = "plin"


class RejectionReason(str, Enum):
    """Terminal rejection codes surfaced to the buyer."""

    RECEIPT_MISMATCH = "receipt_mismatch"
    RECEIPT_UNREADABLE = "receipt_unreadable"
    RECEIPT_ALREADY_USED = "receipt_already_used"
    VALIDATION_ERROR = "validation_error"
    WRONG_PAYMENT_METHOD = "wrong_payment_method"
    VALIDATION_EXPIRED = "validation_expired"
    GATEWAY_REJECTED = "gateway_rejected"
    GATEWAY_CANCELLED = "gateway_cancelled"


# Codes emitted by the receipt validation workflow before the taxonomy was normalized
LEGACY_REJECTION_ALIASES: Dict[str, RejectionReason] = {
    "comprobante_incorrecto": RejectionReason.RECEIPT_MISMATCH,
    "comprobante_ilegible": RejectionReason.RECEIPT_UNREADABLE,
    "comprobante_usado": RejectionReason.RECEIPT_ALREADY_USED,
    "error_validacion": RejectionReason.VALIDATION_ERROR,
    "metodo_incorrecto": RejectionReason.WRONG_PAYMENT_METHOD,
    "tiempo_expirado": RejectionReason.VALIDATION_EXPIRED,
}


def normalize_rejection_code(code: Optional[str]) -> Optional[str]:
    """
    Map a raw rejection code onto the taxonomy.

    Known codes and legacy aliases become taxonomy values; anything else is
    returned unchanged so it can still be shown with a generic message.
    """
    if code is None:
        return None
    cleaned = code.strip().lower()
    if not cleaned:
        return None
    if cleaned in LEGACY_REJECTION_ALIASES:
        return LEGACY_REJECTION_ALIASES[cleaned].value
    try:
        return RejectionReason(cleaned).value
    except ValueError:
        return code.strip()


@dataclass(frozen=True)
class CanonicalOutcome:
    """
    Normalized payment signal handed to the reconciliation engine.

    ``order_reference`` may be an order id, an order number or a provider
    payment id recorded earlier.
    """

    order_reference: str
    outcome: Outcome
    provider_payment_id: Optional[str] = None
    raw_provider_status: Optional[str] = None
    provider: str = "gateway"
    rejection_reason: Optional[str] = None
    correlation_id: Optional[str] = None

    def as_log_fields(self) -> Dict[str, Optional[str]]:
        return {
            "order_reference": self.order_reference,
            "outcome": self.outcome.value,
            "provider_payment_id": self.provider_payment_id,
            "raw_provider_status": self.raw_provider_status,
            "provider": self.provider,
        }
