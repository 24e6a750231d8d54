"""
Provider-neutral payment gateway interface.

Reconciliation code talks to ``PaymentGateway`` and the dataclasses below,
never to provider payloads. Amounts cross this boundary in the gateway's
minor unit (``amount_minor``); conversion to the integer major units stored
on bookings happens in ``sahayak.domain.pricing``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from hashlib import sha256
import hmac
import logging
from typing import Any, Dict, List, Optional, Protocol, runtime_checkable

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GatewayOrder:
    order_id: str
    amount_minor: int
    currency: str
    status: str
    receipt: Optional[str] = None
    notes: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class GatewayPayment:
    payment_id: str
    order_id: Optional[str]
    status: str
    amount_minor: int
    currency: str
    notes: Dict[str, Any] = field(default_factory=dict)
    error_code: Optional[str] = None
    error_description: Optional[str] = None
    created_at: Optional[int] = None

    @property
    def is_captured(self) -> bool:
        return self.status == "captured"

    @property
    def is_authorized(self) -> bool:
        return self.status == "authorized"

    @property
    def is_failed(self) -> bool:
        return self.status == "failed"


@dataclass(frozen=True)
class GatewayRefund:
    refund_id: str
    payment_id: str
    amount_minor: int
    currency: str
    status: str
    notes: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class GatewayPaymentLink:
    link_id: str
    short_url: str
    amount_minor: int
    currency: str
    status: str
    reference_id: Optional[str] = None
    notes: Dict[str, Any] = field(default_factory=dict)


@runtime_checkable
class PaymentGateway(Protocol):
    """Operations the booking core needs from a payment provider."""

    def is_available(self) -> bool:
        ...

    def create_order(
        self,
        *,
        amount_minor: int,
        currency: str,
        receipt: str,
        notes: Dict[str, Any],
        idempotency_key: Optional[str] = None,
    ) -> GatewayOrder:
        ...

    def create_payment_link(
        self,
        *,
        amount_minor: int,
        currency: str,
        description: str,
        reference_id: str,
        customer: Dict[str, str],
        notes: Dict[str, Any],
        callback_url: Optional[str] = None,
    ) -> GatewayPaymentLink:
        ...

    def verify_payment_signature(self, order_id: str, payment_id: str, signature: str) -> bool:
        ...

    def capture_payment(self, payment_id: str, amount_minor: int, currency: str) -> GatewayPayment:
        ...

    def refund_payment(
        self,
        payment_id: str,
        *,
        amount_minor: Optional[int] = None,
        notes: Optional[Dict[str, Any]] = None,
        idempotency_key: Optional[str] = None,
    ) -> GatewayRefund:
        ...

    def fetch_payment(self, payment_id: str) -> GatewayPayment:
        ...

    def fetch_order(self, order_id: str) -> GatewayOrder:
        ...

    def fetch_order_payments(self, order_id: str) -> List[GatewayPayment]:
        ...

    def validate_webhook_signature(self, raw_body: bytes, signature: str, secret: str) -> bool:
        ...


def compute_signature(secret: str, payload: bytes) -> str:
    mac = hmac.new(secret.encode("utf-8"), payload, sha256)
    return mac.hexdigest()


def signature_matches(secret: str, payload: bytes, signature: Optional[str]) -> bool:
    """Constant-time HMAC-SHA256 check. Never raises."""
    try:
        if not secret or not signature:
            return False
        expected = compute_signature(secret, payload)
        return hmac.compare_digest(expected, signature)
    except Exception:
        logger.warning("Signature comparison failed", exc_info=True)
        return False


def payment_signature_payload(order_id: str, payment_id: str) -> bytes:
    return f"{order_id}|{payment_id}".encode("utf-8")
