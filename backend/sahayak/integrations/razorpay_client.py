"""Razorpay REST client implementing the ``PaymentGateway`` interface."""

from __future__ import annotations

import json
import logging
import random
import time
from typing import Any, Callable, Dict, List, Optional, cast
from uuid import uuid4

import httpx
from pydantic import SecretStr

from ..core.exceptions import GatewayCommunicationError, PaymentUnavailable
from ..monitoring.prometheus_metrics import prometheus_metrics
from .payment_gateway import (
    GatewayOrder,
    GatewayPayment,
    GatewayPaymentLink,
    GatewayRefund,
    compute_signature,
    payment_signature_payload,
    signature_matches,
)

logger = logging.getLogger(__name__)

_RETRYABLE_STATUSES = {429, 500, 502, 503, 504}


def _retry_delay(attempt: int) -> float:
    base = 0.1 * (2 ** (attempt - 1))
    return base + random.uniform(0, 0.05 * attempt)


def _secret(value: str | SecretStr | None) -> str:
    if isinstance(value, SecretStr):
        return value.get_secret_value()
    return value or ""


def order_from_payload(payload: Dict[str, Any]) -> GatewayOrder:
    return GatewayOrder(
        order_id=str(payload["id"]),
        amount_minor=int(payload["amount"]),
        currency=str(payload.get("currency") or ""),
        status=str(payload.get("status") or ""),
        receipt=payload.get("receipt"),
        notes=_notes(payload.get("notes")),
    )


def payment_from_payload(payload: Dict[str, Any]) -> GatewayPayment:
    return GatewayPayment(
        payment_id=str(payload["id"]),
        order_id=payload.get("order_id"),
        status=str(payload.get("status") or ""),
        amount_minor=int(payload.get("amount") or 0),
        currency=str(payload.get("currency") or ""),
        notes=_notes(payload.get("notes")),
        error_code=payload.get("error_code"),
        error_description=payload.get("error_description"),
        created_at=payload.get("created_at"),
    )


def refund_from_payload(payload: Dict[str, Any]) -> GatewayRefund:
    return GatewayRefund(
        refund_id=str(payload["id"]),
        payment_id=str(payload.get("payment_id") or ""),
        amount_minor=int(payload.get("amount") or 0),
        currency=str(payload.get("currency") or ""),
        status=str(payload.get("status") or ""),
        notes=_notes(payload.get("notes")),
    )


def link_from_payload(payload: Dict[str, Any]) -> GatewayPaymentLink:
    return GatewayPaymentLink(
        link_id=str(payload["id"]),
        short_url=str(payload.get("short_url") or ""),
        amount_minor=int(payload.get("amount") or 0),
        currency=str(payload.get("currency") or ""),
        status=str(payload.get("status") or ""),
        reference_id=payload.get("reference_id"),
        notes=_notes(payload.get("notes")),
    )


def _notes(raw: Any) -> Dict[str, Any]:
    # Razorpay serialises empty notes as [] rather than {}.
    return dict(raw) if isinstance(raw, dict) else {}


class RazorpayClient:
    """
    Thin client for the Razorpay REST API.

    The client is safe to construct without credentials: ``is_available()``
    then reports False, every payment operation raises ``PaymentUnavailable``,
    and signature checks return False.
    """

    def __init__(
        self,
        *,
        key_id: str = "",
        key_secret: str | SecretStr = "",
        base_url: str = "https://api.razorpay.com/v1",
        timeout: float = 10.0,
        max_retries: int = 3,
        transport: httpx.BaseTransport | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._key_id = key_id or ""
        self._key_secret = _secret(key_secret)
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._max_retries = max(1, max_retries)
        self._transport = transport
        self._sleep = sleep
        # Razorpay uses HTTP Basic auth with key id as username and key secret as password.
        self._auth = httpx.BasicAuth(self._key_id, self._key_secret) if self.is_available() else None

    def is_available(self) -> bool:
        return bool(self._key_id and self._key_secret)

    def _require_configured(self, operation: str) -> None:
        if not self.is_available():
            logger.error(
                "Payment gateway is not configured; refusing %s",
                operation,
                extra={"evt": "payment_gateway_unconfigured", "operation": operation},
            )
            raise PaymentUnavailable()

    # Orders

    def create_order(
        self,
        *,
        amount_minor: int,
        currency: str,
        receipt: str,
        notes: Dict[str, Any],
        idempotency_key: Optional[str] = None,
    ) -> GatewayOrder:
        """Create an order. Retries of the same booking must reuse ``idempotency_key``."""
        self._require_configured("create_order")
        if amount_minor <= 0:
            raise ValueError("amount_minor must be positive")
        body = {
            "amount": amount_minor,
            "currency": currency,
            "receipt": receipt,
            "notes": {key: str(value) for key, value in notes.items() if value is not None},
        }
        headers = {"Idempotency-Key": idempotency_key} if idempotency_key else None
        return order_from_payload(self.request("POST", "/orders", json_body=body, headers=headers))

    def fetch_order(self, order_id: str) -> GatewayOrder:
        self._require_configured("fetch_order")
        if not order_id:
            raise ValueError("order_id must be provided")
        return order_from_payload(self.request("GET", f"/orders/{order_id}"))

    def fetch_order_payments(self, order_id: str) -> List[GatewayPayment]:
        self._require_configured("fetch_order_payments")
        if not order_id:
            raise ValueError("order_id must be provided")
        payload = self.request("GET", f"/orders/{order_id}/payments")
        items = payload.get("items") or []
        return [payment_from_payload(item) for item in items if isinstance(item, dict)]

    # Payment links

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
        """
        Create a hosted payment link the customer can pay from SMS or email.

        Razorpay rejects a second link with the same ``reference_id``, so a
        booking gets at most one link.
        """
        self._require_configured("create_payment_link")
        if amount_minor <= 0:
            raise ValueError("amount_minor must be positive")
        body: Dict[str, Any] = {
            "amount": amount_minor,
            "currency": currency,
            "description": description,
            "reference_id": reference_id,
            "customer": {key: value for key, value in customer.items() if value},
            "notify": {"sms": bool(customer.get("contact")), "email": bool(customer.get("email"))},
            "reminder_enable": True,
            "notes": {key: str(value) for key, value in notes.items() if value is not None},
        }
        if callback_url:
            body["callback_url"] = callback_url
            body["callback_method"] = "get"
        return link_from_payload(self.request("POST", "/payment_links", json_body=body))

    # Payments

    def fetch_payment(self, payment_id: str) -> GatewayPayment:
        self._require_configured("fetch_payment")
        if not payment_id:
            raise ValueError("payment_id must be provided")
        return payment_from_payload(self.request("GET", f"/payments/{payment_id}"))

    def capture_payment(self, payment_id: str, amount_minor: int, currency: str) -> GatewayPayment:
        self._require_configured("capture_payment")
        body = {"amount": amount_minor, "currency": currency}
        return payment_from_payload(
            self.request("POST", f"/payments/{payment_id}/capture", json_body=body)
        )

    def refund_payment(
        self,
        payment_id: str,
        *,
        amount_minor: Optional[int] = None,
        notes: Optional[Dict[str, Any]] = None,
        idempotency_key: Optional[str] = None,
    ) -> GatewayRefund:
        """Refund a captured payment. Without ``amount_minor`` the full amount is refunded."""
        self._require_configured("refund_payment")
        body: Dict[str, Any] = {}
        if amount_minor is not None:
            body["amount"] = amount_minor
        if notes:
            body["notes"] = {key: str(value) for key, value in notes.items() if value is not None}
        headers = {"Idempotency-Key": idempotency_key} if idempotency_key else None
        return refund_from_payload(
            self.request("POST", f"/payments/{payment_id}/refund", json_body=body, headers=headers)
        )

    # Signatures

    def verify_payment_signature(self, order_id: str, payment_id: str, signature: str) -> bool:
        """Check the checkout signature ``HMAC_SHA256(order_id|payment_id)``. Never raises."""
        try:
            if not self.is_available():
                logger.warning("Payment signature check attempted without gateway credentials")
                return False
            return signature_matches(
                self._key_secret, payment_signature_payload(order_id, payment_id), signature
            )
        except Exception:
            logger.warning("Payment signature verification errored", exc_info=True)
            return False

    def validate_webhook_signature(self, raw_body: bytes, signature: str, secret: str) -> bool:
        """Check a webhook signature over the raw request body. Never raises."""
        return signature_matches(secret, raw_body, signature)

    def sign_payment(self, order_id: str, payment_id: str) -> str:
        """Signature the checkout would produce; used by local tooling and tests."""
        return compute_signature(self._key_secret, payment_signature_payload(order_id, payment_id))

    # Transport

    def request(
        self,
        method: str,
        path: str,
        *,
        json_body: Dict[str, Any] | None = None,
        params: Dict[str, Any] | None = None,
        headers: Dict[str, str] | None = None,
    ) -> Dict[str, Any]:
        """
        Perform a raw API request and return the parsed JSON payload.

        GETs are retried with exponential backoff on transport errors and
        retryable status codes. Writes are sent once; callers retry them with
        the same idempotency key.
        """
        attempts = self._max_retries if method.upper() == "GET" else 1
        attempt = 1
        while True:
            try:
                return self._send(method, path, json_body=json_body, params=params, headers=headers)
            except GatewayCommunicationError as exc:
                if attempt >= attempts or not exc.retryable:
                    raise
                delay = _retry_delay(attempt)
                logger.warning(
                    "Transient gateway failure, retrying",
                    extra={
                        "evt": "gateway_retry",
                        "method": method,
                        "path": path,
                        "attempt": attempt,
                        "delay": delay,
                        "error": exc.message,
                    },
                )
                self._sleep(delay)
                attempt += 1

    def _send(
        self,
        method: str,
        path: str,
        *,
        json_body: Dict[str, Any] | None,
        params: Dict[str, Any] | None,
        headers: Dict[str, str] | None,
    ) -> Dict[str, Any]:
        url = f"{self._base_url}{path}"
        with httpx.Client(
            timeout=self._timeout,
            transport=self._transport,
            auth=self._auth,
            headers={"Accept": "application/json"},
        ) as client:
            request = client.build_request(
                method,
                url,
                json=json_body,
                params=params,
                headers=headers,
            )
            try:
                response = client.send(request)
                response.raise_for_status()
            except httpx.HTTPStatusError as exc:
                status = exc.response.status_code
                error_payload: Any | None = None
                error_type: str | None = None
                try:
                    error_payload = exc.response.json()
                    if isinstance(error_payload, dict):
                        error = error_payload.get("error")
                        if isinstance(error, dict):
                            error_type = error.get("code") or error.get("reason")
                except json.JSONDecodeError:
                    error_payload = exc.response.text

                logger.error(
                    "Gateway API error %s for %s %s: %s",
                    status,
                    method,
                    path,
                    exc.response.text[:500],
                )
                prometheus_metrics.record_gateway_request(method, path, f"http_{status}")
                raise GatewayCommunicationError(
                    f"Payment gateway responded with status {status}",
                    status_code=status,
                    error_type=error_type,
                    error_body=error_payload,
                    retryable=status in _RETRYABLE_STATUSES,
                ) from exc
            except httpx.TimeoutException as exc:
                logger.error("Gateway request timed out for %s %s", method, path)
                prometheus_metrics.record_gateway_request(method, path, "timeout")
                raise GatewayCommunicationError("Payment gateway timed out") from exc
            except httpx.RequestError as exc:
                logger.error("Gateway request failure for %s %s: %s", method, path, str(exc))
                prometheus_metrics.record_gateway_request(method, path, "transport_error")
                raise GatewayCommunicationError("Failed to reach payment gateway") from exc

        prometheus_metrics.record_gateway_request(method, path, "ok")
        try:
            return cast(Dict[str, Any], response.json())
        except json.JSONDecodeError as exc:
            logger.error("Invalid JSON from gateway for %s %s: %s", method, path, response.text)
            raise GatewayCommunicationError(
                "Received malformed JSON from payment gateway", retryable=False
            ) from exc


class FakeRazorpayClient(RazorpayClient):
    """In-memory stand-in for local development and tests."""

    def __init__(self, *, key_id: str = "rzp_test_fake", key_secret: str = "fake_secret") -> None:
        super().__init__(key_id=key_id, key_secret=key_secret, base_url="https://fake.invalid/v1")
        self._logger = logging.getLogger(self.__class__.__name__)
        self.orders: Dict[str, Dict[str, Any]] = {}
        self.payments: Dict[str, Dict[str, Any]] = {}
        self.refunds: Dict[str, Dict[str, Any]] = {}
        self.payment_links: Dict[str, Dict[str, Any]] = {}
        self.calls: List[str] = []
        self._idempotent_results: Dict[str, Any] = {}
        self._failures: Dict[str, List[Exception]] = {}

    def fail_next(self, operation: str, error: Exception) -> None:
        """Make the next call to ``operation`` raise ``error``."""
        self._failures.setdefault(operation, []).append(error)

    def _maybe_fail(self, operation: str) -> None:
        self.calls.append(operation)
        pending = self._failures.get(operation)
        if pending:
            raise pending.pop(0)

    def create_order(
        self,
        *,
        amount_minor: int,
        currency: str,
        receipt: str,
        notes: Dict[str, Any],
        idempotency_key: Optional[str] = None,
    ) -> GatewayOrder:
        self._require_configured("create_order")
        self._maybe_fail("create_order")
        if idempotency_key and idempotency_key in self._idempotent_results:
            return cast(GatewayOrder, self._idempotent_results[idempotency_key])
        order_id = f"order_fake_{uuid4().hex[:14]}"
        self.orders[order_id] = {
            "id": order_id,
            "amount": amount_minor,
            "currency": currency,
            "receipt": receipt,
            "status": "created",
            "notes": {key: str(value) for key, value in notes.items() if value is not None},
        }
        order = order_from_payload(self.orders[order_id])
        if idempotency_key:
            self._idempotent_results[idempotency_key] = order
        self._logger.debug("Fake order created", extra={"order_id": order_id})
        return order

    def fetch_order(self, order_id: str) -> GatewayOrder:
        self._require_configured("fetch_order")
        self._maybe_fail("fetch_order")
        return order_from_payload(self.orders[order_id])

    def fetch_order_payments(self, order_id: str) -> List[GatewayPayment]:
        self._require_configured("fetch_order_payments")
        self._maybe_fail("fetch_order_payments")
        return [
            payment_from_payload(payment)
            for payment in self.payments.values()
            if payment.get("order_id") == order_id
        ]

    def fetch_payment(self, payment_id: str) -> GatewayPayment:
        self._require_configured("fetch_payment")
        self._maybe_fail("fetch_payment")
        if payment_id not in self.payments:
            raise GatewayCommunicationError(
                "Payment gateway responded with status 400",
                status_code=400,
                error_type="BAD_REQUEST_ERROR",
                retryable=False,
            )
        return payment_from_payload(self.payments[payment_id])

    def capture_payment(self, payment_id: str, amount_minor: int, currency: str) -> GatewayPayment:
        self._require_configured("capture_payment")
        self._maybe_fail("capture_payment")
        payment = self.payments[payment_id]
        payment["status"] = "captured"
        payment["amount"] = amount_minor
        payment["currency"] = currency
        return payment_from_payload(payment)

    def refund_payment(
        self,
        payment_id: str,
        *,
        amount_minor: Optional[int] = None,
        notes: Optional[Dict[str, Any]] = None,
        idempotency_key: Optional[str] = None,
    ) -> GatewayRefund:
        self._require_configured("refund_payment")
        self._maybe_fail("refund_payment")
        if idempotency_key and idempotency_key in self._idempotent_results:
            return cast(GatewayRefund, self._idempotent_results[idempotency_key])
        payment = self.payments[payment_id]
        refund_id = f"rfnd_fake_{uuid4().hex[:14]}"
        self.refunds[refund_id] = {
            "id": refund_id,
            "payment_id": payment_id,
            "amount": payment["amount"] if amount_minor is None else amount_minor,
            "currency": payment["currency"],
            "status": "processed",
            "notes": dict(notes or {}),
        }
        refund = refund_from_payload(self.refunds[refund_id])
        if idempotency_key:
            self._idempotent_results[idempotency_key] = refund
        return refund

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
        self._require_configured("create_payment_link")
        self._maybe_fail("create_payment_link")
        if any(link["reference_id"] == reference_id for link in self.payment_links.values()):
            raise GatewayCommunicationError(
                "Payment gateway responded with status 400",
                status_code=400,
                error_type="BAD_REQUEST_ERROR",
                retryable=False,
            )
        suffix = uuid4().hex[:14]
        link_id = f"plink_fake_{suffix}"
        self.payment_links[link_id] = {
            "id": link_id,
            "short_url": f"https://rzp.io/i/{suffix}",
            "amount": amount_minor,
            "currency": currency,
            "description": description,
            "reference_id": reference_id,
            "customer": dict(customer),
            "callback_url": callback_url,
            "status": "created",
            "notes": {key: str(value) for key, value in notes.items() if value is not None},
        }
        return link_from_payload(self.payment_links[link_id])

    def simulate_link_payment(
        self, link_id: str, *, payment_id: Optional[str] = None
    ) -> GatewayPayment:
        """Pretend the customer paid a hosted link; Razorpay backs each link with its own order."""
        link = self.payment_links[link_id]
        order_id = f"order_link_{uuid4().hex[:14]}"
        self.orders[order_id] = {
            "id": order_id,
            "amount": link["amount"],
            "currency": link["currency"],
            "receipt": link["reference_id"],
            "status": "created",
            "notes": dict(link["notes"]),
        }
        link["status"] = "paid"
        return self.simulate_payment(order_id, payment_id=payment_id)

    def simulate_payment(
        self,
        order_id: str,
        *,
        status: str = "captured",
        payment_id: Optional[str] = None,
        amount_minor: Optional[int] = None,
    ) -> GatewayPayment:
        """Pretend the customer completed checkout for ``order_id``."""
        order = self.orders[order_id]
        resolved_id = payment_id or f"pay_fake_{uuid4().hex[:14]}"
        self.payments[resolved_id] = {
            "id": resolved_id,
            "order_id": order_id,
            "status": status,
            "amount": order["amount"] if amount_minor is None else amount_minor,
            "currency": order["currency"],
            "notes": dict(order["notes"]),
            "error_code": "BAD_REQUEST_ERROR" if status == "failed" else None,
            "error_description": "Payment declined" if status == "failed" else None,
            "created_at": int(time.time()),
        }
        if status == "captured":
            order["status"] = "paid"
        return payment_from_payload(self.payments[resolved_id])
