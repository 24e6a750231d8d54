from __future__ import annotations

import json
from typing import List

import httpx
import pytest

from sahayak.core.exceptions import GatewayCommunicationError, PaymentUnavailable
from sahayak.integrations.payment_gateway import compute_signature, signature_matches
from sahayak.integrations.razorpay_client import FakeRazorpayClient, RazorpayClient


def _client(handler, **kwargs) -> RazorpayClient:
    return RazorpayClient(
        key_id="rzp_test_key",
        key_secret="rzp_test_secret",
        base_url="https://api.example.test/v1",
        transport=httpx.MockTransport(handler),
        sleep=lambda _: None,
        **kwargs,
    )


def test_unconfigured_client_refuses_operations():
    client = RazorpayClient()

    assert client.is_available() is False
    with pytest.raises(PaymentUnavailable):
        client.create_order(amount_minor=100, currency="INR", receipt="r", notes={})
    assert client.verify_payment_signature("order_1", "pay_1", "sig") is False


def test_create_order_sends_minor_amount_and_idempotency_key():
    seen: List[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        body = json.loads(request.content)
        return httpx.Response(
            200,
            json={
                "id": "order_123",
                "amount": body["amount"],
                "currency": body["currency"],
                "receipt": body["receipt"],
                "status": "created",
                "notes": body["notes"],
            },
        )

    order = _client(handler).create_order(
        amount_minor=59000,
        currency="INR",
        receipt="booking_BK1",
        notes={"booking_id": "b1", "unused": None},
        idempotency_key="order_b1_v1",
    )

    assert order.order_id == "order_123"
    assert order.amount_minor == 59000
    assert order.notes == {"booking_id": "b1"}
    request = seen[0]
    assert request.method == "POST"
    assert request.url.path == "/v1/orders"
    assert request.headers["Idempotency-Key"] == "order_b1_v1"
    assert request.headers["Authorization"].startswith("Basic ")


def test_create_order_rejects_non_positive_amount():
    client = _client(lambda request: httpx.Response(200, json={}))
    with pytest.raises(ValueError):
        client.create_order(amount_minor=0, currency="INR", receipt="r", notes={})


def test_create_payment_link_posts_customer_and_callback():
    seen: List[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        body = json.loads(request.content)
        return httpx.Response(
            200,
            json={
                "id": "plink_123",
                "short_url": "https://rzp.io/i/abc",
                "amount": body["amount"],
                "currency": body["currency"],
                "reference_id": body["reference_id"],
                "status": "created",
                "notes": body["notes"],
            },
        )

    link = _client(handler).create_payment_link(
        amount_minor=59000,
        currency="INR",
        description="Payment for Tap repair - BK1",
        reference_id="BK1",
        customer={"name": "", "email": "", "contact": "9876543210"},
        notes={"booking_id": "b1"},
        callback_url="https://app.example.test/payment/callback",
    )

    assert link.link_id == "plink_123"
    assert link.short_url == "https://rzp.io/i/abc"
    assert link.notes == {"booking_id": "b1"}
    body = json.loads(seen[0].content)
    assert seen[0].url.path == "/v1/payment_links"
    assert body["customer"] == {"contact": "9876543210"}
    assert body["notify"] == {"sms": True, "email": False}
    assert body["callback_method"] == "get"


def test_fake_gateway_refuses_duplicate_link_reference():
    fake = FakeRazorpayClient()
    kwargs = dict(
        amount_minor=100,
        currency="INR",
        description="d",
        reference_id="BK1",
        customer={},
        notes={"booking_id": "b1"},
    )
    fake.create_payment_link(**kwargs)

    with pytest.raises(GatewayCommunicationError) as exc_info:
        fake.create_payment_link(**kwargs)
    assert exc_info.value.gateway_status == 400


def test_get_requests_are_retried_on_server_errors():
    attempts = {"count": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        attempts["count"] += 1
        if attempts["count"] < 3:
            return httpx.Response(503, json={"error": {"code": "SERVER_ERROR"}})
        return httpx.Response(
            200,
            json={"id": "pay_1", "order_id": "order_1", "status": "captured", "amount": 59000, "currency": "INR", "notes": []},
        )

    payment = _client(handler, max_retries=3).fetch_payment("pay_1")

    assert attempts["count"] == 3
    assert payment.is_captured
    assert payment.notes == {}


def test_writes_are_not_retried():
    attempts = {"count": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        attempts["count"] += 1
        return httpx.Response(502, json={"error": {"code": "SERVER_ERROR"}})

    with pytest.raises(GatewayCommunicationError) as exc_info:
        _client(handler).capture_payment("pay_1", 59000, "INR")

    assert attempts["count"] == 1
    assert exc_info.value.status_code == 502
    assert exc_info.value.gateway_status == 502
    assert exc_info.value.retryable is True


def test_client_error_is_not_retryable_and_keeps_gateway_code():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            400, json={"error": {"code": "BAD_REQUEST_ERROR", "description": "bad id"}}
        )

    with pytest.raises(GatewayCommunicationError) as exc_info:
        _client(handler).fetch_payment("pay_missing")

    assert exc_info.value.retryable is False
    assert exc_info.value.error_type == "BAD_REQUEST_ERROR"


def test_timeout_maps_to_unavailable():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("timed out", request=request)

    with pytest.raises(GatewayCommunicationError) as exc_info:
        _client(handler, max_retries=1).fetch_order("order_1")

    assert exc_info.value.status_code == 503
    assert exc_info.value.gateway_status is None


def test_order_payments_are_parsed():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/v1/orders/order_1/payments"
        return httpx.Response(
            200,
            json={
                "entity": "collection",
                "count": 2,
                "items": [
                    {"id": "pay_a", "order_id": "order_1", "status": "failed", "amount": 59000, "currency": "INR"},
                    {"id": "pay_b", "order_id": "order_1", "status": "captured", "amount": 59000, "currency": "INR"},
                ],
            },
        )

    payments = _client(handler).fetch_order_payments("order_1")
    assert [p.payment_id for p in payments] == ["pay_a", "pay_b"]
    assert payments[0].is_failed


def test_payment_signature_verification():
    client = _client(lambda request: httpx.Response(200, json={}))
    good = compute_signature("rzp_test_secret", b"order_1|pay_1")

    assert client.verify_payment_signature("order_1", "pay_1", good) is True
    assert client.sign_payment("order_1", "pay_1") == good
    assert client.verify_payment_signature("order_1", "pay_2", good) is False
    assert client.verify_payment_signature("order_1", "pay_1", "") is False


def test_webhook_signature_check_never_raises():
    body = b'{"event":"payment.captured"}'
    signature = compute_signature("whsec", body)

    assert signature_matches("whsec", body, signature) is True
    assert signature_matches("whsec", body + b" ", signature) is False
    assert signature_matches("", body, signature) is False
    assert signature_matches("whsec", body, None) is False


class TestFakeRazorpayClient:
    def test_order_creation_is_idempotent_per_key(self):
        fake = FakeRazorpayClient()
        first = fake.create_order(amount_minor=100, currency="INR", receipt="r", notes={}, idempotency_key="k")
        second = fake.create_order(amount_minor=100, currency="INR", receipt="r", notes={}, idempotency_key="k")

        assert first.order_id == second.order_id
        assert len(fake.orders) == 1

    def test_simulated_payment_is_visible_on_the_order(self):
        fake = FakeRazorpayClient()
        order = fake.create_order(amount_minor=59000, currency="INR", receipt="r", notes={"booking_id": "b1"})
        payment = fake.simulate_payment(order.order_id)

        assert payment.is_captured
        assert payment.notes == {"booking_id": "b1"}
        assert [p.payment_id for p in fake.fetch_order_payments(order.order_id)] == [payment.payment_id]
        assert fake.verify_payment_signature(
            order.order_id, payment.payment_id, fake.sign_payment(order.order_id, payment.payment_id)
        )

    def test_fail_next_raises_once(self):
        fake = FakeRazorpayClient()
        fake.fail_next("fetch_payment", GatewayCommunicationError())

        with pytest.raises(GatewayCommunicationError):
            fake.fetch_payment("pay_x")
        with pytest.raises(GatewayCommunicationError) as exc_info:
            fake.fetch_payment("pay_x")
        # second failure is the unknown-payment response, not the injected one
        assert exc_info.value.gateway_status == 400
