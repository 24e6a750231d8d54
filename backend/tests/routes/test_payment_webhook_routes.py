from __future__ import annotations

from datetime import timedelta

import pytest

from sahayak.core.exceptions import GatewayCommunicationError
from sahayak.models.webhook_event import WebhookEvent
from sahayak.services.webhook_ledger_service import WebhookLedgerService
from tests.factories.booking_builders import (
    ADMIN,
    CUSTOMER,
    PROVIDER,
    auth_headers,
    booking_request_json,
    encode_event,
    payment_entity,
    sign_webhook,
    utcnow,
    webhook_event,
)

WEBHOOK_URL = "/api/v1/payments/webhook/razorpay"
FAILED_EVENTS_URL = "/api/v1/payments/webhook/events/failed"


def _deliver(client, event, *, event_id=None, signature=None):
    body = encode_event(event)
    headers = {
        "Content-Type": "application/json",
        "X-Razorpay-Signature": signature if signature is not None else sign_webhook(body),
    }
    if event_id:
        headers["X-Razorpay-Event-Id"] = event_id
    return client.post(WEBHOOK_URL, content=body, headers=headers)


def _ledger_row(session_factory, ledger_id):
    session = session_factory()
    try:
        return session.get(WebhookEvent, ledger_id)
    finally:
        session.close()


@pytest.fixture
def ordered_booking(client):
    booking = client.post(
        "/api/v1/bookings", json=booking_request_json(), headers=auth_headers(CUSTOMER)
    ).json()
    order = client.post(
        "/api/v1/payments/create-order",
        json={"bookingId": booking["id"]},
        headers=auth_headers(CUSTOMER),
    ).json()
    return booking, order


def _captured_event(booking, order, payment_id="pay_wh_1"):
    return webhook_event(
        "payment.captured",
        "payment",
        payment_entity(payment_id, order["orderId"], booking_id=booking["id"]),
    )


def _booking(client, booking_id):
    return client.get(f"/api/v1/bookings/{booking_id}", headers=auth_headers(CUSTOMER)).json()


def test_missing_signature_is_rejected(client, ordered_booking):
    response = _deliver(client, _captured_event(*ordered_booking), signature="")

    assert response.status_code == 400
    assert response.json()["code"] == "SIGNATURE_INVALID"


def test_tampered_body_is_rejected(client, ordered_booking):
    booking, order = ordered_booking
    signature = sign_webhook(encode_event(_captured_event(booking, order)))

    response = _deliver(client, _captured_event(booking, order, "pay_other"), signature=signature)

    assert response.status_code == 400


def test_non_json_body_is_rejected(client):
    body = b"not json"

    response = client.post(
        WEBHOOK_URL, content=body, headers={"X-Razorpay-Signature": sign_webhook(body)}
    )

    assert response.status_code == 400


def test_captured_event_is_acknowledged_then_applied(client, session_factory, ordered_booking):
    booking, order = ordered_booking

    response = _deliver(client, _captured_event(booking, order), event_id="evt_cap_1")

    assert response.status_code == 200
    ack = response.json()
    assert ack["ok"] is True
    assert ack["duplicate"] is False

    # TestClient runs background tasks before returning
    row = _ledger_row(session_factory, ack["eventId"])
    assert row.status == "processed"
    assert row.related_booking_id == booking["id"]
    assert row.headers["x-razorpay-signature"] == "***"

    stored = _booking(client, booking["id"])
    assert stored["status"] == "confirmed"
    assert stored["payment"]["status"] == "paid"
    assert stored["payment"]["transactionId"] == "pay_wh_1"


def test_redelivery_is_reported_as_duplicate(client, session_factory, ordered_booking):
    event = _captured_event(*ordered_booking)
    first = _deliver(client, event, event_id="evt_cap_1").json()

    second = _deliver(client, event, event_id="evt_cap_1").json()

    assert second["eventId"] == first["eventId"]
    assert second["duplicate"] is True
    assert _ledger_row(session_factory, first["eventId"]).retry_count == 1


def test_body_hash_dedups_deliveries_without_event_id(client, ordered_booking):
    event = _captured_event(*ordered_booking)
    first = _deliver(client, event).json()

    second = _deliver(client, event).json()

    assert second["eventId"] == first["eventId"]
    assert second["duplicate"] is True


def test_uncorrelated_event_is_ledgered_as_ignored(client, session_factory):
    event = webhook_event("payment.captured", "payment", payment_entity("pay_x", "order_unknown"))

    ack = _deliver(client, event, event_id="evt_orphan").json()

    assert _ledger_row(session_factory, ack["eventId"]).status == "ignored"


def test_webhook_and_verify_settle_once(client, gateway, ordered_booking):
    booking, order = ordered_booking
    payment = gateway.simulate_payment(order["orderId"], payment_id="pay_wh_1")
    _deliver(client, _captured_event(booking, order), event_id="evt_cap_1")

    verify = client.post(
        "/api/v1/payments/verify",
        json={
            "bookingId": booking["id"],
            "razorpay_order_id": order["orderId"],
            "razorpay_payment_id": payment.payment_id,
            "razorpay_signature": gateway.sign_payment(order["orderId"], payment.payment_id),
        },
        headers=auth_headers(CUSTOMER),
    )

    assert verify.status_code == 200
    assert verify.json()["alreadySettled"] is True
    history = client.get(
        f"/api/v1/bookings/{booking['id']}/history", headers=auth_headers(CUSTOMER)
    ).json()["history"]
    assert [h["status"] for h in history] == ["pending", "confirmed"]


class TestFailedEvents:
    @pytest.fixture
    def failed_refund_event(self, client, gateway, session_factory, ordered_booking):
        """A refund.created delivery whose processing failed on a gateway outage."""
        booking, order = ordered_booking
        payment = gateway.simulate_payment(order["orderId"])
        client.post(
            "/api/v1/payments/reconcile",
            json={"bookingId": booking["id"]},
            headers=auth_headers(CUSTOMER),
        )
        client.delete(f"/api/v1/bookings/{booking['id']}", headers=auth_headers(PROVIDER))
        refund = gateway.refund_payment(payment.payment_id, amount_minor=59000)
        event = webhook_event(
            "refund.created",
            "refund",
            {
                "id": refund.refund_id,
                "entity": "refund",
                "payment_id": payment.payment_id,
                "amount": refund.amount_minor,
                "currency": "INR",
                "status": "processed",
            },
        )
        gateway.fail_next("fetch_payment", GatewayCommunicationError("Payment gateway timed out"))

        ack = _deliver(client, event, event_id="evt_refund_1").json()

        row = _ledger_row(session_factory, ack["eventId"])
        assert row.status == "failed"
        assert "timed out" in row.processing_error
        return booking, ack["eventId"]

    def test_failed_event_leaves_booking_untouched(self, client, failed_refund_event):
        booking, _ = failed_refund_event

        assert _booking(client, booking["id"])["payment"]["status"] == "paid"

    def test_admin_lists_failed_events(self, client, failed_refund_event):
        _, ledger_id = failed_refund_event

        response = client.get(FAILED_EVENTS_URL, headers=auth_headers(ADMIN))

        assert response.status_code == 200
        body = response.json()
        assert body["total"] == 1
        assert body["items"][0]["id"] == ledger_id
        assert body["items"][0]["eventType"] == "refund.created"

    def test_failed_events_are_admin_only(self, client, failed_refund_event):
        response = client.get(FAILED_EVENTS_URL, headers=auth_headers(CUSTOMER))

        assert response.status_code == 403

    def test_redelivery_reprocesses_failed_event(self, client, session_factory, failed_refund_event):
        booking, ledger_id = failed_refund_event
        row = _ledger_row(session_factory, ledger_id)

        response = client.post(
            WEBHOOK_URL,
            content=encode_event(row.payload),
            headers={
                "X-Razorpay-Signature": sign_webhook(encode_event(row.payload)),
                "X-Razorpay-Event-Id": "evt_refund_1",
            },
        )

        assert response.json()["duplicate"] is False
        assert _ledger_row(session_factory, ledger_id).status == "processed"
        assert _booking(client, booking["id"])["payment"]["status"] == "refunded"

    def test_admin_replay(self, client, session_factory, failed_refund_event):
        booking, ledger_id = failed_refund_event

        response = client.post(
            f"/api/v1/payments/webhook/events/{ledger_id}/replay", headers=auth_headers(ADMIN)
        )

        assert response.status_code == 200
        body = response.json()
        assert body["replayOf"] == ledger_id
        replay = _ledger_row(session_factory, body["eventId"])
        assert replay.replay_of == ledger_id
        assert replay.status == "processed"
        assert _booking(client, booking["id"])["payment"]["status"] == "refunded"

    def test_replay_of_unknown_event(self, client):
        response = client.post(
            "/api/v1/payments/webhook/events/missing/replay", headers=auth_headers(ADMIN)
        )

        assert response.status_code == 404


class TestAbandonedEvents:
    @pytest.fixture
    def claim_without_finishing(self, session_factory):
        """Ledger and claim a delivery the way a worker that then died would."""

        def _claim(event, event_id, *, claimed_ago):
            session = session_factory()
            try:
                ledger = WebhookLedgerService(session)
                with ledger.transaction():
                    row = ledger.log_received(
                        source="razorpay",
                        event_type=event["event"],
                        payload=event,
                        event_id=event_id,
                    )
                with ledger.transaction():
                    ledger.mark_processing(row)
                    row.processing_started_at = utcnow() - claimed_ago
                return row.id
            finally:
                session.close()

        return _claim

    def test_redelivery_inside_lease_is_duplicate(
        self, client, session_factory, ordered_booking, claim_without_finishing
    ):
        event = _captured_event(*ordered_booking)
        ledger_id = claim_without_finishing(event, "evt_live", claimed_ago=timedelta(seconds=5))

        ack = _deliver(client, event, event_id="evt_live").json()

        assert ack["eventId"] == ledger_id
        assert ack["duplicate"] is True
        assert _ledger_row(session_factory, ledger_id).status == "processing"

    def test_redelivery_recovers_abandoned_event(
        self, client, session_factory, ordered_booking, claim_without_finishing
    ):
        booking, order = ordered_booking
        event = _captured_event(booking, order)
        ledger_id = claim_without_finishing(event, "evt_stuck", claimed_ago=timedelta(hours=1))

        ack = _deliver(client, event, event_id="evt_stuck").json()

        assert ack["eventId"] == ledger_id
        assert ack["duplicate"] is False
        assert _ledger_row(session_factory, ledger_id).status == "processed"
        assert _booking(client, booking["id"])["status"] == "confirmed"

    def test_admin_replays_abandoned_event(
        self, client, session_factory, ordered_booking, claim_without_finishing
    ):
        booking, order = ordered_booking
        event = _captured_event(booking, order)
        ledger_id = claim_without_finishing(event, "evt_stuck", claimed_ago=timedelta(hours=1))

        response = client.post(
            f"/api/v1/payments/webhook/events/{ledger_id}/replay", headers=auth_headers(ADMIN)
        )

        assert response.status_code == 200
        assert _ledger_row(session_factory, response.json()["eventId"]).status == "processed"
        assert _booking(client, booking["id"])["payment"]["status"] == "paid"

    def test_replay_refuses_live_claim(self, client, ordered_booking, claim_without_finishing):
        event = _captured_event(*ordered_booking)
        ledger_id = claim_without_finishing(event, "evt_live", claimed_ago=timedelta(seconds=5))

        response = client.post(
            f"/api/v1/payments/webhook/events/{ledger_id}/replay", headers=auth_headers(ADMIN)
        )

        assert response.status_code == 400
        assert response.json()["code"] == "WEBHOOK_NOT_REPLAYABLE"


def test_health_and_metrics(client):
    health = client.get("/health")

    assert health.status_code == 200
    assert health.json()["status"] == "healthy"
    assert health.json()["checks"] == {"database": True, "payment_gateway": True}

    assert client.get("/live").json() == {"ok": True}

    metrics = client.get("/metrics")
    assert metrics.status_code == 200
    assert "sahayak_service_operations_total" in metrics.text
