from __future__ import annotations

from datetime import timedelta

import pytest

from sahayak.core.exceptions import NotFoundException, ValidationException
from sahayak.models.webhook_event import WebhookEvent
from sahayak.services.webhook_ledger_service import WebhookLedgerService
from tests.factories.booking_builders import utcnow


@pytest.fixture
def ledger(db):
    return WebhookLedgerService(db)


def _log(ledger, event_id="evt_1", **kwargs):
    return ledger.log_received(
        source="razorpay",
        event_type="payment.captured",
        payload={"event": "payment.captured"},
        event_id=event_id,
        **kwargs,
    )


def test_log_received_masks_signature_header(db, ledger):
    event = _log(
        ledger,
        headers={"X-Razorpay-Signature": "abc", "X-Razorpay-Event-Id": "evt_1", "Authorization": "t"},
    )

    assert event.status == "received"
    assert event.headers["X-Razorpay-Signature"] == "***"
    assert event.headers["Authorization"] == "***"
    assert event.headers["X-Razorpay-Event-Id"] == "evt_1"
    assert db.query(WebhookEvent).filter(WebhookEvent.id == event.id).one().event_id == "evt_1"


def test_redelivery_bumps_retry_count(ledger):
    first = _log(ledger)
    second = _log(ledger)

    assert second.id == first.id
    assert second.retry_count == 1
    assert second.last_retry_at is not None


def test_dedup_by_idempotency_key_without_event_id(ledger):
    first = _log(ledger, event_id=None, idempotency_key="sha_1")
    second = _log(ledger, event_id=None, idempotency_key="sha_1")
    third = _log(ledger, event_id=None, idempotency_key="sha_2")

    assert first.id == second.id
    assert third.id != first.id


def test_claim_is_exclusive(ledger):
    event = _log(ledger)

    assert ledger.mark_processing(event) is True
    assert event.status == "processing"
    assert ledger.mark_processing(event) is False


def test_failed_event_can_be_claimed_again(ledger):
    event = _log(ledger)
    ledger.mark_processing(event)
    ledger.mark_failed(event, error="boom", duration_ms=12)

    assert event.status == "failed"
    assert event.processing_error == "boom"
    assert ledger.mark_processing(event) is True
    assert event.processing_error is None


def test_processed_event_is_not_claimable(ledger):
    event = _log(ledger)
    ledger.mark_processing(event)
    ledger.mark_processed(event, related_booking_id="b1", duration_ms=5)

    assert event.status == "processed"
    assert event.related_booking_id == "b1"
    assert ledger.mark_processing(event) is False


def test_failed_events_listing(ledger):
    failed = _log(ledger, event_id="evt_f")
    ledger.mark_processing(failed)
    ledger.mark_failed(failed, error="boom")
    ok = _log(ledger, event_id="evt_ok")
    ledger.mark_processing(ok)
    ledger.mark_processed(ok)

    assert [e.id for e in ledger.get_failed_events(source="razorpay")] == [failed.id]
    assert ledger.get_failed_events(source="other") == []


def test_failed_events_outside_window_are_hidden(db, ledger):
    failed = _log(ledger)
    ledger.mark_processing(failed)
    ledger.mark_failed(failed, error="boom")
    failed.received_at = utcnow() - timedelta(hours=30)
    db.flush()

    assert ledger.get_failed_events(since_hours=24) == []
    assert len(ledger.get_failed_events(since_hours=48)) == 1


def test_replay_creates_linked_event(ledger):
    failed = _log(ledger)
    ledger.mark_processing(failed)
    ledger.mark_failed(failed, error="boom")

    replay = ledger.create_replay(failed.id)

    assert replay.id != failed.id
    assert replay.replay_of == failed.id
    assert replay.status == "received"
    assert replay.payload == failed.payload
    assert failed.replay_count == 1
    assert ledger.create_replay(failed.id).idempotency_key == f"replay_{failed.id}_2"


def test_replay_requires_failed_event(ledger):
    event = _log(ledger)

    with pytest.raises(ValidationException):
        ledger.create_replay(event.id)
    with pytest.raises(NotFoundException):
        ledger.create_replay("missing")


def test_abandoned_claim_expires_after_lease(db, ledger):
    event = _log(ledger)
    ledger.mark_processing(event)
    event.processing_started_at = utcnow() - timedelta(hours=1)
    db.flush()

    assert ledger.is_abandoned(event) is True
    assert ledger.mark_processing(event) is True
    assert ledger.is_abandoned(event) is False
    assert ledger.mark_processing(event) is False


def test_replay_of_abandoned_event(db, ledger):
    stuck = _log(ledger, event_id="evt_stuck")
    ledger.mark_processing(stuck)
    with pytest.raises(ValidationException):
        ledger.create_replay(stuck.id)

    stuck.processing_started_at = utcnow() - timedelta(hours=1)
    db.flush()
    replay = ledger.create_replay(stuck.id)

    assert replay.replay_of == stuck.id
    assert replay.status == "received"


def test_received_event_past_lease_is_replayable(db, ledger):
    lost = _log(ledger, event_id="evt_lost")
    lost.received_at = utcnow() - timedelta(hours=1)
    db.flush()

    assert ledger.create_replay(lost.id).replay_of == lost.id
