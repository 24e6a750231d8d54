"""
Razorpay webhook endpoints (v1).

Mounted under /api/v1/payments/webhook

Every verified delivery is written to the webhook ledger and acknowledged
with 200 before any booking is touched; the event itself is applied in a
background task with its own database session. A delivery that fails
processing stays ``failed`` in the ledger and is picked up again when the
gateway redelivers it or an admin replays it. A row whose worker died
mid-flight is recovered the same way once its processing lease expires.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
from time import monotonic
from typing import Any, Callable

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query, Request, status
from sqlalchemy.orm import Session

from ...api.dependencies import (
    get_db,
    get_payment_gateway,
    get_session_factory,
    get_webhook_ledger_service,
    require_admin,
)
from ...core.config import settings
from ...core.enums import WebhookEventStatus
from ...core.exceptions import DomainException, SignatureInvalid
from ...integrations.payment_gateway import PaymentGateway
from ...models.webhook_event import WebhookEvent
from ...principal import Actor
from ...schemas.webhook_responses import (
    WebhookAckResponse,
    WebhookEventListResponse,
    WebhookEventSummary,
    WebhookReplayResponse,
)
from ...services.webhook_ledger_service import WebhookLedgerService
from ...services.webhook_processor import PaymentWebhookProcessor

logger = logging.getLogger(__name__)

router = APIRouter(tags=["payment-webhooks-v1"])

WEBHOOK_SOURCE = "razorpay"
_MAX_WEBHOOK_BODY_BYTES = 256 * 1024
_SETTLED_LEDGER_STATUSES = {
    WebhookEventStatus.PROCESSED.value,
    WebhookEventStatus.IGNORED.value,
}


def _validate_webhook_body_size(
    *,
    content_length_header: str | None = None,
    raw_body: bytes | None = None,
) -> None:
    if content_length_header is not None:
        trimmed = content_length_header.strip()
        if trimmed:
            try:
                declared_size = int(trimmed)
            except ValueError as exc:
                raise HTTPException(
                    status_code=status.HTTP_400_BAD_REQUEST,
                    detail="Invalid Content-Length header",
                ) from exc
            if declared_size > _MAX_WEBHOOK_BODY_BYTES:
                raise HTTPException(
                    status_code=status.HTTP_413_CONTENT_TOO_LARGE,
                    detail="Webhook payload too large",
                )

    if raw_body is not None and len(raw_body) > _MAX_WEBHOOK_BODY_BYTES:
        raise HTTPException(
            status_code=status.HTTP_413_CONTENT_TOO_LARGE,
            detail="Webhook payload too large",
        )


def _verify_razorpay_signature(
    request: Request, raw_body: bytes, gateway: PaymentGateway
) -> None:
    """Check ``X-Razorpay-Signature`` against the raw request body."""
    secret_value = settings.razorpay_webhook_secret.get_secret_value()
    if not secret_value:
        logger.error("RAZORPAY_WEBHOOK_SECRET is not configured")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Webhook verification misconfigured",
        )

    provided = (request.headers.get("x-razorpay-signature") or "").strip()
    if not provided or not gateway.validate_webhook_signature(raw_body, provided, secret_value):
        logger.warning(
            "Razorpay webhook signature mismatch",
            extra={
                "evt": "razorpay_webhook_invalid_signature",
                "event_id": request.headers.get("x-razorpay-event-id"),
                "signature_present": bool(provided),
                "client": request.client.host if request.client else None,
            },
        )
        raise SignatureInvalid("Invalid webhook signature").to_http_exception()


def _parse_payload(raw_body: bytes) -> dict[str, Any]:
    try:
        payload = json.loads(raw_body.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid JSON payload",
        )
    if not isinstance(payload, dict):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Webhook payload must be a JSON object",
        )
    return payload


def process_ledgered_event(
    event_id: str,
    gateway: PaymentGateway,
    session_factory: Callable[[], Session],
) -> None:
    """
    Claim a ledger row and apply it to its booking.

    Runs outside the request with a session of its own. Another worker
    holding the same row makes this a no-op.
    """
    db = session_factory()
    try:
        ledger = WebhookLedgerService(db)
        event = ledger.get_event(event_id)
        if event is None:
            logger.warning("Webhook ledger event %s disappeared before processing", event_id)
            return
        with ledger.transaction():
            claimed = ledger.mark_processing(event)
        if not claimed:
            logger.info(
                "Webhook event %s is already claimed (status=%s)", event_id, event.status
            )
            return

        start_time = monotonic()
        processor = PaymentWebhookProcessor(db, gateway)
        try:
            outcome = processor.process(event.payload)
        except Exception as exc:
            logger.exception(
                "Razorpay webhook processing failed",
                extra={"webhook_event_id": event_id, "event_type": event.event_type},
            )
            db.rollback()
            failed = ledger.get_event(event_id)
            if failed is not None:
                with ledger.transaction():
                    ledger.mark_failed(
                        failed, error=str(exc), duration_ms=ledger.elapsed_ms(start_time)
                    )
            return

        with ledger.transaction():
            ledger.mark_processed(
                event,
                related_booking_id=outcome.booking_id,
                duration_ms=ledger.elapsed_ms(start_time),
                status=outcome.status,
            )
        logger.info(
            "Razorpay webhook %s %s",
            event.event_type,
            outcome.status,
            extra={"webhook_event_id": event_id, "booking_id": outcome.booking_id},
        )
    finally:
        db.close()


@router.post("/razorpay", response_model=WebhookAckResponse)
async def handle_razorpay_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(get_payment_gateway),
    session_factory: Callable[[], Session] = Depends(get_session_factory),
) -> WebhookAckResponse:
    """Record a Razorpay event and schedule it for processing."""

    # 1. Size and signature checks on the raw body
    _validate_webhook_body_size(content_length_header=request.headers.get("content-length"))
    raw_body = await request.body()
    _validate_webhook_body_size(raw_body=raw_body)
    _verify_razorpay_signature(request, raw_body, gateway)

    # 2. Parse JSON
    payload = _parse_payload(raw_body)
    event_type_raw = payload.get("event")
    event_type = event_type_raw.strip() if isinstance(event_type_raw, str) else ""

    # 3. Persistent dedup via webhook ledger
    event_id = (request.headers.get("x-razorpay-event-id") or "").strip() or None
    idempotency_key = None if event_id else hashlib.sha256(raw_body).hexdigest()
    ledger_service = WebhookLedgerService(db)

    def _record() -> WebhookEvent:
        with ledger_service.transaction():
            return ledger_service.log_received(
                source=WEBHOOK_SOURCE,
                event_type=event_type,
                payload=payload,
                headers=dict(request.headers),
                event_id=event_id,
                idempotency_key=idempotency_key,
            )

    try:
        ledger_event = await asyncio.to_thread(_record)
    except DomainException as exc:
        raise exc.to_http_exception()

    if ledger_event.status in _SETTLED_LEDGER_STATUSES:
        logger.info(
            "Razorpay webhook retry for already-handled event %s (retry_count=%s)",
            ledger_event.id,
            ledger_event.retry_count,
        )
        return WebhookAckResponse(ok=True, event_id=ledger_event.id, duplicate=True)
    if ledger_event.status == WebhookEventStatus.PROCESSING.value:
        if not ledger_service.is_abandoned(ledger_event):
            return WebhookAckResponse(ok=True, event_id=ledger_event.id, duplicate=True)
        logger.warning(
            "Reclaiming webhook event %s abandoned mid-processing",
            ledger_event.id,
            extra={"started_at": str(ledger_event.processing_started_at)},
        )

    # 4. Apply after the response is sent
    background_tasks.add_task(process_ledgered_event, ledger_event.id, gateway, session_factory)
    return WebhookAckResponse(ok=True, event_id=ledger_event.id)


@router.get("/events/failed", response_model=WebhookEventListResponse)
async def list_failed_webhook_events(
    since_hours: int = Query(24, ge=1, le=24 * 30),
    limit: int = Query(50, ge=1, le=200),
    _: Actor = Depends(require_admin),
    ledger_service: WebhookLedgerService = Depends(get_webhook_ledger_service),
) -> WebhookEventListResponse:
    events = await asyncio.to_thread(
        ledger_service.get_failed_events,
        source=WEBHOOK_SOURCE,
        since_hours=since_hours,
        limit=limit,
    )
    items = [WebhookEventSummary.model_validate(e, from_attributes=True) for e in events]
    return WebhookEventListResponse(items=items, total=len(items))


@router.post("/events/{event_id}/replay", response_model=WebhookReplayResponse)
async def replay_webhook_event(
    event_id: str,
    background_tasks: BackgroundTasks,
    admin: Actor = Depends(require_admin),
    ledger_service: WebhookLedgerService = Depends(get_webhook_ledger_service),
    gateway: PaymentGateway = Depends(get_payment_gateway),
    session_factory: Callable[[], Session] = Depends(get_session_factory),
) -> WebhookReplayResponse:
    """Re-run a failed or abandoned event through the processor as a new ledger row."""

    def _replay() -> WebhookEvent:
        with ledger_service.transaction():
            return ledger_service.create_replay(event_id)

    try:
        replay = await asyncio.to_thread(_replay)
    except DomainException as exc:
        raise exc.to_http_exception()

    logger.info(
        "Webhook event %s replayed as %s",
        event_id,
        replay.id,
        extra={"actor_id": admin.id},
    )
    background_tasks.add_task(process_ledgered_event, replay.id, gateway, session_factory)
    return WebhookReplayResponse(ok=True, event_id=replay.id, replay_of=event_id)
