# backend/sahayak/services/webhook_processor.py
"""
Razorpay webhook dispatch.

Turns a verified, ledgered gateway event into payment settlement calls.
Handlers resolve the booking through the ``BookingStore`` interface, using
the ``booking_id`` note embedded at order (or payment link) creation and
falling back to the gateway order id. Gateway lookups happen before the database transaction is
opened; the settlement itself runs in one transaction per event.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Mapping, Optional

from sqlalchemy.orm import Session

from ..core.enums import WebhookEventStatus
from ..core.exceptions import ValidationException
from ..integrations.payment_gateway import PaymentGateway
from ..integrations.razorpay_client import payment_from_payload, refund_from_payload
from ..monitoring.prometheus_metrics import prometheus_metrics
from ..principal import WEBHOOK_ACTOR, Actor
from ..repositories.booking_repository import BookingRepository
from .base import BaseService
from .payment_settlement import BookingStore, PaymentSettlement


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class WebhookOutcome:
    status: str
    event_type: str
    booking_id: Optional[str] = None
    detail: Optional[str] = None


def _entity(event: Mapping[str, Any], name: str) -> Dict[str, Any]:
    payload = event.get("payload") or {}
    wrapper = payload.get(name) if isinstance(payload, dict) else None
    entity = wrapper.get("entity") if isinstance(wrapper, dict) else None
    if not isinstance(entity, dict) or not entity.get("id"):
        raise ValidationException(
            f"Webhook payload is missing the {name} entity",
            code="MALFORMED_WEBHOOK",
            details={"event": event.get("event")},
        )
    return entity


def _link_notes(link: Mapping[str, Any]) -> Dict[str, Any]:
    notes = link.get("notes")
    return dict(notes) if isinstance(notes, dict) else {}


class PaymentWebhookProcessor(BaseService):
    """Applies gateway webhook events to bookings and their payments."""

    def __init__(
        self,
        db: Session,
        gateway: PaymentGateway,
        *,
        store: Optional[BookingStore] = None,
        settlement: Optional[PaymentSettlement] = None,
        actor: Actor = WEBHOOK_ACTOR,
        clock: Callable[[], datetime] = _utcnow,
    ):
        super().__init__(db)
        self.gateway = gateway
        self.store: BookingStore = store or BookingRepository(db)
        self.settlement = settlement or PaymentSettlement(db, store=self.store)
        self.actor = actor
        self.clock = clock
        self._handlers: Dict[str, Callable[[Mapping[str, Any]], WebhookOutcome]] = {
            "payment.captured": self._handle_payment_captured,
            "payment.failed": self._handle_payment_failed,
            "refund.created": self._handle_refund_created,
            "order.paid": self._handle_order_paid,
            "payment_link.paid": self._handle_payment_link_paid,
        }

    @BaseService.measure_operation("process_webhook")
    def process(self, event: Mapping[str, Any]) -> WebhookOutcome:
        """Dispatch one event. Unknown event types are ignored."""
        event_type = str(event.get("event") or "")
        handler = self._handlers.get(event_type)
        if handler is None:
            self.logger.info("Ignoring unhandled webhook event type %s", event_type or "<none>")
            outcome = WebhookOutcome(
                status=WebhookEventStatus.IGNORED.value,
                event_type=event_type,
                detail="unhandled event type",
            )
        else:
            outcome = handler(event)
        prometheus_metrics.record_webhook_event(event_type or "unknown", outcome.status)
        return outcome

    def _event_time(self, event: Mapping[str, Any]) -> datetime:
        created_at = event.get("created_at")
        if isinstance(created_at, (int, float)) and not isinstance(created_at, bool):
            return datetime.fromtimestamp(created_at, tz=timezone.utc)
        return self.clock()

    def _resolve_booking_id(
        self, notes: Mapping[str, Any], order_id: Optional[str]
    ) -> Optional[str]:
        booking_id = notes.get("booking_id")
        if booking_id and self.store.get_booking(str(booking_id)) is not None:
            return str(booking_id)
        if order_id:
            booking = self.store.get_by_gateway_order_id(order_id)
            if booking is not None:
                return booking.id
        return None

    def _uncorrelated(self, event_type: str, **context: Any) -> WebhookOutcome:
        self.logger.warning(
            "Webhook %s does not match any booking", event_type, extra={"context": context}
        )
        return WebhookOutcome(
            status=WebhookEventStatus.IGNORED.value,
            event_type=event_type,
            detail="no matching booking",
        )

    def _handle_payment_captured(self, event: Mapping[str, Any]) -> WebhookOutcome:
        payment = payment_from_payload(_entity(event, "payment"))
        booking_id = self._resolve_booking_id(payment.notes, payment.order_id)
        if booking_id is None:
            return self._uncorrelated(
                "payment.captured", payment_id=payment.payment_id, order_id=payment.order_id
            )

        with self.transaction():
            result = self.settlement.settle_capture(
                booking_id,
                transaction_id=payment.payment_id,
                amount_minor=payment.amount_minor,
                captured_at=self._event_time(event),
                actor=self.actor,
                source="webhook",
            )
        return WebhookOutcome(
            status=WebhookEventStatus.PROCESSED.value,
            event_type="payment.captured",
            booking_id=booking_id,
            detail=result.action,
        )

    def _handle_payment_link_paid(self, event: Mapping[str, Any]) -> WebhookOutcome:
        link = _entity(event, "payment_link")
        payment = payment_from_payload(_entity(event, "payment"))
        booking_id = self._resolve_booking_id(_link_notes(link), None)
        if booking_id is None:
            booking_id = self._resolve_booking_id(payment.notes, payment.order_id)
        if booking_id is None:
            return self._uncorrelated(
                "payment_link.paid", link_id=link.get("id"), payment_id=payment.payment_id
            )

        with self.transaction():
            result = self.settlement.settle_capture(
                booking_id,
                transaction_id=payment.payment_id,
                amount_minor=payment.amount_minor,
                captured_at=self._event_time(event),
                actor=self.actor,
                source="webhook",
            )
        return WebhookOutcome(
            status=WebhookEventStatus.PROCESSED.value,
            event_type="payment_link.paid",
            booking_id=booking_id,
            detail=result.action,
        )

    def _handle_payment_failed(self, event: Mapping[str, Any]) -> WebhookOutcome:
        payment = payment_from_payload(_entity(event, "payment"))
        booking_id = self._resolve_booking_id(payment.notes, payment.order_id)
        if booking_id is None:
            return self._uncorrelated(
                "payment.failed", payment_id=payment.payment_id, order_id=payment.order_id
            )

        with self.transaction():
            result = self.settlement.settle_failure(
                booking_id,
                transaction_id=payment.payment_id,
                reason=payment.error_description or payment.error_code,
                failed_at=self._event_time(event),
            )
        return WebhookOutcome(
            status=WebhookEventStatus.PROCESSED.value,
            event_type="payment.failed",
            booking_id=booking_id,
            detail=result.action,
        )

    def _handle_refund_created(self, event: Mapping[str, Any]) -> WebhookOutcome:
        refund = refund_from_payload(_entity(event, "refund"))
        # The refund entity carries no notes; the original payment does.
        original = self.gateway.fetch_payment(refund.payment_id)
        booking_id = self._resolve_booking_id(original.notes, original.order_id)
        if booking_id is None:
            return self._uncorrelated(
                "refund.created", refund_id=refund.refund_id, payment_id=refund.payment_id
            )

        with self.transaction():
            result = self.settlement.settle_refund(
                booking_id,
                refund_id=refund.refund_id,
                refund_minor=refund.amount_minor,
                payment_minor=original.amount_minor,
                refunded_at=self._event_time(event),
            )
        return WebhookOutcome(
            status=WebhookEventStatus.PROCESSED.value,
            event_type="refund.created",
            booking_id=booking_id,
            detail=result.action,
        )

    def _handle_order_paid(self, event: Mapping[str, Any]) -> WebhookOutcome:
        order = _entity(event, "order")
        self.logger.info(
            "Order %s reported paid",
            order.get("id"),
            extra={"receipt": order.get("receipt"), "amount_paid": order.get("amount_paid")},
        )
        return WebhookOutcome(
            status=WebhookEventStatus.IGNORED.value,
            event_type="order.paid",
            detail="informational",
        )
