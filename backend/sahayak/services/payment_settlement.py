# backend/sahayak/services/payment_settlement.py
"""
Payment settlement shared by the synchronous verify call and the webhook.

Both paths funnel gateway outcomes through this service so they converge on
the same end state. Every write is a compare-and-set on the payment status
the routine just read; when another writer got there first the routine
re-reads and decides again, so a repeat of an already-applied outcome is a
no-op rather than an error.

Nothing here commits. Callers wrap calls in their own transaction so the
payment update, the booking transition, the ledger entry and the outbox
events land together or not at all.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Iterable, Mapping, Optional, Protocol

from sqlalchemy.orm import Session

from ..core.config import settings
from ..core.enums import BookingStatus, PaymentStatus
from ..core.exceptions import (
    ConcurrentUpdateConflict,
    InvalidTransition,
    NotFoundException,
    ValidationException,
)
from ..domain.pricing import from_minor_units
from ..events import (
    EventPublisher,
    PaymentCaptured,
    PaymentConflictFlagged,
    PaymentFailed,
    PaymentRefunded,
)
from ..models.booking import Booking
from ..monitoring.prometheus_metrics import prometheus_metrics
from ..principal import Actor
from ..repositories.booking_repository import BookingRepository
from ..repositories.event_outbox_repository import EventOutboxRepository
from .base import BaseService
from .booking_state_machine import BookingStateMachine

SETTLED_STATUSES = frozenset(
    {
        PaymentStatus.PAID.value,
        PaymentStatus.REFUNDED.value,
        PaymentStatus.PARTIALLY_REFUNDED.value,
    }
)
OPEN_STATUSES = frozenset({PaymentStatus.PENDING.value, PaymentStatus.FAILED.value})


class BookingStore(Protocol):
    """The slice of booking persistence settlement and webhook handling rely on."""

    def get_booking(self, booking_id: str, *, fresh: bool = False) -> Optional[Booking]:
        ...

    def get_by_gateway_order_id(self, order_id: str) -> Optional[Booking]:
        ...

    def compare_and_set_payment(
        self,
        booking_id: str,
        *,
        expected_statuses: Iterable[str],
        values: Mapping[str, Any],
        expected_order_id: Optional[str] = None,
    ) -> bool:
        ...


@dataclass(frozen=True)
class SettlementOutcome:
    booking_id: str
    action: str
    payment_status: str
    booking_status: str
    changed: bool
    detail: Optional[str] = None


class PaymentSettlement(BaseService):
    """Applies captured, failed and refunded outcomes to a booking idempotently."""

    def __init__(
        self,
        db: Session,
        *,
        state_machine: Optional[BookingStateMachine] = None,
        store: Optional[BookingStore] = None,
        publisher: Optional[EventPublisher] = None,
        max_attempts: Optional[int] = None,
        minor_exponent: Optional[int] = None,
    ):
        super().__init__(db)
        self.store: BookingStore = store or BookingRepository(db)
        self.state_machine = state_machine or BookingStateMachine(db)
        self.publisher = publisher or EventPublisher(EventOutboxRepository(db))
        self.max_attempts = max_attempts or settings.cas_max_attempts
        self.minor_exponent = (
            settings.currency_minor_exponent if minor_exponent is None else minor_exponent
        )

    def _load(self, booking_id: str) -> Booking:
        booking = self.store.get_booking(booking_id, fresh=True)
        if booking is None or booking.payment is None:
            raise NotFoundException(f"Booking {booking_id} not found", code="BOOKING_NOT_FOUND")
        return booking

    def _to_major(self, amount_minor: int) -> int:
        try:
            return from_minor_units(amount_minor, self.minor_exponent)
        except ValueError as exc:
            raise ValidationException(
                "Gateway amount is not a whole number of major units",
                code="FRACTIONAL_AMOUNT",
                details={"amount_minor": amount_minor},
            ) from exc

    def _outcome(
        self, booking: Booking, action: str, changed: bool, detail: Optional[str] = None
    ) -> SettlementOutcome:
        return SettlementOutcome(
            booking_id=booking.id,
            action=action,
            payment_status=booking.payment.status,
            booking_status=booking.status,
            changed=changed,
            detail=detail,
        )

    def _exhausted(self, booking_id: str) -> ConcurrentUpdateConflict:
        self.logger.error(
            "Gave up settling payment after %s compare-and-set attempts",
            self.max_attempts,
            extra={"booking_id": booking_id},
        )
        return ConcurrentUpdateConflict(booking_id)

    @BaseService.measure_operation("settle_capture")
    def settle_capture(
        self,
        booking_id: str,
        *,
        transaction_id: str,
        amount_minor: int,
        captured_at: datetime,
        actor: Actor,
        source: str,
    ) -> SettlementOutcome:
        """
        Record a captured payment and confirm the booking if it is still pending.

        A capture for the transaction already on record is a no-op. A capture
        for a different transaction on an already-settled payment is flagged
        for manual reconciliation and changes nothing else. A capture short of
        the booking total is recorded but flagged instead of confirming.
        """
        paid_amount = self._to_major(amount_minor)
        payment_changed = False

        for _ in range(self.max_attempts):
            booking = self._load(booking_id)
            payment = booking.payment

            if payment.status in SETTLED_STATUSES:
                if payment.transaction_id != transaction_id:
                    return self._flag_conflict(
                        booking,
                        reported_event="payment.captured",
                        reported_transaction_id=transaction_id,
                        at=captured_at,
                    )
            else:
                won = self.store.compare_and_set_payment(
                    booking.id,
                    expected_statuses=[payment.status],
                    values={
                        "status": PaymentStatus.PAID.value,
                        "transaction_id": transaction_id,
                        "paid_amount": paid_amount,
                        "paid_at": captured_at,
                        "failure_reason": None,
                        "last_event_at": captured_at,
                    },
                )
                if not won:
                    prometheus_metrics.record_cas_conflict("payment")
                    continue
                payment_changed = True
                if paid_amount > booking.total_amount:
                    self.logger.warning(
                        "Captured amount exceeds booking total",
                        extra={
                            "booking_id": booking.id,
                            "paid_amount": paid_amount,
                            "total_amount": booking.total_amount,
                        },
                    )
                self.publisher.publish(
                    PaymentCaptured(
                        booking_id=booking.id,
                        transaction_id=transaction_id,
                        amount=paid_amount,
                        paid_at=captured_at,
                        source=source,
                    )
                )

            if booking.status == BookingStatus.PENDING.value and paid_amount < booking.total_amount:
                # Short capture: keep the money on record but leave the booking unconfirmed.
                self._flag_conflict(
                    self._load(booking_id),
                    reported_event="payment.captured",
                    reported_transaction_id=transaction_id,
                    at=captured_at,
                    note=(
                        f"captured {paid_amount} of {booking.total_amount}; "
                        "booking left pending"
                    ),
                )
            elif booking.status == BookingStatus.PENDING.value:
                try:
                    self.state_machine.apply_transition(
                        booking.id,
                        BookingStatus.CONFIRMED,
                        actor,
                        reason="Payment captured",
                        now=captured_at,
                    )
                except (ConcurrentUpdateConflict, InvalidTransition):
                    # The booking moved after it was read; decide again on fresh state.
                    continue
            elif booking.status == BookingStatus.CANCELLED.value and payment_changed:
                self._flag_conflict(
                    self._load(booking_id),
                    reported_event="payment.captured",
                    reported_transaction_id=transaction_id,
                    at=captured_at,
                    note="payment captured after the booking was cancelled; refund required",
                )

            final = self._load(booking_id)
            action = "captured" if payment_changed else "already_captured"
            self.logger.info(
                "Payment settlement %s",
                action,
                extra={"booking_id": booking_id, "transaction_id": transaction_id, "source": source},
            )
            return self._outcome(final, action, payment_changed)

        raise self._exhausted(booking_id)

    @BaseService.measure_operation("settle_failure")
    def settle_failure(
        self,
        booking_id: str,
        *,
        transaction_id: Optional[str],
        reason: Optional[str],
        failed_at: datetime,
    ) -> SettlementOutcome:
        """
        Record a failed payment attempt. The booking status is left alone.

        A settled payment is never downgraded: a failure report for the
        transaction on record is flagged, a failure for some other attempt is
        ignored.
        """
        for _ in range(self.max_attempts):
            booking = self._load(booking_id)
            payment = booking.payment

            if payment.status in SETTLED_STATUSES:
                if transaction_id and transaction_id == payment.transaction_id:
                    return self._flag_conflict(
                        booking,
                        reported_event="payment.failed",
                        reported_transaction_id=transaction_id,
                        at=failed_at,
                    )
                self.logger.info(
                    "Ignoring failure for a superseded payment attempt",
                    extra={"booking_id": booking.id, "transaction_id": transaction_id},
                )
                return self._outcome(booking, "ignored_stale_failure", False)

            if payment.status == PaymentStatus.FAILED.value and (
                payment.transaction_id == transaction_id
            ):
                return self._outcome(booking, "already_failed", False)

            won = self.store.compare_and_set_payment(
                booking.id,
                expected_statuses=list(OPEN_STATUSES),
                values={
                    "status": PaymentStatus.FAILED.value,
                    "transaction_id": transaction_id,
                    "failure_reason": (reason or "Payment failed")[:500],
                    "last_event_at": failed_at,
                },
            )
            if not won:
                prometheus_metrics.record_cas_conflict("payment")
                continue
            self.publisher.publish(
                PaymentFailed(
                    booking_id=booking.id,
                    transaction_id=transaction_id,
                    reason=reason,
                    failed_at=failed_at,
                )
            )
            return self._outcome(self._load(booking_id), "failure_recorded", True)

        raise self._exhausted(booking_id)

    @BaseService.measure_operation("settle_refund")
    def settle_refund(
        self,
        booking_id: str,
        *,
        refund_id: str,
        refund_minor: int,
        payment_minor: int,
        refunded_at: datetime,
    ) -> SettlementOutcome:
        """
        Record a refund. Full when it equals the original payment amount,
        partial otherwise.
        """
        refund_amount = self._to_major(refund_minor)
        full = refund_minor == payment_minor
        target_status = PaymentStatus.REFUNDED if full else PaymentStatus.PARTIALLY_REFUNDED

        for _ in range(self.max_attempts):
            booking = self._load(booking_id)
            payment = booking.payment

            if payment.refund_transaction_id == refund_id:
                return self._outcome(booking, "already_refunded", False)
            if payment.status != PaymentStatus.PAID.value or payment.refund_transaction_id:
                return self._flag_conflict(
                    booking,
                    reported_event="refund.created",
                    reported_transaction_id=refund_id,
                    at=refunded_at,
                )
            if refund_amount > booking.total_amount or refund_amount > (payment.paid_amount or 0):
                return self._flag_conflict(
                    booking,
                    reported_event="refund.created",
                    reported_transaction_id=refund_id,
                    at=refunded_at,
                    note=f"refund {refund_amount} exceeds the amount paid",
                )

            won = self.store.compare_and_set_payment(
                booking.id,
                expected_statuses=[PaymentStatus.PAID.value],
                values={
                    "status": target_status.value,
                    "refund_transaction_id": refund_id,
                    "refund_amount": refund_amount,
                    "refunded_at": refunded_at,
                    "last_event_at": refunded_at,
                },
            )
            if not won:
                prometheus_metrics.record_cas_conflict("payment")
                continue
            self.publisher.publish(
                PaymentRefunded(
                    booking_id=booking.id,
                    refund_id=refund_id,
                    amount=refund_amount,
                    status=target_status.value,
                    refunded_at=refunded_at,
                )
            )
            return self._outcome(self._load(booking_id), "refund_recorded", True)

        raise self._exhausted(booking_id)

    def _flag_conflict(
        self,
        booking: Booking,
        *,
        reported_event: str,
        reported_transaction_id: Optional[str],
        at: datetime,
        note: Optional[str] = None,
    ) -> SettlementOutcome:
        """Mark the payment for manual reconciliation without changing its status."""
        payment = booking.payment
        message = note or (
            f"{reported_event} for {reported_transaction_id} contradicts "
            f"{payment.status} ({payment.transaction_id})"
        )
        self.logger.warning(
            "Conflicting gateway report flagged",
            extra={
                "booking_id": booking.id,
                "payment_status": payment.status,
                "transaction_id": payment.transaction_id,
                "reported_event": reported_event,
                "reported_transaction_id": reported_transaction_id,
            },
        )
        if payment.reconciliation_flag != message:
            self.store.compare_and_set_payment(
                booking.id,
                expected_statuses=[payment.status],
                values={"reconciliation_flag": message, "last_event_at": at},
            )
            self.publisher.publish(
                PaymentConflictFlagged(
                    booking_id=booking.id,
                    current_status=payment.status,
                    current_transaction_id=payment.transaction_id,
                    reported_event=reported_event,
                    reported_transaction_id=reported_transaction_id,
                    flagged_at=at,
                )
            )
        return self._outcome(self._load(booking.id), "conflict_flagged", False, detail=message)
