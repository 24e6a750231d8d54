# backend/sahayak/services/payment_service.py
"""
Payment Service

Client-facing payment operations for a booking: creating the gateway order,
verifying a completed checkout, re-checking an unresolved payment, refunding
a cancelled booking and listing a customer's payment history.

Gateway calls are made outside database transactions. When a call fails or
times out nothing is written, so the operation can simply be retried; a
verify that times out never marks the payment as failed.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import logging
from typing import Callable, List, Optional, Tuple

from sqlalchemy.orm import Session

from ..core.config import settings
from ..core.enums import ActorRole, BookingStatus, PaymentMethod, PaymentStatus
from ..core.exceptions import (
    ConcurrentUpdateConflict,
    Forbidden,
    NotFoundException,
    SignatureInvalid,
    ValidationException,
)
from ..domain.pricing import to_minor_units
from ..integrations.payment_gateway import (
    GatewayOrder,
    GatewayPayment,
    GatewayPaymentLink,
    PaymentGateway,
)
from ..models.booking import Booking
from ..principal import PAYMENT_VERIFY_ACTOR, RECONCILIATION_ACTOR, Actor
from ..repositories.booking_repository import BookingRepository
from .base import BaseService
from .payment_settlement import SETTLED_STATUSES, PaymentSettlement, SettlementOutcome

logger = logging.getLogger(__name__)

ORDERABLE_BOOKING_STATUSES = frozenset({BookingStatus.PENDING.value, BookingStatus.CONFIRMED.value})
MAX_TRANSACTIONS_PAGE_SIZE = 50


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class OrderResult:
    order_id: str
    amount: int
    amount_minor: int
    currency: str
    booking_id: str
    booking_number: str
    key_id: str


@dataclass(frozen=True)
class PaymentLinkResult:
    link_id: str
    short_url: str
    amount: int
    amount_minor: int
    currency: str
    booking_id: str
    booking_number: str


@dataclass(frozen=True)
class VerifyResult:
    booking_id: str
    booking_number: str
    payment_id: str
    amount: Optional[int]
    payment_status: str
    booking_status: str
    already_settled: bool


@dataclass(frozen=True)
class ReconcileResult:
    booking_id: str
    payment_status: str
    booking_status: str
    action: str


@dataclass(frozen=True)
class RefundResult:
    booking_id: str
    booking_number: str
    refund_id: str
    refund_amount: int
    status: str


class PaymentService(BaseService):
    """Payment operations on bookings, backed by a ``PaymentGateway``."""

    def __init__(
        self,
        db: Session,
        gateway: PaymentGateway,
        *,
        repository: Optional[BookingRepository] = None,
        settlement: Optional[PaymentSettlement] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        super().__init__(db)
        self.gateway = gateway
        self.repository = repository or BookingRepository(db)
        self.settlement = settlement or PaymentSettlement(db, store=self.repository)
        self.clock = clock
        self.exponent = settings.currency_minor_exponent

    def _load(self, booking_id: str) -> Booking:
        booking = self.repository.get_booking(booking_id, fresh=True)
        if booking is None or booking.payment is None:
            raise NotFoundException(f"Booking {booking_id} not found", code="BOOKING_NOT_FOUND")
        return booking

    @staticmethod
    def _require_customer_owner(booking: Booking, actor: Actor, action: str) -> None:
        if not booking.is_owned_by_customer(actor.id):
            raise Forbidden(f"You can only {action} for your own bookings")

    @staticmethod
    def _require_payable(booking: Booking) -> None:
        if booking.status not in ORDERABLE_BOOKING_STATUSES:
            raise ValidationException(
                "Cannot take payment for this booking status",
                code="BOOKING_NOT_PAYABLE",
                details={"status": booking.status},
            )
        if booking.payment.status not in (PaymentStatus.PENDING.value, PaymentStatus.FAILED.value):
            raise ValidationException(
                "Payment already completed for this booking",
                code="PAYMENT_ALREADY_COMPLETED",
                details={"payment_status": booking.payment.status},
            )

    # Orders

    @BaseService.measure_operation("create_payment_order")
    def create_order(self, actor: Actor, booking_id: str) -> OrderResult:
        """
        Create (or re-fetch) the gateway order for a booking's total.

        The idempotency key is tied to the booking version, so retrying while
        the booking is unchanged returns the same gateway order.
        """
        booking = self._load(booking_id)
        self._require_customer_owner(booking, actor, "create payment orders")
        self._require_payable(booking)

        amount_minor = to_minor_units(booking.total_amount, self.exponent)
        order: GatewayOrder = self.gateway.create_order(
            amount_minor=amount_minor,
            currency=booking.currency,
            receipt=f"booking_{booking.booking_number}",
            notes={
                "booking_id": booking.id,
                "booking_number": booking.booking_number,
                "customer_id": booking.customer_id,
                "provider_id": booking.provider_id,
                "service_id": booking.service_id,
            },
            idempotency_key=f"order_{booking.id}_v{booking.version}",
        )

        with self.transaction():
            if not self.repository.compare_and_set_payment(
                booking.id,
                expected_statuses=[PaymentStatus.PENDING.value, PaymentStatus.FAILED.value],
                values={
                    "gateway_order_id": order.order_id,
                    "method": PaymentMethod.RAZORPAY.value,
                },
            ):
                latest = self._load(booking.id)
                raise ConcurrentUpdateConflict(
                    booking.id,
                    expected={"payment_status": booking.payment.status},
                    observed={"payment_status": latest.payment.status},
                )

        self.logger.info(
            "Payment order %s created for booking %s",
            order.order_id,
            booking.booking_number,
            extra={"booking_id": booking.id, "amount_minor": amount_minor},
        )
        return OrderResult(
            order_id=order.order_id,
            amount=booking.total_amount,
            amount_minor=order.amount_minor,
            currency=order.currency,
            booking_id=booking.id,
            booking_number=booking.booking_number,
            key_id=settings.razorpay_key_id,
        )

    # Payment links

    @BaseService.measure_operation("create_payment_link")
    def create_payment_link(
        self,
        actor: Actor,
        booking_id: str,
        *,
        customer_name: Optional[str] = None,
        customer_email: Optional[str] = None,
        callback_url: Optional[str] = None,
    ) -> PaymentLinkResult:
        """
        Create a hosted payment link for the booking total.

        A booking gets one link; asking again returns the stored link. Link
        payments carry the booking id in their notes and settle through the
        webhook like checkout payments do.
        """
        booking = self._load(booking_id)
        self._require_customer_owner(booking, actor, "create payment links")
        self._require_payable(booking)

        amount_minor = to_minor_units(booking.total_amount, self.exponent)
        if booking.payment.payment_link_id:
            return PaymentLinkResult(
                link_id=booking.payment.payment_link_id,
                short_url=booking.payment.payment_link_url or "",
                amount=booking.total_amount,
                amount_minor=amount_minor,
                currency=booking.currency,
                booking_id=booking.id,
                booking_number=booking.booking_number,
            )

        link: GatewayPaymentLink = self.gateway.create_payment_link(
            amount_minor=amount_minor,
            currency=booking.currency,
            description=f"Payment for {booking.service_name or 'service'} - {booking.booking_number}",
            reference_id=booking.booking_number,
            customer={
                "name": customer_name or "",
                "email": customer_email or "",
                "contact": booking.contact_phone or "",
            },
            notes={"booking_id": booking.id, "booking_number": booking.booking_number},
            callback_url=callback_url or settings.payment_link_callback_url,
        )

        with self.transaction():
            if not self.repository.compare_and_set_payment(
                booking.id,
                expected_statuses=[PaymentStatus.PENDING.value, PaymentStatus.FAILED.value],
                values={
                    "payment_link_id": link.link_id,
                    "payment_link_url": link.short_url,
                    "method": PaymentMethod.PAYMENT_LINK.value,
                },
            ):
                latest = self._load(booking.id)
                raise ConcurrentUpdateConflict(
                    booking.id,
                    expected={"payment_status": booking.payment.status},
                    observed={"payment_status": latest.payment.status},
                )

        self.logger.info(
            "Payment link %s created for booking %s",
            link.link_id,
            booking.booking_number,
            extra={"booking_id": booking.id, "amount_minor": amount_minor},
        )
        return PaymentLinkResult(
            link_id=link.link_id,
            short_url=link.short_url,
            amount=booking.total_amount,
            amount_minor=link.amount_minor,
            currency=link.currency,
            booking_id=booking.id,
            booking_number=booking.booking_number,
        )

    # Verify

    @BaseService.measure_operation("verify_payment")
    def verify_payment(
        self,
        actor: Actor,
        *,
        booking_id: str,
        order_id: str,
        payment_id: str,
        signature: str,
    ) -> VerifyResult:
        """
        Verify a checkout the client reports as complete and settle it.

        Repeating a verify (or verifying after the webhook already settled the
        payment) returns the settled state with ``already_settled=True``.

        Raises:
            SignatureInvalid: the checkout signature does not match
            GatewayCommunicationError: the gateway could not be reached; nothing
                was written and the call can be retried
        """
        booking = self._load(booking_id)
        self._require_customer_owner(booking, actor, "verify payments")

        if not self.gateway.verify_payment_signature(order_id, payment_id, signature):
            self.logger.warning(
                "Payment signature verification failed",
                extra={
                    "evt": "payment_signature_invalid",
                    "booking_id": booking.id,
                    "order_id": order_id,
                    "payment_id": payment_id,
                    "actor_id": actor.id,
                },
            )
            raise SignatureInvalid()

        if not booking.payment.gateway_order_id:
            raise ValidationException(
                "No payment order exists for this booking", code="NO_PAYMENT_ORDER"
            )
        if booking.payment.gateway_order_id != order_id:
            raise ValidationException(
                "Payment order does not belong to this booking", code="ORDER_MISMATCH"
            )

        payment = self.gateway.fetch_payment(payment_id)
        if payment.order_id and payment.order_id != order_id:
            raise ValidationException(
                "Payment does not belong to this order", code="ORDER_MISMATCH"
            )
        noted_booking = (payment.notes or {}).get("booking_id")
        if noted_booking and noted_booking != booking.id:
            raise ValidationException(
                "Payment was made for a different booking", code="ORDER_MISMATCH"
            )
        if payment.is_authorized:
            payment = self.gateway.capture_payment(
                payment.payment_id, payment.amount_minor, payment.currency
            )

        outcome = self._settle(booking.id, payment, PAYMENT_VERIFY_ACTOR, source="verify")
        if outcome is None:
            latest = self._load(booking.id)
            return VerifyResult(
                booking_id=latest.id,
                booking_number=latest.booking_number,
                payment_id=payment_id,
                amount=None,
                payment_status=latest.payment.status,
                booking_status=latest.status,
                already_settled=False,
            )

        latest = self._load(booking.id)
        return VerifyResult(
            booking_id=latest.id,
            booking_number=latest.booking_number,
            payment_id=payment_id,
            amount=latest.payment.paid_amount,
            payment_status=latest.payment.status,
            booking_status=latest.status,
            already_settled=not outcome.changed,
        )

    def _settle(
        self, booking_id: str, payment: GatewayPayment, actor: Actor, *, source: str
    ) -> Optional[SettlementOutcome]:
        """Apply a terminal gateway payment state. Returns None while still in flight."""
        at = self.clock()
        if payment.is_captured:
            with self.transaction():
                return self.settlement.settle_capture(
                    booking_id,
                    transaction_id=payment.payment_id,
                    amount_minor=payment.amount_minor,
                    captured_at=at,
                    actor=actor,
                    source=source,
                )
        if payment.is_failed:
            with self.transaction():
                return self.settlement.settle_failure(
                    booking_id,
                    transaction_id=payment.payment_id,
                    reason=payment.error_description or payment.error_code,
                    failed_at=at,
                )
        self.logger.info(
            "Gateway payment %s is still %s",
            payment.payment_id,
            payment.status,
            extra={"booking_id": booking_id, "source": source},
        )
        return None

    # Reconcile

    @BaseService.measure_operation("reconcile_payment")
    def reconcile_payment(self, actor: Actor, booking_id: str) -> ReconcileResult:
        """
        Ask the gateway what happened to a booking's order and settle it.

        Used after a verify call timed out: the payment may have succeeded
        even though the client never heard back.
        """
        booking = self._load(booking_id)
        if not (actor.is_operator or booking.is_owned_by_customer(actor.id)):
            raise Forbidden("You can only reconcile payments for your own bookings")

        order_id = booking.payment.gateway_order_id
        if not order_id:
            raise ValidationException(
                "No payment order exists for this booking", code="NO_PAYMENT_ORDER"
            )
        if booking.payment.status in SETTLED_STATUSES:
            return ReconcileResult(
                booking_id=booking.id,
                payment_status=booking.payment.status,
                booking_status=booking.status,
                action="already_settled",
            )

        payments = self.gateway.fetch_order_payments(order_id)
        chosen = self._pick_reconcilable(payments)
        if chosen is not None and chosen.is_authorized:
            chosen = self.gateway.capture_payment(
                chosen.payment_id, chosen.amount_minor, chosen.currency
            )

        outcome = (
            self._settle(booking.id, chosen, RECONCILIATION_ACTOR, source="reconcile")
            if chosen is not None
            else None
        )
        latest = self._load(booking.id)
        action = outcome.action if outcome is not None else "no_change"
        self.logger.info(
            "Reconciled payment for booking %s: %s",
            latest.booking_number,
            action,
            extra={"booking_id": latest.id, "order_id": order_id},
        )
        return ReconcileResult(
            booking_id=latest.id,
            payment_status=latest.payment.status,
            booking_status=latest.status,
            action=action,
        )

    @staticmethod
    def _pick_reconcilable(payments: List[GatewayPayment]) -> Optional[GatewayPayment]:
        """Prefer a captured payment, then an authorized one, then the latest failure."""
        for predicate in (lambda p: p.is_captured, lambda p: p.is_authorized):
            for payment in payments:
                if predicate(payment):
                    return payment
        if payments and all(p.is_failed for p in payments):
            return max(payments, key=lambda p: p.created_at or 0)
        return None

    # Refunds

    @BaseService.measure_operation("process_refund")
    def process_refund(
        self, actor: Actor, booking_id: str, reason: Optional[str] = None
    ) -> RefundResult:
        """
        Refund the cancellation amount suggested when the booking was cancelled.

        Raises:
            Forbidden: caller is neither the customer, the provider nor an admin
            ValidationException: booking not cancelled, not paid, already
                refunded, or nothing to refund
        """
        booking = self._load(booking_id)
        allowed = (
            actor.role == ActorRole.ADMIN
            or booking.is_owned_by_customer(actor.id)
            or booking.is_assigned_to_provider(actor.acting_provider_id)
        )
        if not allowed:
            raise Forbidden("You do not have permission to process this refund")
        if booking.status != BookingStatus.CANCELLED.value:
            raise ValidationException(
                "Only cancelled bookings are eligible for refund", code="BOOKING_NOT_CANCELLED"
            )
        payment = booking.payment
        if payment.refund_transaction_id or (payment.refund_amount or 0) > 0:
            raise ValidationException(
                "Refund already processed for this booking", code="ALREADY_REFUNDED"
            )
        if payment.status != PaymentStatus.PAID.value or not payment.transaction_id:
            raise ValidationException("No payment found to refund", code="NOT_PAID")

        refund_amount = min(booking.suggested_refund_amount or 0, payment.paid_amount or 0)
        if refund_amount <= 0:
            raise ValidationException(
                "No refund amount calculated for this booking", code="NOTHING_TO_REFUND"
            )

        refund = self.gateway.refund_payment(
            payment.transaction_id,
            amount_minor=to_minor_units(refund_amount, self.exponent),
            notes={
                "booking_id": booking.id,
                "booking_number": booking.booking_number,
                "reason": reason or "Booking cancellation",
            },
            idempotency_key=f"refund_{booking.id}",
        )

        with self.transaction():
            outcome = self.settlement.settle_refund(
                booking.id,
                refund_id=refund.refund_id,
                refund_minor=refund.amount_minor,
                payment_minor=to_minor_units(payment.paid_amount or 0, self.exponent),
                refunded_at=self.clock(),
            )

        self.logger.info(
            "Refund %s processed for booking %s",
            refund.refund_id,
            booking.booking_number,
            extra={"booking_id": booking.id, "refund_amount": refund_amount},
        )
        latest = self._load(booking.id)
        return RefundResult(
            booking_id=latest.id,
            booking_number=latest.booking_number,
            refund_id=refund.refund_id,
            refund_amount=latest.payment.refund_amount or refund_amount,
            status=outcome.payment_status,
        )

    # History

    @BaseService.measure_operation("list_transactions")
    def list_transactions(
        self,
        actor: Actor,
        *,
        page: int = 1,
        limit: int = 20,
        status: Optional[str] = None,
    ) -> Tuple[List[Booking], int, int, int]:
        """Return ``(bookings, total, page, limit)`` for the caller's payments."""
        if status is not None:
            try:
                status = PaymentStatus(status).value
            except ValueError as exc:
                raise ValidationException(
                    f"Unknown payment status '{status}'", code="UNKNOWN_PAYMENT_STATUS"
                ) from exc
        page = max(1, page)
        limit = min(MAX_TRANSACTIONS_PAGE_SIZE, max(1, limit))
        rows, total = self.repository.list_customer_payments(
            actor.id, status=status, offset=(page - 1) * limit, limit=limit
        )
        return rows, total, page, limit
