# backend/sahayak/services/booking_service.py
"""
Booking Service

Handles booking-level business logic around the state machine:
- Creating bookings priced from the provider's catalog offering
- Reading bookings and their status history with access checks
- Routing status changes and cancellations through the state machine
- Additional charges before payment and work summaries after the job starts
"""

from __future__ import annotations

from datetime import datetime, time, timedelta, timezone
import logging
from typing import Callable, Dict, List, Optional, Tuple

import pytz
from sqlalchemy.orm import Session

from ..core.config import settings
from ..core.enums import ActorRole, BookingStatus, PaymentMethod, PaymentStatus
from ..core.exceptions import (
    BusinessRuleException,
    ConcurrentUpdateConflict,
    Forbidden,
    NotFoundException,
    ValidationException,
)
from ..domain.pricing import compute_charges
from ..domain.status_ledger import StatusLedger
from ..events import BookingCreated, EventPublisher
from ..integrations.catalog_client import ServiceCatalog
from ..models.booking import (
    MAX_DURATION_MINUTES,
    MIN_DURATION_MINUTES,
    Booking,
    generate_booking_number,
)
from ..models.booking_status_change import BookingStatusChange
from ..principal import Actor
from ..repositories.booking_repository import BookingRepository
from ..repositories.event_outbox_repository import EventOutboxRepository
from ..repositories.status_history_repository import StatusHistoryRepository
from ..schemas.booking import (
    AdditionalChargeCreate,
    BookingCreate,
    BookingStatusUpdate,
    WorkSummaryUpdate,
)
from .base import BaseService
from .booking_state_machine import BookingStateMachine, TransitionResult

logger = logging.getLogger(__name__)

WORK_SUMMARY_STATUSES = frozenset({BookingStatus.IN_PROGRESS.value, BookingStatus.COMPLETED.value})


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def local_day_bounds(now: datetime, tz_name: str) -> Tuple[datetime, datetime]:
    """UTC start and end of the local calendar day containing ``now``."""
    tz = pytz.timezone(tz_name)
    local_date = now.astimezone(tz).date()
    start = tz.localize(datetime.combine(local_date, time.min))
    end = tz.localize(datetime.combine(local_date + timedelta(days=1), time.min))
    return start.astimezone(timezone.utc), end.astimezone(timezone.utc)


class BookingService(BaseService):
    """
    Service layer for booking operations.

    Status changes are delegated to ``BookingStateMachine``; everything else
    that mutates an existing booking goes through the repository's
    compare-and-set helper so concurrent writers cannot clobber each other.
    """

    def __init__(
        self,
        db: Session,
        catalog: ServiceCatalog,
        *,
        state_machine: Optional[BookingStateMachine] = None,
        repository: Optional[BookingRepository] = None,
        history_repository: Optional[StatusHistoryRepository] = None,
        event_publisher: Optional[EventPublisher] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        super().__init__(db)
        self.catalog = catalog
        self.repository = repository or BookingRepository(db)
        self.history_repository = history_repository or StatusHistoryRepository(db)
        self.event_publisher = event_publisher or EventPublisher(EventOutboxRepository(db))
        self.clock = clock
        self.state_machine = state_machine or BookingStateMachine(
            db,
            clock=clock,
            booking_repository=self.repository,
            history_repository=self.history_repository,
            publisher=self.event_publisher,
        )

    # Access helpers

    def _load(self, booking_id: str) -> Booking:
        booking = self.repository.get_booking(booking_id, fresh=True)
        if booking is None:
            raise NotFoundException(f"Booking {booking_id} not found", code="BOOKING_NOT_FOUND")
        return booking

    @staticmethod
    def _can_view(booking: Booking, actor: Actor) -> bool:
        return (
            actor.is_operator
            or booking.is_owned_by_customer(actor.id)
            or booking.is_assigned_to_provider(actor.acting_provider_id)
        )

    @staticmethod
    def _require_provider_or_admin(booking: Booking, actor: Actor, action: str) -> None:
        if actor.is_operator:
            return
        if actor.role != ActorRole.PROVIDER:
            raise Forbidden(f"Only service providers can {action}")
        if not booking.is_assigned_to_provider(actor.acting_provider_id):
            raise Forbidden(f"You can only {action} on your own bookings")

    # Create

    @BaseService.measure_operation("create_booking")
    def create_booking(self, actor: Actor, data: BookingCreate) -> Booking:
        """
        Create a pending booking priced from the provider's catalog offering.

        Raises:
            Forbidden: caller is not a customer or admin
            ValidationException: schedule in the past or offering unusable
            NotFoundException: provider does not offer the service
        """
        if actor.role not in (ActorRole.CUSTOMER, ActorRole.ADMIN):
            raise Forbidden("Only customers can create bookings")

        now = self.clock()
        if data.scheduled_at <= now:
            raise ValidationException(
                "Scheduled time must be in the future", code="SCHEDULE_IN_PAST"
            )

        offering = self.catalog.get_offering(data.provider_id, data.service_id)
        if offering is None or not offering.is_active:
            raise NotFoundException(
                "Service provider not found or does not offer this service",
                code="OFFERING_NOT_FOUND",
                details={"provider_id": data.provider_id, "service_id": data.service_id},
            )
        if not MIN_DURATION_MINUTES <= offering.duration_minutes <= MAX_DURATION_MINUTES:
            raise ValidationException(
                "Service duration is outside the bookable range",
                code="INVALID_DURATION",
                details={"duration_minutes": offering.duration_minutes},
            )
        if offering.currency != settings.payment_currency:
            raise BusinessRuleException(
                f"Offerings priced in {offering.currency} cannot be booked",
                code="UNSUPPORTED_CURRENCY",
            )

        try:
            charges = compute_charges(offering.base_price, settings.tax_rate)
        except ValueError as exc:
            raise ValidationException(str(exc), code="INVALID_PRICING") from exc

        with self.transaction():
            booking = self.repository.create_booking(
                {"status": PaymentStatus.PENDING.value, "method": PaymentMethod.RAZORPAY.value},
                booking_number=generate_booking_number(),
                customer_id=actor.id,
                provider_id=data.provider_id,
                service_id=data.service_id,
                service_name=offering.name,
                scheduled_at=data.scheduled_at,
                estimated_duration_minutes=offering.duration_minutes,
                address=data.address.model_dump(exclude_none=True),
                contact_phone=data.contact_phone,
                special_instructions=data.special_instructions,
                status=BookingStatus.PENDING.value,
                currency=offering.currency,
                created_at=now,
                **charges.to_dict(),
            )
            entry = StatusLedger().append(
                status=BookingStatus.PENDING.value,
                actor_id=actor.id,
                changed_at=now,
                reason="Booking created",
            )
            self.history_repository.record(booking.id, entry)
            self.event_publisher.publish(
                BookingCreated(
                    booking_id=booking.id,
                    booking_number=booking.booking_number,
                    customer_id=booking.customer_id,
                    provider_id=booking.provider_id,
                    scheduled_at=booking.scheduled_at,
                    total_amount=booking.total_amount,
                )
            )

        self.logger.info(
            "Booking %s created",
            booking.booking_number,
            extra={"booking_id": booking.id, "total_amount": booking.total_amount},
        )
        return self._load(booking.id)

    # Reads

    @BaseService.measure_operation("get_booking")
    def get_booking(self, actor: Actor, booking_id: str) -> Booking:
        booking = self._load(booking_id)
        if not self._can_view(booking, actor):
            raise Forbidden("You do not have access to this booking")
        return booking

    @staticmethod
    def _party_filter(actor: Actor) -> Dict[str, Optional[str]]:
        if actor.role == ActorRole.PROVIDER:
            return {"customer_id": None, "provider_id": actor.acting_provider_id}
        if actor.is_operator:
            return {"customer_id": None, "provider_id": None}
        return {"customer_id": actor.id, "provider_id": None}

    @BaseService.measure_operation("list_bookings")
    def list_bookings(
        self,
        actor: Actor,
        *,
        status: Optional[str] = None,
        page: int = 1,
        per_page: int = 20,
    ) -> Tuple[List[Booking], int]:
        """Bookings the caller takes part in, newest first."""
        if status is not None:
            try:
                status = BookingStatus(status).value
            except ValueError as exc:
                raise ValidationException(
                    f"Unknown booking status '{status}'", code="UNKNOWN_STATUS"
                ) from exc

        return self.repository.list_bookings(
            **self._party_filter(actor),
            status=status,
            offset=(page - 1) * per_page,
            limit=per_page,
        )

    @BaseService.measure_operation("list_upcoming_bookings")
    def list_upcoming(self, actor: Actor, *, limit: int = 10) -> List[Booking]:
        """The caller's pending and confirmed bookings that have not started yet, soonest first."""
        return self.repository.list_scheduled(
            statuses=[BookingStatus.PENDING.value, BookingStatus.CONFIRMED.value],
            scheduled_after=self.clock(),
            limit=limit,
            **self._party_filter(actor),
        )

    @BaseService.measure_operation("list_todays_bookings")
    def list_today(self, actor: Actor) -> List[Booking]:
        """
        A provider's confirmed and in-progress visits for the current local day.

        Admins see every provider's visits. The day runs midnight to midnight
        in ``settings.service_timezone``.
        """
        if actor.role != ActorRole.PROVIDER and not actor.is_operator:
            raise Forbidden("Only providers can view the day's schedule")
        start, end = local_day_bounds(self.clock(), settings.service_timezone)
        return self.repository.list_scheduled(
            statuses=[BookingStatus.CONFIRMED.value, BookingStatus.IN_PROGRESS.value],
            scheduled_after=start,
            scheduled_before=end,
            provider_id=self._party_filter(actor)["provider_id"],
        )

    @BaseService.measure_operation("get_status_history")
    def get_status_history(
        self, actor: Actor, booking_id: str
    ) -> Tuple[Booking, List[BookingStatusChange]]:
        booking = self.get_booking(actor, booking_id)
        history = self.history_repository.history(booking.id)
        if history and history[-1].status != booking.status:
            self.logger.error(
                "Status ledger out of step with booking",
                extra={
                    "booking_id": booking.id,
                    "ledger_status": history[-1].status,
                    "booking_status": booking.status,
                },
            )
        return booking, history

    # Status changes

    @BaseService.measure_operation("update_booking_status")
    def update_status(
        self, actor: Actor, booking_id: str, update: BookingStatusUpdate
    ) -> TransitionResult:
        return self.state_machine.transition(
            booking_id,
            update.status,
            actor,
            reason=update.reason,
            comments=update.comments,
        )

    @BaseService.measure_operation("cancel_booking")
    def cancel_booking(
        self, actor: Actor, booking_id: str, reason: Optional[str] = None
    ) -> TransitionResult:
        """Cancel a booking. The result carries the suggested refund quote."""
        return self.state_machine.transition(
            booking_id, BookingStatus.CANCELLED, actor, reason=reason
        )

    # Charges and work summary

    @BaseService.measure_operation("add_additional_charge")
    def add_additional_charge(
        self, actor: Actor, booking_id: str, charge: AdditionalChargeCreate
    ) -> Booking:
        """
        Append a charge and re-price the booking.

        Only allowed while the booking is pending and no gateway order exists,
        so the customer is never asked to pay a stale amount.
        """
        with self.transaction():
            booking = self._load(booking_id)
            self._require_provider_or_admin(booking, actor, "add charges")
            if booking.status != BookingStatus.PENDING.value:
                raise BusinessRuleException(
                    "Charges can only be added while the booking is pending",
                    code="BOOKING_NOT_PENDING",
                    details={"status": booking.status},
                )
            if booking.payment is not None and (
                booking.payment.gateway_order_id or booking.payment.payment_link_id
            ):
                raise BusinessRuleException(
                    "Charges cannot be added after a payment order was created",
                    code="PAYMENT_ORDER_EXISTS",
                )

            extras = [existing.amount for existing in booking.charges] + [charge.amount]
            pricing = compute_charges(
                booking.base_amount,
                settings.tax_rate,
                additional=extras,
                discount=booking.discount_amount or 0,
            )
            if not self.repository.compare_and_set(
                booking.id,
                expected_version=booking.version,
                expected_status=BookingStatus.PENDING.value,
                values={
                    "additional_amount": pricing.additional_amount,
                    "tax_amount": pricing.tax_amount,
                    "total_amount": pricing.total_amount,
                },
            ):
                raise ConcurrentUpdateConflict(
                    booking.id, expected={"version": booking.version}
                )
            self.repository.add_charge(
                booking_id=booking.id,
                name=charge.name,
                amount=charge.amount,
                description=charge.description,
                added_by_id=actor.id,
            )

        self.logger.info(
            "Charge added to booking %s",
            booking.booking_number,
            extra={"booking_id": booking.id, "amount": charge.amount},
        )
        return self._load(booking_id)

    @BaseService.measure_operation("add_work_summary")
    def add_work_summary(
        self, actor: Actor, booking_id: str, summary: WorkSummaryUpdate
    ) -> Booking:
        with self.transaction():
            booking = self._load(booking_id)
            self._require_provider_or_admin(booking, actor, "add a work summary")
            if booking.status not in WORK_SUMMARY_STATUSES:
                raise ValidationException(
                    "Can only add work summary to in-progress or completed bookings",
                    code="WORK_SUMMARY_NOT_ALLOWED",
                    details={"status": booking.status},
                )
            values = summary.model_dump(exclude_unset=True)
            if not values:
                return booking
            if not self.repository.compare_and_set(
                booking.id,
                expected_version=booking.version,
                expected_status=booking.status,
                values=values,
            ):
                raise ConcurrentUpdateConflict(
                    booking.id, expected={"version": booking.version, "status": booking.status}
                )
        return self._load(booking_id)

