# backend/sahayak/services/booking_state_machine.py
"""
Booking State Machine

The only code path that writes ``Booking.status``. A transition:

1. re-reads the booking from the database,
2. checks the target against the transition table (``InvalidTransition``),
3. checks the actor's role and relationship (``Forbidden``),
4. folds the state-specific side effects into one compare-and-set UPDATE
   keyed on the status and version it read (``ConcurrentUpdateConflict``),
5. appends the ledger entry and queues domain events in the outbox.

``apply_transition`` runs inside the caller's transaction so payment
settlement can combine a payment update and a booking transition
atomically; ``transition`` wraps it in its own transaction.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Callable, Dict, FrozenSet, List, Optional, Tuple

from sqlalchemy.orm import Session

from ..core.config import settings
from ..core.enums import ActorRole, BookingStatus
from ..core.exceptions import (
    ConcurrentUpdateConflict,
    Forbidden,
    InvalidTransition,
    NotFoundException,
    ValidationException,
)
from ..domain.pricing import RefundPolicy, RefundQuote, compute_refund, round_half_up
from ..domain.status_ledger import MAX_COMMENT_LENGTH, LedgerEntry
from ..events import (
    BookingCancelled,
    BookingCompleted,
    BookingConfirmed,
    BookingMarkedNoShow,
    BookingStarted,
    BookingStatusChanged,
    Event,
    EventPublisher,
)
from ..models.booking import Booking
from ..monitoring.prometheus_metrics import prometheus_metrics
from ..principal import Actor
from ..repositories.booking_repository import BookingRepository
from ..repositories.event_outbox_repository import EventOutboxRepository
from ..repositories.status_history_repository import StatusHistoryRepository
from .base import BaseService

TRANSITIONS: Dict[BookingStatus, FrozenSet[BookingStatus]] = {
    BookingStatus.PENDING: frozenset({BookingStatus.CONFIRMED, BookingStatus.CANCELLED}),
    BookingStatus.CONFIRMED: frozenset(
        {BookingStatus.IN_PROGRESS, BookingStatus.CANCELLED, BookingStatus.NO_SHOW}
    ),
    BookingStatus.IN_PROGRESS: frozenset({BookingStatus.COMPLETED, BookingStatus.CANCELLED}),
    BookingStatus.COMPLETED: frozenset(),
    BookingStatus.CANCELLED: frozenset(),
    BookingStatus.NO_SHOW: frozenset(),
}

PROVIDER_TARGETS = frozenset(
    {BookingStatus.CONFIRMED, BookingStatus.IN_PROGRESS, BookingStatus.COMPLETED}
)


def allowed_targets(current: BookingStatus) -> FrozenSet[BookingStatus]:
    return TRANSITIONS[current]


def is_legal(current: BookingStatus, target: BookingStatus) -> bool:
    return target in TRANSITIONS[current]


def authorize(booking: Booking, target: BookingStatus, actor: Actor) -> None:
    """
    Raise ``Forbidden`` unless ``actor`` may move ``booking`` to ``target``.

    Admins and internal processes may drive any legal transition. Providers
    may confirm, start, complete or cancel their own bookings. Customers may
    only cancel their own bookings. Nobody but an operator marks a no-show.
    """
    if actor.is_operator:
        return
    if target == BookingStatus.NO_SHOW:
        raise Forbidden("Only operators can mark a booking as no-show", target=target.value)

    owns_as_provider = booking.is_assigned_to_provider(actor.acting_provider_id)
    if target in PROVIDER_TARGETS:
        if owns_as_provider:
            return
        raise Forbidden(
            f"Only the assigned provider or an admin can set status '{target.value}'",
            target=target.value,
        )

    if target == BookingStatus.CANCELLED:
        owns_as_customer = actor.role == ActorRole.CUSTOMER and booking.is_owned_by_customer(
            actor.id
        )
        if owns_as_customer or owns_as_provider:
            return
        raise Forbidden("Not authorized to cancel this booking", target=target.value)

    raise Forbidden(target=target.value)


def derive_duration_minutes(started_at: datetime, ended_at: datetime) -> int:
    """Whole minutes between two instants, halves rounded up."""
    seconds = Decimal(str((ended_at - started_at).total_seconds()))
    return max(round_half_up(seconds / Decimal(60)), 0)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class TransitionResult:
    booking: Booking
    entry: LedgerEntry
    events: Tuple[Event, ...]
    refund_quote: Optional[RefundQuote] = None

    @property
    def previous_status(self) -> Optional[str]:
        return self.entry.from_status


class BookingStateMachine(BaseService):
    """Owns booking status, transition legality and transition side effects."""

    def __init__(
        self,
        db: Session,
        *,
        refund_policy: Optional[RefundPolicy] = None,
        clock: Callable[[], datetime] = _utcnow,
        booking_repository: Optional[BookingRepository] = None,
        history_repository: Optional[StatusHistoryRepository] = None,
        publisher: Optional[EventPublisher] = None,
    ):
        super().__init__(db)
        self.refund_policy = refund_policy or settings.refund_policy()
        self.clock = clock
        self.repository = booking_repository or BookingRepository(db)
        self.history = history_repository or StatusHistoryRepository(db)
        self.publisher = publisher or EventPublisher(EventOutboxRepository(db))

    @BaseService.measure_operation("transition")
    def transition(
        self,
        booking_id: str,
        target: BookingStatus | str,
        actor: Actor,
        *,
        reason: Optional[str] = None,
        comments: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> TransitionResult:
        """Apply a transition and commit it."""
        with self.transaction():
            return self.apply_transition(
                booking_id, target, actor, reason=reason, comments=comments, now=now
            )

    def apply_transition(
        self,
        booking_id: str,
        target: BookingStatus | str,
        actor: Actor,
        *,
        reason: Optional[str] = None,
        comments: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> TransitionResult:
        """
        Apply a transition inside the caller's transaction (no commit).

        Raises:
            NotFoundException: unknown booking
            InvalidTransition: target not allowed from the current status
            Forbidden: actor may not perform this transition
            ConcurrentUpdateConflict: booking changed since it was read
        """
        target_status = self._coerce_status(target)
        if comments is not None and len(comments) > MAX_COMMENT_LENGTH:
            raise ValidationException(
                f"Comments must be at most {MAX_COMMENT_LENGTH} characters",
                code="COMMENTS_TOO_LONG",
            )

        booking = self.repository.get_booking(booking_id, fresh=True)
        if booking is None:
            raise NotFoundException(f"Booking {booking_id} not found", code="BOOKING_NOT_FOUND")

        current = booking.status_enum
        if not is_legal(current, target_status):
            raise InvalidTransition(
                current.value,
                target_status.value,
                sorted(s.value for s in allowed_targets(current)),
            )
        authorize(booking, target_status, actor)

        at = now or self.clock()
        values, quote = self._side_effects(booking, target_status, actor, at, reason)
        expected_version = booking.version

        if not self.repository.compare_and_set(
            booking.id,
            expected_version=expected_version,
            expected_status=current.value,
            values=values,
        ):
            prometheus_metrics.record_cas_conflict("booking")
            latest = self.repository.get_booking(booking.id, fresh=True)
            raise ConcurrentUpdateConflict(
                booking.id,
                expected={"status": current.value, "version": expected_version},
                observed=(
                    {"status": latest.status, "version": latest.version} if latest else {}
                ),
            )

        ledger = self.history.load_ledger(booking.id)
        if not ledger.is_consistent_with(current.value):
            self.logger.error(
                "Status ledger out of step with booking",
                extra={
                    "booking_id": booking.id,
                    "ledger_status": ledger.current_status,
                    "booking_status": current.value,
                },
            )
        entry = ledger.append(
            status=target_status.value,
            actor_id=actor.id,
            changed_at=at,
            reason=reason,
            comments=comments,
        )
        self.history.record(booking.id, entry)

        updated = self.repository.get_booking(booking.id, fresh=True)
        if updated is None:
            raise NotFoundException(f"Booking {booking.id} not found", code="BOOKING_NOT_FOUND")
        events = self._events_for(updated, entry, actor, quote)
        for event in events:
            self.publisher.publish(event)

        self.logger.info(
            "Booking %s: %s -> %s by %s",
            updated.booking_number,
            current.value,
            target_status.value,
            actor.id,
            extra={"booking_id": updated.id, "sequence": entry.sequence},
        )
        return TransitionResult(booking=updated, entry=entry, events=events, refund_quote=quote)

    def _coerce_status(self, target: BookingStatus | str) -> BookingStatus:
        if isinstance(target, BookingStatus):
            return target
        try:
            return BookingStatus(str(target).strip().lower())
        except ValueError:
            raise ValidationException(
                f"Unknown booking status '{target}'",
                code="UNKNOWN_STATUS",
                details={"allowed": [s.value for s in BookingStatus]},
            )

    def _side_effects(
        self,
        booking: Booking,
        target: BookingStatus,
        actor: Actor,
        at: datetime,
        reason: Optional[str],
    ) -> Tuple[Dict[str, Any], Optional[RefundQuote]]:
        values: Dict[str, Any] = {"status": target.value}
        quote: Optional[RefundQuote] = None

        if target == BookingStatus.IN_PROGRESS and booking.work_started_at is None:
            values["work_started_at"] = at

        elif target == BookingStatus.COMPLETED:
            ended_at = booking.work_ended_at or at
            values["work_ended_at"] = ended_at
            if booking.work_started_at is not None:
                values["actual_duration_minutes"] = derive_duration_minutes(
                    booking.work_started_at, ended_at
                )

        elif target == BookingStatus.CANCELLED:
            quote = compute_refund(booking.total_amount, booking.scheduled_at, at, self.refund_policy)
            values.update(
                cancelled_at=at,
                cancellation_reason=reason,
                cancelled_by_id=actor.id,
                cancelled_by_role=actor.role.value,
                suggested_refund_amount=quote.amount,
            )

        return values, quote

    def _events_for(
        self,
        booking: Booking,
        entry: LedgerEntry,
        actor: Actor,
        quote: Optional[RefundQuote],
    ) -> Tuple[Event, ...]:
        events: List[Event] = [
            BookingStatusChanged(
                booking_id=booking.id,
                from_status=entry.from_status,
                to_status=entry.status,
                actor_id=entry.actor_id,
                sequence=entry.sequence,
                changed_at=entry.changed_at,
                reason=entry.reason,
            )
        ]
        target = BookingStatus(entry.status)
        if target == BookingStatus.CONFIRMED:
            events.append(
                BookingConfirmed(
                    booking_id=booking.id,
                    customer_id=booking.customer_id,
                    provider_id=booking.provider_id,
                    confirmed_at=entry.changed_at,
                )
            )
        elif target == BookingStatus.IN_PROGRESS:
            events.append(
                BookingStarted(
                    booking_id=booking.id,
                    provider_id=booking.provider_id,
                    started_at=booking.work_started_at or entry.changed_at,
                )
            )
        elif target == BookingStatus.COMPLETED:
            events.append(
                BookingCompleted(
                    booking_id=booking.id,
                    customer_id=booking.customer_id,
                    provider_id=booking.provider_id,
                    completed_at=entry.changed_at,
                    actual_duration_minutes=booking.actual_duration_minutes,
                )
            )
        elif target == BookingStatus.CANCELLED:
            events.append(
                BookingCancelled(
                    booking_id=booking.id,
                    cancelled_by=actor.id,
                    cancelled_by_role=actor.role.value,
                    cancelled_at=entry.changed_at,
                    suggested_refund_amount=quote.amount if quote else None,
                    reason=entry.reason,
                )
            )
        elif target == BookingStatus.NO_SHOW:
            events.append(
                BookingMarkedNoShow(
                    booking_id=booking.id,
                    marked_by=actor.id,
                    marked_at=entry.changed_at,
                )
            )
        return tuple(events)
