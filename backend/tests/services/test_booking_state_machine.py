from __future__ import annotations

from datetime import timedelta

import pytest
from sqlalchemy import update

from sahayak.core.enums import BookingStatus
from sahayak.core.exceptions import (
    ConcurrentUpdateConflict,
    Forbidden,
    InvalidTransition,
    NotFoundException,
    ValidationException,
)
from sahayak.models.booking import Booking
from sahayak.principal import WEBHOOK_ACTOR
from sahayak.repositories.booking_repository import BookingRepository
from sahayak.repositories.event_outbox_repository import EventOutboxRepository
from sahayak.repositories.status_history_repository import StatusHistoryRepository
from sahayak.services.booking_state_machine import (
    TRANSITIONS,
    BookingStateMachine,
    derive_duration_minutes,
)
from tests.factories.booking_builders import (
    ADMIN,
    CUSTOMER,
    OTHER_CUSTOMER,
    OTHER_PROVIDER,
    PROVIDER,
    utcnow,
)


@pytest.fixture
def machine(db):
    return BookingStateMachine(db)


def _event_types(db, booking_id):
    return [row.event_type for row in EventOutboxRepository(db).for_aggregate(booking_id)]


def _statuses(db, booking_id):
    return [row.status for row in StatusHistoryRepository(db).history(booking_id)]


def test_transition_table_has_no_exits_from_terminal_states():
    for status in (BookingStatus.COMPLETED, BookingStatus.CANCELLED, BookingStatus.NO_SHOW):
        assert TRANSITIONS[status] == frozenset()


def test_provider_confirms_pending_booking(db, machine, create_booking):
    booking = create_booking()

    version_before = booking.version

    result = machine.transition(booking.id, BookingStatus.CONFIRMED, PROVIDER, reason="Accepted")

    assert result.booking.status == "confirmed"
    assert result.booking.version == version_before + 1
    assert result.previous_status == "pending"
    assert result.entry.sequence == 2
    assert result.entry.actor_id == PROVIDER.id
    assert _statuses(db, booking.id) == ["pending", "confirmed"]
    assert {"BookingStatusChanged", "BookingConfirmed"} <= set(_event_types(db, booking.id))


def test_illegal_transition_lists_allowed_targets(machine, create_booking):
    booking = create_booking()

    with pytest.raises(InvalidTransition) as exc_info:
        machine.transition(booking.id, BookingStatus.COMPLETED, ADMIN)

    assert exc_info.value.code == "INVALID_TRANSITION"
    assert exc_info.value.details["allowed"] == ["cancelled", "confirmed"]


def test_illegal_transition_checked_before_authorization(machine, create_booking):
    booking = create_booking()

    # Customer could never complete a booking, but the state is reported first.
    with pytest.raises(InvalidTransition):
        machine.transition(booking.id, BookingStatus.COMPLETED, CUSTOMER)


@pytest.mark.parametrize("actor", [CUSTOMER, OTHER_PROVIDER, OTHER_CUSTOMER])
def test_only_assigned_provider_confirms(machine, create_booking, actor):
    booking = create_booking()

    with pytest.raises(Forbidden):
        machine.transition(booking.id, BookingStatus.CONFIRMED, actor)


def test_string_status_is_normalised(machine, create_booking):
    booking = create_booking()

    result = machine.transition(booking.id, " Confirmed ", PROVIDER)

    assert result.booking.status == "confirmed"


def test_unknown_status_rejected(machine, create_booking):
    booking = create_booking()

    with pytest.raises(ValidationException) as exc_info:
        machine.transition(booking.id, "archived", ADMIN)

    assert exc_info.value.code == "UNKNOWN_STATUS"


def test_comments_over_limit_rejected(db, machine, create_booking):
    booking = create_booking()

    with pytest.raises(ValidationException) as exc_info:
        machine.transition(booking.id, BookingStatus.CONFIRMED, PROVIDER, comments="x" * 501)

    assert exc_info.value.code == "COMMENTS_TOO_LONG"
    assert _statuses(db, booking.id) == ["pending"]


def test_unknown_booking(machine):
    with pytest.raises(NotFoundException):
        machine.transition("01HZZZZZZZZZZZZZZZZZZZZZZZ", BookingStatus.CONFIRMED, ADMIN)


class _VanishingStore(BookingRepository):
    """Loses the booking on the reload that follows a successful write."""

    def __init__(self, db):
        super().__init__(db)
        self.reads = 0

    def get_booking(self, booking_id, *, fresh=False):
        self.reads += 1
        if self.reads > 1:
            return None
        return super().get_booking(booking_id, fresh=fresh)


def test_booking_gone_after_write_rolls_back(db, create_booking):
    booking = create_booking()
    machine = BookingStateMachine(db, booking_repository=_VanishingStore(db))

    with pytest.raises(NotFoundException) as exc_info:
        machine.transition(booking.id, BookingStatus.CONFIRMED, PROVIDER)

    assert exc_info.value.code == "BOOKING_NOT_FOUND"
    assert _statuses(db, booking.id) == ["pending"]


def test_start_and_complete_record_work_window(db, machine, create_booking):
    booking = create_booking()
    machine.transition(booking.id, BookingStatus.CONFIRMED, PROVIDER)
    started = utcnow()

    in_progress = machine.transition(booking.id, BookingStatus.IN_PROGRESS, PROVIDER, now=started)
    assert in_progress.booking.work_started_at == started

    completed = machine.transition(
        booking.id,
        BookingStatus.COMPLETED,
        PROVIDER,
        now=started + timedelta(minutes=90),
    )

    assert completed.booking.work_ended_at == started + timedelta(minutes=90)
    assert completed.booking.actual_duration_minutes == 90
    assert _statuses(db, booking.id) == ["pending", "confirmed", "in-progress", "completed"]
    assert "BookingCompleted" in _event_types(db, booking.id)

    with pytest.raises(InvalidTransition):
        machine.transition(booking.id, BookingStatus.CANCELLED, ADMIN)


def test_customer_cancellation_records_refund_quote(db, machine, create_booking):
    booking = create_booking(scheduled_at=utcnow() + timedelta(hours=20))

    result = machine.transition(
        booking.id, BookingStatus.CANCELLED, CUSTOMER, reason="Plans changed"
    )

    assert result.refund_quote is not None
    assert result.refund_quote.percent == 75
    cancelled = result.booking
    assert cancelled.status == "cancelled"
    assert cancelled.cancelled_by_id == CUSTOMER.id
    assert cancelled.cancelled_by_role == "customer"
    assert cancelled.cancellation_reason == "Plans changed"
    # 75% of 590 = 442.5, rounded half up
    assert cancelled.suggested_refund_amount == 443
    assert "BookingCancelled" in _event_types(db, booking.id)


def test_other_customer_cannot_cancel(machine, create_booking):
    booking = create_booking()

    with pytest.raises(Forbidden):
        machine.transition(booking.id, BookingStatus.CANCELLED, OTHER_CUSTOMER)


def test_provider_can_cancel_own_booking(machine, create_booking):
    booking = create_booking()

    result = machine.transition(booking.id, BookingStatus.CANCELLED, PROVIDER)

    assert result.booking.cancelled_by_role == "provider"


def test_no_show_is_operator_only(machine, create_booking):
    booking = create_booking()
    machine.transition(booking.id, BookingStatus.CONFIRMED, PROVIDER)

    with pytest.raises(Forbidden):
        machine.transition(booking.id, BookingStatus.NO_SHOW, PROVIDER)

    result = machine.transition(booking.id, BookingStatus.NO_SHOW, ADMIN)
    assert result.booking.status == "no-show"


def test_system_actor_may_confirm(machine, create_booking):
    booking = create_booking()

    result = machine.transition(booking.id, BookingStatus.CONFIRMED, WEBHOOK_ACTOR)

    assert result.entry.actor_id == "system:webhook"


class _RacingRepository(BookingRepository):
    """Lets another writer bump the row between the read and the write."""

    def compare_and_set(self, booking_id, **kwargs):
        self.db.execute(
            update(Booking)
            .where(Booking.id == booking_id)
            .values(version=Booking.version + 1)
            .execution_options(synchronize_session=False)
        )
        return super().compare_and_set(booking_id, **kwargs)


def test_stale_write_raises_conflict_and_leaves_no_trace(db, create_booking):
    booking = create_booking()
    machine = BookingStateMachine(db, booking_repository=_RacingRepository(db))

    with pytest.raises(ConcurrentUpdateConflict) as exc_info:
        machine.transition(booking.id, BookingStatus.CONFIRMED, PROVIDER)

    assert exc_info.value.code == "CONCURRENT_UPDATE"
    fresh = BookingRepository(db).get_booking(booking.id, fresh=True)
    assert fresh.status == "pending"
    assert fresh.version == 1
    assert _statuses(db, booking.id) == ["pending"]


def test_duration_rounds_half_minutes_up():
    start = utcnow()
    assert derive_duration_minutes(start, start + timedelta(seconds=90)) == 2
    assert derive_duration_minutes(start, start + timedelta(seconds=89)) == 1
    assert derive_duration_minutes(start, start - timedelta(minutes=5)) == 0
