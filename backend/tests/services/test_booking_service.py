from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from sahayak.core.exceptions import (
    BusinessRuleException,
    Forbidden,
    NotFoundException,
    ValidationException,
)
from sahayak.integrations.catalog_client import InMemoryServiceCatalog, ServiceOffering
from sahayak.repositories.event_outbox_repository import EventOutboxRepository
from sahayak.schemas.booking import (
    AdditionalChargeCreate,
    BookingStatusUpdate,
    WorkSummaryUpdate,
)
from sahayak.services.booking_service import BookingService, local_day_bounds
from tests.factories.booking_builders import (
    ADMIN,
    CUSTOMER,
    OTHER_CUSTOMER,
    OTHER_PROVIDER,
    PROVIDER,
    PROVIDER_ID,
    SERVICE_ID,
    booking_payload,
    utcnow,
)


class TestCreateBooking:
    def test_prices_from_catalog_and_records_pending_entry(self, db, booking_service):
        booking = booking_service.create_booking(CUSTOMER, booking_payload())

        assert booking.status == "pending"
        assert booking.version == 1
        assert booking.customer_id == CUSTOMER.id
        assert booking.service_name == "Tap and pipe repair"
        assert booking.estimated_duration_minutes == 60
        assert (booking.base_amount, booking.tax_amount, booking.total_amount) == (500, 90, 590)
        assert booking.booking_number.startswith("BK")
        assert booking.payment.status == "pending"
        assert booking.address["pincode"] == "560001"

        _, history = booking_service.get_status_history(CUSTOMER, booking.id)
        assert [(h.sequence, h.from_status, h.status, h.actor_id) for h in history] == [
            (1, None, "pending", CUSTOMER.id)
        ]
        events = EventOutboxRepository(db).for_aggregate(booking.id)
        assert [e.event_type for e in events] == ["BookingCreated"]
        assert events[0].payload["total_amount"] == 590

    def test_schedule_must_be_in_the_future(self, booking_service):
        with pytest.raises(ValidationException) as exc_info:
            booking_service.create_booking(
                CUSTOMER, booking_payload(scheduled_at=utcnow() - timedelta(minutes=1))
            )
        assert exc_info.value.code == "SCHEDULE_IN_PAST"

    def test_unknown_offering(self, booking_service):
        with pytest.raises(NotFoundException) as exc_info:
            booking_service.create_booking(CUSTOMER, booking_payload(provider_id="prov_missing"))
        assert exc_info.value.details == {"provider_id": "prov_missing", "service_id": SERVICE_ID}

    def test_providers_cannot_book(self, booking_service):
        with pytest.raises(Forbidden):
            booking_service.create_booking(PROVIDER, booking_payload())

    def test_booking_numbers_are_unique(self, create_booking):
        numbers = {create_booking().booking_number for _ in range(5)}
        assert len(numbers) == 5


class TestReads:
    def test_parties_and_admins_can_view(self, booking_service, create_booking):
        booking = create_booking()

        for actor in (CUSTOMER, PROVIDER, ADMIN):
            assert booking_service.get_booking(actor, booking.id).id == booking.id

    @pytest.mark.parametrize("actor", [OTHER_CUSTOMER, OTHER_PROVIDER])
    def test_strangers_cannot_view(self, booking_service, create_booking, actor):
        booking = create_booking()

        with pytest.raises(Forbidden):
            booking_service.get_booking(actor, booking.id)

    def test_list_is_scoped_to_caller(self, booking_service, create_booking):
        mine = create_booking()
        create_booking(OTHER_CUSTOMER)
        other_provider = create_booking(provider_id="prov_02")

        rows, total = booking_service.list_bookings(CUSTOMER)
        assert total == 2
        assert {b.id for b in rows} == {mine.id, other_provider.id}

        rows, total = booking_service.list_bookings(PROVIDER)
        assert total == 2
        assert all(b.provider_id == PROVIDER_ID for b in rows)

        _, total = booking_service.list_bookings(ADMIN)
        assert total == 3

    def test_list_filters_by_status_and_pages(self, booking_service, create_booking):
        first = create_booking()
        create_booking()
        booking_service.cancel_booking(CUSTOMER, first.id)

        rows, total = booking_service.list_bookings(CUSTOMER, status="cancelled")
        assert total == 1
        assert rows[0].id == first.id

        rows, total = booking_service.list_bookings(CUSTOMER, page=2, per_page=1)
        assert total == 2
        assert len(rows) == 1

    def test_list_rejects_unknown_status(self, booking_service):
        with pytest.raises(ValidationException):
            booking_service.list_bookings(CUSTOMER, status="archived")


class TestScheduledViews:
    @pytest.fixture
    def clocked_service(self, db, catalog):
        # 10:00 in Kolkata on 10 March
        moment = {"now": datetime(2026, 3, 10, 4, 30, tzinfo=timezone.utc)}
        service = BookingService(db, catalog, clock=lambda: moment["now"])
        return service, moment

    def _book(self, service, scheduled_at, actor=CUSTOMER, provider_id=PROVIDER_ID):
        return service.create_booking(
            actor, booking_payload(provider_id=provider_id, scheduled_at=scheduled_at)
        )

    def test_day_bounds_follow_local_midnight(self):
        start, end = local_day_bounds(
            datetime(2026, 3, 9, 19, 0, tzinfo=timezone.utc), "Asia/Kolkata"
        )

        assert start == datetime(2026, 3, 9, 18, 30, tzinfo=timezone.utc)
        assert end == datetime(2026, 3, 10, 18, 30, tzinfo=timezone.utc)

    def test_upcoming_lists_open_future_bookings_soonest_first(self, clocked_service):
        service, moment = clocked_service
        later = self._book(service, moment["now"] + timedelta(days=2))
        sooner = self._book(service, moment["now"] + timedelta(hours=3))
        cancelled = self._book(service, moment["now"] + timedelta(hours=5))
        service.cancel_booking(CUSTOMER, cancelled.id)
        self._book(service, moment["now"] + timedelta(hours=4), actor=OTHER_CUSTOMER)

        rows = service.list_upcoming(CUSTOMER)

        assert [b.id for b in rows] == [sooner.id, later.id]
        assert len(service.list_upcoming(CUSTOMER, limit=1)) == 1

        moment["now"] += timedelta(hours=6)
        assert [b.id for b in service.list_upcoming(CUSTOMER)] == [later.id]

    def test_today_lists_providers_confirmed_visits_for_local_day(self, clocked_service):
        service, moment = clocked_service
        # 09 March 19:00 UTC is just past midnight on 10 March in Kolkata.
        moment["now"] = datetime(2026, 3, 9, 18, 0, tzinfo=timezone.utc)
        early = self._book(service, datetime(2026, 3, 9, 19, 0, tzinfo=timezone.utc))
        afternoon = self._book(service, datetime(2026, 3, 10, 8, 30, tzinfo=timezone.utc))
        tomorrow = self._book(service, datetime(2026, 3, 10, 19, 0, tzinfo=timezone.utc))
        unconfirmed = self._book(service, datetime(2026, 3, 10, 9, 30, tzinfo=timezone.utc))
        elsewhere = self._book(
            service, datetime(2026, 3, 10, 6, 0, tzinfo=timezone.utc), provider_id="prov_02"
        )
        for booking in (early, afternoon, tomorrow):
            service.update_status(PROVIDER, booking.id, BookingStatusUpdate(status="confirmed"))
        service.update_status(OTHER_PROVIDER, elsewhere.id, BookingStatusUpdate(status="confirmed"))
        moment["now"] = datetime(2026, 3, 10, 4, 30, tzinfo=timezone.utc)

        rows = service.list_today(PROVIDER)

        assert [b.id for b in rows] == [early.id, afternoon.id]
        assert unconfirmed.id not in {b.id for b in rows}
        assert {b.id for b in service.list_today(ADMIN)} == {early.id, elsewhere.id, afternoon.id}

    def test_customers_have_no_day_schedule(self, booking_service):
        with pytest.raises(Forbidden):
            booking_service.list_today(CUSTOMER)


class TestStatusChanges:
    def test_update_status_goes_through_state_machine(self, booking_service, create_booking):
        booking = create_booking()

        result = booking_service.update_status(
            PROVIDER, booking.id, BookingStatusUpdate(status="confirmed", comments="See you then")
        )

        assert result.booking.status == "confirmed"
        _, history = booking_service.get_status_history(CUSTOMER, booking.id)
        assert history[-1].comments == "See you then"

    def test_cancel_returns_quote(self, booking_service, create_booking):
        booking = create_booking(scheduled_at=utcnow() + timedelta(hours=5))

        result = booking_service.cancel_booking(CUSTOMER, booking.id, reason="No longer needed")

        assert result.refund_quote.percent == 50
        assert result.booking.suggested_refund_amount == 295

    @pytest.mark.parametrize(
        ("hours_ahead", "expected_refund"),
        [(30, 1180), (10, 590)],
    )
    def test_thousand_rupee_visit_end_to_end(self, db, hours_ahead, expected_refund):
        service = BookingService(
            db,
            InMemoryServiceCatalog(
                {
                    (PROVIDER_ID, SERVICE_ID): ServiceOffering(
                        service_id=SERVICE_ID,
                        provider_id=PROVIDER_ID,
                        name="Geyser installation",
                        base_price=1000,
                        duration_minutes=120,
                    )
                }
            ),
        )
        booking = service.create_booking(
            CUSTOMER, booking_payload(scheduled_at=utcnow() + timedelta(hours=hours_ahead))
        )
        assert booking.total_amount == 1180

        result = service.cancel_booking(CUSTOMER, booking.id)

        assert result.booking.status == "cancelled"
        assert result.refund_quote.amount == expected_refund
        assert result.booking.suggested_refund_amount == expected_refund


class TestAdditionalCharges:
    def test_charge_reprices_pending_booking(self, booking_service, create_booking):
        booking = create_booking()

        updated = booking_service.add_additional_charge(
            PROVIDER, booking.id, AdditionalChargeCreate(name="Replacement tap", amount=150)
        )

        assert updated.additional_amount == 150
        assert updated.tax_amount == 90
        assert updated.total_amount == 740
        assert updated.version == 2
        assert [c.name for c in updated.charges] == ["Replacement tap"]
        pricing = updated.pricing_dict()
        assert pricing["additional_charges"][0]["amount"] == 150

    def test_only_assigned_provider_adds_charges(self, booking_service, create_booking):
        booking = create_booking()
        charge = AdditionalChargeCreate(name="Extra", amount=10)

        with pytest.raises(Forbidden):
            booking_service.add_additional_charge(CUSTOMER, booking.id, charge)
        with pytest.raises(Forbidden):
            booking_service.add_additional_charge(OTHER_PROVIDER, booking.id, charge)

    def test_no_charges_after_payment_order(self, booking_service, payment_service, create_booking):
        booking = create_booking()
        payment_service.create_order(CUSTOMER, booking.id)

        with pytest.raises(BusinessRuleException) as exc_info:
            booking_service.add_additional_charge(
                PROVIDER, booking.id, AdditionalChargeCreate(name="Extra", amount=10)
            )
        assert exc_info.value.code == "PAYMENT_ORDER_EXISTS"

    def test_no_charges_after_payment_link(self, booking_service, payment_service, create_booking):
        booking = create_booking()
        payment_service.create_payment_link(CUSTOMER, booking.id)

        with pytest.raises(BusinessRuleException) as exc_info:
            booking_service.add_additional_charge(
                PROVIDER, booking.id, AdditionalChargeCreate(name="Extra", amount=10)
            )
        assert exc_info.value.code == "PAYMENT_ORDER_EXISTS"

    def test_no_charges_once_confirmed(self, booking_service, paid_booking):
        booking = paid_booking()

        with pytest.raises(BusinessRuleException) as exc_info:
            booking_service.add_additional_charge(
                PROVIDER, booking.id, AdditionalChargeCreate(name="Extra", amount=10)
            )
        assert exc_info.value.code == "BOOKING_NOT_PENDING"


class TestWorkSummary:
    def test_requires_started_booking(self, booking_service, create_booking):
        booking = create_booking()

        with pytest.raises(ValidationException) as exc_info:
            booking_service.add_work_summary(
                PROVIDER, booking.id, WorkSummaryUpdate(work_description="Fixed it")
            )
        assert exc_info.value.code == "WORK_SUMMARY_NOT_ALLOWED"

    def test_stores_summary_on_in_progress_booking(self, booking_service, paid_booking):
        booking = paid_booking()
        booking_service.update_status(PROVIDER, booking.id, BookingStatusUpdate(status="in-progress"))

        updated = booking_service.add_work_summary(
            PROVIDER,
            booking.id,
            WorkSummaryUpdate(
                work_description="Replaced washer",
                after_images=["https://cdn.example.test/after.jpg"],
                materials_used=["washer"],
            ),
        )

        summary = updated.work_summary_dict()
        assert summary["description"] == "Replaced washer"
        assert summary["materials_used"] == ["washer"]
        assert summary["work_started_at"] is not None
