# backend/sahayak/repositories/booking_repository.py
"""
Booking Repository

Data access for bookings and their payment satellite rows. Every write to
an existing booking or payment row goes through a compare-and-set helper:
the UPDATE only applies if the row still carries the version or status the
caller read, and the caller learns whether it won from the return value.
"""

from datetime import datetime, timezone
import logging
from typing import Any, Iterable, List, Mapping, Optional, Sequence, Tuple

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Query, Session, selectinload

from ..core.exceptions import RepositoryException
from ..models.booking import Booking, BookingCharge
from ..models.booking_payment import BookingPayment
from .base_repository import BaseRepository

logger = logging.getLogger(__name__)


class BookingRepository(BaseRepository[Booking]):
    """Repository for booking data access."""

    def __init__(self, db: Session):
        super().__init__(db, Booking)

    def _apply_eager_loading(self, query: Query) -> Query:
        return query.options(selectinload(Booking.payment), selectinload(Booking.charges))

    # Reads

    def get_booking(self, booking_id: str, *, fresh: bool = False) -> Optional[Booking]:
        """
        Load a booking with its payment row and charges.

        ``fresh=True`` bypasses the session identity map so the caller sees
        the latest committed state, which is what compare-and-set retries need.
        """
        try:
            query = self._apply_eager_loading(self._build_query().filter(Booking.id == booking_id))
            if fresh:
                query = query.populate_existing()
            booking = query.first()
            if booking is not None and fresh and booking.payment is not None:
                self.db.refresh(booking.payment)
            return booking
        except SQLAlchemyError as e:
            self.logger.error("Error loading booking %s: %s", booking_id, str(e))
            raise RepositoryException(f"Failed to load booking: {str(e)}")

    def get_by_gateway_order_id(self, order_id: str) -> Optional[Booking]:
        try:
            return (
                self._apply_eager_loading(self._build_query())
                .join(BookingPayment, BookingPayment.booking_id == Booking.id)
                .filter(BookingPayment.gateway_order_id == order_id)
                .populate_existing()
                .first()
            )
        except SQLAlchemyError as e:
            self.logger.error("Error loading booking for order %s: %s", order_id, str(e))
            raise RepositoryException(f"Failed to load booking by order: {str(e)}")

    def list_customer_payments(
        self,
        customer_id: str,
        *,
        status: Optional[str] = None,
        offset: int = 0,
        limit: int = 20,
    ) -> Tuple[List[Booking], int]:
        """Bookings with payment activity for a customer, newest first."""
        query = (
            self._build_query()
            .join(BookingPayment, BookingPayment.booking_id == Booking.id)
            .filter(Booking.customer_id == customer_id)
            .filter(BookingPayment.gateway_order_id.isnot(None))
        )
        if status:
            query = query.filter(BookingPayment.status == status)
        try:
            total = query.count()
            rows = (
                self._apply_eager_loading(query)
                .order_by(Booking.created_at.desc())
                .offset(offset)
                .limit(limit)
                .all()
            )
        except SQLAlchemyError as e:
            self.logger.error("Error listing payments for %s: %s", customer_id, str(e))
            raise RepositoryException(f"Failed to list payments: {str(e)}")
        return rows, total

    def list_bookings(
        self,
        *,
        customer_id: Optional[str] = None,
        provider_id: Optional[str] = None,
        status: Optional[str] = None,
        offset: int = 0,
        limit: int = 20,
    ) -> Tuple[List[Booking], int]:
        """Bookings filtered by party and status, latest schedule first."""
        query = self._build_query()
        if customer_id is not None:
            query = query.filter(Booking.customer_id == customer_id)
        if provider_id is not None:
            query = query.filter(Booking.provider_id == provider_id)
        if status:
            query = query.filter(Booking.status == status)
        try:
            total = query.count()
            rows = (
                self._apply_eager_loading(query)
                .order_by(Booking.scheduled_at.desc())
                .offset(offset)
                .limit(limit)
                .all()
            )
        except SQLAlchemyError as e:
            self.logger.error("Error listing bookings: %s", str(e))
            raise RepositoryException(f"Failed to list bookings: {str(e)}")
        return rows, total

    def list_scheduled(
        self,
        *,
        statuses: Sequence[str],
        scheduled_after: Optional[datetime] = None,
        scheduled_before: Optional[datetime] = None,
        customer_id: Optional[str] = None,
        provider_id: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[Booking]:
        """Bookings in ``statuses`` inside a schedule window, soonest first."""
        query = self._build_query().filter(Booking.status.in_(list(statuses)))
        if scheduled_after is not None:
            query = query.filter(Booking.scheduled_at >= scheduled_after)
        if scheduled_before is not None:
            query = query.filter(Booking.scheduled_at < scheduled_before)
        if customer_id is not None:
            query = query.filter(Booking.customer_id == customer_id)
        if provider_id is not None:
            query = query.filter(Booking.provider_id == provider_id)
        query = self._apply_eager_loading(query).order_by(Booking.scheduled_at.asc())
        if limit is not None:
            query = query.limit(limit)
        return self._execute_query(query)

    # Writes

    def create_booking(self, payment_fields: Mapping[str, Any], **fields: Any) -> Booking:
        """Insert a booking together with its pending payment row."""
        booking = self.create(**fields)
        payment = BookingPayment(booking_id=booking.id, **payment_fields)
        self.db.add(payment)
        self.db.flush()
        booking.payment = payment
        return booking

    def add_charge(self, **fields: Any) -> BookingCharge:
        charge = BookingCharge(**fields)
        self.db.add(charge)
        self.db.flush()
        return charge

    def compare_and_set(
        self,
        booking_id: str,
        *,
        expected_version: int,
        expected_status: Optional[str] = None,
        values: Mapping[str, Any],
    ) -> bool:
        """
        Apply ``values`` only if the booking is still at ``expected_version``
        (and ``expected_status`` when given). Bumps ``version`` on success.
        """
        stmt = update(Booking).where(
            Booking.id == booking_id,
            Booking.version == expected_version,
        )
        if expected_status is not None:
            stmt = stmt.where(Booking.status == expected_status)
        stmt = stmt.values(
            **dict(values),
            version=Booking.version + 1,
            updated_at=datetime.now(timezone.utc),
        ).execution_options(synchronize_session=False)
        return self._execute_cas(stmt, "booking", booking_id)

    def compare_and_set_payment(
        self,
        booking_id: str,
        *,
        expected_statuses: Iterable[str],
        values: Mapping[str, Any],
        expected_order_id: Optional[str] = None,
    ) -> bool:
        """Update the payment row only while its status is one of ``expected_statuses``."""
        statuses = list(expected_statuses)
        stmt = update(BookingPayment).where(
            BookingPayment.booking_id == booking_id,
            BookingPayment.status.in_(statuses),
        )
        if expected_order_id is not None:
            stmt = stmt.where(BookingPayment.gateway_order_id == expected_order_id)
        stmt = stmt.values(**dict(values)).execution_options(synchronize_session=False)
        return self._execute_cas(stmt, "payment", booking_id)

    def _execute_cas(self, stmt: Any, kind: str, booking_id: str) -> bool:
        try:
            result = self.db.execute(stmt)
        except SQLAlchemyError as e:
            self.logger.error("Compare-and-set on %s %s failed: %s", kind, booking_id, str(e))
            raise RepositoryException(f"Failed to update {kind}: {str(e)}") from e
        won = result.rowcount == 1
        if not won:
            self.logger.info(
                "Compare-and-set lost on %s",
                kind,
                extra={"booking_id": booking_id, "cas_target": kind},
            )
        return won
