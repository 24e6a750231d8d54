# backend/sahayak/models/booking.py
"""
Booking model.

A booking is a scheduled engagement between a customer and a provider for a
single service. Customer, provider and service ids are references into other
systems; the booking does not own those records.

Status is only ever written by the booking state machine through the
repository's compare-and-set helpers, which also bump ``version``.
"""

from datetime import datetime, timezone
import logging
import secrets
import time
from typing import Any, Optional

from sqlalchemy import (
    CheckConstraint,
    Column,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import relationship
import ulid

from ..core.enums import BookingStatus
from ..database import Base
from .types import JSONType, UTCDateTime

logger = logging.getLogger(__name__)

MIN_DURATION_MINUTES = 15
MAX_DURATION_MINUTES = 1440
MAX_EVIDENCE_IMAGES = 10
MAX_MATERIALS = 50


def generate_booking_number() -> str:
    """Human-readable booking reference, e.g. ``BK482913A1F09C``."""
    millis = str(int(time.time() * 1000))[-6:]
    return f"BK{millis}{secrets.token_hex(3).upper()}"


class Booking(Base):
    """Booking record with frozen pricing and lifecycle state."""

    __tablename__ = "bookings"

    id = Column(String(26), primary_key=True, index=True, default=lambda: str(ulid.ULID()))
    booking_number = Column(
        String(20), nullable=False, unique=True, default=generate_booking_number
    )

    # External references (non-owning)
    customer_id = Column(String(64), nullable=False, index=True)
    provider_id = Column(String(64), nullable=False, index=True)
    service_id = Column(String(64), nullable=False)
    service_name = Column(String(200), nullable=True)

    # Schedule
    scheduled_at = Column(UTCDateTime(), nullable=False, index=True)
    estimated_duration_minutes = Column(Integer, nullable=False)
    actual_duration_minutes = Column(Integer, nullable=True)

    # Location and contact
    address = Column(JSONType, nullable=False)
    contact_phone = Column(String(20), nullable=True)
    special_instructions = Column(Text, nullable=True)

    # Lifecycle
    status = Column(String(20), nullable=False, default=BookingStatus.PENDING.value, index=True)
    version = Column(Integer, nullable=False, default=1)

    # Pricing (integer major units, frozen at creation)
    currency = Column(String(3), nullable=False, default="INR")
    base_amount = Column(Integer, nullable=False)
    tax_amount = Column(Integer, nullable=False, default=0)
    additional_amount = Column(Integer, nullable=False, default=0)
    discount_amount = Column(Integer, nullable=False, default=0)
    total_amount = Column(Integer, nullable=False)

    # Cancellation
    cancelled_at = Column(UTCDateTime(), nullable=True)
    cancelled_by_id = Column(String(64), nullable=True)
    cancelled_by_role = Column(String(20), nullable=True)
    cancellation_reason = Column(Text, nullable=True)
    suggested_refund_amount = Column(Integer, nullable=True)

    # Work summary
    work_started_at = Column(UTCDateTime(), nullable=True)
    work_ended_at = Column(UTCDateTime(), nullable=True)
    work_description = Column(Text, nullable=True)
    before_images = Column(JSONType, nullable=True)
    after_images = Column(JSONType, nullable=True)
    materials_used = Column(JSONType, nullable=True)
    additional_notes = Column(Text, nullable=True)

    created_at = Column(UTCDateTime(), nullable=False, default=lambda: datetime.now(timezone.utc))
    updated_at = Column(UTCDateTime(), nullable=True, onupdate=lambda: datetime.now(timezone.utc))

    payment = relationship(
        "BookingPayment",
        back_populates="booking",
        uselist=False,
        cascade="all, delete-orphan",
    )
    charges = relationship(
        "BookingCharge",
        back_populates="booking",
        order_by="BookingCharge.created_at",
        cascade="all, delete-orphan",
    )
    status_changes = relationship(
        "BookingStatusChange",
        order_by="BookingStatusChange.sequence",
        viewonly=True,
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'confirmed', 'in-progress', 'completed', 'cancelled', 'no-show')",
            name="ck_bookings_status",
        ),
        CheckConstraint(
            f"estimated_duration_minutes >= {MIN_DURATION_MINUTES} "
            f"AND estimated_duration_minutes <= {MAX_DURATION_MINUTES}",
            name="ck_bookings_estimated_duration",
        ),
        CheckConstraint("total_amount >= 0", name="ck_bookings_total_non_negative"),
        CheckConstraint(
            "total_amount = base_amount + tax_amount + additional_amount - discount_amount",
            name="ck_bookings_total_formula",
        ),
        CheckConstraint(
            "suggested_refund_amount IS NULL OR "
            "(suggested_refund_amount >= 0 AND suggested_refund_amount <= total_amount)",
            name="ck_bookings_suggested_refund_range",
        ),
        CheckConstraint("version >= 1", name="ck_bookings_version_positive"),
        Index("ix_bookings_provider_status", "provider_id", "status"),
    )

    def __repr__(self) -> str:
        return f"<Booking {self.booking_number} {self.status} v{self.version}>"

    @property
    def status_enum(self) -> BookingStatus:
        return BookingStatus(self.status)

    @property
    def is_terminal(self) -> bool:
        return self.status_enum.is_terminal

    def is_owned_by_customer(self, user_id: Optional[str]) -> bool:
        return bool(user_id) and self.customer_id == user_id

    def is_assigned_to_provider(self, provider_id: Optional[str]) -> bool:
        return bool(provider_id) and self.provider_id == provider_id

    def pricing_dict(self) -> dict[str, Any]:
        return {
            "currency": self.currency,
            "base_amount": self.base_amount,
            "additional_charges": [charge.to_dict() for charge in self.charges],
            "additional_amount": self.additional_amount,
            "discount_amount": self.discount_amount,
            "tax_amount": self.tax_amount,
            "total_amount": self.total_amount,
        }

    def to_dict(self) -> dict[str, Any]:
        """Convert booking to dictionary for API responses."""
        return {
            "id": self.id,
            "booking_number": self.booking_number,
            "customer_id": self.customer_id,
            "provider_id": self.provider_id,
            "service_id": self.service_id,
            "service_name": self.service_name,
            "scheduled_at": self.scheduled_at,
            "estimated_duration_minutes": self.estimated_duration_minutes,
            "actual_duration_minutes": self.actual_duration_minutes,
            "address": self.address,
            "contact_phone": self.contact_phone,
            "special_instructions": self.special_instructions,
            "status": self.status,
            "version": self.version,
            "pricing": self.pricing_dict(),
            "payment": self.payment.to_dict() if self.payment else None,
            "cancellation": (
                {
                    "cancelled_at": self.cancelled_at,
                    "cancelled_by_id": self.cancelled_by_id,
                    "cancelled_by_role": self.cancelled_by_role,
                    "reason": self.cancellation_reason,
                    "suggested_refund_amount": self.suggested_refund_amount,
                }
                if self.cancelled_at
                else None
            ),
            "work_summary": self.work_summary_dict(),
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    def work_summary_dict(self) -> Optional[dict[str, Any]]:
        if not (self.work_started_at or self.work_description or self.after_images):
            return None
        return {
            "work_started_at": self.work_started_at,
            "work_ended_at": self.work_ended_at,
            "description": self.work_description,
            "before_images": self.before_images or [],
            "after_images": self.after_images or [],
            "materials_used": self.materials_used or [],
            "additional_notes": self.additional_notes,
        }


class BookingCharge(Base):
    """Additional charge appended to a booking before confirmation."""

    __tablename__ = "booking_charges"

    id = Column(String(26), primary_key=True, default=lambda: str(ulid.ULID()))
    booking_id = Column(
        String(26), ForeignKey("bookings.id", ondelete="CASCADE"), nullable=False, index=True
    )
    name = Column(String(120), nullable=False)
    amount = Column(Integer, nullable=False)
    description = Column(Text, nullable=True)
    added_by_id = Column(String(64), nullable=False)
    created_at = Column(UTCDateTime(), nullable=False, default=lambda: datetime.now(timezone.utc))

    booking = relationship("Booking", back_populates="charges")

    __table_args__ = (CheckConstraint("amount > 0", name="ck_booking_charges_amount_positive"),)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "amount": self.amount,
            "description": self.description,
        }

