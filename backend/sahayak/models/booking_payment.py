"""Booking payment satellite table."""

from __future__ import annotations

from typing import Any

from sqlalchemy import CheckConstraint, Column, ForeignKey, Integer, String, Text
from sqlalchemy.orm import relationship
import ulid

from ..core.enums import PaymentMethod, PaymentStatus
from ..database import Base
from .types import UTCDateTime


class BookingPayment(Base):
    """Gateway payment and refund state for a single booking."""

    __tablename__ = "booking_payments"

    id = Column(String(26), primary_key=True, default=lambda: str(ulid.ULID()))
    booking_id = Column(
        String(26),
        ForeignKey("bookings.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )

    status = Column(String(32), nullable=False, default=PaymentStatus.PENDING.value)
    method = Column(String(20), nullable=False, default=PaymentMethod.RAZORPAY.value)

    gateway_order_id = Column(String(64), nullable=True, unique=True)
    payment_link_id = Column(String(64), nullable=True, unique=True)
    payment_link_url = Column(String(255), nullable=True)
    transaction_id = Column(String(64), nullable=True)
    paid_amount = Column(Integer, nullable=True)
    paid_at = Column(UTCDateTime(), nullable=True)
    failure_reason = Column(String(500), nullable=True)

    refund_transaction_id = Column(String(64), nullable=True, unique=True)
    refund_amount = Column(Integer, nullable=True)
    refunded_at = Column(UTCDateTime(), nullable=True)

    # Set when the gateway reports contradictory outcomes for this booking.
    reconciliation_flag = Column(Text, nullable=True)
    last_event_at = Column(UTCDateTime(), nullable=True)

    booking = relationship("Booking", back_populates="payment")

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'paid', 'failed', 'refunded', 'partially_refunded')",
            name="ck_booking_payments_status",
        ),
        CheckConstraint(
            "status != 'paid' OR (transaction_id IS NOT NULL AND paid_at IS NOT NULL)",
            name="ck_booking_payments_paid_requires_transaction",
        ),
        CheckConstraint(
            "refund_amount IS NULL OR (refund_amount >= 0 AND refund_amount <= paid_amount)",
            name="ck_booking_payments_refund_bounded",
        ),
    )

    def __repr__(self) -> str:
        return f"<BookingPayment booking={self.booking_id} status={self.status}>"

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "method": self.method,
            "gateway_order_id": self.gateway_order_id,
            "payment_link_id": self.payment_link_id,
            "payment_link_url": self.payment_link_url,
            "transaction_id": self.transaction_id,
            "paid_amount": self.paid_amount,
            "paid_at": self.paid_at,
            "refund_transaction_id": self.refund_transaction_id,
            "refund_amount": self.refund_amount,
            "refunded_at": self.refunded_at,
            "failure_reason": self.failure_reason,
            "reconciliation_flag": self.reconciliation_flag,
        }
