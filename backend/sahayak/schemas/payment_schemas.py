"""
Payment-related Pydantic schemas.

Defines request and response models for the gateway checkout flow: order
creation, hosted payment links, client-side verification, reconciliation,
refunds and the customer's transaction history.
"""

from datetime import datetime
from typing import List, Optional

from pydantic import AliasChoices, Field

from ..models.booking import Booking
from ._strict_base import StrictModel, StrictRequestModel

# ========== Request Models ==========


class CreateOrderRequest(StrictRequestModel):
    """Request to create a gateway order for a booking."""

    booking_id: str = Field(..., min_length=1, max_length=64, description="Booking to pay for")


class PaymentLinkRequest(StrictRequestModel):
    """Ask for a hosted payment link instead of the checkout widget."""

    booking_id: str = Field(..., min_length=1, max_length=64)
    customer_name: Optional[str] = Field(None, max_length=120)
    customer_email: Optional[str] = Field(None, max_length=254, pattern=r"^[^@\s]+@[^@\s]+$")
    callback_url: Optional[str] = Field(None, max_length=500)


class VerifyPaymentRequest(StrictRequestModel):
    """
    Checkout result reported by the client.

    The checkout widget hands back ``razorpay_*`` keys; the camelCase
    gateway-neutral names are accepted as well.
    """

    booking_id: str = Field(..., min_length=1, max_length=64)
    order_id: str = Field(
        ...,
        min_length=1,
        validation_alias=AliasChoices(
            "razorpay_order_id", "razorpayOrderId", "gatewayOrderId", "orderId", "order_id"
        ),
    )
    payment_id: str = Field(
        ...,
        min_length=1,
        validation_alias=AliasChoices(
            "razorpay_payment_id",
            "razorpayPaymentId",
            "gatewayPaymentId",
            "paymentId",
            "payment_id",
        ),
    )
    signature: str = Field(
        ...,
        min_length=1,
        validation_alias=AliasChoices(
            "razorpay_signature", "razorpaySignature", "gatewaySignature", "signature"
        ),
    )


class ReconcileRequest(StrictRequestModel):
    booking_id: str = Field(..., min_length=1, max_length=64)


class RefundRequest(StrictRequestModel):
    """Refund the suggested amount of a cancelled booking."""

    booking_id: str = Field(..., min_length=1, max_length=64)
    reason: Optional[str] = Field(None, max_length=500)


# ========== Response Models ==========


class CreateOrderResponse(StrictModel):
    order_id: str = Field(..., description="Gateway order id")
    amount: int = Field(..., description="Amount in major currency units")
    amount_minor: int = Field(..., description="Amount in minor units as sent to the gateway")
    currency: str
    booking_id: str
    booking_number: str
    key_id: str = Field(..., description="Public gateway key for the checkout widget")


class PaymentLinkResponse(StrictModel):
    link_id: str = Field(..., description="Gateway payment link id")
    short_url: str = Field(..., description="URL to send to the customer")
    amount: int
    amount_minor: int
    currency: str
    booking_id: str
    booking_number: str


class VerifyPaymentResponse(StrictModel):
    booking_id: str
    booking_number: str
    payment_id: str
    amount: Optional[int] = None
    payment_status: str
    booking_status: str
    already_settled: bool = False


class ReconcileResponse(StrictModel):
    booking_id: str
    payment_status: str
    booking_status: str
    action: str


class RefundResponse(StrictModel):
    booking_id: str
    booking_number: str
    refund_id: str
    refund_amount: int
    status: str


class TransactionItem(StrictModel):
    """Payment activity on one booking."""

    booking_id: str
    booking_number: str
    service_name: Optional[str] = None
    scheduled_at: datetime
    booking_status: str
    amount: int = Field(..., description="Booking total in major units")
    currency: str
    payment_status: str
    gateway_order_id: Optional[str] = None
    transaction_id: Optional[str] = None
    paid_amount: Optional[int] = None
    paid_at: Optional[datetime] = None
    refund_amount: Optional[int] = None
    refunded_at: Optional[datetime] = None
    created_at: datetime

    @classmethod
    def from_booking(cls, booking: Booking) -> "TransactionItem":
        payment = booking.payment
        return cls(
            booking_id=booking.id,
            booking_number=booking.booking_number,
            service_name=booking.service_name,
            scheduled_at=booking.scheduled_at,
            booking_status=booking.status,
            amount=booking.total_amount,
            currency=booking.currency,
            payment_status=payment.status,
            gateway_order_id=payment.gateway_order_id,
            transaction_id=payment.transaction_id,
            paid_amount=payment.paid_amount,
            paid_at=payment.paid_at,
            refund_amount=payment.refund_amount,
            refunded_at=payment.refunded_at,
            created_at=booking.created_at,
        )


class Pagination(StrictModel):
    current_page: int
    total_pages: int
    total_items: int
    items_per_page: int
    has_next: bool
    has_prev: bool


class TransactionListResponse(StrictModel):
    transactions: List[TransactionItem]
    pagination: Pagination
