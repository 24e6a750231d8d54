# backend/sahayak/schemas/booking.py
"""
Booking schemas.

Request models validate shape and bounds only; lifecycle rules (who may do
what, in which status) are enforced by the services.
"""

from datetime import datetime, timezone
from typing import Any, List, Optional

from pydantic import AliasChoices, Field, field_validator

from ..models.booking import MAX_EVIDENCE_IMAGES, MAX_MATERIALS, Booking
from ._strict_base import StrictModel, StrictRequestModel


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class Coordinates(StrictRequestModel):
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)


class BookingAddress(StrictRequestModel):
    """Where the service is performed."""

    street: str = Field(..., min_length=1, max_length=255)
    city: str = Field(..., min_length=1, max_length=100)
    state: str = Field(..., min_length=1, max_length=100)
    pincode: str = Field(..., pattern=r"^\d{6}$")
    country: str = Field(default="India", max_length=100)
    coordinates: Optional[Coordinates] = None


class BookingCreate(StrictRequestModel):
    """Create a booking for one service from one provider."""

    provider_id: str = Field(..., min_length=1, max_length=64)
    service_id: str = Field(..., min_length=1, max_length=64)
    scheduled_at: datetime = Field(
        ...,
        validation_alias=AliasChoices("scheduledAt", "scheduledDate", "scheduled_at"),
        description="When the provider should arrive",
    )
    address: BookingAddress
    contact_phone: Optional[str] = Field(None, pattern=r"^[6-9]\d{9}$")
    special_instructions: Optional[str] = Field(None, max_length=1000)

    @field_validator("scheduled_at")
    @classmethod
    def _normalize_scheduled_at(cls, v: datetime) -> datetime:
        return _as_utc(v)


class BookingStatusUpdate(StrictRequestModel):
    status: str = Field(..., min_length=1, max_length=20)
    reason: Optional[str] = Field(None, max_length=500)
    comments: Optional[str] = Field(None, max_length=500)


class BookingCancelRequest(StrictRequestModel):
    reason: Optional[str] = Field(None, max_length=500)


class AdditionalChargeCreate(StrictRequestModel):
    name: str = Field(..., min_length=1, max_length=120)
    amount: int = Field(..., gt=0, description="Amount in major currency units")
    description: Optional[str] = Field(None, max_length=500)


class WorkSummaryUpdate(StrictRequestModel):
    work_description: Optional[str] = Field(None, max_length=1000)
    before_images: List[str] = Field(default_factory=list, max_length=MAX_EVIDENCE_IMAGES)
    after_images: List[str] = Field(default_factory=list, max_length=MAX_EVIDENCE_IMAGES)
    materials_used: List[str] = Field(default_factory=list, max_length=MAX_MATERIALS)
    additional_notes: Optional[str] = Field(None, max_length=500)


# Responses


class ChargeResponse(StrictModel):
    id: str
    name: str
    amount: int
    description: Optional[str] = None


class PricingResponse(StrictModel):
    currency: str
    base_amount: int
    additional_charges: List[ChargeResponse] = Field(default_factory=list)
    additional_amount: int
    discount_amount: int
    tax_amount: int
    total_amount: int


class PaymentSummary(StrictModel):
    status: str
    method: Optional[str] = None
    gateway_order_id: Optional[str] = None
    payment_link_id: Optional[str] = None
    payment_link_url: Optional[str] = None
    transaction_id: Optional[str] = None
    paid_amount: Optional[int] = None
    paid_at: Optional[datetime] = None
    refund_transaction_id: Optional[str] = None
    refund_amount: Optional[int] = None
    refunded_at: Optional[datetime] = None
    failure_reason: Optional[str] = None
    reconciliation_flag: Optional[str] = None


class CancellationInfo(StrictModel):
    cancelled_at: datetime
    cancelled_by_id: Optional[str] = None
    cancelled_by_role: Optional[str] = None
    reason: Optional[str] = None
    suggested_refund_amount: Optional[int] = None


class WorkSummaryResponse(StrictModel):
    work_started_at: Optional[datetime] = None
    work_ended_at: Optional[datetime] = None
    description: Optional[str] = None
    before_images: List[str] = Field(default_factory=list)
    after_images: List[str] = Field(default_factory=list)
    materials_used: List[str] = Field(default_factory=list)
    additional_notes: Optional[str] = None


class BookingResponse(StrictModel):
    id: str
    booking_number: str
    customer_id: str
    provider_id: str
    service_id: str
    service_name: Optional[str] = None
    scheduled_at: datetime
    estimated_duration_minutes: int
    actual_duration_minutes: Optional[int] = None
    address: dict[str, Any]
    contact_phone: Optional[str] = None
    special_instructions: Optional[str] = None
    status: str
    version: int
    pricing: PricingResponse
    payment: Optional[PaymentSummary] = None
    cancellation: Optional[CancellationInfo] = None
    work_summary: Optional[WorkSummaryResponse] = None
    created_at: datetime
    updated_at: Optional[datetime] = None

    @classmethod
    def from_booking(cls, booking: Booking) -> "BookingResponse":
        return cls.model_validate(booking.to_dict())


class BookingListResponse(StrictModel):
    items: List[BookingResponse]
    total: int
    page: int
    per_page: int
    has_next: bool
    has_prev: bool


class ScheduledBookingsResponse(StrictModel):
    items: List[BookingResponse]
    total: int


class StatusChangeResponse(StrictModel):
    sequence: int
    from_status: Optional[str] = None
    status: str
    actor_id: str
    changed_at: datetime
    reason: Optional[str] = None
    comments: Optional[str] = None


class BookingHistoryResponse(StrictModel):
    booking_id: str
    current_status: str
    history: List[StatusChangeResponse]


class RefundQuoteResponse(StrictModel):
    amount: int
    percent: int
    hours_remaining: float
    basis: str


class CancelBookingResponse(StrictModel):
    booking: BookingResponse
    refund: RefundQuoteResponse
