# backend/sahayak/routes/v1/bookings.py
"""
Booking routes - API v1

Versioned booking endpoints under /api/v1/bookings.
All business logic delegated to BookingService.

Endpoints:
    POST /                          - Create a booking
    GET /                           - List the caller's bookings
    GET /upcoming                   - Upcoming pending and confirmed bookings
    GET /today                      - A provider's visits for the current day
    GET /{booking_id}               - Full booking details
    GET /{booking_id}/history       - Status history
    PUT /{booking_id}/status        - Change booking status
    DELETE /{booking_id}            - Cancel a booking (returns the refund quote)
    POST /{booking_id}/charges      - Add an additional charge
    PUT /{booking_id}/work-summary  - Record work done
"""

import asyncio
import logging
from typing import NoReturn, Optional

from fastapi import APIRouter, Body, Depends, HTTPException, Query, status

from ...api.dependencies import get_booking_service, get_current_actor
from ...core.exceptions import DomainException
from ...principal import Actor
from ...schemas.booking import (
    AdditionalChargeCreate,
    BookingCancelRequest,
    BookingCreate,
    BookingHistoryResponse,
    BookingListResponse,
    BookingResponse,
    BookingStatusUpdate,
    CancelBookingResponse,
    PricingResponse,
    RefundQuoteResponse,
    ScheduledBookingsResponse,
    StatusChangeResponse,
    WorkSummaryUpdate,
)
from ...services.booking_service import BookingService

logger = logging.getLogger(__name__)

# V1 router - no prefix here, will be added when mounting in main.py
router = APIRouter(tags=["bookings-v1"])


def handle_domain_exception(exc: DomainException) -> NoReturn:
    """Convert domain exceptions to HTTP exceptions."""
    if hasattr(exc, "to_http_exception"):
        raise exc.to_http_exception()
    raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc))


# ============================================================================
# Collection routes
# ============================================================================


@router.post("", response_model=BookingResponse, status_code=status.HTTP_201_CREATED)
async def create_booking(
    booking_data: BookingCreate = Body(...),
    actor: Actor = Depends(get_current_actor),
    booking_service: BookingService = Depends(get_booking_service),
) -> BookingResponse:
    """
    Create a pending booking.

    The price is taken from the provider's catalog offering; the client never
    supplies amounts.
    """
    try:
        booking = await asyncio.to_thread(booking_service.create_booking, actor, booking_data)
        return BookingResponse.from_booking(booking)
    except DomainException as e:
        handle_domain_exception(e)


@router.get("", response_model=BookingListResponse)
async def list_bookings(
    status_filter: Optional[str] = Query(None, alias="status"),
    page: int = Query(1, ge=1),
    per_page: int = Query(20, ge=1, le=100),
    actor: Actor = Depends(get_current_actor),
    booking_service: BookingService = Depends(get_booking_service),
) -> BookingListResponse:
    """List bookings the caller is a party to, latest schedule first."""
    try:
        rows, total = await asyncio.to_thread(
            booking_service.list_bookings,
            actor,
            status=status_filter,
            page=page,
            per_page=per_page,
        )
        return BookingListResponse(
            items=[BookingResponse.from_booking(b) for b in rows],
            total=total,
            page=page,
            per_page=per_page,
            has_next=page * per_page < total,
            has_prev=page > 1,
        )
    except DomainException as e:
        handle_domain_exception(e)


@router.get("/upcoming", response_model=ScheduledBookingsResponse)
async def list_upcoming_bookings(
    limit: int = Query(10, ge=1, le=50),
    actor: Actor = Depends(get_current_actor),
    booking_service: BookingService = Depends(get_booking_service),
) -> ScheduledBookingsResponse:
    """Pending and confirmed bookings that have not started yet, soonest first."""
    try:
        rows = await asyncio.to_thread(booking_service.list_upcoming, actor, limit=limit)
        return ScheduledBookingsResponse(
            items=[BookingResponse.from_booking(b) for b in rows], total=len(rows)
        )
    except DomainException as e:
        handle_domain_exception(e)


@router.get("/today", response_model=ScheduledBookingsResponse)
async def list_todays_bookings(
    actor: Actor = Depends(get_current_actor),
    booking_service: BookingService = Depends(get_booking_service),
) -> ScheduledBookingsResponse:
    """A provider's confirmed and in-progress visits for the current local day."""
    try:
        rows = await asyncio.to_thread(booking_service.list_today, actor)
        return ScheduledBookingsResponse(
            items=[BookingResponse.from_booking(b) for b in rows], total=len(rows)
        )
    except DomainException as e:
        handle_domain_exception(e)


# ============================================================================
# Single booking routes
# ============================================================================


@router.get("/{booking_id}", response_model=BookingResponse)
async def get_booking(
    booking_id: str,
    actor: Actor = Depends(get_current_actor),
    booking_service: BookingService = Depends(get_booking_service),
) -> BookingResponse:
    try:
        booking = await asyncio.to_thread(booking_service.get_booking, actor, booking_id)
        return BookingResponse.from_booking(booking)
    except DomainException as e:
        handle_domain_exception(e)


@router.get("/{booking_id}/history", response_model=BookingHistoryResponse)
async def get_booking_history(
    booking_id: str,
    actor: Actor = Depends(get_current_actor),
    booking_service: BookingService = Depends(get_booking_service),
) -> BookingHistoryResponse:
    """Ordered status history, oldest entry first."""
    try:
        booking, history = await asyncio.to_thread(
            booking_service.get_status_history, actor, booking_id
        )
        return BookingHistoryResponse(
            booking_id=booking.id,
            current_status=booking.status,
            history=[StatusChangeResponse.model_validate(row.to_dict()) for row in history],
        )
    except DomainException as e:
        handle_domain_exception(e)


@router.put("/{booking_id}/status", response_model=BookingResponse)
async def update_booking_status(
    booking_id: str,
    update_data: BookingStatusUpdate = Body(...),
    actor: Actor = Depends(get_current_actor),
    booking_service: BookingService = Depends(get_booking_service),
) -> BookingResponse:
    """
    Move a booking to a new status.

    Illegal transitions return 400 with the allowed targets; a concurrent
    change returns 409 and the client should re-read the booking.
    """
    try:
        result = await asyncio.to_thread(
            booking_service.update_status, actor, booking_id, update_data
        )
        return BookingResponse.from_booking(result.booking)
    except DomainException as e:
        handle_domain_exception(e)


@router.delete("/{booking_id}", response_model=CancelBookingResponse)
async def cancel_booking(
    booking_id: str,
    cancel_data: Optional[BookingCancelRequest] = Body(None),
    actor: Actor = Depends(get_current_actor),
    booking_service: BookingService = Depends(get_booking_service),
) -> CancelBookingResponse:
    """Cancel a booking and return the refund the cancellation policy suggests."""
    reason = cancel_data.reason if cancel_data is not None else None
    try:
        result = await asyncio.to_thread(
            booking_service.cancel_booking, actor, booking_id, reason
        )
    except DomainException as e:
        handle_domain_exception(e)

    quote = result.refund_quote
    return CancelBookingResponse(
        booking=BookingResponse.from_booking(result.booking),
        refund=RefundQuoteResponse.model_validate(quote.to_dict())
        if quote is not None
        else RefundQuoteResponse(amount=0, percent=0, hours_remaining=0, basis="none"),
    )


@router.post(
    "/{booking_id}/charges",
    response_model=PricingResponse,
    status_code=status.HTTP_201_CREATED,
)
async def add_additional_charge(
    booking_id: str,
    charge_data: AdditionalChargeCreate = Body(...),
    actor: Actor = Depends(get_current_actor),
    booking_service: BookingService = Depends(get_booking_service),
) -> PricingResponse:
    """Add a charge to a pending booking and return the updated pricing."""
    try:
        booking = await asyncio.to_thread(
            booking_service.add_additional_charge, actor, booking_id, charge_data
        )
        return PricingResponse.model_validate(booking.pricing_dict())
    except DomainException as e:
        handle_domain_exception(e)


@router.put("/{booking_id}/work-summary", response_model=BookingResponse)
async def update_work_summary(
    booking_id: str,
    summary_data: WorkSummaryUpdate = Body(...),
    actor: Actor = Depends(get_current_actor),
    booking_service: BookingService = Depends(get_booking_service),
) -> BookingResponse:
    try:
        booking = await asyncio.to_thread(
            booking_service.add_work_summary, actor, booking_id, summary_data
        )
        return BookingResponse.from_booking(booking)
    except DomainException as e:
        handle_domain_exception(e)
