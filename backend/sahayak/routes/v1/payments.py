# backend/sahayak/routes/v1/payments.py
"""
Payment API Routes - API v1

Versioned payment endpoints under /api/v1/payments.
All gateway interaction is delegated to PaymentService.

Endpoints:
    POST /create-order      → Create the gateway order for a booking
    POST /payment-link      → Create a hosted payment link for a booking
    POST /verify            → Verify a completed checkout and settle it
    POST /reconcile         → Re-check an unresolved payment with the gateway
    POST /refund            → Refund a cancelled booking
    GET /transactions       → Caller's payment history
"""

import asyncio
import logging
import math
from typing import NoReturn, Optional

from fastapi import APIRouter, Body, Depends, HTTPException, Query, status

from ...api.dependencies import get_current_actor, get_payment_service
from ...core.exceptions import DomainException
from ...principal import Actor
from ...schemas.payment_schemas import (
    CreateOrderRequest,
    CreateOrderResponse,
    PaymentLinkRequest,
    PaymentLinkResponse,
    Pagination,
    ReconcileRequest,
    ReconcileResponse,
    RefundRequest,
    RefundResponse,
    TransactionItem,
    TransactionListResponse,
    VerifyPaymentRequest,
    VerifyPaymentResponse,
)
from ...services.payment_service import PaymentService

logger = logging.getLogger(__name__)

# V1 router - no prefix here, will be added when mounting in main.py
router = APIRouter(tags=["payments-v1"])


def handle_domain_exception(exc: DomainException) -> NoReturn:
    """Convert domain exceptions to HTTP exceptions."""
    if hasattr(exc, "to_http_exception"):
        raise exc.to_http_exception()
    raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc))


@router.post(
    "/create-order",
    response_model=CreateOrderResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_payment_order(
    order_data: CreateOrderRequest = Body(...),
    actor: Actor = Depends(get_current_actor),
    payment_service: PaymentService = Depends(get_payment_service),
) -> CreateOrderResponse:
    """
    Create a gateway order for the booking total.

    Returns the order id and public key the checkout widget needs.
    """
    try:
        result = await asyncio.to_thread(
            payment_service.create_order, actor, order_data.booking_id
        )
        return CreateOrderResponse(
            order_id=result.order_id,
            amount=result.amount,
            amount_minor=result.amount_minor,
            currency=result.currency,
            booking_id=result.booking_id,
            booking_number=result.booking_number,
            key_id=result.key_id,
        )
    except DomainException as e:
        handle_domain_exception(e)


@router.post(
    "/payment-link",
    response_model=PaymentLinkResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_payment_link(
    link_data: PaymentLinkRequest = Body(...),
    actor: Actor = Depends(get_current_actor),
    payment_service: PaymentService = Depends(get_payment_service),
) -> PaymentLinkResponse:
    """Create (or return the existing) hosted payment link for the booking total."""
    try:
        result = await asyncio.to_thread(
            payment_service.create_payment_link,
            actor,
            link_data.booking_id,
            customer_name=link_data.customer_name,
            customer_email=link_data.customer_email,
            callback_url=link_data.callback_url,
        )
        return PaymentLinkResponse(
            link_id=result.link_id,
            short_url=result.short_url,
            amount=result.amount,
            amount_minor=result.amount_minor,
            currency=result.currency,
            booking_id=result.booking_id,
            booking_number=result.booking_number,
        )
    except DomainException as e:
        handle_domain_exception(e)


@router.post("/verify", response_model=VerifyPaymentResponse)
async def verify_payment(
    verify_data: VerifyPaymentRequest = Body(...),
    actor: Actor = Depends(get_current_actor),
    payment_service: PaymentService = Depends(get_payment_service),
) -> VerifyPaymentResponse:
    """
    Verify the checkout signature and settle the payment.

    Safe to repeat: a payment already settled (by an earlier verify or by the
    webhook) is returned with ``alreadySettled=true``.
    """
    try:
        result = await asyncio.to_thread(
            payment_service.verify_payment,
            actor,
            booking_id=verify_data.booking_id,
            order_id=verify_data.order_id,
            payment_id=verify_data.payment_id,
            signature=verify_data.signature,
        )
        return VerifyPaymentResponse(
            booking_id=result.booking_id,
            booking_number=result.booking_number,
            payment_id=result.payment_id,
            amount=result.amount,
            payment_status=result.payment_status,
            booking_status=result.booking_status,
            already_settled=result.already_settled,
        )
    except DomainException as e:
        handle_domain_exception(e)


@router.post("/reconcile", response_model=ReconcileResponse)
async def reconcile_payment(
    reconcile_data: ReconcileRequest = Body(...),
    actor: Actor = Depends(get_current_actor),
    payment_service: PaymentService = Depends(get_payment_service),
) -> ReconcileResponse:
    """Ask the gateway for the order's payments and settle whatever it reports."""
    try:
        result = await asyncio.to_thread(
            payment_service.reconcile_payment, actor, reconcile_data.booking_id
        )
        return ReconcileResponse(
            booking_id=result.booking_id,
            payment_status=result.payment_status,
            booking_status=result.booking_status,
            action=result.action,
        )
    except DomainException as e:
        handle_domain_exception(e)


@router.post("/refund", response_model=RefundResponse)
async def process_refund(
    refund_data: RefundRequest = Body(...),
    actor: Actor = Depends(get_current_actor),
    payment_service: PaymentService = Depends(get_payment_service),
) -> RefundResponse:
    try:
        result = await asyncio.to_thread(
            payment_service.process_refund, actor, refund_data.booking_id, refund_data.reason
        )
        return RefundResponse(
            booking_id=result.booking_id,
            booking_number=result.booking_number,
            refund_id=result.refund_id,
            refund_amount=result.refund_amount,
            status=result.status,
        )
    except DomainException as e:
        handle_domain_exception(e)


@router.get("/transactions", response_model=TransactionListResponse)
async def get_transaction_history(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=50),
    status_filter: Optional[str] = Query(None, alias="status"),
    actor: Actor = Depends(get_current_actor),
    payment_service: PaymentService = Depends(get_payment_service),
) -> TransactionListResponse:
    """Bookings the caller has started paying for, newest first."""
    try:
        rows, total, page, limit = await asyncio.to_thread(
            payment_service.list_transactions,
            actor,
            page=page,
            limit=limit,
            status=status_filter,
        )
    except DomainException as e:
        handle_domain_exception(e)

    total_pages = math.ceil(total / limit) if total else 0
    return TransactionListResponse(
        transactions=[TransactionItem.from_booking(b) for b in rows],
        pagination=Pagination(
            current_page=page,
            total_pages=total_pages,
            total_items=total,
            items_per_page=limit,
            has_next=page < total_pages,
            has_prev=page > 1,
        ),
    )
