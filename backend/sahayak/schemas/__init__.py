# backend/sahayak/schemas/__init__.py
"""
Pydantic schemas for the booking and payment API.

Request models accept camelCase or snake_case keys; responses are
serialized in camelCase.
"""

from .booking import (
    AdditionalChargeCreate,
    BookingCancelRequest,
    BookingCreate,
    BookingHistoryResponse,
    BookingListResponse,
    BookingResponse,
    BookingStatusUpdate,
    CancelBookingResponse,
    WorkSummaryUpdate,
)
from .payment_schemas import (
    CreateOrderRequest,
    CreateOrderResponse,
    ReconcileRequest,
    ReconcileResponse,
    RefundRequest,
    RefundResponse,
    TransactionListResponse,
    VerifyPaymentRequest,
    VerifyPaymentResponse,
)
from .webhook_responses import WebhookAckResponse, WebhookReplayResponse

__all__ = [
    "AdditionalChargeCreate",
    "BookingCancelRequest",
    "BookingCreate",
    "BookingHistoryResponse",
    "BookingListResponse",
    "BookingResponse",
    "BookingStatusUpdate",
    "CancelBookingResponse",
    "CreateOrderRequest",
    "CreateOrderResponse",
    "ReconcileRequest",
    "ReconcileResponse",
    "RefundRequest",
    "RefundResponse",
    "TransactionListResponse",
    "VerifyPaymentRequest",
    "VerifyPaymentResponse",
    "WebhookAckResponse",
    "WebhookReplayResponse",
]
