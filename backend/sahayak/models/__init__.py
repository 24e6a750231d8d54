"""
Database models for the bookings backend.

- Booking and its additional charges
- Payment satellite record
- Status history ledger
- Webhook ledger and event outbox
"""

from .booking import Booking, BookingCharge, generate_booking_number
from .booking_payment import BookingPayment
from .booking_status_change import BookingStatusChange
from .event_outbox import EventOutbox, EventOutboxStatus
from .webhook_event import WebhookEvent

__all__ = [
    "Booking",
    "BookingCharge",
    "BookingPayment",
    "BookingStatusChange",
    "EventOutbox",
    "EventOutboxStatus",
    "WebhookEvent",
    "generate_booking_number",
]
