from .booking_events import (
    BookingCancelled,
    BookingCompleted,
    BookingConfirmed,
    BookingCreated,
    BookingMarkedNoShow,
    BookingStarted,
    BookingStatusChanged,
    PaymentCaptured,
    PaymentConflictFlagged,
    PaymentFailed,
    PaymentRefunded,
)
from .publisher import Event, EventPublisher

__all__ = [
    "BookingCancelled",
    "BookingCompleted",
    "BookingConfirmed",
    "BookingCreated",
    "BookingMarkedNoShow",
    "BookingStarted",
    "BookingStatusChanged",
    "Event",
    "EventPublisher",
    "PaymentCaptured",
    "PaymentConflictFlagged",
    "PaymentFailed",
    "PaymentRefunded",
]
