"""
Repository layer.

Repositories encapsulate data access and never commit; services own the
transaction boundary.
"""

from .base_repository import BaseRepository
from .booking_repository import BookingRepository
from .event_outbox_repository import EventOutboxRepository
from .status_history_repository import StatusHistoryRepository
from .webhook_event_repository import WebhookEventRepository

__all__ = [
    "BaseRepository",
    "BookingRepository",
    "EventOutboxRepository",
    "StatusHistoryRepository",
    "WebhookEventRepository",
]
