"""Pydantic models for webhook endpoint responses."""

from datetime import datetime
from typing import List, Optional

from ._strict_base import StrictModel


class WebhookAckResponse(StrictModel):
    """Acknowledgement returned to the gateway once an event is recorded."""

    ok: bool = True
    event_id: Optional[str] = None
    duplicate: bool = False


class WebhookEventSummary(StrictModel):
    id: str
    source: str
    event_type: str
    event_id: Optional[str] = None
    status: str
    processing_error: Optional[str] = None
    related_booking_id: Optional[str] = None
    retry_count: int = 0
    received_at: datetime
    processed_at: Optional[datetime] = None
    replay_of: Optional[str] = None


class WebhookEventListResponse(StrictModel):
    items: List[WebhookEventSummary]
    total: int


class WebhookReplayResponse(StrictModel):
    ok: bool = True
    event_id: str
    replay_of: str


__all__ = [
    "WebhookAckResponse",
    "WebhookEventListResponse",
    "WebhookEventSummary",
    "WebhookReplayResponse",
]
