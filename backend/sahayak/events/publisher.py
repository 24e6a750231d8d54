"""Event publisher - writes domain events to the transactional outbox."""
from datetime import datetime
import logging
from typing import Any, Dict, Protocol

from ..repositories.event_outbox_repository import EventOutboxRepository

logger = logging.getLogger(__name__)


class Event(Protocol):
    """Protocol for event types."""

    @property
    def aggregate_id(self) -> str:
        ...

    def idempotency_key(self) -> str:
        ...

    def to_dict(self) -> Dict[str, Any]:
        ...


class EventPublisher:
    """Publishes domain events to the outbox in the caller's transaction."""

    def __init__(self, outbox_repository: EventOutboxRepository):
        self.outbox_repo = outbox_repository

    def publish(self, event: Event) -> None:
        """
        Queue an event for downstream consumers.

        The row is flushed with the caller's session, so it commits or rolls
        back together with the state change that produced it.
        """
        event_type = type(event).__name__
        payload = event.to_dict()

        # Convert datetime objects to ISO strings for JSON serialization
        for key, value in payload.items():
            if isinstance(value, datetime):
                payload[key] = value.isoformat()

        self.outbox_repo.enqueue(
            event_type=event_type,
            aggregate_id=event.aggregate_id,
            idempotency_key=event.idempotency_key(),
            payload=payload,
        )
        logger.debug("Queued %s for %s", event_type, event.aggregate_id)
