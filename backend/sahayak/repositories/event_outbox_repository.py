"""Repository for the transactional event outbox."""

from __future__ import annotations

from typing import Any, Dict, List

from sqlalchemy.orm import Session

from ..models.event_outbox import EventOutbox, EventOutboxStatus
from .base_repository import BaseRepository


class EventOutboxRepository(BaseRepository[EventOutbox]):
    """Insert and fetch outbox events."""

    def __init__(self, db: Session) -> None:
        super().__init__(db, EventOutbox)

    def enqueue(
        self,
        *,
        event_type: str,
        aggregate_id: str,
        idempotency_key: str,
        payload: Dict[str, Any],
    ) -> EventOutbox:
        """
        Add an event unless one with the same idempotency key is already queued.
        """
        existing = self.find_one_by(idempotency_key=idempotency_key)
        if existing is not None:
            return existing
        return self.create(
            event_type=event_type,
            aggregate_id=aggregate_id,
            idempotency_key=idempotency_key,
            payload=payload,
            status=EventOutboxStatus.PENDING.value,
            attempt_count=0,
        )

    def fetch_pending(self, limit: int = 100) -> List[EventOutbox]:
        query = (
            self._build_query()
            .filter(EventOutbox.status == EventOutboxStatus.PENDING.value)
            .order_by(EventOutbox.created_at.asc())
            .limit(limit)
        )
        return self._execute_query(query)

    def for_aggregate(self, aggregate_id: str) -> List[EventOutbox]:
        query = (
            self._build_query()
            .filter(EventOutbox.aggregate_id == aggregate_id)
            .order_by(EventOutbox.created_at.asc())
        )
        return self._execute_query(query)
