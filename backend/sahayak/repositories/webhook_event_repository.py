"""Repository helpers for webhook event ledger."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
import logging
from typing import cast

from sqlalchemy import and_, or_, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..core.enums import WebhookEventStatus
from ..core.exceptions import RepositoryException
from ..models.webhook_event import WebhookEvent
from .base_repository import BaseRepository

logger = logging.getLogger(__name__)

_CLAIMABLE_STATUSES = (WebhookEventStatus.RECEIVED.value, WebhookEventStatus.FAILED.value)


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


class WebhookEventRepository(BaseRepository[WebhookEvent]):
    """Repository for webhook ledger queries."""

    def __init__(self, db: Session) -> None:
        super().__init__(db, WebhookEvent)

    def get_event(self, event_id: str) -> WebhookEvent | None:
        try:
            return cast(WebhookEvent | None, self.db.get(WebhookEvent, event_id))
        except SQLAlchemyError as exc:
            self.logger.error("Failed to load webhook event %s: %s", event_id, str(exc))
            raise RepositoryException("Failed to load webhook event") from exc

    def find_by_source_and_event_id(self, source: str, event_id: str) -> WebhookEvent | None:
        """Find webhook event by source and external event ID."""
        result = (
            self.db.query(WebhookEvent)
            .filter(WebhookEvent.source == source, WebhookEvent.event_id == event_id)
            .first()
        )
        return cast(WebhookEvent | None, result)

    def find_by_source_and_idempotency_key(
        self, source: str, idempotency_key: str
    ) -> WebhookEvent | None:
        result = (
            self.db.query(WebhookEvent)
            .filter(
                WebhookEvent.source == source,
                WebhookEvent.idempotency_key == idempotency_key,
            )
            .first()
        )
        return cast(WebhookEvent | None, result)

    def claim_for_processing(self, event_id: str, *, stale_before: datetime) -> bool:
        """
        Move an event to ``processing`` unless another worker holds a live claim.

        A ``processing`` row whose claim started before ``stale_before`` belongs
        to a worker that died mid-flight and may be claimed again.
        """
        abandoned = and_(
            WebhookEvent.status == WebhookEventStatus.PROCESSING.value,
            or_(
                WebhookEvent.processing_started_at.is_(None),
                WebhookEvent.processing_started_at < stale_before,
            ),
        )
        stmt = (
            update(WebhookEvent)
            .where(
                WebhookEvent.id == event_id,
                or_(WebhookEvent.status.in_(_CLAIMABLE_STATUSES), abandoned),
            )
            .values(
                status=WebhookEventStatus.PROCESSING.value,
                processing_error=None,
                processing_started_at=_now_utc(),
            )
            .execution_options(synchronize_session=False)
        )
        try:
            result = self.db.execute(stmt)
        except SQLAlchemyError as exc:
            self.logger.error("Failed to claim webhook event %s: %s", event_id, str(exc))
            raise RepositoryException("Failed to claim webhook event") from exc
        return result.rowcount == 1

    def get_failed_events(
        self,
        *,
        source: str | None = None,
        since_hours: int = 24,
        limit: int = 50,
    ) -> list[WebhookEvent]:
        cutoff = _now_utc() - timedelta(hours=since_hours)
        query = self._build_query().filter(
            WebhookEvent.status == WebhookEventStatus.FAILED.value,
            WebhookEvent.received_at >= cutoff,
        )
        if source:
            query = query.filter(WebhookEvent.source == source)
        query = query.order_by(WebhookEvent.received_at.desc()).limit(limit)
        return self._execute_query(query)
