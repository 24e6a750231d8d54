"""Service for logging, claiming and replaying gateway webhooks."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
import time
from typing import Any

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..core.config import settings
from ..core.enums import WebhookEventStatus
from ..core.exceptions import NotFoundException, RepositoryException, ValidationException
from ..models.webhook_event import WebhookEvent
from ..repositories.webhook_event_repository import WebhookEventRepository
from .base import BaseService

_SENSITIVE_HEADERS = {
    "authorization",
    "cookie",
    "x-razorpay-signature",
}


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


class WebhookLedgerService(BaseService):
    """Business logic for webhook ledger entries."""

    def __init__(self, db: Session) -> None:
        super().__init__(db)
        self.repository = WebhookEventRepository(db)

    def _find_existing_event(
        self,
        *,
        source: str,
        event_id: str | None,
        idempotency_key: str | None,
    ) -> WebhookEvent | None:
        if event_id:
            existing = self.repository.find_by_source_and_event_id(source, event_id)
            if existing is not None:
                return existing
        if idempotency_key:
            return self.repository.find_by_source_and_idempotency_key(source, idempotency_key)
        return None

    def _record_redelivery(
        self, existing: WebhookEvent, now: datetime, headers: dict[str, Any] | None
    ) -> WebhookEvent:
        existing.retry_count = (existing.retry_count or 0) + 1
        existing.last_retry_at = now
        if headers is not None:
            existing.headers = headers
        self.repository.flush()
        return existing

    @BaseService.measure_operation("webhook_ledger.log_received")
    def log_received(
        self,
        *,
        source: str,
        event_type: str,
        payload: dict[str, Any],
        headers: dict[str, Any] | None = None,
        event_id: str | None = None,
        idempotency_key: str | None = None,
    ) -> WebhookEvent:
        """
        Log a received webhook before processing.

        A redelivery of a known event bumps its retry counter and returns the
        existing row instead of inserting a new one.
        """
        safe_headers = self._sanitize_headers(headers) if headers else None
        now = _now_utc()
        existing = self._find_existing_event(
            source=source,
            event_id=event_id,
            idempotency_key=idempotency_key,
        )
        if existing:
            return self._record_redelivery(existing, now, safe_headers)

        try:
            return self.repository.create(
                source=source,
                event_type=event_type or "unknown",
                event_id=event_id,
                payload=payload,
                headers=safe_headers,
                status=WebhookEventStatus.RECEIVED.value,
                idempotency_key=idempotency_key,
                received_at=now,
                retry_count=0,
            )
        except RepositoryException as exc:
            # Another worker inserted the same delivery first.
            if isinstance(exc.__cause__, IntegrityError):
                existing = self._find_existing_event(
                    source=source,
                    event_id=event_id,
                    idempotency_key=idempotency_key,
                )
                if existing is not None:
                    return self._record_redelivery(existing, now, safe_headers)
            raise

    def _lease_cutoff(self) -> datetime:
        return _now_utc() - timedelta(seconds=settings.webhook_processing_lease_seconds)

    def is_abandoned(self, event: WebhookEvent) -> bool:
        """True for a row that sat unfinished past the processing lease."""
        if event.status == WebhookEventStatus.PROCESSING.value:
            started = event.processing_started_at
            return started is None or started < self._lease_cutoff()
        if event.status == WebhookEventStatus.RECEIVED.value:
            return event.received_at < self._lease_cutoff()
        return False

    @BaseService.measure_operation("webhook_ledger.mark_processing")
    def mark_processing(self, event: WebhookEvent) -> bool:
        """Attempt to claim an event for processing."""
        claimed = self.repository.claim_for_processing(
            event.id, stale_before=self._lease_cutoff()
        )
        if claimed:
            event.status = WebhookEventStatus.PROCESSING.value
            event.processing_started_at = _now_utc()
            event.processing_error = None
            event.processed_at = None
        return claimed

    @BaseService.measure_operation("webhook_ledger.mark_processed")
    def mark_processed(
        self,
        event: WebhookEvent,
        *,
        related_booking_id: str | None = None,
        duration_ms: int | None = None,
        status: str = WebhookEventStatus.PROCESSED.value,
    ) -> WebhookEvent:
        """Mark webhook as handled (processed or ignored)."""
        event.status = status
        event.processed_at = _now_utc()
        event.related_booking_id = related_booking_id
        event.processing_duration_ms = duration_ms
        self.repository.flush()
        return event

    @BaseService.measure_operation("webhook_ledger.mark_failed")
    def mark_failed(
        self,
        event: WebhookEvent,
        *,
        error: str,
        duration_ms: int | None = None,
    ) -> WebhookEvent:
        """Mark webhook as failed so a redelivery or replay can claim it again."""
        event.status = WebhookEventStatus.FAILED.value
        event.processing_error = error[:2000]
        event.processed_at = _now_utc()
        event.processing_duration_ms = duration_ms
        self.repository.flush()
        return event

    @BaseService.measure_operation("webhook_ledger.get_event")
    def get_event(self, event_id: str) -> WebhookEvent | None:
        return self.repository.get_event(event_id)

    @BaseService.measure_operation("webhook_ledger.get_failed_events")
    def get_failed_events(
        self,
        *,
        source: str | None = None,
        since_hours: int = 24,
        limit: int = 50,
    ) -> list[WebhookEvent]:
        return self.repository.get_failed_events(
            source=source,
            since_hours=since_hours,
            limit=limit,
        )

    @BaseService.measure_operation("webhook_ledger.create_replay")
    def create_replay(self, event_id: str) -> WebhookEvent:
        """
        Copy a failed or abandoned event into a fresh ledger row.

        Rows still inside their processing lease are refused so a live worker
        is not raced by its own replay.
        """
        event = self.repository.get_event(event_id)
        if event is None:
            raise NotFoundException(f"Webhook event {event_id} not found", code="WEBHOOK_NOT_FOUND")
        if event.status != WebhookEventStatus.FAILED.value and not self.is_abandoned(event):
            raise ValidationException(
                "Only failed or abandoned webhook events can be replayed",
                code="WEBHOOK_NOT_REPLAYABLE",
                details={"status": event.status},
            )
        next_count = (event.replay_count or 0) + 1
        event.replay_count = next_count
        return self.repository.create(
            source=event.source,
            event_type=event.event_type,
            event_id=None,
            payload=event.payload,
            headers=event.headers,
            status=WebhookEventStatus.RECEIVED.value,
            idempotency_key=f"replay_{event.id}_{next_count}",
            received_at=_now_utc(),
            replay_of=event.id,
            replay_count=0,
        )

    def _sanitize_headers(self, headers: dict[str, Any]) -> dict[str, Any]:
        return {
            key: ("***" if key.lower() in _SENSITIVE_HEADERS else value)
            for key, value in headers.items()
        }

    @staticmethod
    def elapsed_ms(start: float) -> int:
        return int((time.monotonic() - start) * 1000)
