"""Persistence for the append-only booking status ledger."""

from __future__ import annotations

from typing import List

from sqlalchemy.orm import Session

from ..domain.status_ledger import LedgerEntry, StatusLedger
from ..models.booking_status_change import BookingStatusChange
from .base_repository import BaseRepository


class StatusHistoryRepository(BaseRepository[BookingStatusChange]):
    """Insert-only access to ``booking_status_changes``."""

    def __init__(self, db: Session) -> None:
        super().__init__(db, BookingStatusChange)

    def history(self, booking_id: str) -> List[BookingStatusChange]:
        query = (
            self._build_query()
            .filter(BookingStatusChange.booking_id == booking_id)
            .order_by(BookingStatusChange.sequence.asc())
        )
        return self._execute_query(query)

    def load_ledger(self, booking_id: str) -> StatusLedger:
        return StatusLedger(row.to_entry() for row in self.history(booking_id))

    def record(self, booking_id: str, entry: LedgerEntry) -> BookingStatusChange:
        """Persist a ledger entry. The (booking, sequence) unique key rejects duplicates."""
        return self.create(
            booking_id=booking_id,
            sequence=entry.sequence,
            from_status=entry.from_status,
            status=entry.status,
            actor_id=entry.actor_id,
            changed_at=entry.changed_at,
            reason=entry.reason,
            comments=entry.comments,
        )
