"""Persisted status ledger rows."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

import sqlalchemy as sa
from sqlalchemy import ForeignKey, Integer, String, Text, event
from sqlalchemy.orm import Mapped, mapped_column
import ulid

from ..core.exceptions import RepositoryException
from ..database import Base
from ..domain.status_ledger import LedgerEntry
from .types import UTCDateTime


class BookingStatusChange(Base):
    """One immutable entry in a booking's status history."""

    __tablename__ = "booking_status_changes"

    __table_args__ = (
        sa.UniqueConstraint("booking_id", "sequence", name="uq_booking_status_changes_sequence"),
        sa.Index("ix_booking_status_changes_booking_id", "booking_id"),
    )

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=lambda: str(ulid.ULID()))
    booking_id: Mapped[str] = mapped_column(
        String(26), ForeignKey("bookings.id", ondelete="CASCADE"), nullable=False
    )
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)
    from_status: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    actor_id: Mapped[str] = mapped_column(String(64), nullable=False)
    changed_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    comments: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)

    def to_entry(self) -> LedgerEntry:
        return LedgerEntry(
            sequence=self.sequence,
            from_status=self.from_status,
            status=self.status,
            actor_id=self.actor_id,
            changed_at=self.changed_at,
            reason=self.reason,
            comments=self.comments,
        )

    def to_dict(self) -> dict[str, Any]:
        return self.to_entry().to_dict()


@event.listens_for(BookingStatusChange, "before_update")
def _reject_update(mapper: Any, connection: Any, target: BookingStatusChange) -> None:
    raise RepositoryException(
        f"Status history entry {target.booking_id}#{target.sequence} is immutable"
    )


@event.listens_for(BookingStatusChange, "before_delete")
def _reject_delete(mapper: Any, connection: Any, target: BookingStatusChange) -> None:
    raise RepositoryException(
        f"Status history entry {target.booking_id}#{target.sequence} cannot be deleted"
    )
