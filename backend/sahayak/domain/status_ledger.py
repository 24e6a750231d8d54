"""
Append-only status history for a booking.

The ledger only records. It has no opinion on whether a transition is legal
and it never triggers side effects; the state machine owns both.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Optional, Tuple

MAX_COMMENT_LENGTH = 500


@dataclass(frozen=True)
class LedgerEntry:
    sequence: int
    from_status: Optional[str]
    status: str
    actor_id: str
    changed_at: datetime
    reason: Optional[str] = None
    comments: Optional[str] = None

    def to_dict(self) -> dict[str, object]:
        return {
            "sequence": self.sequence,
            "from_status": self.from_status,
            "status": self.status,
            "actor_id": self.actor_id,
            "changed_at": self.changed_at.isoformat(),
            "reason": self.reason,
            "comments": self.comments,
        }


class StatusLedger:
    """In-memory view over a booking's ordered ledger entries."""

    def __init__(self, entries: Iterable[LedgerEntry] = ()) -> None:
        ordered = tuple(sorted(entries, key=lambda e: e.sequence))
        for expected, entry in enumerate(ordered, start=1):
            if entry.sequence != expected:
                raise ValueError(f"ledger sequence gap at {expected}")
        self._entries: Tuple[LedgerEntry, ...] = ordered

    @property
    def entries(self) -> Tuple[LedgerEntry, ...]:
        return self._entries

    @property
    def latest(self) -> Optional[LedgerEntry]:
        return self._entries[-1] if self._entries else None

    @property
    def current_status(self) -> Optional[str]:
        latest = self.latest
        return latest.status if latest else None

    def is_consistent_with(self, status: str) -> bool:
        return self.current_status == status

    def append(
        self,
        *,
        status: str,
        actor_id: str,
        changed_at: datetime,
        reason: Optional[str] = None,
        comments: Optional[str] = None,
    ) -> LedgerEntry:
        """Record a new status and return the entry that was appended."""
        if not actor_id:
            raise ValueError("actor_id is required")
        if comments is not None and len(comments) > MAX_COMMENT_LENGTH:
            raise ValueError(f"comments must be at most {MAX_COMMENT_LENGTH} characters")
        entry = LedgerEntry(
            sequence=len(self._entries) + 1,
            from_status=self.current_status,
            status=status,
            actor_id=actor_id,
            changed_at=changed_at,
            reason=reason,
            comments=comments,
        )
        self._entries = self._entries + (entry,)
        return entry

    def __len__(self) -> int:
        return len(self._entries)
