"""Booking and payment domain events."""
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any, Dict, Optional


@dataclass
class BookingCreated:
    """Fired after a booking is successfully created."""

    booking_id: str
    booking_number: str
    customer_id: str
    provider_id: str
    scheduled_at: datetime
    total_amount: int

    @property
    def aggregate_id(self) -> str:
        return self.booking_id

    def idempotency_key(self) -> str:
        return f"booking:{self.booking_id}:created"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class BookingStatusChanged:
    """Fired for every ledger entry appended by the state machine."""

    booking_id: str
    from_status: Optional[str]
    to_status: str
    actor_id: str
    sequence: int
    changed_at: datetime
    reason: Optional[str] = None

    @property
    def aggregate_id(self) -> str:
        return self.booking_id

    def idempotency_key(self) -> str:
        return f"booking:{self.booking_id}:status:{self.sequence}"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class BookingConfirmed:
    booking_id: str
    customer_id: str
    provider_id: str
    confirmed_at: datetime

    @property
    def aggregate_id(self) -> str:
        return self.booking_id

    def idempotency_key(self) -> str:
        return f"booking:{self.booking_id}:confirmed"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class BookingStarted:
    booking_id: str
    provider_id: str
    started_at: datetime

    @property
    def aggregate_id(self) -> str:
        return self.booking_id

    def idempotency_key(self) -> str:
        return f"booking:{self.booking_id}:started"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class BookingCompleted:
    """Fired after a booking is marked complete. Drives provider counters and review prompts."""

    booking_id: str
    customer_id: str
    provider_id: str
    completed_at: datetime
    actual_duration_minutes: Optional[int] = None

    @property
    def aggregate_id(self) -> str:
        return self.booking_id

    def idempotency_key(self) -> str:
        return f"booking:{self.booking_id}:completed"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class BookingCancelled:
    """Fired after a booking is cancelled."""

    booking_id: str
    cancelled_by: str
    cancelled_by_role: str
    cancelled_at: datetime
    suggested_refund_amount: Optional[int] = None
    reason: Optional[str] = None

    @property
    def aggregate_id(self) -> str:
        return self.booking_id

    def idempotency_key(self) -> str:
        return f"booking:{self.booking_id}:cancelled"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class BookingMarkedNoShow:
    booking_id: str
    marked_by: str
    marked_at: datetime

    @property
    def aggregate_id(self) -> str:
        return self.booking_id

    def idempotency_key(self) -> str:
        return f"booking:{self.booking_id}:no-show"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class PaymentCaptured:
    booking_id: str
    transaction_id: str
    amount: int
    paid_at: datetime
    source: str

    @property
    def aggregate_id(self) -> str:
        return self.booking_id

    def idempotency_key(self) -> str:
        return f"payment:{self.transaction_id}:captured"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class PaymentFailed:
    booking_id: str
    transaction_id: Optional[str]
    reason: Optional[str]
    failed_at: datetime

    @property
    def aggregate_id(self) -> str:
        return self.booking_id

    def idempotency_key(self) -> str:
        return f"payment:{self.transaction_id or self.booking_id}:failed"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class PaymentRefunded:
    booking_id: str
    refund_id: str
    amount: int
    status: str
    refunded_at: datetime

    @property
    def aggregate_id(self) -> str:
        return self.booking_id

    def idempotency_key(self) -> str:
        return f"refund:{self.refund_id}"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class PaymentConflictFlagged:
    """The gateway reported contradictory outcomes for one booking."""

    booking_id: str
    current_status: str
    current_transaction_id: Optional[str]
    reported_event: str
    reported_transaction_id: Optional[str]
    flagged_at: datetime

    @property
    def aggregate_id(self) -> str:
        return self.booking_id

    def idempotency_key(self) -> str:
        return (
            f"payment-conflict:{self.booking_id}:{self.reported_event}:"
            f"{self.reported_transaction_id or 'none'}"
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
