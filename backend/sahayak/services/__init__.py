"""
Service layer.

Services own the transaction boundary: repositories flush, services commit.
"""

from .base import BaseService
from .booking_service import BookingService
from .booking_state_machine import BookingStateMachine, TransitionResult
from .payment_service import PaymentService
from .payment_settlement import PaymentSettlement, SettlementOutcome
from .webhook_ledger_service import WebhookLedgerService
from .webhook_processor import PaymentWebhookProcessor, WebhookOutcome

__all__ = [
    "BaseService",
    "BookingService",
    "BookingStateMachine",
    "PaymentService",
    "PaymentSettlement",
    "PaymentWebhookProcessor",
    "SettlementOutcome",
    "TransitionResult",
    "WebhookLedgerService",
    "WebhookOutcome",
]
