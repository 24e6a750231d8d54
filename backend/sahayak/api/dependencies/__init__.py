# backend/sahayak/api/dependencies/__init__.py
"""
Central export point for all dependencies.
"""

from ...auth import get_current_actor
from .auth import require_admin
from .database import get_db, get_session_factory
from .services import (
    get_booking_service,
    get_payment_gateway,
    get_payment_service,
    get_service_catalog,
    get_webhook_ledger_service,
)

__all__ = [
    # Auth
    "get_current_actor",
    "require_admin",
    # Database
    "get_db",
    "get_session_factory",
    # Services
    "get_booking_service",
    "get_payment_gateway",
    "get_payment_service",
    "get_service_catalog",
    "get_webhook_ledger_service",
]
