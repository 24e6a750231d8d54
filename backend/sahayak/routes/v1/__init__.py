# backend/sahayak/routes/v1/__init__.py
"""
API v1 Routes

Versioned API endpoints under /api/v1.
"""

from . import bookings, payment_webhooks, payments

__all__ = [
    "bookings",
    "payment_webhooks",
    "payments",
]
