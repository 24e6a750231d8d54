# backend/sahayak/api/dependencies/services.py
"""
Service layer dependencies for dependency injection.

The payment gateway and service catalog are built once at startup and kept
on ``app.state``; the factories below bind them to a request's session.
"""

import logging

from fastapi import Depends, Request
from sqlalchemy.orm import Session

from ...integrations.catalog_client import ServiceCatalog
from ...integrations.payment_gateway import PaymentGateway
from ...services.booking_service import BookingService
from ...services.payment_service import PaymentService
from ...services.webhook_ledger_service import WebhookLedgerService
from .database import get_db

logger = logging.getLogger(__name__)


def get_payment_gateway(request: Request) -> PaymentGateway:
    """Gateway adapter created during application startup."""
    gateway: PaymentGateway = request.app.state.payment_gateway
    return gateway


def get_service_catalog(request: Request) -> ServiceCatalog:
    catalog: ServiceCatalog = request.app.state.service_catalog
    return catalog


def get_booking_service(
    db: Session = Depends(get_db),
    catalog: ServiceCatalog = Depends(get_service_catalog),
) -> BookingService:
    """Get BookingService instance with proper dependencies."""
    return BookingService(db, catalog)


def get_payment_service(
    db: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(get_payment_gateway),
) -> PaymentService:
    """Get PaymentService instance bound to the configured gateway."""
    return PaymentService(db, gateway)


def get_webhook_ledger_service(db: Session = Depends(get_db)) -> WebhookLedgerService:
    return WebhookLedgerService(db)
