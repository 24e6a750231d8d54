# backend/tests/conftest.py
"""
Pytest configuration.

Tests run against an in-memory SQLite database shared through a StaticPool,
the in-memory Razorpay stand-in and a static service catalog. Settings are
pinned through environment variables BEFORE any application import.
"""

import os

# CRITICAL: Set test configuration BEFORE any app imports!
os.environ["ENVIRONMENT"] = "test"
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["SECRET_KEY"] = "test-secret-key"
os.environ["RAZORPAY_KEY_ID"] = "rzp_test_key"
os.environ["RAZORPAY_KEY_SECRET"] = "rzp_test_secret"
os.environ["RAZORPAY_WEBHOOK_SECRET"] = "whsec_test_secret"
os.environ["CATALOG_SERVICE_URL"] = ""

from datetime import datetime
from typing import Any, Callable, Iterator, Optional

from fastapi import FastAPI
from fastapi.testclient import TestClient
import pytest
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from sahayak.api.dependencies import get_db, get_session_factory
from sahayak.core.config import settings
from sahayak.database import Base
from sahayak.integrations.catalog_client import InMemoryServiceCatalog, ServiceOffering
from sahayak.integrations.razorpay_client import FakeRazorpayClient
from sahayak.main import create_app
from sahayak.models.booking import Booking
from sahayak.principal import Actor
from sahayak.services.booking_service import BookingService
from sahayak.services.payment_service import PaymentService
from tests.factories.booking_builders import (
    BASE_PRICE,
    CUSTOMER,
    PROVIDER_ID,
    SERVICE_ID,
    booking_payload,
)

# ============================================================================
# Database
# ============================================================================


@pytest.fixture
def engine() -> Iterator[Engine]:
    test_engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=test_engine)
    yield test_engine
    Base.metadata.drop_all(bind=test_engine)
    test_engine.dispose()


@pytest.fixture
def session_factory(engine: Engine) -> Callable[[], Session]:
    return sessionmaker(autocommit=False, autoflush=False, bind=engine, expire_on_commit=False)


@pytest.fixture
def db(session_factory: Callable[[], Session]) -> Iterator[Session]:
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


# ============================================================================
# Collaborators
# ============================================================================


@pytest.fixture
def gateway() -> FakeRazorpayClient:
    return FakeRazorpayClient(
        key_id=settings.razorpay_key_id,
        key_secret=settings.razorpay_key_secret.get_secret_value(),
    )


@pytest.fixture
def catalog() -> InMemoryServiceCatalog:
    return InMemoryServiceCatalog(
        {
            (PROVIDER_ID, SERVICE_ID): ServiceOffering(
                service_id=SERVICE_ID,
                provider_id=PROVIDER_ID,
                name="Tap and pipe repair",
                base_price=BASE_PRICE,
                duration_minutes=60,
            ),
            ("prov_02", SERVICE_ID): ServiceOffering(
                service_id=SERVICE_ID,
                provider_id="prov_02",
                name="Tap and pipe repair",
                base_price=800,
                duration_minutes=90,
            ),
        }
    )


@pytest.fixture
def booking_service(db: Session, catalog: InMemoryServiceCatalog) -> BookingService:
    return BookingService(db, catalog)


@pytest.fixture
def payment_service(db: Session, gateway: FakeRazorpayClient) -> PaymentService:
    return PaymentService(db, gateway)


@pytest.fixture
def create_booking(booking_service: BookingService) -> Callable[..., Booking]:
    """Create a pending booking for ``CUSTOMER`` with the default provider."""

    def _create(
        actor: Actor = CUSTOMER,
        *,
        scheduled_at: Optional[datetime] = None,
        provider_id: str = PROVIDER_ID,
    ) -> Booking:
        return booking_service.create_booking(
            actor, booking_payload(provider_id=provider_id, scheduled_at=scheduled_at)
        )

    return _create


@pytest.fixture
def paid_booking(
    create_booking: Callable[..., Booking],
    payment_service: PaymentService,
    gateway: FakeRazorpayClient,
) -> Callable[..., Booking]:
    """Create a booking and run it through checkout until it is paid and confirmed."""

    def _pay(**kwargs: Any) -> Booking:
        booking = create_booking(**kwargs)
        order = payment_service.create_order(CUSTOMER, booking.id)
        payment = gateway.simulate_payment(order.order_id)
        payment_service.verify_payment(
            CUSTOMER,
            booking_id=booking.id,
            order_id=order.order_id,
            payment_id=payment.payment_id,
            signature=gateway.sign_payment(order.order_id, payment.payment_id),
        )
        return payment_service._load(booking.id)

    return _pay


# ============================================================================
# HTTP
# ============================================================================


@pytest.fixture
def app(
    session_factory: Callable[[], Session],
    gateway: FakeRazorpayClient,
    catalog: InMemoryServiceCatalog,
) -> FastAPI:
    application = create_app(payment_gateway=gateway, service_catalog=catalog)

    def _get_test_db() -> Iterator[Session]:
        session = session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    application.dependency_overrides[get_db] = _get_test_db
    application.dependency_overrides[get_session_factory] = lambda: session_factory
    return application


@pytest.fixture
def client(app: FastAPI) -> Iterator[TestClient]:
    with TestClient(app) as test_client:
        yield test_client
