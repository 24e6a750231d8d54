# backend/sahayak/main.py
from __future__ import annotations

from contextlib import asynccontextmanager
import logging
from typing import AsyncGenerator, Optional

from fastapi import APIRouter, FastAPI

from .core.config import is_running_tests, settings
from .database import Base, engine
from .errors import register_error_handlers
from .integrations import build_payment_gateway
from .integrations.catalog_client import HttpServiceCatalog, InMemoryServiceCatalog, ServiceCatalog
from .integrations.payment_gateway import PaymentGateway
from .routes import health
from .routes.v1 import (
    bookings as bookings_v1,
    payment_webhooks as payment_webhooks_v1,
    payments as payments_v1,
)

API_TITLE = "Sahayak Bookings API"
API_VERSION = "1.0.0"

# Configure logging
logging.basicConfig(
    level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)

logger = logging.getLogger(__name__)


def _build_service_catalog() -> ServiceCatalog:
    if settings.catalog_service_url:
        return HttpServiceCatalog(
            base_url=settings.catalog_service_url,
            timeout=settings.catalog_timeout_seconds,
        )
    logger.warning("CATALOG_SERVICE_URL not set; using an empty in-memory catalog")
    return InMemoryServiceCatalog()


def _validate_startup_config(gateway: PaymentGateway) -> None:
    if not gateway.is_available():
        logger.warning("Payment gateway credentials missing; payment endpoints will return 503")
    if not settings.razorpay_webhook_secret.get_secret_value():
        logger.warning("RAZORPAY_WEBHOOK_SECRET not set; webhooks will be rejected")
    if settings.environment == "production" and settings.database_url.startswith("sqlite"):
        raise RuntimeError("SQLite cannot be used in production")


def create_app(
    *,
    payment_gateway: Optional[PaymentGateway] = None,
    service_catalog: Optional[ServiceCatalog] = None,
) -> FastAPI:
    """
    Build the application.

    Collaborators can be passed in directly; otherwise they are built from
    settings when the application starts.
    """

    @asynccontextmanager
    async def app_lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Handle application startup/shutdown without deprecated events."""
        logger.info("%s starting up (environment=%s)", API_TITLE, settings.environment)
        if is_running_tests():
            logger.info("Running under pytest (test mode active)")

        gateway = payment_gateway or build_payment_gateway(settings)
        _validate_startup_config(gateway)
        app.state.payment_gateway = gateway
        app.state.service_catalog = service_catalog or _build_service_catalog()

        # Schema migrations are managed outside the app; local SQLite gets tables on boot.
        if settings.database_url.startswith("sqlite"):
            Base.metadata.create_all(bind=engine)

        yield

        logger.info("%s shutting down", API_TITLE)

    app = FastAPI(
        title=API_TITLE,
        version=API_VERSION,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=app_lifespan,
    )
    # Register unified error envelope handlers
    register_error_handlers(app)

    api_v1 = APIRouter(prefix="/api/v1")
    api_v1.include_router(bookings_v1.router, prefix="/bookings")
    api_v1.include_router(payments_v1.router, prefix="/payments")
    api_v1.include_router(payment_webhooks_v1.router, prefix="/payments/webhook")

    app.include_router(health.router)
    app.include_router(api_v1)
    return app


app = create_app()
