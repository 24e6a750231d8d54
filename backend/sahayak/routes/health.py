# backend/sahayak/routes/health.py
"""
Health and metrics endpoints.

These endpoints are used for monitoring application health, database
connectivity and payment gateway availability, and for Prometheus scraping.
"""

from datetime import datetime, timezone
import logging
from typing import Dict

from fastapi import APIRouter, Depends, Response
from pydantic import BaseModel, Field
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..api.dependencies import get_db, get_payment_gateway
from ..core.config import settings
from ..integrations.payment_gateway import PaymentGateway
from ..monitoring.prometheus_metrics import prometheus_metrics

logger = logging.getLogger(__name__)
router = APIRouter(tags=["health"])

SERVICE_NAME = "sahayak-bookings"


class LiveHealthResponse(BaseModel):
    ok: bool


class HealthCheckResponse(BaseModel):
    """Standard health check response."""

    status: str = Field(description="Service health status", pattern="^(healthy|degraded)$")
    service: str = SERVICE_NAME
    environment: str
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    checks: Dict[str, bool] = Field(description="Individual component health checks")


@router.get("/live", response_model=LiveHealthResponse)
def liveness(response: Response) -> LiveHealthResponse:
    """Liveness check that avoids touching external dependencies."""

    response.headers["Cache-Control"] = "no-store"
    return LiveHealthResponse(ok=True)


@router.get("/health", response_model=HealthCheckResponse)
def health_check(
    db: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(get_payment_gateway),
) -> HealthCheckResponse:
    """
    Basic health check endpoint.

    The service is degraded when the database is unreachable or the payment
    gateway has no credentials; bookings can still be read in the latter case.
    """
    try:
        db.execute(text("SELECT 1"))
        db_status = True
    except SQLAlchemyError as e:
        logger.error("Database health check failed: %s", e)
        db_status = False

    gateway_status = gateway.is_available()
    return HealthCheckResponse(
        status="healthy" if db_status and gateway_status else "degraded",
        environment=settings.environment,
        checks={"database": db_status, "payment_gateway": gateway_status},
    )


@router.get("/metrics", include_in_schema=False, response_class=Response, response_model=None)
def get_prometheus_metrics() -> Response:
    """Expose Prometheus metrics for scraping."""
    return Response(
        content=prometheus_metrics.get_metrics(),
        media_type=prometheus_metrics.get_content_type(),
        headers={"Cache-Control": "no-cache, no-store, must-revalidate"},
    )
