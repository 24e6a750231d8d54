# backend/sahayak/core/config.py
import json
import logging
import os
from pathlib import Path
from typing import Any, List, Literal

from dotenv import load_dotenv
from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from ..domain.pricing import RefundPolicy


def is_running_tests() -> bool:
    """
    Detect if code is running under pytest.

    PYTEST_CURRENT_TEST is set automatically by pytest during test runs, and is
    not expected to be present in production environments.
    """
    return os.getenv("PYTEST_CURRENT_TEST") is not None


logger = logging.getLogger(__name__)

# Load .env file only if not in CI
if not os.getenv("CI"):
    env_path = Path(__file__).parent.parent.parent / ".env"  # Goes up to backend/.env
    logger.debug("[CONFIG] Looking for .env at: %s (exists=%s)", env_path, env_path.exists())
    load_dotenv(env_path)


class Settings(BaseSettings):
    environment: Literal["development", "test", "staging", "production"] = "development"

    database_url: str = Field(
        default="sqlite:///./sahayak.db",
        description="SQLAlchemy database URL",
    )
    database_echo: bool = False

    # JWT bearer tokens are issued by the identity service; we only verify them.
    secret_key: SecretStr = Field(
        default=SecretStr("dev-secret-key-change-me"),
        description="Secret key for JWT tokens",
    )
    algorithm: str = "HS256"

    # Payment gateway (Razorpay-compatible REST API)
    razorpay_key_id: str = Field(default="", description="Gateway key id")
    razorpay_key_secret: SecretStr = Field(
        default=SecretStr(""),
        description="Gateway key secret; also keys payment signature verification",
    )
    razorpay_webhook_secret: SecretStr = Field(
        default=SecretStr(""),
        description="Shared secret for webhook signature validation",
    )
    razorpay_base_url: str = "https://api.razorpay.com/v1"
    payment_gateway_timeout_seconds: float = Field(default=10.0, gt=0)
    payment_gateway_max_retries: int = Field(default=3, ge=1, le=10)
    use_fake_payment_gateway: bool = Field(
        default=False,
        description="Use the in-memory gateway (local development only)",
    )
    payment_link_callback_url: str = Field(
        default="http://localhost:3000/payment/callback",
        description="Where the hosted payment page sends the customer afterwards",
    )

    payment_currency: str = "INR"
    currency_minor_exponent: int = Field(default=2, ge=0, le=4)

    # Pricing and refund policy
    tax_rate: str = Field(default="0.18", description="Tax rate applied to the base amount")
    refund_tiers: List[List[float]] = Field(
        default_factory=lambda: [[24, 100], [12, 75], [2, 50]],
        description="Refund tiers as [hours_remaining_exclusive, percent] pairs",
    )
    refund_floor_percent: int = Field(default=25, ge=0, le=100)

    # Local day boundaries for the "today" booking view
    service_timezone: str = "Asia/Kolkata"

    # Compare-and-set retry budget for booking/payment writes
    cas_max_attempts: int = Field(default=3, ge=1, le=20)

    # A webhook row claimed longer ago than this is assumed abandoned
    webhook_processing_lease_seconds: int = Field(default=300, ge=1)

    # Service catalog collaborator
    catalog_service_url: str = "http://localhost:8001/api/v1"
    catalog_timeout_seconds: float = 5.0

    model_config = SettingsConfigDict(
        env_file=".env" if not os.getenv("CI") else None,
        case_sensitive=False,
        extra="ignore",
    )

    @field_validator("refund_tiers", mode="before")
    @classmethod
    def _parse_refund_tiers(cls, value: object) -> Any:
        if isinstance(value, str):
            try:
                return json.loads(value)
            except json.JSONDecodeError as exc:
                raise ValueError("refund_tiers must be a JSON list of [hours, percent]") from exc
        return value

    @field_validator("tax_rate", mode="before")
    @classmethod
    def _normalize_tax_rate(cls, value: object) -> str:
        text = str(value).strip()
        try:
            rate = float(text)
        except ValueError as exc:
            raise ValueError("tax_rate must be numeric") from exc
        if rate < 0 or rate > 1:
            raise ValueError("tax_rate must be between 0 and 1")
        return text

    def refund_policy(self) -> RefundPolicy:
        """Build the refund policy from configuration."""
        return RefundPolicy.from_pairs(self.refund_tiers, floor_percent=self.refund_floor_percent)


settings = Settings()
