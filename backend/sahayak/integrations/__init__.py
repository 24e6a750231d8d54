"""External collaborators: payment gateway and service catalog."""

from ..core.config import Settings
from .payment_gateway import GatewayOrder, GatewayPayment, GatewayRefund, PaymentGateway
from .razorpay_client import FakeRazorpayClient, RazorpayClient


def build_payment_gateway(config: Settings) -> PaymentGateway:
    """Construct the gateway adapter from settings. Called once at startup."""
    if config.use_fake_payment_gateway:
        if config.environment == "production":
            raise RuntimeError("The fake payment gateway cannot be used in production")
        return FakeRazorpayClient()
    return RazorpayClient(
        key_id=config.razorpay_key_id,
        key_secret=config.razorpay_key_secret,
        base_url=config.razorpay_base_url,
        timeout=config.payment_gateway_timeout_seconds,
        max_retries=config.payment_gateway_max_retries,
    )


__all__ = [
    "FakeRazorpayClient",
    "GatewayOrder",
    "GatewayPayment",
    "GatewayRefund",
    "PaymentGateway",
    "RazorpayClient",
    "build_payment_gateway",
]
