import logging

from django.conf import settings
from django.core.exceptions import ImproperlyConfigured

from .base import GatewayError, GatewayPaymentState, PaymentGateway, PaymentIntent
from .razorpay import RazorpayGateway
from .stub import StubGateway

logger = logging.getLogger(__name__)


def get_gateway(name: str | None = None) -> PaymentGateway:
    name = (name or getattr(settings, "PAYMENT_GATEWAY", "") or StubGateway.name).lower()
    if name == RazorpayGateway.name:
        if getattr(settings, "RAZORPAY_KEY_ID", "") and getattr(settings, "RAZORPAY_KEY_SECRET", ""):
            return RazorpayGateway()
        logger.warning("Razorpay keys not configured; falling back to the stubbed gateway")
        return StubGateway()
    if name == StubGateway.name:
        return StubGateway()
    raise ImproperlyConfigured(f"Unsupported checkout gateway: {name}")


__all__ = [
    "GatewayError",
    "GatewayPaymentState",
    "PaymentGateway",
    "PaymentIntent",
    "RazorpayGateway",
    "StubGateway",
    "get_gateway",
]
