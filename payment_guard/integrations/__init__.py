"""External integrations: payment gateway and velocity counters."""
from payment_guard.integrations.gateway import (
    CardPaymentResult,
    GatewayClient,
    OfflinePaymentResult,
    RefundResult,
    call_with_timeout,
)
from payment_guard.integrations.stripe_gateway import CircuitBreaker, StripeGatewayClient
from payment_guard.integrations.velocity import VelocityTracker

__all__ = [
    "CardPaymentResult",
    "CircuitBreaker",
    "GatewayClient",
    "OfflinePaymentResult",
    "RefundResult",
    "StripeGatewayClient",
    "VelocityTracker",
    "call_with_timeout",
]
