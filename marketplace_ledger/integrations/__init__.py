"""External integrations: payment gateway and webhook verification."""
from .gateway import (
    GatewayPayment,
    GatewayPaymentPage,
    GatewayStatus,
    PaymentGateway,
    call_with_retry,
)
from .stripe_gateway import CircuitBreaker, StripeGateway

__all__ = [
    "CircuitBreaker",
    "GatewayPayment",
    "GatewayPaymentPage",
    "GatewayStatus",
    "PaymentGateway",
    "StripeGateway",
    "call_with_retry",
]
