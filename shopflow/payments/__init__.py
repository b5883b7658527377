"""Payment providers behind one charge/execute/refund contract."""

from .base import ChargeResult, ExecutionResult, PaymentProvider, RefundResult
from .paypal import PayPalProvider
from .registry import GATEWAY_CLASSES, ProviderRegistry
from .stripe import StripeProvider

__all__ = [
    "ChargeResult",
    "ExecutionResult",
    "RefundResult",
    "PaymentProvider",
    "StripeProvider",
    "PayPalProvider",
    "ProviderRegistry",
    "GATEWAY_CLASSES",
]
