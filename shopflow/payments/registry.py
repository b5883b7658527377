from typing import Callable, Dict, Iterable, Mapping, Optional

from shopflow.core import get_logger
from shopflow.domain.errors import UnknownGateway
from shopflow.payments.base import PaymentProvider
from shopflow.payments.paypal import PayPalProvider
from shopflow.payments.stripe import StripeProvider

logger = get_logger(__name__)

ProviderFactory = Callable[[], PaymentProvider]

# Every gateway this service can talk to. Configuration selects a subset.
GATEWAY_CLASSES = {
    StripeProvider.key: StripeProvider,
    PayPalProvider.key: PayPalProvider,
}


class ProviderRegistry:
    """Maps gateway keys to provider factories.

    Built once at start-up; an enabled key with no implementation fails
    here rather than on the first checkout that uses it.
    """

    def __init__(self, factories: Mapping[str, ProviderFactory], default_gateway: Optional[str] = None):
        self._factories: Dict[str, ProviderFactory] = dict(factories)
        if default_gateway is not None and default_gateway not in self._factories:
            raise UnknownGateway(default_gateway)
        self.default_gateway = default_gateway

    @classmethod
    def from_settings(cls, settings, enabled: Optional[Iterable[str]] = None) -> "ProviderRegistry":
        factories: Dict[str, ProviderFactory] = {}
        for key in enabled if enabled is not None else settings.PAYMENT_GATEWAYS:
            provider_class = GATEWAY_CLASSES.get(key)
            if provider_class is None:
                raise UnknownGateway(key)
            factories[key] = lambda provider_class=provider_class: provider_class.from_settings(settings)
        logger.info(f"Payment gateways enabled: {', '.join(factories) or 'none'}")
        return cls(factories, default_gateway=settings.DEFAULT_GATEWAY)

    @property
    def gateways(self) -> list[str]:
        return list(self._factories)

    def resolve(self, gateway: Optional[str] = None) -> PaymentProvider:
        key = gateway or self.default_gateway
        factory = self._factories.get(key) if key else None
        if factory is None:
            raise UnknownGateway(str(key))
        return factory()
