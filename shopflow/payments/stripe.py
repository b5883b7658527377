from decimal import Decimal
from typing import Any, Mapping, Optional

import httpx

from shopflow.core import get_logger
from shopflow.domain.errors import GatewayError, InvalidArgument
from shopflow.payments.base import ChargeResult, HttpPaymentProvider, RefundResult

logger = get_logger(__name__)


def convert_amount_to_cents(amount: Decimal) -> int:
    """Minor units for Stripe: x100, truncated."""
    return int(Decimal(amount) * 100)


class StripeProvider(HttpPaymentProvider):
    """Synchronous card charges: funds are captured by ``charge`` itself."""

    key = "stripe"

    def __init__(self, client: httpx.Client, currency: str = "GBP"):
        super().__init__(client)
        self.currency = currency

    @classmethod
    def from_settings(cls, settings, client: Optional[httpx.Client] = None) -> "StripeProvider":
        if client is None:
            client = httpx.Client(
                base_url=settings.STRIPE_API_BASE,
                headers={"Authorization": f"Bearer {settings.STRIPE_SECRET_KEY or ''}"},
                timeout=settings.PAYMENT_HTTP_TIMEOUT,
            )
        return cls(client, currency=settings.CURRENCY_CODE)

    def _extract_error(self, payload: Any) -> Optional[str]:
        if isinstance(payload, dict) and isinstance(payload.get("error"), dict):
            return payload["error"].get("message")
        return super()._extract_error(payload)

    def charge(self, amount: Decimal, details: Mapping[str, Any]) -> ChargeResult:
        token = details.get("token")
        if not token:
            raise InvalidArgument("Stripe payments require a card token.")

        request = self.client.build_request(
            "POST",
            "/v1/charges",
            data={
                "amount": convert_amount_to_cents(amount),
                "currency": self.currency.lower(),
                "source": token,
                "description": details.get("description", "Order Payment"),
            },
        )
        payload = self._send("Stripe Payment Error", request)

        status = payload.get("status", "unknown")
        if status == "failed":
            raise GatewayError(
                f"Stripe Payment Error: {payload.get('failure_message') or 'charge failed'}",
                gateway=self.key,
            )
        logger.info(f"Stripe charge {payload.get('id')} {status}")
        return ChargeResult(gateway=self.key, status=status, transaction_id=payload.get("id"), raw=payload)

    def refund(self, transaction_id: str) -> RefundResult:
        request = self.client.build_request("POST", "/v1/refunds", data={"charge": transaction_id})
        payload = self._send("Stripe Refund Error", request)
        return RefundResult(
            gateway=self.key,
            status=payload.get("status", "unknown"),
            refund_id=payload.get("id"),
            raw=payload,
        )
