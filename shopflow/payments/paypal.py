from decimal import Decimal
from typing import Any, Mapping, Optional

import httpx

from shopflow.core import get_logger
from shopflow.domain.errors import GatewayError, InvalidArgument
from shopflow.payments.base import ChargeResult, ExecutionResult, HttpPaymentProvider

logger = get_logger(__name__)


class PayPalProvider(HttpPaymentProvider):
    """Redirect checkout: ``charge`` creates an order the payer must approve,
    ``execute`` captures it once they come back."""

    key = "paypal"

    def __init__(
        self,
        client: httpx.Client,
        client_id: Optional[str],
        secret: Optional[str],
        currency: str = "GBP",
        brand_name: str = "Shopflow",
    ):
        super().__init__(client)
        self.client_id = client_id
        self.secret = secret
        self.currency = currency
        self.brand_name = brand_name
        self._access_token: Optional[str] = None

    @classmethod
    def from_settings(cls, settings, client: Optional[httpx.Client] = None) -> "PayPalProvider":
        if client is None:
            client = httpx.Client(base_url=settings.paypal_api_base, timeout=settings.PAYMENT_HTTP_TIMEOUT)
        return cls(
            client,
            client_id=settings.PAYPAL_CLIENT_ID,
            secret=settings.PAYPAL_SECRET,
            currency=settings.CURRENCY_CODE,
            brand_name=settings.BRAND_NAME,
        )

    def _authorize(self) -> str:
        if self._access_token is None:
            request = self.client.build_request(
                "POST",
                "/v1/oauth2/token",
                data={"grant_type": "client_credentials"},
            )
            payload = self._send(
                "PayPal Authentication Error",
                request,
                auth=(self.client_id or "", self.secret or ""),
                moves_money=False,
            )
            self._access_token = payload.get("access_token")
            if not self._access_token:
                raise GatewayError("PayPal Authentication Error: no access token issued", gateway=self.key)
        return self._access_token

    def _api_request(self, url: str, body: Optional[dict] = None) -> httpx.Request:
        return self.client.build_request(
            "POST",
            url,
            json=body if body is not None else {},
            headers={
                "Authorization": f"Bearer {self._authorize()}",
                "Prefer": "return=representation",
            },
        )

    def charge(self, amount: Decimal, details: Mapping[str, Any]) -> ChargeResult:
        missing = [name for name in ("return_url", "cancel_url") if not details.get(name)]
        if missing:
            raise InvalidArgument(f"PayPal payments require {', '.join(missing)}.")

        body = {
            "intent": "CAPTURE",
            "purchase_units": [{
                "amount": {
                    "currency_code": self.currency,
                    "value": f"{Decimal(amount):.2f}",
                }
            }],
            "application_context": {
                "cancel_url": details["cancel_url"],
                "return_url": details["return_url"],
                "brand_name": self.brand_name,
                "user_action": "PAY_NOW",
            },
        }
        # Creating the order captures no funds
        payload = self._send(
            "PayPal Payment Error",
            self._api_request("/v2/checkout/orders", body),
            moves_money=False,
        )

        approve_link = next(
            (link.get("href") for link in payload.get("links", []) if link.get("rel") == "approve"),
            None,
        )
        if not payload.get("id") or not approve_link:
            raise GatewayError("PayPal Payment Error: no approval link returned", gateway=self.key)

        logger.info(f"PayPal order {payload['id']} created, awaiting payer approval")
        return ChargeResult(
            gateway=self.key,
            status=payload.get("status", "CREATED"),
            external_order_id=payload["id"],
            redirect_url=approve_link,
            raw=payload,
        )

    def execute(self, external_order_id: str) -> ExecutionResult:
        payload = self._send(
            "PayPal Execution Error",
            self._api_request(f"/v2/checkout/orders/{external_order_id}/capture"),
        )

        status = payload.get("status", "unknown")
        if status != "COMPLETED":
            raise GatewayError(f"PayPal Execution Error: order is {status}", gateway=self.key)

        capture_id = None
        for unit in payload.get("purchase_units", []):
            captures = unit.get("payments", {}).get("captures", [])
            if captures:
                capture_id = captures[0].get("id")
                break

        logger.info(f"PayPal order {external_order_id} captured")
        return ExecutionResult(
            gateway=self.key,
            status=status,
            transaction_id=capture_id or external_order_id,
            raw=payload,
        )
