from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Mapping, Optional

import httpx

from shopflow.domain.errors import (
    AuthenticationFailure,
    CommerceError,
    GatewayError,
    PaymentNotImplemented,
    PaymentOutcomeUnknown,
)

# Raised before any byte of the request reaches the provider
NOT_SENT_ERRORS = (httpx.ConnectError, httpx.ConnectTimeout, httpx.PoolTimeout, httpx.UnsupportedProtocol)


@dataclass(frozen=True, slots=True)
class ChargeResult:
    """Outcome of ``charge``.

    Synchronous providers fill ``transaction_id``; two-phase providers fill
    ``external_order_id`` and ``redirect_url`` and capture nothing yet.
    """

    gateway: str
    status: str
    transaction_id: Optional[str] = None
    external_order_id: Optional[str] = None
    redirect_url: Optional[str] = None
    raw: Mapping[str, Any] = field(default_factory=dict)

    @property
    def requires_redirect(self) -> bool:
        return self.redirect_url is not None

    @property
    def reference(self) -> Optional[str]:
        return self.transaction_id or self.external_order_id


@dataclass(frozen=True, slots=True)
class ExecutionResult:
    gateway: str
    status: str
    transaction_id: Optional[str] = None
    raw: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class RefundResult:
    gateway: str
    status: str
    refund_id: Optional[str] = None
    raw: Mapping[str, Any] = field(default_factory=dict)


class PaymentProvider(ABC):
    """Charge/execute/refund contract shared by every gateway.

    Amounts are major-unit decimals (pounds, not pence). Implementations
    raise ``AuthenticationFailure`` for rejected credentials and
    ``GatewayError`` for anything else the provider reports.
    """

    key: str = ""

    @abstractmethod
    def charge(self, amount: Decimal, details: Mapping[str, Any]) -> ChargeResult: ...

    def execute(self, external_order_id: str) -> ExecutionResult:
        raise PaymentNotImplemented(f"{self.key} has no separate capture step.", gateway=self.key)

    def refund(self, transaction_id: str) -> RefundResult:
        raise PaymentNotImplemented(f"{self.key} refund not implemented.", gateway=self.key)


class HttpPaymentProvider(PaymentProvider):
    """Base for providers spoken to over REST with an ``httpx.Client``."""

    def __init__(self, client: httpx.Client):
        self.client = client

    def _error_message(self, response: httpx.Response) -> str:
        try:
            payload = response.json()
        except ValueError:
            return response.text or response.reason_phrase
        return self._extract_error(payload) or response.reason_phrase

    def _extract_error(self, payload: Any) -> Optional[str]:
        if isinstance(payload, dict):
            return payload.get("message") or payload.get("error_description")
        return None

    def _send(self, label: str, request: httpx.Request, auth=None, moves_money: bool = True) -> dict:
        """Send ``request`` and return its JSON object body.

        Failures before the request leaves (connect errors, pool timeouts)
        are ``GatewayError``. Once it may have reached the provider, a lost
        or unreadable reply is ``PaymentOutcomeUnknown`` when ``moves_money``
        is set.
        """
        try:
            if auth is None:
                response = self.client.send(request)
            else:
                response = self.client.send(request, auth=auth)
        except NOT_SENT_ERRORS as e:
            raise GatewayError(f"{label}: {e}", gateway=self.key) from e
        except httpx.HTTPError as e:
            raise self._reply_lost(label, f"no reply ({type(e).__name__})", moves_money, e) from e

        if response.status_code == 401:
            raise AuthenticationFailure(
                f"{label}: {self._error_message(response)}", gateway=self.key
            )
        if response.is_error:
            raise GatewayError(f"{label}: {self._error_message(response)}", gateway=self.key)

        try:
            payload = response.json()
        except ValueError as e:
            raise self._reply_lost(label, "malformed provider response", moves_money, e) from e
        if not isinstance(payload, dict):
            raise self._reply_lost(label, "malformed provider response", moves_money, None)
        return payload

    def _reply_lost(self, label: str, reason: str, moves_money: bool, cause: Optional[Exception]) -> CommerceError:
        if moves_money:
            return PaymentOutcomeUnknown(f"{label}: {reason}", gateway=self.key, cause=cause)
        return GatewayError(f"{label}: {reason}", gateway=self.key)
