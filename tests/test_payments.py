import json
from decimal import Decimal
from urllib.parse import parse_qs

import httpx
import pytest

from shopflow.core_settings import Settings
from shopflow.domain.errors import (
    AuthenticationFailure,
    GatewayError,
    InvalidArgument,
    PaymentNotImplemented,
    PaymentOutcomeUnknown,
    PostChargePersistenceFailure,
    UnknownGateway,
)
from shopflow.payments import PayPalProvider, ProviderRegistry, StripeProvider
from shopflow.payments.stripe import convert_amount_to_cents


def stripe_with(handler):
    client = httpx.Client(transport=httpx.MockTransport(handler), base_url="https://api.stripe.test")
    return StripeProvider(client, currency="GBP")


def paypal_with(handler):
    client = httpx.Client(transport=httpx.MockTransport(handler), base_url="https://api-m.sandbox.paypal.test")
    return PayPalProvider(client, client_id="client", secret="secret", currency="GBP", brand_name="Shop")


def form(request):
    return {key: values[0] for key, values in parse_qs(request.content.decode()).items()}


def paypal_token(request):
    assert request.headers["Authorization"].startswith("Basic ")
    assert form(request) == {"grant_type": "client_credentials"}
    return httpx.Response(200, json={"access_token": "A21", "token_type": "Bearer"})


@pytest.mark.parametrize("amount,cents", [
    (Decimal("220.00"), 22000),
    (Decimal("0.01"), 1),
    (Decimal("10.999"), 1099),
])
def test_amount_in_minor_units(amount, cents):
    assert convert_amount_to_cents(amount) == cents


def test_stripe_charge():
    seen = {}

    def handler(request):
        seen["path"] = request.url.path
        seen["form"] = form(request)
        return httpx.Response(200, json={"id": "ch_123", "status": "succeeded"})

    result = stripe_with(handler).charge(Decimal("220.00"), {"token": "tok_visa"})

    assert seen["path"] == "/v1/charges"
    assert seen["form"] == {
        "amount": "22000",
        "currency": "gbp",
        "source": "tok_visa",
        "description": "Order Payment",
    }
    assert result.transaction_id == "ch_123"
    assert result.requires_redirect is False
    assert result.reference == "ch_123"


def test_stripe_requires_token():
    provider = stripe_with(lambda request: httpx.Response(500))
    with pytest.raises(InvalidArgument):
        provider.charge(Decimal("1.00"), {})


def test_stripe_rejected_key_is_authentication_failure():
    def handler(request):
        return httpx.Response(401, json={"error": {"message": "Invalid API Key provided"}})

    with pytest.raises(AuthenticationFailure) as exc_info:
        stripe_with(handler).charge(Decimal("1.00"), {"token": "tok_visa"})
    assert "Invalid API Key provided" in str(exc_info.value)
    assert exc_info.value.gateway == "stripe"


def test_stripe_decline_is_gateway_error():
    def handler(request):
        return httpx.Response(402, json={"error": {"type": "card_error", "message": "Your card was declined."}})

    with pytest.raises(GatewayError) as exc_info:
        stripe_with(handler).charge(Decimal("1.00"), {"token": "tok_chargeDeclined"})
    assert "Your card was declined." in str(exc_info.value)


def test_stripe_failed_status_is_gateway_error():
    def handler(request):
        return httpx.Response(200, json={"id": "ch_9", "status": "failed", "failure_message": "Do not honor"})

    with pytest.raises(GatewayError, match="Do not honor"):
        stripe_with(handler).charge(Decimal("1.00"), {"token": "tok_visa"})


def test_transport_failure_is_gateway_error():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(GatewayError):
        stripe_with(handler).charge(Decimal("1.00"), {"token": "tok_visa"})


def test_unreadable_charge_reply_is_outcome_unknown():
    with pytest.raises(PaymentOutcomeUnknown, match="malformed"):
        stripe_with(lambda request: httpx.Response(200, text="<html>")).charge(Decimal("1.00"), {"token": "t"})


def test_connect_timeout_is_gateway_error():
    def handler(request):
        raise httpx.ConnectTimeout("connect timed out", request=request)

    with pytest.raises(GatewayError):
        stripe_with(handler).charge(Decimal("1.00"), {"token": "tok_visa"})


@pytest.mark.parametrize("error_class", [httpx.ReadTimeout, httpx.ReadError, httpx.RemoteProtocolError])
def test_charge_sent_without_reply_is_outcome_unknown(error_class):
    sent = []

    def handler(request):
        sent.append(request.url.path)
        raise error_class("reply lost", request=request)

    with pytest.raises(PaymentOutcomeUnknown) as exc_info:
        stripe_with(handler).charge(Decimal("1.00"), {"token": "tok_visa"})

    assert sent == ["/v1/charges"]
    assert isinstance(exc_info.value, PostChargePersistenceFailure)
    assert exc_info.value.gateway == "stripe"
    assert isinstance(exc_info.value.cause, error_class)


@pytest.mark.parametrize("body", [["unexpected"], "ok", 42])
def test_non_object_charge_reply_is_outcome_unknown(body):
    with pytest.raises(PaymentOutcomeUnknown, match="malformed"):
        stripe_with(lambda request: httpx.Response(200, json=body)).charge(Decimal("1.00"), {"token": "t"})


def test_paypal_token_reply_lost_is_gateway_error():
    def handler(request):
        raise httpx.ReadTimeout("reply lost", request=request)

    with pytest.raises(GatewayError):
        paypal_with(handler).charge(Decimal("1.00"), {"return_url": "r", "cancel_url": "c"})


def test_paypal_create_order_reply_lost_is_gateway_error():
    def handler(request):
        if request.url.path == "/v1/oauth2/token":
            return paypal_token(request)
        raise httpx.ReadTimeout("reply lost", request=request)

    with pytest.raises(GatewayError):
        paypal_with(handler).charge(Decimal("1.00"), {"return_url": "r", "cancel_url": "c"})


def test_paypal_capture_reply_lost_is_outcome_unknown():
    def handler(request):
        if request.url.path == "/v1/oauth2/token":
            return paypal_token(request)
        raise httpx.ReadTimeout("reply lost", request=request)

    with pytest.raises(PaymentOutcomeUnknown):
        paypal_with(handler).execute("PAY-1")


def test_stripe_refund():
    def handler(request):
        assert request.url.path == "/v1/refunds"
        assert form(request) == {"charge": "ch_123"}
        return httpx.Response(200, json={"id": "re_1", "status": "succeeded"})

    result = stripe_with(handler).refund("ch_123")
    assert result.refund_id == "re_1"
    assert result.status == "succeeded"


def test_stripe_has_no_execute_step():
    with pytest.raises(PaymentNotImplemented):
        stripe_with(lambda request: httpx.Response(500)).execute("anything")


def test_paypal_charge_returns_approval_link():
    seen = {}

    def handler(request):
        if request.url.path == "/v1/oauth2/token":
            return paypal_token(request)
        assert request.url.path == "/v2/checkout/orders"
        assert request.headers["Authorization"] == "Bearer A21"
        seen["body"] = json.loads(request.content)
        return httpx.Response(201, json={
            "id": "5O190127TN364715T",
            "status": "CREATED",
            "links": [
                {"rel": "self", "href": "https://api.paypal.test/v2/checkout/orders/5O190127TN364715T"},
                {"rel": "approve", "href": "https://www.paypal.test/checkoutnow?token=5O190127TN364715T"},
            ],
        })

    result = paypal_with(handler).charge(
        Decimal("220"),
        {"return_url": "https://shop.test/return", "cancel_url": "https://shop.test/cancel"},
    )

    assert result.requires_redirect is True
    assert result.external_order_id == "5O190127TN364715T"
    assert result.redirect_url == "https://www.paypal.test/checkoutnow?token=5O190127TN364715T"
    assert seen["body"]["intent"] == "CAPTURE"
    assert seen["body"]["purchase_units"][0]["amount"] == {"currency_code": "GBP", "value": "220.00"}
    assert seen["body"]["application_context"]["return_url"] == "https://shop.test/return"


def test_paypal_requires_return_and_cancel_urls():
    provider = paypal_with(lambda request: httpx.Response(500))
    with pytest.raises(InvalidArgument, match="cancel_url"):
        provider.charge(Decimal("1.00"), {"return_url": "https://shop.test/return"})


def test_paypal_missing_approval_link():
    def handler(request):
        if request.url.path == "/v1/oauth2/token":
            return paypal_token(request)
        return httpx.Response(201, json={"id": "X", "status": "CREATED", "links": []})

    with pytest.raises(GatewayError):
        paypal_with(handler).charge(Decimal("1.00"), {"return_url": "r", "cancel_url": "c"})


def test_paypal_bad_credentials():
    def handler(request):
        return httpx.Response(401, json={"error": "invalid_client", "error_description": "Client Authentication failed"})

    with pytest.raises(AuthenticationFailure, match="Client Authentication failed"):
        paypal_with(handler).charge(Decimal("1.00"), {"return_url": "r", "cancel_url": "c"})


def test_paypal_execute_captures_order():
    calls = []

    def handler(request):
        calls.append(request.url.path)
        if request.url.path == "/v1/oauth2/token":
            return paypal_token(request)
        return httpx.Response(201, json={
            "id": "PAY-1",
            "status": "COMPLETED",
            "purchase_units": [{"payments": {"captures": [{"id": "CAP-9", "status": "COMPLETED"}]}}],
        })

    provider = paypal_with(handler)
    result = provider.execute("PAY-1")
    provider.execute("PAY-1")

    assert result.transaction_id == "CAP-9"
    # the access token is fetched once and reused
    assert calls == ["/v1/oauth2/token", "/v2/checkout/orders/PAY-1/capture", "/v2/checkout/orders/PAY-1/capture"]


def test_paypal_execute_not_completed():
    def handler(request):
        if request.url.path == "/v1/oauth2/token":
            return paypal_token(request)
        return httpx.Response(422, json={"name": "UNPROCESSABLE_ENTITY", "message": "Payer has not approved"})

    with pytest.raises(GatewayError, match="Payer has not approved"):
        paypal_with(handler).execute("PAY-1")


def test_paypal_refund_not_supported():
    with pytest.raises(PaymentNotImplemented):
        paypal_with(lambda request: httpx.Response(500)).refund("CAP-9")


def test_registry_builds_configured_providers():
    settings = Settings(STRIPE_SECRET_KEY="sk_test", PAYMENT_GATEWAYS=["stripe", "paypal"], DEFAULT_GATEWAY="stripe")
    registry = ProviderRegistry.from_settings(settings)

    assert registry.gateways == ["stripe", "paypal"]
    assert isinstance(registry.resolve(), StripeProvider)
    assert isinstance(registry.resolve("paypal"), PayPalProvider)


def test_registry_rejects_unknown_configured_gateway():
    settings = Settings(PAYMENT_GATEWAYS=["stripe", "bitcoin"])
    with pytest.raises(UnknownGateway, match="bitcoin"):
        ProviderRegistry.from_settings(settings)


def test_registry_rejects_unregistered_default():
    with pytest.raises(UnknownGateway):
        ProviderRegistry({"stripe": lambda: None}, default_gateway="paypal")


def test_registry_resolve_unknown(registry):
    with pytest.raises(UnknownGateway) as exc_info:
        registry.resolve("bitcoin")
    assert isinstance(exc_info.value, InvalidArgument)
