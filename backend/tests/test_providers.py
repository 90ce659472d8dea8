"""
Provider adapter tests.

PayPal runs against an httpx.MockTransport; Stripe webhook verification
runs against signatures computed the way Stripe computes them.
"""

import hashlib
import hmac
import json
import time

import httpx
import pytest

from gemach.errors import InvalidArgumentError, ProviderError, UnsupportedMethodError
from gemach.services.providers import CashProvider, PayPalProvider, StripeProvider, get_provider

PAYPAL_CONFIG = {
    "PAYPAL_CLIENT_ID": "client",
    "PAYPAL_CLIENT_SECRET": "secret",
    "PAYPAL_WEBHOOK_ID": "WH-CONFIG",
    "PAYPAL_API_BASE": "https://paypal.test",
}

WEBHOOK_HEADERS = {
    "PAYPAL-AUTH-ALGO": "SHA256withRSA",
    "PAYPAL-CERT-URL": "https://paypal.test/cert",
    "PAYPAL-TRANSMISSION-ID": "tx-1",
    "PAYPAL-TRANSMISSION-SIG": "sig",
    "PAYPAL-TRANSMISSION-TIME": "2026-01-01T00:00:00Z",
}


class PayPalStub:
    """Routes requests to canned responses and remembers what it saw."""

    def __init__(self, routes):
        self.routes = routes
        self.requests = []

    def __call__(self, request):
        self.requests.append(request)
        if request.url.path == "/v1/oauth2/token":
            return httpx.Response(200, json={"access_token": "A21", "expires_in": 3600})
        status, body = self.routes[(request.method, request.url.path)]
        return httpx.Response(status, json=body)

    def provider(self, config=PAYPAL_CONFIG):
        return PayPalProvider(config, transport=httpx.MockTransport(self))

    def last(self):
        return self.requests[-1]


ORDER_WITH_CAPTURE = {
    "id": "ORDER-1",
    "status": "COMPLETED",
    "purchase_units": [{"payments": {"captures": [{"id": "CAP-1", "status": "COMPLETED"}]}}],
}


class TestPayPalProvider:

    def test_create_order(self):
        stub = PayPalStub({("POST", "/v2/checkout/orders"): (201, {
            "id": "ORDER-1",
            "status": "CREATED",
            "links": [
                {"rel": "self", "href": "https://paypal.test/v2/checkout/orders/ORDER-1"},
                {"rel": "approve", "href": "https://paypal.test/checkoutnow?token=ORDER-1"},
            ],
        })})

        intent = stub.provider().create_payment(amount_cents=2090, currency="usd", metadata={"transaction_id": 7})

        assert intent.external_id == "ORDER-1"
        assert intent.approval_url == "https://paypal.test/checkoutnow?token=ORDER-1"
        sent = json.loads(stub.last().content)
        assert sent["purchase_units"][0]["amount"] == {"currency_code": "USD", "value": "20.90"}
        assert sent["purchase_units"][0]["custom_id"] == "7"
        assert stub.last().headers["Authorization"] == "Bearer A21"

    def test_refund_uses_known_capture(self):
        stub = PayPalStub({("POST", "/v2/payments/captures/CAP-1/refund"): (201, {"id": "REF-1", "status": "COMPLETED"})})

        refund = stub.provider().refund(
            external_payment_id="ORDER-1",
            amount_cents=1500,
            currency="usd",
            idempotency_key="refund_3",
            metadata={"capture_id": "CAP-1"},
        )

        assert refund.external_id == "REF-1"
        assert refund.status == "completed"
        assert stub.last().headers["PayPal-Request-Id"] == "refund_3"
        assert json.loads(stub.last().content)["amount"]["value"] == "15.00"

    def test_refund_looks_up_capture(self):
        stub = PayPalStub({
            ("GET", "/v2/checkout/orders/ORDER-1"): (200, ORDER_WITH_CAPTURE),
            ("POST", "/v2/payments/captures/CAP-1/refund"): (201, {"id": "REF-1", "status": "PENDING"}),
        })
        refund = stub.provider().refund(
            external_payment_id="ORDER-1", amount_cents=100, currency="usd", idempotency_key="k", metadata={}
        )
        assert refund.payload["capture_id"] == "CAP-1"

    def test_http_error_becomes_provider_error(self):
        stub = PayPalStub({("POST", "/v2/payments/captures/CAP-1/refund"): (422, {
            "name": "UNPROCESSABLE_ENTITY",
            "message": "The requested action could not be performed.",
        })})
        with pytest.raises(ProviderError) as exc:
            stub.provider().refund(
                external_payment_id="ORDER-1", amount_cents=100, currency="usd", idempotency_key="k",
                metadata={"capture_id": "CAP-1"},
            )
        assert exc.value.provider_code == "UNPROCESSABLE_ENTITY"

    def test_missing_credentials(self):
        stub = PayPalStub({})
        with pytest.raises(ProviderError):
            stub.provider({}).create_payment(amount_cents=100, currency="usd", metadata={})
        assert stub.requests == []

    @pytest.mark.parametrize(
        "capture_status,expected",
        [("COMPLETED", "COMPLETED"), ("PENDING", "pending"), ("DECLINED", "failed")],
    )
    def test_fetch_status(self, capture_status, expected):
        order = {
            "id": "ORDER-1",
            "status": "COMPLETED",
            "purchase_units": [{"payments": {"captures": [{"id": "CAP-1", "status": capture_status}]}}],
        }
        stub = PayPalStub({("GET", "/v2/checkout/orders/ORDER-1"): (200, order)})
        assert stub.provider().fetch_status("ORDER-1").status == expected

    def test_verify_webhook(self):
        stub = PayPalStub({("POST", "/v1/notifications/verify-webhook-signature"): (200, {"verification_status": "SUCCESS"})})
        raw = json.dumps({"id": "WH-1", "event_type": "PAYMENT.CAPTURE.COMPLETED"}).encode()

        event = stub.provider().verify_webhook(raw, WEBHOOK_HEADERS)

        assert event["id"] == "WH-1"
        sent = json.loads(stub.last().content)
        assert sent["webhook_id"] == "WH-CONFIG"
        assert sent["transmission_sig"] == "sig"

    def test_verify_webhook_failure(self):
        stub = PayPalStub({("POST", "/v1/notifications/verify-webhook-signature"): (200, {"verification_status": "FAILURE"})})
        with pytest.raises(InvalidArgumentError):
            stub.provider().verify_webhook(b'{"id": "WH-1"}', WEBHOOK_HEADERS)

    def test_verify_webhook_missing_header(self):
        stub = PayPalStub({})
        headers = {k: v for k, v in WEBHOOK_HEADERS.items() if k != "PAYPAL-CERT-URL"}
        with pytest.raises(InvalidArgumentError):
            stub.provider().verify_webhook(b'{"id": "WH-1"}', headers)
        assert stub.requests == []


def _stripe_signature(payload: bytes, secret: str, timestamp=None) -> str:
    timestamp = timestamp or int(time.time())
    signed = f"{timestamp}.".encode() + payload
    digest = hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


class TestStripeProvider:

    CONFIG = {"STRIPE_SECRET_KEY": "sk_test_x", "STRIPE_WEBHOOK_SECRET": "whsec_test"}

    def test_construct_event(self):
        raw = json.dumps({"id": "evt_1", "type": "payment_intent.succeeded", "data": {"object": {"id": "pi_1"}}}).encode()
        event = StripeProvider(self.CONFIG).construct_event(raw, _stripe_signature(raw, "whsec_test"))
        assert event["data"]["object"]["id"] == "pi_1"

    def test_construct_event_wrong_secret(self):
        raw = b'{"id": "evt_1"}'
        with pytest.raises(InvalidArgumentError):
            StripeProvider(self.CONFIG).construct_event(raw, _stripe_signature(raw, "whsec_other"))

    def test_construct_event_tampered_body(self):
        raw = b'{"id": "evt_1"}'
        signature = _stripe_signature(raw, "whsec_test")
        with pytest.raises(InvalidArgumentError):
            StripeProvider(self.CONFIG).construct_event(b'{"id": "evt_2"}', signature)

    def test_missing_signature(self):
        with pytest.raises(InvalidArgumentError):
            StripeProvider(self.CONFIG).construct_event(b"{}", None)

    def test_unconfigured(self):
        with pytest.raises(ProviderError):
            StripeProvider({}).construct_event(b"{}", "t=1,v1=x")
        with pytest.raises(ProviderError):
            StripeProvider({}).refund(
                external_payment_id="pi_1", amount_cents=100, currency="usd", idempotency_key="k", metadata={}
            )


class TestRegistry:

    def test_cash_moves_only_the_books(self):
        cash = CashProvider()
        assert cash.create_payment(amount_cents=2000, currency="usd", metadata={}).status == "confirming"
        refund = cash.refund(external_payment_id=None, amount_cents=2000, currency="usd", idempotency_key="k", metadata={})
        assert refund.payload["bookkeeping_only"] is True

    def test_cash_has_no_saved_cards(self):
        with pytest.raises(UnsupportedMethodError):
            CashProvider().setup_card(name="x", email=None, phone=None, metadata={})

    def test_unknown_method(self, app):
        with pytest.raises(UnsupportedMethodError):
            get_provider("venmo")
