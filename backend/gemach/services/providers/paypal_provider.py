# Overview: PayPal deposits through the PayPal REST API (orders, capture refunds, webhook verification).

from __future__ import annotations

import json

import httpx

from ...errors import InvalidArgumentError, ProviderError
from ..fees import from_cents
from .base import PaymentProvider, ProviderIntent, ProviderRefund, ProviderStatus


WEBHOOK_HEADERS = {
    "auth_algo": "PAYPAL-AUTH-ALGO",
    "cert_url": "PAYPAL-CERT-URL",
    "transmission_id": "PAYPAL-TRANSMISSION-ID",
    "transmission_sig": "PAYPAL-TRANSMISSION-SIG",
    "transmission_time": "PAYPAL-TRANSMISSION-TIME",
}


def capture_id_from_order(order: dict) -> str | None:
    for unit in order.get("purchase_units") or []:
        for capture in (unit.get("payments") or {}).get("captures") or []:
            if capture.get("id"):
                return capture["id"]
    return None


class PayPalProvider(PaymentProvider):
    """
    PayPal Orders v2 over httpx.

    external_payment_id is the order id. Refunds go against the order's
    capture, looked up from the order when not supplied.
    """
    name = "paypal"

    def __init__(self, config, transport: httpx.BaseTransport | None = None):
        self.client_id = config.get("PAYPAL_CLIENT_ID")
        self.client_secret = config.get("PAYPAL_CLIENT_SECRET")
        self.webhook_id = config.get("PAYPAL_WEBHOOK_ID")
        self.base_url = config.get("PAYPAL_API_BASE") or "https://api-m.sandbox.paypal.com"
        self.timeout = config.get("PROVIDER_HTTP_TIMEOUT") or 15
        self.transport = transport

    def _client(self) -> httpx.Client:
        return httpx.Client(base_url=self.base_url, timeout=self.timeout, transport=self.transport)

    def _access_token(self, client: httpx.Client) -> str:
        if not self.client_id or not self.client_secret:
            raise ProviderError(self.name, "PAYPAL_CLIENT_ID/PAYPAL_CLIENT_SECRET are not configured")
        response = client.post(
            "/v1/oauth2/token",
            auth=(self.client_id, self.client_secret),
            data={"grant_type": "client_credentials"},
        )
        response.raise_for_status()
        return response.json()["access_token"]

    def _request(self, method: str, path: str, *, json_body: dict | None = None, headers: dict | None = None) -> dict:
        try:
            with self._client() as client:
                token = self._access_token(client)
                request_headers = {"Authorization": f"Bearer {token}"}
                request_headers.update(headers or {})
                response = client.request(method, path, json=json_body, headers=request_headers)
                response.raise_for_status()
                return response.json() if response.content else {}
        except httpx.HTTPStatusError as exc:
            try:
                body = exc.response.json()
            except ValueError:
                body = {"text": exc.response.text}
            raise ProviderError(
                self.name,
                f"{method} {path} returned {exc.response.status_code}",
                provider_code=body.get("name") if isinstance(body, dict) else None,
                payload=body if isinstance(body, dict) else {},
            )
        except httpx.HTTPError as exc:
            raise ProviderError(self.name, f"{method} {path} failed: {exc}")

    def create_payment(self, *, amount_cents, currency, metadata):
        order = self._request("POST", "/v2/checkout/orders", json_body={
            "intent": "CAPTURE",
            "purchase_units": [{
                "custom_id": str(metadata.get("transaction_id", "")),
                "description": "Earmuff deposit",
                "amount": {"currency_code": currency.upper(), "value": str(from_cents(amount_cents))},
            }],
        })
        approval_url = next(
            (link.get("href") for link in order.get("links", []) if link.get("rel") in ("approve", "payer-action")),
            None,
        )
        return ProviderIntent(
            external_id=order.get("id"),
            status="pending",
            approval_url=approval_url,
            payload={"order_id": order.get("id"), "paypal_status": order.get("status")},
        )

    def fetch_status(self, external_payment_id):
        order = self._request("GET", f"/v2/checkout/orders/{external_payment_id}")
        status = order.get("status") or "unknown"
        capture_status = None
        for unit in order.get("purchase_units") or []:
            for capture in (unit.get("payments") or {}).get("captures") or []:
                capture_status = capture.get("status")
        # A completed order whose capture was declined is a failure, not a success
        if capture_status in ("DECLINED", "FAILED"):
            return ProviderStatus(status="failed", failure_reason=capture_status.lower(), payload={"order_id": order.get("id")})
        if capture_status == "PENDING":
            status = "pending"
        return ProviderStatus(
            status=status,
            payload={"order_id": order.get("id"), "capture_id": capture_id_from_order(order)},
        )

    def refund(self, *, external_payment_id, amount_cents, currency, idempotency_key, metadata):
        capture_id = metadata.get("capture_id")
        if not capture_id:
            if not external_payment_id:
                raise ProviderError(self.name, "payment has no PayPal order to refund")
            order = self._request("GET", f"/v2/checkout/orders/{external_payment_id}")
            capture_id = capture_id_from_order(order)
        if not capture_id:
            raise ProviderError(self.name, f"order {external_payment_id} has no capture to refund")

        refund = self._request(
            "POST",
            f"/v2/payments/captures/{capture_id}/refund",
            json_body={"amount": {"currency_code": currency.upper(), "value": str(from_cents(amount_cents))}},
            headers={"PayPal-Request-Id": idempotency_key},
        )
        return ProviderRefund(
            external_id=refund.get("id"),
            status=(refund.get("status") or "").lower(),
            payload={"refund_id": refund.get("id"), "capture_id": capture_id, "paypal_status": refund.get("status")},
        )

    def verify_webhook(self, raw_body: bytes, headers) -> dict:
        """
        Ask PayPal to verify the transmission signature, then return the
        parsed event.
        """
        if not self.webhook_id:
            raise ProviderError(self.name, "PAYPAL_WEBHOOK_ID is not configured")
        try:
            event = json.loads(raw_body)
        except ValueError:
            raise InvalidArgumentError("Invalid webhook payload")

        fields = {}
        for key, header in WEBHOOK_HEADERS.items():
            value = headers.get(header)
            if not value:
                raise InvalidArgumentError(f"Missing {header} header")
            fields[key] = value

        result = self._request("POST", "/v1/notifications/verify-webhook-signature", json_body={
            **fields,
            "webhook_id": self.webhook_id,
            "webhook_event": event,
        })
        if result.get("verification_status") != "SUCCESS":
            raise InvalidArgumentError("Invalid webhook signature")
        return event
