# Overview: Card deposits and pay-later saved cards through the Stripe API.

from __future__ import annotations

import json

import stripe

from ...errors import InvalidArgumentError, ProviderError
from .base import CardCharge, CardSetup, PaymentProvider, ProviderIntent, ProviderRefund, ProviderStatus


def _payment_error(intent) -> tuple[str | None, str | None]:
    error = getattr(intent, "last_payment_error", None)
    if not error:
        return None, None
    return getattr(error, "code", None), getattr(error, "message", None)


class StripeProvider(PaymentProvider):
    """
    Thin adapter over the stripe SDK.

    Every call passes api_key explicitly so the adapter never depends on
    module-level SDK state. stripe.StripeError (and subclasses) become
    ProviderError carrying the Stripe error code.
    """
    name = "stripe"

    def __init__(self, config):
        self.secret_key = config.get("STRIPE_SECRET_KEY")
        self.publishable_key = config.get("STRIPE_PUBLISHABLE_KEY")
        self.webhook_secret = config.get("STRIPE_WEBHOOK_SECRET")

    def _key(self) -> str:
        if not self.secret_key:
            raise ProviderError(self.name, "STRIPE_SECRET_KEY is not configured")
        return self.secret_key

    def _wrap(self, exc: stripe.StripeError) -> ProviderError:
        return ProviderError(
            self.name,
            getattr(exc, "user_message", None) or str(exc),
            provider_code=getattr(exc, "code", None),
            payload={"http_status": getattr(exc, "http_status", None), "request_id": getattr(exc, "request_id", None)},
        )

    def create_payment(self, *, amount_cents, currency, metadata):
        try:
            intent = stripe.PaymentIntent.create(
                api_key=self._key(),
                amount=amount_cents,
                currency=currency,
                metadata={k: str(v) for k, v in metadata.items()},
                automatic_payment_methods={"enabled": True},
            )
        except stripe.StripeError as exc:
            raise self._wrap(exc)
        return ProviderIntent(
            external_id=intent.id,
            status="pending",
            client_secret=intent.client_secret,
            publishable_key=self.publishable_key,
            payload={"payment_intent_id": intent.id, "stripe_status": intent.status},
        )

    def refund(self, *, external_payment_id, amount_cents, currency, idempotency_key, metadata):
        if not external_payment_id:
            raise ProviderError(self.name, "payment has no Stripe payment intent to refund")
        try:
            refund = stripe.Refund.create(
                api_key=self._key(),
                payment_intent=external_payment_id,
                amount=amount_cents,
                metadata={k: str(v) for k, v in metadata.items()},
                idempotency_key=idempotency_key,
            )
        except stripe.StripeError as exc:
            raise self._wrap(exc)
        return ProviderRefund(
            external_id=refund.id,
            status=refund.status,
            payload={"refund_id": refund.id, "stripe_status": refund.status},
        )

    def fetch_status(self, external_payment_id):
        try:
            intent = stripe.PaymentIntent.retrieve(external_payment_id, api_key=self._key())
        except stripe.StripeError as exc:
            raise self._wrap(exc)

        code, message = _payment_error(intent)
        status = intent.status
        if status == "canceled":
            status, code = "failed", code or "canceled"
        elif status == "requires_payment_method" and code:
            # Stripe parks a declined intent here rather than in a failed state
            status = "failed"
        return ProviderStatus(
            status=status,
            failure_reason=code,
            payload={"payment_intent_id": intent.id, "stripe_status": intent.status, "error_message": message},
        )

    def setup_card(self, *, name, email, phone, metadata):
        api_key = self._key()
        str_metadata = {k: str(v) for k, v in metadata.items()}
        try:
            customer = stripe.Customer.create(
                api_key=api_key,
                name=name,
                email=email or None,
                phone=phone or None,
                metadata=str_metadata,
            )
            setup_intent = stripe.SetupIntent.create(
                api_key=api_key,
                customer=customer.id,
                usage="off_session",
                payment_method_types=["card"],
                metadata=str_metadata,
            )
        except stripe.StripeError as exc:
            raise self._wrap(exc)
        return CardSetup(
            customer_id=customer.id,
            setup_intent_id=setup_intent.id,
            client_secret=setup_intent.client_secret,
            publishable_key=self.publishable_key,
            payload={"customer_id": customer.id, "setup_intent_id": setup_intent.id},
        )

    def set_default_payment_method(self, customer_id: str, payment_method_id: str) -> None:
        try:
            stripe.Customer.modify(
                customer_id,
                api_key=self._key(),
                invoice_settings={"default_payment_method": payment_method_id},
            )
        except stripe.StripeError as exc:
            raise self._wrap(exc)

    def charge_saved_card(self, *, customer_id, payment_method_id, amount_cents, currency, idempotency_key, metadata):
        try:
            intent = stripe.PaymentIntent.create(
                api_key=self._key(),
                amount=amount_cents,
                currency=currency,
                customer=customer_id,
                payment_method=payment_method_id,
                off_session=True,
                confirm=True,
                metadata={k: str(v) for k, v in metadata.items()},
                idempotency_key=idempotency_key,
            )
        except stripe.StripeError as exc:
            raise self._wrap(exc)
        return CardCharge(
            external_id=intent.id,
            status=intent.status,
            client_secret=intent.client_secret,
            payload={"payment_intent_id": intent.id, "stripe_status": intent.status},
        )

    def release_hold(self, setup_intent_id):
        try:
            stripe.SetupIntent.cancel(setup_intent_id, api_key=self._key())
        except stripe.StripeError as exc:
            raise self._wrap(exc)

    def construct_event(self, raw_body: bytes, signature: str | None) -> dict:
        """
        Verify a webhook against the raw request bytes and return the event
        as a plain dict. Verification must see the body before any JSON
        parsing or re-serialization.
        """
        if not self.webhook_secret:
            raise ProviderError(self.name, "STRIPE_WEBHOOK_SECRET is not configured")
        if not signature:
            raise InvalidArgumentError("Missing Stripe-Signature header")
        try:
            stripe.Webhook.construct_event(raw_body, signature, self.webhook_secret)
        except stripe.SignatureVerificationError:
            raise InvalidArgumentError("Invalid webhook signature")
        except ValueError:
            raise InvalidArgumentError("Invalid webhook payload")
        return json.loads(raw_body)
