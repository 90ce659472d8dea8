# Overview: Provider interface and result records shared by the cash, Stripe and PayPal adapters.

"""
Payment provider contract

WHY: The deposit service never branches on the method name for money
movement; it asks the registry for a provider and calls this interface.
Adapters translate SDK/HTTP failures into ProviderError so nothing
provider-specific escapes them.

Pay-later operations (saved card) are optional: providers that cannot do
them inherit the UnsupportedMethodError defaults.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from ...errors import UnsupportedMethodError


@dataclass
class ProviderIntent:
    """A payment opened at the provider (or a cash placeholder)."""
    external_id: str | None
    status: str
    client_secret: str | None = None
    publishable_key: str | None = None
    approval_url: str | None = None
    payload: dict = field(default_factory=dict)


@dataclass
class ProviderRefund:
    external_id: str | None
    status: str
    payload: dict = field(default_factory=dict)


@dataclass
class ProviderStatus:
    """Raw provider status; mapping to our vocabulary is the sync service's job."""
    status: str
    failure_reason: str | None = None
    payload: dict = field(default_factory=dict)


@dataclass
class CardSetup:
    customer_id: str
    setup_intent_id: str
    client_secret: str | None = None
    publishable_key: str | None = None
    payload: dict = field(default_factory=dict)


@dataclass
class CardCharge:
    external_id: str
    status: str
    client_secret: str | None = None
    payload: dict = field(default_factory=dict)


class PaymentProvider:
    name = "base"
    # False for providers whose payments are confirmed by a human (cash)
    is_external = True

    def create_payment(self, *, amount_cents: int, currency: str, metadata: dict) -> ProviderIntent:
        raise NotImplementedError

    def refund(
        self,
        *,
        external_payment_id: str | None,
        amount_cents: int,
        currency: str,
        idempotency_key: str,
        metadata: dict,
    ) -> ProviderRefund:
        raise NotImplementedError

    def fetch_status(self, external_payment_id: str) -> ProviderStatus:
        raise UnsupportedMethodError(f"{self.name} payments cannot be polled")

    def setup_card(self, *, name: str, email: str | None, phone: str | None, metadata: dict) -> CardSetup:
        raise UnsupportedMethodError(f"{self.name} does not support pay-later cards")

    def charge_saved_card(
        self,
        *,
        customer_id: str,
        payment_method_id: str,
        amount_cents: int,
        currency: str,
        idempotency_key: str,
        metadata: dict,
    ) -> CardCharge:
        raise UnsupportedMethodError(f"{self.name} does not support pay-later cards")

    def set_default_payment_method(self, customer_id: str, payment_method_id: str) -> None:
        return None

    def release_hold(self, setup_intent_id: str) -> None:
        raise UnsupportedMethodError(f"{self.name} does not support pay-later cards")
