# Overview: Lookup table from payment method name to provider adapter.

from __future__ import annotations

from flask import current_app

from ...errors import UnsupportedMethodError
from .base import (
    CardCharge,
    CardSetup,
    PaymentProvider,
    ProviderIntent,
    ProviderRefund,
    ProviderStatus,
)
from .cash import CashProvider
from .paypal_provider import PayPalProvider
from .stripe_provider import StripeProvider


# method name -> factory(config) -> PaymentProvider
PROVIDER_FACTORIES = {
    "cash": CashProvider,
    "stripe": StripeProvider,
    "paypal": PayPalProvider,
}


def get_provider(method: str) -> PaymentProvider:
    factory = PROVIDER_FACTORIES.get(method)
    if factory is None:
        raise UnsupportedMethodError(f"Unsupported payment method: {method}")
    return factory(current_app.config)


__all__ = [
    "PROVIDER_FACTORIES",
    "get_provider",
    "PaymentProvider",
    "ProviderIntent",
    "ProviderRefund",
    "ProviderStatus",
    "CardSetup",
    "CardCharge",
    "CashProvider",
    "StripeProvider",
    "PayPalProvider",
]
