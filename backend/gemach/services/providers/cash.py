# Overview: Cash deposits; no external processor, confirmed by an operator.

from __future__ import annotations

from .base import PaymentProvider, ProviderIntent, ProviderRefund


class CashProvider(PaymentProvider):
    name = "cash"
    is_external = False

    def __init__(self, config=None):
        self.config = config or {}

    def create_payment(self, *, amount_cents, currency, metadata):
        # Waits in "confirming" until an operator confirms the cash was received
        return ProviderIntent(
            external_id=None,
            status="confirming",
            payload={"requires_confirmation": True},
        )

    def refund(self, *, external_payment_id, amount_cents, currency, idempotency_key, metadata):
        # Cash is handed back at the counter; only the books move
        return ProviderRefund(
            external_id=None,
            status="completed",
            payload={"bookkeeping_only": True, "amount_cents": amount_cents},
        )
