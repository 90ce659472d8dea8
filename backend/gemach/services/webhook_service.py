# Overview: Verifies and dispatches Stripe and PayPal webhooks into the sync and pay-later services.

"""
Webhook intake

Verification always runs on the raw request bytes, before any JSON
parsing. Every verified event is stored once in webhook_events keyed by
(provider, event id); a redelivered event is acknowledged and ignored.
A handler failure removes the stored id so the redelivery is applied.
"""

from __future__ import annotations

from flask import current_app
from sqlalchemy.exc import IntegrityError

from ..errors import InvalidArgumentError
from ..extensions import db
from ..models import Payment, WebhookEvent
from gemach.time_utils import utcnow
from . import audit_service, pay_later_service, payment_sync_service
from .audit_service import ACTOR_WEBHOOK
from .concurrency import lock_for_update, run_with_retry
from .fees import PAYPAL, STRIPE, to_cents
from .payment_states import KIND_CHARGE, KIND_REFUND, STATUS_COMPLETED
from .providers import get_provider


def _ack(event_id, event_type, *, handled=False, duplicate=False, outcome=None) -> dict:
    return {
        "received": True,
        "event_id": event_id,
        "event_type": event_type,
        "handled": handled,
        "duplicate": duplicate,
        "outcome": outcome,
    }


def _claim(provider: str, event_id: str, event_type: str, external_payment_id: str | None, payload: dict) -> bool:
    """Store the event id. False when it was already processed."""
    db.session.add(WebhookEvent(
        provider=provider,
        event_id=event_id,
        event_type=event_type,
        external_payment_id=external_payment_id,
        source="webhook",
        payload=payload,
    ))
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        return False
    return True


def _release(provider: str, event_id: str) -> None:
    db.session.rollback()
    db.session.query(WebhookEvent).filter_by(provider=provider, event_id=event_id).delete()
    db.session.commit()


def _dispatch_claimed(provider: str, event_id: str, event_type: str, external_payment_id: str | None, payload: dict, handler) -> dict:
    """
    Claim the event, then run handler(). A handler that raises gives the
    claim back so the provider's redelivery is processed instead of being
    acknowledged as a duplicate.
    """
    if not _claim(provider, event_id, event_type, external_payment_id, payload):
        return _ack(event_id, event_type, duplicate=True)
    try:
        handled = handler()
    except Exception:
        current_app.logger.warning("%s webhook %s failed; releasing its claim", provider, event_id)
        _release(provider, event_id)
        raise
    return _ack(event_id, event_type, handled=handled)


def _record_external_refund(provider: str, charge_lookup, external_refund_id: str | None, amount_cents: int, event_id: str) -> Payment | None:
    """
    Counter-entry for a refund issued outside this system (provider
    dashboard). No-op when the charge already has its refund entry.
    """
    def _op():
        charge = charge_lookup()
        if charge is None:
            return None
        charge = lock_for_update(db.session.query(Payment).filter_by(id=charge.id)).first()
        if db.session.query(Payment).filter_by(refund_of_payment_id=charge.id).first() is not None:
            return None
        refund = Payment(
            transaction_id=charge.transaction_id,
            kind=KIND_REFUND,
            payment_method=charge.payment_method,
            payment_provider=provider,
            external_payment_id=external_refund_id,
            deposit_amount_cents=-min(amount_cents, charge.deposit_amount_cents),
            processing_fee_cents=0,
            total_amount_cents=-amount_cents,
            status=STATUS_COMPLETED,
            completed_at=utcnow(),
            payment_data={"source": "webhook", "event_id": event_id},
            refund_of_payment_id=charge.id,
        )
        db.session.add(refund)
        db.session.flush()
        audit_service.record(
            action="external_refund_recorded",
            entity_type="transaction",
            entity_id=charge.transaction_id,
            actor_type=ACTOR_WEBHOOK,
            after=refund.to_dict(),
            metadata={"payment_id": charge.id, "event_id": event_id},
        )
        db.session.commit()
        return refund

    return run_with_retry(_op)


# =============================================================================
# STRIPE
# =============================================================================

def handle_stripe_webhook(raw_body: bytes, signature: str | None) -> dict:
    """
    Verify and apply a Stripe event.

    Raises:
        InvalidArgumentError: bad or missing signature / payload
        ProviderError: webhook secret not configured
    """
    provider = get_provider(STRIPE)
    event = provider.construct_event(raw_body, signature)
    event_id = event.get("id")
    event_type = event.get("type")
    if not event_id:
        raise InvalidArgumentError("Webhook event has no id")
    obj = (event.get("data") or {}).get("object") or {}
    current_app.logger.info("stripe webhook %s (%s)", event_type, event_id)

    if event_type in ("payment_intent.succeeded", "payment_intent.payment_failed", "payment_intent.processing", "payment_intent.requires_action"):
        return _stripe_payment_intent(event_id, event_type, obj)

    if event_type == "setup_intent.succeeded":
        def _setup_succeeded():
            tx = pay_later_service.handle_setup_intent_succeeded(obj.get("id"), obj.get("payment_method"))
            return tx is not None

        return _dispatch_claimed(STRIPE, event_id, event_type, obj.get("id"), obj, _setup_succeeded)

    if event_type == "charge.refunded":
        payment_intent_id = obj.get("payment_intent")

        def _lookup():
            return (
                db.session.query(Payment)
                .filter_by(payment_provider=STRIPE, external_payment_id=payment_intent_id, kind=KIND_CHARGE, status=STATUS_COMPLETED)
                .first()
            )

        refunds = ((obj.get("refunds") or {}).get("data")) or []

        def _refunded():
            refund = _record_external_refund(
                STRIPE,
                _lookup,
                refunds[0].get("id") if refunds else None,
                int(obj.get("amount_refunded") or 0),
                event_id,
            )
            return refund is not None

        return _dispatch_claimed(STRIPE, event_id, event_type, payment_intent_id, obj, _refunded)

    _claim(STRIPE, event_id, event_type, obj.get("id"), obj)
    current_app.logger.info("unhandled stripe event type %s", event_type)
    return _ack(event_id, event_type)


def _stripe_payment_intent(event_id: str, event_type: str, intent: dict) -> dict:
    payment_intent_id = intent.get("id")
    error = intent.get("last_payment_error") or {}

    # Saved-card charges are tracked on the transaction, not a pending Payment
    if pay_later_service.find_by_payment_intent(payment_intent_id) is not None:
        def _saved_card_charge():
            if event_type == "payment_intent.succeeded":
                pay_later_service.handle_payment_intent_succeeded(payment_intent_id)
            elif event_type == "payment_intent.payment_failed":
                pay_later_service.handle_payment_intent_failed(
                    payment_intent_id, error.get("code"), error.get("message")
                )
            elif event_type == "payment_intent.requires_action":
                pay_later_service.handle_payment_intent_requires_action(payment_intent_id)
            return True

        return _dispatch_claimed(STRIPE, event_id, event_type, payment_intent_id, intent, _saved_card_charge)

    status = {
        "payment_intent.succeeded": "succeeded",
        "payment_intent.payment_failed": "failed",
        "payment_intent.processing": "processing",
        "payment_intent.requires_action": "requires_action",
    }[event_type]
    provider_data = {
        "stripe_payment_intent_id": payment_intent_id,
        "amount_received": intent.get("amount_received"),
        "currency": intent.get("currency"),
    }
    if error:
        provider_data["reason"] = error.get("decline_code") or error.get("code")
        provider_data["failure_message"] = error.get("message")

    outcome = payment_sync_service.process_status_update(
        STRIPE,
        payment_intent_id,
        status,
        provider_data,
        event_id=event_id,
        event_type=event_type,
        source="webhook",
    )
    return _ack(event_id, event_type, handled=outcome.applied, duplicate=outcome.duplicate, outcome=outcome.to_dict())


# =============================================================================
# PAYPAL
# =============================================================================

def _paypal_order_id(resource: dict) -> str | None:
    related = ((resource.get("supplementary_data") or {}).get("related_ids")) or {}
    return related.get("order_id")


def _paypal_refunded_capture_id(resource: dict) -> str | None:
    for link in resource.get("links") or []:
        if link.get("rel") == "up" and "/captures/" in (link.get("href") or ""):
            return link["href"].rstrip("/").rsplit("/", 1)[-1]
    return None


def handle_paypal_webhook(raw_body: bytes, headers) -> dict:
    """
    Verify and apply a PayPal event. Deposits are tracked by order id; the
    capture id is kept in payment_data for refunds.
    """
    provider = get_provider(PAYPAL)
    event = provider.verify_webhook(raw_body, headers)
    event_id = event.get("id")
    event_type = event.get("event_type")
    if not event_id:
        raise InvalidArgumentError("Webhook event has no id")
    resource = event.get("resource") or {}
    current_app.logger.info("paypal webhook %s (%s)", event_type, event_id)

    capture_statuses = {
        "PAYMENT.CAPTURE.COMPLETED": "completed",
        "PAYMENT.CAPTURE.DENIED": "denied",
        "PAYMENT.CAPTURE.DECLINED": "declined",
        "PAYMENT.CAPTURE.PENDING": "pending",
    }
    if event_type in capture_statuses:
        order_id = _paypal_order_id(resource) or resource.get("id")
        provider_data = {
            "capture_id": resource.get("id"),
            "amount": resource.get("amount"),
            "paypal_status": resource.get("status"),
        }
        reason = (resource.get("status_details") or {}).get("reason")
        if reason:
            provider_data["reason"] = reason.lower()
        outcome = payment_sync_service.process_status_update(
            PAYPAL,
            order_id,
            capture_statuses[event_type],
            provider_data,
            event_id=event_id,
            event_type=event_type,
            source="webhook",
        )
        return _ack(event_id, event_type, handled=outcome.applied, duplicate=outcome.duplicate, outcome=outcome.to_dict())

    if event_type == "PAYMENT.CAPTURE.REFUNDED":
        capture_id = _paypal_refunded_capture_id(resource)

        def _lookup():
            charges = (
                db.session.query(Payment)
                .filter_by(payment_provider=PAYPAL, kind=KIND_CHARGE, status=STATUS_COMPLETED)
                .all()
            )
            return next((p for p in charges if (p.payment_data or {}).get("capture_id") == capture_id), None)

        value = ((resource.get("amount") or {}).get("value")) or "0"

        def _refunded():
            refund = _record_external_refund(PAYPAL, _lookup, resource.get("id"), to_cents(value), event_id)
            return refund is not None

        return _dispatch_claimed(PAYPAL, event_id, event_type, capture_id, resource, _refunded)

    _claim(PAYPAL, event_id, event_type, resource.get("id"), resource)
    current_app.logger.info("unhandled paypal event type %s", event_type)
    return _ack(event_id, event_type)
