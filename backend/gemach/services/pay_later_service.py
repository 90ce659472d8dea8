# Overview: Pay-later deposits: save a card now, charge it or release it when the item comes back.

"""
Pay-later card resolution

WHY: Some borrowers leave a saved card instead of paying the deposit up
front. The card must be resolved exactly once: charged (borrower kept or
damaged the item) or released (item returned).

STATE MACHINE (Transaction.pay_later_status):
    REQUEST_CREATED -> CARD_SETUP_PENDING -> CARD_SETUP_COMPLETE -> APPROVED
    CARD_SETUP_COMPLETE | APPROVED | CHARGE_REQUIRES_ACTION
        -> CHARGE_ATTEMPTED -> CHARGED | CHARGE_REQUIRES_ACTION | CHARGE_FAILED
    any unresolved state (not CHARGE_ATTEMPTED) -> DECLINED
    REQUEST_CREATED | CARD_SETUP_PENDING past token expiry -> EXPIRED

CHARGED, DECLINED and EXPIRED are terminal. The provider call in
charge_card happens between two committed steps so a crash mid-call leaves
CHARGE_ATTEMPTED (visible, re-drivable by webhook) rather than nothing.

Webhook handlers are state-idempotent: replaying an event that already
applied is a no-op.
"""

from __future__ import annotations

import hashlib
import hmac
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta

from flask import current_app

from ..errors import InvalidStateError, ProviderError, UnsupportedMethodError
from ..extensions import db
from ..models import Location, Payment, Transaction
from gemach.time_utils import is_past, utcnow
from . import audit_service, inventory_service, notification_service
from .audit_service import ACTOR_WEBHOOK
from .authorization import Actor, require_location_access, require_staff
from .concurrency import lock_for_update, run_with_retry
from .fees import STRIPE, enabled_methods, from_cents, to_cents
from .payment_states import (
    CHARGEABLE_STATUSES,
    DECLINABLE_STATUSES,
    KIND_CHARGE,
    KIND_HOLD,
    PL_APPROVED,
    PL_CARD_SETUP_COMPLETE,
    PL_CARD_SETUP_PENDING,
    PL_CHARGE_ATTEMPTED,
    PL_CHARGE_FAILED,
    PL_CHARGE_REQUIRES_ACTION,
    PL_CHARGED,
    PL_DECLINED,
    PL_EXPIRED,
    PL_REQUEST_CREATED,
    STATUS_COMPLETED,
    STATUS_FAILED,
    STATUS_PENDING,
    require_payment_transition,
)
from .providers import get_provider
from .transaction_service import (
    append_note,
    authorize_transaction_access,
    build_transaction,
    load_active_location,
    lock_transaction,
)


@dataclass
class CardSetupResult:
    transaction_id: int
    payment_id: int
    client_secret: str | None
    publishable_key: str | None
    status_token: str
    status_url: str

    def to_dict(self) -> dict:
        return {
            "transactionId": self.transaction_id,
            "paymentId": self.payment_id,
            "clientSecret": self.client_secret,
            "publishableKey": self.publishable_key,
            "statusToken": self.status_token,
            "statusUrl": self.status_url,
        }


@dataclass
class ChargeResult:
    success: bool
    status: str
    requires_action: bool = False
    payment_id: int | None = None
    payment_intent_id: str | None = None
    client_secret: str | None = None
    error_code: str | None = None
    error_message: str | None = None

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "status": self.status,
            "requiresAction": self.requires_action,
            "paymentId": self.payment_id,
            "paymentIntentId": self.payment_intent_id,
            "clientSecret": self.client_secret,
            "errorCode": self.error_code,
            "errorMessage": self.error_message,
        }


def hash_token(raw_token: str) -> str:
    return hashlib.sha256(raw_token.encode("utf-8")).hexdigest()


def _hold_payment(tx: Transaction) -> Payment | None:
    return (
        db.session.query(Payment)
        .filter_by(transaction_id=tx.id, kind=KIND_HOLD)
        .order_by(Payment.id.desc())
        .first()
    )


def _snapshot(tx: Transaction) -> dict:
    return {
        "pay_later_status": tx.pay_later_status,
        "stripe_setup_intent_id": tx.stripe_setup_intent_id,
        "stripe_payment_intent_id": tx.stripe_payment_intent_id,
        "charge_attempts": tx.charge_attempts,
    }


def _authorize(actor: Actor | None, tx: Transaction, operation: str) -> None:
    # actor=None is a system caller (webhook, CLI sweep)
    if actor is not None:
        require_staff(actor, operation)
        authorize_transaction_access(actor, tx, operation)


def start_card_setup(tx: Transaction, location: Location, *, actor: Actor | None = None) -> CardSetupResult:
    """
    Save-card setup inside the caller's unit of work (no commit).

    Creates the provider customer + setup intent, a hold Payment and the
    hashed status token. The raw token is only ever returned, never stored.
    """
    if STRIPE not in enabled_methods(location):
        raise UnsupportedMethodError(f"Pay-later cards are not enabled at location {location.id}")

    ttl_days = current_app.config.get("PAY_LATER_TOKEN_TTL_DAYS", 30)
    raw_token = secrets.token_hex(32)
    planned = to_cents(tx.deposit_amount)

    tx.pay_later_status = PL_REQUEST_CREATED
    tx.amount_planned_cents = planned
    tx.currency = current_app.config.get("DEPOSIT_CURRENCY", "usd")
    tx.deposit_payment_method = STRIPE
    tx.status_token_hash = hash_token(raw_token)
    tx.status_token_expires_at = utcnow() + timedelta(days=ttl_days)
    db.session.flush()

    provider = get_provider(STRIPE)
    setup = provider.setup_card(
        name=tx.borrower_name,
        email=tx.borrower_email,
        phone=tx.borrower_phone,
        metadata={"transaction_id": tx.id, "location_id": tx.location_id},
    )

    tx.stripe_customer_id = setup.customer_id
    tx.stripe_setup_intent_id = setup.setup_intent_id
    tx.pay_later_status = PL_CARD_SETUP_PENDING

    hold = Payment(
        transaction_id=tx.id,
        kind=KIND_HOLD,
        payment_method=STRIPE,
        payment_provider=provider.name,
        external_payment_id=setup.setup_intent_id,
        deposit_amount_cents=planned,
        processing_fee_cents=0,
        total_amount_cents=planned,
        status=STATUS_PENDING,
        payment_data={**setup.payload, "created_at": utcnow().isoformat()},
        created_by_user_id=actor.user_id if actor else None,
    )
    db.session.add(hold)
    db.session.flush()

    audit_service.record(
        action="setup_intent_created",
        entity_type="transaction",
        entity_id=tx.id,
        actor=actor,
        after={
            "stripe_customer_id": setup.customer_id,
            "stripe_setup_intent_id": setup.setup_intent_id,
            "status": PL_CARD_SETUP_PENDING,
        },
    )

    return CardSetupResult(
        transaction_id=tx.id,
        payment_id=hold.id,
        client_secret=setup.client_secret,
        publishable_key=setup.publishable_key,
        status_token=raw_token,
        status_url=f"/status/{tx.id}?token={raw_token}",
    )


def create_setup_request(
    location_id: int,
    borrower_name: str,
    *,
    email: str | None = None,
    phone: str | None = None,
    color: str | None = None,
    amount_cents: int | None = None,
    actor: Actor | None = None,
) -> CardSetupResult:
    """New pay-later transaction in CARD_SETUP_PENDING."""
    if actor is not None:
        require_location_access(actor, location_id, "create pay-later requests")
    try:
        location = load_active_location(location_id)
        tx = build_transaction(
            location_id,
            borrower_name,
            email=email,
            phone=phone,
            color=color,
            deposit_amount=from_cents(amount_cents) if amount_cents is not None else None,
            payment_method=STRIPE,
        )
        if tx.headband_color:
            inventory_service.adjust_locked(location.id, tx.headband_color, -1)
        result = start_card_setup(tx, location, actor=actor)
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise
    current_app.logger.info("pay-later setup created for transaction %s", result.transaction_id)
    return result


def get_transaction_by_token(transaction_id: int, raw_token: str, now: datetime | None = None) -> Transaction | None:
    """Borrower status lookup. Wrong or expired tokens look the same as a missing transaction."""
    tx = db.session.get(Transaction, transaction_id)
    if tx is None or not tx.status_token_hash or not raw_token:
        return None
    if not hmac.compare_digest(tx.status_token_hash, hash_token(raw_token)):
        return None
    if is_past(tx.status_token_expires_at, now):
        return None
    return tx


def _lock_by(column, value) -> Transaction | None:
    return lock_for_update(db.session.query(Transaction).filter(column == value)).first()


def handle_setup_intent_succeeded(setup_intent_id: str, payment_method_id: str) -> Transaction | None:
    def _op():
        tx = _lock_by(Transaction.stripe_setup_intent_id, setup_intent_id)
        if tx is None:
            current_app.logger.info("no transaction for setup intent %s", setup_intent_id)
            return None, False
        if tx.pay_later_status not in (PL_REQUEST_CREATED, PL_CARD_SETUP_PENDING):
            return tx, False

        before = _snapshot(tx)
        tx.pay_later_status = PL_CARD_SETUP_COMPLETE
        tx.stripe_payment_method_id = payment_method_id

        hold = _hold_payment(tx)
        if hold is not None and hold.status == STATUS_PENDING:
            hold.status = STATUS_COMPLETED
            hold.completed_at = utcnow()

        audit_service.record(
            action="card_setup_complete",
            entity_type="transaction",
            entity_id=tx.id,
            actor_type=ACTOR_WEBHOOK,
            before=before,
            after=_snapshot(tx),
            metadata={"setup_intent_id": setup_intent_id},
        )
        db.session.commit()
        return tx, True

    tx, changed = run_with_retry(_op)
    if changed and tx.stripe_customer_id:
        try:
            get_provider(STRIPE).set_default_payment_method(tx.stripe_customer_id, payment_method_id)
        except ProviderError as exc:
            current_app.logger.warning("could not set default card for transaction %s: %s", tx.id, exc)
    return tx


def approve(transaction_id: int, actor: Actor) -> Transaction:
    """Operator sign-off that the saved card may be charged."""
    def _op():
        tx = lock_transaction(transaction_id)
        _authorize(actor, tx, "approve pay-later charges")
        if tx.pay_later_status != PL_CARD_SETUP_COMPLETE:
            raise InvalidStateError(f"Cannot approve transaction in status: {tx.pay_later_status}")
        before = _snapshot(tx)
        tx.pay_later_status = PL_APPROVED
        audit_service.record(
            action="pay_later_approved",
            entity_type="transaction",
            entity_id=tx.id,
            actor=actor,
            before=before,
            after=_snapshot(tx),
        )
        db.session.commit()
        return tx

    return run_with_retry(_op)


def _record_charge(tx: Transaction, payment_intent_id: str, payload: dict, actor: Actor | None = None) -> Payment:
    existing = (
        db.session.query(Payment)
        .filter_by(transaction_id=tx.id, kind=KIND_CHARGE, external_payment_id=payment_intent_id)
        .first()
    )
    if existing is not None:
        return existing
    amount = tx.amount_planned_cents if tx.amount_planned_cents is not None else to_cents(tx.deposit_amount)
    payment = Payment(
        transaction_id=tx.id,
        kind=KIND_CHARGE,
        payment_method=STRIPE,
        payment_provider=STRIPE,
        external_payment_id=payment_intent_id,
        deposit_amount_cents=amount,
        processing_fee_cents=0,
        total_amount_cents=amount,
        status=STATUS_COMPLETED,
        completed_at=utcnow(),
        payment_data=payload,
        created_by_user_id=actor.user_id if actor else None,
    )
    db.session.add(payment)
    db.session.flush()
    return payment


def _finish_charge_failed(transaction_id: int, code: str | None, message: str, actor: Actor | None, payment_intent_id: str | None = None) -> None:
    def _op():
        tx = lock_transaction(transaction_id)
        before = _snapshot(tx)
        tx.pay_later_status = PL_CHARGE_FAILED
        tx.charge_error_code = (code or "unknown_error")[:64]
        tx.charge_error_message = (message or "Payment failed")[:255]
        if payment_intent_id:
            tx.stripe_payment_intent_id = payment_intent_id
        audit_service.record(
            action="charge_failed",
            entity_type="transaction",
            entity_id=tx.id,
            actor=actor,
            before=before,
            after=_snapshot(tx),
            metadata={"error_code": tx.charge_error_code, "error_message": tx.charge_error_message},
        )
        db.session.commit()

    run_with_retry(_op)


def charge_card(transaction_id: int, actor: Actor | None = None) -> ChargeResult:
    """
    Charge the saved card off-session.

    A provider "requires authentication" answer is not a failure: the
    transaction parks in CHARGE_REQUIRES_ACTION and requires_action=True
    tells the caller to bring the borrower back to re-drive it.

    Raises:
        InvalidStateError: not in a chargeable state (including CHARGED/DECLINED)
        ForbiddenError: actor may not act on this location
    """
    def _begin():
        tx = lock_transaction(transaction_id)
        _authorize(actor, tx, "charge cards")
        if tx.pay_later_status not in CHARGEABLE_STATUSES:
            raise InvalidStateError(f"Cannot charge transaction in status: {tx.pay_later_status}")
        if not tx.stripe_customer_id or not tx.stripe_payment_method_id:
            raise InvalidStateError("Transaction has no saved card to charge")
        tx.pay_later_status = PL_CHARGE_ATTEMPTED
        tx.charge_attempts = (tx.charge_attempts or 0) + 1
        db.session.commit()
        return tx

    tx = run_with_retry(_begin)
    attempt = tx.charge_attempts
    amount = tx.amount_planned_cents if tx.amount_planned_cents is not None else to_cents(tx.deposit_amount)

    try:
        charge = get_provider(STRIPE).charge_saved_card(
            customer_id=tx.stripe_customer_id,
            payment_method_id=tx.stripe_payment_method_id,
            amount_cents=amount,
            currency=tx.currency or "usd",
            idempotency_key=f"{tx.id}_charge_{attempt}",
            metadata={"transaction_id": tx.id, "location_id": tx.location_id},
        )
    except ProviderError as exc:
        current_app.logger.warning("charge for transaction %s failed: %s", transaction_id, exc)
        _finish_charge_failed(transaction_id, exc.provider_code, str(exc), actor)
        return ChargeResult(
            success=False,
            status=PL_CHARGE_FAILED,
            error_code=exc.provider_code or "unknown_error",
            error_message=exc.public_message(),
        )

    if charge.status in ("requires_action", "requires_confirmation"):
        def _requires_action():
            tx = lock_transaction(transaction_id)
            before = _snapshot(tx)
            tx.pay_later_status = PL_CHARGE_REQUIRES_ACTION
            tx.stripe_payment_intent_id = charge.external_id
            audit_service.record(
                action="charge_requires_action",
                entity_type="transaction",
                entity_id=tx.id,
                actor=actor,
                before=before,
                after=_snapshot(tx),
            )
            db.session.commit()
            return tx

        tx = run_with_retry(_requires_action)
        notification_service.deliver(notification_service.CARD_ACTION_REQUIRED, tx, actor=actor)
        return ChargeResult(
            success=False,
            status=PL_CHARGE_REQUIRES_ACTION,
            requires_action=True,
            payment_intent_id=charge.external_id,
            client_secret=charge.client_secret,
        )

    if charge.status == "processing":
        def _processing():
            tx = lock_transaction(transaction_id)
            tx.stripe_payment_intent_id = charge.external_id
            db.session.commit()

        run_with_retry(_processing)
        return ChargeResult(success=False, status=PL_CHARGE_ATTEMPTED, payment_intent_id=charge.external_id)

    if charge.status != "succeeded":
        message = f"Unexpected payment status: {charge.status}"
        _finish_charge_failed(transaction_id, charge.status, message, actor, payment_intent_id=charge.external_id)
        return ChargeResult(
            success=False,
            status=PL_CHARGE_FAILED,
            payment_intent_id=charge.external_id,
            error_message=message,
        )

    def _charged():
        tx = lock_transaction(transaction_id)
        before = _snapshot(tx)
        tx.pay_later_status = PL_CHARGED
        tx.stripe_payment_intent_id = charge.external_id
        tx.charge_error_code = None
        tx.charge_error_message = None
        payment = _record_charge(tx, charge.external_id, charge.payload, actor)
        audit_service.record(
            action="charge_succeeded",
            entity_type="transaction",
            entity_id=tx.id,
            actor=actor,
            before=before,
            after=_snapshot(tx),
            metadata={"payment_id": payment.id},
        )
        db.session.commit()
        return tx, payment

    tx, payment = run_with_retry(_charged)
    notification_service.deliver(notification_service.CARD_CHARGED, tx, actor=actor, amount_cents=amount)
    return ChargeResult(
        success=True,
        status=PL_CHARGED,
        payment_id=payment.id,
        payment_intent_id=charge.external_id,
    )


def decline_card(transaction_id: int, reason: str | None = None, actor: Actor | None = None) -> Transaction:
    """
    Release the saved card with no charge.

    The provider hold is cancelled after the state change commits; a failed
    release is logged and audited, not retried here.
    """
    def _op():
        tx = lock_transaction(transaction_id)
        _authorize(actor, tx, "decline cards")
        if tx.pay_later_status not in DECLINABLE_STATUSES:
            raise InvalidStateError(f"Cannot decline transaction in status: {tx.pay_later_status}")
        before = _snapshot(tx)
        tx.pay_later_status = PL_DECLINED
        append_note(tx, f"Declined: {reason}" if reason else "Declined by operator")

        hold = _hold_payment(tx)
        if hold is not None and hold.status == STATUS_PENDING:
            require_payment_transition(hold.status, STATUS_FAILED)
            hold.status = STATUS_FAILED
            hold.failure_reason = "declined"
        elif hold is not None and hold.status == STATUS_COMPLETED:
            # Completed holds are terminal; record the release instead
            hold.payment_data = {**(hold.payment_data or {}), "released": True, "release_reason": "declined"}

        audit_service.record(
            action="declined",
            entity_type="transaction",
            entity_id=tx.id,
            actor=actor,
            before=before,
            after=_snapshot(tx),
            metadata={"reason": reason},
        )
        db.session.commit()
        return tx

    tx = run_with_retry(_op)
    _release_hold(tx, actor)
    return tx


def _release_hold(tx: Transaction, actor: Actor | None) -> None:
    if not tx.stripe_setup_intent_id:
        return
    try:
        get_provider(STRIPE).release_hold(tx.stripe_setup_intent_id)
    except ProviderError as exc:
        current_app.logger.warning("could not release hold for transaction %s: %s", tx.id, exc)
        audit_service.record(
            action="hold_release_failed",
            entity_type="transaction",
            entity_id=tx.id,
            actor=actor,
            metadata={"setup_intent_id": tx.stripe_setup_intent_id, "error": str(exc)},
        )
        db.session.commit()


def handle_payment_intent_succeeded(payment_intent_id: str) -> Transaction | None:
    def _op():
        tx = _lock_by(Transaction.stripe_payment_intent_id, payment_intent_id)
        if tx is None:
            return None, False
        if tx.pay_later_status == PL_CHARGED:
            return tx, False
        if tx.pay_later_status not in (PL_CHARGE_ATTEMPTED, PL_CHARGE_REQUIRES_ACTION, PL_CHARGE_FAILED):
            current_app.logger.warning(
                "payment intent %s succeeded for transaction %s in status %s",
                payment_intent_id, tx.id, tx.pay_later_status,
            )
            return tx, False
        before = _snapshot(tx)
        tx.pay_later_status = PL_CHARGED
        tx.charge_error_code = None
        tx.charge_error_message = None
        _record_charge(tx, payment_intent_id, {"payment_intent_id": payment_intent_id, "source": "webhook"})
        audit_service.record(
            action="payment_succeeded",
            entity_type="transaction",
            entity_id=tx.id,
            actor_type=ACTOR_WEBHOOK,
            before=before,
            after=_snapshot(tx),
            metadata={"payment_intent_id": payment_intent_id},
        )
        db.session.commit()
        return tx, True

    tx, changed = run_with_retry(_op)
    if changed:
        notification_service.deliver(notification_service.CARD_CHARGED, tx, actor_type=ACTOR_WEBHOOK)
    return tx


def handle_payment_intent_failed(payment_intent_id: str, error_code: str | None = None, error_message: str | None = None) -> Transaction | None:
    def _op():
        tx = _lock_by(Transaction.stripe_payment_intent_id, payment_intent_id)
        if tx is None:
            return None
        if tx.pay_later_status not in (PL_CHARGE_ATTEMPTED, PL_CHARGE_REQUIRES_ACTION):
            return tx
        before = _snapshot(tx)
        tx.pay_later_status = PL_CHARGE_FAILED
        tx.charge_error_code = (error_code or "unknown_error")[:64]
        tx.charge_error_message = (error_message or "Payment failed")[:255]
        audit_service.record(
            action="payment_failed",
            entity_type="transaction",
            entity_id=tx.id,
            actor_type=ACTOR_WEBHOOK,
            before=before,
            after=_snapshot(tx),
            metadata={"payment_intent_id": payment_intent_id},
        )
        db.session.commit()
        return tx

    return run_with_retry(_op)


def handle_payment_intent_requires_action(payment_intent_id: str) -> Transaction | None:
    def _op():
        tx = _lock_by(Transaction.stripe_payment_intent_id, payment_intent_id)
        if tx is None:
            return None, False
        if tx.pay_later_status != PL_CHARGE_ATTEMPTED:
            return tx, False
        before = _snapshot(tx)
        tx.pay_later_status = PL_CHARGE_REQUIRES_ACTION
        audit_service.record(
            action="charge_requires_action",
            entity_type="transaction",
            entity_id=tx.id,
            actor_type=ACTOR_WEBHOOK,
            before=before,
            after=_snapshot(tx),
            metadata={"payment_intent_id": payment_intent_id},
        )
        db.session.commit()
        return tx, True

    tx, changed = run_with_retry(_op)
    if changed:
        notification_service.deliver(notification_service.CARD_ACTION_REQUIRED, tx, actor_type=ACTOR_WEBHOOK)
    return tx


def find_by_payment_intent(payment_intent_id: str) -> Transaction | None:
    return db.session.query(Transaction).filter_by(stripe_payment_intent_id=payment_intent_id).first()


def expire_stale_requests(now: datetime | None = None) -> int:
    """Card setups never completed before their status token expired -> EXPIRED."""
    now = now or utcnow()
    candidates = (
        db.session.query(Transaction.id)
        .filter(
            Transaction.pay_later_status.in_([PL_REQUEST_CREATED, PL_CARD_SETUP_PENDING]),
            Transaction.status_token_expires_at.isnot(None),
            Transaction.status_token_expires_at <= now,
        )
        .all()
    )

    expired = []
    for (transaction_id,) in candidates:
        def _op(transaction_id=transaction_id):
            tx = lock_transaction(transaction_id)
            if tx.pay_later_status not in (PL_REQUEST_CREATED, PL_CARD_SETUP_PENDING):
                return None
            before = _snapshot(tx)
            tx.pay_later_status = PL_EXPIRED
            hold = _hold_payment(tx)
            if hold is not None and hold.status == STATUS_PENDING:
                hold.status = STATUS_FAILED
                hold.failure_reason = "expired"
            audit_service.record(
                action="pay_later_expired",
                entity_type="transaction",
                entity_id=tx.id,
                before=before,
                after=_snapshot(tx),
            )
            db.session.commit()
            return tx

        tx = run_with_retry(_op)
        if tx is not None:
            expired.append(tx)
            _release_hold(tx, None)

    if expired:
        current_app.logger.info("expired %d stale pay-later requests", len(expired))
    return len(expired)
