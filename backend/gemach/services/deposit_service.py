# Overview: Deposit orchestration: open, confirm, refund and settle deposits on return.

"""
Deposit Service

WHY: One place that moves money for a loan. Routes call in here; provider
specifics stay behind the provider registry.

DESIGN PRINCIPLES:
- A Payment row is the record of one monetary movement. Charges are never
  mutated into refunds: a refund is a new row with negated amounts linked
  through refund_of_payment_id (unique, so each charge refunds once).
- Status changes re-read the row under lock and re-check the state guard, so
  a racing confirmation loses with InvalidStateError instead of overwriting.
- Provider calls never happen inside a retried block: a retry would open a
  second intent or issue a second refund.
- Notifications run after commit and never undo money movement.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal

from flask import current_app
from sqlalchemy.exc import IntegrityError

from ..errors import (
    AlreadyReturnedError,
    DepositError,
    ForbiddenError,
    InvalidArgumentError,
    InvalidStateError,
    NoChargeToRefundError,
    NotFoundError,
    RefundExceedsDepositError,
    UnsupportedMethodError,
)
from ..extensions import db
from ..models import Location, Payment, Transaction
from gemach.time_utils import utcnow
from . import audit_service, inventory_service, notification_service, pay_later_service
from .authorization import Actor, can_access_location, require_staff
from .concurrency import lock_for_update, run_with_retry
from .fees import KNOWN_METHODS, STRIPE, enabled_methods, from_cents, processing_fee_cents, to_cents
from .payment_states import (
    KIND_CHARGE,
    KIND_REFUND,
    OPEN_STATUSES,
    STATUS_COMPLETED,
    STATUS_FAILED,
    is_pending_card_resolution,
    require_payment_transition,
)
from .providers import get_provider
from .transaction_service import (
    append_note,
    authorize_transaction_access,
    build_transaction,
    get_transaction,
    load_active_location,
    lock_transaction,
    mark_returned_locked,
    parse_amount,
)


# Item condition at return -> share of the deposit given back
CONDITION_REFUND_SHARE = {
    "good": Decimal("1"),
    "damaged": Decimal("0.5"),
    "missing": Decimal("0"),
}


@dataclass
class PaymentResult:
    payment_id: int
    transaction_id: int
    status: str
    client_secret: str | None = None
    publishable_key: str | None = None
    approval_url: str | None = None
    status_token: str | None = None

    def to_dict(self) -> dict:
        data = {
            "transactionId": self.transaction_id,
            "paymentId": self.payment_id,
            "status": self.status,
            "clientSecret": self.client_secret,
            "publishableKey": self.publishable_key,
            "approvalUrl": self.approval_url,
            "statusToken": self.status_token,
        }
        return {k: v for k, v in data.items() if v is not None}


@dataclass
class RefundResult:
    success: bool
    amount_cents: int = 0
    refund_payment_id: int | None = None
    provider_refund_id: str | None = None
    bookkeeping_only: bool = False
    error: str | None = None

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "amountCents": self.amount_cents,
            "refundPaymentId": self.refund_payment_id,
            "providerRefundId": self.provider_refund_id,
            "bookkeepingOnly": self.bookkeeping_only,
            "error": self.error,
        }


@dataclass
class ReturnResult:
    transaction: Transaction
    refund: RefundResult | None = None
    restocked: bool = False
    card_resolution: str | None = None
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "transaction": self.transaction.to_dict(),
            "refund": self.refund.to_dict() if self.refund else None,
            "restocked": self.restocked,
            "cardResolution": self.card_resolution,
            "warnings": list(self.warnings),
        }


# =============================================================================
# PAYMENT OPTIONS
# =============================================================================

def get_payment_options(location_id: int) -> dict:
    """Deposit amount, accepted methods and the fee each would add, for a location."""
    location = load_active_location(location_id)
    deposit_cents = to_cents(location.deposit_amount)
    methods = []
    for method in enabled_methods(location):
        fee = processing_fee_cents(location, method, deposit_cents)
        methods.append({
            "method": method,
            "deposit_amount_cents": deposit_cents,
            "processing_fee_cents": fee,
            "total_amount_cents": deposit_cents + fee,
        })
    return {
        "location_id": location.id,
        "deposit_amount": location.deposit_amount,
        "methods": methods,
        "publishable_key": current_app.config.get("STRIPE_PUBLISHABLE_KEY"),
    }


# =============================================================================
# INITIATION
# =============================================================================

def _normalize_method(method: str | None) -> str:
    if not method or not isinstance(method, str):
        raise InvalidArgumentError("payment method is required")
    normalized = method.strip().lower()
    if normalized not in KNOWN_METHODS:
        raise UnsupportedMethodError(f"Unsupported payment method: {method}")
    return normalized


def _open_payment(tx: Transaction, location: Location, method: str, *, pay_later: bool, actor: Actor | None) -> PaymentResult:
    """Provider call + Payment row inside the caller's unit of work (no commit)."""
    if method not in enabled_methods(location):
        raise UnsupportedMethodError(f"{method} is not enabled at location {location.id}")

    if pay_later:
        if method != STRIPE:
            raise UnsupportedMethodError("Pay-later deposits require a card")
        setup = pay_later_service.start_card_setup(tx, location, actor=actor)
        return PaymentResult(
            payment_id=setup.payment_id,
            transaction_id=tx.id,
            status="pending",
            client_secret=setup.client_secret,
            publishable_key=setup.publishable_key,
            status_token=setup.status_token,
        )

    deposit_cents = to_cents(tx.deposit_amount)
    fee_cents = processing_fee_cents(location, method, deposit_cents)
    total_cents = deposit_cents + fee_cents

    provider = get_provider(method)
    intent = provider.create_payment(
        amount_cents=total_cents,
        currency=tx.currency or current_app.config.get("DEPOSIT_CURRENCY", "usd"),
        metadata={
            "transaction_id": tx.id,
            "location_id": location.id,
            "deposit_amount": deposit_cents,
            "processing_fee": fee_cents,
            "type": "earmuff_deposit",
        },
    )

    payment = Payment(
        transaction_id=tx.id,
        kind=KIND_CHARGE,
        payment_method=method,
        payment_provider=provider.name if provider.is_external else None,
        external_payment_id=intent.external_id,
        deposit_amount_cents=deposit_cents,
        processing_fee_cents=fee_cents,
        total_amount_cents=total_cents,
        status=intent.status,
        payment_data={**intent.payload, "created_at": utcnow().isoformat()},
        created_by_user_id=actor.user_id if actor else None,
    )
    db.session.add(payment)
    db.session.flush()

    audit_service.record(
        action="payment_initiated",
        entity_type="payment",
        entity_id=payment.id,
        actor=actor,
        after=payment.to_dict(),
        metadata={"transaction_id": tx.id},
    )

    return PaymentResult(
        payment_id=payment.id,
        transaction_id=tx.id,
        status=payment.status,
        client_secret=intent.client_secret,
        publishable_key=intent.publishable_key,
        approval_url=intent.approval_url,
    )


def initiate_payment(
    transaction_id: int,
    location_id: int,
    method: str,
    *,
    pay_later: bool = False,
    actor: Actor | None = None,
) -> PaymentResult:
    """
    Open a deposit payment for an existing transaction.

    cash: Payment "confirming", no fee, waits for an operator.
    stripe: payment intent, Payment "pending" with the location's fee.
        pay_later=True saves a card instead (hold Payment, CARD_SETUP_PENDING).
    paypal: order, Payment "pending", approval_url for the borrower.

    Raises:
        UnsupportedMethodError: method unknown or not enabled at the location
        LocationInactiveError / NotFoundError
        InvalidStateError: transaction returned or already paid
        ProviderError: provider rejected the request (nothing persisted)
    """
    method = _normalize_method(method)
    try:
        location = load_active_location(location_id)
        tx = lock_transaction(transaction_id)
        if tx.location_id != location.id:
            raise InvalidArgumentError(f"Transaction {transaction_id} does not belong to location {location_id}")
        if tx.is_returned:
            raise AlreadyReturnedError(f"Transaction {transaction_id} has already been returned")
        if _completed_charge(tx) is not None:
            raise InvalidStateError(f"Transaction {transaction_id} already has a completed deposit")
        if tx.pay_later_status is not None:
            raise InvalidStateError(f"Transaction {transaction_id} already has a saved card")
        result = _open_payment(tx, location, method, pay_later=pay_later, actor=actor)
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise
    current_app.logger.info("deposit payment %s opened (%s) for transaction %s", result.payment_id, method, transaction_id)
    return result


def initiate_deposit(data: dict, method: str, *, pay_later: bool = False, actor: Actor | None = None) -> PaymentResult:
    """
    Create the transaction and open its deposit payment as one unit of work.

    When a color is given the item leaves the shelf in the same unit, so a
    later return can restock it.
    """
    method = _normalize_method(method)
    location_id = data.get("location_id")
    if location_id is None:
        raise InvalidArgumentError("location_id is required")

    try:
        location = load_active_location(location_id)
        tx = build_transaction(
            location.id,
            data.get("borrower_name"),
            phone=data.get("borrower_phone"),
            email=data.get("borrower_email"),
            color=data.get("headband_color"),
            notes=data.get("notes"),
            expected_return_date=data.get("expected_return_date"),
        )
        if tx.headband_color:
            inventory_service.adjust_locked(location.id, tx.headband_color, -1)
        result = _open_payment(tx, location, method, pay_later=pay_later, actor=actor)
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise
    current_app.logger.info("deposit initiated: transaction %s payment %s (%s)", result.transaction_id, result.payment_id, method)
    return result


# =============================================================================
# CONFIRMATION
# =============================================================================

def _lock_payment(payment_id: int) -> Payment:
    payment = lock_for_update(db.session.query(Payment).filter_by(id=payment_id)).first()
    if payment is None:
        raise NotFoundError(f"Payment {payment_id} not found")
    return payment


def apply_completion(payment: Payment, tx: Transaction) -> None:
    """State that travels with a completed charge (same unit of work)."""
    payment.status = STATUS_COMPLETED
    payment.completed_at = utcnow()
    payment.next_retry_at = None
    tx.deposit_payment_method = payment.payment_method


def confirm_payment(payment_id: int, actor: Actor, confirmed: bool, notes: str | None = None) -> Payment:
    """
    Operator/admin decision on an open charge: completed or failed.

    Raises:
        ForbiddenError: borrower, or operator of another location
        InvalidStateError: payment not pending/confirming, or not a charge
        NotFoundError
    """
    require_staff(actor, "confirm payments")

    def _op():
        payment = _lock_payment(payment_id)
        tx = payment.transaction
        authorize_transaction_access(actor, tx, "confirm payments")
        if payment.kind != KIND_CHARGE:
            raise InvalidStateError(f"Payment {payment_id} is a {payment.kind} entry and cannot be confirmed")
        if payment.status not in OPEN_STATUSES:
            raise InvalidStateError(f"Payment cannot be confirmed in current status: {payment.status}")

        new_status = STATUS_COMPLETED if confirmed else STATUS_FAILED
        require_payment_transition(payment.status, new_status)
        old_status = payment.status

        payment.payment_data = {
            **(payment.payment_data or {}),
            "confirmed_by": actor.user_id,
            "confirmed_at": utcnow().isoformat(),
            "confirmation_notes": notes,
            "confirmation_status": "approved" if confirmed else "rejected",
        }
        if confirmed:
            apply_completion(payment, tx)
        else:
            payment.status = STATUS_FAILED
            payment.failure_reason = (notes or "Rejected by operator")[:255]

        audit_service.record(
            action="payment_confirmed" if confirmed else "payment_rejected",
            entity_type="payment",
            entity_id=payment.id,
            actor=actor,
            before={"status": old_status},
            after={"status": payment.status},
            metadata={"transaction_id": tx.id, "notes": notes},
        )
        db.session.commit()
        return payment

    payment = run_with_retry(_op)
    event = notification_service.DEPOSIT_CONFIRMED if confirmed else notification_service.DEPOSIT_FAILED
    notification_service.deliver(event, payment.transaction, actor=actor, payment_id=payment.id)
    return payment


def bulk_confirm(payment_ids: list[int], actor: Actor) -> dict:
    """
    Confirm many payments; one failing id never affects the others.

    Returns:
        {"success": n, "failed": m, "errors": {payment_id: message}}
    """
    require_staff(actor, "confirm payments")

    success = 0
    errors: dict[int, str] = {}
    for payment_id in payment_ids:
        try:
            confirm_payment(payment_id, actor, True, "Bulk confirmation")
            success += 1
        except DepositError as exc:
            errors[payment_id] = exc.public_message()
            _record_bulk_failure(payment_id, actor, exc.code, exc.public_message())
        except Exception as exc:
            current_app.logger.exception("bulk confirm of payment %s failed", payment_id)
            errors[payment_id] = "Unexpected error"
            _record_bulk_failure(payment_id, actor, "UNEXPECTED", str(exc))

    audit_service.record(
        action="bulk_confirm",
        entity_type="payment_batch",
        entity_id=actor.user_id or 0,
        actor=actor,
        metadata={"payment_ids": list(payment_ids), "success": success, "failed": len(errors)},
    )
    db.session.commit()
    return {"success": success, "failed": len(errors), "errors": errors}


def _record_bulk_failure(payment_id, actor: Actor, code: str, message: str) -> None:
    db.session.rollback()
    audit_service.record(
        action="bulk_confirm_failed",
        entity_type="payment",
        entity_id=payment_id if isinstance(payment_id, int) else 0,
        actor=actor,
        metadata={"code": code, "error": message},
    )
    db.session.commit()


def _scoped_charge_query(actor: Actor):
    query = (
        db.session.query(Payment)
        .join(Transaction, Payment.transaction_id == Transaction.id)
        .filter(Payment.kind == KIND_CHARGE)
    )
    if not actor.is_admin:
        query = query.filter(Transaction.location_id == actor.location_id)
    return query


def get_pending_confirmations(actor: Actor) -> list[Payment]:
    """Open charges the actor may confirm; borrowers see nothing."""
    if not actor.is_staff or (not actor.is_admin and actor.location_id is None):
        return []
    return (
        _scoped_charge_query(actor)
        .filter(Payment.status.in_(OPEN_STATUSES))
        .order_by(Payment.created_at.asc(), Payment.id.asc())
        .all()
    )


def get_payments_by_location(location_id: int, actor: Actor) -> list[Payment]:
    """Every ledger entry for a location; empty for callers without access."""
    if not can_access_location(actor, location_id):
        return []
    return (
        db.session.query(Payment)
        .join(Transaction, Payment.transaction_id == Transaction.id)
        .filter(Transaction.location_id == location_id)
        .order_by(Payment.id.asc())
        .all()
    )


def get_payments_for_transaction(transaction_id: int, actor: Actor) -> list[Payment]:
    tx = get_transaction(transaction_id)
    authorize_transaction_access(actor, tx, "view payments")
    return list(tx.payments)


# =============================================================================
# REFUND
# =============================================================================

def _completed_charge(tx: Transaction) -> Payment | None:
    return (
        db.session.query(Payment)
        .filter_by(transaction_id=tx.id, kind=KIND_CHARGE, status=STATUS_COMPLETED)
        .order_by(Payment.id.desc())
        .first()
    )


def _existing_refund(charge: Payment) -> Payment | None:
    return db.session.query(Payment).filter_by(refund_of_payment_id=charge.id).first()


def _resolve_refund_cents(tx: Transaction, refund_amount) -> int:
    deposit_cents = to_cents(tx.deposit_amount)
    if refund_amount is None:
        return deposit_cents
    amount_cents = to_cents(parse_amount(refund_amount, "refund_amount"))
    if amount_cents < 0:
        raise InvalidArgumentError("Refund amount cannot be negative")
    if amount_cents > deposit_cents:
        raise RefundExceedsDepositError(
            f"Refund amount ({from_cents(amount_cents)}) cannot exceed deposit amount ({from_cents(deposit_cents)})"
        )
    return amount_cents


def refund_deposit(
    transaction_id: int,
    actor: Actor,
    refund_amount=None,
    location_id_for_pin_auth: int | None = None,
) -> RefundResult:
    """
    Give back refund_amount (default: the full deposit) of the completed charge.

    Card/PayPal charges are refunded at the provider with an idempotency key
    per charge; cash charges only get the ledger entry. Processing fees are
    not refunded. refund_amount=0 succeeds without a provider call or ledger
    entry.

    Raises:
        RefundExceedsDepositError / InvalidArgumentError: amount out of range
        NoChargeToRefundError: no completed charge on the transaction
        InvalidStateError: the charge was already refunded
        AlreadyReturnedError: transaction already settled
        ProviderError: provider refused the refund (ledger untouched)
    """
    require_staff(actor, "process refunds")

    tx = get_transaction(transaction_id)
    if location_id_for_pin_auth is not None and location_id_for_pin_auth != tx.location_id:
        raise ForbiddenError(f"PIN session for location {location_id_for_pin_auth} cannot refund this transaction")
    authorize_transaction_access(actor, tx, "process refunds")

    if tx.is_returned:
        raise AlreadyReturnedError(f"Transaction {transaction_id} is already marked as returned")

    amount_cents = _resolve_refund_cents(tx, refund_amount)

    charge = _completed_charge(tx)
    if charge is None:
        raise NoChargeToRefundError(f"Transaction {transaction_id} has no completed payment to refund")
    if _existing_refund(charge) is not None:
        raise InvalidStateError(f"Payment {charge.id} has already been refunded")

    charge_id = charge.id
    if amount_cents == 0:
        audit_service.record(
            action="refund_skipped",
            entity_type="transaction",
            entity_id=tx.id,
            actor=actor,
            metadata={"payment_id": charge_id, "amount_cents": 0},
        )
        db.session.commit()
        return RefundResult(success=True, amount_cents=0)

    provider = get_provider(charge.payment_method)
    provider_refund = provider.refund(
        external_payment_id=charge.external_payment_id,
        amount_cents=amount_cents,
        currency=tx.currency or "usd",
        idempotency_key=f"refund_{charge_id}",
        metadata={
            "transaction_id": tx.id,
            "payment_id": charge_id,
            "capture_id": (charge.payment_data or {}).get("capture_id"),
        },
    )

    def _recorded_by_webhook(existing: Payment) -> bool:
        # The provider's refund event can land before this entry is written
        if provider_refund.external_id and existing.external_payment_id == provider_refund.external_id:
            return True
        return -existing.deposit_amount_cents == amount_cents

    def _op():
        locked_charge = _lock_payment(charge_id)
        existing = _existing_refund(locked_charge)
        if existing is not None:
            if _recorded_by_webhook(existing):
                current_app.logger.info("refund of payment %s was already recorded from a provider event", charge_id)
                db.session.commit()
                return existing
            raise InvalidStateError(f"Payment {charge_id} has already been refunded")
        refund = Payment(
            transaction_id=transaction_id,
            kind=KIND_REFUND,
            payment_method=locked_charge.payment_method,
            payment_provider=locked_charge.payment_provider,
            external_payment_id=provider_refund.external_id,
            deposit_amount_cents=-amount_cents,
            processing_fee_cents=0,
            total_amount_cents=-amount_cents,
            status=STATUS_COMPLETED,
            completed_at=utcnow(),
            payment_data={**provider_refund.payload, "refunded_by": actor.user_id},
            refund_of_payment_id=charge_id,
            created_by_user_id=actor.user_id,
        )
        db.session.add(refund)
        try:
            db.session.flush()
        except IntegrityError:
            raise InvalidStateError(f"Payment {charge_id} has already been refunded")
        audit_service.record(
            action="deposit_refunded",
            entity_type="transaction",
            entity_id=transaction_id,
            actor=actor,
            after=refund.to_dict(),
            metadata={"payment_id": charge_id, "amount_cents": amount_cents, "provider_status": provider_refund.status},
        )
        db.session.commit()
        return refund

    refund = run_with_retry(_op)
    current_app.logger.info("refunded %s cents of payment %s (transaction %s)", amount_cents, charge_id, transaction_id)
    notification_service.deliver(notification_service.DEPOSIT_REFUNDED, refund.transaction, actor=actor, amount_cents=amount_cents)
    return RefundResult(
        success=True,
        amount_cents=amount_cents,
        refund_payment_id=refund.id,
        provider_refund_id=provider_refund.external_id,
        bookkeeping_only=not provider.is_external,
    )


# =============================================================================
# RETURN
# =============================================================================

def refund_for_condition(deposit_amount, condition: str | None) -> Decimal:
    if not condition:
        return Decimal(deposit_amount)
    share = CONDITION_REFUND_SHARE.get(condition)
    if share is None:
        raise InvalidArgumentError(f"Invalid condition: {condition}. Must be one of {list(CONDITION_REFUND_SHARE)}")
    return (Decimal(deposit_amount) * share).quantize(Decimal("0.01"))


def process_return(
    transaction_id: int,
    actor: Actor,
    refund_amount=None,
    *,
    condition: str | None = None,
    restock: bool = True,
    notes: str | None = None,
) -> ReturnResult:
    """
    Settle a loan when the item comes back.

    Order: authorize, release any unresolved saved card, refund the deposit
    (bookkeeping only when nothing was charged, skipped when the charge was
    already refunded), flip is_returned, restock one item of the borrowed
    color. An explicit refund_amount wins over the condition-based amount;
    after an earlier refund it must match that refund. A "missing" item is
    not restocked.
    """
    require_staff(actor, "process returns")
    tx = get_transaction(transaction_id)
    authorize_transaction_access(actor, tx, "process returns")
    if tx.is_returned:
        raise AlreadyReturnedError(f"Transaction {transaction_id} has already been returned")

    if refund_amount is None:
        amount = refund_for_condition(tx.deposit_amount, condition)
    else:
        amount = parse_amount(refund_amount, "refund_amount")
    # Validate before anything moves
    _resolve_refund_cents(tx, amount)

    charge = _completed_charge(tx)
    prior_refund = _existing_refund(charge) if charge is not None else None
    if prior_refund is not None:
        refunded_cents = -prior_refund.deposit_amount_cents
        if refund_amount is not None and to_cents(amount) != refunded_cents:
            raise InvalidArgumentError(
                f"Refund amount ({from_cents(to_cents(amount))}) does not match the "
                f"{from_cents(refunded_cents)} already refunded for this transaction"
            )
        amount = from_cents(refunded_cents)

    result = ReturnResult(transaction=tx)

    if is_pending_card_resolution(tx.pay_later_status):
        pay_later_service.decline_card(transaction_id, reason="Item returned", actor=actor)
        result.card_resolution = "released"

    if prior_refund is not None:
        current_app.logger.info("transaction %s was refunded before return; skipping refund", transaction_id)
        result.refund = RefundResult(success=True, amount_cents=refunded_cents, refund_payment_id=prior_refund.id)
    else:
        try:
            result.refund = refund_deposit(transaction_id, actor, amount)
        except NoChargeToRefundError:
            current_app.logger.info("transaction %s has no completed charge; return is bookkeeping only", transaction_id)
            result.refund = RefundResult(success=True, amount_cents=to_cents(amount), bookkeeping_only=True)

    def _op():
        locked = lock_transaction(transaction_id)
        before = {"is_returned": locked.is_returned}
        mark_returned_locked(locked, amount)
        if notes:
            append_note(locked, f"Return: {notes}")
        audit_service.record(
            action="transaction_returned",
            entity_type="transaction",
            entity_id=locked.id,
            actor=actor,
            before=before,
            after={"is_returned": True, "refund_amount": str(locked.refund_amount), "condition": condition},
        )
        db.session.commit()
        return locked

    tx = run_with_retry(_op)
    result.transaction = tx

    if restock and tx.headband_color and condition != "missing":
        try:
            inventory_service.adjust(tx.location_id, tx.headband_color, 1)
            result.restocked = True
        except DepositError as exc:
            current_app.logger.warning("restock after return of transaction %s failed: %s", tx.id, exc)
            result.warnings.append("restock_failed")
            audit_service.record(
                action="side_effect_failed",
                entity_type="transaction",
                entity_id=tx.id,
                actor=actor,
                metadata={"effect": "restock", "error": str(exc)},
            )
            db.session.commit()

    notification_service.deliver(notification_service.ITEM_RETURNED, tx, actor=actor)
    return result
