"""
Lending transactions: create, lend, return.

WHY: A Transaction is the financial record of one loan. Creation never
touches inventory by itself (lend_item does both in one unit of work), and
the return flag flips exactly once.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal, InvalidOperation

from ..errors import (
    AlreadyReturnedError,
    InvalidArgumentError,
    LocationInactiveError,
    NotFoundError,
)
from ..extensions import db
from ..models import Location, Transaction
from gemach.time_utils import utcnow
from . import audit_service
from .authorization import Actor, require_location_access, require_staff
from .concurrency import lock_for_update, run_with_retry
from .inventory_service import adjust_locked, validate_color


PAYMENT_METHOD_PENDING = "pending"


def parse_amount(value, field: str) -> Decimal:
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise InvalidArgumentError(f"{field} must be a number")
    if not amount.is_finite():
        raise InvalidArgumentError(f"{field} must be a number")
    return amount.quantize(Decimal("0.01"))


def load_active_location(location_id: int) -> Location:
    location = db.session.get(Location, location_id)
    if location is None:
        raise NotFoundError(f"Location {location_id} not found")
    if not location.is_active:
        raise LocationInactiveError(f"Location {location_id} is not active")
    return location


def get_transaction(transaction_id: int) -> Transaction:
    tx = db.session.get(Transaction, transaction_id)
    if tx is None:
        raise NotFoundError(f"Transaction {transaction_id} not found")
    return tx


def lock_transaction(transaction_id: int) -> Transaction:
    """Re-read a transaction under a row lock inside the current unit of work."""
    tx = lock_for_update(db.session.query(Transaction).filter_by(id=transaction_id)).first()
    if tx is None:
        raise NotFoundError(f"Transaction {transaction_id} not found")
    return tx


def authorize_transaction_access(actor: Actor, transaction: Transaction, operation: str = "access this transaction") -> None:
    """Admin: any location. Operator: own location only. Borrower: never."""
    require_location_access(actor, transaction.location_id, operation)


def append_note(tx: Transaction, note: str) -> None:
    stamp = utcnow().strftime("%Y-%m-%d %H:%M")
    line = f"[{stamp}] {note}"
    tx.notes = f"{tx.notes}\n{line}" if tx.notes else line


def build_transaction(
    location_id: int,
    borrower_name: str,
    *,
    phone: str | None = None,
    email: str | None = None,
    color: str | None = None,
    deposit_amount=None,
    payment_method: str = PAYMENT_METHOD_PENDING,
    expected_return_date: datetime | None = None,
    notes: str | None = None,
) -> Transaction:
    if not borrower_name or not str(borrower_name).strip():
        raise InvalidArgumentError("borrower_name is required")

    location = load_active_location(location_id)

    if deposit_amount is None:
        amount = Decimal(location.deposit_amount).quantize(Decimal("0.01"))
    else:
        amount = parse_amount(deposit_amount, "deposit_amount")
        if amount <= 0:
            raise InvalidArgumentError("deposit_amount must be positive")

    tx = Transaction(
        location_id=location.id,
        borrower_name=str(borrower_name).strip(),
        borrower_phone=phone,
        borrower_email=email,
        headband_color=validate_color(color) if color else None,
        deposit_amount=amount,
        deposit_payment_method=payment_method or PAYMENT_METHOD_PENDING,
        is_returned=False,
        borrow_date=utcnow(),
        expected_return_date=expected_return_date,
        notes=notes,
    )
    db.session.add(tx)
    db.session.flush()
    return tx


def create_transaction(location_id: int, borrower_name: str, **fields) -> Transaction:
    """
    Record a loan. Does not change inventory.

    Raises:
        NotFoundError: location missing
        LocationInactiveError: location deactivated
        InvalidArgumentError: missing name, bad color or non-positive deposit
    """
    def _op():
        tx = build_transaction(location_id, borrower_name, **fields)
        db.session.commit()
        return tx

    return run_with_retry(_op)


def lend_item(location_id: int, borrower_name: str, color: str, *, actor: Actor | None = None, **fields) -> Transaction:
    """
    Create the transaction and take one item of `color` off the shelf as a
    single unit of work. If stock is short nothing is persisted.
    """
    if not color:
        raise InvalidArgumentError("color is required to lend an item")

    def _op():
        tx = build_transaction(location_id, borrower_name, color=color, **fields)
        remaining = adjust_locked(location_id, color, -1)
        audit_service.record(
            action="item_lent",
            entity_type="transaction",
            entity_id=tx.id,
            actor=actor,
            after=tx.to_dict(),
            metadata={"color": tx.headband_color, "remaining": remaining},
        )
        db.session.commit()
        return tx

    return run_with_retry(_op)


def mark_returned_locked(tx: Transaction, refund_amount=None) -> Transaction:
    if tx.is_returned:
        raise AlreadyReturnedError(f"Transaction {tx.id} has already been returned")

    deposit = Decimal(tx.deposit_amount)
    if refund_amount is None:
        amount = deposit
    else:
        amount = parse_amount(refund_amount, "refund_amount")
        if amount < 0 or amount > deposit:
            raise InvalidArgumentError("refund_amount must be between 0 and the deposit amount")

    tx.is_returned = True
    tx.actual_return_date = utcnow()
    tx.refund_amount = amount
    db.session.flush()
    return tx


def mark_returned(transaction_id: int, refund_amount=None) -> Transaction:
    """
    Flip a transaction to returned exactly once.

    The second caller re-reads the row (version check / row lock) and gets
    AlreadyReturnedError.
    """
    def _op():
        tx = lock_transaction(transaction_id)
        mark_returned_locked(tx, refund_amount)
        db.session.commit()
        return tx

    return run_with_retry(_op)


def list_transactions(
    actor: Actor,
    *,
    location_id: int | None = None,
    is_returned: bool | None = None,
    limit: int = 200,
) -> list[Transaction]:
    """Transactions visible to the actor, newest first."""
    require_staff(actor, "list transactions")
    if not actor.is_admin:
        if location_id is not None and location_id != actor.location_id:
            require_location_access(actor, location_id, "list transactions")
        location_id = actor.location_id

    query = db.session.query(Transaction)
    if location_id is not None:
        query = query.filter(Transaction.location_id == location_id)
    if is_returned is not None:
        query = query.filter(Transaction.is_returned.is_(is_returned))
    return query.order_by(Transaction.id.desc()).limit(limit).all()
