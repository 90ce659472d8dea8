from __future__ import annotations

from decimal import Decimal

from ..extensions import db
from gemach.time_utils import to_utc_z


def _decimal_str(value: Decimal | None) -> str | None:
    if value is None:
        return None
    return str(Decimal(value).quantize(Decimal("0.01")))


class Transaction(db.Model):
    """
    One loan of an item to a borrower.

    WHY: The transaction is the financial record of a loan. It is never
    deleted; returning the item flips is_returned exactly once and records
    the refund amount.

    PAY-LATER: When the deposit is a saved card instead of an up-front
    payment, pay_later_status tracks the nested card-resolution state
    machine and the stripe_* columns hold the provider identifiers.
    """
    __tablename__ = "transactions"
    __table_args__ = (
        db.Index("ix_transactions_location_returned", "location_id", "is_returned"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    location_id = db.Column(db.Integer, db.ForeignKey("locations.id"), nullable=False, index=True)

    # Borrower identity (phone/email optional, at least one expected)
    borrower_name = db.Column(db.String(255), nullable=False)
    borrower_email = db.Column(db.String(255), nullable=True)
    borrower_phone = db.Column(db.String(64), nullable=True)

    headband_color = db.Column(db.String(16), nullable=True)

    # Deposit in currency units (e.g. 20.00)
    deposit_amount = db.Column(db.Numeric(10, 2), nullable=False, default=Decimal("20.00"))
    deposit_payment_method = db.Column(db.String(32), nullable=False, default="pending")

    # Return state
    is_returned = db.Column(db.Boolean, nullable=False, default=False, index=True)
    borrow_date = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    expected_return_date = db.Column(db.DateTime(timezone=True), nullable=True)
    actual_return_date = db.Column(db.DateTime(timezone=True), nullable=True)
    refund_amount = db.Column(db.Numeric(10, 2), nullable=True)

    notes = db.Column(db.Text, nullable=True)

    # Pay-later sub-state
    pay_later_status = db.Column(db.String(32), nullable=True, index=True)
    amount_planned_cents = db.Column(db.Integer, nullable=True)
    currency = db.Column(db.String(8), nullable=False, default="usd")
    stripe_customer_id = db.Column(db.String(255), nullable=True)
    stripe_setup_intent_id = db.Column(db.String(255), nullable=True, index=True)
    stripe_payment_method_id = db.Column(db.String(255), nullable=True)
    stripe_payment_intent_id = db.Column(db.String(255), nullable=True, index=True)
    charge_attempts = db.Column(db.Integer, nullable=False, default=0)
    charge_error_code = db.Column(db.String(64), nullable=True)
    charge_error_message = db.Column(db.String(255), nullable=True)

    # Borrower status link (hashed, time-limited)
    status_token_hash = db.Column(db.String(64), nullable=True)
    status_token_expires_at = db.Column(db.DateTime(timezone=True), nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    location = db.relationship("Location", backref=db.backref("transactions", lazy=True))
    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "location_id": self.location_id,
            "borrower_name": self.borrower_name,
            "borrower_email": self.borrower_email,
            "borrower_phone": self.borrower_phone,
            "headband_color": self.headband_color,
            "deposit_amount": _decimal_str(self.deposit_amount),
            "deposit_payment_method": self.deposit_payment_method,
            "is_returned": self.is_returned,
            "borrow_date": to_utc_z(self.borrow_date),
            "expected_return_date": to_utc_z(self.expected_return_date),
            "actual_return_date": to_utc_z(self.actual_return_date),
            "refund_amount": _decimal_str(self.refund_amount),
            "notes": self.notes,
            "pay_later_status": self.pay_later_status,
            "amount_planned_cents": self.amount_planned_cents,
            "currency": self.currency,
            "charge_attempts": self.charge_attempts,
            "charge_error_code": self.charge_error_code,
            "charge_error_message": self.charge_error_message,
            "version_id": self.version_id,
        }


class Payment(db.Model):
    """
    One monetary movement against a transaction.

    KINDS:
    - charge: deposit collected (cash, card, PayPal)
    - refund: counter-entry with negated amounts, linked to the charge it
      reverses through refund_of_payment_id (unique, so a charge can only be
      refunded once)
    - hold: pay-later card setup; carries no money and is excluded from
      reconciliation

    All amounts are in cents.
    """
    __tablename__ = "payments"
    __table_args__ = (
        db.UniqueConstraint("refund_of_payment_id", name="uq_payments_refund_of"),
        db.Index("ix_payments_status_next_retry", "status", "next_retry_at"),
        db.Index("ix_payments_provider_external", "payment_provider", "external_payment_id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    transaction_id = db.Column(db.Integer, db.ForeignKey("transactions.id"), nullable=False, index=True)

    kind = db.Column(db.String(16), nullable=False, default="charge", index=True)
    payment_method = db.Column(db.String(32), nullable=False, index=True)
    payment_provider = db.Column(db.String(32), nullable=True)
    external_payment_id = db.Column(db.String(255), nullable=True)

    deposit_amount_cents = db.Column(db.Integer, nullable=False)
    processing_fee_cents = db.Column(db.Integer, nullable=False, default=0)
    total_amount_cents = db.Column(db.Integer, nullable=False)

    status = db.Column(db.String(16), nullable=False, default="pending", index=True)

    # Opaque provider payload and confirmation metadata
    payment_data = db.Column(db.JSON, nullable=True)
    failure_reason = db.Column(db.String(255), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), index=True)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    # Retry scheduling (swept from the database, survives restarts)
    retry_attempts = db.Column(db.Integer, nullable=False, default=0)
    next_retry_at = db.Column(db.DateTime(timezone=True), nullable=True)

    refund_of_payment_id = db.Column(db.Integer, db.ForeignKey("payments.id"), nullable=True)
    created_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    version_id = db.Column(db.Integer, nullable=False, default=1)

    transaction = db.relationship("Transaction", backref=db.backref("payments", lazy=True, order_by="Payment.id"))
    refund_of = db.relationship("Payment", remote_side=[id])
    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "transaction_id": self.transaction_id,
            "kind": self.kind,
            "payment_method": self.payment_method,
            "payment_provider": self.payment_provider,
            "external_payment_id": self.external_payment_id,
            "deposit_amount_cents": self.deposit_amount_cents,
            "processing_fee_cents": self.processing_fee_cents,
            "total_amount_cents": self.total_amount_cents,
            "status": self.status,
            "failure_reason": self.failure_reason,
            "created_at": to_utc_z(self.created_at),
            "completed_at": to_utc_z(self.completed_at),
            "retry_attempts": self.retry_attempts,
            "next_retry_at": to_utc_z(self.next_retry_at),
            "refund_of_payment_id": self.refund_of_payment_id,
            "created_by_user_id": self.created_by_user_id,
            "version_id": self.version_id,
        }
