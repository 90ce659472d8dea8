# Overview: Read-only deposit analytics and reconciliation over the payment ledger.

from __future__ import annotations

from datetime import datetime

from sqlalchemy import func

from ..extensions import db
from ..models import Location, Payment, PaymentMethod, Transaction
from gemach.time_utils import parse_iso_datetime, to_utc_z
from .fees import KNOWN_METHODS, to_cents
from .payment_states import (
    KIND_CHARGE,
    KIND_REFUND,
    OPEN_STATUSES,
    STATUS_COMPLETED,
    STATUS_FAILED,
    STATUS_PENDING_RETRY,
)


def _parse_range(start, end) -> tuple[datetime | None, datetime | None]:
    start_dt = parse_iso_datetime(start) if isinstance(start, str) else start
    end_dt = parse_iso_datetime(end) if isinstance(end, str) else end
    return start_dt, end_dt


def _payments_query(location_id: int | None, start_dt=None, end_dt=None):
    query = (
        db.session.query(Payment)
        .join(Transaction, Payment.transaction_id == Transaction.id)
        .filter(Payment.kind.in_([KIND_CHARGE, KIND_REFUND]))
    )
    if location_id is not None:
        query = query.filter(Transaction.location_id == location_id)
    if start_dt:
        query = query.filter(Transaction.borrow_date >= start_dt)
    if end_dt:
        query = query.filter(Transaction.borrow_date <= end_dt)
    return query


def _transactions_query(location_id: int | None, start_dt=None, end_dt=None):
    query = db.session.query(Transaction)
    if location_id is not None:
        query = query.filter(Transaction.location_id == location_id)
    if start_dt:
        query = query.filter(Transaction.borrow_date >= start_dt)
    if end_dt:
        query = query.filter(Transaction.borrow_date <= end_dt)
    return query


def deposit_analytics(location_id: int | None = None) -> dict:
    """Counts and totals of deposits, split by status and method."""
    transactions = _transactions_query(location_id)
    total = transactions.count()
    returned = transactions.filter(Transaction.is_returned.is_(True)).count()

    status_rows = (
        _payments_query(location_id)
        .filter(Payment.kind == KIND_CHARGE)
        .with_entities(Payment.status, func.count(Payment.id))
        .group_by(Payment.status)
        .all()
    )
    method_rows = (
        _payments_query(location_id)
        .filter(Payment.kind == KIND_CHARGE, Payment.status == STATUS_COMPLETED)
        .with_entities(
            Payment.payment_method,
            func.count(Payment.id),
            func.coalesce(func.sum(Payment.deposit_amount_cents), 0),
            func.coalesce(func.sum(Payment.processing_fee_cents), 0),
        )
        .group_by(Payment.payment_method)
        .all()
    )
    refunded_cents = (
        _payments_query(location_id)
        .filter(Payment.kind == KIND_REFUND, Payment.status == STATUS_COMPLETED)
        .with_entities(func.coalesce(func.sum(Payment.deposit_amount_cents), 0))
        .scalar()
    )

    collected = sum(int(row[2]) for row in method_rows)
    return {
        "location_id": location_id,
        "total_transactions": total,
        "active_loans": total - returned,
        "returned_items": returned,
        "status_breakdown": {status: count for status, count in status_rows},
        "by_method": [
            {
                "method": method,
                "count": count,
                "deposit_cents": int(deposit_cents),
                "fee_cents": int(fee_cents),
            }
            for method, count, deposit_cents, fee_cents in method_rows
        ],
        "collected_deposit_cents": collected,
        "refunded_deposit_cents": -int(refunded_cents or 0),
        "held_deposit_cents": collected + int(refunded_cents or 0),
    }


def reconciliation_report(location_id: int | None = None, start=None, end=None) -> dict:
    """
    Expected vs. actual deposit money, plus every returned transaction whose
    ledger does not net to deposit - refund_amount.
    """
    start_dt, end_dt = _parse_range(start, end)
    transactions = _transactions_query(location_id, start_dt, end_dt).all()
    payments = _payments_query(location_id, start_dt, end_dt).all()

    by_tx: dict[int, list[Payment]] = {}
    for payment in payments:
        by_tx.setdefault(payment.transaction_id, []).append(payment)

    expected = sum(to_cents(tx.deposit_amount) for tx in transactions)
    completed_charges = [p for p in payments if p.kind == KIND_CHARGE and p.status == STATUS_COMPLETED]
    actual = sum(p.deposit_amount_cents for p in completed_charges)
    pending = sum(p.deposit_amount_cents for p in payments if p.kind == KIND_CHARGE and p.status in OPEN_STATUSES)
    refunded = -sum(p.deposit_amount_cents for p in payments if p.kind == KIND_REFUND and p.status == STATUS_COMPLETED)

    discrepancies = []
    completed_tx = pending_tx = 0
    for tx in transactions:
        entries = by_tx.get(tx.id, [])
        charges = [p for p in entries if p.kind == KIND_CHARGE and p.status == STATUS_COMPLETED]
        if charges:
            completed_tx += 1
        elif any(p.kind == KIND_CHARGE and p.status in OPEN_STATUSES for p in entries):
            pending_tx += 1
        if tx.is_returned and charges:
            net = sum(p.deposit_amount_cents for p in entries if p.status == STATUS_COMPLETED)
            kept = to_cents(tx.deposit_amount) - to_cents(tx.refund_amount or 0)
            if net != kept:
                discrepancies.append({
                    "transaction_id": tx.id,
                    "ledger_net_cents": net,
                    "expected_net_cents": kept,
                })

    return {
        "summary": {
            "total_transactions": len(transactions),
            "expected_deposit_cents": expected,
            "actual_deposit_cents": actual,
            "pending_deposit_cents": pending,
            "refunded_deposit_cents": refunded,
            "variance_cents": actual - expected,
            "reconciliation_rate": round(actual / expected * 100, 2) if expected else 0,
        },
        "details": {
            "completed_transactions": completed_tx,
            "pending_transactions": pending_tx,
            "returned_items": sum(1 for tx in transactions if tx.is_returned),
        },
        "discrepancies": discrepancies,
        "location_id": location_id,
        "start": to_utc_z(start_dt) if start_dt else None,
        "end": to_utc_z(end_dt) if end_dt else None,
    }


def payment_method_analytics(location_id: int | None = None, start=None, end=None) -> dict:
    start_dt, end_dt = _parse_range(start, end)
    charges = _payments_query(location_id, start_dt, end_dt).filter(Payment.kind == KIND_CHARGE).all()
    configured = {m.name: m for m in db.session.query(PaymentMethod).all()}

    performance = []
    for name in KNOWN_METHODS:
        rows = [p for p in charges if p.payment_method == name]
        successful = [p for p in rows if p.status == STATUS_COMPLETED]
        revenue = sum(p.total_amount_cents for p in successful)
        method = configured.get(name)
        performance.append({
            "method": name,
            "is_active": method.is_active if method else None,
            "total_attempts": len(rows),
            "successful": len(successful),
            "failed": sum(1 for p in rows if p.status == STATUS_FAILED),
            "pending": sum(1 for p in rows if p.status in OPEN_STATUSES),
            "success_rate": round(len(successful) / len(rows) * 100, 2) if rows else 0,
            "total_revenue_cents": revenue,
            "fee_cents": sum(p.processing_fee_cents for p in successful),
            "average_amount_cents": round(revenue / len(successful)) if successful else 0,
        })

    return {
        "location_id": location_id,
        "total_payments": len(charges),
        "methods": performance,
        "start": to_utc_z(start_dt) if start_dt else None,
        "end": to_utc_z(end_dt) if end_dt else None,
    }


def detection_analytics(location_id: int | None = None) -> dict:
    """Health of the automatic status detection: open, retrying and stuck payments."""
    charges = _payments_query(location_id).filter(Payment.kind == KIND_CHARGE)
    status_rows = charges.with_entities(Payment.status, func.count(Payment.id)).group_by(Payment.status).all()
    retrying = charges.filter(Payment.status == STATUS_PENDING_RETRY).all()
    return {
        "location_id": location_id,
        "status_breakdown": {status: count for status, count in status_rows},
        "pending_payments": sum(count for status, count in status_rows if status in OPEN_STATUSES),
        "scheduled_retries": [
            {
                "payment_id": p.id,
                "retry_attempts": p.retry_attempts,
                "next_retry_at": to_utc_z(p.next_retry_at),
                "failure_reason": p.failure_reason,
            }
            for p in retrying
        ],
        "failed_with_retries": charges.filter(Payment.status == STATUS_FAILED, Payment.retry_attempts > 0).count(),
    }


def refund_report(start=None, end=None, location_id: int | None = None) -> dict:
    start_dt, end_dt = _parse_range(start, end)
    query = (
        db.session.query(Payment, Transaction, Location)
        .join(Transaction, Payment.transaction_id == Transaction.id)
        .join(Location, Transaction.location_id == Location.id)
        .filter(Payment.kind == KIND_REFUND, Payment.status == STATUS_COMPLETED)
    )
    if location_id is not None:
        query = query.filter(Transaction.location_id == location_id)
    if start_dt:
        query = query.filter(Payment.completed_at >= start_dt)
    if end_dt:
        query = query.filter(Payment.completed_at <= end_dt)

    rows = query.order_by(Payment.completed_at.asc(), Payment.id.asc()).all()
    return {
        "location_id": location_id,
        "start": to_utc_z(start_dt) if start_dt else None,
        "end": to_utc_z(end_dt) if end_dt else None,
        "total_refunded_cents": -sum(p.deposit_amount_cents for p, _, _ in rows),
        "rows": [
            {
                "payment_id": p.id,
                "transaction_id": tx.id,
                "location": loc.name,
                "method": p.payment_method,
                "amount_cents": -p.deposit_amount_cents,
                "refund_of_payment_id": p.refund_of_payment_id,
                "completed_at": to_utc_z(p.completed_at),
            }
            for p, tx, loc in rows
        ],
    }
