# Overview: Money conversion and processing-fee schedule for deposits.

from __future__ import annotations

from decimal import Decimal, ROUND_HALF_UP

from ..extensions import db
from ..models import Location, LocationPaymentMethod, PaymentMethod


CASH = "cash"
STRIPE = "stripe"
PAYPAL = "paypal"
KNOWN_METHODS = (CASH, STRIPE, PAYPAL)


def to_cents(amount) -> int:
    """Currency units (int, Decimal, numeric string) -> integer cents, half-up."""
    return int((Decimal(str(amount)) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_cents(cents: int) -> Decimal:
    return (Decimal(cents) / Decimal(100)).quantize(Decimal("0.01"))


def _method_row(name: str) -> PaymentMethod | None:
    return db.session.query(PaymentMethod).filter_by(name=name).first()


def _location_link(location_id: int, method_id: int) -> LocationPaymentMethod | None:
    return (
        db.session.query(LocationPaymentMethod)
        .filter_by(location_id=location_id, payment_method_id=method_id)
        .first()
    )


def enabled_methods(location: Location) -> list[str]:
    """
    Methods a location accepts: its own ordered list, plus any active global
    method it has enabled through location_payment_methods.
    """
    methods = [m for m in (location.payment_methods or []) if m in KNOWN_METHODS]
    links = (
        db.session.query(LocationPaymentMethod)
        .join(PaymentMethod, LocationPaymentMethod.payment_method_id == PaymentMethod.id)
        .filter(
            LocationPaymentMethod.location_id == location.id,
            LocationPaymentMethod.is_enabled.is_(True),
            PaymentMethod.is_active.is_(True),
        )
        .all()
    )
    for link in links:
        name = link.payment_method.name
        if name in KNOWN_METHODS and name not in methods:
            methods.append(name)
    return methods


def processing_fee_cents(location: Location, method: str, deposit_cents: int) -> int:
    """
    Fee charged on top of the deposit.

    Rate: the location's per-method override if set, else the location's
    processing_fee_bps. The global method's fixed fee is added on top.
    Cash never carries a fee. Rounded up to the next cent.
    """
    if method == CASH:
        return 0

    bps = location.processing_fee_bps
    fixed = 0
    row = _method_row(method)
    if row is not None:
        fixed = row.fixed_fee_cents or 0
        link = _location_link(location.id, row.id)
        if link is not None and link.custom_processing_fee_bps is not None:
            bps = link.custom_processing_fee_bps

    bps = max(int(bps or 0), 0)
    # Integer ceil of deposit_cents * bps / 10000
    percent_part = -(-deposit_cents * bps // 10000)
    return percent_part + fixed
