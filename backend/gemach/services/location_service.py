# Overview: Location administration, global payment methods and per-location enablement.

from __future__ import annotations

from sqlalchemy.exc import IntegrityError

from ..errors import InvalidArgumentError, InvalidStateError, NotFoundError
from ..extensions import db
from ..models import Location, LocationPaymentMethod, PaymentMethod, Transaction
from . import audit_service
from .auth_service import hash_secret, verify_secret
from .authorization import Actor, require_admin, require_location_access
from .concurrency import lock_for_update, run_with_retry
from .fees import KNOWN_METHODS


LOCATION_FIELDS = ("name", "contact_person", "address", "phone", "email")


def _validate_methods(methods) -> list[str]:
    if methods is None:
        return ["cash"]
    if not isinstance(methods, (list, tuple)):
        raise InvalidArgumentError("payment_methods must be a list")
    cleaned = []
    for method in methods:
        name = str(method).strip().lower()
        if name not in KNOWN_METHODS:
            raise InvalidArgumentError(f"Unknown payment method '{method}'")
        if name not in cleaned:
            cleaned.append(name)
    return cleaned


def _validate_bps(value, field: str = "processing_fee_bps") -> int:
    if isinstance(value, bool):
        raise InvalidArgumentError(f"{field} must be an integer")
    try:
        bps = int(value)
    except (TypeError, ValueError):
        raise InvalidArgumentError(f"{field} must be an integer")
    if bps < 0 or bps > 10000:
        raise InvalidArgumentError(f"{field} must be between 0 and 10000")
    return bps


def _validate_deposit(value) -> int:
    if isinstance(value, bool):
        raise InvalidArgumentError("deposit_amount must be a whole number")
    try:
        amount = int(value)
    except (TypeError, ValueError):
        raise InvalidArgumentError("deposit_amount must be a whole number")
    if amount <= 0:
        raise InvalidArgumentError("deposit_amount must be positive")
    return amount


def get_location(location_id: int) -> Location:
    location = db.session.get(Location, location_id)
    if location is None:
        raise NotFoundError(f"Location {location_id} not found")
    return location


def list_locations(include_inactive: bool = False) -> list[Location]:
    query = db.session.query(Location)
    if not include_inactive:
        query = query.filter(Location.is_active.is_(True))
    return query.order_by(Location.name.asc()).all()


def create_location(
    name: str,
    location_code: str,
    *,
    actor: Actor,
    deposit_amount: int = 20,
    payment_methods=None,
    processing_fee_bps: int = 300,
    operator_pin: str | None = None,
    **contact,
) -> Location:
    require_admin(actor, "create locations")
    name = (name or "").strip()
    location_code = (location_code or "").strip().upper()
    if not name or not location_code:
        raise InvalidArgumentError("name and location_code are required")

    location = Location(
        name=name,
        location_code=location_code,
        deposit_amount=_validate_deposit(deposit_amount),
        payment_methods=_validate_methods(payment_methods),
        processing_fee_bps=_validate_bps(processing_fee_bps),
        operator_pin_hash=hash_secret(operator_pin) if operator_pin else None,
        **{k: v for k, v in contact.items() if k in LOCATION_FIELDS and k != "name"},
    )
    db.session.add(location)
    try:
        db.session.flush()
    except IntegrityError:
        db.session.rollback()
        raise InvalidArgumentError(f"Location code {location_code} already exists")

    audit_service.record(
        action="location_created",
        entity_type="location",
        entity_id=location.id,
        actor=actor,
        after=location.to_dict(),
    )
    db.session.commit()
    return location


def update_location(location_id: int, *, actor: Actor, **changes) -> Location:
    """
    Admins may change anything; operators only their own location's
    contact fields.
    """
    require_location_access(actor, location_id, "update this location")

    def _op():
        location = lock_for_update(db.session.query(Location).filter_by(id=location_id)).first()
        if location is None:
            raise NotFoundError(f"Location {location_id} not found")
        before = location.to_dict()

        for field in LOCATION_FIELDS:
            if field in changes and changes[field] is not None:
                setattr(location, field, changes[field])

        admin_fields = {"deposit_amount", "payment_methods", "processing_fee_bps", "is_active"}
        if admin_fields & {k for k, v in changes.items() if v is not None}:
            require_admin(actor, "change deposit or payment settings")
            if changes.get("deposit_amount") is not None:
                location.deposit_amount = _validate_deposit(changes["deposit_amount"])
            if changes.get("payment_methods") is not None:
                location.payment_methods = _validate_methods(changes["payment_methods"])
            if changes.get("processing_fee_bps") is not None:
                location.processing_fee_bps = _validate_bps(changes["processing_fee_bps"])
            if changes.get("is_active") is not None:
                location.is_active = bool(changes["is_active"])

        audit_service.record(
            action="location_updated",
            entity_type="location",
            entity_id=location.id,
            actor=actor,
            before=before,
            after=location.to_dict(),
        )
        db.session.commit()
        return location

    return run_with_retry(_op)


def deactivate_location(location_id: int, *, actor: Actor) -> Location:
    return update_location(location_id, actor=actor, is_active=False)


def delete_location(location_id: int, *, actor: Actor) -> None:
    """Refused while any transaction references the location; deactivate instead."""
    require_admin(actor, "delete locations")
    location = get_location(location_id)
    in_use = db.session.query(Transaction.id).filter_by(location_id=location_id).first()
    if in_use is not None:
        raise InvalidStateError("Location has transactions; deactivate it instead")

    audit_service.record(
        action="location_deleted",
        entity_type="location",
        entity_id=location.id,
        actor=actor,
        before=location.to_dict(),
    )
    for link in list(location.method_links):
        db.session.delete(link)
    for item in list(location.inventory_items):
        db.session.delete(item)
    db.session.delete(location)
    db.session.commit()


def set_operator_pin(location_id: int, pin: str, *, actor: Actor) -> Location:
    require_location_access(actor, location_id, "set the operator PIN")
    if not pin or not str(pin).isdigit() or len(str(pin)) < 4:
        raise InvalidArgumentError("PIN must be at least 4 digits")
    location = get_location(location_id)
    location.operator_pin_hash = hash_secret(str(pin))
    audit_service.record(
        action="operator_pin_changed",
        entity_type="location",
        entity_id=location.id,
        actor=actor,
    )
    db.session.commit()
    return location


def verify_operator_pin(location_id: int, pin: str | None) -> bool:
    location = db.session.get(Location, location_id)
    if location is None or not location.is_active:
        return False
    return verify_secret(str(pin or ""), location.operator_pin_hash)


# =============================================================================
# PAYMENT METHODS
# =============================================================================

def list_payment_methods() -> list[PaymentMethod]:
    return db.session.query(PaymentMethod).order_by(PaymentMethod.id.asc()).all()


def upsert_payment_method(
    name: str,
    *,
    actor: Actor,
    display_name: str | None = None,
    provider: str | None = None,
    is_active: bool | None = None,
    is_available_to_locations: bool | None = None,
    processing_fee_bps: int | None = None,
    fixed_fee_cents: int | None = None,
) -> PaymentMethod:
    require_admin(actor, "configure payment methods")
    name = (name or "").strip().lower()
    if name not in KNOWN_METHODS:
        raise InvalidArgumentError(f"Unknown payment method '{name}'")

    method = db.session.query(PaymentMethod).filter_by(name=name).first()
    before = method.to_dict() if method else None
    if method is None:
        method = PaymentMethod(
            name=name,
            display_name=display_name or name.title(),
            provider=provider if provider is not None else (None if name == "cash" else name),
            requires_api=name != "cash",
        )
        db.session.add(method)

    if display_name is not None:
        method.display_name = display_name
    if is_active is not None:
        method.is_active = bool(is_active)
    if is_available_to_locations is not None:
        method.is_available_to_locations = bool(is_available_to_locations)
    if processing_fee_bps is not None:
        method.processing_fee_bps = _validate_bps(processing_fee_bps)
    if fixed_fee_cents is not None:
        if int(fixed_fee_cents) < 0:
            raise InvalidArgumentError("fixed_fee_cents must not be negative")
        method.fixed_fee_cents = int(fixed_fee_cents)
    db.session.flush()

    audit_service.record(
        action="payment_method_configured",
        entity_type="payment_method",
        entity_id=method.id,
        actor=actor,
        before=before,
        after=method.to_dict(),
    )
    db.session.commit()
    return method


def list_location_methods(location_id: int) -> list[LocationPaymentMethod]:
    get_location(location_id)
    return (
        db.session.query(LocationPaymentMethod)
        .filter_by(location_id=location_id)
        .order_by(LocationPaymentMethod.id.asc())
        .all()
    )


def set_location_method(
    location_id: int,
    method_name: str,
    *,
    actor: Actor,
    enabled: bool = True,
    custom_processing_fee_bps: int | None = None,
) -> LocationPaymentMethod:
    """
    Enable or disable a global method for one location. Operators may only
    toggle methods the admin has made available to locations.
    """
    require_location_access(actor, location_id, "configure payment methods")
    get_location(location_id)
    method = db.session.query(PaymentMethod).filter_by(name=(method_name or "").lower()).first()
    if method is None:
        raise NotFoundError(f"Payment method '{method_name}' not found")
    if not actor.is_admin and not method.is_available_to_locations:
        raise InvalidStateError(f"Payment method '{method.name}' is not available to locations")

    link = (
        db.session.query(LocationPaymentMethod)
        .filter_by(location_id=location_id, payment_method_id=method.id)
        .first()
    )
    before = link.to_dict() if link else None
    if link is None:
        link = LocationPaymentMethod(location_id=location_id, payment_method_id=method.id)
        db.session.add(link)
    link.is_enabled = bool(enabled)
    link.custom_processing_fee_bps = (
        _validate_bps(custom_processing_fee_bps, "custom_processing_fee_bps")
        if custom_processing_fee_bps is not None
        else None
    )
    db.session.flush()

    audit_service.record(
        action="location_payment_method_set",
        entity_type="location",
        entity_id=location_id,
        actor=actor,
        before=before,
        after=link.to_dict(),
    )
    db.session.commit()
    return link
