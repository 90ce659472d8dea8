# Overview: Service-layer operations for inventory; encapsulates business logic and database work.

# backend/gemach/services/inventory_service.py

from __future__ import annotations

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm.exc import StaleDataError

from ..errors import InsufficientStockError, InvalidArgumentError, InvalidStateError, NotFoundError
from ..extensions import db
from ..models import InventoryItem, Location, VALID_COLORS
from gemach.time_utils import utcnow
from . import audit_service
from .authorization import Actor
from .concurrency import lock_for_update, run_with_retry
"""
Inventory Ledger Invariants (authoritative)

- One row per (location_id, color); quantity is a stored counter, not derived.
- quantity >= 0 at all times. An adjustment that would go negative raises
  InsufficientStockError and writes nothing (no partial decrement, no floor).
- Rows are created lazily by the first positive adjustment.
- adjust() is check-and-set: SELECT ... FOR UPDATE where the database honours
  it, plus the version_id column so a concurrent writer gets StaleDataError and
  the retry re-reads the winner's quantity before re-checking the floor.
"""


def validate_color(color: str) -> str:
    if not isinstance(color, str) or not color.strip():
        raise InvalidArgumentError("color is required")
    normalized = color.strip().lower()
    if normalized not in VALID_COLORS:
        raise InvalidArgumentError(f"Invalid color: {color}. Must be one of {list(VALID_COLORS)}")
    return normalized


def _validate_int(value, field: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidArgumentError(f"{field} must be an integer")
    return value


def _ensure_location(location_id: int) -> Location:
    location = db.session.get(Location, location_id)
    if location is None:
        raise NotFoundError(f"Location {location_id} not found")
    return location


def _get_item(location_id: int, color: str, *, lock: bool = False) -> InventoryItem | None:
    query = db.session.query(InventoryItem).filter_by(location_id=location_id, color=color)
    if lock:
        query = lock_for_update(query)
    return query.first()


def _record(actor: Actor, action: str, location_id: int, metadata: dict) -> None:
    audit_service.record(
        action=action,
        entity_type="location",
        entity_id=location_id,
        actor=actor,
        metadata=metadata,
    )


def get_by_location(location_id: int) -> list[InventoryItem]:
    """Inventory rows for a location in the canonical color order."""
    _ensure_location(location_id)
    items = db.session.query(InventoryItem).filter_by(location_id=location_id).all()
    order = {color: index for index, color in enumerate(VALID_COLORS)}
    return sorted(items, key=lambda item: order.get(item.color, len(order)))


def get_quantity(location_id: int, color: str) -> int:
    item = _get_item(location_id, validate_color(color))
    return item.quantity if item else 0


def total(location_id: int) -> int:
    """Sum of all colors at a location."""
    _ensure_location(location_id)
    value = db.session.query(
        func.coalesce(func.sum(InventoryItem.quantity), 0)
    ).filter(InventoryItem.location_id == location_id).scalar()
    return int(value or 0)


def get_inventory_summary(location_id: int) -> dict:
    items = get_by_location(location_id)
    return {
        "location_id": location_id,
        "colors": {item.color: item.quantity for item in items},
        "total": sum(item.quantity for item in items),
    }


def adjust_locked(location_id: int, color: str, delta: int) -> int:
    """
    Apply a stock delta inside the caller's unit of work (no commit).

    Raises InsufficientStockError before any write if the result would be
    negative, including a decrement of a color that has no row yet.
    """
    color = validate_color(color)
    delta = _validate_int(delta, "delta")
    _ensure_location(location_id)

    item = _get_item(location_id, color, lock=True)
    current = item.quantity if item else 0
    new_quantity = current + delta

    if new_quantity < 0:
        raise InsufficientStockError(location_id, color, requested=-delta, available=current)

    if item is None:
        if delta == 0:
            return 0
        try:
            with db.session.begin_nested():
                db.session.add(InventoryItem(
                    location_id=location_id,
                    color=color,
                    quantity=new_quantity,
                    updated_at=utcnow(),
                ))
        except IntegrityError:
            # Another writer created the row first; retry against it
            raise StaleDataError(f"inventory row {location_id}/{color} created concurrently")
        return new_quantity

    if delta != 0:
        item.quantity = new_quantity
        item.updated_at = utcnow()
        db.session.flush()

    return new_quantity


def adjust(location_id: int, color: str, delta: int, *, actor: Actor | None = None) -> int:
    """
    Atomically add (delta > 0) or remove (delta < 0) stock.

    Returns:
        New quantity for the color.

    Raises:
        InsufficientStockError: result would be negative (nothing written)
        InvalidArgumentError: unknown color or non-integer delta
        NotFoundError: location missing
    """
    def _op():
        new_quantity = adjust_locked(location_id, color, delta)
        if actor is not None:
            _record(actor, "inventory_adjusted", location_id, {"color": color, "delta": delta, "quantity": new_quantity})
        db.session.commit()
        return new_quantity

    return run_with_retry(_op)


def set_absolute(location_id: int, color: str, quantity: int, *, actor: Actor | None = None) -> InventoryItem:
    """Admin override of a color's count."""
    def _op():
        normalized = validate_color(color)
        value = _validate_int(quantity, "quantity")
        if value < 0:
            raise InvalidArgumentError("quantity must be >= 0")
        _ensure_location(location_id)

        item = _get_item(location_id, normalized, lock=True)
        if item is None:
            item = InventoryItem(location_id=location_id, color=normalized, quantity=value, updated_at=utcnow())
            db.session.add(item)
        else:
            item.quantity = value
            item.updated_at = utcnow()
        if actor is not None:
            _record(actor, "inventory_set", location_id, {"color": normalized, "quantity": value})
        db.session.commit()
        return item

    return run_with_retry(_op)


def remove_color(location_id: int, color: str, *, force: bool = False, actor: Actor | None = None) -> None:
    """Delete a color row. Rows still holding stock need force=True."""
    def _op():
        normalized = validate_color(color)
        item = _get_item(location_id, normalized, lock=True)
        if item is None:
            raise NotFoundError(f"No {normalized} inventory at location {location_id}")
        if item.quantity > 0 and not force:
            raise InvalidStateError(
                f"Cannot remove {normalized} while {item.quantity} item(s) are in stock"
            )
        db.session.delete(item)
        if actor is not None:
            _record(actor, "inventory_color_removed", location_id, {"color": normalized, "quantity": item.quantity, "force": force})
        db.session.commit()

    run_with_retry(_op)
