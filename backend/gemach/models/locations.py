from __future__ import annotations

from ..extensions import db
from gemach.time_utils import to_utc_z


class Location(db.Model):
    """
    A gemach lending site.

    WHY: Deposits, inventory and operators are all scoped to a location.
    Locations are deactivated, never deleted while transactions reference them.
    """
    __tablename__ = "locations"
    __table_args__ = (
        db.UniqueConstraint("location_code", name="uq_locations_code"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), nullable=False)
    location_code = db.Column(db.String(32), nullable=False, index=True)

    contact_person = db.Column(db.String(255), nullable=True)
    address = db.Column(db.String(255), nullable=True)
    phone = db.Column(db.String(64), nullable=True)
    email = db.Column(db.String(255), nullable=True)

    is_active = db.Column(db.Boolean, nullable=False, default=True, index=True)

    # Default deposit in whole currency units
    deposit_amount = db.Column(db.Integer, nullable=False, default=20)

    # Ordered list of accepted method names, e.g. ["cash", "stripe"]
    payment_methods = db.Column(db.JSON, nullable=False, default=lambda: ["cash"])

    # Basis points: 300 = 3.00%
    processing_fee_bps = db.Column(db.Integer, nullable=False, default=300)

    # Bcrypt hashed operator PIN
    operator_pin_hash = db.Column(db.String(255), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "location_code": self.location_code,
            "contact_person": self.contact_person,
            "address": self.address,
            "phone": self.phone,
            "email": self.email,
            "is_active": self.is_active,
            "deposit_amount": self.deposit_amount,
            "payment_methods": list(self.payment_methods or []),
            "processing_fee_bps": self.processing_fee_bps,
            "has_operator_pin": self.operator_pin_hash is not None,
            "created_at": to_utc_z(self.created_at),
        }


class PaymentMethod(db.Model):
    """
    Admin-configured global payment method with its fee schedule.

    name is the provider lookup key: "cash", "stripe", "paypal".
    """
    __tablename__ = "payment_methods"
    __table_args__ = (
        db.UniqueConstraint("name", name="uq_payment_methods_name"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(32), nullable=False)
    display_name = db.Column(db.String(64), nullable=False)
    provider = db.Column(db.String(32), nullable=True)  # null for cash/manual methods

    is_active = db.Column(db.Boolean, nullable=False, default=True)
    is_available_to_locations = db.Column(db.Boolean, nullable=False, default=False)

    processing_fee_bps = db.Column(db.Integer, nullable=False, default=0)
    fixed_fee_cents = db.Column(db.Integer, nullable=False, default=0)

    requires_api = db.Column(db.Boolean, nullable=False, default=False)
    is_configured = db.Column(db.Boolean, nullable=False, default=False)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "display_name": self.display_name,
            "provider": self.provider,
            "is_active": self.is_active,
            "is_available_to_locations": self.is_available_to_locations,
            "processing_fee_bps": self.processing_fee_bps,
            "fixed_fee_cents": self.fixed_fee_cents,
            "requires_api": self.requires_api,
            "is_configured": self.is_configured,
            "created_at": to_utc_z(self.created_at),
        }


class LocationPaymentMethod(db.Model):
    """Which global payment methods a location has enabled, with optional fee override."""
    __tablename__ = "location_payment_methods"
    __table_args__ = (
        db.UniqueConstraint("location_id", "payment_method_id", name="uq_location_payment_method"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    location_id = db.Column(db.Integer, db.ForeignKey("locations.id"), nullable=False, index=True)
    payment_method_id = db.Column(db.Integer, db.ForeignKey("payment_methods.id"), nullable=False, index=True)
    is_enabled = db.Column(db.Boolean, nullable=False, default=True)
    custom_processing_fee_bps = db.Column(db.Integer, nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    location = db.relationship("Location", backref=db.backref("method_links", lazy=True))
    payment_method = db.relationship("PaymentMethod")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "location_id": self.location_id,
            "payment_method_id": self.payment_method_id,
            "method": self.payment_method.name if self.payment_method else None,
            "is_enabled": self.is_enabled,
            "custom_processing_fee_bps": self.custom_processing_fee_bps,
            "created_at": to_utc_z(self.created_at),
        }
