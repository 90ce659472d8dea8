from __future__ import annotations

from ..extensions import db
from gemach.time_utils import to_utc_z


# Colors the gemachs stock
VALID_COLORS = (
    "red",
    "blue",
    "black",
    "white",
    "pink",
    "purple",
    "gray",
    "green",
    "yellow",
)


class InventoryItem(db.Model):
    """
    Per-location count of earmuffs available for one color.

    Rows are created lazily on the first stock addition. quantity is never
    negative: the check constraint backs up the service-level guard, and
    version_id turns concurrent read-modify-write into a StaleDataError.
    """
    __tablename__ = "inventory_items"
    __table_args__ = (
        db.UniqueConstraint("location_id", "color", name="uq_inventory_location_color"),
        db.CheckConstraint("quantity >= 0", name="ck_inventory_quantity_non_negative"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    location_id = db.Column(db.Integer, db.ForeignKey("locations.id"), nullable=False, index=True)
    color = db.Column(db.String(16), nullable=False)
    quantity = db.Column(db.Integer, nullable=False, default=0)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    version_id = db.Column(db.Integer, nullable=False, default=1)

    location = db.relationship("Location", backref=db.backref("inventory_items", lazy=True))
    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "location_id": self.location_id,
            "color": self.color,
            "quantity": self.quantity,
            "updated_at": to_utc_z(self.updated_at),
            "version_id": self.version_id,
        }
