# Overview: Flask API routes for per-location colored inventory.

# backend/gemach/routes/inventory.py
"""
Inventory API Routes

Reads are public (borrowers see what is on the shelf). Changes need a staff
session scoped to the location.
"""

from flask import Blueprint, current_app, g, jsonify, request

from ..decorators import error_response, require_auth
from ..errors import DepositError
from ..services import inventory_service
from ..services.authorization import require_location_access


inventory_bp = Blueprint("inventory", __name__, url_prefix="/api/locations")


@inventory_bp.get("/<int:location_id>/inventory")
def get_inventory_route(location_id: int):
    try:
        return jsonify(inventory_service.get_inventory_summary(location_id)), 200
    except DepositError as e:
        return error_response(e)


@inventory_bp.post("/<int:location_id>/inventory")
@require_auth
def adjust_inventory_route(location_id: int):
    """
    Request body: {"color": "blue", "quantity": 3}
    quantity is a delta; negative removes stock and never goes below zero.
    """
    try:
        require_location_access(g.actor, location_id, "change inventory")
        data = request.get_json(silent=True) or {}
        color = data.get("color")
        delta = data.get("quantity")
        quantity = inventory_service.adjust(location_id, color, delta, actor=g.actor)
        return jsonify({"location_id": location_id, "color": color, "quantity": quantity}), 200
    except DepositError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to adjust inventory")
        return jsonify({"error": "Internal server error"}), 500


@inventory_bp.put("/<int:location_id>/inventory")
@require_auth
def set_inventory_route(location_id: int):
    """Request body: {"color": "blue", "quantity": 10} (absolute count)"""
    try:
        require_location_access(g.actor, location_id, "change inventory")
        data = request.get_json(silent=True) or {}
        item = inventory_service.set_absolute(location_id, data.get("color"), data.get("quantity"), actor=g.actor)
        return jsonify({"item": item.to_dict()}), 200
    except DepositError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to set inventory")
        return jsonify({"error": "Internal server error"}), 500


@inventory_bp.delete("/<int:location_id>/inventory/<color>")
@require_auth
def remove_inventory_route(location_id: int, color: str):
    """?force=true removes a color that still has stock."""
    try:
        require_location_access(g.actor, location_id, "change inventory")
        force = request.args.get("force", "false").lower() == "true"
        inventory_service.remove_color(location_id, color, force=force, actor=g.actor)
        return jsonify({"deleted": True}), 200
    except DepositError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to remove inventory color")
        return jsonify({"error": "Internal server error"}), 500
