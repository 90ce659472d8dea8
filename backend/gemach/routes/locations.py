# Overview: Flask API routes for location administration and payment-method configuration.

# backend/gemach/routes/locations.py
"""
Location API Routes

SECURITY:
- Listing active locations is public (borrowers pick where to borrow)
- Create/delete and global payment methods: admin only
- Update, PIN and per-location method toggles: admin or that location's operator
"""

from flask import Blueprint, current_app, g, jsonify, request

from ..decorators import error_response, require_admin, require_auth
from ..errors import DepositError
from ..services import location_service


locations_bp = Blueprint("locations", __name__, url_prefix="/api/locations")


def _location_kwargs(data: dict) -> dict:
    mapping = {
        "contactPerson": "contact_person",
        "depositAmount": "deposit_amount",
        "paymentMethods": "payment_methods",
        "processingFeeBps": "processing_fee_bps",
        "isActive": "is_active",
    }
    kwargs = {}
    for key, value in data.items():
        name = mapping.get(key, key)
        if name in location_service.LOCATION_FIELDS or name in mapping.values():
            kwargs[name] = value
    return kwargs


@locations_bp.get("")
def list_locations_route():
    include_inactive = request.args.get("includeInactive", "false").lower() == "true"
    locations = location_service.list_locations(include_inactive=include_inactive)
    return jsonify({"locations": [loc.to_dict() for loc in locations]}), 200


@locations_bp.get("/<int:location_id>")
def get_location_route(location_id: int):
    try:
        return jsonify({"location": location_service.get_location(location_id).to_dict()}), 200
    except DepositError as e:
        return error_response(e)


@locations_bp.post("")
@require_auth
@require_admin
def create_location_route():
    """
    Request body:
    {
        "name": "Lakewood", "locationCode": "LKW",
        "depositAmount": 20, "paymentMethods": ["cash", "stripe"],
        "processingFeeBps": 300, "operatorPin": "1234",
        "contactPerson": "...", "address": "...", "phone": "...", "email": "..."
    }
    """
    try:
        data = request.get_json(silent=True) or {}
        kwargs = _location_kwargs(data)
        kwargs.pop("is_active", None)
        name = kwargs.pop("name", None)
        location = location_service.create_location(
            name,
            data.get("locationCode") or data.get("location_code"),
            actor=g.actor,
            operator_pin=data.get("operatorPin") or data.get("operator_pin"),
            **kwargs,
        )
        return jsonify({"location": location.to_dict()}), 201
    except DepositError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to create location")
        return jsonify({"error": "Internal server error"}), 500


@locations_bp.patch("/<int:location_id>")
@require_auth
def update_location_route(location_id: int):
    try:
        data = request.get_json(silent=True) or {}
        location = location_service.update_location(location_id, actor=g.actor, **_location_kwargs(data))
        return jsonify({"location": location.to_dict()}), 200
    except DepositError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to update location")
        return jsonify({"error": "Internal server error"}), 500


@locations_bp.delete("/<int:location_id>")
@require_auth
@require_admin
def delete_location_route(location_id: int):
    """409 when transactions reference the location; deactivate it instead."""
    try:
        location_service.delete_location(location_id, actor=g.actor)
        return jsonify({"deleted": True}), 200
    except DepositError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to delete location")
        return jsonify({"error": "Internal server error"}), 500


@locations_bp.put("/<int:location_id>/pin")
@require_auth
def set_pin_route(location_id: int):
    try:
        data = request.get_json(silent=True) or {}
        location_service.set_operator_pin(location_id, data.get("pin"), actor=g.actor)
        return jsonify({"updated": True}), 200
    except DepositError as e:
        return error_response(e)


# =============================================================================
# PAYMENT METHODS
# =============================================================================

@locations_bp.get("/payment-methods")
@require_auth
def list_payment_methods_route():
    methods = location_service.list_payment_methods()
    return jsonify({"payment_methods": [m.to_dict() for m in methods]}), 200


@locations_bp.put("/payment-methods/<name>")
@require_auth
@require_admin
def upsert_payment_method_route(name: str):
    """
    Request body: {"displayName", "isActive", "isAvailableToLocations",
    "processingFeeBps", "fixedFeeCents"} (all optional)
    """
    try:
        data = request.get_json(silent=True) or {}
        method = location_service.upsert_payment_method(
            name,
            actor=g.actor,
            display_name=data.get("displayName"),
            is_active=data.get("isActive"),
            is_available_to_locations=data.get("isAvailableToLocations"),
            processing_fee_bps=data.get("processingFeeBps"),
            fixed_fee_cents=data.get("fixedFeeCents"),
        )
        return jsonify({"payment_method": method.to_dict()}), 200
    except DepositError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to configure payment method")
        return jsonify({"error": "Internal server error"}), 500


@locations_bp.get("/<int:location_id>/payment-methods")
@require_auth
def list_location_methods_route(location_id: int):
    try:
        links = location_service.list_location_methods(location_id)
        return jsonify({"payment_methods": [link.to_dict() for link in links]}), 200
    except DepositError as e:
        return error_response(e)


@locations_bp.put("/<int:location_id>/payment-methods/<name>")
@require_auth
def set_location_method_route(location_id: int, name: str):
    """Request body: {"enabled": true, "customProcessingFeeBps": 250}"""
    try:
        data = request.get_json(silent=True) or {}
        link = location_service.set_location_method(
            location_id,
            name,
            actor=g.actor,
            enabled=bool(data.get("enabled", True)),
            custom_processing_fee_bps=data.get("customProcessingFeeBps"),
        )
        return jsonify({"payment_method": link.to_dict()}), 200
    except DepositError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to configure location payment method")
        return jsonify({"error": "Internal server error"}), 500
