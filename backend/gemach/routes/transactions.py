# Overview: Flask API routes for lending transactions; parses input and returns JSON responses.

# backend/gemach/routes/transactions.py
"""
Transaction API Routes

DESIGN:
- POST creates the loan; with a headbandColor the item leaves the shelf in
  the same unit of work
- PATCH /<id>/return settles the loan: refund, return flag, restock
- Listing is scoped to the caller's location unless admin
"""

from flask import Blueprint, current_app, g, jsonify, request

from ..decorators import error_response, load_actor, require_auth
from ..errors import DepositError
from ..services import deposit_service, transaction_service
from ..services.transaction_service import authorize_transaction_access
from gemach.time_utils import parse_iso_datetime


transactions_bp = Blueprint("transactions", __name__, url_prefix="/api/transactions")


def _field(data: dict, camel: str, snake: str, default=None):
    if camel in data:
        return data[camel]
    return data.get(snake, default)


def _parse_bool(value: str | None) -> bool | None:
    if value is None:
        return None
    return value.strip().lower() in ("1", "true", "yes")


@transactions_bp.get("")
@require_auth
def list_transactions_route():
    """
    Query params:
    - locationId: filter (operators are always pinned to their own)
    - isReturned: true | false
    - limit: default 200
    """
    try:
        location_id = request.args.get("locationId", type=int)
        is_returned = _parse_bool(request.args.get("isReturned"))
        limit = min(request.args.get("limit", 200, type=int), 1000)
        transactions = transaction_service.list_transactions(
            g.actor, location_id=location_id, is_returned=is_returned, limit=limit
        )
        return jsonify({"transactions": [t.to_dict() for t in transactions]}), 200
    except DepositError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to list transactions")
        return jsonify({"error": "Internal server error"}), 500


@transactions_bp.post("")
@load_actor
def create_transaction_route():
    """
    Request body:
    {
        "locationId": 1,
        "borrowerName": "...",
        "borrowerPhone": "...", "borrowerEmail": "...",
        "headbandColor": "blue",          (optional; lends the item now)
        "depositAmount": "20.00",          (optional; location default)
        "expectedReturnDate": "...",       (optional)
        "notes": "..."
    }
    """
    try:
        data = request.get_json(silent=True) or {}
        location_id = _field(data, "locationId", "location_id")
        if location_id is None:
            return jsonify({"error": "locationId required"}), 400

        expected = _field(data, "expectedReturnDate", "expected_return_date")
        fields = {
            "phone": _field(data, "borrowerPhone", "borrower_phone"),
            "email": _field(data, "borrowerEmail", "borrower_email"),
            "deposit_amount": _field(data, "depositAmount", "deposit_amount"),
            "expected_return_date": parse_iso_datetime(expected) if expected else None,
            "notes": data.get("notes"),
        }
        borrower_name = _field(data, "borrowerName", "borrower_name")
        color = _field(data, "headbandColor", "headband_color")

        if color:
            tx = transaction_service.lend_item(int(location_id), borrower_name, color, actor=g.actor, **fields)
        else:
            tx = transaction_service.create_transaction(int(location_id), borrower_name, **fields)
        return jsonify({"transaction": tx.to_dict()}), 201

    except DepositError as e:
        return error_response(e)
    except ValueError:
        return jsonify({"error": "Invalid id or date"}), 400
    except Exception:
        current_app.logger.exception("Failed to create transaction")
        return jsonify({"error": "Internal server error"}), 500


@transactions_bp.get("/<int:transaction_id>")
@require_auth
def get_transaction_route(transaction_id: int):
    try:
        tx = transaction_service.get_transaction(transaction_id)
        authorize_transaction_access(g.actor, tx, "view this transaction")
        return jsonify({
            "transaction": tx.to_dict(),
            "payments": [p.to_dict() for p in tx.payments],
        }), 200
    except DepositError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to load transaction")
        return jsonify({"error": "Internal server error"}), 500


@transactions_bp.patch("/<int:transaction_id>/return")
@require_auth
def return_route(transaction_id: int):
    """
    Request body:
    {
        "refundAmount": "20.00",   (optional; wins over condition)
        "condition": "good" | "damaged" | "missing",
        "restock": true,
        "notes": "..."
    }

    Returns:
        200: {transaction, refund, restocked, cardResolution, warnings}
        409: already returned
    """
    try:
        data = request.get_json(silent=True) or {}
        result = deposit_service.process_return(
            transaction_id,
            g.actor,
            _field(data, "refundAmount", "refund_amount"),
            condition=data.get("condition"),
            restock=bool(data.get("restock", True)),
            notes=data.get("notes"),
        )
        return jsonify(result.to_dict()), 200
    except DepositError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to process return")
        return jsonify({"error": "Internal server error"}), 500
