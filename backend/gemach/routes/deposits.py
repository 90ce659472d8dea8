# Overview: Flask API routes for deposit operations; parses input and returns JSON responses.

# backend/gemach/routes/deposits.py
"""
Deposit API Routes

DESIGN:
- Borrowers (no token) may view payment options, initiate a deposit and
  check their pay-later status link
- Staff confirm cash, refund, charge or release saved cards
- An operator at the counter without a session may refund with the
  location PIN (pin + locationId in the body)

SECURITY:
- Role and location scoping happens in the services; routes only build the
  Actor and translate DepositError into JSON
"""

from flask import Blueprint, current_app, g, jsonify, request

from ..decorators import error_response, load_actor, require_auth
from ..errors import DepositError
from ..services import deposit_service, location_service, pay_later_service
from ..services.authorization import ROLE_OPERATOR, Actor
from gemach.time_utils import parse_iso_datetime


deposits_bp = Blueprint("deposits", __name__, url_prefix="/api/deposits")


def _field(data: dict, camel: str, snake: str, default=None):
    """Accept either camelCase (browser clients) or snake_case keys."""
    if camel in data:
        return data[camel]
    return data.get(snake, default)


def _pin_actor(data: dict) -> tuple[Actor | None, int | None]:
    pin = data.get("pin")
    location_id = _field(data, "locationId", "location_id")
    if not pin or location_id is None:
        return None, None
    if not location_service.verify_operator_pin(int(location_id), pin):
        return None, None
    actor = Actor(
        role=ROLE_OPERATOR,
        location_id=int(location_id),
        username=f"pin:{location_id}",
        ip_address=request.remote_addr,
        user_agent=request.headers.get("User-Agent"),
    )
    return actor, int(location_id)


# =============================================================================
# BORROWER-FACING
# =============================================================================

@deposits_bp.get("/options/<int:location_id>")
def payment_options_route(location_id: int):
    """Deposit amount, enabled methods and per-method fee for a location."""
    try:
        return jsonify(deposit_service.get_payment_options(location_id)), 200
    except DepositError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to load payment options")
        return jsonify({"error": "Internal server error"}), 500


@deposits_bp.post("/initiate")
@load_actor
def initiate_route():
    """
    Start a deposit.

    Request body (either an existing transaction or borrower details):
    {
        "locationId": 1,
        "paymentMethod": "cash" | "stripe" | "paypal",
        "payLater": false,
        "transactionId": 12,                (optional)
        "borrowerName": "...", "borrowerPhone": "...", "borrowerEmail": "...",
        "headbandColor": "blue", "expectedReturnDate": "2026-01-31T00:00:00Z"
    }

    Returns:
        201: {transactionId, paymentId, status, clientSecret?, publishableKey?, approvalUrl?, statusToken?}
    """
    try:
        data = request.get_json(silent=True) or {}
        method = _field(data, "paymentMethod", "payment_method")
        pay_later = bool(_field(data, "payLater", "pay_later", False))
        location_id = _field(data, "locationId", "location_id")
        transaction_id = _field(data, "transactionId", "transaction_id")

        if location_id is None:
            return jsonify({"error": "locationId required"}), 400

        if transaction_id is not None:
            result = deposit_service.initiate_payment(
                int(transaction_id), int(location_id), method, pay_later=pay_later, actor=g.actor
            )
        else:
            expected = _field(data, "expectedReturnDate", "expected_return_date")
            result = deposit_service.initiate_deposit(
                {
                    "location_id": int(location_id),
                    "borrower_name": _field(data, "borrowerName", "borrower_name"),
                    "borrower_phone": _field(data, "borrowerPhone", "borrower_phone"),
                    "borrower_email": _field(data, "borrowerEmail", "borrower_email"),
                    "headband_color": _field(data, "headbandColor", "headband_color"),
                    "notes": data.get("notes"),
                    "expected_return_date": parse_iso_datetime(expected) if expected else None,
                },
                method,
                pay_later=pay_later,
                actor=g.actor,
            )
        return jsonify(result.to_dict()), 201

    except DepositError as e:
        return error_response(e)
    except ValueError:
        return jsonify({"error": "Invalid id or date"}), 400
    except Exception:
        current_app.logger.exception("Failed to initiate deposit")
        return jsonify({"error": "Internal server error"}), 500


@deposits_bp.get("/status/<int:transaction_id>")
def status_route(transaction_id: int):
    """Borrower status link: ?token=<raw token from the setup response>."""
    tx = pay_later_service.get_transaction_by_token(transaction_id, request.args.get("token", ""))
    if tx is None:
        return jsonify({"error": "Not found"}), 404
    return jsonify({
        "transactionId": tx.id,
        "borrowerName": tx.borrower_name,
        "status": tx.pay_later_status,
        "amountCents": tx.amount_planned_cents,
        "currency": tx.currency,
        "isReturned": tx.is_returned,
    }), 200


# =============================================================================
# CONFIRMATION
# =============================================================================

@deposits_bp.post("/<int:payment_id>/confirm")
@require_auth
def confirm_route(payment_id: int):
    """
    Request body: {"confirmed": true, "notes": "..."}

    Returns:
        200: updated payment
        403: borrower, or operator of another location
        409: payment not awaiting confirmation
    """
    try:
        data = request.get_json(silent=True) or {}
        if "confirmed" not in data:
            return jsonify({"error": "confirmed required"}), 400
        payment = deposit_service.confirm_payment(
            payment_id, g.actor, bool(data["confirmed"]), data.get("notes")
        )
        return jsonify({"payment": payment.to_dict()}), 200
    except DepositError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to confirm payment")
        return jsonify({"error": "Internal server error"}), 500


@deposits_bp.post("/bulk-confirm")
@require_auth
def bulk_confirm_route():
    """Request body: {"paymentIds": [1, 2, 3]}. Each id succeeds or fails on its own."""
    try:
        data = request.get_json(silent=True) or {}
        payment_ids = _field(data, "paymentIds", "payment_ids")
        if not isinstance(payment_ids, list) or not payment_ids:
            return jsonify({"error": "paymentIds must be a non-empty list"}), 400
        result = deposit_service.bulk_confirm(payment_ids, g.actor)
        return jsonify(result), 200
    except DepositError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to bulk confirm payments")
        return jsonify({"error": "Internal server error"}), 500


@deposits_bp.get("/pending")
@require_auth
def pending_route():
    try:
        payments = deposit_service.get_pending_confirmations(g.actor)
        return jsonify({"payments": [p.to_dict() for p in payments]}), 200
    except DepositError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to load pending confirmations")
        return jsonify({"error": "Internal server error"}), 500


@deposits_bp.get("/location/<int:location_id>")
@require_auth
def location_payments_route(location_id: int):
    payments = deposit_service.get_payments_by_location(location_id, g.actor)
    return jsonify({"payments": [p.to_dict() for p in payments]}), 200


@deposits_bp.get("/transaction/<int:transaction_id>")
@require_auth
def transaction_payments_route(transaction_id: int):
    try:
        payments = deposit_service.get_payments_for_transaction(transaction_id, g.actor)
        return jsonify({"payments": [p.to_dict() for p in payments]}), 200
    except DepositError as e:
        return error_response(e)


# =============================================================================
# REFUND / CARD RESOLUTION
# =============================================================================

@deposits_bp.post("/<int:transaction_id>/refund")
@load_actor
def refund_route(transaction_id: int):
    """
    Request body: {"refundAmount": "15.00"} (optional, default full deposit)

    PIN auth: without a bearer token, {"pin": "1234", "locationId": 3}
    scopes the caller to that location.
    """
    try:
        data = request.get_json(silent=True) or {}
        actor = g.actor
        pin_location = None
        if not actor.is_staff:
            pin_actor, pin_location = _pin_actor(data)
            if pin_actor is not None:
                actor = pin_actor
        result = deposit_service.refund_deposit(
            transaction_id,
            actor,
            _field(data, "refundAmount", "refund_amount"),
            location_id_for_pin_auth=pin_location,
        )
        return jsonify(result.to_dict()), 200
    except DepositError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to refund deposit")
        return jsonify({"error": "Internal server error"}), 500


@deposits_bp.post("/setup-request")
@require_auth
def setup_request_route():
    """Operator creates a pay-later transaction and sends the borrower the setup link."""
    try:
        data = request.get_json(silent=True) or {}
        location_id = _field(data, "locationId", "location_id")
        if location_id is None:
            return jsonify({"error": "locationId required"}), 400
        result = pay_later_service.create_setup_request(
            int(location_id),
            _field(data, "borrowerName", "borrower_name"),
            email=_field(data, "borrowerEmail", "borrower_email"),
            phone=_field(data, "borrowerPhone", "borrower_phone"),
            color=_field(data, "headbandColor", "headband_color"),
            amount_cents=_field(data, "amountCents", "amount_cents"),
            actor=g.actor,
        )
        return jsonify(result.to_dict()), 201
    except DepositError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to create setup request")
        return jsonify({"error": "Internal server error"}), 500


@deposits_bp.post("/<int:transaction_id>/approve")
@require_auth
def approve_route(transaction_id: int):
    try:
        tx = pay_later_service.approve(transaction_id, g.actor)
        return jsonify({"transaction": tx.to_dict()}), 200
    except DepositError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to approve saved card")
        return jsonify({"error": "Internal server error"}), 500


@deposits_bp.post("/<int:transaction_id>/charge")
@require_auth
def charge_route(transaction_id: int):
    """
    Charge the saved card.

    Returns 200 with success=false (not an HTTP error) when the card was
    declined or needs borrower authentication.
    """
    try:
        result = pay_later_service.charge_card(transaction_id, g.actor)
        return jsonify(result.to_dict()), 200
    except DepositError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to charge saved card")
        return jsonify({"error": "Internal server error"}), 500


@deposits_bp.post("/<int:transaction_id>/decline")
@require_auth
def decline_route(transaction_id: int):
    """Request body: {"reason": "Item returned in good condition"}"""
    try:
        data = request.get_json(silent=True) or {}
        tx = pay_later_service.decline_card(transaction_id, data.get("reason"), g.actor)
        return jsonify({"transaction": tx.to_dict()}), 200
    except DepositError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to decline saved card")
        return jsonify({"error": "Internal server error"}), 500
