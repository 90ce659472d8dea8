# Overview: Read-only analytics, reconciliation and audit-trail endpoints.

from flask import Blueprint, g, jsonify, request

from ..decorators import error_response, require_admin, require_auth
from ..errors import ForbiddenError
from ..services import audit_service, reporting_service
from ..services.authorization import require_location_access


reports_bp = Blueprint("reports", __name__, url_prefix="/api")


def _scoped_location_id():
    """Admins may pick any location (or none); operators are pinned to theirs."""
    location_id = request.args.get("locationId", type=int)
    if g.actor.is_admin:
        return location_id
    if location_id is None:
        location_id = g.actor.location_id
    require_location_access(g.actor, location_id, "view reports")
    return location_id


@reports_bp.get("/reports/deposits")
@require_auth
def deposit_analytics_route():
    try:
        return jsonify(reporting_service.deposit_analytics(_scoped_location_id())), 200
    except ForbiddenError as e:
        return error_response(e)


@reports_bp.get("/reports/reconciliation")
@require_auth
def reconciliation_route():
    try:
        report = reporting_service.reconciliation_report(
            _scoped_location_id(),
            request.args.get("start"),
            request.args.get("end"),
        )
        return jsonify(report), 200
    except ForbiddenError as e:
        return error_response(e)
    except ValueError:
        return jsonify({"error": "start/end must be ISO-8601 datetimes"}), 400


@reports_bp.get("/reports/payment-methods")
@require_auth
def payment_method_route():
    try:
        report = reporting_service.payment_method_analytics(
            _scoped_location_id(),
            request.args.get("start"),
            request.args.get("end"),
        )
        return jsonify(report), 200
    except ForbiddenError as e:
        return error_response(e)
    except ValueError:
        return jsonify({"error": "start/end must be ISO-8601 datetimes"}), 400


@reports_bp.get("/reports/detection")
@require_auth
def detection_route():
    try:
        return jsonify(reporting_service.detection_analytics(_scoped_location_id())), 200
    except ForbiddenError as e:
        return error_response(e)


@reports_bp.get("/reports/refunds")
@require_auth
def refunds_route():
    try:
        report = reporting_service.refund_report(
            request.args.get("start"),
            request.args.get("end"),
            location_id=_scoped_location_id(),
        )
        return jsonify(report), 200
    except ForbiddenError as e:
        return error_response(e)
    except ValueError:
        return jsonify({"error": "start/end must be ISO-8601 datetimes"}), 400


@reports_bp.get("/audit-trail")
@require_auth
@require_admin
def audit_trail_route():
    """
    ?entityType=transaction&entityId=12 for one entity, otherwise the most
    recent entries (?limit=50&action=deposit_refunded).
    """
    entity_type = request.args.get("entityType")
    entity_id = request.args.get("entityId", type=int)
    if entity_type and entity_id is not None:
        entries = audit_service.get_audit_trail(entity_type, entity_id)
    else:
        limit = min(request.args.get("limit", 50, type=int), 500)
        entries = audit_service.get_recent_entries(limit=limit, action=request.args.get("action"))
    return jsonify({"entries": [entry.to_dict() for entry in entries]}), 200
