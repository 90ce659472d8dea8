# backend/gemach/routes/system.py
"""
System health endpoint.

Checks the database and reports whether each payment provider has the
credentials it needs, for deployment debugging.
"""

import time

from flask import Blueprint, current_app

from ..extensions import db
from ..models import Location, Payment, SessionToken
from gemach.time_utils import utcnow

system_bp = Blueprint("system", __name__)


def check_database_health() -> dict:
    start_time = time.time()
    try:
        location_count = db.session.query(Location).count()
        open_payments = db.session.query(Payment).filter(Payment.status.in_(["pending", "confirming", "pending_retry"])).count()
        active_sessions = db.session.query(SessionToken).filter_by(is_revoked=False).count()
        elapsed_ms = (time.time() - start_time) * 1000
        return {
            "status": "healthy",
            "latency_ms": round(elapsed_ms, 2),
            "details": {
                "locations": location_count,
                "open_payments": open_payments,
                "active_sessions": active_sessions,
            },
        }
    except Exception:
        elapsed_ms = (time.time() - start_time) * 1000
        current_app.logger.exception("Database health check failed")
        return {
            "status": "unhealthy",
            "latency_ms": round(elapsed_ms, 2),
            "error": "Database error",
        }


def check_providers() -> dict:
    """Configuration only; no network calls."""
    config = current_app.config
    stripe_ready = bool(config.get("STRIPE_SECRET_KEY"))
    paypal_ready = bool(config.get("PAYPAL_CLIENT_ID") and config.get("PAYPAL_CLIENT_SECRET"))
    return {
        "status": "healthy" if stripe_ready and paypal_ready else "degraded",
        "details": {
            "cash": True,
            "stripe": stripe_ready,
            "stripe_webhooks": bool(config.get("STRIPE_WEBHOOK_SECRET")),
            "paypal": paypal_ready,
            "paypal_webhooks": bool(config.get("PAYPAL_WEBHOOK_ID")),
        },
    }


@system_bp.get("/health")
def health():
    """
    Returns:
    - 200: database reachable (providers may be degraded)
    - 503: database unhealthy
    """
    start_time = time.time()
    database_health = check_database_health()
    provider_health = check_providers()

    if database_health["status"] == "unhealthy":
        overall_status = "unhealthy"
        http_status = 503
    elif provider_health["status"] == "degraded":
        overall_status = "degraded"
        http_status = 200
    else:
        overall_status = "healthy"
        http_status = 200

    return {
        "status": overall_status,
        "timestamp": utcnow().isoformat() + "Z",
        "total_latency_ms": round((time.time() - start_time) * 1000, 2),
        "checks": {
            "database": database_health,
            "providers": provider_health,
        },
    }, http_status
