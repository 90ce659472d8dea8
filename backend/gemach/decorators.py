# Overview: Request decorators that establish the calling Actor for API routes.

from functools import wraps

from flask import current_app, g, jsonify, request

from .errors import DepositError
from .services import session_service
from .services.authorization import Actor


def _client_context() -> tuple[str | None, str | None]:
    return request.remote_addr, request.headers.get("User-Agent")


def error_response(exc: DepositError):
    """DepositError -> (json, status). ProviderError details go to the log only."""
    if exc.http_status >= 500:
        current_app.logger.error("%s: %s", exc.code, exc)
    else:
        current_app.logger.info("%s: %s", exc.code, exc)
    return jsonify(exc.to_dict()), exc.http_status


def load_actor(f):
    """
    Resolve g.actor for routes borrowers may also call.

    - Valid Bearer token: the staff member's Actor
    - Invalid Bearer token: 401
    - No token: anonymous borrower
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        ip_address, user_agent = _client_context()
        auth_header = request.headers.get("Authorization")

        if auth_header and auth_header.startswith("Bearer "):
            token = auth_header.split(" ", 1)[1]
            user = session_service.validate_session(token)
            if not user:
                return jsonify({"error": "Invalid or expired token"}), 401
            g.current_user = user
            g.actor = session_service.actor_for_user(user, ip_address, user_agent)
        else:
            g.current_user = None
            g.actor = Actor.borrower(ip_address, user_agent)

        return f(*args, **kwargs)

    return decorated_function


def require_auth(f):
    """
    Require a valid staff session.

    Sets g.current_user and g.actor. Returns 401 if:
    - No Authorization header
    - Invalid, expired or revoked token
    - User account deactivated
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        auth_header = request.headers.get("Authorization")
        if not auth_header or not auth_header.startswith("Bearer "):
            return jsonify({"error": "Authentication required"}), 401

        token = auth_header.split(" ", 1)[1]
        user = session_service.validate_session(token)
        if not user:
            return jsonify({"error": "Invalid or expired token"}), 401

        ip_address, user_agent = _client_context()
        g.current_user = user
        g.actor = session_service.actor_for_user(user, ip_address, user_agent)
        return f(*args, **kwargs)

    return decorated_function


def require_admin(f):
    """Use after @require_auth."""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        actor = getattr(g, "actor", None)
        if actor is None:
            return jsonify({"error": "Authentication required"}), 401
        if not actor.is_admin:
            return jsonify({"error": "Admin access required", "code": "FORBIDDEN"}), 403
        return f(*args, **kwargs)

    return decorated_function
