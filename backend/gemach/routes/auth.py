# Overview: Flask API routes for staff login, logout and account creation.

# backend/gemach/routes/auth.py
"""
Authentication API routes

- Staff log in with username (or email) and password and receive a bearer token
- There is no self-registration; admins create operator accounts
"""

from flask import Blueprint, current_app, g, jsonify, request

from ..decorators import error_response, require_admin, require_auth
from ..errors import DepositError
from ..services import auth_service, session_service


auth_bp = Blueprint("auth", __name__, url_prefix="/api/auth")


@auth_bp.post("/login")
def login_route():
    try:
        data = request.get_json(silent=True) or {}
        username = data.get("username") or data.get("email")
        password = data.get("password")

        if not all([username, password]):
            return jsonify({"error": "username/email and password required"}), 400

        user = auth_service.authenticate(username, password)
        if not user:
            current_app.logger.info("failed login for %s from %s", username, request.remote_addr)
            return jsonify({"error": "Invalid credentials"}), 401

        session, token = session_service.create_session(
            user_id=user.id,
            user_agent=request.headers.get("User-Agent"),
            ip_address=request.remote_addr,
        )
        return jsonify({
            "user": user.to_dict(),
            "token": token,
            "expires_at": session.expires_at.isoformat() + "Z",
            "message": "Login successful",
        }), 200

    except DepositError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to login user")
        return jsonify({"error": "Internal server error"}), 500


@auth_bp.post("/logout")
def logout_route():
    auth_header = request.headers.get("Authorization")
    if not auth_header or not auth_header.startswith("Bearer "):
        return jsonify({"error": "Authorization header required"}), 401

    token = auth_header.split(" ", 1)[1]
    if not session_service.revoke_session(token, reason="User logout"):
        return jsonify({"error": "Invalid or expired token"}), 401
    return jsonify({"message": "Logout successful"}), 200


@auth_bp.get("/me")
@require_auth
def me_route():
    return jsonify({"user": g.current_user.to_dict()}), 200


@auth_bp.post("/users")
@require_auth
@require_admin
def create_user_route():
    """
    Request body:
    {"username", "email", "password", "role": "operator" | "admin", "locationId"}
    """
    try:
        data = request.get_json(silent=True) or {}
        user = auth_service.create_user(
            data.get("username"),
            data.get("email"),
            data.get("password"),
            role=data.get("role", "operator"),
            location_id=data.get("locationId", data.get("location_id")),
        )
        return jsonify({"user": user.to_dict()}), 201
    except DepositError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to create user")
        return jsonify({"error": "Internal server error"}), 500
